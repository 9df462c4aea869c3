"""Microsoft Outlook adapter over the Graph ``calendarView`` endpoint."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

from zeitline.adapters.base import BearerProviderAdapter, CalendarRef, normalize_items
from zeitline.engine.errors import AdapterUnavailableError, MalformedEventError
from zeitline.engine.models import CanonicalEvent, SourceType
from zeitline.engine.timeutil import all_day_instant, parse_instant, resolve_zone

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_PAGE_SIZE = 250
GRAPH_MAX_PAGES = 20
UNTITLED_EVENT = "No title"

# Graph reports dateTime values in this zone when asked to.
_PREFER_UTC_HEADER = {"Prefer": 'outlook.timezone="UTC"'}

# Graph may still label boundaries with Windows zone names.
WINDOWS_ZONE_MAP: dict[str, str] = {
    "UTC": "UTC",
    "Coordinated Universal Time": "UTC",
    "Hawaiian Standard Time": "Pacific/Honolulu",
    "Alaskan Standard Time": "America/Anchorage",
    "Pacific Standard Time": "America/Los_Angeles",
    "Mountain Standard Time": "America/Denver",
    "US Mountain Standard Time": "America/Phoenix",
    "Central Standard Time": "America/Chicago",
    "Eastern Standard Time": "America/New_York",
    "Atlantic Standard Time": "America/Halifax",
    "E. South America Standard Time": "America/Sao_Paulo",
    "GMT Standard Time": "Europe/London",
    "W. Europe Standard Time": "Europe/Berlin",
    "Romance Standard Time": "Europe/Paris",
    "Central Europe Standard Time": "Europe/Budapest",
    "E. Europe Standard Time": "Europe/Chisinau",
    "FLE Standard Time": "Europe/Helsinki",
    "Russian Standard Time": "Europe/Moscow",
    "Arabian Standard Time": "Asia/Dubai",
    "India Standard Time": "Asia/Kolkata",
    "SE Asia Standard Time": "Asia/Bangkok",
    "China Standard Time": "Asia/Shanghai",
    "Singapore Standard Time": "Asia/Singapore",
    "Tokyo Standard Time": "Asia/Tokyo",
    "Korea Standard Time": "Asia/Seoul",
    "AUS Eastern Standard Time": "Australia/Sydney",
    "New Zealand Standard Time": "Pacific/Auckland",
}


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_graph_boundary(payload: Any) -> datetime:
    if not isinstance(payload, dict):
        raise MalformedEventError("Outlook event is missing start/end payloads")
    raw = _text(payload.get("dateTime"))
    if raw is None:
        raise MalformedEventError("Outlook event boundary has no dateTime")
    zone = _text(payload.get("timeZone")) or "UTC"
    zone = WINDOWS_ZONE_MAP.get(zone, zone)
    try:
        resolve_zone(zone)
    except ValueError:
        logger.debug("Unrecognized Graph timeZone %r; assuming UTC", zone)
        zone = "UTC"
    return parse_instant(raw, default_zone=zone)


def outlook_event_to_canonical(
    payload: dict[str, Any],
    *,
    calendar: CalendarRef,
) -> CanonicalEvent | None:
    """Normalize one Graph ``event`` resource; cancelled events yield ``None``."""
    if payload.get("isCancelled") is True:
        return None

    event_id = _text(payload.get("id"))
    if event_id is None:
        raise MalformedEventError("Outlook event payload is missing a non-empty id")

    start = _parse_graph_boundary(payload.get("start"))
    end = _parse_graph_boundary(payload.get("end"))
    all_day = payload.get("isAllDay") is True
    if all_day:
        start = all_day_instant(start.astimezone(UTC).date())
        end = all_day_instant(end.astimezone(UTC).date())

    location = payload.get("location")
    return CanonicalEvent(
        id=f"outlook:{calendar.id}:{event_id}",
        title=_text(payload.get("subject")) or UNTITLED_EVENT,
        start=start,
        end=end,
        all_day=all_day,
        source_type=SourceType.OUTLOOK,
        source_calendar_name=calendar.label,
        location=_text(location.get("displayName")) if isinstance(location, dict) else None,
        description=_text(payload.get("bodyPreview")),
    )


class OutlookCalendarAdapter(BearerProviderAdapter):
    """Reads events from Outlook calendars through Microsoft Graph."""

    source_type = SourceType.OUTLOOK

    def __init__(self, *, base_url: str = GRAPH_API_BASE_URL, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._base_url = base_url.rstrip("/")

    async def _fetch_calendar(
        self, calendar: CalendarRef, start: datetime, end: datetime
    ) -> list[CanonicalEvent]:
        calendar_path = quote(calendar.id, safe="")
        url: str | None = f"{self._base_url}/me/calendars/{calendar_path}/calendarView"
        params: dict[str, Any] | None = {
            "startDateTime": start.astimezone(UTC).isoformat(),
            "endDateTime": end.astimezone(UTC).isoformat(),
            "$top": GRAPH_PAGE_SIZE,
        }

        items: list[dict[str, Any]] = []
        pages = 0
        while url is not None:
            if pages >= GRAPH_MAX_PAGES:
                logger.warning(
                    "Outlook calendar %s exceeded %d pages; truncating",
                    calendar.label,
                    GRAPH_MAX_PAGES,
                )
                break
            payload = await self._request_json(
                "GET", url, params=params, extra_headers=_PREFER_UTC_HEADER
            )
            page_items = payload.get("value")
            if not isinstance(page_items, list):
                raise AdapterUnavailableError(
                    self.name, "calendarView response missing value array"
                )
            items.extend(item for item in page_items if isinstance(item, dict))
            # nextLink already carries every query parameter.
            url = _text(payload.get("@odata.nextLink"))
            params = None
            pages += 1

        events = normalize_items(
            self.name, items, lambda item: outlook_event_to_canonical(item, calendar=calendar)
        )
        logger.debug("Fetched %d event(s) from Outlook calendar %s", len(events), calendar.label)
        return events
