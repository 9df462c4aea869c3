"""Google Calendar adapter (read-only).

Lists expanded single events per calendar with ``singleEvents=true`` and
follows ``nextPageToken`` until the window is exhausted.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Any
from urllib.parse import quote

from zeitline.adapters.base import BearerProviderAdapter, CalendarRef, normalize_items
from zeitline.engine.errors import AdapterUnavailableError, MalformedEventError
from zeitline.engine.models import CanonicalEvent, SourceType
from zeitline.engine.timeutil import all_day_instant, parse_instant, resolve_zone

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_MAX_RESULTS = 2500
GOOGLE_MAX_PAGES = 20
UNTITLED_EVENT = "No title"


def _google_rfc3339(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _boundary_zone(payload: dict[str, Any], fallback_timezone: str) -> str:
    zone = _normalize_optional_text(payload.get("timeZone"))
    if zone is None:
        return fallback_timezone
    try:
        resolve_zone(zone)
    except ValueError:
        return fallback_timezone
    return zone


def _parse_boundary(payload: Any, *, fallback_timezone: str) -> tuple[datetime, bool]:
    """Return ``(instant, is_date_only)`` for a Google start/end payload."""
    if not isinstance(payload, dict):
        raise MalformedEventError("Google Calendar event is missing start/end payloads")

    date_time = _normalize_optional_text(payload.get("dateTime"))
    if date_time is not None:
        zone = _boundary_zone(payload, fallback_timezone)
        return parse_instant(date_time, default_zone=zone), False

    date_value = _normalize_optional_text(payload.get("date"))
    if date_value is not None:
        try:
            return all_day_instant(date.fromisoformat(date_value)), True
        except ValueError as exc:
            raise MalformedEventError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc

    raise MalformedEventError("Google Calendar event is missing start/end dateTime or date values")


def google_event_to_canonical(
    payload: dict[str, Any],
    *,
    calendar: CalendarRef,
    fallback_timezone: str = "UTC",
) -> CanonicalEvent | None:
    """Normalize one Google ``events#event`` resource.

    Returns ``None`` for cancelled occurrences.
    """
    status = payload.get("status")
    if isinstance(status, str) and status.lower() == "cancelled":
        return None

    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise MalformedEventError("Google Calendar event payload is missing a non-empty id")

    start, start_is_date = _parse_boundary(
        payload.get("start"), fallback_timezone=fallback_timezone
    )
    end_payload = payload.get("end")
    if end_payload is None:
        end = start
    else:
        end, _ = _parse_boundary(end_payload, fallback_timezone=fallback_timezone)

    return CanonicalEvent(
        id=f"google:{calendar.id}:{event_id}",
        title=_normalize_optional_text(payload.get("summary")) or UNTITLED_EVENT,
        start=start,
        end=end,
        all_day=start_is_date,
        source_type=SourceType.GOOGLE,
        source_calendar_name=calendar.label,
        location=_normalize_optional_text(payload.get("location")),
        description=_normalize_optional_text(payload.get("description")),
    )


class GoogleCalendarAdapter(BearerProviderAdapter):
    """Reads events from one or more Google calendars."""

    source_type = SourceType.GOOGLE

    def __init__(self, *, base_url: str = GOOGLE_CALENDAR_API_BASE_URL, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._base_url = base_url.rstrip("/")

    async def _fetch_calendar(
        self, calendar: CalendarRef, start: datetime, end: datetime
    ) -> list[CanonicalEvent]:
        url = f"{self._base_url}/calendars/{quote(calendar.id, safe='')}/events"
        params: dict[str, Any] = {
            "timeMin": _google_rfc3339(start),
            "timeMax": _google_rfc3339(end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": GOOGLE_MAX_RESULTS,
        }

        items: list[dict[str, Any]] = []
        for _ in range(GOOGLE_MAX_PAGES):
            payload = await self._request_json("GET", url, params=params)
            page_items = payload.get("items")
            if not isinstance(page_items, list):
                raise AdapterUnavailableError(self.name, "events response missing items array")
            items.extend(item for item in page_items if isinstance(item, dict))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params = {**params, "pageToken": page_token}
        else:
            logger.warning(
                "Google calendar %s exceeded %d pages; truncating", calendar.label, GOOGLE_MAX_PAGES
            )

        events = normalize_items(
            self.name,
            items,
            lambda item: google_event_to_canonical(
                item, calendar=calendar, fallback_timezone=self._timezone
            ),
        )
        logger.debug("Fetched %d event(s) from Google calendar %s", len(events), calendar.label)
        return events
