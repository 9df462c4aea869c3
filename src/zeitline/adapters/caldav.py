"""CalDAV adapter for iCloud (and other CalDAV servers).

Issues a ``calendar-query`` REPORT restricted to the requested time range,
asking the server to expand recurring events, and parses every returned
``calendar-data`` payload with ``icalendar``.
"""

from __future__ import annotations

import base64
import logging
import xml.etree.ElementTree as ET
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import urljoin

import httpx
from icalendar import Calendar as ICalendar

from zeitline.adapters.base import CalendarRef, HttpProviderAdapter, normalize_items
from zeitline.engine.errors import AdapterUnavailableError, MalformedEventError
from zeitline.engine.models import CanonicalEvent, SourceType
from zeitline.engine.timeutil import all_day_instant, resolve_zone

logger = logging.getLogger(__name__)

ICLOUD_CALDAV_URL = "https://caldav.icloud.com"
UNTITLED_EVENT = "No title"

_DAV_NS = "DAV:"
_CALDAV_NS = "urn:ietf:params:xml:ns:caldav"

_CALENDAR_QUERY_TEMPLATE = """<?xml version="1.0" encoding="utf-8" ?>
<C:calendar-query xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:getetag/>
    <C:calendar-data>
      <C:expand start="{start}" end="{end}"/>
    </C:calendar-data>
  </D:prop>
  <C:filter>
    <C:comp-filter name="VCALENDAR">
      <C:comp-filter name="VEVENT">
        <C:time-range start="{start}" end="{end}"/>
      </C:comp-filter>
    </C:comp-filter>
  </C:filter>
</C:calendar-query>
"""


def _caldav_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def calendar_query_body(start: datetime, end: datetime) -> str:
    stamp_start = _caldav_timestamp(start)
    stamp_end = _caldav_timestamp(end)
    return _CALENDAR_QUERY_TEMPLATE.format(start=stamp_start, end=stamp_end)


def extract_calendar_data(multistatus: str) -> list[str]:
    """Return every ``calendar-data`` text node from a 207 multistatus body."""
    try:
        root = ET.fromstring(multistatus)
    except ET.ParseError as exc:
        raise ValueError(f"Invalid CalDAV multistatus XML: {exc}") from exc
    payloads: list[str] = []
    for response in root.iter(f"{{{_DAV_NS}}}response"):
        for node in response.iter(f"{{{_CALDAV_NS}}}calendar-data"):
            if node.text and node.text.strip():
                payloads.append(node.text)
    return payloads


def _to_instant(value: Any, zone_name: str) -> tuple[datetime, bool]:
    """Return ``(instant, is_date_only)`` for an icalendar DTSTART/DTEND value."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            # Floating time: wall clock in the calendar's own zone.
            value = value.replace(tzinfo=resolve_zone(zone_name))
        return value.astimezone(UTC), False
    if isinstance(value, date):
        return all_day_instant(value), True
    raise MalformedEventError(f"Unsupported iCalendar date value: {value!r}")


def _component_text(component: Any, key: str) -> str | None:
    value = component.get(key)
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def vevent_to_canonical(
    component: Any,
    *,
    calendar: CalendarRef,
    zone_name: str = "UTC",
) -> CanonicalEvent:
    """Normalize one ``VEVENT`` component."""
    uid = _component_text(component, "UID")
    if uid is None:
        raise MalformedEventError("VEVENT is missing UID")
    dtstart = component.get("DTSTART")
    if dtstart is None:
        raise MalformedEventError(f"VEVENT {uid} is missing DTSTART")
    start, all_day = _to_instant(dtstart.dt, zone_name)

    dtend = component.get("DTEND")
    duration = component.get("DURATION")
    if dtend is not None:
        end, _ = _to_instant(dtend.dt, zone_name)
    elif duration is not None and isinstance(duration.dt, timedelta):
        end = start + duration.dt
    elif all_day:
        end = start + timedelta(days=1)
    else:
        end = start

    event_id = f"apple:{calendar.id}:{uid}"
    recurrence_id = component.get("RECURRENCE-ID")
    if recurrence_id is not None:
        occurrence, _ = _to_instant(recurrence_id.dt, zone_name)
        event_id = f"{event_id}:{occurrence.strftime('%Y%m%dT%H%M%SZ')}"

    return CanonicalEvent(
        id=event_id,
        title=_component_text(component, "SUMMARY") or UNTITLED_EVENT,
        start=start,
        end=end,
        all_day=all_day,
        source_type=SourceType.APPLE,
        source_calendar_name=calendar.label,
        location=_component_text(component, "LOCATION"),
        description=_component_text(component, "DESCRIPTION"),
    )


def parse_ical_events(
    ical_text: str, *, calendar: CalendarRef, zone_name: str = "UTC"
) -> list[CanonicalEvent]:
    """Parse an iCalendar document into canonical events, skipping bad VEVENTs."""
    try:
        parsed = ICalendar.from_ical(ical_text)
    except ValueError as exc:
        logger.warning("Skipping unparsable iCalendar payload from %s: %s", calendar.label, exc)
        return []
    return normalize_items(
        str(SourceType.APPLE),
        parsed.walk("VEVENT"),
        lambda component: vevent_to_canonical(component, calendar=calendar, zone_name=zone_name),
    )


class CalDAVCalendarAdapter(HttpProviderAdapter):
    """Reads events from CalDAV collections with basic authentication.

    ``CalendarRef.id`` is the collection URL, absolute or relative to
    ``server_url``.
    """

    source_type = SourceType.APPLE

    def __init__(
        self,
        *,
        username: str,
        password: str,
        server_url: str = ICLOUD_CALDAV_URL,
        calendars: list[CalendarRef],
        http_client: httpx.AsyncClient | None = None,
        timezone: str = "UTC",
    ) -> None:
        super().__init__(calendars=calendars, http_client=http_client, timezone=timezone)
        self._server_url = server_url.rstrip("/") + "/"
        credentials = f"{username}:{password}".encode()
        self._basic_auth = f"Basic {base64.b64encode(credentials).decode('ascii')}"

    async def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": self._basic_auth}

    async def _fetch_calendar(
        self, calendar: CalendarRef, start: datetime, end: datetime
    ) -> list[CanonicalEvent]:
        url = urljoin(self._server_url, calendar.id)
        response = await self._request(
            "REPORT",
            url,
            content=calendar_query_body(start, end),
            extra_headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
        )
        try:
            payloads = extract_calendar_data(response.text)
        except ValueError as exc:
            raise AdapterUnavailableError(self.name, str(exc)) from exc

        events: list[CanonicalEvent] = []
        for payload in payloads:
            events.extend(parse_ical_events(payload, calendar=calendar, zone_name=self._timezone))
        logger.debug("Fetched %d event(s) from CalDAV calendar %s", len(events), calendar.label)
        return events
