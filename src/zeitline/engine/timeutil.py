"""Pure time helpers shared by every engine component.

All functions are side-effect free and safe to call from concurrent tasks.
Instants are always timezone-aware ``datetime`` objects; wall-clock values are
only ever derived through :func:`to_zone_parts` so that DST rules for the
specific instant are applied instead of a fixed offset.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, date, datetime, time, timedelta
from functools import lru_cache
from typing import Any, NamedTuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from zeitline.engine.errors import InvalidTimezoneError, MalformedEventError

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 1440
LAST_MINUTE_OF_DAY = MINUTES_PER_DAY - 1

# Some providers emit seven fractional digits (e.g. "09:00:00.0000000").
_EXCESS_FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")
_TIME_OF_DAY_PATTERN = re.compile(r"^(\d{1,2})(?::(\d{2}))?(?::(\d{2}))?\s*([AaPp])\.?[Mm]\.?$")
_CLOCK_PATTERN = re.compile(r"^(\d{1,2})(?::(\d{2}))?(?::(\d{2}))?$")


class ZoneParts(NamedTuple):
    """Wall-clock decomposition of an instant in a named zone."""

    year: int
    month: int
    day: int
    hour: int
    minute: int

    @property
    def local_date(self) -> date:
        return date(self.year, self.month, self.day)


@lru_cache(maxsize=256)
def resolve_zone(zone_name: str) -> ZoneInfo:
    """Return the ``ZoneInfo`` for *zone_name* or raise ``InvalidTimezoneError``."""
    if not isinstance(zone_name, str) or not zone_name.strip():
        raise InvalidTimezoneError(str(zone_name))
    try:
        return ZoneInfo(zone_name.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise InvalidTimezoneError(zone_name) from exc


def resolve_zone_or_default(zone_name: str | None, default: str) -> tuple[str, str | None]:
    """Resolve *zone_name*, falling back to *default* when it is unknown.

    Returns
    -------
    tuple[str, str | None]
        The zone name actually in effect and a warning message when the
        fallback was used (``None`` otherwise).
    """
    if zone_name is None or not zone_name.strip():
        resolve_zone(default)
        return default, None
    try:
        resolve_zone(zone_name)
    except InvalidTimezoneError:
        warning = f"Unknown timezone {zone_name!r}; falling back to {default!r}"
        logger.warning("Invalid display timezone %r, using %r", zone_name, default)
        resolve_zone(default)
        return default, warning
    return zone_name.strip(), None


def to_zone_parts(instant: datetime, zone_name: str) -> ZoneParts:
    """Decompose an absolute instant into wall-clock components of *zone_name*."""
    if instant.tzinfo is None:
        raise ValueError("instant must be timezone-aware")
    local = instant.astimezone(resolve_zone(zone_name))
    return ZoneParts(local.year, local.month, local.day, local.hour, local.minute)


def minutes_since_midnight(parts: ZoneParts) -> int:
    """Return the minute-of-day in ``[0, 1439]``."""
    return parts.hour * 60 + parts.minute


def local_date_key(parts: ZoneParts) -> str:
    """Return the ``YYYY-MM-DD`` key for *parts*."""
    return f"{parts.year:04d}-{parts.month:02d}-{parts.day:02d}"


def parse_date_key(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` key, raising ``ValueError`` on bad input."""
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid date key: {value!r}") from exc


def zone_local(day: date, minutes: int, zone_name: str) -> datetime:
    """Return the UTC instant for wall-clock *minutes* on *day* in *zone_name*.

    Wall-clock times inside a spring-forward gap resolve with the pre-transition
    offset, which lands them after the gap.  Ambiguous fall-back times resolve
    to their first occurrence.
    """
    if not 0 <= minutes <= LAST_MINUTE_OF_DAY:
        raise ValueError(f"minutes must be within [0, {LAST_MINUTE_OF_DAY}], got {minutes}")
    wall_clock = time(minutes // 60, minutes % 60)
    local = datetime.combine(day, wall_clock, tzinfo=resolve_zone(zone_name))
    return local.astimezone(UTC)


def zone_local_time(day: date, at: time, zone_name: str) -> datetime:
    """Like :func:`zone_local` but accepts a ``time`` with seconds."""
    local = datetime.combine(day, at.replace(tzinfo=None), tzinfo=resolve_zone(zone_name))
    return local.astimezone(UTC)


def day_bounds(start: date, end: date, zone_name: str) -> tuple[datetime, datetime]:
    """Half-open UTC bounds covering local days ``start`` through ``end``."""
    return zone_local(start, 0, zone_name), zone_local(end + timedelta(days=1), 0, zone_name)


def parse_instant(value: Any, *, default_zone: str = "UTC") -> datetime:
    """Parse an ISO-8601 timestamp (or ``datetime``) into an aware UTC instant.

    A trailing ``Z`` is accepted.  Naive values are interpreted in
    *default_zone*.  Raises ``MalformedEventError`` for anything unparsable.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        normalized = value.strip()
        if normalized.endswith(("Z", "z")):
            normalized = normalized[:-1] + "+00:00"
        normalized = _EXCESS_FRACTION_PATTERN.sub(r"\1", normalized)
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError as exc:
            raise MalformedEventError(f"Unparsable timestamp: {value!r}") from exc
    else:
        raise MalformedEventError(f"Unparsable timestamp: {value!r}")

    if parsed.tzinfo is None:
        try:
            parsed = parsed.replace(tzinfo=resolve_zone(default_zone))
        except InvalidTimezoneError as exc:
            raise MalformedEventError(
                f"Timestamp {value!r} has no offset and zone {default_zone!r} is unknown"
            ) from exc
    return parsed.astimezone(UTC)


def all_day_instant(day: date) -> datetime:
    """Canonical instant for a date-only boundary (UTC midnight of *day*)."""
    return datetime(day.year, day.month, day.day, tzinfo=UTC)


def all_day_bounds(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """Snap all-day boundaries to canonical date instants.

    Each boundary keeps the calendar date it has in its own offset, so local
    midnight sent from UTC+9 stays on that date.  The end date is exclusive;
    an end that is not at midnight covers the rest of its day, and the span
    is at least one day.
    """
    first_day = start.date()
    end_day = end.date()
    if end.time() != time(0):
        end_day += timedelta(days=1)
    end_day = max(end_day, first_day + timedelta(days=1))
    return all_day_instant(first_day), all_day_instant(end_day)


def iter_days(start: date, end: date):
    """Yield each date from *start* to *end* inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def parse_time_of_day(value: str | time) -> time:
    """Parse a wall-clock time such as ``"7:00 AM"``, ``"7 pm"`` or ``"19:30"``.

    12 AM maps to midnight and 12 PM to noon.  Raises ``ValueError`` for
    anything else.
    """
    if isinstance(value, time):
        return value.replace(tzinfo=None)
    if not isinstance(value, str):
        raise ValueError(f"Invalid time of day: {value!r}")
    text = value.strip()

    meridiem: str | None = None
    match = _TIME_OF_DAY_PATTERN.match(text)
    if match is not None:
        hour_raw, minute_raw, second_raw, meridiem = match.groups()
    else:
        match = _CLOCK_PATTERN.match(text)
        if match is None:
            raise ValueError(f"Invalid time of day: {value!r}")
        hour_raw, minute_raw, second_raw = match.groups()

    hour = int(hour_raw)
    minute = int(minute_raw or 0)
    second = int(second_raw or 0)
    if meridiem is not None:
        if not 1 <= hour <= 12:
            raise ValueError(f"Invalid time of day: {value!r}")
        if meridiem.lower() == "p" and hour != 12:
            hour += 12
        elif meridiem.lower() == "a" and hour == 12:
            hour = 0
    if hour > 23 or minute > 59 or second > 59:
        raise ValueError(f"Invalid time of day: {value!r}")
    return time(hour, minute, second)
