"""Free-slot search over aggregated events."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta

from pydantic import BaseModel

from zeitline.engine.models import CanonicalEvent
from zeitline.engine.timeutil import to_zone_parts, zone_local

logger = logging.getLogger(__name__)

FALLBACK_SLOT_HOUR = 10


class SlotSuggestion(BaseModel):
    start: datetime
    end: datetime
    fallback: bool = False


def _busy(events: Iterable[CanonicalEvent]) -> list[CanonicalEvent]:
    return sorted((event for event in events if not event.all_day), key=lambda e: e.start)


def _is_free(busy: list[CanonicalEvent], start: datetime, end: datetime) -> bool:
    return not any(event.start < end and event.end > start for event in busy)


def suggest_slot(
    events: Iterable[CanonicalEvent],
    zone_name: str,
    now: datetime,
    *,
    duration_minutes: int = 60,
    day_start_hour: int = 9,
    day_end_hour: int = 22,
    horizon_days: int = 14,
    skip_weekends: bool = True,
) -> SlotSuggestion:
    """First free on-the-hour slot between *day_start_hour* and *day_end_hour*.

    Today is searched from the next whole hour.  All-day events never block a
    slot.  When nothing is free within *horizon_days*, tomorrow at 10:00 local
    is returned with ``fallback=True``.
    """
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")
    if not 0 <= day_start_hour < day_end_hour <= 24:
        raise ValueError("day_start_hour must be before day_end_hour within 0..24")

    busy = _busy(events)
    duration = timedelta(minutes=duration_minutes)
    local_now = to_zone_parts(now, zone_name)
    today = local_now.local_date

    for offset in range(horizon_days):
        day = today + timedelta(days=offset)
        if skip_weekends and day.weekday() >= 5:
            continue
        first_hour = day_start_hour if offset else max(day_start_hour, local_now.hour + 1)
        for hour in range(first_hour, day_end_hour):
            if hour * 60 + duration_minutes > day_end_hour * 60:
                break
            start = zone_local(day, hour * 60, zone_name)
            if _is_free(busy, start, start + duration):
                return SlotSuggestion(start=start, end=start + duration)

    logger.info("No free slot within %d day(s); suggesting tomorrow morning", horizon_days)
    start = zone_local(today + timedelta(days=1), FALLBACK_SLOT_HOUR * 60, zone_name)
    return SlotSuggestion(start=start, end=start + duration, fallback=True)


def find_overlaps(
    events: Iterable[CanonicalEvent],
) -> list[tuple[CanonicalEvent, CanonicalEvent]]:
    """Pairs of timed events whose intervals intersect, in start order."""
    ordered = _busy(events)
    overlaps: list[tuple[CanonicalEvent, CanonicalEvent]] = []
    active: list[CanonicalEvent] = []
    for event in ordered:
        active = [other for other in active if other.end > event.start]
        overlaps.extend((other, event) for other in active)
        active.append(event)
    return overlaps
