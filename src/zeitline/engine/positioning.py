"""Vertical geometry of events on a 1440-minute day scale.

Positions are expressed both in minutes and as fractions of the full day so
callers can map them onto pixels or percentages.  Two durations are kept:
``stored_duration_minutes`` is the event's real length (used when
rescheduling), ``render_minutes`` is only the drawn height and is clamped to
a minimum so short events stay clickable.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from zeitline.engine.models import CanonicalEvent, DayBuckets, DayLayout, PositionedEvent
from zeitline.engine.timeutil import (
    MINUTES_PER_DAY,
    minutes_since_midnight,
    resolve_zone,
    to_zone_parts,
)

logger = logging.getLogger(__name__)

DEFAULT_MIN_RENDER_MINUTES = 20
DEFAULT_FALLBACK_DURATION_MINUTES = 30


def position_event(
    event: CanonicalEvent,
    date_key: str,
    zone_name: str,
    *,
    min_render_minutes: int = DEFAULT_MIN_RENDER_MINUTES,
    fallback_duration_minutes: int = DEFAULT_FALLBACK_DURATION_MINUTES,
) -> PositionedEvent:
    """Compute the geometry of one timed event in *zone_name*."""
    start_minutes = minutes_since_midnight(to_zone_parts(event.start, zone_name))
    end_minutes = minutes_since_midnight(to_zone_parts(event.end, zone_name))
    span_minutes = end_minutes - start_minutes
    if span_minutes < 0:
        logger.debug(
            "Event %s ends before it starts on the local clock; using %d minutes",
            event.id,
            fallback_duration_minutes,
        )
        span_minutes = fallback_duration_minutes
    render_minutes = max(span_minutes, min_render_minutes, 1)
    return PositionedEvent(
        event=event,
        date_key=date_key,
        top_minutes=start_minutes,
        span_minutes=span_minutes,
        render_minutes=render_minutes,
        stored_duration_minutes=int(event.duration.total_seconds() // 60),
        top_fraction=start_minutes / MINUTES_PER_DAY,
        height_fraction=render_minutes / MINUTES_PER_DAY,
    )


def position_day(
    date_key: str,
    events: Iterable[CanonicalEvent],
    zone_name: str,
    *,
    min_render_minutes: int = DEFAULT_MIN_RENDER_MINUTES,
    fallback_duration_minutes: int = DEFAULT_FALLBACK_DURATION_MINUTES,
) -> DayLayout:
    """Split one bucket into the all-day row and positioned timed events."""
    layout = DayLayout(date_key=date_key)
    for event in events:
        if event.all_day:
            layout.all_day.append(event)
            continue
        layout.timed.append(
            position_event(
                event,
                date_key,
                zone_name,
                min_render_minutes=min_render_minutes,
                fallback_duration_minutes=fallback_duration_minutes,
            )
        )
    return layout


def position(
    buckets: DayBuckets,
    zone_name: str,
    *,
    min_render_minutes: int = DEFAULT_MIN_RENDER_MINUTES,
    fallback_duration_minutes: int = DEFAULT_FALLBACK_DURATION_MINUTES,
) -> dict[str, DayLayout]:
    """Lay out every bucket; keys and event order follow the buckets."""
    resolve_zone(zone_name)
    return {
        date_key: position_day(
            date_key,
            events,
            zone_name,
            min_render_minutes=min_render_minutes,
            fallback_duration_minutes=fallback_duration_minutes,
        )
        for date_key, events in buckets.items()
    }
