"""Turn a drag/drop gesture into new instants and persist them.

A drop names a target day and a minute offset on that day's vertical scale,
or no offset for a month-view drop.  The event keeps its stored duration;
only its start moves.  Only native events can be rescheduled.
"""

from __future__ import annotations

import logging
from typing import Protocol

from zeitline.engine.errors import (
    EventNotFoundError,
    ImmutableSourceError,
    PersistenceFailureError,
    ZeitlineError,
)
from zeitline.engine.models import CanonicalEvent, DayBuckets, DropResolution
from zeitline.engine.timeutil import (
    LAST_MINUTE_OF_DAY,
    all_day_instant,
    minutes_since_midnight,
    parse_date_key,
    to_zone_parts,
    zone_local,
)

logger = logging.getLogger(__name__)


class EventWriter(Protocol):
    async def update(self, event_id: str, **changes: object) -> CanonicalEvent: ...


def clamp_offset(minutes: int) -> int:
    return min(max(int(minutes), 0), LAST_MINUTE_OF_DAY)


def resolve_drop(
    event: CanonicalEvent,
    target_date_key: str,
    drop_offset_minutes: int | None,
    zone_name: str,
) -> DropResolution:
    """Compute the new start and end for *event* dropped on *target_date_key*.

    ``drop_offset_minutes`` of ``None`` is a month-view drop: the event keeps
    its current time of day in *zone_name* and only changes date.  All-day
    events always move by whole dates and keep their span; their offset is
    reported as ``0``.

    An offset inside a spring-forward gap has no wall-clock instant.  It
    resolves with the offset in force before the transition, so minute 150
    (02:30) on 2024-03-10 in ``America/Los_Angeles`` becomes 03:30 PDT and
    the event is laid out at minute 210.  An offset in a fall-back overlap
    takes its first occurrence.

    Raises
    ------
    ImmutableSourceError
        If *event* is not natively owned.
    ValueError
        If *target_date_key* is not a ``YYYY-MM-DD`` date.
    """
    if not event.is_mutable:
        raise ImmutableSourceError(event.id, str(event.source_type))
    target_day = parse_date_key(target_date_key)
    if event.all_day:
        offset = 0
        new_start = all_day_instant(target_day)
    else:
        if drop_offset_minutes is None:
            drop_offset_minutes = minutes_since_midnight(to_zone_parts(event.start, zone_name))
        offset = clamp_offset(drop_offset_minutes)
        new_start = zone_local(target_day, offset, zone_name)
    return DropResolution(
        event_id=event.id,
        target_date_key=target_day.isoformat(),
        offset_minutes=offset,
        new_start=new_start,
        new_end=new_start + event.duration,
    )


class RescheduleResolver:
    """Applies drops to a request's buckets and persists them natively."""

    def __init__(self, writer: EventWriter) -> None:
        self._writer = writer

    async def apply(
        self,
        buckets: DayBuckets,
        event_id: str,
        target_date_key: str,
        drop_offset_minutes: int | None,
        zone_name: str,
    ) -> DropResolution:
        """Move *event_id* optimistically, persist, and roll back on failure.

        Validation failures (unknown event, immutable source, bad date) leave
        *buckets* untouched.  A ``PersistenceFailureError`` restores the
        buckets to their state before the move and is re-raised.
        """
        event = buckets.find(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        resolution = resolve_drop(event, target_date_key, drop_offset_minutes, zone_name)

        snapshot = buckets.snapshot()
        moved = event.model_copy(update={"start": resolution.new_start, "end": resolution.new_end})
        buckets.remove(event_id)
        buckets.add(resolution.target_date_key, moved)

        try:
            await self._writer.update(
                event_id, start=resolution.new_start, end=resolution.new_end
            )
        except Exception as exc:
            buckets.restore(snapshot)
            logger.warning("Persisting reschedule of %s failed; move rolled back", event_id)
            if isinstance(exc, ZeitlineError):
                raise
            raise PersistenceFailureError(event_id, f"Could not save event {event_id}") from exc

        logger.info(
            "Rescheduled %s to %s at minute %d",
            event_id,
            resolution.target_date_key,
            resolution.offset_minutes,
        )
        return resolution
