"""Expand routine rules into concrete events over a date window.

Expansion is deterministic: the same rule, window and zone always yield the
same instances with the same ids and recurrence keys, so repeated expansion
(or materialization) never duplicates an instance.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable
from datetime import date, time, timedelta

from zeitline.engine.models import CanonicalEvent, DateWindow, RoutineRule, SourceType
from zeitline.engine.timeutil import resolve_zone, zone_local_time

logger = logging.getLogger(__name__)

END_OF_DAY = time(23, 59, 59)
ROUTINE_ID_PREFIX = "routine:"


def recurrence_key(rule_id: str, day: date) -> str:
    """Stable identifier for the instance of *rule_id* on *day*."""
    digest = hashlib.sha256(f"{rule_id}|{day.isoformat()}".encode()).hexdigest()
    return digest[:32]


def routine_event_id(key: str) -> str:
    return f"{ROUTINE_ID_PREFIX}{key}"


def expand(rule: RoutineRule, window: DateWindow, zone_name: str) -> list[CanonicalEvent]:
    """Materialize one instance of *rule* per matching day in *window*.

    Instances whose end would cross local midnight are clamped to 23:59:59 of
    the same local date.

    Raises
    ------
    InvalidTimezoneError
        If *zone_name* is not a known IANA zone.
    """
    resolve_zone(zone_name)
    instances: list[CanonicalEvent] = []
    for day in window.days():
        if not rule.applies_on(day):
            continue
        start = zone_local_time(day, rule.time_of_day, zone_name)
        end = start + timedelta(minutes=rule.duration_minutes)
        day_end = zone_local_time(day, END_OF_DAY, zone_name)
        if end > day_end:
            end = max(day_end, start)
        key = recurrence_key(rule.id, day)
        instances.append(
            CanonicalEvent(
                id=routine_event_id(key),
                title=rule.title,
                start=start,
                end=end,
                source_type=SourceType.ROUTINE,
                source_calendar_name=rule.calendar_name,
                description=rule.description,
                recurrence_key=key,
            )
        )
    return instances


def expand_rules(
    rules: Iterable[RoutineRule], window: DateWindow, zone_name: str
) -> list[CanonicalEvent]:
    """Expand every enabled rule; disabled rules contribute nothing."""
    instances: list[CanonicalEvent] = []
    for rule in rules:
        if not rule.enabled:
            logger.debug("Skipping disabled routine rule %s", rule.id)
            continue
        instances.extend(expand(rule, window, zone_name))
    return instances
