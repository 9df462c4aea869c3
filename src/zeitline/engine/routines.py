"""Routine rule sources.

Converts the answers collected during onboarding into :class:`RoutineRule`
objects and exposes rule sources the aggregator can query per request.

Onboarding payloads come in two shapes, both accepted here:

- nested: ``{"routines": {"weekday": {"wakeTime": ..., "meals": {...},
  "exercise": {"time": ..., "days": [...]}}, "weekend": {...}}}``
- flat: ``{"wakeTime": ..., "workStartTime": ..., "breakfastTime": ...}``

Either shape may be wrapped in ``{"collectedData": {...}}``.
"""

from __future__ import annotations

import abc
import json
import logging
import re
from collections.abc import Mapping, Sequence
from datetime import time
from pathlib import Path
from typing import Any

from zeitline.engine.models import WEEKDAY_NAMES, RoutineRule
from zeitline.engine.timeutil import parse_time_of_day

logger = logging.getLogger(__name__)

WEEKDAYS = frozenset(range(5))
WEEKEND = frozenset({5, 6})
DEFAULT_EXERCISE_DAYS = ("monday", "wednesday", "friday")

# Default length in minutes of each onboarding routine.
ROUTINE_DURATIONS: dict[str, int] = {
    "Wake Up": 30,
    "Breakfast": 45,
    "Lunch": 60,
    "Dinner": 60,
    "Exercise": 60,
    "Bedtime": 30,
    "Weekend Wake Up": 30,
    "Weekend Bedtime": 30,
}


class RuleSource(abc.ABC):
    """Supplies the routine rules for the current user."""

    @abc.abstractmethod
    async def list_rules(self) -> list[RoutineRule]:
        """Return every known rule, enabled or not."""

    async def list_enabled_rules(self) -> list[RoutineRule]:
        return [rule for rule in await self.list_rules() if rule.enabled]


class StaticRuleSource(RuleSource):
    """Rule source over a fixed list of rules."""

    def __init__(self, rules: Sequence[RoutineRule] = ()) -> None:
        self._rules = list(rules)

    async def list_rules(self) -> list[RoutineRule]:
        return list(self._rules)


def _slug(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")


def _first_text(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _known_weekdays(values: Any) -> list[str]:
    if isinstance(values, str):
        values = values.replace(",", " ").split()
    known = [str(value) for value in values if str(value).strip().lower() in WEEKDAY_NAMES]
    if len(known) != len(list(values)):
        logger.warning("Ignoring unknown exercise day(s) in %r", values)
    return known


def _parse_optional_time(label: str, value: str | None) -> time | None:
    if value is None:
        return None
    try:
        return parse_time_of_day(value)
    except ValueError:
        logger.warning("Ignoring unparsable onboarding time for %s: %r", label, value)
        return None


def _rule(
    title: str,
    at: time,
    days: frozenset[int] | Sequence[str],
    minutes: int | None = None,
) -> RoutineRule:
    return RoutineRule(
        id=_slug(title),
        title=title,
        time_of_day=at,
        days_of_week=days,
        duration_minutes=ROUTINE_DURATIONS[title] if minutes is None else minutes,
    )


def rules_from_onboarding(data: Mapping[str, Any]) -> list[RoutineRule]:
    """Derive routine rules from onboarding answers.

    Unparsable or missing times skip the corresponding rule.  Rule ids are
    slugs of the rule titles, so running this twice over the same answers
    produces the same rules and therefore the same recurrence keys.
    """
    collected = data.get("collectedData", data)
    if not isinstance(collected, Mapping):
        raise ValueError("onboarding data must be a JSON object")
    routines = collected.get("routines") or {}
    weekday = routines.get("weekday") or {}
    weekend = routines.get("weekend") or {}
    meals = weekday.get("meals") or {}
    exercise = weekday.get("exercise") or {}

    wake = _parse_optional_time(
        "wake",
        _first_text(
            weekday.get("wakeTime"), collected.get("wakeTime"), collected.get("wakeTimeWeekday")
        ),
    )
    work_start = _parse_optional_time(
        "work start", _first_text(weekday.get("workStart"), collected.get("workStartTime"))
    )
    work_end = _parse_optional_time(
        "work end", _first_text(weekday.get("workEnd"), collected.get("workEndTime"))
    )
    breakfast = _parse_optional_time(
        "breakfast", _first_text(meals.get("breakfast"), collected.get("breakfastTime"))
    )
    lunch = _parse_optional_time(
        "lunch", _first_text(meals.get("lunch"), collected.get("lunchTime"))
    )
    dinner = _parse_optional_time(
        "dinner", _first_text(meals.get("dinner"), collected.get("dinnerTime"))
    )
    bedtime = _parse_optional_time(
        "bedtime",
        _first_text(
            weekday.get("bedtime"), collected.get("bedtime"), collected.get("bedtimeWeekday")
        ),
    )
    exercise_at = _parse_optional_time(
        "exercise", _first_text(exercise.get("time"), collected.get("exerciseTime"))
    )
    exercise_days = _known_weekdays(
        exercise.get("days") or collected.get("exerciseDays") or DEFAULT_EXERCISE_DAYS
    )
    weekend_wake = _parse_optional_time(
        "weekend wake", _first_text(weekend.get("wakeTime"), collected.get("wakeTimeWeekend"))
    )
    weekend_bedtime = _parse_optional_time(
        "weekend bedtime", _first_text(weekend.get("bedtime"), collected.get("bedtimeWeekend"))
    )

    rules: list[RoutineRule] = []
    if wake is not None:
        rules.append(_rule("Wake Up", wake, WEEKDAYS))
    if breakfast is not None:
        rules.append(_rule("Breakfast", breakfast, WEEKDAYS))
    if work_start is not None and work_end is not None:
        work_minutes = (work_end.hour * 60 + work_end.minute) - (
            work_start.hour * 60 + work_start.minute
        )
        if work_minutes > 0:
            rules.append(_rule("Work", work_start, WEEKDAYS, work_minutes))
        else:
            logger.warning("Ignoring work hours that end before they start")
    if lunch is not None:
        rules.append(_rule("Lunch", lunch, WEEKDAYS))
    if dinner is not None:
        rules.append(_rule("Dinner", dinner, WEEKDAYS))
    if exercise_at is not None and exercise_days:
        duration = ROUTINE_DURATIONS["Exercise"]
        raw_duration = exercise.get("duration")
        if raw_duration is not None:
            try:
                duration = int(raw_duration) or duration
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid exercise duration: %r", raw_duration)
        rules.append(_rule("Exercise", exercise_at, exercise_days, duration))
    if bedtime is not None:
        rules.append(_rule("Bedtime", bedtime, WEEKDAYS))
    if weekend_wake is not None:
        rules.append(_rule("Weekend Wake Up", weekend_wake, WEEKEND))
    if weekend_bedtime is not None:
        rules.append(_rule("Weekend Bedtime", weekend_bedtime, WEEKEND))

    logger.info("Derived %d routine rule(s) from onboarding data", len(rules))
    return rules


def load_onboarding_rules(path: Path) -> list[RoutineRule]:
    """Read an onboarding JSON export and convert it to rules."""
    try:
        payload = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Cannot read onboarding data from {path}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ValueError(f"Onboarding data in {path} must be a JSON object")
    return rules_from_onboarding(payload)
