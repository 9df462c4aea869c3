"""Tests for routine expansion."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from zeitline.engine.errors import InvalidTimezoneError
from zeitline.engine.models import DateWindow, RoutineRule, SourceType
from zeitline.engine.recurrence import expand, expand_rules, recurrence_key
from zeitline.engine.timeutil import to_zone_parts

pytestmark = pytest.mark.unit

# Monday 2024-06-03 through Sunday 2024-06-09.
WEEK = DateWindow(start=date(2024, 6, 3), end=date(2024, 6, 9))


class TestExpand:
    def test_weekday_rule_yields_one_instance_per_weekday(self, weekday_rule):
        instances = expand(weekday_rule, WEEK, "America/New_York")
        assert len(instances) == 5
        assert all(event.end - event.start == timedelta(minutes=30) for event in instances)
        assert all(event.source_type is SourceType.ROUTINE for event in instances)
        local_days = [to_zone_parts(event.start, "America/New_York") for event in instances]
        assert [(p.day, p.hour, p.minute) for p in local_days] == [
            (3, 7, 0),
            (4, 7, 0),
            (5, 7, 0),
            (6, 7, 0),
            (7, 7, 0),
        ]

    def test_expansion_is_idempotent(self, weekday_rule):
        first = expand(weekday_rule, WEEK, "Europe/Berlin")
        second = expand(weekday_rule, WEEK, "Europe/Berlin")
        assert first == second

    def test_ids_and_keys_derive_from_rule_and_date(self, weekday_rule):
        instance = expand(weekday_rule, WEEK, "UTC")[0]
        key = recurrence_key("wake-up", date(2024, 6, 3))
        assert instance.recurrence_key == key
        assert instance.id == f"routine:{key}"
        assert len(key) == 32

    def test_end_clamped_to_local_day(self):
        rule = RoutineRule(
            id="late",
            title="Late Shift",
            time_of_day="23:30",
            days_of_week="daily",
            duration_minutes=90,
        )
        instance = expand(rule, DateWindow(start=date(2024, 6, 5), end=date(2024, 6, 5)), "UTC")[0]
        assert instance.start == datetime(2024, 6, 5, 23, 30, tzinfo=UTC)
        assert instance.end == datetime(2024, 6, 5, 23, 59, 59, tzinfo=UTC)

    def test_zero_duration_rule(self):
        rule = RoutineRule(
            id="pill",
            title="Vitamins",
            time_of_day="8:00",
            days_of_week="daily",
            duration_minutes=0,
        )
        instance = expand(rule, DateWindow(start=date(2024, 6, 5), end=date(2024, 6, 5)), "UTC")[0]
        assert instance.start == instance.end

    def test_spring_forward_gap_time_moves_after_gap(self):
        rule = RoutineRule(
            id="early",
            title="Early",
            time_of_day="2:30 AM",
            days_of_week="daily",
            duration_minutes=30,
        )
        window = DateWindow(start=date(2024, 3, 10), end=date(2024, 3, 10))
        instance = expand(rule, window, "America/New_York")[0]
        parts = to_zone_parts(instance.start, "America/New_York")
        assert (parts.day, parts.hour, parts.minute) == (10, 3, 30)

    def test_validity_range_limits_instances(self):
        rule = RoutineRule(
            id="trial",
            title="Trial",
            time_of_day="12:00",
            days_of_week="daily",
            duration_minutes=15,
            valid_from=date(2024, 6, 5),
        )
        assert len(expand(rule, WEEK, "UTC")) == 5

    def test_unknown_zone_raises(self, weekday_rule):
        with pytest.raises(InvalidTimezoneError):
            expand(weekday_rule, WEEK, "Not/AZone")


def test_expand_rules_skips_disabled(weekday_rule):
    disabled = weekday_rule.model_copy(update={"id": "off", "enabled": False})
    instances = expand_rules([weekday_rule, disabled], WEEK, "UTC")
    assert len(instances) == 5
    assert {event.recurrence_key for event in instances} == {
        recurrence_key("wake-up", day) for day in WEEK.days() if day.weekday() < 5
    }
