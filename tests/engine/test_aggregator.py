"""Tests for multi-source aggregation."""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime

import pytest

from zeitline.engine.aggregator import (
    Aggregator,
    bucket_events,
    coerce_events,
    merge_calendars,
    merge_events,
)
from zeitline.engine.errors import AdapterUnavailableError, AggregationCancelledError
from zeitline.engine.models import AdapterStatus, DateWindow, SourceType
from zeitline.engine.recurrence import recurrence_key
from zeitline.engine.routines import StaticRuleSource

pytestmark = pytest.mark.unit

# Wednesday.
DAY = DateWindow(start=date(2024, 6, 5), end=date(2024, 6, 5))


def _statuses(result):
    return {diag.adapter: diag.status for diag in result.diagnostics}


class TestAggregate:
    async def test_slow_adapter_times_out_without_blocking_others(
        self, static_adapter, make_event, weekday_rule
    ):
        google = static_adapter(SourceType.GOOGLE, [make_event("google:primary:a")])
        outlook = static_adapter(SourceType.OUTLOOK, [make_event("outlook:cal:b")], delay=1.0)
        aggregator = Aggregator(
            rule_source=StaticRuleSource([weekday_rule]), adapter_timeout_s=0.05
        )

        result = await aggregator.aggregate(DAY, "UTC", [google, outlook])

        ids = [event.id for event in result.events()]
        assert "google:primary:a" in ids
        assert "outlook:cal:b" not in ids
        assert result.routine_instances == 1
        assert _statuses(result) == {
            "google": AdapterStatus.OK,
            "outlook": AdapterStatus.TIMEOUT,
            "routines": AdapterStatus.OK,
        }
        assert result.partial

    async def test_failed_adapter_is_reported(self, static_adapter, make_event):
        apple = static_adapter(SourceType.APPLE, error=AdapterUnavailableError("apple", "down"))
        native = static_adapter(SourceType.NATIVE, [make_event("native:a")])

        result = await Aggregator().aggregate(DAY, "UTC", [apple, native])

        failed = next(diag for diag in result.diagnostics if diag.adapter == "apple")
        assert failed.status is AdapterStatus.FAILED
        assert failed.error == "apple: down"
        assert [event.id for event in result.events()] == ["native:a"]

    async def test_duplicate_ids_collapse(self, static_adapter, make_event):
        first = static_adapter(SourceType.NATIVE, [make_event("native:a")])
        second = static_adapter(SourceType.NATIVE, [make_event("native:a")])

        result = await Aggregator().aggregate(DAY, "UTC", [first, second])

        assert [event.id for event in result.events()] == ["native:a"]
        assert result.duplicates_removed == 1

    async def test_persisted_routine_instance_wins_over_expansion(
        self, static_adapter, make_event, weekday_rule
    ):
        key = recurrence_key(weekday_rule.id, date(2024, 6, 5))
        stored = make_event(
            f"native:{key}",
            title="Wake Up",
            start=datetime(2024, 6, 5, 7, tzinfo=UTC),
            minutes=30,
            recurrence_key=key,
        )
        native = static_adapter(SourceType.NATIVE, [stored])
        aggregator = Aggregator(rule_source=StaticRuleSource([weekday_rule]))

        result = await aggregator.aggregate(DAY, "UTC", [native])

        events = list(result.events())
        assert [event.id for event in events] == [f"native:{key}"]
        assert result.duplicates_removed == 1
        assert result.routine_instances == 1

    async def test_all_day_event_keeps_its_date_in_any_zone(self, static_adapter, make_event):
        holiday = make_event(
            "google:primary:holiday",
            title="Holiday",
            start=datetime(2024, 6, 5, tzinfo=UTC),
            minutes=24 * 60,
            all_day=True,
        )
        evening = make_event("google:primary:late", start=datetime(2024, 6, 6, 2, tzinfo=UTC))
        google = static_adapter(SourceType.GOOGLE, [holiday, evening])
        window = DateWindow(start=date(2024, 6, 5), end=date(2024, 6, 6))

        result = await Aggregator().aggregate(window, "America/Los_Angeles", [google])

        assert result.buckets.keys() == ["2024-06-05"]
        assert [event.id for event in result.buckets["2024-06-05"]] == [
            "google:primary:holiday",
            "google:primary:late",
        ]

    async def test_events_outside_window_are_dropped(self, static_adapter, make_event):
        outside = make_event("native:later", start=datetime(2024, 6, 7, 9, tzinfo=UTC))
        native = static_adapter(SourceType.NATIVE, [make_event("native:a"), outside])

        result = await Aggregator().aggregate(DAY, "UTC", [native])

        assert [event.id for event in result.events()] == ["native:a"]

    async def test_fetch_range_covers_local_days(self, static_adapter):
        native = static_adapter(SourceType.NATIVE)

        await Aggregator().aggregate(DAY, "Asia/Tokyo", [native])

        assert native.calls == [
            (datetime(2024, 6, 4, 15, tzinfo=UTC), datetime(2024, 6, 5, 15, tzinfo=UTC))
        ]

    async def test_unknown_zone_falls_back_with_warning(self, static_adapter):
        aggregator = Aggregator(default_timezone="Europe/Berlin")

        result = await aggregator.aggregate(DAY, "Bad/Zone", [static_adapter(SourceType.NATIVE)])

        assert result.zone_name == "Europe/Berlin"
        assert "Bad/Zone" in result.timezone_warning

    async def test_malformed_mapping_is_dropped(self, static_adapter):
        good = {
            "id": "google:primary:m",
            "title": "From dict",
            "start": "2024-06-05T12:00:00Z",
            "end": "2024-06-05T13:00:00Z",
            "source_type": "google",
        }
        google = static_adapter(SourceType.GOOGLE, [good, {"id": "google:primary:broken"}])

        result = await Aggregator().aggregate(DAY, "UTC", [google])

        assert [event.id for event in result.events()] == ["google:primary:m"]
        assert result.diagnostics[0].dropped == 1

    async def test_cancel_aborts_in_flight_fetches(self, static_adapter):
        slow = static_adapter(SourceType.GOOGLE, delay=5.0)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)

        with pytest.raises(AggregationCancelledError):
            await Aggregator().aggregate(DAY, "UTC", [slow], cancel=cancel)

    async def test_failing_rule_source_is_reported(self, static_adapter):
        class BrokenRules(StaticRuleSource):
            async def list_rules(self):
                raise RuntimeError("rules unavailable")

        aggregator = Aggregator(rule_source=BrokenRules())

        result = await aggregator.aggregate(DAY, "UTC", [static_adapter(SourceType.NATIVE)])

        assert _statuses(result)["routines"] is AdapterStatus.FAILED
        assert result.routine_instances == 0

    async def test_adapters_are_fetched_concurrently(self, static_adapter, make_event):
        google = static_adapter(SourceType.GOOGLE, [make_event("google:primary:a")], delay=0.3)
        apple = static_adapter(
            SourceType.APPLE, [make_event("apple:home:b", title="Dinner")], delay=0.3
        )
        loop = asyncio.get_running_loop()
        started = loop.time()

        result = await Aggregator().aggregate(DAY, "UTC", [google, apple])

        assert loop.time() - started < 0.55
        assert {event.id for event in result.events()} == {"google:primary:a", "apple:home:b"}

    async def test_one_timeout_among_three_adapters(
        self, static_adapter, make_event, weekday_rule
    ):
        google = static_adapter(SourceType.GOOGLE, [make_event("google:primary:a")])
        outlook = static_adapter(
            SourceType.OUTLOOK, [make_event("outlook:work:b", title="Review")], delay=1.0
        )
        apple = static_adapter(SourceType.APPLE, [make_event("apple:home:c", title="Dinner")])
        aggregator = Aggregator(
            rule_source=StaticRuleSource([weekday_rule]), adapter_timeout_s=0.05
        )

        result = await aggregator.aggregate(DAY, "UTC", [google, outlook, apple])

        ids = {event.id for event in result.events()}
        assert {"google:primary:a", "apple:home:c"} <= ids
        assert "outlook:work:b" not in ids
        assert result.routine_instances == 1
        assert any(event_id.startswith("routine:") for event_id in ids)
        assert _statuses(result) == {
            "google": AdapterStatus.OK,
            "outlook": AdapterStatus.TIMEOUT,
            "apple": AdapterStatus.OK,
            "routines": AdapterStatus.OK,
        }

    async def test_cancel_reaches_adapter(self, static_adapter):
        class RecordingAdapter(static_adapter):
            cancelled = False

            async def fetch(self, start, end):
                try:
                    return await super().fetch(start, end)
                except asyncio.CancelledError:
                    self.cancelled = True
                    raise

        slow = RecordingAdapter(SourceType.GOOGLE, delay=5.0)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)

        with pytest.raises(AggregationCancelledError):
            await Aggregator().aggregate(DAY, "UTC", [slow], cancel=cancel)

        assert slow.cancelled

    async def test_routines_expand_in_home_zone(self, weekday_rule):
        aggregator = Aggregator(
            rule_source=StaticRuleSource([weekday_rule]), default_timezone="America/New_York"
        )

        result = await aggregator.aggregate(DAY, "Asia/Tokyo", [])

        routines = list(result.events())
        assert [event.start for event in routines] == [datetime(2024, 6, 5, 11, tzinfo=UTC)]
        assert result.buckets.keys() == ["2024-06-05"]
        assert result.routine_instances == 1

    async def test_routine_timezone_overrides_default(self, weekday_rule):
        aggregator = Aggregator(
            rule_source=StaticRuleSource([weekday_rule]),
            default_timezone="UTC",
            routine_timezone="America/New_York",
        )

        result = await aggregator.aggregate(DAY, "UTC", [])

        assert [event.start for event in result.events()] == [
            datetime(2024, 6, 5, 11, tzinfo=UTC)
        ]

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            Aggregator(adapter_timeout_s=0)


class TestMergeEvents:
    def test_higher_priority_source_wins_shared_key(self, make_event):
        routine = make_event("routine:k1", recurrence_key="k1")
        native = make_event("native:k1", recurrence_key="k1")
        google = make_event("google:primary:k1", recurrence_key="k1")

        survivors, removed = merge_events([google, routine, native])

        assert [event.id for event in survivors] == ["native:k1"]
        assert removed == 2

    def test_events_without_key_are_kept(self, make_event):
        survivors, removed = merge_events([make_event("native:a"), make_event("native:b")])
        assert {event.id for event in survivors} == {"native:a", "native:b"}
        assert removed == 0


class TestMergeCalendars:
    def test_same_meeting_across_calendars_is_folded(self, make_event):
        google = make_event(
            "google:primary:sync",
            title="Team Sync",
            source_calendar_name="Work",
            description="Agenda",
        )
        outlook = make_event(
            "outlook:work:sync",
            title="  team   SYNC ",
            start=datetime(2024, 6, 5, 9, 2, tzinfo=UTC),
            source_calendar_name="Calendar",
            description="Agenda with dial-in details",
        )

        survivors, removed = merge_events([outlook, google])

        assert removed == 1
        [merged] = survivors
        assert merged.id == "google:primary:sync"
        assert merged.description == "Agenda with dial-in details"
        assert merged.calendar_label == "2 calendars"
        assert [source.event_id for source in merged.merged_sources] == [
            "google:primary:sync",
            "outlook:work:sync",
        ]

    def test_same_calendar_events_stay_separate(self, make_event):
        first = make_event("google:primary:a", title="Standup", source_calendar_name="Work")
        second = make_event("google:primary:b", title="Standup", source_calendar_name="Work")

        survivors, removed = merge_calendars([first, second])

        assert sorted(event.id for event in survivors) == ["google:primary:a", "google:primary:b"]
        assert removed == 0

    def test_distant_starts_are_not_merged(self, make_event):
        google = make_event("google:primary:a", title="Standup")
        apple = make_event(
            "apple:home:a", title="Standup", start=datetime(2024, 6, 5, 9, 10, tzinfo=UTC)
        )

        survivors, _ = merge_calendars([google, apple])

        assert len(survivors) == 2
        assert all(event.merged_sources == () for event in survivors)

    def test_three_calendars_keep_unique_ids(self, make_event):
        copies = [
            make_event("google:primary:x", title="Offsite"),
            make_event("outlook:work:x", title="Offsite"),
            make_event("apple:home:x", title="Offsite"),
            make_event("google:primary:y", title="Offsite"),
        ]

        survivors, removed = merge_calendars(copies)

        ids = [event.id for event in survivors]
        assert len(ids) == len(set(ids)) == 2
        assert removed == 2
        assert survivors[0].calendar_label == "3 calendars"


def test_each_event_lands_in_exactly_one_bucket(make_event):
    long_event = make_event("native:long", start=datetime(2024, 6, 5, 22, tzinfo=UTC), minutes=240)
    buckets = bucket_events([long_event], "UTC")
    assert buckets.keys() == ["2024-06-05"]


def test_coerce_events_counts_unexpected_items(make_event):
    events, dropped = coerce_events("native", [make_event(), 42])
    assert len(events) == 1
    assert dropped == 1
