"""Tests for the native adapter."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from zeitline.adapters.native import NATIVE_CALENDAR_NAME, NativeAdapter, require_native_id
from zeitline.engine.errors import (
    AdapterUnavailableError,
    EventNotFoundError,
    ImmutableSourceError,
    PersistenceFailureError,
)
from zeitline.engine.models import SourceType

pytestmark = pytest.mark.unit

NINE = datetime(2024, 6, 5, 9, tzinfo=UTC)
TEN = datetime(2024, 6, 5, 10, tzinfo=UTC)


class TestNativeAdapter:
    async def test_create_assigns_native_id(self, native_adapter):
        event = await native_adapter.create(title="Focus", start=NINE, end=TEN)

        assert event.id.startswith("native:")
        assert event.source_type is SourceType.NATIVE
        assert event.source_calendar_name == NATIVE_CALENDAR_NAME
        assert await native_adapter.get(event.id) == event

    async def test_fetch_returns_overlapping_events(self, native_adapter):
        inside = await native_adapter.create(title="Inside", start=NINE, end=TEN)
        await native_adapter.create(
            title="Tomorrow",
            start=datetime(2024, 6, 6, 9, tzinfo=UTC),
            end=datetime(2024, 6, 6, 10, tzinfo=UTC),
        )

        events = await native_adapter.fetch(
            datetime(2024, 6, 5, tzinfo=UTC), datetime(2024, 6, 6, tzinfo=UTC)
        )

        assert events == [inside]

    async def test_update_changes_allowed_fields(self, native_adapter):
        event = await native_adapter.create(title="Focus", start=NINE, end=TEN)

        updated = await native_adapter.update(event.id, title="Deep work", location="Library")

        assert updated.id == event.id
        assert (updated.title, updated.location) == ("Deep work", "Library")
        assert (await native_adapter.get(event.id)).title == "Deep work"

    async def test_all_day_create_keeps_local_date(self, native_adapter):
        tokyo = timezone(timedelta(hours=9))

        event = await native_adapter.create(
            title="Holiday",
            start=datetime(2024, 6, 5, tzinfo=tokyo),
            end=datetime(2024, 6, 6, tzinfo=tokyo),
            all_day=True,
        )

        assert event.start == datetime(2024, 6, 5, tzinfo=UTC)
        assert event.end == datetime(2024, 6, 6, tzinfo=UTC)

    async def test_all_day_update_snaps_to_dates(self, native_adapter):
        event = await native_adapter.create(title="Focus", start=NINE, end=TEN)

        updated = await native_adapter.update(event.id, all_day=True)

        assert updated.all_day
        assert (updated.start, updated.end) == (
            datetime(2024, 6, 5, tzinfo=UTC),
            datetime(2024, 6, 6, tzinfo=UTC),
        )

    async def test_update_rejects_unknown_fields(self, native_adapter):
        event = await native_adapter.create(title="Focus", start=NINE, end=TEN)
        with pytest.raises(ValueError, match="source_type"):
            await native_adapter.update(event.id, source_type="google")

    async def test_update_rejects_remote_events(self, native_adapter):
        with pytest.raises(ImmutableSourceError):
            await native_adapter.update("google:primary:abc", title="Hijack")

    async def test_delete(self, native_adapter):
        event = await native_adapter.create(title="Focus", start=NINE, end=TEN)
        await native_adapter.delete(event.id)
        with pytest.raises(EventNotFoundError):
            await native_adapter.get(event.id)
        with pytest.raises(EventNotFoundError):
            await native_adapter.delete(event.id)

    async def test_store_failure_surfaces_as_unavailable(self):
        store = AsyncMock()
        store.list_between.side_effect = PersistenceFailureError(None, "pool closed")

        with pytest.raises(AdapterUnavailableError, match="pool closed"):
            await NativeAdapter(store).fetch(NINE, TEN)


class TestRequireNativeId:
    def test_native_id_passes(self):
        require_native_id("native:abc")

    @pytest.mark.parametrize("event_id", ["routine:abc", "apple:home:uid", "outlook:cal:1"])
    def test_other_sources_are_immutable(self, event_id):
        with pytest.raises(ImmutableSourceError):
            require_native_id(event_id)

    @pytest.mark.parametrize("event_id", ["abc", "nope:abc"])
    def test_unknown_prefix_is_not_found(self, event_id):
        with pytest.raises(EventNotFoundError):
            require_native_id(event_id)
