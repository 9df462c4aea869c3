"""Tests for native event stores.

Postgres tests mock the asyncpg pool; no real database required.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.conftest import build_event
from zeitline.engine.errors import PersistenceFailureError
from zeitline.storage.native import InMemoryNativeStore, PostgresNativeStore, decode_jsonb

pytestmark = pytest.mark.unit

DAY_START = datetime(2024, 6, 5, tzinfo=UTC)
DAY_END = datetime(2024, 6, 6, tzinfo=UTC)


def _make_pool(*, execute_return: str = "INSERT 0 1") -> MagicMock:
    """Build a minimal asyncpg pool mock."""
    pool = MagicMock()
    pool.execute = AsyncMock(return_value=execute_return)
    pool.fetchrow = AsyncMock(return_value=None)
    pool.fetch = AsyncMock(return_value=[])
    return pool


class TestInMemoryNativeStore:
    async def test_list_between_uses_half_open_overlap(self):
        before = build_event("native:before", start=datetime(2024, 6, 4, 23, tzinfo=UTC))
        spanning = build_event("native:span", start=datetime(2024, 6, 4, 23, 30, tzinfo=UTC))
        marker = build_event("native:marker", start=DAY_START, minutes=0)
        next_day = build_event("native:next", start=DAY_END)
        store = InMemoryNativeStore([before, spanning, marker, next_day])

        events = await store.list_between(DAY_START, DAY_END)

        assert [event.id for event in events] == ["native:span", "native:marker"]

    async def test_put_replaces_and_delete_reports_existence(self):
        store = InMemoryNativeStore()
        event = build_event("native:a")
        await store.put(event)
        await store.put(event.model_copy(update={"title": "Renamed"}))

        assert (await store.get("native:a")).title == "Renamed"
        assert await store.delete("native:a") is True
        assert await store.delete("native:a") is False
        assert await store.get("native:a") is None


class TestPostgresNativeStore:
    async def test_ensure_schema_creates_table(self):
        pool = _make_pool()
        await PostgresNativeStore(pool).ensure_schema()
        sql = pool.execute.call_args[0][0]
        assert "CREATE TABLE IF NOT EXISTS native_events" in sql

    async def test_put_upserts_json_payload(self):
        pool = _make_pool()
        event = build_event("native:a", recurrence_key="k1")

        await PostgresNativeStore(pool).put(event)

        sql, *args = pool.execute.call_args[0]
        assert "ON CONFLICT (id) DO UPDATE" in sql
        assert args[:4] == ["native:a", event.start, event.end, "k1"]
        assert json.loads(args[4])["title"] == "Planning"

    async def test_get_decodes_payload(self):
        pool = _make_pool()
        event = build_event("native:a")
        pool.fetchrow.return_value = {"payload": json.dumps(event.model_dump(mode="json"))}

        assert await PostgresNativeStore(pool).get("native:a") == event

    async def test_get_missing_returns_none(self):
        assert await PostgresNativeStore(_make_pool()).get("native:missing") is None

    async def test_list_between_passes_bounds(self):
        pool = _make_pool()
        event = build_event("native:a")
        pool.fetch.return_value = [{"payload": event.model_dump(mode="json")}]

        events = await PostgresNativeStore(pool).list_between(DAY_START, DAY_END)

        assert events == [event]
        _, start, end = pool.fetch.call_args[0]
        assert (start, end) == (DAY_START, DAY_END)

    @pytest.mark.parametrize(("status", "expected"), [("DELETE 1", True), ("DELETE 0", False)])
    async def test_delete_reports_row_count(self, status, expected):
        pool = _make_pool(execute_return=status)
        assert await PostgresNativeStore(pool).delete("native:a") is expected

    async def test_connection_errors_become_persistence_failures(self):
        pool = _make_pool()
        pool.execute.side_effect = OSError("connection refused")

        with pytest.raises(PersistenceFailureError) as exc_info:
            await PostgresNativeStore(pool).put(build_event("native:a"))

        assert exc_info.value.event_id == "native:a"
        assert "connection refused" in str(exc_info.value)


def test_decode_jsonb_accepts_text_and_objects():
    assert decode_jsonb('{"a": 1}') == {"a": 1}
    assert decode_jsonb({"a": 1}) == {"a": 1}
