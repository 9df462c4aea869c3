"""Persistence backends for natively owned events.

The native store is an opaque key-value store keyed by event id.  Each
backend serializes its own writes; the engine adds no locking on top.
Backend failures are surfaced as ``PersistenceFailureError``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Protocol

import asyncpg

from zeitline.engine.errors import PersistenceFailureError
from zeitline.engine.models import CanonicalEvent

logger = logging.getLogger(__name__)

NATIVE_EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS native_events (
    id TEXT PRIMARY KEY,
    starts_at TIMESTAMPTZ NOT NULL,
    ends_at TIMESTAMPTZ NOT NULL,
    recurrence_key TEXT,
    payload JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_native_events_range ON native_events (starts_at, ends_at);
"""


class NativeEventStore(Protocol):
    """Protocol for native event persistence backends."""

    async def get(self, event_id: str) -> CanonicalEvent | None:
        """Return the stored event or ``None``."""
        ...

    async def list_between(self, start: datetime, end: datetime) -> list[CanonicalEvent]:
        """Return events overlapping ``[start, end)`` (zero-length events at ``start`` included)."""
        ...

    async def put(self, event: CanonicalEvent) -> None:
        """Insert or replace *event*."""
        ...

    async def delete(self, event_id: str) -> bool:
        """Delete *event_id*; return whether it existed."""
        ...


def _overlaps(event: CanonicalEvent, start: datetime, end: datetime) -> bool:
    return event.start < end and (event.end > start or event.start == start)


class InMemoryNativeStore:
    """Process-local store used for development and tests."""

    def __init__(self, events: list[CanonicalEvent] | None = None) -> None:
        self._events: dict[str, CanonicalEvent] = {event.id: event for event in events or []}
        self._lock = asyncio.Lock()

    async def get(self, event_id: str) -> CanonicalEvent | None:
        return self._events.get(event_id)

    async def list_between(self, start: datetime, end: datetime) -> list[CanonicalEvent]:
        return sorted(
            (event for event in self._events.values() if _overlaps(event, start, end)),
            key=lambda event: (event.start, event.id),
        )

    async def put(self, event: CanonicalEvent) -> None:
        async with self._lock:
            self._events[event.id] = event

    async def delete(self, event_id: str) -> bool:
        async with self._lock:
            return self._events.pop(event_id, None) is not None


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB column value returned as text by asyncpg."""
    if isinstance(val, str):
        return json.loads(val)
    return val


class PostgresNativeStore:
    """Native events in a PostgreSQL ``native_events`` table (JSONB payload)."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        try:
            await self._pool.execute(NATIVE_EVENTS_DDL)
        except (asyncpg.PostgresError, OSError) as exc:
            message = f"Cannot create native_events table: {exc}"
            raise PersistenceFailureError(None, message) from exc

    @staticmethod
    def _row_to_event(row: Any) -> CanonicalEvent:
        return CanonicalEvent.model_validate(decode_jsonb(row["payload"]))

    async def get(self, event_id: str) -> CanonicalEvent | None:
        try:
            row = await self._pool.fetchrow(
                "SELECT payload FROM native_events WHERE id = $1", event_id
            )
        except (asyncpg.PostgresError, OSError) as exc:
            message = f"Cannot read event {event_id}: {exc}"
            raise PersistenceFailureError(event_id, message) from exc
        if row is None:
            return None
        return self._row_to_event(row)

    async def list_between(self, start: datetime, end: datetime) -> list[CanonicalEvent]:
        try:
            rows = await self._pool.fetch(
                """
                SELECT payload FROM native_events
                WHERE starts_at < $2 AND (ends_at > $1 OR starts_at = $1)
                ORDER BY starts_at, id
                """,
                start,
                end,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise PersistenceFailureError(None, f"Cannot list native events: {exc}") from exc
        return [self._row_to_event(row) for row in rows]

    async def put(self, event: CanonicalEvent) -> None:
        try:
            await self._pool.execute(
                """
                INSERT INTO native_events
                    (id, starts_at, ends_at, recurrence_key, payload, updated_at)
                VALUES ($1, $2, $3, $4, $5::jsonb, now())
                ON CONFLICT (id) DO UPDATE
                    SET starts_at = EXCLUDED.starts_at,
                        ends_at = EXCLUDED.ends_at,
                        recurrence_key = EXCLUDED.recurrence_key,
                        payload = EXCLUDED.payload,
                        updated_at = now()
                """,
                event.id,
                event.start,
                event.end,
                event.recurrence_key,
                json.dumps(event.model_dump(mode="json")),
            )
        except (asyncpg.PostgresError, OSError) as exc:
            message = f"Cannot persist event {event.id}: {exc}"
            raise PersistenceFailureError(event.id, message) from exc

    async def delete(self, event_id: str) -> bool:
        try:
            status = await self._pool.execute("DELETE FROM native_events WHERE id = $1", event_id)
        except (asyncpg.PostgresError, OSError) as exc:
            message = f"Cannot delete event {event_id}: {exc}"
            raise PersistenceFailureError(event_id, message) from exc
        return status.endswith(" 1")
