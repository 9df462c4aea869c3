"""Adapter over the native event store: the only writable source."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from zeitline.adapters.base import ProviderAdapter
from zeitline.engine.errors import (
    AdapterUnavailableError,
    EventNotFoundError,
    ImmutableSourceError,
    PersistenceFailureError,
)
from zeitline.engine.models import CanonicalEvent, SourceType, source_type_from_id
from zeitline.engine.timeutil import all_day_bounds
from zeitline.storage.native import NativeEventStore

logger = logging.getLogger(__name__)

NATIVE_ID_PREFIX = "native:"
NATIVE_CALENDAR_NAME = "Zeitline"

# Fields a caller may change through update(); ids and provenance are fixed.
UPDATABLE_FIELDS = frozenset(
    {"title", "start", "end", "all_day", "location", "description", "source_calendar_name"}
)


def new_native_id() -> str:
    return f"{NATIVE_ID_PREFIX}{uuid.uuid4().hex}"


def require_native_id(event_id: str) -> None:
    """Raise ``ImmutableSourceError`` when *event_id* belongs to another source."""
    source = source_type_from_id(event_id)
    if source is None:
        raise EventNotFoundError(event_id)
    if source is not SourceType.NATIVE:
        raise ImmutableSourceError(event_id, str(source))


class NativeAdapter(ProviderAdapter):
    """Reads and writes natively owned events."""

    source_type = SourceType.NATIVE

    def __init__(self, store: NativeEventStore) -> None:
        self._store = store

    @property
    def store(self) -> NativeEventStore:
        return self._store

    async def fetch(self, start: datetime, end: datetime) -> list[CanonicalEvent]:
        try:
            return await self._store.list_between(start, end)
        except PersistenceFailureError as exc:
            raise AdapterUnavailableError(self.name, str(exc)) from exc

    async def get(self, event_id: str) -> CanonicalEvent:
        require_native_id(event_id)
        event = await self._store.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    async def create(
        self,
        *,
        title: str,
        start: datetime,
        end: datetime,
        all_day: bool = False,
        location: str | None = None,
        description: str | None = None,
        source_calendar_name: str = NATIVE_CALENDAR_NAME,
        recurrence_key: str | None = None,
        event_id: str | None = None,
    ) -> CanonicalEvent:
        """Store a new native event.

        All-day boundaries are snapped to the dates they carry in the offset
        they were sent with.
        """
        if all_day:
            start, end = all_day_bounds(start, end)
        event = CanonicalEvent(
            id=event_id or new_native_id(),
            title=title,
            start=start,
            end=end,
            all_day=all_day,
            source_type=SourceType.NATIVE,
            source_calendar_name=source_calendar_name,
            location=location,
            description=description,
            recurrence_key=recurrence_key,
        )
        await self._store.put(event)
        logger.info("Created native event %s", event.id)
        return event

    async def update(self, event_id: str, **changes: Any) -> CanonicalEvent:
        """Apply *changes* to a native event and persist it.

        Raises
        ------
        ImmutableSourceError
            If *event_id* is not a native id.
        EventNotFoundError
            If no such native event exists.
        PersistenceFailureError
            If the store rejects the write.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        existing = await self.get(event_id)
        merged = {**existing.model_dump(), **{k: v for k, v in changes.items() if v is not None}}
        if merged["all_day"]:
            merged["start"], merged["end"] = all_day_bounds(merged["start"], merged["end"])
        updated = CanonicalEvent.model_validate(merged)
        await self._store.put(updated)
        logger.info("Updated native event %s", event_id)
        return updated

    async def delete(self, event_id: str) -> None:
        require_native_id(event_id)
        if not await self._store.delete(event_id):
            raise EventNotFoundError(event_id)
        logger.info("Deleted native event %s", event_id)
