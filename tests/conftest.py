"""Shared fixtures for the zeitline test suite."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from zeitline.adapters.base import ProviderAdapter
from zeitline.adapters.native import NativeAdapter
from zeitline.engine.models import CanonicalEvent, RoutineRule, SourceType, source_type_from_id
from zeitline.storage.native import InMemoryNativeStore

DEFAULT_START = datetime(2024, 6, 5, 9, 0, tzinfo=UTC)


class StaticAdapter(ProviderAdapter):
    """Adapter double returning fixed events, optionally slow or failing."""

    def __init__(
        self,
        source_type: SourceType,
        events: Sequence[Any] = (),
        *,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.source_type = source_type
        self.events = list(events)
        self.error = error
        self.delay = delay
        self.calls: list[tuple[datetime, datetime]] = []
        self.closed = False

    async def fetch(self, start: datetime, end: datetime) -> list[Any]:
        self.calls.append((start, end))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.events)

    async def aclose(self) -> None:
        self.closed = True


def build_event(
    event_id: str = "native:evt-1",
    *,
    title: str = "Planning",
    start: datetime = DEFAULT_START,
    minutes: int = 60,
    source_type: SourceType | None = None,
    **fields: Any,
) -> CanonicalEvent:
    return CanonicalEvent(
        id=event_id,
        title=title,
        start=start,
        end=start + timedelta(minutes=minutes),
        source_type=source_type or source_type_from_id(event_id) or SourceType.NATIVE,
        **fields,
    )


@pytest.fixture
def make_event() -> Callable[..., CanonicalEvent]:
    """Factory for canonical events; the source is taken from the id prefix."""
    return build_event


@pytest.fixture
def static_adapter() -> type[StaticAdapter]:
    return StaticAdapter


@pytest.fixture
def weekday_rule() -> RoutineRule:
    return RoutineRule(
        id="wake-up",
        title="Wake Up",
        time_of_day="07:00",
        days_of_week="weekdays",
        duration_minutes=30,
    )


@pytest.fixture
def native_store() -> InMemoryNativeStore:
    return InMemoryNativeStore()


@pytest.fixture
def native_adapter(native_store: InMemoryNativeStore) -> NativeAdapter:
    return NativeAdapter(native_store)
