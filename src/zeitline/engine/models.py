"""Canonical data model for aggregated calendar events.

Every provider payload is normalized into a :class:`CanonicalEvent` at the
adapter boundary; nothing downstream branches on provider-specific fields.
"""

from __future__ import annotations

import bisect
import calendar
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from enum import StrEnum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

from zeitline.engine.timeutil import iter_days, parse_time_of_day


class SourceType(StrEnum):
    """Origin of an event.  Declaration order is the tie-break priority."""

    NATIVE = "native"
    ROUTINE = "routine"
    GOOGLE = "google"
    OUTLOOK = "outlook"
    APPLE = "apple"

    @property
    def priority(self) -> int:
        return SOURCE_PRIORITY.index(self)


SOURCE_PRIORITY: tuple[SourceType, ...] = tuple(SourceType)

WEEKDAY_NAMES: dict[str, int] = {
    name: index
    for index, names in enumerate(
        (
            ("mon", "monday"),
            ("tue", "tues", "tuesday"),
            ("wed", "wednesday"),
            ("thu", "thur", "thurs", "thursday"),
            ("fri", "friday"),
            ("sat", "saturday"),
            ("sun", "sunday"),
        )
    )
    for name in names
}

WEEKDAY_PRESETS: dict[str, frozenset[int]] = {
    "daily": frozenset(range(7)),
    "weekdays": frozenset(range(5)),
    "weekends": frozenset({5, 6}),
}


def source_type_from_id(event_id: str) -> SourceType | None:
    """Return the source encoded in a namespaced event id, if any."""
    prefix, sep, _ = event_id.partition(":")
    if not sep:
        return None
    try:
        return SourceType(prefix)
    except ValueError:
        return None


class EventSource(BaseModel):
    """One calendar that reported an event merged into another."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    source_type: SourceType
    calendar_name: str = ""


class CanonicalEvent(BaseModel):
    """Provider-agnostic event with absolute UTC instants.

    ``merged_sources`` is empty unless the same meeting arrived from several
    calendars, in which case it lists every one of them, this event included.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    source_type: SourceType
    source_calendar_name: str = ""
    location: str | None = None
    description: str | None = None
    recurrence_key: str | None = None
    merged_sources: tuple[EventSource, ...] = ()

    @field_validator("id", "title")
    @classmethod
    def _require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must be a non-empty string")
        return normalized

    @field_validator("start", "end")
    @classmethod
    def _normalize_instant(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @field_validator("location", "description")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @model_validator(mode="after")
    def _validate_order(self) -> CanonicalEvent:
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def is_mutable(self) -> bool:
        return self.source_type is SourceType.NATIVE

    @computed_field  # type: ignore[prop-decorator]
    @property
    def calendar_label(self) -> str:
        if len(self.merged_sources) > 1:
            return f"{len(self.merged_sources)} calendars"
        return self.source_calendar_name

    def as_source(self) -> EventSource:
        return EventSource(
            event_id=self.id,
            source_type=self.source_type,
            calendar_name=self.source_calendar_name,
        )


def event_sort_key(event: CanonicalEvent) -> tuple[datetime, int, str]:
    """Bucket ordering: start ascending, then source priority, then id."""
    return (event.start, event.source_type.priority, event.id)


class RoutineRule(BaseModel):
    """Declarative daily pattern expanded into concrete routine instances.

    ``time_of_day`` is a naive wall-clock time interpreted in the zone given
    at expansion time.  ``days_of_week`` uses ``date.weekday()`` numbering
    (0 = Monday).
    """

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    time_of_day: time
    days_of_week: frozenset[int]
    duration_minutes: int = Field(ge=0, le=1440)
    valid_from: date | None = None
    valid_until: date | None = None
    enabled: bool = True
    description: str | None = None
    calendar_name: str = "My Routine"

    @field_validator("id", "title")
    @classmethod
    def _require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must be a non-empty string")
        return normalized

    @field_validator("time_of_day", mode="before")
    @classmethod
    def _parse_time(cls, value: Any) -> time:
        return parse_time_of_day(value)

    @field_validator("days_of_week", mode="before")
    @classmethod
    def _parse_days(cls, value: Any) -> frozenset[int]:
        if isinstance(value, str):
            preset = WEEKDAY_PRESETS.get(value.strip().lower())
            if preset is None:
                value = [part for part in value.replace(",", " ").split() if part]
            else:
                return preset
        days: set[int] = set()
        for item in value:
            if isinstance(item, bool):
                raise ValueError(f"Invalid weekday: {item!r}")
            if isinstance(item, int):
                if not 0 <= item <= 6:
                    raise ValueError(f"Weekday index out of range: {item}")
                days.add(item)
                continue
            index = WEEKDAY_NAMES.get(str(item).strip().lower())
            if index is None:
                raise ValueError(f"Invalid weekday: {item!r}")
            days.add(index)
        if not days:
            raise ValueError("days_of_week must not be empty")
        return frozenset(days)

    @model_validator(mode="after")
    def _validate_validity_range(self) -> RoutineRule:
        if (
            self.valid_from is not None
            and self.valid_until is not None
            and self.valid_until < self.valid_from
        ):
            raise ValueError("valid_until must not be before valid_from")
        return self

    def applies_on(self, day: date) -> bool:
        if day.weekday() not in self.days_of_week:
            return False
        if self.valid_from is not None and day < self.valid_from:
            return False
        if self.valid_until is not None and day > self.valid_until:
            return False
        return True


class ViewKind(StrEnum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class DateWindow(BaseModel):
    """Inclusive ``[start, end]`` range of local calendar days."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @model_validator(mode="after")
    def _validate_order(self) -> DateWindow:
        if self.end < self.start:
            raise ValueError("window end must not be before window start")
        return self

    @classmethod
    def for_view(cls, view: ViewKind | str, anchor: date, *, week_start: int = 6) -> DateWindow:
        """Window shown by a day, week or month view containing *anchor*.

        ``week_start`` uses ``date.weekday()`` numbering; the default starts
        weeks on Sunday.
        """
        kind = ViewKind(view)
        if kind is ViewKind.DAY:
            return cls(start=anchor, end=anchor)
        if kind is ViewKind.WEEK:
            offset = (anchor.weekday() - week_start) % 7
            first = anchor - timedelta(days=offset)
            return cls(start=first, end=first + timedelta(days=6))
        last_day = calendar.monthrange(anchor.year, anchor.month)[1]
        return cls(start=anchor.replace(day=1), end=anchor.replace(day=last_day))

    @property
    def day_count(self) -> int:
        return (self.end - self.start).days + 1

    def days(self) -> Iterator[date]:
        return iter_days(self.start, self.end)

    def date_keys(self) -> list[str]:
        return [day.isoformat() for day in self.days()]

    def __contains__(self, day: object) -> bool:
        return isinstance(day, date) and self.start <= day <= self.end


class DayBuckets:
    """Mapping of display-zone ``YYYY-MM-DD`` keys to ordered event lists.

    Lists are kept sorted by :func:`event_sort_key`.  An event id appears in
    at most one bucket.
    """

    def __init__(self, buckets: dict[str, list[CanonicalEvent]] | None = None) -> None:
        self._buckets: dict[str, list[CanonicalEvent]] = {}
        for key, events in (buckets or {}).items():
            for event in events:
                self.add(key, event)

    def add(self, key: str, event: CanonicalEvent) -> None:
        entries = self._buckets.setdefault(key, [])
        keys = [event_sort_key(existing) for existing in entries]
        entries.insert(bisect.bisect_right(keys, event_sort_key(event)), event)

    def locate(self, event_id: str) -> tuple[str, int] | None:
        for key, events in self._buckets.items():
            for index, event in enumerate(events):
                if event.id == event_id:
                    return key, index
        return None

    def find(self, event_id: str) -> CanonicalEvent | None:
        location = self.locate(event_id)
        if location is None:
            return None
        key, index = location
        return self._buckets[key][index]

    def remove(self, event_id: str) -> tuple[str, CanonicalEvent] | None:
        location = self.locate(event_id)
        if location is None:
            return None
        key, index = location
        event = self._buckets[key].pop(index)
        if not self._buckets[key]:
            del self._buckets[key]
        return key, event

    def snapshot(self) -> dict[str, list[CanonicalEvent]]:
        return {key: list(events) for key, events in self._buckets.items()}

    def restore(self, snapshot: dict[str, list[CanonicalEvent]]) -> None:
        self._buckets = {key: list(events) for key, events in snapshot.items()}

    def events(self) -> Iterator[CanonicalEvent]:
        for key in sorted(self._buckets):
            yield from self._buckets[key]

    def get(self, key: str) -> list[CanonicalEvent]:
        return list(self._buckets.get(key, ()))

    def keys(self) -> list[str]:
        return sorted(self._buckets)

    def items(self) -> list[tuple[str, list[CanonicalEvent]]]:
        return [(key, list(self._buckets[key])) for key in sorted(self._buckets)]

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            key: [event.model_dump(mode="json") for event in events]
            for key, events in self.items()
        }

    def __getitem__(self, key: str) -> list[CanonicalEvent]:
        return list(self._buckets[key])

    def __contains__(self, key: object) -> bool:
        return key in self._buckets

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self._buckets)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DayBuckets):
            return NotImplemented
        return self._buckets == other._buckets

    def __repr__(self) -> str:
        counts = {key: len(events) for key, events in self.items()}
        return f"DayBuckets({counts!r})"


class PositionedEvent(BaseModel):
    """Geometry of a timed event on a 1440-minute vertical day scale.

    ``stored_duration_minutes`` is the real duration used for rescheduling;
    ``render_minutes`` is the clamped height used only for drawing.
    """

    event: CanonicalEvent
    date_key: str
    top_minutes: int
    span_minutes: int
    render_minutes: int
    stored_duration_minutes: int
    top_fraction: float
    height_fraction: float


class DayLayout(BaseModel):
    date_key: str
    all_day: list[CanonicalEvent] = Field(default_factory=list)
    timed: list[PositionedEvent] = Field(default_factory=list)


class DropResolution(BaseModel):
    """New instants computed for a dropped event."""

    event_id: str
    target_date_key: str
    offset_minutes: int
    new_start: datetime
    new_end: datetime


class AdapterStatus(StrEnum):
    OK = "ok"
    FAILED = "failed"
    TIMEOUT = "timeout"


class AdapterDiagnostic(BaseModel):
    """Outcome of one adapter fetch within an aggregation."""

    adapter: str
    source_type: SourceType
    status: AdapterStatus
    event_count: int = 0
    dropped: int = 0
    error: str | None = None
    elapsed_ms: float = 0.0


@dataclass
class AggregationResult:
    """Merged, de-duplicated, day-bucketed events for one request."""

    window: DateWindow
    zone_name: str
    buckets: DayBuckets
    diagnostics: list[AdapterDiagnostic] = field(default_factory=list)
    timezone_warning: str | None = None
    duplicates_removed: int = 0
    routine_instances: int = 0

    @property
    def partial(self) -> bool:
        return any(diag.status is not AdapterStatus.OK for diag in self.diagnostics)

    def events(self) -> Iterable[CanonicalEvent]:
        return self.buckets.events()
