"""Request-scoped calendar state and the service facade the API and CLI use.

A :class:`CalendarContext` holds what one view request works with: the
window, the display zone, the aggregated buckets and a cancellation flag.
Contexts are never shared between requests, so concurrent callers cannot
observe each other's optimistic moves.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from zeitline.adapters.base import ProviderAdapter
from zeitline.adapters.native import NATIVE_ID_PREFIX, NativeAdapter, require_native_id
from zeitline.engine.aggregator import Aggregator, event_date_key
from zeitline.engine.models import (
    AggregationResult,
    CanonicalEvent,
    DateWindow,
    DayBuckets,
    DayLayout,
    DropResolution,
    ViewKind,
)
from zeitline.engine.positioning import (
    DEFAULT_FALLBACK_DURATION_MINUTES,
    DEFAULT_MIN_RENDER_MINUTES,
    position,
)
from zeitline.engine.recurrence import expand_rules
from zeitline.engine.reschedule import RescheduleResolver
from zeitline.engine.routines import RuleSource
from zeitline.engine.slots import SlotSuggestion, find_overlaps, suggest_slot
from zeitline.engine.timeutil import resolve_zone_or_default, to_zone_parts

logger = logging.getLogger(__name__)

SLOT_HORIZON_DAYS = 14


@dataclass
class CalendarContext:
    """State of one calendar view request."""

    window: DateWindow
    zone_name: str
    view: ViewKind | None = None
    timezone_warning: str | None = None
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    result: AggregationResult | None = None

    @property
    def buckets(self) -> DayBuckets:
        if self.result is None:
            raise RuntimeError("calendar context has not been loaded")
        return self.result.buckets

    def cancel_pending(self) -> None:
        """Abort an in-flight aggregation on this context."""
        self.cancel.set()


@dataclass
class MaterializeResult:
    created: list[str] = field(default_factory=list)
    existing: list[str] = field(default_factory=list)


class CalendarService:
    """Aggregates, lays out and edits calendar events.

    The native adapter is always active; remote adapters are read-only and
    routine instances come from *rule_source*.
    """

    def __init__(
        self,
        *,
        native: NativeAdapter,
        remote_adapters: Sequence[ProviderAdapter] = (),
        rule_source: RuleSource | None = None,
        default_timezone: str = "UTC",
        routine_timezone: str | None = None,
        adapter_timeout_s: float = 10.0,
        min_render_minutes: int = DEFAULT_MIN_RENDER_MINUTES,
        fallback_duration_minutes: int = DEFAULT_FALLBACK_DURATION_MINUTES,
        max_window_days: int = 92,
    ) -> None:
        self._native = native
        self._remote_adapters = list(remote_adapters)
        self._rule_source = rule_source
        self._aggregator = Aggregator(
            rule_source=rule_source,
            adapter_timeout_s=adapter_timeout_s,
            default_timezone=default_timezone,
            routine_timezone=routine_timezone,
        )
        self._resolver = RescheduleResolver(native)
        self._min_render_minutes = min_render_minutes
        self._fallback_duration_minutes = fallback_duration_minutes
        self.max_window_days = max_window_days

    @property
    def native(self) -> NativeAdapter:
        return self._native

    @property
    def default_timezone(self) -> str:
        return self._aggregator.default_timezone

    @property
    def routine_timezone(self) -> str:
        return self._aggregator.routine_timezone

    def active_adapters(self) -> list[ProviderAdapter]:
        return [self._native, *self._remote_adapters]

    def new_context(
        self,
        window: DateWindow,
        zone_name: str | None = None,
        *,
        view: ViewKind | None = None,
    ) -> CalendarContext:
        """Start a request context; an unknown zone falls back to the default."""
        if window.day_count > self.max_window_days:
            raise ValueError(
                f"Requested window spans {window.day_count} days; "
                f"the maximum is {self.max_window_days}"
            )
        zone, warning = resolve_zone_or_default(zone_name, self.default_timezone)
        return CalendarContext(window=window, zone_name=zone, view=view, timezone_warning=warning)

    async def load(self, ctx: CalendarContext) -> AggregationResult:
        """Aggregate every active source into *ctx*."""
        result = await self._aggregator.aggregate(
            ctx.window, ctx.zone_name, self.active_adapters(), cancel=ctx.cancel
        )
        if ctx.timezone_warning and not result.timezone_warning:
            result.timezone_warning = ctx.timezone_warning
        ctx.result = result
        return result

    def layout(self, ctx: CalendarContext) -> dict[str, DayLayout]:
        return position(
            ctx.buckets,
            ctx.zone_name,
            min_render_minutes=self._min_render_minutes,
            fallback_duration_minutes=self._fallback_duration_minutes,
        )

    async def reschedule(
        self,
        event_id: str,
        target_date_key: str,
        drop_offset_minutes: int | None,
        zone_name: str | None = None,
        *,
        ctx: CalendarContext | None = None,
    ) -> DropResolution:
        """Move an event to *target_date_key* at *drop_offset_minutes*.

        ``None`` keeps the event's time of day, as a month-view drop does.

        With a loaded *ctx* the move is applied to its buckets and rolled back
        if persisting fails.  Without one, the event is read from the native
        store into a scratch bucket first.
        """
        if ctx is not None and ctx.result is not None and ctx.buckets.find(event_id) is not None:
            return await self._resolver.apply(
                ctx.buckets, event_id, target_date_key, drop_offset_minutes, ctx.zone_name
            )

        require_native_id(event_id)
        zone = ctx.zone_name if ctx is not None else zone_name
        zone, _ = resolve_zone_or_default(zone, self.default_timezone)
        event = await self._native.get(event_id)
        buckets = ctx.buckets if ctx is not None and ctx.result is not None else DayBuckets()
        buckets.add(event_date_key(event, zone), event)
        return await self._resolver.apply(
            buckets, event_id, target_date_key, drop_offset_minutes, zone
        )

    async def materialize_routines(self, window: DateWindow) -> MaterializeResult:
        """Persist routine instances in *window* as native events.

        Days and wall-clock times are read in the routine home zone, whatever
        zone the caller is viewing from.

        Each instance is stored under ``native:<recurrence_key>``; instances
        already stored are left alone, so repeated calls create nothing new.
        """
        result = MaterializeResult()
        if self._rule_source is None:
            return result
        rules = await self._rule_source.list_enabled_rules()
        for instance in expand_rules(rules, window, self.routine_timezone):
            native_id = f"{NATIVE_ID_PREFIX}{instance.recurrence_key}"
            if await self._native.store.get(native_id) is not None:
                result.existing.append(native_id)
                continue
            await self._native.create(
                event_id=native_id,
                title=instance.title,
                start=instance.start,
                end=instance.end,
                description=instance.description,
                source_calendar_name=instance.source_calendar_name,
                recurrence_key=instance.recurrence_key,
            )
            result.created.append(native_id)
        logger.info(
            "Materialized routines for %s..%s: %d created, %d already present",
            window.start,
            window.end,
            len(result.created),
            len(result.existing),
        )
        return result

    async def get_event(self, event_id: str) -> CanonicalEvent:
        return await self._native.get(event_id)

    async def create_event(self, **fields: Any) -> CanonicalEvent:
        return await self._native.create(**fields)

    async def update_event(self, event_id: str, **changes: Any) -> CanonicalEvent:
        return await self._native.update(event_id, **changes)

    async def delete_event(self, event_id: str) -> None:
        await self._native.delete(event_id)

    async def suggest_slot(
        self,
        zone_name: str | None = None,
        *,
        duration_minutes: int = 60,
        now: datetime | None = None,
    ) -> tuple[SlotSuggestion, list[tuple[CanonicalEvent, CanonicalEvent]]]:
        """Suggest the next free hour across every source.

        Also returns the pairs of already overlapping events in the search
        horizon.
        """
        now = now or datetime.now(UTC)
        zone, _ = resolve_zone_or_default(zone_name, self.default_timezone)
        today = to_zone_parts(now, zone).local_date
        window = DateWindow(start=today, end=today + timedelta(days=SLOT_HORIZON_DAYS))
        result = await self._aggregator.aggregate(window, zone, self.active_adapters())
        events = list(result.events())
        suggestion = suggest_slot(
            events,
            zone,
            now,
            duration_minutes=duration_minutes,
            horizon_days=SLOT_HORIZON_DAYS,
        )
        return suggestion, find_overlaps(events)

    async def aclose(self) -> None:
        for adapter in self.active_adapters():
            await adapter.aclose()
