"""Merge events from every active source into display-zone day buckets.

Aggregation steps:

1. Every adapter is fetched concurrently, each under its own timeout.  A
   failing or timed-out adapter contributes no events and is reported in the
   result's diagnostics; the others are unaffected.  The aggregator waits for
   all adapter tasks before merging.
2. Enabled routine rules are expanded in the routine home zone, so a 07:00
   routine stays at 07:00 where the user lives.  Instances whose display-zone
   date falls outside the window are dropped.
3. Results are de-duplicated by ``id`` and then by ``recurrence_key``.  When
   two events collide the one from the higher-priority source wins, so a
   routine instance already persisted as a native event is not shown twice.
   The same meeting reported by several calendars is then folded into one
   event that records every reporting calendar.
4. Survivors are bucketed by their local start date in the display zone and
   sorted by start, then source priority.

Merging runs on the calling task after all fetches complete, so no state is
shared between adapter tasks.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta

from opentelemetry import trace
from pydantic import ValidationError

from zeitline.adapters.base import ProviderAdapter
from zeitline.core.telemetry import get_tracer, record_error
from zeitline.engine.errors import AggregationCancelledError
from zeitline.engine.models import (
    AdapterDiagnostic,
    AdapterStatus,
    AggregationResult,
    CanonicalEvent,
    DateWindow,
    DayBuckets,
    SourceType,
)
from zeitline.engine.recurrence import expand_rules
from zeitline.engine.routines import RuleSource
from zeitline.engine.timeutil import (
    day_bounds,
    local_date_key,
    parse_date_key,
    resolve_zone_or_default,
    to_zone_parts,
)

logger = logging.getLogger(__name__)

DEFAULT_ADAPTER_TIMEOUT_SECONDS = 10.0
ROUTINE_SOURCE_NAME = "routines"

# UTC offsets span 26 hours, so a home-zone day can fall two days away in the
# display zone.
_ROUTINE_WINDOW_PADDING = timedelta(days=2)

# Start times within this many seconds of each other are treated as the same
# meeting when titles also match.
MERGE_TOLERANCE_SECONDS = 5 * 60

_WHITESPACE = re.compile(r"\s+")


def event_date_key(event: CanonicalEvent, zone_name: str) -> str:
    """Bucket key of *event* in *zone_name*.

    All-day events carry a calendar date rather than an instant, so they keep
    that date in every display zone.
    """
    if event.all_day:
        return event.start.date().isoformat()
    return local_date_key(to_zone_parts(event.start, zone_name))


def coerce_events(
    adapter: str, items: Iterable[CanonicalEvent | Mapping]
) -> tuple[list[CanonicalEvent], int]:
    """Validate adapter output, returning ``(events, dropped_count)``."""
    events: list[CanonicalEvent] = []
    dropped = 0
    for item in items:
        if isinstance(item, CanonicalEvent):
            events.append(item)
            continue
        if isinstance(item, Mapping):
            try:
                events.append(CanonicalEvent.model_validate(item))
                continue
            except ValidationError as exc:
                logger.warning(
                    "Dropping malformed event from %s: %s",
                    adapter,
                    exc.errors(include_url=False),
                )
        else:
            logger.warning("Dropping unexpected %s item from %s", type(item).__name__, adapter)
        dropped += 1
    return events, dropped


def _wins(candidate: CanonicalEvent, incumbent: CanonicalEvent) -> bool:
    return (candidate.source_type.priority, candidate.id) < (
        incumbent.source_type.priority,
        incumbent.id,
    )


def merge_events(events: Iterable[CanonicalEvent]) -> tuple[list[CanonicalEvent], int]:
    """De-duplicate by ``id``, then by ``recurrence_key``, then across calendars.

    Returns the surviving events and the number removed.
    """
    removed = 0
    by_id: dict[str, CanonicalEvent] = {}
    for event in events:
        incumbent = by_id.get(event.id)
        if incumbent is None:
            by_id[event.id] = event
            continue
        removed += 1
        if event.source_type.priority < incumbent.source_type.priority:
            by_id[event.id] = event
        logger.debug("Duplicate event id %s collapsed", event.id)

    survivors: list[CanonicalEvent] = []
    by_key: dict[str, CanonicalEvent] = {}
    for event in by_id.values():
        key = event.recurrence_key
        if key is None:
            survivors.append(event)
            continue
        incumbent = by_key.get(key)
        if incumbent is None:
            by_key[key] = event
            continue
        removed += 1
        if _wins(event, incumbent):
            by_key[key] = event
        logger.debug("Duplicate recurrence key %s collapsed", key)
    survivors.extend(by_key.values())

    merged, folded = merge_calendars(survivors)
    return merged, removed + folded


def _merge_key(event: CanonicalEvent) -> tuple[str, int, bool]:
    title = _WHITESPACE.sub(" ", event.title.strip().lower())
    half = MERGE_TOLERANCE_SECONDS // 2
    slot = int((event.start.timestamp() + half) // MERGE_TOLERANCE_SECONDS)
    return title, slot, event.all_day


def _calendar(event: CanonicalEvent) -> tuple[SourceType, str]:
    return event.source_type, event.source_calendar_name


def merge_calendars(events: Iterable[CanonicalEvent]) -> tuple[list[CanonicalEvent], int]:
    """Fold the same meeting reported by several calendars into one event.

    Events match on case- and whitespace-insensitive title plus start rounded
    to five minutes.  Two events from one calendar never merge.  The survivor
    is the highest-priority copy; it takes the longest description and lists
    every reporting calendar in ``merged_sources``.
    """
    clusters: dict[tuple[str, int, bool], list[list[CanonicalEvent]]] = {}
    for event in sorted(events, key=lambda e: (e.source_type.priority, e.id)):
        candidates = clusters.setdefault(_merge_key(event), [])
        for cluster in candidates:
            if all(_calendar(member) != _calendar(event) for member in cluster):
                cluster.append(event)
                break
        else:
            candidates.append([event])

    survivors: list[CanonicalEvent] = []
    removed = 0
    for candidates in clusters.values():
        for cluster in candidates:
            survivor = cluster[0]
            if len(cluster) > 1:
                descriptions = [m.description for m in cluster if m.description]
                survivor = survivor.model_copy(
                    update={
                        "description": max(descriptions, key=len) if descriptions else None,
                        "merged_sources": tuple(member.as_source() for member in cluster),
                    }
                )
                removed += len(cluster) - 1
                logger.debug(
                    "Merged %s into %s",
                    ", ".join(member.id for member in cluster[1:]),
                    survivor.id,
                )
            survivors.append(survivor)
    return survivors, removed


def bucket_events(
    events: Iterable[CanonicalEvent], zone_name: str, window: DateWindow | None = None
) -> DayBuckets:
    """Place each event under exactly one display-zone date key."""
    buckets = DayBuckets()
    for event in events:
        key = event_date_key(event, zone_name)
        if window is not None and parse_date_key(key) not in window:
            logger.debug("Event %s starts on %s, outside the window", event.id, key)
            continue
        buckets.add(key, event)
    return buckets


class Aggregator:
    """Fetches, expands, merges and buckets events for one request."""

    def __init__(
        self,
        *,
        rule_source: RuleSource | None = None,
        adapter_timeout_s: float = DEFAULT_ADAPTER_TIMEOUT_SECONDS,
        default_timezone: str = "UTC",
        routine_timezone: str | None = None,
    ) -> None:
        if adapter_timeout_s <= 0:
            raise ValueError("adapter_timeout_s must be positive")
        self._rule_source = rule_source
        self._adapter_timeout_s = adapter_timeout_s
        self._default_timezone = default_timezone
        self._routine_timezone = routine_timezone or default_timezone

    @property
    def default_timezone(self) -> str:
        return self._default_timezone

    @property
    def routine_timezone(self) -> str:
        """Zone whose wall clock routine times are written in."""
        return self._routine_timezone

    async def aggregate(
        self,
        window: DateWindow,
        zone_name: str | None,
        active_adapters: Sequence[ProviderAdapter],
        *,
        cancel: asyncio.Event | None = None,
    ) -> AggregationResult:
        """Aggregate *window* for display in *zone_name*.

        Raises
        ------
        AggregationCancelledError
            If *cancel* is set before every adapter has finished.  In-flight
            adapter calls are cancelled.
        """
        zone, timezone_warning = resolve_zone_or_default(zone_name, self._default_timezone)
        start, end = day_bounds(window.start, window.end, zone)

        with get_tracer().start_as_current_span("zeitline.aggregate") as span:
            span.set_attribute("zeitline.window.start", window.start.isoformat())
            span.set_attribute("zeitline.window.end", window.end.isoformat())
            span.set_attribute("zeitline.zone", zone)
            span.set_attribute("zeitline.adapter_count", len(active_adapters))

            outcomes = await self._fetch_all(active_adapters, start, end, cancel)
            diagnostics = [diagnostic for diagnostic, _ in outcomes]
            collected: list[CanonicalEvent] = [
                event for _, events in outcomes for event in events
            ]

            routine_events, routine_diagnostic = await self._expand_routines(window, zone)
            if routine_diagnostic is not None:
                diagnostics.append(routine_diagnostic)
            collected.extend(routine_events)

            merged, removed = merge_events(collected)
            buckets = bucket_events(merged, zone, window)
            span.set_attribute("zeitline.event_count", sum(len(v) for _, v in buckets.items()))
            span.set_attribute("zeitline.duplicates_removed", removed)

        result = AggregationResult(
            window=window,
            zone_name=zone,
            buckets=buckets,
            diagnostics=diagnostics,
            timezone_warning=timezone_warning,
            duplicates_removed=removed,
            routine_instances=len(routine_events),
        )
        failed = [diag.adapter for diag in diagnostics if diag.status is not AdapterStatus.OK]
        logger.info(
            "Aggregated %s..%s in %s: %d day(s) with events, %d duplicate(s) removed%s",
            window.start,
            window.end,
            zone,
            len(buckets),
            removed,
            f", degraded sources: {', '.join(failed)}" if failed else "",
        )
        return result

    async def _expand_routines(
        self, window: DateWindow, zone: str
    ) -> tuple[list[CanonicalEvent], AdapterDiagnostic | None]:
        if self._rule_source is None:
            return [], None
        try:
            rules = await self._rule_source.list_enabled_rules()
        except Exception as exc:
            logger.warning("Routine rule source failed: %s", exc, exc_info=True)
            return [], AdapterDiagnostic(
                adapter=ROUTINE_SOURCE_NAME,
                source_type=SourceType.ROUTINE,
                status=AdapterStatus.FAILED,
                error=str(exc),
            )
        padded = DateWindow(
            start=window.start - _ROUTINE_WINDOW_PADDING,
            end=window.end + _ROUTINE_WINDOW_PADDING,
        )
        events = [
            event
            for event in expand_rules(rules, padded, self._routine_timezone)
            if parse_date_key(event_date_key(event, zone)) in window
        ]
        return events, AdapterDiagnostic(
            adapter=ROUTINE_SOURCE_NAME,
            source_type=SourceType.ROUTINE,
            status=AdapterStatus.OK,
            event_count=len(events),
        )

    async def _fetch_all(
        self,
        adapters: Sequence[ProviderAdapter],
        start: datetime,
        end: datetime,
        cancel: asyncio.Event | None,
    ) -> list[tuple[AdapterDiagnostic, list[CanonicalEvent]]]:
        if not adapters:
            return []
        tasks = [
            asyncio.create_task(self._fetch_one(adapter, start, end), name=f"fetch:{adapter.name}")
            for adapter in adapters
        ]
        gathered = asyncio.gather(*tasks)
        if cancel is None:
            return list(await gathered)

        cancel_waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {gathered, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            gathered.cancel()
            raise
        finally:
            cancel_waiter.cancel()

        if gathered not in done:
            gathered.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await gathered
            logger.info("Aggregation cancelled; %d adapter call(s) aborted", len(tasks))
            raise AggregationCancelledError("aggregation cancelled before all adapters finished")
        return list(gathered.result())

    async def _fetch_one(
        self, adapter: ProviderAdapter, start: datetime, end: datetime
    ) -> tuple[AdapterDiagnostic, list[CanonicalEvent]]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        tracer = get_tracer()
        with tracer.start_as_current_span(f"zeitline.adapter.{adapter.name}") as span:
            span.set_attribute("zeitline.adapter", adapter.name)
            status = AdapterStatus.OK
            error: str | None = None
            raw: list = []
            try:
                async with asyncio.timeout(self._adapter_timeout_s):
                    raw = await adapter.fetch(start, end)
            except TimeoutError as exc:
                status = AdapterStatus.TIMEOUT
                error = f"timed out after {self._adapter_timeout_s:.1f}s"
                logger.warning("Adapter %s %s; continuing without it", adapter.name, error)
                record_error(span, exc)
            except Exception as exc:
                status = AdapterStatus.FAILED
                error = str(exc) or type(exc).__name__
                logger.warning("Adapter %s failed: %s; continuing without it", adapter.name, error)
                record_error(span, exc)

            events, dropped = coerce_events(adapter.name, raw)
            span.set_attribute("zeitline.adapter.status", str(status))
            span.set_attribute("zeitline.adapter.event_count", len(events))
            if status is AdapterStatus.OK:
                span.set_status(trace.StatusCode.OK)

        diagnostic = AdapterDiagnostic(
            adapter=adapter.name,
            source_type=adapter.source_type,
            status=status,
            event_count=len(events),
            dropped=dropped,
            error=error,
            elapsed_ms=round((loop.time() - started) * 1000, 1),
        )
        return diagnostic, events
