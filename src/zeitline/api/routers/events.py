"""Event read, layout, reschedule and native CRUD endpoints."""

from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from zeitline.adapters.native import NATIVE_CALENDAR_NAME
from zeitline.api.deps import get_service
from zeitline.api.models import ApiMeta, ApiResponse
from zeitline.api.models.events import (
    EventCreateRequest,
    EventsResponse,
    EventUpdateRequest,
    RescheduleRequest,
    RescheduleResponse,
    SuggestSlotRequest,
    SuggestSlotResponse,
)
from zeitline.engine.context import CalendarService
from zeitline.engine.models import CanonicalEvent, DateWindow, ViewKind

router = APIRouter(prefix="/api/events", tags=["events"])
logger = logging.getLogger(__name__)


def _resolve_window(
    start: date | None,
    end: date | None,
    view: ViewKind | None,
    anchor: date | None,
) -> DateWindow:
    if view is not None:
        pivot = anchor or start
        if pivot is None:
            raise HTTPException(status_code=400, detail="anchor is required when view is given")
        return DateWindow.for_view(view, pivot)
    if start is None or end is None:
        raise HTTPException(status_code=400, detail="start and end are required")
    if end < start:
        raise HTTPException(status_code=400, detail="end must not be before start")
    return DateWindow(start=start, end=end)


@router.get("", response_model=ApiResponse[EventsResponse])
async def list_events(
    start: date | None = Query(None, description="Inclusive first day (YYYY-MM-DD)"),
    end: date | None = Query(None, description="Inclusive last day (YYYY-MM-DD)"),
    tz: str | None = Query(None, description="Display timezone (IANA)"),
    view: ViewKind | None = Query(None, description="Derive the window from a view"),
    anchor: date | None = Query(None, description="Day the view is anchored on"),
    layout: bool = Query(False, description="Include positioned timed events"),
    service: CalendarService = Depends(get_service),
) -> ApiResponse[EventsResponse]:
    """Aggregate every source over the window, bucketed by display-zone day."""
    window = _resolve_window(start, end, view, anchor)
    ctx = service.new_context(window, tz, view=view)
    result = await service.load(ctx)

    data = EventsResponse(
        start=window.start,
        end=window.end,
        timezone=result.zone_name,
        buckets={key: events for key, events in result.buckets.items()},
        layout=service.layout(ctx) if layout else None,
        diagnostics=result.diagnostics,
    )
    meta = ApiMeta(
        timezone_warning=result.timezone_warning,
        partial=result.partial,
        duplicates_removed=result.duplicates_removed,
        routine_instances=result.routine_instances,
    )
    return ApiResponse[EventsResponse](data=data, meta=meta)


@router.post("/reschedule", response_model=ApiResponse[RescheduleResponse])
async def reschedule_event(
    request: RescheduleRequest,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[RescheduleResponse]:
    """Persist a drag/drop move of a native event."""
    resolution = await service.reschedule(
        request.event_id,
        request.target_date,
        request.drop_offset_minutes,
        request.tz,
    )
    return ApiResponse[RescheduleResponse](
        data=RescheduleResponse(
            event_id=resolution.event_id,
            target_date=resolution.target_date_key,
            offset_minutes=resolution.offset_minutes,
            new_start=resolution.new_start,
            new_end=resolution.new_end,
        )
    )


@router.post("/suggest-slot", response_model=ApiResponse[SuggestSlotResponse])
async def suggest_slot(
    request: SuggestSlotRequest,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[SuggestSlotResponse]:
    suggestion, overlaps = await service.suggest_slot(
        request.tz, duration_minutes=request.duration_minutes
    )
    return ApiResponse[SuggestSlotResponse](
        data=SuggestSlotResponse(
            start=suggestion.start,
            end=suggestion.end,
            fallback=suggestion.fallback,
            conflicts=[(first.id, second.id) for first, second in overlaps],
        )
    )


@router.post("", response_model=ApiResponse[CanonicalEvent], status_code=201)
async def create_event(
    request: EventCreateRequest,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[CanonicalEvent]:
    event = await service.create_event(
        title=request.title,
        start=request.start,
        end=request.end,
        all_day=request.all_day,
        location=request.location,
        description=request.description,
        source_calendar_name=request.calendar_name or NATIVE_CALENDAR_NAME,
    )
    return ApiResponse[CanonicalEvent](data=event)


@router.get("/{event_id:path}", response_model=ApiResponse[CanonicalEvent])
async def get_event(
    event_id: str,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[CanonicalEvent]:
    return ApiResponse[CanonicalEvent](data=await service.get_event(event_id))


@router.patch("/{event_id:path}", response_model=ApiResponse[CanonicalEvent])
async def update_event(
    event_id: str,
    request: EventUpdateRequest,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[CanonicalEvent]:
    changes = request.model_dump(exclude_none=True)
    event = await service.update_event(event_id, **changes)
    return ApiResponse[CanonicalEvent](data=event)


@router.delete("/{event_id:path}", status_code=204)
async def delete_event(
    event_id: str,
    service: CalendarService = Depends(get_service),
) -> Response:
    await service.delete_event(event_id)
    return Response(status_code=204)

