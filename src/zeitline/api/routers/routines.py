"""Routine materialization endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from zeitline.api.deps import get_service
from zeitline.api.models import ApiMeta, ApiResponse
from zeitline.api.models.events import MaterializeRequest, MaterializeResponse
from zeitline.engine.context import CalendarService
from zeitline.engine.models import DateWindow

router = APIRouter(prefix="/api/routines", tags=["routines"])
logger = logging.getLogger(__name__)


@router.post("/materialize", response_model=ApiResponse[MaterializeResponse])
async def materialize_routines(
    request: MaterializeRequest,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[MaterializeResponse]:
    """Persist routine instances in the window as editable native events.

    Safe to repeat: instances that already exist are reported, not duplicated.
    """
    window = DateWindow(start=request.start, end=request.end)
    if window.day_count > service.max_window_days:
        raise ValueError(
            f"Requested window spans {window.day_count} days; "
            f"the maximum is {service.max_window_days}"
        )
    result = await service.materialize_routines(window)
    return ApiResponse[MaterializeResponse](
        data=MaterializeResponse(created=result.created, existing=result.existing),
        meta=ApiMeta(created_count=len(result.created), existing_count=len(result.existing)),
    )
