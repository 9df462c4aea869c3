"""Request and response models for the event endpoints."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field, model_validator

from zeitline.engine.models import AdapterDiagnostic, CanonicalEvent, DayLayout


class EventsResponse(BaseModel):
    """Aggregated events for a window, bucketed by display-zone date."""

    start: date
    end: date
    timezone: str
    buckets: dict[str, list[CanonicalEvent]]
    layout: dict[str, DayLayout] | None = None
    diagnostics: list[AdapterDiagnostic] = Field(default_factory=list)


class RescheduleRequest(BaseModel):
    event_id: str
    target_date: str = Field(description="Target day as YYYY-MM-DD in the display zone")
    drop_offset_minutes: int | None = Field(
        default=None,
        description=(
            "Minutes after local midnight, clamped to 0..1439; omit for a month-view "
            "drop that keeps the event's time of day"
        ),
    )
    tz: str | None = None


class RescheduleResponse(BaseModel):
    event_id: str
    target_date: str
    offset_minutes: int
    new_start: datetime
    new_end: datetime


class MaterializeRequest(BaseModel):
    """Days to materialize, read in the routine home zone."""

    start: date
    end: date

    @model_validator(mode="after")
    def _validate_order(self) -> MaterializeRequest:
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class MaterializeResponse(BaseModel):
    created: list[str]
    existing: list[str]


class EventCreateRequest(BaseModel):
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    location: str | None = None
    description: str | None = None
    calendar_name: str | None = None


class EventUpdateRequest(BaseModel):
    """Partial update; omitted or null fields are left unchanged."""

    title: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool | None = None
    location: str | None = None
    description: str | None = None


class SuggestSlotRequest(BaseModel):
    tz: str | None = None
    duration_minutes: int = Field(default=60, ge=1, le=1440)


class SuggestSlotResponse(BaseModel):
    start: datetime
    end: datetime
    fallback: bool
    conflicts: list[tuple[str, str]] = Field(default_factory=list)
