"""Response envelopes shared by every Zeitline endpoint.

Success: ``{"data": T, "meta": {...}}``.
Failure: ``{"error": {"code": ..., "message": ..., "details": ...}}``, where
``code`` is a stable SCREAMING_SNAKE identifier such as ``IMMUTABLE_SOURCE``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ApiMeta(BaseModel):
    """Free-form response metadata (timezone warnings, dedup counts, ...)."""

    model_config = ConfigDict(extra="allow")


class ApiResponse[T](BaseModel):
    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail
