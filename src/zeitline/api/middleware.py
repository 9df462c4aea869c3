"""API error handling and request tagging.

Registers FastAPI exception handlers that convert engine exceptions into
``{"error": {"code": "...", "message": "...", "details": {...}}}`` responses.

Status code mapping:
- ``ImmutableSourceError`` → 403 Forbidden
- ``EventNotFoundError`` → 404 Not Found
- ``InvalidTimezoneError`` and other ``ValueError`` → 400 Bad Request
- ``PersistenceFailureError`` → 503 Service Unavailable
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from zeitline.api.models import ErrorDetail, ErrorResponse
from zeitline.core.logging import reset_request_id, set_request_id
from zeitline.engine.errors import (
    EventNotFoundError,
    ImmutableSourceError,
    InvalidTimezoneError,
    PersistenceFailureError,
)

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _error(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_immutable_source(request: Request, exc: ImmutableSourceError) -> JSONResponse:
    """Return 403 when a non-native event is the target of a write."""
    logger.info("Rejected write to immutable event %s (%s)", exc.event_id, exc.source_type)
    return _error(
        403,
        "IMMUTABLE_SOURCE",
        str(exc),
        {"event_id": exc.event_id, "source_type": exc.source_type},
    )


async def _handle_event_not_found(request: Request, exc: EventNotFoundError) -> JSONResponse:
    logger.info("Event not found: %s", exc.event_id)
    return _error(404, "EVENT_NOT_FOUND", str(exc), {"event_id": exc.event_id})


async def _handle_invalid_timezone(request: Request, exc: InvalidTimezoneError) -> JSONResponse:
    logger.info("Invalid timezone: %s", exc.zone_name)
    return _error(400, "INVALID_TIMEZONE", str(exc), {"timezone": exc.zone_name})


async def _handle_persistence_failure(
    request: Request, exc: PersistenceFailureError
) -> JSONResponse:
    """Return 503 when the native store could not save a change."""
    logger.warning("Persistence failure for %s: %s", exc.event_id, exc)
    details = {"event_id": exc.event_id} if exc.event_id else None
    return _error(503, "PERSISTENCE_FAILURE", str(exc), details)


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Binds a request id to the logging context and echoes it back."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            reset_request_id(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above Starlette's exception handler layer so exceptions without a
    registered handler still get the standard error envelope.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Call this from ``create_app()`` after constructing the ``FastAPI`` instance.
    """
    app.add_exception_handler(ImmutableSourceError, _handle_immutable_source)  # type: ignore[arg-type]
    app.add_exception_handler(EventNotFoundError, _handle_event_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(InvalidTimezoneError, _handle_invalid_timezone)  # type: ignore[arg-type]
    app.add_exception_handler(PersistenceFailureError, _handle_persistence_failure)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
    app.add_middleware(RequestIdMiddleware)
