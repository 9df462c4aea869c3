"""FastAPI dependencies for the Zeitline API."""

from __future__ import annotations

from fastapi import FastAPI

from zeitline.engine.context import CalendarService


def get_service() -> CalendarService:
    """Dependency stub; overridden at app startup or in tests."""
    raise RuntimeError("CalendarService not initialized")


def wire_service(app: FastAPI, service: CalendarService) -> None:
    """Route every ``Depends(get_service)`` to *service*."""
    app.dependency_overrides[get_service] = lambda: service
    app.state.service = service
