"""Zeitline API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens the native store and provider clients
- Health endpoint at GET /api/health
- Event and routine routers
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from zeitline.api.deps import wire_service
from zeitline.api.middleware import register_error_handlers
from zeitline.api.routers.events import router as events_router
from zeitline.api.routers.routines import router as routines_router
from zeitline.config import ZeitlineConfig
from zeitline.core.telemetry import init_telemetry
from zeitline.engine.context import CalendarService
from zeitline.service import open_service

logger = logging.getLogger(__name__)


def create_app(
    config: ZeitlineConfig | None = None,
    service: CalendarService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Loaded configuration.  Defaults to built-in defaults (in-memory
        native store, no remote providers).
    service:
        Pre-built service.  When given, the lifespan does not open or close
        any resources; used by tests and embedding callers.
    """
    config = config or ZeitlineConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_telemetry("zeitline-api")
        if service is not None:
            yield
            return

        resources = await open_service(config)
        wire_service(app, resources.service)
        logger.info("Calendar service ready (default timezone %s)", config.engine.default_timezone)
        try:
            yield
        finally:
            await resources.aclose()

    app = FastAPI(
        title="Zeitline API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    if service is not None:
        wire_service(app, service)

    app.include_router(events_router)
    app.include_router(routines_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
