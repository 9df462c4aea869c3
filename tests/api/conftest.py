"""Shared fixtures for Zeitline API tests.

The app is built around an in-memory service: a native store, one static
Google calendar and a weekday wake-up routine.
"""

from __future__ import annotations

from datetime import UTC, datetime

import httpx
import pytest
from fastapi import FastAPI

from tests.conftest import StaticAdapter, build_event
from zeitline.adapters.native import NativeAdapter
from zeitline.api.app import create_app
from zeitline.engine.context import CalendarService
from zeitline.engine.models import SourceType
from zeitline.engine.routines import StaticRuleSource
from zeitline.storage.native import InMemoryNativeStore

GOOGLE_EVENT_ID = "google:primary:standup"


@pytest.fixture
def service(weekday_rule) -> CalendarService:
    google = StaticAdapter(
        SourceType.GOOGLE,
        [
            build_event(
                GOOGLE_EVENT_ID,
                title="Standup",
                start=datetime(2024, 6, 5, 9, 30, tzinfo=UTC),
                minutes=15,
            )
        ],
    )
    return CalendarService(
        native=NativeAdapter(InMemoryNativeStore()),
        remote_adapters=[google],
        rule_source=StaticRuleSource([weekday_rule]),
        default_timezone="UTC",
    )


@pytest.fixture
def app(service: CalendarService) -> FastAPI:
    return create_app(service=service)


@pytest.fixture
async def client(app: FastAPI):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
