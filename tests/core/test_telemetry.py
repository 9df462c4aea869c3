"""Tests for OpenTelemetry initialization."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from opentelemetry import trace

from zeitline.core.telemetry import get_tracer, init_telemetry, record_error

pytestmark = pytest.mark.unit


def test_no_endpoint_returns_noop_tracer(monkeypatch):
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)

    tracer = init_telemetry("zeitline-test")

    with tracer.start_as_current_span("aggregate") as span:
        assert not span.is_recording()
    assert get_tracer() is not None


def test_record_error_marks_span():
    span = MagicMock()
    exc = RuntimeError("google timed out")

    record_error(span, exc)

    span.set_status.assert_called_once_with(trace.StatusCode.ERROR, "google timed out")
    span.record_exception.assert_called_once_with(exc)
