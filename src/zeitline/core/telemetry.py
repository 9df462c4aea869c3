"""OpenTelemetry tracing for the aggregation engine.

Spans are always created through :func:`get_tracer`.  Until
:func:`init_telemetry` installs an SDK provider they are non-recording, so
engine code never checks whether tracing is on.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

TRACER_NAME = "zeitline"
OTLP_ENDPOINT_ENV = "OTEL_EXPORTER_OTLP_ENDPOINT"

_provider: TracerProvider | None = None


def init_telemetry(service_name: str = "zeitline") -> trace.Tracer:
    """Install an OTLP-exporting tracer provider when an endpoint is configured.

    The provider is installed at most once per process; later calls (for
    example one per app lifespan in tests) reuse it.

    Args:
        service_name: ``service.name`` resource attribute on exported spans.

    Returns:
        The zeitline tracer, recording only when a provider is installed.
    """
    global _provider

    endpoint = os.environ.get(OTLP_ENDPOINT_ENV)
    if not endpoint:
        logger.info("%s not set; spans are not exported", OTLP_ENDPOINT_ENV)
    elif _provider is None:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        _provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        _provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(_provider)
        logger.info("Exporting %s spans to %s", service_name, endpoint)
    return get_tracer()


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME)


def record_error(span: trace.Span, exc: BaseException) -> None:
    """Mark *span* as failed and attach *exc*."""
    span.set_status(trace.StatusCode.ERROR, str(exc))
    span.record_exception(exc)
