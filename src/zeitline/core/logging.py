"""Structured logging for Zeitline.

structlog's ProcessorFormatter renders every ``logging.getLogger(__name__)``
record, so modules log through the standard library and still get
structured output.

Formats:
- ``text``: colored console output
- ``json``: one JSON object per line

Each record carries the service name, the current request id (set by the
API middleware) and the OTel trace context.

With ``log_root`` set, JSON files are written to::

    {log_root}/zeitline/{service}.log   # application records
    {log_root}/http/{service}.log       # uvicorn and httpx transport records
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar, Token
from pathlib import Path

import structlog
from opentelemetry import trace

_request_id: ContextVar[str | None] = ContextVar("zeitline_request_id", default=None)
_service_name: str | None = None


def set_request_id(request_id: str | None) -> Token:
    """Bind *request_id* to the current async context."""
    return _request_id.set(request_id)


def reset_request_id(token: Token) -> None:
    _request_id.reset(token)


def get_request_id() -> str | None:
    return _request_id.get()


def add_request_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``service`` and ``request_id``."""
    event_dict["service"] = _service_name
    request_id = _request_id.get()
    if request_id is not None:
        event_dict["request_id"] = request_id
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Stamp records emitted inside a span with its trace and span ids."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = trace.format_trace_id(span_context.trace_id)
        event_dict["span_id"] = trace.format_span_id(span_context.span_id)
    return event_dict


# Third-party loggers that are quieted on the console and, with log_root,
# routed to the http log file.
_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
    "asyncpg",
)

_DIR_APP = "zeitline"
_DIR_HTTP = "http"


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    """Processors applied to every record before rendering."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_request_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    service_name: str = "zeitline",
) -> None:
    """Configure structured logging for the process.

    Safe to call more than once; each call replaces the root handlers.

    Parameters
    ----------
    level:
        Root log level name, case-insensitive ("debug", "INFO").
    fmt:
        ``"text"`` for the colored console renderer, ``"json"`` for JSON lines.
    log_root:
        Directory for JSON log files.  ``None`` logs to stderr only.
    service_name:
        Stamped on every record and used as the log file name.
    """
    global _service_name
    _service_name = service_name

    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(stderr_handler)
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))

    noisy = [logging.getLogger(name) for name in _NOISE_LOGGERS]
    for noisy_logger in noisy:
        noisy_logger.setLevel(logging.WARNING)

    if log_root is not None:
        base = Path(log_root)
        root.addHandler(_json_file_handler(base / _DIR_APP / f"{service_name}.log"))
        http_handler = _json_file_handler(base / _DIR_HTTP / f"{service_name}.log")
        for noisy_logger in noisy:
            noisy_logger.addHandler(http_handler)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
