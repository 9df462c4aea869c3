"""Error taxonomy for the aggregation and positioning engine.

Per-item failures (one adapter, one event) are isolated by the aggregator and
only ever logged.  Request-level failures propagate to the caller:

- ``AdapterUnavailableError``: a provider could not be reached or refused the
  request.  Non-fatal inside an aggregation.
- ``MalformedEventError``: one event could not be normalized.  Dropped.
- ``InvalidTimezoneError``: an unknown IANA zone name.  Callers fall back to
  the configured default zone.
- ``ImmutableSourceError``: mutation attempted on an event not owned natively.
- ``PersistenceFailureError``: the native store rejected a write.
- ``EventNotFoundError``: no event with the requested id.
"""

from __future__ import annotations


class ZeitlineError(Exception):
    """Base class for all engine errors."""


class AdapterUnavailableError(ZeitlineError):
    """Raised when a provider adapter cannot produce events."""

    def __init__(self, adapter: str, message: str) -> None:
        self.adapter = adapter
        super().__init__(f"{adapter}: {message}")


class ProviderRequestError(AdapterUnavailableError):
    """Raised when a provider API answers with a non-success status."""

    def __init__(self, adapter: str, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.error_message = message
        super().__init__(adapter, f"request failed ({status_code}): {message}")


class MalformedEventError(ZeitlineError, ValueError):
    """Raised when a single source event cannot be normalized."""


class InvalidTimezoneError(ZeitlineError, ValueError):
    """Raised for an unrecognized IANA timezone identifier."""

    def __init__(self, zone_name: str) -> None:
        self.zone_name = zone_name
        super().__init__(f"Unknown timezone: {zone_name!r}")


class ImmutableSourceError(ZeitlineError):
    """Raised when a non-native event is the target of a mutation."""

    def __init__(self, event_id: str, source_type: str) -> None:
        self.event_id = event_id
        self.source_type = source_type
        super().__init__(
            f"Unauthorized: immutable source. Event {event_id!r} comes from "
            f"{source_type} and cannot be modified"
        )


class PersistenceFailureError(ZeitlineError):
    """Raised when the native store fails to persist a change."""

    def __init__(self, event_id: str | None, message: str) -> None:
        self.event_id = event_id
        super().__init__(message)


class EventNotFoundError(ZeitlineError, KeyError):
    """Raised when an event id does not resolve to a known event."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(event_id)

    def __str__(self) -> str:
        return f"Event not found: {self.event_id}"


class AggregationCancelledError(ZeitlineError):
    """Raised when an aggregation is cancelled through its cancel signal."""
