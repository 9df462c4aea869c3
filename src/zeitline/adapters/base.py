"""Provider adapter contract and shared HTTP plumbing.

Every adapter normalizes its provider's payloads into ``CanonicalEvent``
objects with absolute UTC instants before returning them.  Remote adapters
share :class:`HttpProviderAdapter`, which handles bearer authentication,
rate-limit retries and error mapping.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any, ClassVar

import httpx
from pydantic import BaseModel

from zeitline.engine.errors import AdapterUnavailableError, ProviderRequestError
from zeitline.engine.models import CanonicalEvent, SourceType

logger = logging.getLogger(__name__)

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0

TokenProvider = Callable[[], Awaitable[str]]


class CalendarRef(BaseModel):
    """One calendar (or account sub-calendar) an adapter reads from."""

    id: str
    name: str = ""
    selected: bool = True

    @property
    def label(self) -> str:
        return self.name or self.id


def selected_calendars(calendars: Iterable[CalendarRef]) -> list[CalendarRef]:
    """Return the selected calendars, or all of them when none is selected."""
    calendars = list(calendars)
    chosen = [calendar for calendar in calendars if calendar.selected]
    return chosen or calendars


def static_token(token: str) -> TokenProvider:
    """Wrap a fixed access token as a ``TokenProvider``."""

    async def _provide() -> str:
        return token

    return _provide


class ProviderAdapter(abc.ABC):
    """Uniform read interface over one event source."""

    source_type: ClassVar[SourceType]

    @property
    def name(self) -> str:
        return str(self.source_type)

    @abc.abstractmethod
    async def fetch(self, start: datetime, end: datetime) -> list[CanonicalEvent]:
        """Return events overlapping the half-open UTC range ``[start, end)``."""

    async def aclose(self) -> None:
        return None


def normalize_items[T](
    adapter: str,
    items: Iterable[T],
    convert: Callable[[T], CanonicalEvent | None],
) -> list[CanonicalEvent]:
    """Convert raw provider items, dropping malformed ones with a warning.

    ``convert`` may return ``None`` to skip an item deliberately (for example
    a cancelled occurrence).
    """
    events: list[CanonicalEvent] = []
    for item in items:
        try:
            event = convert(item)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Dropping malformed %s event: %s", adapter, exc)
            continue
        if event is not None:
            events.append(event)
    return events


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return response.reason_phrase


class HttpProviderAdapter(ProviderAdapter):
    """Adapter base for providers reached over HTTP."""

    def __init__(
        self,
        *,
        calendars: Iterable[CalendarRef],
        http_client: httpx.AsyncClient | None = None,
        timezone: str = "UTC",
    ) -> None:
        self._calendars = list(calendars)
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)
        self._timezone = timezone

    @property
    def calendars(self) -> list[CalendarRef]:
        return list(self._calendars)

    async def _auth_headers(self) -> dict[str, str]:
        return {}

    async def fetch(self, start: datetime, end: datetime) -> list[CanonicalEvent]:
        calendars = selected_calendars(self._calendars)
        if not calendars:
            return []
        events: list[CanonicalEvent] = []
        failures: list[AdapterUnavailableError] = []
        for calendar in calendars:
            try:
                events.extend(await self._fetch_calendar(calendar, start, end))
            except AdapterUnavailableError as exc:
                logger.warning("%s calendar %s failed: %s", self.name, calendar.label, exc)
                failures.append(exc)
        if len(failures) == len(calendars):
            raise failures[-1]
        return events

    @abc.abstractmethod
    async def _fetch_calendar(
        self, calendar: CalendarRef, start: datetime, end: datetime
    ) -> list[CanonicalEvent]:
        """Fetch and normalize one calendar's events."""

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        content: str | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        response = await self._request_once(method, url, params, content, extra_headers)

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        logger.debug("Ignoring non-numeric Retry-After: %s", retry_after_header)
            logger.warning(
                "%s rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                self.name,
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(method, url, params, content, extra_headers)
            retry += 1

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                self.name,
                status_code=response.status_code,
                message=_safe_error_message(response),
            )
        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        content: str | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Response:
        headers = await self._auth_headers()
        if extra_headers:
            headers.update(extra_headers)
        try:
            return await self._http_client.request(
                method, url, params=params, content=content, headers=headers
            )
        except httpx.HTTPError as exc:
            raise AdapterUnavailableError(self.name, f"request failed: {exc}") from exc

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(method, url, params=params, extra_headers=extra_headers)
        try:
            payload = response.json()
        except ValueError as exc:
            raise AdapterUnavailableError(self.name, "invalid JSON in response") from exc
        if not isinstance(payload, dict):
            raise AdapterUnavailableError(self.name, "unexpected JSON payload shape")
        return payload

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


class BearerProviderAdapter(HttpProviderAdapter):
    """HTTP adapter authenticated with an OAuth bearer token."""

    def __init__(
        self,
        *,
        token_provider: TokenProvider,
        calendars: Iterable[CalendarRef],
        http_client: httpx.AsyncClient | None = None,
        timezone: str = "UTC",
    ) -> None:
        super().__init__(calendars=calendars, http_client=http_client, timezone=timezone)
        self._token_provider = token_provider

    async def _auth_headers(self) -> dict[str, str]:
        try:
            token = await self._token_provider()
        except Exception as exc:
            raise AdapterUnavailableError(self.name, f"no access token: {exc}") from exc
        return {"Authorization": f"Bearer {token}"}
