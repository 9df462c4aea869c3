"""Build a :class:`CalendarService` from a :class:`ZeitlineConfig`."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import asyncpg
import httpx

from zeitline.adapters.base import DEFAULT_HTTP_TIMEOUT_SECONDS, ProviderAdapter, static_token
from zeitline.adapters.caldav import CalDAVCalendarAdapter
from zeitline.adapters.google import GOOGLE_CALENDAR_API_BASE_URL, GoogleCalendarAdapter
from zeitline.adapters.native import NativeAdapter
from zeitline.adapters.outlook import GRAPH_API_BASE_URL, OutlookCalendarAdapter
from zeitline.config import ConfigError, ZeitlineConfig
from zeitline.engine.context import CalendarService
from zeitline.engine.models import RoutineRule
from zeitline.engine.routines import StaticRuleSource, load_onboarding_rules
from zeitline.storage.native import InMemoryNativeStore, NativeEventStore, PostgresNativeStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceResources:
    """A built service plus the connections it owns."""

    service: CalendarService
    http_client: httpx.AsyncClient
    pool: asyncpg.Pool | None = None

    async def aclose(self) -> None:
        await self.service.aclose()
        await self.http_client.aclose()
        if self.pool is not None:
            await self.pool.close()
            logger.info("Native event pool closed")


def collect_rules(config: ZeitlineConfig) -> list[RoutineRule]:
    """Inline rules followed by onboarding-derived rules; inline ids win."""
    rules = list(config.routines.rules)
    if config.routines.onboarding_file is not None:
        try:
            derived = load_onboarding_rules(config.routines.onboarding_file)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        known = {rule.id for rule in rules}
        rules.extend(rule for rule in derived if rule.id not in known)
    return rules


def build_remote_adapters(
    config: ZeitlineConfig, http_client: httpx.AsyncClient
) -> list[ProviderAdapter]:
    zone = config.engine.default_timezone
    adapters: list[ProviderAdapter] = []
    if config.google.enabled:
        adapters.append(
            GoogleCalendarAdapter(
                base_url=config.google.base_url or GOOGLE_CALENDAR_API_BASE_URL,
                token_provider=static_token(config.google.access_token or ""),
                calendars=config.google.calendars,
                http_client=http_client,
                timezone=zone,
            )
        )
    if config.outlook.enabled:
        adapters.append(
            OutlookCalendarAdapter(
                base_url=config.outlook.base_url or GRAPH_API_BASE_URL,
                token_provider=static_token(config.outlook.access_token or ""),
                calendars=config.outlook.calendars,
                http_client=http_client,
                timezone=zone,
            )
        )
    if config.caldav.enabled:
        adapters.append(
            CalDAVCalendarAdapter(
                username=config.caldav.username or "",
                password=config.caldav.password or "",
                server_url=config.caldav.server_url,
                calendars=config.caldav.calendars,
                http_client=http_client,
                timezone=zone,
            )
        )
    return adapters


def build_service(
    config: ZeitlineConfig,
    *,
    store: NativeEventStore,
    http_client: httpx.AsyncClient,
) -> CalendarService:
    engine = config.engine
    return CalendarService(
        native=NativeAdapter(store),
        remote_adapters=build_remote_adapters(config, http_client),
        rule_source=StaticRuleSource(collect_rules(config)),
        default_timezone=engine.default_timezone,
        routine_timezone=config.routines.timezone,
        adapter_timeout_s=engine.adapter_timeout_s,
        min_render_minutes=engine.min_render_minutes,
        fallback_duration_minutes=engine.fallback_duration_minutes,
        max_window_days=engine.max_window_days,
    )


async def open_service(config: ZeitlineConfig) -> ServiceResources:
    """Open the native store and HTTP client and build the service.

    Without a database DSN native events live in memory for the life of the
    process.
    """
    pool: asyncpg.Pool | None = None
    store: NativeEventStore
    if config.database.dsn:
        pool = await asyncpg.create_pool(
            dsn=config.database.dsn,
            min_size=config.database.min_pool_size,
            max_size=config.database.max_pool_size,
        )
        postgres = PostgresNativeStore(pool)
        await postgres.ensure_schema()
        store = postgres
        logger.info("Native events stored in PostgreSQL")
    else:
        store = InMemoryNativeStore()
        logger.info("No database configured; native events are kept in memory")

    http_client = httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)
    try:
        service = build_service(config, store=store, http_client=http_client)
    except Exception:
        await http_client.aclose()
        if pool is not None:
            await pool.close()
        raise
    return ServiceResources(service=service, http_client=http_client, pool=pool)
