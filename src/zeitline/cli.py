"""CLI for Zeitline: serve the API and inspect aggregated calendars."""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path

import click

from zeitline.config import ConfigError, ZeitlineConfig, load_config
from zeitline.core.logging import configure_logging
from zeitline.engine.errors import InvalidTimezoneError
from zeitline.engine.models import (
    AggregationResult,
    CanonicalEvent,
    DateWindow,
    event_sort_key,
)
from zeitline.engine.recurrence import expand_rules
from zeitline.engine.routines import load_onboarding_rules
from zeitline.engine.timeutil import resolve_zone, to_zone_parts
from zeitline.service import open_service

_DATE = click.DateTime(formats=["%Y-%m-%d"])

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to zeitline.toml (defaults to $ZEITLINE_CONFIG or ./zeitline.toml)",
)


def _window_options(func):
    func = click.option("--tz", default=None, help="Display timezone (IANA name)")(func)
    func = click.option("--end", type=_DATE, required=True, help="Last day (YYYY-MM-DD)")(func)
    func = click.option("--start", type=_DATE, required=True, help="First day (YYYY-MM-DD)")(func)
    return func


def _load(config_path: Path | None) -> ZeitlineConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        service_name="zeitline",
    )
    return config


def _window(start: datetime, end: datetime) -> DateWindow:
    if end < start:
        raise click.BadParameter("--end must not be before --start", param_hint="--end")
    return DateWindow(start=start.date(), end=end.date())


def _clock(instant: datetime, zone_name: str) -> str:
    parts = to_zone_parts(instant, zone_name)
    return f"{parts.hour:02d}:{parts.minute:02d}"


def _format_event(event: CanonicalEvent, zone_name: str) -> str:
    if event.all_day:
        span = "all day    "
    else:
        span = f"{_clock(event.start, zone_name)}-{_clock(event.end, zone_name)}"
    return f"  {span}  {event.title}  [{event.source_type}]"


def _print_result(result: AggregationResult) -> None:
    if result.timezone_warning:
        click.echo(f"Warning: {result.timezone_warning}", err=True)
    for diagnostic in result.diagnostics:
        if diagnostic.error:
            click.echo(
                f"Source {diagnostic.adapter} {diagnostic.status}: {diagnostic.error}", err=True
            )
    if not len(result.buckets):
        click.echo("No events.")
        return
    for date_key, events in result.buckets.items():
        click.echo(date_key)
        for event in events:
            click.echo(_format_event(event, result.zone_name))


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Zeitline: one timezone-correct calendar across every provider."""


@cli.command()
@_config_option
@click.option("--host", default=None, help="Bind address (defaults to api.host)")
@click.option("--port", type=int, default=None, help="Port (defaults to api.port)")
def serve(config_path: Path | None, host: str | None, port: int | None) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from zeitline.api.app import create_app

    config = _load(config_path)
    host = host or config.api.host
    port = port or config.api.port
    click.echo(f"Starting Zeitline API on {host}:{port}")
    uvicorn.run(create_app(config), host=host, port=port, log_config=None)


@cli.command()
@_config_option
@_window_options
@click.option("--json", "as_json", is_flag=True, help="Print buckets as JSON")
def events(
    config_path: Path | None,
    start: datetime,
    end: datetime,
    tz: str | None,
    as_json: bool,
) -> None:
    """Print aggregated events bucketed by display-zone day."""
    config = _load(config_path)
    window = _window(start, end)
    try:
        result = asyncio.run(_aggregate(config, window, tz))
    except (ConfigError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    if as_json:
        payload = {
            "timezone": result.zone_name,
            "timezone_warning": result.timezone_warning,
            "buckets": result.buckets.to_dict(),
            "diagnostics": [diag.model_dump(mode="json") for diag in result.diagnostics],
        }
        click.echo(json.dumps(payload, indent=2))
        return
    _print_result(result)


async def _aggregate(
    config: ZeitlineConfig, window: DateWindow, tz: str | None
) -> AggregationResult:
    resources = await open_service(config)
    try:
        service = resources.service
        return await service.load(service.new_context(window, tz))
    finally:
        await resources.aclose()


@cli.command("expand-routines")
@_window_options
@click.option(
    "--onboarding",
    "onboarding_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Onboarding answers exported as JSON",
)
def expand_routines(
    start: datetime, end: datetime, tz: str | None, onboarding_path: Path
) -> None:
    """Print routine instances derived from onboarding answers."""
    window = _window(start, end)
    zone_name = tz or "UTC"
    try:
        resolve_zone(zone_name)
        rules = load_onboarding_rules(onboarding_path)
    except InvalidTimezoneError as exc:
        raise click.BadParameter(str(exc), param_hint="--tz") from exc
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    instances = sorted(expand_rules(rules, window, zone_name), key=event_sort_key)
    click.echo(f"{len(rules)} rule(s), {len(instances)} instance(s) in {zone_name}")
    current_day = None
    for instance in instances:
        day = to_zone_parts(instance.start, zone_name).local_date.isoformat()
        if day != current_day:
            click.echo(day)
            current_day = day
        click.echo(_format_event(instance, zone_name))


@cli.command()
@_config_option
@click.option("--end", type=_DATE, required=True, help="Last day (YYYY-MM-DD)")
@click.option("--start", type=_DATE, required=True, help="First day (YYYY-MM-DD)")
def materialize(config_path: Path | None, start: datetime, end: datetime) -> None:
    """Persist routine instances as editable native events.

    Days are read in the routine home zone (routines.timezone, or
    engine.default_timezone).
    """
    config = _load(config_path)
    window = _window(start, end)
    try:
        created, existing = asyncio.run(_materialize(config, window))
    except (ConfigError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Created {created} event(s); {existing} already present")


async def _materialize(config: ZeitlineConfig, window: DateWindow) -> tuple[int, int]:
    resources = await open_service(config)
    try:
        result = await resources.service.materialize_routines(window)
    finally:
        await resources.aclose()
    return len(result.created), len(result.existing)
