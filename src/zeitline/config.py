"""Zeitline configuration loading and validation.

Reads ``zeitline.toml``, resolves ``${VAR}`` references from the environment,
and returns a validated :class:`ZeitlineConfig` dataclass.

Example::

    [engine]
    default_timezone = "America/Los_Angeles"
    adapter_timeout_s = 8

    [providers.google]
    enabled = true
    access_token = "${GOOGLE_ACCESS_TOKEN}"
    calendars = [{ id = "primary", name = "Personal" }]

    [routines]
    timezone = "America/New_York"

    [[routines.rules]]
    id = "standup"
    title = "Standup"
    time_of_day = "9:30 AM"
    days_of_week = "weekdays"
    duration_minutes = 15
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from zeitline.adapters.base import CalendarRef
from zeitline.engine.errors import InvalidTimezoneError
from zeitline.engine.models import RoutineRule
from zeitline.engine.timeutil import resolve_zone

DEFAULT_CONFIG_PATH = Path("zeitline.toml")
CONFIG_PATH_ENV = "ZEITLINE_CONFIG"

# Matches ${VAR_NAME}; names are letters, digits and underscores.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_LOG_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class EngineConfig:
    """Aggregation and layout settings from [engine]."""

    default_timezone: str = "UTC"
    adapter_timeout_s: float = 10.0
    min_render_minutes: int = 20
    fallback_duration_minutes: int = 30
    max_window_days: int = 92


@dataclass
class LoggingConfig:
    """Logging configuration from [logging]."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Native event persistence from [database].  No DSN means in-memory."""

    dsn: str | None = None
    min_pool_size: int = 1
    max_pool_size: int = 5


@dataclass
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:5173"])


@dataclass
class OAuthProviderConfig:
    """A bearer-token provider from [providers.google] or [providers.outlook]."""

    enabled: bool = False
    access_token: str | None = None
    calendars: list[CalendarRef] = field(default_factory=list)
    base_url: str | None = None


@dataclass
class CalDAVConfig:
    """Apple/CalDAV provider from [providers.caldav]."""

    enabled: bool = False
    username: str | None = None
    password: str | None = None
    server_url: str = "https://caldav.icloud.com"
    calendars: list[CalendarRef] = field(default_factory=list)


@dataclass
class RoutinesConfig:
    """Routine rules declared inline and/or derived from an onboarding export."""

    rules: list[RoutineRule] = field(default_factory=list)
    onboarding_file: Path | None = None
    # Zone routine times are written in; None means engine.default_timezone.
    timezone: str | None = None


@dataclass
class ZeitlineConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    google: OAuthProviderConfig = field(default_factory=OAuthProviderConfig)
    outlook: OAuthProviderConfig = field(default_factory=OAuthProviderConfig)
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    routines: RoutinesConfig = field(default_factory=RoutinesConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _positive_number(section: str, key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise ConfigError(f"{section}.{key} must be a positive number, got {value!r}")
    return value


def _parse_engine(raw: dict[str, Any]) -> EngineConfig:
    defaults = EngineConfig()
    default_timezone = str(raw.get("default_timezone", defaults.default_timezone)).strip()
    try:
        resolve_zone(default_timezone)
    except InvalidTimezoneError as exc:
        raise ConfigError(f"engine.default_timezone is not a known zone: {exc}") from exc

    min_render = raw.get("min_render_minutes", defaults.min_render_minutes)
    if not isinstance(min_render, int) or min_render < 0:
        raise ConfigError("engine.min_render_minutes must be a non-negative integer")

    return EngineConfig(
        default_timezone=default_timezone,
        adapter_timeout_s=float(
            _positive_number(
                "engine",
                "adapter_timeout_s",
                raw.get("adapter_timeout_s", defaults.adapter_timeout_s),
            )
        ),
        min_render_minutes=min_render,
        fallback_duration_minutes=int(
            _positive_number(
                "engine",
                "fallback_duration_minutes",
                raw.get("fallback_duration_minutes", defaults.fallback_duration_minutes),
            )
        ),
        max_window_days=int(
            _positive_number(
                "engine", "max_window_days", raw.get("max_window_days", defaults.max_window_days)
            )
        ),
    )


def _parse_logging(raw: dict[str, Any]) -> LoggingConfig:
    level = str(raw.get("level", "INFO")).upper()
    log_format = str(raw.get("format", "text")).lower()
    if log_format not in _LOG_FORMATS:
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Must be 'text' or 'json'.")
    log_root = raw.get("log_root")
    return LoggingConfig(
        level=level, format=log_format, log_root=str(log_root) if log_root else None
    )


def _parse_calendars(section: str, raw: Any) -> list[CalendarRef]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"{section}.calendars must be an array")
    calendars: list[CalendarRef] = []
    for index, entry in enumerate(raw):
        if isinstance(entry, str):
            entry = {"id": entry}
        try:
            calendars.append(CalendarRef.model_validate(entry))
        except ValidationError as exc:
            raise ConfigError(f"Invalid {section}.calendars[{index}]: {exc}") from exc
    return calendars


def _parse_oauth_provider(name: str, raw: dict[str, Any]) -> OAuthProviderConfig:
    section = f"providers.{name}"
    config = OAuthProviderConfig(
        enabled=bool(raw.get("enabled", False)),
        access_token=raw.get("access_token"),
        calendars=_parse_calendars(section, raw.get("calendars")),
        base_url=raw.get("base_url"),
    )
    if config.enabled and not config.access_token:
        raise ConfigError(f"{section}.access_token is required when the provider is enabled")
    if config.enabled and not config.calendars:
        config.calendars = [CalendarRef(id="primary", name=name.capitalize())]
    return config


def _parse_caldav(raw: dict[str, Any]) -> CalDAVConfig:
    config = CalDAVConfig(
        enabled=bool(raw.get("enabled", False)),
        username=raw.get("username"),
        password=raw.get("password"),
        server_url=str(raw.get("server_url", CalDAVConfig.server_url)),
        calendars=_parse_calendars("providers.caldav", raw.get("calendars")),
    )
    if config.enabled and not (config.username and config.password):
        raise ConfigError("providers.caldav.username and password are required when enabled")
    if config.enabled and not config.calendars:
        raise ConfigError("providers.caldav.calendars must list at least one collection URL")
    return config


def _parse_routines(raw: dict[str, Any], base_dir: Path) -> RoutinesConfig:
    rules: list[RoutineRule] = []
    entries = raw.get("rules", [])
    if not isinstance(entries, list):
        raise ConfigError("routines.rules must be an array of tables")
    for index, entry in enumerate(entries):
        try:
            rules.append(RoutineRule.model_validate(entry))
        except ValidationError as exc:
            raise ConfigError(f"Invalid routines.rules[{index}]: {exc}") from exc

    onboarding_file = raw.get("onboarding_file")
    onboarding_path: Path | None = None
    if onboarding_file:
        onboarding_path = Path(onboarding_file)
        if not onboarding_path.is_absolute():
            onboarding_path = base_dir / onboarding_path

    timezone = raw.get("timezone")
    if timezone is not None:
        timezone = str(timezone).strip()
        try:
            resolve_zone(timezone)
        except InvalidTimezoneError as exc:
            raise ConfigError(f"routines.timezone is not a known zone: {exc}") from exc
    return RoutinesConfig(rules=rules, onboarding_file=onboarding_path, timezone=timezone)


def parse_config(data: dict[str, Any], *, base_dir: Path = Path(".")) -> ZeitlineConfig:
    """Validate already-decoded TOML data."""
    data = resolve_env_vars(data)

    database = _section(data, "database")
    api = _section(data, "api")
    providers = _section(data, "providers")
    for name in ("google", "outlook", "caldav"):
        if not isinstance(providers.get(name, {}), dict):
            raise ConfigError(f"[providers.{name}] must be a table")

    cors_origins = api.get("cors_origins", ApiConfig().cors_origins)
    if not isinstance(cors_origins, list):
        raise ConfigError("api.cors_origins must be an array of strings")

    return ZeitlineConfig(
        engine=_parse_engine(_section(data, "engine")),
        logging=_parse_logging(_section(data, "logging")),
        database=DatabaseConfig(
            dsn=database.get("dsn") or None,
            min_pool_size=int(database.get("min_pool_size", 1)),
            max_pool_size=int(database.get("max_pool_size", 5)),
        ),
        api=ApiConfig(
            host=str(api.get("host", ApiConfig.host)),
            port=int(api.get("port", ApiConfig.port)),
            cors_origins=[str(origin) for origin in cors_origins],
        ),
        google=_parse_oauth_provider("google", providers.get("google", {})),
        outlook=_parse_oauth_provider("outlook", providers.get("outlook", {})),
        caldav=_parse_caldav(providers.get("caldav", {})),
        routines=_parse_routines(_section(data, "routines"), base_dir),
    )


def load_config(path: Path | None = None) -> ZeitlineConfig:
    """Load and validate a ``zeitline.toml``.

    Parameters
    ----------
    path:
        Config file.  Defaults to ``$ZEITLINE_CONFIG`` or ``./zeitline.toml``;
        when neither exists the built-in defaults are returned.

    Raises
    ------
    ConfigError
        If an explicitly given file is missing, contains invalid TOML, or
        holds invalid values.
    """
    if path is None:
        env_path = os.environ.get(CONFIG_PATH_ENV)
        if env_path:
            path = Path(env_path)
        elif DEFAULT_CONFIG_PATH.exists():
            path = DEFAULT_CONFIG_PATH
        else:
            return ZeitlineConfig()

    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data, base_dir=path.parent)
