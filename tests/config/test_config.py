"""Tests for zeitline.toml loading and validation."""

from __future__ import annotations

import json
from datetime import time
from pathlib import Path

import httpx
import pytest

from zeitline.adapters.base import CalendarRef
from zeitline.config import (
    CONFIG_PATH_ENV,
    ConfigError,
    ZeitlineConfig,
    load_config,
    parse_config,
    resolve_env_vars,
)
from zeitline.service import build_remote_adapters, build_service, collect_rules
from zeitline.storage.native import InMemoryNativeStore

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FULL_TOML = """\
[engine]
default_timezone = "America/Los_Angeles"
adapter_timeout_s = 5
min_render_minutes = 15
max_window_days = 62

[logging]
level = "debug"
format = "json"

[database]
dsn = "postgresql://localhost/zeitline"

[api]
port = 9000
cors_origins = ["https://calendar.example.com"]

[providers.google]
enabled = true
access_token = "${GOOGLE_TOKEN}"
calendars = ["primary", { id = "team@example.com", name = "Team", selected = false }]

[providers.caldav]
enabled = true
username = "me@icloud.com"
password = "app-password"
calendars = [{ id = "12345/calendars/home/", name = "Home" }]

[routines]
onboarding_file = "onboarding.json"
timezone = "America/New_York"

[[routines.rules]]
id = "standup"
title = "Standup"
time_of_day = "9:30 AM"
days_of_week = "weekdays"
duration_minutes = 15
"""


def _write(tmp_path: Path, text: str, name: str = "zeitline.toml") -> Path:
    path = tmp_path / name
    path.write_text(text)
    return path


@pytest.fixture(autouse=True)
def _no_config_env(monkeypatch):
    monkeypatch.delenv(CONFIG_PATH_ENV, raising=False)


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_full_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GOOGLE_TOKEN", "ya29.token")
        config = load_config(_write(tmp_path, FULL_TOML))

        assert config.engine.default_timezone == "America/Los_Angeles"
        assert config.engine.adapter_timeout_s == 5.0
        assert config.engine.min_render_minutes == 15
        assert config.engine.max_window_days == 62
        assert config.engine.fallback_duration_minutes == 30
        assert (config.logging.level, config.logging.format) == ("DEBUG", "json")
        assert config.database.dsn == "postgresql://localhost/zeitline"
        assert config.api.port == 9000
        assert config.api.host == "127.0.0.1"
        assert config.api.cors_origins == ["https://calendar.example.com"]

        assert config.google.enabled
        assert config.google.access_token == "ya29.token"
        assert config.google.calendars == [
            CalendarRef(id="primary"),
            CalendarRef(id="team@example.com", name="Team", selected=False),
        ]
        assert not config.outlook.enabled
        assert config.caldav.server_url == "https://caldav.icloud.com"

        [rule] = config.routines.rules
        assert rule.time_of_day == time(9, 30)
        assert config.routines.onboarding_file == tmp_path / "onboarding.json"
        assert config.routines.timezone == "America/New_York"

    def test_defaults_when_no_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert load_config() == ZeitlineConfig()

    def test_env_var_selects_file(self, tmp_path, monkeypatch):
        path = _write(tmp_path, '[engine]\ndefault_timezone = "Europe/Berlin"\n', "custom.toml")
        monkeypatch.setenv(CONFIG_PATH_ENV, str(path))

        assert load_config().engine.default_timezone == "Europe/Berlin"

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "absent.toml")

    def test_invalid_toml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write(tmp_path, "[engine\n"))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.parametrize(
        "data",
        [
            {"engine": {"default_timezone": "Moon/Crater"}},
            {"engine": {"adapter_timeout_s": 0}},
            {"engine": {"max_window_days": True}},
            {"engine": {"min_render_minutes": -1}},
            {"logging": {"format": "xml"}},
            {"providers": {"outlook": {"enabled": True}}},
            {"providers": {"caldav": {"enabled": True, "username": "u", "password": "p"}}},
            {"providers": {"google": "yes"}},
            {"routines": {"rules": [{"id": "x", "title": "X"}]}},
            {"routines": {"rules": {"id": "x"}}},
            {"routines": {"timezone": "Mars/Olympus"}},
            {"api": {"cors_origins": "*"}},
            {"engine": "fast"},
        ],
    )
    def test_invalid_values(self, data):
        with pytest.raises(ConfigError):
            parse_config(data)

    def test_enabled_provider_defaults_to_primary_calendar(self):
        config = parse_config(
            {"providers": {"outlook": {"enabled": True, "access_token": "graph-token"}}}
        )
        assert config.outlook.calendars == [CalendarRef(id="primary", name="Outlook")]


class TestResolveEnvVars:
    def test_nested_values(self, monkeypatch):
        monkeypatch.setenv("ZL_USER", "me")
        resolved = resolve_env_vars({"a": ["${ZL_USER}@icloud.com", 3], "b": {"c": "${ZL_USER}"}})
        assert resolved == {"a": ["me@icloud.com", 3], "b": {"c": "me"}}

    def test_missing_variable(self, monkeypatch):
        monkeypatch.delenv("ZL_MISSING", raising=False)
        with pytest.raises(ConfigError, match="ZL_MISSING"):
            resolve_env_vars("${ZL_MISSING}")


# ---------------------------------------------------------------------------
# Service wiring from config
# ---------------------------------------------------------------------------


class TestServiceWiring:
    def test_inline_rules_win_over_onboarding(self, tmp_path):
        (tmp_path / "onboarding.json").write_text(
            json.dumps({"wakeTime": "6:00 AM", "bedtime": "11:00 PM"})
        )
        config = parse_config(
            {
                "routines": {
                    "onboarding_file": "onboarding.json",
                    "rules": [
                        {
                            "id": "wake-up",
                            "title": "Rise",
                            "time_of_day": "5:45 AM",
                            "days_of_week": "daily",
                            "duration_minutes": 10,
                        }
                    ],
                }
            },
            base_dir=tmp_path,
        )

        rules = {rule.id: rule for rule in collect_rules(config)}

        assert set(rules) == {"wake-up", "bedtime"}
        assert rules["wake-up"].title == "Rise"

    async def test_routine_timezone_defaults_to_engine_zone(self):
        configs = [
            parse_config({"engine": {"default_timezone": "Asia/Tokyo"}}),
            parse_config(
                {
                    "engine": {"default_timezone": "Asia/Tokyo"},
                    "routines": {"timezone": "America/New_York"},
                }
            ),
        ]

        async with httpx.AsyncClient() as http_client:
            services = [
                build_service(config, store=InMemoryNativeStore(), http_client=http_client)
                for config in configs
            ]

        assert [service.routine_timezone for service in services] == [
            "Asia/Tokyo",
            "America/New_York",
        ]

    def test_unreadable_onboarding_file(self, tmp_path):
        config = parse_config({"routines": {"onboarding_file": "missing.json"}}, base_dir=tmp_path)
        with pytest.raises(ConfigError):
            collect_rules(config)

    async def test_enabled_providers_become_adapters(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GOOGLE_TOKEN", "ya29.token")
        config = load_config(_write(tmp_path, FULL_TOML))

        async with httpx.AsyncClient() as http_client:
            adapters = build_remote_adapters(config, http_client)

        assert [adapter.name for adapter in adapters] == ["google", "apple"]
