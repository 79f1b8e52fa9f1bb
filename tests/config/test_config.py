"""Tests for medminder configuration loading and validation."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from medminder.config import (
    AlertBackend,
    ConfigError,
    MedminderConfig,
    ReminderSettings,
    load_config,
    parse_config,
    resolve_env_vars,
)
from medminder.core.clock import format_time_of_day, system_clock

pytestmark = pytest.mark.unit

FULL_TOML = """\
[reminders]
tick_interval_seconds = 60
response_window_seconds = 300
dedup_window_seconds = 61
escalation_days = 3
notification_dismiss_seconds = 10
timezone = "Europe/Berlin"

[database]
name = "medminder_test"
url = "postgres://u:p@db:5432/meds"
min_pool_size = 1
max_pool_size = 4

[logging]
level = "debug"
format = "json"

[alerts]
backend = "smtp"

[alerts.smtp]
host = "smtp.example.com"
port = 2525
use_tls = false
timeout_seconds = 12

[notifications.telegram]
enabled = true
chat_id = "12345"

[api]
host = "0.0.0.0"
port = 9000
cors_origins = ["http://localhost:5173"]
"""


def _write_toml(tmp_path: Path, content: str, filename: str = "medminder.toml") -> Path:
    (tmp_path / filename).write_text(content)
    return tmp_path


class TestLoadConfig:
    def test_full_config(self, tmp_path: Path):
        config = load_config(_write_toml(tmp_path, FULL_TOML))

        assert config.reminders.timezone == "Europe/Berlin"
        assert config.reminders.zone() == ZoneInfo("Europe/Berlin")
        assert config.reminders.escalation_days == 3
        assert config.database.name == "medminder_test"
        assert config.database.max_pool_size == 4
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.alerts.backend is AlertBackend.SMTP
        assert config.alerts.smtp.port == 2525
        assert config.alerts.smtp.use_tls is False
        assert config.alerts.smtp.timeout_seconds == 12.0
        assert config.telegram.enabled is True
        assert config.telegram.chat_id == "12345"
        assert config.api.port == 9000
        assert config.api.cors_origins == ["http://localhost:5173"]

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        config = load_config(_write_toml(tmp_path, ""))
        assert config.reminders == ReminderSettings()
        assert config.alerts.backend is AlertBackend.NONE
        assert config.telegram.enabled is False

    def test_accepts_file_path(self, tmp_path: Path):
        _write_toml(tmp_path, "", filename="custom.toml")
        assert isinstance(load_config(tmp_path / "custom.toml"), MedminderConfig)

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path)

    def test_invalid_toml(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write_toml(tmp_path, "[reminders\n"))


class TestReminderValidation:
    @pytest.mark.parametrize(
        "key", ["tick_interval_seconds", "response_window_seconds", "dedup_window_seconds"]
    )
    def test_non_positive_durations_rejected(self, key: str):
        with pytest.raises(ConfigError, match=key):
            parse_config({"reminders": {key: 0}})

    def test_non_numeric_duration_rejected(self):
        with pytest.raises(ConfigError, match="must be a number"):
            parse_config({"reminders": {"response_window_seconds": "5m"}})

    def test_escalation_days_must_be_positive_int(self):
        with pytest.raises(ConfigError, match="escalation_days"):
            parse_config({"reminders": {"escalation_days": 0}})
        with pytest.raises(ConfigError, match="escalation_days"):
            parse_config({"reminders": {"escalation_days": True}})

    def test_unknown_timezone(self):
        with pytest.raises(ConfigError, match="Unknown reminders.timezone"):
            parse_config({"reminders": {"timezone": "Mars/Olympus"}})

    def test_zone_defaults_to_local(self):
        assert ReminderSettings().zone() is None

    @pytest.mark.skipif(not hasattr(time, "tzset"), reason="time.tzset is POSIX-only")
    def test_local_zone_follows_daylight_saving(self, monkeypatch):
        monkeypatch.setenv("TZ", "America/New_York")
        time.tzset()
        try:
            zone = ReminderSettings().zone()
            winter = datetime(2027, 1, 15, 13, 0, tzinfo=UTC).astimezone(zone)
            summer = datetime(2027, 7, 15, 13, 0, tzinfo=UTC).astimezone(zone)
            assert format_time_of_day(winter) == "08:00"
            assert format_time_of_day(summer) == "09:00"
            assert system_clock(zone)().utcoffset() == datetime.now().astimezone().utcoffset()
        finally:
            monkeypatch.undo()
            time.tzset()


class TestOtherSections:
    def test_invalid_logging_format(self):
        with pytest.raises(ConfigError, match="logging.format"):
            parse_config({"logging": {"format": "xml"}})

    def test_invalid_alert_backend(self):
        with pytest.raises(ConfigError, match="alerts.backend"):
            parse_config({"alerts": {"backend": "pigeon"}})

    def test_http_backend_requires_relay_url(self):
        with pytest.raises(ConfigError, match="relay_url"):
            parse_config({"alerts": {"backend": "http"}})

    def test_telegram_requires_chat_id_when_enabled(self):
        with pytest.raises(ConfigError, match="chat_id"):
            parse_config({"notifications": {"telegram": {"enabled": True}}})

    def test_bad_env_var_name(self):
        with pytest.raises(ConfigError, match="environment variable name"):
            parse_config({"alerts": {"smtp": {"address_env": "not a var"}}})

    def test_bad_pool_sizes(self):
        with pytest.raises(ConfigError, match="pool sizes"):
            parse_config({"database": {"min_pool_size": 5, "max_pool_size": 2}})

    @pytest.mark.parametrize("port", [0, 70000, "80", True])
    def test_bad_api_port(self, port):
        with pytest.raises(ConfigError, match="api.port"):
            parse_config({"api": {"port": port}})

    def test_section_must_be_table(self):
        with pytest.raises(ConfigError, match="must be a table"):
            parse_config({"reminders": "often"})


class TestEnvVarResolution:
    def test_resolves_nested_values(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("MM_HOST", "db.internal")
        resolved = resolve_env_vars({"a": ["x-${MM_HOST}", 3], "b": {"c": "${MM_HOST}"}})
        assert resolved == {"a": ["x-db.internal", 3], "b": {"c": "db.internal"}}

    def test_missing_variables_reported_together(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("MM_A", raising=False)
        monkeypatch.delenv("MM_B", raising=False)
        with pytest.raises(ConfigError, match="MM_A, MM_B"):
            resolve_env_vars("${MM_A}/${MM_B}")

    def test_resolution_applies_to_config(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("MM_RELAY", "https://relay.example.com/alert")
        config = parse_config({"alerts": {"backend": "http", "relay_url": "${MM_RELAY}"}})
        assert config.alerts.relay_url == "https://relay.example.com/alert"
