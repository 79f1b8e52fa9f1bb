"""Medminder configuration loading and validation.

Reads ``medminder.toml``, resolves ``${VAR}`` references from the
environment, and returns a validated ``MedminderConfig`` dataclass.
"""

from __future__ import annotations

import enum
import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_CONFIG_FILENAME = "medminder.toml"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_ENV_VAR_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when medminder configuration is missing, malformed, or invalid."""


class AlertBackend(enum.StrEnum):
    """Transport used for outbound family alerts."""

    NONE = "none"
    SMTP = "smtp"
    HTTP = "http"


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ReminderSettings:
    """Timing constants for the reminder loop from the [reminders] section.

    The defaults are the production values: one evaluation per minute, a
    five minute response window per dose, and a dedup window just long
    enough to outlive one tick.
    """

    tick_interval_seconds: float = 60.0
    response_window_seconds: float = 300.0
    dedup_window_seconds: float = 61.0
    escalation_days: int = 3
    notification_dismiss_seconds: float = 10.0
    timezone: str | None = None

    def zone(self) -> tzinfo | None:
        """Return the configured zone, or ``None`` for the system local zone.

        ``None`` is resolved on every clock read, so the UTC offset follows
        daylight saving changes in a long-running process.
        """
        if self.timezone:
            return ZoneInfo(self.timezone)
        return None


@dataclass
class DatabaseConfig:
    """PostgreSQL settings from the [database] section."""

    name: str = "medminder"
    url: str | None = None
    min_pool_size: int = 1
    max_pool_size: int = 5


@dataclass
class SmtpConfig:
    """SMTP transport for email alerts from [alerts.smtp]."""

    host: str = "smtp.gmail.com"
    port: int = 587
    use_tls: bool = True
    address_env: str = "MEDMINDER_SMTP_ADDRESS"
    password_env: str = "MEDMINDER_SMTP_PASSWORD"
    timeout_seconds: float = 30.0


@dataclass
class AlertsConfig:
    """Outbound alert configuration from the [alerts] section."""

    backend: AlertBackend = AlertBackend.NONE
    smtp: SmtpConfig = field(default_factory=SmtpConfig)
    relay_url: str | None = None
    relay_timeout_seconds: float = 10.0


@dataclass
class TelegramConfig:
    """Telegram platform notifications from [notifications.telegram]."""

    enabled: bool = False
    bot_token_env: str = "MEDMINDER_TELEGRAM_BOT_TOKEN"
    chat_id: str | None = None


@dataclass
class ApiConfig:
    """HTTP surface configuration from the [api] section."""

    host: str = "127.0.0.1"
    port: int = 8700
    cors_origins: list[str] = field(default_factory=list)


@dataclass
class MedminderConfig:
    """Parsed and validated medminder configuration."""

    reminders: ReminderSettings = field(default_factory=ReminderSettings)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

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
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
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


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a table")
    return value


def _positive_number(section: dict[str, Any], key: str, default: float, prefix: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"{prefix}.{key} must be a number, got {raw!r}")
    if raw <= 0:
        raise ConfigError(f"{prefix}.{key} must be > 0, got {raw!r}")
    return float(raw)


def _env_var_name(section: dict[str, Any], key: str, default: str, prefix: str) -> str:
    name = str(section.get(key, default)).strip()
    if not _ENV_VAR_NAME_RE.fullmatch(name):
        raise ConfigError(
            f"{prefix}.{key} must be a valid environment variable name, got {name!r}"
        )
    return name


def _parse_reminders(section: dict[str, Any]) -> ReminderSettings:
    """Parse the optional [reminders] section."""
    tz_name = section.get("timezone")
    if tz_name is not None:
        if not isinstance(tz_name, str) or not tz_name.strip():
            raise ConfigError("reminders.timezone must be a non-empty string when set")
        tz_name = tz_name.strip()
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"Unknown reminders.timezone: {tz_name!r}") from exc

    escalation_days = section.get("escalation_days", 3)
    if isinstance(escalation_days, bool) or not isinstance(escalation_days, int):
        raise ConfigError(f"reminders.escalation_days must be an integer, got {escalation_days!r}")
    if escalation_days < 1:
        raise ConfigError("reminders.escalation_days must be >= 1")

    return ReminderSettings(
        tick_interval_seconds=_positive_number(section, "tick_interval_seconds", 60, "reminders"),
        response_window_seconds=_positive_number(
            section, "response_window_seconds", 300, "reminders"
        ),
        dedup_window_seconds=_positive_number(section, "dedup_window_seconds", 61, "reminders"),
        escalation_days=escalation_days,
        notification_dismiss_seconds=_positive_number(
            section, "notification_dismiss_seconds", 10, "reminders"
        ),
        timezone=tz_name,
    )


def _parse_database(section: dict[str, Any]) -> DatabaseConfig:
    name = str(section.get("name", "medminder")).strip()
    if not name:
        raise ConfigError("database.name must be a non-empty string")
    min_size = int(section.get("min_pool_size", 1))
    max_size = int(section.get("max_pool_size", 5))
    if min_size < 0 or max_size < 1 or min_size > max_size:
        raise ConfigError(
            f"Invalid database pool sizes: min_pool_size={min_size}, max_pool_size={max_size}"
        )
    return DatabaseConfig(
        name=name,
        url=section.get("url"),
        min_pool_size=min_size,
        max_pool_size=max_size,
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=log_level, format=log_format, log_root=section.get("log_root"))


def _parse_alerts(section: dict[str, Any]) -> AlertsConfig:
    raw_backend = str(section.get("backend", "none")).lower()
    try:
        backend = AlertBackend(raw_backend)
    except ValueError:
        choices = ", ".join(b.value for b in AlertBackend)
        raise ConfigError(f"Invalid alerts.backend: {raw_backend!r}. Expected one of: {choices}")

    smtp_section = _section(section, "smtp")
    smtp = SmtpConfig(
        host=str(smtp_section.get("host", "smtp.gmail.com")),
        port=int(smtp_section.get("port", 587)),
        use_tls=bool(smtp_section.get("use_tls", True)),
        address_env=_env_var_name(
            smtp_section, "address_env", "MEDMINDER_SMTP_ADDRESS", "alerts.smtp"
        ),
        password_env=_env_var_name(
            smtp_section, "password_env", "MEDMINDER_SMTP_PASSWORD", "alerts.smtp"
        ),
        timeout_seconds=_positive_number(smtp_section, "timeout_seconds", 30, "alerts.smtp"),
    )

    relay_url = section.get("relay_url")
    if backend is AlertBackend.HTTP and not relay_url:
        raise ConfigError("alerts.relay_url is required when alerts.backend is 'http'")

    return AlertsConfig(
        backend=backend,
        smtp=smtp,
        relay_url=relay_url,
        relay_timeout_seconds=_positive_number(section, "relay_timeout_seconds", 10, "alerts"),
    )


def _parse_telegram(section: dict[str, Any]) -> TelegramConfig:
    enabled = bool(section.get("enabled", False))
    chat_id = section.get("chat_id")
    if enabled and not chat_id:
        raise ConfigError("notifications.telegram.chat_id is required when enabled")
    return TelegramConfig(
        enabled=enabled,
        bot_token_env=_env_var_name(
            section, "bot_token_env", "MEDMINDER_TELEGRAM_BOT_TOKEN", "notifications.telegram"
        ),
        chat_id=str(chat_id) if chat_id is not None else None,
    )


def _parse_api(section: dict[str, Any]) -> ApiConfig:
    port = section.get("port", 8700)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"api.port must be an integer between 1 and 65535, got {port!r}")
    origins = section.get("cors_origins", [])
    if not isinstance(origins, list) or not all(isinstance(o, str) for o in origins):
        raise ConfigError("api.cors_origins must be a list of strings")
    return ApiConfig(host=str(section.get("host", "127.0.0.1")), port=port, cors_origins=origins)


def parse_config(data: dict[str, Any]) -> MedminderConfig:
    """Validate an already-decoded TOML document into a ``MedminderConfig``."""
    data = resolve_env_vars(data)
    notifications = _section(data, "notifications")
    return MedminderConfig(
        reminders=_parse_reminders(_section(data, "reminders")),
        database=_parse_database(_section(data, "database")),
        logging=_parse_logging(_section(data, "logging")),
        alerts=_parse_alerts(_section(data, "alerts")),
        telegram=_parse_telegram(_section(notifications, "telegram")),
        api=_parse_api(_section(data, "api")),
    )


def load_config(path: Path) -> MedminderConfig:
    """Load and validate a medminder config.

    Parameters
    ----------
    path:
        Either the TOML file itself or a directory containing
        ``medminder.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
