"""Service configuration loading and validation.

Configuration comes from either a ``calboard.toml`` file (with ``${VAR}``
environment references) or directly from environment variables. Both paths
produce the same validated ``CalboardConfig``.

Example ``calboard.toml``::

    [google]
    calendar_id = "team@group.calendar.google.com"
    credentials_json = "${GOOGLE_CALENDAR_CREDENTIALS_JSON}"
    webhook_url = "https://calboard.example.com/webhook/google"

    [discord]
    bot_token = "${DISCORD_TOKEN}"
    channel_id = "123456789012345678"

    [sync]
    timezone = "Asia/Jerusalem"
"""

from __future__ import annotations

import dataclasses
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_FALSE_VALUES = ("false", "0", "no", "off", "")

DEFAULT_CONFIG_FILENAME = "calboard.toml"


class ConfigError(Exception):
    """Raised when service configuration is missing, malformed, or invalid."""


@dataclass
class GoogleConfig:
    """Remote calendar settings from the [google] section."""

    calendar_id: str = "primary"
    credentials_json: str = ""
    webhook_url: str | None = None
    channel_ttl_seconds: int | None = None


@dataclass
class DiscordConfig:
    """Chat target settings from the [discord] section.

    ``board_message_id`` is the operator-persisted id of the board message.
    """

    bot_token: str = ""
    channel_id: str = ""
    board_message_id: str | None = None


@dataclass
class SyncConfig:
    """Sync engine tuning from the [sync] section.

    The lookback covers clock skew and boot delay for the very first delta
    fetch; the backstop re-widens the window after a cycle that observed
    nothing; the epsilon re-admits the boundary event on the next poll.
    """

    timezone: str = "UTC"
    interval_seconds: float = 60.0
    startup_lookback_seconds: float = 300.0
    backstop_seconds: float = 1200.0
    epsilon_seconds: float = 1.0
    debounce_seconds: float = 3.0
    max_results: int = 250
    cycle_timeout_seconds: float = 120.0
    request_timeout_seconds: float = 30.0
    warmup_past_days: int = 30
    warmup_future_days: int = 365
    auto_watch: bool = False


@dataclass
class BoardConfig:
    """Board rendering window and size caps from the [board] section."""

    past_days: int = 1
    future_days: int = 35
    max_days: int = 14
    max_chars: int = 3900
    title: str = "Upcoming events"


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class CalboardConfig:
    """Parsed and validated service configuration."""

    google: GoogleConfig = field(default_factory=GoogleConfig)
    discord: DiscordConfig = field(default_factory=DiscordConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    board: BoardConfig = field(default_factory=BoardConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> CalboardConfig:
        """Load configuration from environment variables.

        See ``_ENV_VARS`` for the variable name of every setting.
        """
        env = os.environ if environ is None else environ
        raw: dict[str, dict[str, Any]] = {}
        for section, keys in _ENV_VARS.items():
            for key, var_name in keys.items():
                value = env.get(var_name)
                if value is not None:
                    raw.setdefault(section, {})[key] = value
        config = _build_config(raw, source="environment")
        validate_config(config)
        return config


_SECTION_TYPES: dict[str, type] = {
    "google": GoogleConfig,
    "discord": DiscordConfig,
    "sync": SyncConfig,
    "board": BoardConfig,
    "logging": LoggingConfig,
    "server": ServerConfig,
}

_ENV_VARS: dict[str, dict[str, str]] = {
    "google": {
        "calendar_id": "GOOGLE_CALENDAR_ID",
        "credentials_json": "GOOGLE_CALENDAR_CREDENTIALS_JSON",
        "webhook_url": "GOOGLE_WEBHOOK_URL",
        "channel_ttl_seconds": "GOOGLE_CHANNEL_TTL_SECONDS",
    },
    "discord": {
        "bot_token": "DISCORD_TOKEN",
        "channel_id": "DISCORD_CHANNEL_ID",
        "board_message_id": "DISCORD_BOARD_MESSAGE_ID",
    },
    "sync": {
        "timezone": "CALBOARD_TIMEZONE",
        "interval_seconds": "CALBOARD_SYNC_INTERVAL_S",
        "startup_lookback_seconds": "CALBOARD_STARTUP_LOOKBACK_S",
        "backstop_seconds": "CALBOARD_BACKSTOP_S",
        "epsilon_seconds": "CALBOARD_EPSILON_S",
        "debounce_seconds": "CALBOARD_DEBOUNCE_S",
        "max_results": "CALBOARD_MAX_RESULTS",
        "cycle_timeout_seconds": "CALBOARD_CYCLE_TIMEOUT_S",
        "request_timeout_seconds": "CALBOARD_REQUEST_TIMEOUT_S",
        "warmup_past_days": "CALBOARD_WARMUP_PAST_DAYS",
        "warmup_future_days": "CALBOARD_WARMUP_FUTURE_DAYS",
        "auto_watch": "CALBOARD_AUTO_WATCH",
    },
    "board": {
        "past_days": "CALBOARD_BOARD_PAST_DAYS",
        "future_days": "CALBOARD_BOARD_FUTURE_DAYS",
        "max_days": "CALBOARD_BOARD_MAX_DAYS",
        "max_chars": "CALBOARD_BOARD_MAX_CHARS",
        "title": "CALBOARD_BOARD_TITLE",
    },
    "logging": {
        "level": "CALBOARD_LOG_LEVEL",
        "format": "CALBOARD_LOG_FORMAT",
        "log_root": "CALBOARD_LOG_ROOT",
    },
    "server": {
        "host": "CALBOARD_HOST",
        "port": "PORT",
    },
}


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
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
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _coerce_value(section: str, name: str, default: Any, value: Any) -> Any:
    if value is None:
        return None
    try:
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
            return str(value).strip().lower() not in _FALSE_VALUES
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        if name.endswith("_seconds") and default is None:
            return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {section}.{name}: {value!r}") from exc

    text = str(value).strip()
    if default is None and not text:
        return None
    return text


def _build_section(section: str, cls: type, raw: Any) -> Any:
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"[{section}] must be a table")

    known = {f.name: f for f in dataclasses.fields(cls)}
    unknown = sorted(set(raw) - set(known))
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{section}]: {', '.join(unknown)}")

    defaults = cls()
    kwargs = {
        name: _coerce_value(section, name, getattr(defaults, name), value)
        for name, value in raw.items()
    }
    return cls(**kwargs)


def _build_config(data: dict[str, Any], *, source: str) -> CalboardConfig:
    unknown = sorted(set(data) - set(_SECTION_TYPES))
    if unknown:
        raise ConfigError(f"Unknown section(s) in {source}: {', '.join(unknown)}")
    sections = {
        name: _build_section(name, cls, data.get(name)) for name, cls in _SECTION_TYPES.items()
    }
    return CalboardConfig(**sections)


def validate_config(config: CalboardConfig) -> None:
    """Check required values and ranges.

    Raises
    ------
    ConfigError
        On the first invalid setting found.
    """
    if not config.google.credentials_json.strip():
        raise ConfigError("Missing required setting: google.credentials_json")
    if not config.google.calendar_id.strip():
        raise ConfigError("google.calendar_id must be a non-empty string")
    if not config.discord.bot_token.strip():
        raise ConfigError("Missing required setting: discord.bot_token")
    if not config.discord.channel_id.strip():
        raise ConfigError("Missing required setting: discord.channel_id")

    try:
        ZoneInfo(config.sync.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown time zone for sync.timezone: {config.sync.timezone}") from exc

    positive = {
        "sync.interval_seconds": config.sync.interval_seconds,
        "sync.backstop_seconds": config.sync.backstop_seconds,
        "sync.cycle_timeout_seconds": config.sync.cycle_timeout_seconds,
        "sync.request_timeout_seconds": config.sync.request_timeout_seconds,
        "sync.max_results": config.sync.max_results,
        "board.future_days": config.board.future_days,
        "board.max_days": config.board.max_days,
        "board.max_chars": config.board.max_chars,
    }
    for name, value in positive.items():
        if value <= 0:
            raise ConfigError(f"{name} must be positive (got {value})")

    non_negative = {
        "sync.startup_lookback_seconds": config.sync.startup_lookback_seconds,
        "sync.epsilon_seconds": config.sync.epsilon_seconds,
        "sync.debounce_seconds": config.sync.debounce_seconds,
        "sync.warmup_past_days": config.sync.warmup_past_days,
        "sync.warmup_future_days": config.sync.warmup_future_days,
        "board.past_days": config.board.past_days,
    }
    for name, value in non_negative.items():
        if value < 0:
            raise ConfigError(f"{name} must not be negative (got {value})")

    if config.sync.max_results > 2500:
        raise ConfigError("sync.max_results must not exceed 2500")

    log_format = config.logging.format.lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"logging.format must be 'text' or 'json' (got {config.logging.format!r})")
    config.logging.format = log_format
    config.logging.level = config.logging.level.upper()


def load_config(path: Path) -> CalboardConfig:
    """Load and validate a ``calboard.toml``.

    *path* may point at the file itself or at the directory containing it.

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

    data = resolve_env_vars(data)
    config = _build_config(data, source=str(toml_path))
    validate_config(config)
    return config
