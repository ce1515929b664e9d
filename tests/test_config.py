"""Tests for calboard configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from calboard.config import (
    DEFAULT_CONFIG_FILENAME,
    CalboardConfig,
    ConfigError,
    load_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit

MINIMAL_ENV = {
    "GOOGLE_CALENDAR_CREDENTIALS_JSON": '{"client_id": "c"}',
    "DISCORD_TOKEN": "bot-token",
    "DISCORD_CHANNEL_ID": "1234",
}

FULL_TOML = """\
[google]
calendar_id = "team@example.com"
credentials_json = "${TEST_CALBOARD_CREDS}"
webhook_url = "https://hooks.example/webhook/google"
channel_ttl_seconds = 86400

[discord]
bot_token = "bot-token"
channel_id = "1234"
board_message_id = 998877

[sync]
timezone = "Europe/Oslo"
interval_seconds = 30
debounce_seconds = 2.5
auto_watch = true

[board]
max_days = 7
title = "This week"

[logging]
level = "debug"
format = "JSON"
"""


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / DEFAULT_CONFIG_FILENAME
    path.write_text(content)
    return path


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


def test_from_env_defaults():
    config = CalboardConfig.from_env(MINIMAL_ENV)

    assert config.google.calendar_id == "primary"
    assert config.google.webhook_url is None
    assert config.discord.board_message_id is None
    assert config.sync.timezone == "UTC"
    assert config.sync.epsilon_seconds == 1.0
    assert config.sync.backstop_seconds == 1200.0
    assert config.sync.startup_lookback_seconds == 300.0
    assert config.sync.auto_watch is False
    assert config.board.future_days == 35
    assert config.server.port == 3000


def test_from_env_coerces_types():
    env = {
        **MINIMAL_ENV,
        "PORT": "8080",
        "CALBOARD_SYNC_INTERVAL_S": "15",
        "CALBOARD_AUTO_WATCH": "yes",
        "CALBOARD_BOARD_MAX_DAYS": "5",
        "GOOGLE_CHANNEL_TTL_SECONDS": "3600",
        "DISCORD_BOARD_MESSAGE_ID": "555",
    }
    config = CalboardConfig.from_env(env)

    assert config.server.port == 8080
    assert config.sync.interval_seconds == 15.0
    assert config.sync.auto_watch is True
    assert config.board.max_days == 5
    assert config.google.channel_ttl_seconds == 3600
    assert config.discord.board_message_id == "555"


@pytest.mark.parametrize("raw", ["false", "0", "off", "no", ""])
def test_from_env_false_values(raw: str):
    config = CalboardConfig.from_env({**MINIMAL_ENV, "CALBOARD_AUTO_WATCH": raw})
    assert config.sync.auto_watch is False


def test_empty_optional_value_becomes_none():
    config = CalboardConfig.from_env({**MINIMAL_ENV, "DISCORD_BOARD_MESSAGE_ID": ""})
    assert config.discord.board_message_id is None


@pytest.mark.parametrize(
    "missing",
    ["GOOGLE_CALENDAR_CREDENTIALS_JSON", "DISCORD_TOKEN", "DISCORD_CHANNEL_ID"],
)
def test_from_env_missing_required(missing: str):
    env = {k: v for k, v in MINIMAL_ENV.items() if k != missing}
    with pytest.raises(ConfigError, match="Missing required setting"):
        CalboardConfig.from_env(env)


def test_invalid_number_raises():
    with pytest.raises(ConfigError, match="sync.max_results"):
        CalboardConfig.from_env({**MINIMAL_ENV, "CALBOARD_MAX_RESULTS": "lots"})


def test_invalid_timezone_raises():
    with pytest.raises(ConfigError, match="time zone"):
        CalboardConfig.from_env({**MINIMAL_ENV, "CALBOARD_TIMEZONE": "Mars/Olympus"})


def test_non_positive_interval_raises():
    with pytest.raises(ConfigError, match="sync.interval_seconds must be positive"):
        CalboardConfig.from_env({**MINIMAL_ENV, "CALBOARD_SYNC_INTERVAL_S": "0"})


def test_negative_epsilon_raises():
    with pytest.raises(ConfigError, match="must not be negative"):
        CalboardConfig.from_env({**MINIMAL_ENV, "CALBOARD_EPSILON_S": "-1"})


def test_max_results_upper_bound():
    with pytest.raises(ConfigError, match="2500"):
        CalboardConfig.from_env({**MINIMAL_ENV, "CALBOARD_MAX_RESULTS": "5000"})


def test_invalid_log_format():
    with pytest.raises(ConfigError, match="logging.format"):
        CalboardConfig.from_env({**MINIMAL_ENV, "CALBOARD_LOG_FORMAT": "xml"})


# ---------------------------------------------------------------------------
# TOML
# ---------------------------------------------------------------------------


def test_load_full_toml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TEST_CALBOARD_CREDS", '{"client_id": "x"}')
    config = load_config(_write(tmp_path, FULL_TOML))

    assert config.google.calendar_id == "team@example.com"
    assert config.google.credentials_json == '{"client_id": "x"}'
    assert config.google.channel_ttl_seconds == 86400
    assert config.discord.board_message_id == "998877"
    assert config.sync.timezone == "Europe/Oslo"
    assert config.sync.interval_seconds == 30.0
    assert config.sync.debounce_seconds == 2.5
    assert config.sync.auto_watch is True
    assert config.board.max_days == 7
    assert config.board.title == "This week"
    assert config.logging.level == "DEBUG"
    assert config.logging.format == "json"


def test_load_from_directory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TEST_CALBOARD_CREDS", "{}")
    _write(tmp_path, FULL_TOML)
    config = load_config(tmp_path)
    assert config.discord.channel_id == "1234"


def test_missing_file(tmp_path: Path):
    with pytest.raises(ConfigError, match="Config file not found"):
        load_config(tmp_path / "nope.toml")


def test_invalid_toml(tmp_path: Path):
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(_write(tmp_path, "[google\ncalendar_id ="))


def test_unresolved_env_var(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("TEST_CALBOARD_CREDS", raising=False)
    with pytest.raises(ConfigError, match="TEST_CALBOARD_CREDS"):
        load_config(_write(tmp_path, FULL_TOML))


def test_unknown_section(tmp_path: Path):
    content = '[discord]\nbot_token = "t"\nchannel_id = "1"\n\n[slack]\ntoken = "x"\n'
    with pytest.raises(ConfigError, match="Unknown section"):
        load_config(_write(tmp_path, content))


def test_unknown_key(tmp_path: Path):
    content = '[discord]\nbot_token = "t"\nchannel_id = "1"\nguild = "x"\n'
    with pytest.raises(ConfigError, match=r"Unknown key\(s\) in \[discord\]: guild"):
        load_config(_write(tmp_path, content))


def test_resolve_env_vars_walks_nested(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TEST_CALBOARD_A", "alpha")
    resolved = resolve_env_vars({"x": ["${TEST_CALBOARD_A}", 3], "y": {"z": "pre-${TEST_CALBOARD_A}"}})
    assert resolved == {"x": ["alpha", 3], "y": {"z": "pre-alpha"}}
