"""Tests for the calboard CLI."""

from __future__ import annotations

import json

import httpx
import pytest
from click.testing import CliRunner
from conftest import NOW, FakeCalendar, FakeChat, make_event

from calboard import cli as cli_module
from calboard.cli import DEFAULT_SERVER_URL, cli
from calboard.service import CalboardService

pytestmark = pytest.mark.unit

VALID_TOML = """\
[google]
credentials_json = '{"client_id": "c", "client_secret": "s", "refresh_token": "r"}'

[discord]
bot_token = "bot-token"
channel_id = "1234"
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "calboard.toml"
    path.write_text(VALID_TOML)
    return path


@pytest.fixture(autouse=True)
def _quiet_bootstrap(monkeypatch):
    monkeypatch.setattr(cli_module, "configure_logging", lambda **kwargs: None)
    monkeypatch.setattr(cli_module, "init_telemetry", lambda *args: None)


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestConfigErrors:
    def test_invalid_config_exits_1(self, runner, tmp_path):
        path = tmp_path / "calboard.toml"
        path.write_text('[discord]\nbot_token = "x"\n')

        result = runner.invoke(cli, ["--config", str(path), "sync"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output
        assert "google.credentials_json" in result.output


class TestSync:
    def test_prints_summary(self, runner, config_file, monkeypatch):
        async def fake_sync(config):
            assert config.discord.channel_id == "1234"
            return {"trigger": "manual", "status": "success"}

        monkeypatch.setattr(cli_module, "_sync_once", fake_sync)

        result = runner.invoke(cli, ["--config", str(config_file), "sync"])

        assert result.exit_code == 0
        assert json.loads(result.output)["status"] == "success"

    def test_failed_cycle_exits_1(self, runner, config_file, monkeypatch):
        async def fake_sync(config):
            return {"trigger": "manual", "status": "failed", "error": "down"}

        monkeypatch.setattr(cli_module, "_sync_once", fake_sync)

        result = runner.invoke(cli, ["--config", str(config_file), "sync"])

        assert result.exit_code == 1

    def test_one_shot_sync_never_registers_a_push_channel(self, runner, tmp_path, monkeypatch):
        path = tmp_path / "calboard.toml"
        path.write_text(
            VALID_TOML.replace(
                "[google]\n",
                '[google]\nwebhook_url = "https://hooks.example/webhook/google"\n',
            )
            + "\n[sync]\nauto_watch = true\n"
        )
        calendar = FakeCalendar()
        calendar.delta = [make_event("A", updated=NOW)]
        chat = FakeChat()
        monkeypatch.setattr(
            cli_module,
            "CalboardService",
            lambda config: CalboardService(
                config, calendar=calendar, chat=chat, clock=lambda: NOW
            ),
        )

        result = runner.invoke(cli, ["--config", str(path), "sync"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["changes"]["created"] == 1
        assert calendar.watch_calls == []
        assert calendar.closed and chat.closed


class TestBoardSetup:
    def test_prints_new_id_and_hint(self, runner, config_file, monkeypatch):
        async def fake_setup(config):
            return "1001"

        monkeypatch.setattr(cli_module, "_board_setup", fake_setup)

        result = runner.invoke(cli, ["--config", str(config_file), "board-setup"])

        assert result.exit_code == 0
        assert "1001" in result.output
        assert "DISCORD_BOARD_MESSAGE_ID=1001" in result.output


class TestWatch:
    def test_status_calls_running_server(self, runner, monkeypatch):
        calls = []

        def fake_get(url, timeout):
            calls.append(url)
            return httpx.Response(200, json={"watch": {"active": False}})

        monkeypatch.setattr(cli_module.httpx, "get", fake_get)

        result = runner.invoke(cli, ["watch", "status"])

        assert result.exit_code == 0
        assert calls == [f"{DEFAULT_SERVER_URL}/watch/status"]
        assert json.loads(result.output) == {"watch": {"active": False}}

    def test_start_with_custom_url(self, runner, monkeypatch):
        calls = []

        def fake_get(url, timeout):
            calls.append(url)
            return httpx.Response(200, json={"active": True, "channel_id": "c-1"})

        monkeypatch.setattr(cli_module.httpx, "get", fake_get)

        result = runner.invoke(cli, ["watch", "start", "--url", "http://board.local:8080/"])

        assert result.exit_code == 0
        assert calls == ["http://board.local:8080/watch/start"]

    def test_server_error_exits_1(self, runner, monkeypatch):
        monkeypatch.setattr(
            cli_module.httpx,
            "get",
            lambda url, timeout: httpx.Response(
                502, json={"error": {"code": "AUTH_EXPIRED", "message": "x"}}
            ),
        )

        result = runner.invoke(cli, ["watch", "stop"])

        assert result.exit_code == 1
        assert "AUTH_EXPIRED" in result.output

    def test_unreachable_server_exits_1(self, runner, monkeypatch):
        def fake_get(url, timeout):
            raise httpx.ConnectError("connection refused")

        monkeypatch.setattr(cli_module.httpx, "get", fake_get)

        result = runner.invoke(cli, ["watch", "status"])

        assert result.exit_code == 1
        assert "Could not reach calboard" in result.output
