"""CLI for calboard: run the sync service and operator actions."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
import httpx

from calboard import __version__
from calboard.config import CalboardConfig, ConfigError, load_config
from calboard.core.logging import configure_logging
from calboard.core.telemetry import init_telemetry
from calboard.service import CalboardService
from calboard.sync.engine import Trigger

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://127.0.0.1:3000"


def _load(config_path: Path | None) -> CalboardConfig:
    try:
        if config_path is not None:
            return load_config(config_path)
        return CalboardConfig.from_env()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to calboard.toml (or its directory). Defaults to environment variables.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calboard: mirror a Google calendar into a Discord channel."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _bootstrap(ctx: click.Context) -> CalboardConfig:
    config = _load(ctx.obj.get("config_path"))
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
    )
    init_telemetry()
    return config


@cli.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the webhook server, periodic sync and board updates."""
    import uvicorn

    from calboard.api.app import create_app

    config = _bootstrap(ctx)
    app = create_app(CalboardService(config))
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.server.host,
            port=config.server.port,
            log_config=None,
        )
    )
    click.echo(f"Serving calboard on {config.server.host}:{config.server.port}")
    asyncio.run(server.serve())


async def _sync_once(config: CalboardConfig) -> dict:
    service = CalboardService(config)
    try:
        await service.startup(start_ticker=False, auto_watch=False)
        result = await service.engine.trigger(Trigger.manual)
        return result.as_dict() if result is not None else {}
    finally:
        await service.shutdown()


@cli.command()
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Warm up, run one sync cycle and print its summary."""
    config = _bootstrap(ctx)
    summary = asyncio.run(_sync_once(config))
    click.echo(json.dumps(summary, indent=2))
    if summary.get("status") != "success":
        sys.exit(1)


async def _board_setup(config: CalboardConfig) -> str | None:
    service = CalboardService(config)
    try:
        return await service.setup_board()
    finally:
        await service.shutdown()


@cli.command("board-setup")
@click.pass_context
def board_setup(ctx: click.Context) -> None:
    """Create (or refresh) the board message and print its id."""
    config = _bootstrap(ctx)
    message_id = asyncio.run(_board_setup(config))
    if message_id is None:
        click.echo("Board refresh did not produce a message id", err=True)
        sys.exit(1)
    click.echo(message_id)
    if message_id != config.discord.board_message_id:
        click.echo(f"Set DISCORD_BOARD_MESSAGE_ID={message_id} to keep using this board.", err=True)


@cli.group()
def watch() -> None:
    """Control the push channel of a running calboard server."""


def _call_server(url: str, path: str) -> None:
    try:
        response = httpx.get(f"{url.rstrip('/')}{path}", timeout=30.0)
    except httpx.HTTPError as exc:
        click.echo(f"Could not reach calboard at {url}: {exc}", err=True)
        sys.exit(1)
    click.echo(json.dumps(response.json(), indent=2))
    if response.status_code >= 400:
        sys.exit(1)


_url_option = click.option(
    "--url",
    default=DEFAULT_SERVER_URL,
    show_default=True,
    help="Base URL of the running calboard server",
)


@watch.command("start")
@_url_option
def watch_start(url: str) -> None:
    """Register a fresh push channel (replacing the active one)."""
    _call_server(url, "/watch/start")


@watch.command("stop")
@_url_option
def watch_stop(url: str) -> None:
    """Stop the active push channel."""
    _call_server(url, "/watch/stop")


@watch.command("status")
@_url_option
def watch_status(url: str) -> None:
    """Show push channel and sync status."""
    _call_server(url, "/watch/status")
