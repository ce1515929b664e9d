"""Composition root: wires clients, engine, board and subscription together.

All mutable state (snapshot store, watermark, board message id, active push
channel) lives on the component instances built here. The HTTP app and the
CLI receive a ``CalboardService`` and never reach for module-level state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from calboard.board import BoardUpdater
from calboard.config import CalboardConfig
from calboard.notifications import ChangeNotifier
from calboard.providers.discord import DiscordChannelClient
from calboard.providers.google import GoogleCalendarClient, GoogleOAuthCredentials
from calboard.subscription import SubscriptionManager
from calboard.sync.engine import SyncEngine, Trigger
from calboard.sync.snapshots import SnapshotStore
from calboard.sync.watermark import WatermarkTracker

logger = logging.getLogger(__name__)

TEST_MESSAGE = "✅ calboard test message: the bot can post to this channel."


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CalboardService:
    """Owns every long-lived component of a running calboard process."""

    def __init__(
        self,
        config: CalboardConfig,
        *,
        calendar: GoogleCalendarClient | None = None,
        chat: DiscordChannelClient | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config
        timeout = config.sync.request_timeout_seconds

        if calendar is None:
            credentials = GoogleOAuthCredentials.from_json(config.google.credentials_json)
            calendar = GoogleCalendarClient(
                credentials, calendar_id=config.google.calendar_id, timeout=timeout
            )
        if chat is None:
            chat = DiscordChannelClient(
                bot_token=config.discord.bot_token,
                channel_id=config.discord.channel_id,
                timeout=timeout,
            )
        self.calendar = calendar
        self.chat = chat

        sync = config.sync
        self.board = BoardUpdater(
            calendar,
            chat,
            config=config.board,
            timezone=sync.timezone,
            message_id=config.discord.board_message_id,
            max_results=sync.max_results,
            clock=clock,
        )
        self.subscription = SubscriptionManager(
            calendar,
            webhook_url=config.google.webhook_url,
            ttl_seconds=config.google.channel_ttl_seconds,
            clock=clock,
        )
        self.engine = SyncEngine(
            calendar,
            timezone=sync.timezone,
            store=SnapshotStore(),
            watermark=WatermarkTracker(
                startup_lookback=timedelta(seconds=sync.startup_lookback_seconds),
                backstop=timedelta(seconds=sync.backstop_seconds),
                epsilon=timedelta(seconds=sync.epsilon_seconds),
                clock=clock,
            ),
            board=self.board,
            notifier=ChangeNotifier(chat),
            channels=self.subscription,
            max_results=sync.max_results,
            debounce_seconds=sync.debounce_seconds,
            cycle_timeout_seconds=sync.cycle_timeout_seconds,
            warmup_past_days=sync.warmup_past_days,
            warmup_future_days=sync.warmup_future_days,
            clock=clock,
        )
        self._ticker_task: asyncio.Task | None = None
        self.started_at: datetime | None = None
        self._clock = clock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def startup(self, *, start_ticker: bool = True, auto_watch: bool = True) -> None:
        """Warm up the snapshot store, then optionally start the watch and ticker.

        Warm-up errors propagate: starting without a warm store would report
        every known event as newly created. The push channel is only started
        when both *auto_watch* and ``sync.auto_watch`` are set; one-shot callers
        that never serve the webhook pass ``auto_watch=False``.
        """
        self.started_at = self._clock()
        loaded = await self.engine.warm_up()
        logger.info(
            "Calboard started (calendar_id=%s, snapshots=%d)",
            self.config.google.calendar_id,
            loaded,
        )

        if auto_watch and self.config.sync.auto_watch and self.config.google.webhook_url:
            try:
                await self.subscription.start()
            except Exception as exc:
                logger.error("Failed to start push channel at startup: %s", exc, exc_info=True)

        if start_ticker:
            self._ticker_task = asyncio.create_task(self._run_ticker(), name="calboard-sync-ticker")
            logger.info(
                "Sync ticker started (interval=%.0fs)", self.config.sync.interval_seconds
            )

    async def shutdown(self) -> None:
        if self._ticker_task is not None and not self._ticker_task.done():
            self._ticker_task.cancel()
            try:
                await self._ticker_task
            except asyncio.CancelledError:
                pass
        self._ticker_task = None

        await self.calendar.aclose()
        await self.chat.aclose()
        logger.info("Calboard stopped")

    async def _run_ticker(self) -> None:
        """Background task: run a sync cycle every ``interval_seconds``.

        Covers push notifications that are missed or delayed. Every cycle also
        refreshes the board.
        """
        interval_seconds = self.config.sync.interval_seconds
        logger.debug("Sync ticker loop started (interval=%.0fs)", interval_seconds)
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.subscription.check_expiry()
                await self.engine.trigger(Trigger.timer)
            except Exception as exc:
                logger.error("Sync ticker error: %s", exc, exc_info=True)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def setup_board(self) -> str | None:
        """Force a board refresh, creating the message if needed; return its id."""
        result = await self.board.refresh(create_if_missing=True)
        if result is None:
            # Another refresh is running; it will leave the id in place.
            return self.board.message_id
        return result.message_id

    async def send_test_message(self) -> str:
        return await self.chat.send_message({"content": TEST_MESSAGE})

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def sync_status(self) -> dict[str, Any]:
        engine = self.engine
        return {
            "warmed_up": engine.warmed_up,
            "in_flight": engine.in_flight,
            "auth_failed": engine.auth_failed,
            "watermark": engine.watermark.current_floor().isoformat(),
            "snapshots": len(engine.store),
            "last_success_at": (
                engine.last_success_at.isoformat() if engine.last_success_at else None
            ),
            "last_result": engine.last_result.as_dict() if engine.last_result else None,
        }

    def board_status(self) -> dict[str, Any]:
        return {
            "message_id": self.board.message_id,
            "in_flight": self.board.in_flight,
            "last_refresh_at": (
                self.board.last_refresh_at.isoformat() if self.board.last_refresh_at else None
            ),
            "last_error": self.board.last_error,
        }

    def health(self) -> dict[str, Any]:
        if self.engine.auth_failed:
            status = "unhealthy"
        elif self.engine.last_result is not None and self.engine.last_result.error:
            status = "degraded"
        else:
            status = "ok"
        return {
            "status": status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "sync": self.sync_status(),
            "board": self.board_status(),
            "watch": self.subscription.status(),
        }
