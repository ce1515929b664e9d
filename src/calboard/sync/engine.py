"""Sync engine: one fetch, classify, commit, notify pass per trigger.

A cycle moves through these steps:

1. Fetch every event updated at or after the watermark floor (cancelled
   events included, ordered by update time, bounded count).
2. Classify each event against the snapshot store. The store is mutated per
   event, so a cycle aborted halfway leaves the already classified events
   committed; re-running is safe because classification is idempotent.
3. Advance the watermark once, from the whole batch.
4. Post one notification per change in fetch order, then refresh the board
   (always, even with no changes, so drift self-corrects).

The cycle timeout bounds the delta fetch, the only step before the commit
point that waits on the network. Once changes are committed they are always
announced; the board refresh that follows has its own timeout.

Triggers come from push notifications, the periodic ticker and manual
requests. At most one cycle runs at a time: triggers that arrive while a cycle
is in flight collapse into a single trailing cycle that starts after a short
debounce.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, Protocol

from calboard.board import BoardRefreshResult, BoardUpdater
from calboard.core.metrics import (
    changes_total,
    get_error_type,
    record_error,
    sync_cycle_seconds,
    sync_cycles_total,
    webhook_notifications_total,
)
from calboard.core.telemetry import traced
from calboard.errors import AuthExpiredError
from calboard.models import CalendarEvent, Change, ChangeKind
from calboard.notifications import ChangeNotifier
from calboard.sync.classifier import classify
from calboard.sync.snapshots import SnapshotStore
from calboard.sync.watermark import WatermarkTracker

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 3.0
DEFAULT_CYCLE_TIMEOUT_SECONDS = 120.0
WARMUP_MAX_RESULTS = 2500
SYNC_RESOURCE_STATE = "sync"


class SyncCalendar(Protocol):
    async def list_updated_since(
        self, updated_min: datetime, *, max_results: int = 250
    ) -> list[CalendarEvent]: ...

    async def list_window(
        self,
        time_min: datetime,
        time_max: datetime,
        *,
        show_deleted: bool = False,
        max_results: int = 250,
    ) -> list[CalendarEvent]: ...


class ChannelAuthority(Protocol):
    def is_current(self, channel_id: str | None) -> bool: ...


class Trigger(StrEnum):
    webhook = "webhook"
    timer = "timer"
    manual = "manual"


class NotificationDisposition(StrEnum):
    accepted = "accepted"
    heartbeat = "heartbeat"
    stale_channel = "stale_channel"


class CycleStatus(StrEnum):
    success = "success"
    failed = "failed"
    auth_failed = "auth_failed"


@dataclass
class SyncResult:
    """Outcome of one sync cycle."""

    trigger: Trigger
    status: CycleStatus
    started_at: datetime
    heartbeat: bool = False
    fetched: int = 0
    changes: list[Change] = field(default_factory=list)
    floor_before: datetime | None = None
    floor_after: datetime | None = None
    notified: int = 0
    board: BoardRefreshResult | None = None
    board_error: str | None = None
    duration_s: float = 0.0
    error: str | None = None

    def counts(self) -> dict[str, int]:
        counter = Counter(change.kind.value for change in self.changes)
        return {kind.value: counter.get(kind.value, 0) for kind in ChangeKind}

    def as_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "heartbeat": self.heartbeat,
            "fetched": self.fetched,
            "changes": self.counts(),
            "floor_before": self.floor_before.isoformat() if self.floor_before else None,
            "floor_after": self.floor_after.isoformat() if self.floor_after else None,
            "notified": self.notified,
            "board_outcome": self.board.outcome.value if self.board else None,
            "board_error": self.board_error,
            "duration_s": round(self.duration_s, 3),
            "error": self.error,
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _single_stamp(events: list[CalendarEvent]) -> bool:
    return len({event.updated_at for event in events if event.updated_at is not None}) <= 1


class SyncEngine:
    """Owns the snapshot store and watermark, and runs single-flight cycles."""

    def __init__(
        self,
        calendar: SyncCalendar,
        *,
        timezone: str = "UTC",
        store: SnapshotStore | None = None,
        watermark: WatermarkTracker | None = None,
        board: BoardUpdater | None = None,
        notifier: ChangeNotifier | None = None,
        channels: ChannelAuthority | None = None,
        max_results: int = 250,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        cycle_timeout_seconds: float = DEFAULT_CYCLE_TIMEOUT_SECONDS,
        warmup_past_days: int = 30,
        warmup_future_days: int = 365,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._calendar = calendar
        self._timezone = timezone
        self._store = store if store is not None else SnapshotStore()
        self._watermark = watermark if watermark is not None else WatermarkTracker(clock=clock)
        self._board = board
        self._notifier = notifier
        self._channels = channels
        self._max_results = max_results
        self._debounce_seconds = debounce_seconds
        self._cycle_timeout_seconds = cycle_timeout_seconds
        self._warmup_past_days = warmup_past_days
        self._warmup_future_days = warmup_future_days
        self._clock = clock
        self._sleep = sleep

        # Single-flight gate state.
        self._in_flight = False
        self._rerun_pending = False
        self._rerun_trigger = Trigger.manual
        self._rerun_heartbeat = False

        self.warmed_up = False
        self.auth_failed = False
        self.last_result: SyncResult | None = None
        self.last_success_at: datetime | None = None

    @property
    def store(self) -> SnapshotStore:
        return self._store

    @property
    def watermark(self) -> WatermarkTracker:
        return self._watermark

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def rerun_pending(self) -> bool:
        return self._rerun_pending

    # ------------------------------------------------------------------
    # Warm-up
    # ------------------------------------------------------------------

    async def warm_up(self) -> int:
        """Seed the snapshot store so known events are not reported as new.

        Must complete before the first cycle; the HTTP surface and ticker are
        only started afterwards.
        """
        if self._in_flight:
            raise RuntimeError("warm_up must run before any sync cycle")
        now = self._clock()
        events = await self._calendar.list_window(
            now - timedelta(days=self._warmup_past_days),
            now + timedelta(days=self._warmup_future_days),
            show_deleted=True,
            max_results=WARMUP_MAX_RESULTS,
        )
        loaded = self._store.warm_up(events, timezone=self._timezone)
        self.warmed_up = True
        return loaded

    # ------------------------------------------------------------------
    # Inbound notifications
    # ------------------------------------------------------------------

    def accept_notification(
        self,
        *,
        channel_id: str | None,
        resource_state: str | None,
    ) -> NotificationDisposition:
        """Decide what to do with an inbound push notification.

        Notifications for any channel other than the active one are dropped
        without error. Channel-setup ``sync`` notifications still run a cycle
        but suppress per-event chat notifications when nothing changed.
        """
        if self._channels is None or not self._channels.is_current(channel_id):
            disposition = NotificationDisposition.stale_channel
            logger.debug("Dropping push notification for stale channel %s", channel_id)
        elif (resource_state or "").strip().lower() == SYNC_RESOURCE_STATE:
            disposition = NotificationDisposition.heartbeat
        else:
            disposition = NotificationDisposition.accepted
        webhook_notifications_total.labels(disposition=disposition.value).inc()
        return disposition

    async def handle_notification(
        self,
        *,
        channel_id: str | None,
        resource_state: str | None,
    ) -> SyncResult | None:
        disposition = self.accept_notification(
            channel_id=channel_id, resource_state=resource_state
        )
        if disposition == NotificationDisposition.stale_channel:
            return None
        return await self.trigger(
            Trigger.webhook, heartbeat=disposition == NotificationDisposition.heartbeat
        )

    # ------------------------------------------------------------------
    # Single-flight gate
    # ------------------------------------------------------------------

    async def trigger(self, trigger: Trigger, *, heartbeat: bool = False) -> SyncResult | None:
        """Run a cycle now, or fold this request into the trailing re-run.

        Returns the result of the last cycle this call ran, or ``None`` when
        the request was coalesced into a cycle owned by another caller.
        """
        if self._in_flight:
            if self._rerun_pending:
                # Only a pure run of heartbeats keeps notification suppression.
                self._rerun_heartbeat = self._rerun_heartbeat and heartbeat
            else:
                self._rerun_pending = True
                self._rerun_trigger = trigger
                self._rerun_heartbeat = heartbeat
            logger.debug("Sync cycle in flight; coalescing %s trigger", trigger.value)
            return None

        self._in_flight = True
        try:
            result = await self._guarded_cycle(trigger, heartbeat=heartbeat)
            while self._rerun_pending:
                await self._sleep(self._debounce_seconds)
                next_trigger, next_heartbeat = self._rerun_trigger, self._rerun_heartbeat
                self._rerun_pending = False
                result = await self._guarded_cycle(next_trigger, heartbeat=next_heartbeat)
            return result
        finally:
            self._in_flight = False
            self._rerun_pending = False

    async def _guarded_cycle(self, trigger: Trigger, *, heartbeat: bool) -> SyncResult:
        started_at = self._clock()
        start = time.perf_counter()
        try:
            result = await self.run_cycle(trigger, heartbeat=heartbeat)
        except TimeoutError:
            result = self._failed_result(
                trigger, heartbeat, started_at, start, "cycle timed out", CycleStatus.failed
            )
            record_error(error_type="timeout", operation="sync_cycle")
            logger.error(
                "Sync cycle timed out after %.0fs", self._cycle_timeout_seconds,
                extra={"trigger": trigger.value},
            )
        except AuthExpiredError as exc:
            self.auth_failed = True
            result = self._failed_result(
                trigger, heartbeat, started_at, start, str(exc)[:200], CycleStatus.auth_failed
            )
            record_error(error_type=get_error_type(exc), operation="sync_cycle")
            logger.error(
                "Sync cycle failed: credentials rejected; refresh credentials to recover",
                extra={"trigger": trigger.value, "error": result.error},
            )
        except Exception as exc:
            result = self._failed_result(
                trigger, heartbeat, started_at, start, str(exc)[:200], CycleStatus.failed
            )
            record_error(error_type=get_error_type(exc), operation="sync_cycle")
            logger.error(
                "Sync cycle failed: %s", result.error,
                exc_info=True,
                extra={"trigger": trigger.value},
            )

        self.last_result = result
        sync_cycles_total.labels(trigger=trigger.value, status=result.status.value).inc()
        sync_cycle_seconds.labels(status=result.status.value).observe(result.duration_s)
        return result

    def _failed_result(
        self,
        trigger: Trigger,
        heartbeat: bool,
        started_at: datetime,
        start: float,
        error: str,
        status: CycleStatus,
    ) -> SyncResult:
        return SyncResult(
            trigger=trigger,
            status=status,
            started_at=started_at,
            heartbeat=heartbeat,
            floor_before=self._watermark.current_floor(),
            floor_after=self._watermark.current_floor(),
            duration_s=time.perf_counter() - start,
            error=error,
        )

    # ------------------------------------------------------------------
    # Cycle body
    # ------------------------------------------------------------------

    async def _fetch_delta(self, floor: datetime) -> list[CalendarEvent]:
        """Fetch events updated since *floor*, widening the cap when it is stuck.

        A full page whose events all share one ``updated`` stamp would leave the
        floor just below that stamp, and every later update would keep sorting
        behind the same page. In that case the cap is doubled until the page
        reaches a newer stamp or the delta is exhausted.
        """
        limit = self._max_results
        while True:
            events = await self._calendar.list_updated_since(floor, max_results=limit)
            if len(events) < limit or not _single_stamp(events):
                return events
            limit *= 2
            logger.info(
                "Delta page filled by a single update stamp; widening fetch",
                extra={"max_results": limit},
            )

    async def run_cycle(self, trigger: Trigger, *, heartbeat: bool = False) -> SyncResult:
        """Execute one cycle without the single-flight gate or error capture.

        Remote errors propagate; callers other than ``trigger`` must make sure
        no other cycle is running.
        """
        started_at = self._clock()
        start = time.perf_counter()

        with traced("calboard.sync_cycle", trigger=trigger.value, heartbeat=heartbeat):
            floor_before = self._watermark.current_floor()
            events = await asyncio.wait_for(
                self._fetch_delta(floor_before), timeout=self._cycle_timeout_seconds
            )

            changes: list[Change] = []
            for event in events:
                change = classify(event, self._store, timezone=self._timezone)
                if change is not None:
                    changes.append(change)
                    changes_total.labels(kind=change.kind.value).inc()

            floor_after = self._watermark.advance(event.updated_at for event in events)

            result = SyncResult(
                trigger=trigger,
                status=CycleStatus.success,
                started_at=started_at,
                heartbeat=heartbeat,
                fetched=len(events),
                changes=changes,
                floor_before=floor_before,
                floor_after=floor_after,
            )

            if heartbeat and not changes:
                logger.debug("Channel sync notification with no changes; nothing to announce")
            elif changes and self._notifier is not None:
                result.notified = await self._notifier.emit(changes)

            if self._board is not None:
                try:
                    result.board = await asyncio.wait_for(
                        self._board.refresh(), timeout=self._cycle_timeout_seconds
                    )
                except TimeoutError:
                    result.board_error = "board refresh timed out"
                    logger.warning(
                        "Board refresh timed out after %.0fs", self._cycle_timeout_seconds
                    )
                except Exception as exc:
                    result.board_error = str(exc)[:200]
                    logger.warning("Board refresh failed during sync cycle", exc_info=True)

        result.duration_s = time.perf_counter() - start
        self.auth_failed = False
        self.last_success_at = started_at
        logger.info(
            "Sync cycle completed",
            extra={
                "trigger": trigger.value,
                "fetched": result.fetched,
                **result.counts(),
                "floor": floor_after.isoformat(),
                "notified": result.notified,
                "duration_ms": int(result.duration_s * 1000),
            },
        )
        return result
