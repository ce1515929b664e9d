"""The board: one persistent chat message summarizing upcoming events.

``render_board`` turns a window of events into a message payload grouped by
local day, bounded by a day count and a character budget (overflow collapses
into a "+N more" line). ``BoardUpdater`` owns the message id and keeps exactly
one board message alive: it edits in place when the message exists, and sends
a fresh one (recording the new id) when it does not.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from typing import Any, Protocol

from calboard.config import BoardConfig
from calboard.core.metrics import board_refresh_total, get_error_type, record_error
from calboard.core.telemetry import traced
from calboard.errors import MessageVanishedError
from calboard.models import CalendarEvent, coerce_zoneinfo, describe_when

logger = logging.getLogger(__name__)

BOARD_EMBED_COLOR = 0x3498DB
EMPTY_BOARD_TEXT = "No upcoming events."
# Room kept free for the overflow summary line.
_OVERFLOW_RESERVE = 48


class BoardCalendar(Protocol):
    async def list_window(
        self,
        time_min: datetime,
        time_max: datetime,
        *,
        show_deleted: bool = False,
        max_results: int = 250,
    ) -> list[CalendarEvent]: ...


class BoardChat(Protocol):
    async def send_message(self, payload: dict[str, Any]) -> str: ...

    async def edit_message(self, message_id: str, payload: dict[str, Any]) -> None: ...

    async def fetch_message(self, message_id: str) -> dict[str, Any] | None: ...


class BoardOutcome(StrEnum):
    created = "created"
    edited = "edited"
    recreated = "recreated"
    skipped = "skipped"


@dataclass(frozen=True)
class BoardRefreshResult:
    outcome: BoardOutcome
    message_id: str | None
    days_rendered: int = 0
    days_omitted: int = 0


@dataclass(frozen=True)
class RenderedBoard:
    payload: dict[str, Any]
    days_rendered: int
    days_omitted: int


def _event_line(event: CalendarEvent, tz) -> str:
    _, time_label = describe_when(event.start, event.end, tz)
    line = f"• {time_label} **{event.title}**" if time_label else f"• **{event.title}**"
    if event.location:
        line += f" ({event.location})"
    return line


def group_by_day(events: Iterable[CalendarEvent], timezone: str) -> dict[date, list[CalendarEvent]]:
    """Group live events by the local calendar day they start on, in start order."""
    tz = coerce_zoneinfo(timezone)
    live = [e for e in events if not e.is_cancelled and e.start is not None]
    live.sort(key=lambda e: e.start.sort_key(tz))  # type: ignore[union-attr]
    days: dict[date, list[CalendarEvent]] = {}
    for event in live:
        day = event.start.local_date(tz)  # type: ignore[union-attr]
        if day is None:
            continue
        days.setdefault(day, []).append(event)
    return days


def render_board(
    events: Iterable[CalendarEvent],
    *,
    timezone: str,
    now: datetime,
    title: str = "Upcoming events",
    max_days: int = 14,
    max_chars: int = 3900,
) -> RenderedBoard:
    """Render the board message payload."""
    tz = coerce_zoneinfo(timezone)
    days = group_by_day(events, timezone)

    sections: list[str] = []
    used = 0
    rendered = 0
    for index, (day, day_events) in enumerate(days.items()):
        if rendered >= max_days:
            break
        header = f"__**{day:%A %d %B}**__"
        lines = [_event_line(e, tz) for e in day_events]
        section = "\n".join([header, *lines])
        separator = 2 if sections else 0
        remaining_after = len(days) - index - 1
        reserve = _OVERFLOW_RESERVE if remaining_after else 0

        if used + separator + len(section) + reserve <= max_chars:
            sections.append(section)
            used += separator + len(section)
            rendered += 1
            continue

        if not sections:
            # A single day larger than the budget: keep as many lines as fit.
            kept = [header]
            size = len(header)
            for line in lines:
                if size + 1 + len(line) + _OVERFLOW_RESERVE > max_chars:
                    break
                kept.append(line)
                size += 1 + len(line)
            hidden = len(lines) - (len(kept) - 1)
            if hidden:
                kept.append(f"+{hidden} more event(s)")
            sections.append("\n".join(kept))
            rendered += 1
        break

    omitted = len(days) - rendered
    if sections:
        description = "\n\n".join(sections)
        if omitted:
            description += f"\n\n+{omitted} more day(s)"
    else:
        description = EMPTY_BOARD_TEXT

    local_now = now.astimezone(tz)
    payload = {
        "content": "",
        "embeds": [
            {
                "title": title,
                "description": description[:4096],
                "color": BOARD_EMBED_COLOR,
                "footer": {"text": f"Updated {local_now:%d %b %H:%M} ({timezone})"},
            }
        ],
    }
    return RenderedBoard(payload=payload, days_rendered=rendered, days_omitted=omitted)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BoardUpdater:
    """Owns the board message id and refreshes the message in place."""

    def __init__(
        self,
        calendar: BoardCalendar,
        chat: BoardChat,
        *,
        config: BoardConfig,
        timezone: str,
        message_id: str | None = None,
        max_results: int = 250,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._calendar = calendar
        self._chat = chat
        self._config = config
        self._timezone = timezone
        self._message_id = message_id or None
        self._max_results = max_results
        self._clock = clock
        self._in_flight = False
        self.last_refresh_at: datetime | None = None
        self.last_error: str | None = None

    @property
    def message_id(self) -> str | None:
        return self._message_id

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def refresh(self, *, create_if_missing: bool = False) -> BoardRefreshResult | None:
        """Re-render and publish the board.

        Returns ``None`` when another refresh is already running (the overlapping
        call is dropped; the next trigger will catch up). When no message id is
        held and *create_if_missing* is false, nothing is fetched or sent. A held
        id whose message was deleted is always replaced by a new message.
        """
        if self._in_flight:
            logger.debug("Board refresh already in flight; dropping overlapping trigger")
            board_refresh_total.labels(outcome="dropped").inc()
            return None

        if self._message_id is None and not create_if_missing:
            board_refresh_total.labels(outcome=BoardOutcome.skipped.value).inc()
            return BoardRefreshResult(outcome=BoardOutcome.skipped, message_id=None)

        self._in_flight = True
        try:
            with traced("calboard.board_refresh", create_if_missing=create_if_missing):
                result = await self._refresh()
        except Exception as exc:
            self.last_error = str(exc)[:200]
            board_refresh_total.labels(outcome="failed").inc()
            record_error(error_type=get_error_type(exc), operation="board_refresh")
            raise
        finally:
            self._in_flight = False

        self.last_error = None
        self.last_refresh_at = self._clock()
        board_refresh_total.labels(outcome=result.outcome.value).inc()
        logger.info(
            "Board refreshed",
            extra={
                "outcome": result.outcome.value,
                "message_id": result.message_id,
                "days_rendered": result.days_rendered,
                "days_omitted": result.days_omitted,
            },
        )
        return result

    async def _refresh(self) -> BoardRefreshResult:
        now = self._clock()
        window_start = now - timedelta(days=self._config.past_days)
        window_end = now + timedelta(days=self._config.future_days)
        events = await self._calendar.list_window(
            window_start, window_end, show_deleted=False, max_results=self._max_results
        )
        rendered = render_board(
            events,
            timezone=self._timezone,
            now=now,
            title=self._config.title,
            max_days=self._config.max_days,
            max_chars=self._config.max_chars,
        )

        vanished = False
        if self._message_id is not None:
            existing = await self._chat.fetch_message(self._message_id)
            if existing is None:
                vanished = True
            else:
                try:
                    await self._chat.edit_message(self._message_id, rendered.payload)
                except MessageVanishedError:
                    vanished = True
                else:
                    return BoardRefreshResult(
                        outcome=BoardOutcome.edited,
                        message_id=self._message_id,
                        days_rendered=rendered.days_rendered,
                        days_omitted=rendered.days_omitted,
                    )

        if vanished:
            logger.warning(
                "Board message vanished; creating a replacement",
                extra={"message_id": self._message_id},
            )
            self._message_id = None

        self._message_id = await self._chat.send_message(rendered.payload)
        return BoardRefreshResult(
            outcome=BoardOutcome.recreated if vanished else BoardOutcome.created,
            message_id=self._message_id,
            days_rendered=rendered.days_rendered,
            days_omitted=rendered.days_omitted,
        )
