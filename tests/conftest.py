"""Shared test doubles for the calboard test suite.

``FakeCalendar`` and ``FakeChat`` implement the provider surfaces the sync
core consumes, in memory, so engine, board, service and API tests can run
without network access.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime, timedelta
from typing import Any

import pytest

from calboard.config import CalboardConfig, DiscordConfig, GoogleConfig
from calboard.errors import MessageVanishedError
from calboard.models import CalendarEvent, EventBoundary, EventStatus

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def make_event(
    event_id: str,
    *,
    updated: datetime | None = None,
    status: EventStatus = EventStatus.confirmed,
    title: str = "Standup",
    start: datetime | date | None = None,
    end: datetime | date | None = None,
    location: str | None = None,
) -> CalendarEvent:
    """Build a ``CalendarEvent``; defaults to a one-hour meeting tomorrow."""
    if start is None:
        start = NOW + timedelta(days=1)
    if end is None:
        if isinstance(start, datetime):
            end = start + timedelta(hours=1)
        else:
            end = start + timedelta(days=1)

    def _boundary(value: datetime | date) -> EventBoundary:
        if isinstance(value, datetime):
            return EventBoundary(date_time=value)
        return EventBoundary(date_value=value)

    return CalendarEvent(
        event_id=event_id,
        status=status,
        title=title,
        start=_boundary(start),
        end=_boundary(end),
        updated_at=updated or NOW,
        location=location,
        html_link=f"https://calendar.example/{event_id}",
    )


class FakeCalendar:
    """In-memory calendar with scriptable delta results and failures."""

    def __init__(self) -> None:
        self.delta: list[CalendarEvent] = []
        self.window: list[CalendarEvent] = []
        self.delta_calls: list[datetime] = []
        self.window_calls: list[dict[str, Any]] = []
        self.watch_calls: list[dict[str, Any]] = []
        self.stop_calls: list[dict[str, Any]] = []
        self.delta_error: Exception | None = None
        self.window_error: Exception | None = None
        self.stop_error: Exception | None = None
        self.expiration: datetime | None = NOW + timedelta(days=7)
        # When set, delta fetches block until the event is set.
        self.gate: asyncio.Event | None = None
        self.closed = False

    async def list_updated_since(
        self, updated_min: datetime, *, max_results: int = 250
    ) -> list[CalendarEvent]:
        self.delta_calls.append(updated_min)
        if self.gate is not None:
            await self.gate.wait()
        if self.delta_error is not None:
            raise self.delta_error
        return list(self.delta)[:max_results]

    async def list_window(
        self,
        time_min: datetime,
        time_max: datetime,
        *,
        show_deleted: bool = False,
        max_results: int = 250,
    ) -> list[CalendarEvent]:
        self.window_calls.append(
            {"time_min": time_min, "time_max": time_max, "show_deleted": show_deleted}
        )
        if self.window_error is not None:
            raise self.window_error
        return [e for e in self.window if show_deleted or not e.is_cancelled][:max_results]

    async def watch(
        self, *, channel_id: str, address: str, ttl_seconds: int | None = None
    ) -> tuple[str, datetime | None]:
        self.watch_calls.append(
            {"channel_id": channel_id, "address": address, "ttl_seconds": ttl_seconds}
        )
        return f"resource-{len(self.watch_calls)}", self.expiration

    async def stop_channel(self, *, channel_id: str, resource_id: str) -> None:
        self.stop_calls.append({"channel_id": channel_id, "resource_id": resource_id})
        if self.stop_error is not None:
            raise self.stop_error

    async def aclose(self) -> None:
        self.closed = True


class FakeChat:
    """In-memory chat channel recording every send, edit and fetch."""

    def __init__(self) -> None:
        self.messages: dict[str, dict[str, Any]] = {}
        self.sent: list[dict[str, Any]] = []
        self.edits: list[tuple[str, dict[str, Any]]] = []
        self.fetches: list[str] = []
        self.send_error: Exception | None = None
        self._next_id = 1000
        self.closed = False

    async def send_message(self, payload: dict[str, Any]) -> str:
        if self.send_error is not None:
            raise self.send_error
        self._next_id += 1
        message_id = str(self._next_id)
        self.messages[message_id] = payload
        self.sent.append(payload)
        return message_id

    async def edit_message(self, message_id: str, payload: dict[str, Any]) -> None:
        if message_id not in self.messages:
            raise MessageVanishedError(message_id)
        self.messages[message_id] = payload
        self.edits.append((message_id, payload))

    async def fetch_message(self, message_id: str) -> dict[str, Any] | None:
        self.fetches.append(message_id)
        return self.messages.get(message_id)

    async def aclose(self) -> None:
        self.closed = True


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays without waiting."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def chat() -> FakeChat:
    return FakeChat()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def config() -> CalboardConfig:
    return CalboardConfig(
        google=GoogleConfig(
            calendar_id="team@example.com",
            credentials_json='{"client_id": "c", "client_secret": "s", "refresh_token": "r"}',
            webhook_url="https://hooks.example/webhook/google",
        ),
        discord=DiscordConfig(bot_token="bot-token", channel_id="42"),
    )
