"""Tests for the push-channel subscription lifecycle."""

from __future__ import annotations

import logging
from datetime import timedelta
from itertools import count

import pytest
from conftest import NOW, FakeCalendar

from calboard.errors import RemoteRequestError, TransientNetworkError
from calboard.subscription import SubscriptionManager

pytestmark = pytest.mark.unit

WEBHOOK_URL = "https://hooks.example/webhook/google"


def _manager(calendar: FakeCalendar, **kwargs) -> SubscriptionManager:
    ids = count(1)
    kwargs.setdefault("webhook_url", WEBHOOK_URL)
    return SubscriptionManager(
        calendar,
        clock=lambda: NOW,
        channel_id_factory=lambda: f"channel-{next(ids)}",
        **kwargs,
    )


async def test_start_registers_channel(calendar):
    manager = _manager(calendar, ttl_seconds=3600)

    active = await manager.start()

    assert active.channel_id == "channel-1"
    assert active.resource_id == "resource-1"
    assert active.address == WEBHOOK_URL
    assert active.started_at == NOW
    assert calendar.watch_calls == [
        {"channel_id": "channel-1", "address": WEBHOOK_URL, "ttl_seconds": 3600}
    ]
    assert manager.is_current("channel-1")
    assert not manager.is_current("channel-2")
    assert not manager.is_current(None)


async def test_restart_mints_new_id_and_stops_previous(calendar):
    manager = _manager(calendar)
    await manager.start()

    active = await manager.start()

    assert active.channel_id == "channel-2"
    assert calendar.stop_calls == [{"channel_id": "channel-1", "resource_id": "resource-1"}]
    assert not manager.is_current("channel-1")
    assert manager.is_current("channel-2")


async def test_restart_proceeds_when_old_stop_fails(calendar, caplog):
    manager = _manager(calendar)
    await manager.start()
    calendar.stop_error = TransientNetworkError("channel stop failed")

    with caplog.at_level(logging.WARNING, logger="calboard.subscription"):
        active = await manager.start()

    assert active.channel_id == "channel-2"
    assert len(calendar.watch_calls) == 2
    assert "Failed to stop previous push channel" in caplog.text


async def test_stop_is_idempotent(calendar):
    manager = _manager(calendar)
    await manager.start()

    assert await manager.stop() is True
    assert await manager.stop() is False

    assert len(calendar.stop_calls) == 1
    assert manager.active is None
    assert not manager.is_current("channel-1")


async def test_stop_treats_expired_channel_as_stopped(calendar):
    manager = _manager(calendar)
    await manager.start()
    calendar.stop_error = RemoteRequestError(
        service="google", status_code=404, message="Channel 'channel-1' not found"
    )

    assert await manager.stop() is True
    assert await manager.stop() is False

    assert manager.active is None
    assert manager.status() == {"active": False, "webhook_url": WEBHOOK_URL}
    assert len(calendar.stop_calls) == 1


async def test_stop_releases_channel_when_remote_stop_fails(calendar):
    manager = _manager(calendar)
    await manager.start()
    calendar.stop_error = TransientNetworkError("google 503")

    with pytest.raises(TransientNetworkError):
        await manager.stop()

    assert manager.active is None
    assert not manager.is_current("channel-1")
    assert await manager.stop() is False
    assert len(calendar.stop_calls) == 1


async def test_start_without_webhook_url(calendar):
    manager = _manager(calendar, webhook_url=None)

    with pytest.raises(ValueError, match="webhook_url"):
        await manager.start()
    assert calendar.watch_calls == []


async def test_status_reports_remaining_lifetime(calendar):
    manager = _manager(calendar)
    assert manager.status() == {"active": False, "webhook_url": WEBHOOK_URL}

    await manager.start()
    status = manager.status()

    assert status["active"] is True
    assert status["channel_id"] == "channel-1"
    assert status["expires_in_seconds"] == int(timedelta(days=7).total_seconds())


async def test_expiry_warning_is_logged_once(calendar, caplog):
    calendar.expiration = NOW + timedelta(minutes=30)
    manager = _manager(calendar)
    await manager.start()

    with caplog.at_level(logging.WARNING, logger="calboard.subscription"):
        manager.check_expiry()
        manager.status()

    assert caplog.text.count("Push channel expires soon") == 1
