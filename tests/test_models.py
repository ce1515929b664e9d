"""Tests for event models and the date/time labels derived from them."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from calboard.models import (
    ActiveSubscription,
    CalendarEvent,
    EventBoundary,
    EventSnapshot,
    EventStatus,
    coerce_zoneinfo,
    describe_when,
)

pytestmark = pytest.mark.unit

OSLO = ZoneInfo("Europe/Oslo")


def test_all_day_single_day():
    start = EventBoundary(date_value=date(2026, 3, 5))
    end = EventBoundary(date_value=date(2026, 3, 6))
    assert describe_when(start, end, UTC) == ("Thu 05 Mar 2026", "All day")


def test_all_day_multi_day_end_is_exclusive():
    start = EventBoundary(date_value=date(2026, 3, 5))
    end = EventBoundary(date_value=date(2026, 3, 8))
    assert describe_when(start, end, UTC) == ("Thu 05 Mar 2026", "All day until Sat 07 Mar 2026")


def test_timed_same_day_in_display_zone():
    start = EventBoundary(date_time=datetime(2026, 3, 5, 9, 0, tzinfo=UTC))
    end = EventBoundary(date_time=datetime(2026, 3, 5, 10, 30, tzinfo=UTC))
    assert describe_when(start, end, OSLO) == ("Thu 05 Mar 2026", "10:00-11:30")


def test_timed_crossing_midnight():
    start = EventBoundary(date_time=datetime(2026, 3, 5, 22, 0, tzinfo=UTC))
    end = EventBoundary(date_time=datetime(2026, 3, 6, 1, 0, tzinfo=UTC))
    assert describe_when(start, end, UTC) == ("Thu 05 Mar 2026", "22:00 to Fri 06 Mar 2026 01:00")


def test_timed_without_end():
    start = EventBoundary(date_time=datetime(2026, 3, 5, 9, 15, tzinfo=UTC))
    assert describe_when(start, None, UTC) == ("Thu 05 Mar 2026", "09:15")


def test_missing_start():
    assert describe_when(None, None, UTC) == ("Unknown date", "")


def test_local_date_uses_display_zone():
    boundary = EventBoundary(date_time=datetime(2026, 3, 5, 23, 30, tzinfo=UTC))
    assert boundary.local_date(OSLO) == date(2026, 3, 6)
    assert boundary.local_date(UTC) == date(2026, 3, 5)


def test_coerce_zoneinfo_falls_back_to_utc():
    assert coerce_zoneinfo("Not/AZone") is UTC
    assert coerce_zoneinfo("Europe/Oslo") == OSLO


def test_snapshot_from_event():
    event = CalendarEvent(
        event_id="evt-1",
        title="Planning",
        start=EventBoundary(date_time=datetime(2026, 3, 5, 9, 0, tzinfo=UTC)),
        end=EventBoundary(date_time=datetime(2026, 3, 5, 10, 0, tzinfo=UTC)),
        updated_at=datetime(2026, 3, 1, tzinfo=UTC),
        location="Room 4",
    )
    snapshot = EventSnapshot.from_event(event, timezone="Europe/Oslo")

    assert snapshot.title == "Planning"
    assert snapshot.is_all_day is False
    assert snapshot.location == "Room 4"
    assert snapshot.updated_at == datetime(2026, 3, 1, tzinfo=UTC)
    assert snapshot.date_label == "Thu 05 Mar 2026"
    assert snapshot.time_label == "10:00-11:00"


def test_cancelled_event_with_only_an_id():
    event = CalendarEvent(event_id="gone", status=EventStatus.cancelled)
    assert event.is_cancelled
    assert event.is_all_day is False
    assert event.start is None


def test_subscription_expires_in_seconds():
    now = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
    subscription = ActiveSubscription(
        channel_id="chan",
        resource_id="res",
        expiration=now + timedelta(minutes=30),
        address="https://hooks.example",
        started_at=now,
    )
    assert subscription.expires_in_seconds(now) == 1800.0

    no_expiry = subscription.model_copy(update={"expiration": None})
    assert no_expiry.expires_in_seconds(now) is None
