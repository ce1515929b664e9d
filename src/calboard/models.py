"""Canonical data shapes shared across providers, the sync core and the API.

``EventSnapshot`` is the minimal projection of an event kept between sync
cycles. Its date/time labels are derived from the raw boundaries on access and
are never stored on their own.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta, tzinfo
from enum import StrEnum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict

DEFAULT_EVENT_TITLE = "(untitled)"


class EventStatus(StrEnum):
    """Event lifecycle states reported by the calendar provider."""

    confirmed = "confirmed"
    tentative = "tentative"
    cancelled = "cancelled"


class ChangeKind(StrEnum):
    """Classification of a single observed event change."""

    created = "created"
    updated = "updated"
    cancelled = "cancelled"


def coerce_zoneinfo(timezone: str) -> ZoneInfo | tzinfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


class EventBoundary(BaseModel):
    """Start or end of an event as the provider sent it (date-only or date-time)."""

    model_config = ConfigDict(frozen=True)

    date_value: date | None = None
    date_time: datetime | None = None
    timezone: str | None = None

    @property
    def is_date_only(self) -> bool:
        return self.date_time is None and self.date_value is not None

    def local_date(self, tz: tzinfo) -> date | None:
        if self.date_time is not None:
            return self.date_time.astimezone(tz).date()
        return self.date_value

    def sort_key(self, tz: tzinfo) -> datetime:
        if self.date_time is not None:
            return self.date_time.astimezone(tz)
        assert self.date_value is not None
        return datetime(
            self.date_value.year, self.date_value.month, self.date_value.day, tzinfo=tz
        )


class CalendarEvent(BaseModel):
    """One event as fetched from the remote calendar.

    Cancelled events returned with ``showDeleted`` often carry only an id and a
    status, so every other field is optional.
    """

    event_id: str
    status: EventStatus = EventStatus.confirmed
    title: str = DEFAULT_EVENT_TITLE
    start: EventBoundary | None = None
    end: EventBoundary | None = None
    updated_at: datetime | None = None
    location: str | None = None
    html_link: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.cancelled

    @property
    def is_all_day(self) -> bool:
        return self.start is not None and self.start.is_date_only


def format_day(value: date) -> str:
    return value.strftime("%a %d %b %Y")


def describe_when(
    start: EventBoundary | None,
    end: EventBoundary | None,
    tz: tzinfo,
) -> tuple[str, str]:
    """Return ``(date_label, time_label)`` for an event in the display zone."""
    if start is None:
        return "Unknown date", ""

    if start.is_date_only:
        assert start.date_value is not None
        first_day = start.date_value
        # All-day end dates are exclusive.
        end_day = end.date_value if end is not None and end.date_value else None
        last_day = end_day - timedelta(days=1) if end_day else first_day
        if last_day > first_day:
            return format_day(first_day), f"All day until {format_day(last_day)}"
        return format_day(first_day), "All day"

    assert start.date_time is not None
    local_start = start.date_time.astimezone(tz)
    date_label = format_day(local_start.date())
    if end is None or end.date_time is None:
        return date_label, local_start.strftime("%H:%M")

    local_end = end.date_time.astimezone(tz)
    if local_end.date() == local_start.date():
        return date_label, f"{local_start:%H:%M}-{local_end:%H:%M}"
    return date_label, f"{local_start:%H:%M} to {format_day(local_end.date())} {local_end:%H:%M}"


class EventSnapshot(BaseModel):
    """Last observed displayable state of a non-cancelled event."""

    model_config = ConfigDict(frozen=True)

    title: str
    is_all_day: bool
    start_raw: EventBoundary | None = None
    end_raw: EventBoundary | None = None
    updated_at: datetime | None = None
    location: str | None = None
    timezone: str = "UTC"

    @classmethod
    def from_event(cls, event: CalendarEvent, *, timezone: str) -> EventSnapshot:
        return cls(
            title=event.title or DEFAULT_EVENT_TITLE,
            is_all_day=event.is_all_day,
            start_raw=event.start,
            end_raw=event.end,
            updated_at=event.updated_at,
            location=event.location,
            timezone=timezone,
        )

    @property
    def date_label(self) -> str:
        return describe_when(self.start_raw, self.end_raw, coerce_zoneinfo(self.timezone))[0]

    @property
    def time_label(self) -> str:
        return describe_when(self.start_raw, self.end_raw, coerce_zoneinfo(self.timezone))[1]


@dataclass(frozen=True)
class Change:
    """A classified change ready for notification.

    ``previous`` is the snapshot held before this change (absent for most
    creations and for cancellations of events never seen by this process);
    ``current`` is the snapshot written by the change (absent for cancellations).
    """

    kind: ChangeKind
    event: CalendarEvent
    previous: EventSnapshot | None = None
    current: EventSnapshot | None = None

    @property
    def display(self) -> EventSnapshot | None:
        return self.current or self.previous


class ActiveSubscription(BaseModel):
    """The currently registered push-notification channel."""

    channel_id: str
    resource_id: str
    expiration: datetime | None = None
    address: str
    started_at: datetime

    def expires_in_seconds(self, now: datetime | None = None) -> float | None:
        if self.expiration is None:
            return None
        reference = now or datetime.now(UTC)
        return (self.expiration - reference).total_seconds()
