"""Per-change chat notifications.

One message per classified change, rendered as a Discord embed:
created (green), updated (yellow, with before/after of the fields that
changed) and cancelled (red). A failure to post one notification is logged
and counted; the remaining notifications of the batch are still sent.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

from calboard.core.metrics import get_error_type, notifications_total, record_error
from calboard.models import DEFAULT_EVENT_TITLE, Change, ChangeKind, EventSnapshot

logger = logging.getLogger(__name__)

COLOR_CREATED = 0x2ECC71
COLOR_UPDATED = 0xF1C40F
COLOR_CANCELLED = 0xE74C3C


class NotificationChat(Protocol):
    async def send_message(self, payload: dict[str, Any]) -> str: ...


def _when(snapshot: EventSnapshot) -> str:
    if snapshot.time_label:
        return f"{snapshot.date_label}, {snapshot.time_label}"
    return snapshot.date_label


def _display_title(change: Change) -> str:
    snapshot = change.display
    if snapshot is not None:
        return snapshot.title
    return change.event.title or DEFAULT_EVENT_TITLE


def render_change(change: Change) -> dict[str, Any]:
    """Build the Discord message payload for one change."""
    title = _display_title(change)
    fields: list[dict[str, Any]] = []
    embed: dict[str, Any] = {}

    if change.kind == ChangeKind.created:
        assert change.current is not None
        embed["title"] = f"📅 New event: {title}"
        embed["color"] = COLOR_CREATED
        fields.append({"name": "When", "value": _when(change.current), "inline": False})
        if change.current.location:
            fields.append({"name": "Where", "value": change.current.location, "inline": False})

    elif change.kind == ChangeKind.updated:
        assert change.current is not None and change.previous is not None
        before, after = change.previous, change.current
        embed["title"] = f"✏️ Event updated: {title}"
        embed["color"] = COLOR_UPDATED
        if before.title != after.title:
            fields.append(
                {"name": "Title", "value": f"~~{before.title}~~ → {after.title}", "inline": False}
            )
        if _when(before) != _when(after):
            fields.append(
                {"name": "When", "value": f"~~{_when(before)}~~ → {_when(after)}", "inline": False}
            )
        else:
            fields.append({"name": "When", "value": _when(after), "inline": False})
        if before.location != after.location:
            fields.append(
                {
                    "name": "Where",
                    "value": f"~~{before.location or 'none'}~~ → {after.location or 'none'}",
                    "inline": False,
                }
            )
        elif after.location:
            fields.append({"name": "Where", "value": after.location, "inline": False})

    else:
        embed["title"] = f"🗑️ Event cancelled: {title}"
        embed["color"] = COLOR_CANCELLED
        if change.previous is not None:
            fields.append({"name": "Was", "value": _when(change.previous), "inline": False})

    if fields:
        embed["fields"] = fields
    if change.event.html_link and change.kind != ChangeKind.cancelled:
        embed["url"] = change.event.html_link
    return {"embeds": [embed]}


class ChangeNotifier:
    """Posts one chat message per change, in order."""

    def __init__(self, chat: NotificationChat) -> None:
        self._chat = chat

    async def emit(self, changes: Sequence[Change]) -> int:
        """Send notifications for *changes*; return how many were delivered."""
        delivered = 0
        for change in changes:
            try:
                await self._chat.send_message(render_change(change))
            except Exception as exc:
                notifications_total.labels(status="error").inc()
                record_error(error_type=get_error_type(exc), operation="notify")
                logger.exception(
                    "Failed to post change notification",
                    extra={"event_id": change.event.event_id, "kind": change.kind.value},
                )
                continue
            notifications_total.labels(status="success").inc()
            delivered += 1
        return delivered
