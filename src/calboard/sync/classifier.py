"""Classify a fetched event against the snapshot store.

Rules, applied per event:

1. Cancelled: always reported, and the snapshot (if any) is removed. A
   cancellation for an id we never saw is still reported because the process
   cannot tell "never seen" from "seen before this process started".
2. No snapshot: reported as created.
3. Snapshot with a different ``updated`` timestamp: reported as updated with
   the old and new snapshots.
4. Snapshot with the same ``updated`` timestamp: a redelivery, nothing reported.

Every non-cancelled outcome overwrites the stored snapshot. Because rule 4
keys on ``(id, updated)``, redelivering the same remote update never reports
twice.
"""

from __future__ import annotations

from calboard.models import CalendarEvent, Change, ChangeKind, EventSnapshot
from calboard.sync.snapshots import SnapshotStore


def classify(event: CalendarEvent, store: SnapshotStore, *, timezone: str) -> Change | None:
    """Classify *event*, mutate *store* accordingly, and return the change (if any)."""
    if event.is_cancelled:
        previous = store.remove(event.event_id)
        return Change(kind=ChangeKind.cancelled, event=event, previous=previous)

    previous = store.get(event.event_id)
    current = EventSnapshot.from_event(event, timezone=timezone)
    store.put(event.event_id, current)

    if previous is None:
        return Change(kind=ChangeKind.created, event=event, current=current)
    if previous.updated_at != current.updated_at:
        return Change(kind=ChangeKind.updated, event=event, previous=previous, current=current)
    return None
