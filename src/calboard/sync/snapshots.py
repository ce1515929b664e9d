"""In-memory store of the last observed state of every live event.

An entry exists for an event id iff that event was last observed as not
cancelled. Nothing is persisted; after a restart the store is rebuilt by
``warm_up``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from calboard.models import CalendarEvent, EventSnapshot

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Mapping of event id to ``EventSnapshot``.

    Only the sync engine mutates the store, and only from inside a cycle, so
    no locking is done here.
    """

    def __init__(self) -> None:
        self._snapshots: dict[str, EventSnapshot] = {}

    def get(self, event_id: str) -> EventSnapshot | None:
        return self._snapshots.get(event_id)

    def put(self, event_id: str, snapshot: EventSnapshot) -> None:
        self._snapshots[event_id] = snapshot

    def remove(self, event_id: str) -> EventSnapshot | None:
        """Drop the entry for *event_id* and return it (``None`` if absent)."""
        return self._snapshots.pop(event_id, None)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._snapshots

    def __len__(self) -> int:
        return len(self._snapshots)

    def __iter__(self) -> Iterator[str]:
        return iter(self._snapshots)

    def warm_up(self, events: Iterable[CalendarEvent], *, timezone: str) -> int:
        """Seed the store from a wide fetch; cancelled events are skipped.

        Returns the number of snapshots written.
        """
        loaded = 0
        for event in events:
            if event.is_cancelled:
                continue
            self._snapshots[event.event_id] = EventSnapshot.from_event(event, timezone=timezone)
            loaded += 1
        logger.info("Snapshot store warmed up", extra={"snapshots": loaded})
        return loaded
