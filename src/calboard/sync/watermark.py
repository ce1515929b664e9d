"""Watermark tracking for ``updatedMin`` delta fetches.

After a cycle that observed updates, the floor becomes the newest observed
``updated`` timestamp minus a small epsilon so the boundary event is fetched
again next time (classification makes that re-fetch a no-op). After a cycle
that observed nothing the floor falls back to ``now - backstop``. That can move
the floor backwards, which is accepted: it lets a paused process recover
updates it slept through, at the cost of re-fetching already known items.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

logger = logging.getLogger(__name__)

DEFAULT_STARTUP_LOOKBACK = timedelta(minutes=5)
DEFAULT_BACKSTOP = timedelta(minutes=20)
DEFAULT_EPSILON = timedelta(seconds=1)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WatermarkTracker:
    """Holds the ``fetch events updated after this instant`` cursor."""

    def __init__(
        self,
        *,
        startup_lookback: timedelta = DEFAULT_STARTUP_LOOKBACK,
        backstop: timedelta = DEFAULT_BACKSTOP,
        epsilon: timedelta = DEFAULT_EPSILON,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._backstop = backstop
        self._epsilon = epsilon
        self._clock = clock
        self._floor = clock() - startup_lookback

    def current_floor(self) -> datetime:
        return self._floor

    def advance(self, observed: Iterable[datetime | None]) -> datetime:
        """Move the floor based on one whole cycle's observed ``updated`` stamps.

        ``None`` entries (events without an update stamp) are ignored.
        """
        stamps = [stamp for stamp in observed if stamp is not None]
        previous = self._floor
        if stamps:
            self._floor = max(stamps) - self._epsilon
        else:
            self._floor = self._clock() - self._backstop

        if self._floor < previous:
            logger.debug(
                "Watermark moved backwards",
                extra={"previous": previous.isoformat(), "floor": self._floor.isoformat()},
            )
        return self._floor
