"""Push-notification channel lifecycle.

Google pushes a bare "something changed" signal to a registered web_hook
channel. ``SubscriptionManager`` owns the currently active channel: ``start``
always registers a fresh channel id (best-effort stopping the previous one),
``stop`` releases it, and ``is_current`` is what the sync engine uses to drop
notifications addressed to any other channel.

Channels are not renewed automatically; ``status`` reports the remaining
lifetime and warns when expiry is near so an operator can restart the watch.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from calboard.core.metrics import get_error_type, record_error
from calboard.errors import RemoteRequestError
from calboard.models import ActiveSubscription

logger = logging.getLogger(__name__)

EXPIRY_WARNING_SECONDS = 3600


class WatchCalendar(Protocol):
    async def watch(
        self,
        *,
        channel_id: str,
        address: str,
        ttl_seconds: int | None = None,
    ) -> tuple[str, datetime | None]: ...

    async def stop_channel(self, *, channel_id: str, resource_id: str) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionManager:
    def __init__(
        self,
        calendar: WatchCalendar,
        *,
        webhook_url: str | None,
        ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
        channel_id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._calendar = calendar
        self._webhook_url = webhook_url
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._channel_id_factory = channel_id_factory
        self._lock = asyncio.Lock()
        self._active: ActiveSubscription | None = None
        self._expiry_warned = False

    @property
    def active(self) -> ActiveSubscription | None:
        return self._active

    @property
    def webhook_url(self) -> str | None:
        return self._webhook_url

    def is_current(self, channel_id: str | None) -> bool:
        """True only for the channel id of the active subscription."""
        if self._active is None or not channel_id:
            return False
        return channel_id.strip() == self._active.channel_id

    async def start(self) -> ActiveSubscription:
        """Register a new push channel, replacing any active one.

        Raises ``ValueError`` when no webhook URL is configured. Failure to stop
        the previous channel is logged and does not prevent the new
        registration; both channels may deliver briefly until the old one
        expires, and its notifications are dropped as stale.
        """
        if not self._webhook_url:
            raise ValueError("google.webhook_url must be configured to start a watch")

        async with self._lock:
            previous = self._active
            if previous is not None:
                try:
                    await self._calendar.stop_channel(
                        channel_id=previous.channel_id, resource_id=previous.resource_id
                    )
                except Exception as exc:
                    record_error(error_type=get_error_type(exc), operation="watch_stop")
                    logger.warning(
                        "Failed to stop previous push channel; continuing with new registration",
                        exc_info=True,
                        extra={"channel_id": previous.channel_id},
                    )
                self._active = None

            channel_id = self._channel_id_factory()
            resource_id, expiration = await self._calendar.watch(
                channel_id=channel_id,
                address=self._webhook_url,
                ttl_seconds=self._ttl_seconds,
            )
            self._expiry_warned = False
            self._active = ActiveSubscription(
                channel_id=channel_id,
                resource_id=resource_id,
                expiration=expiration,
                address=self._webhook_url,
                started_at=self._clock(),
            )

        logger.info(
            "Push channel started",
            extra={
                "channel_id": channel_id,
                "resource_id": resource_id,
                "expiration": expiration.isoformat() if expiration else None,
            },
        )
        return self._active

    async def stop(self) -> bool:
        """Stop the active channel. Returns False when nothing was active.

        The channel is released locally even when the remote stop fails, so a
        later ``stop`` is a no-op and any deliveries from it are dropped as
        stale. A 404 means the channel already expired and counts as stopped;
        other remote failures are re-raised after the release.
        """
        async with self._lock:
            active = self._active
            if active is None:
                return False
            try:
                await self._calendar.stop_channel(
                    channel_id=active.channel_id, resource_id=active.resource_id
                )
            except Exception as exc:
                if not (isinstance(exc, RemoteRequestError) and exc.status_code == 404):
                    record_error(error_type=get_error_type(exc), operation="watch_stop")
                    logger.warning(
                        "Failed to stop push channel remotely; releasing it locally",
                        extra={"channel_id": active.channel_id},
                    )
                    raise
                logger.info(
                    "Push channel already gone on the remote side",
                    extra={"channel_id": active.channel_id},
                )
            finally:
                self._active = None

        logger.info("Push channel stopped", extra={"channel_id": active.channel_id})
        return True

    def check_expiry(self) -> float | None:
        """Warn once per channel when it is within an hour of expiring."""
        active = self._active
        if active is None:
            return None
        expires_in = active.expires_in_seconds(self._clock())
        if expires_in is None or expires_in > EXPIRY_WARNING_SECONDS:
            return expires_in
        if not self._expiry_warned:
            self._expiry_warned = True
            logger.warning(
                "Push channel expires soon; restart the watch to keep receiving notifications",
                extra={"channel_id": active.channel_id, "expires_in_seconds": int(expires_in)},
            )
        return expires_in

    def status(self) -> dict[str, Any]:
        active = self._active
        if active is None:
            return {"active": False, "webhook_url": self._webhook_url}

        expires_in = self.check_expiry()
        return {
            "active": True,
            "channel_id": active.channel_id,
            "resource_id": active.resource_id,
            "address": active.address,
            "started_at": active.started_at.isoformat(),
            "expiration": active.expiration.isoformat() if active.expiration else None,
            "expires_in_seconds": int(expires_in) if expires_in is not None else None,
        }
