"""Discord REST client for a single text channel.

Only the three message primitives the board and notifier need are exposed:
send, edit and fetch-by-id. Messages are plain Discord message payloads
(``content`` and/or ``embeds``).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from calboard.core.metrics import record_remote_call
from calboard.errors import (
    AuthExpiredError,
    MessageVanishedError,
    RemoteRequestError,
    TransientNetworkError,
    redact_credentials,
)

logger = logging.getLogger(__name__)

DISCORD_API_BASE = "https://discord.com/api/v10"

RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_DEFAULT_BACKOFF_SECONDS = 1.0


def _safe_discord_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return redact_credentials(message)
    raw_text = response.text.strip()
    return redact_credentials(raw_text) if raw_text else "Request failed without an error payload"


def _retry_after_seconds(response: httpx.Response) -> float:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        retry_after = payload.get("retry_after")
        if isinstance(retry_after, int | float) and not isinstance(retry_after, bool):
            return max(float(retry_after), 0.0)
    header = response.headers.get("Retry-After")
    if header is not None:
        try:
            return max(float(header), 0.0)
        except ValueError:
            pass
    return RATE_LIMIT_DEFAULT_BACKOFF_SECONDS


class DiscordChannelClient:
    """Bot-authenticated message operations against one channel."""

    def __init__(
        self,
        *,
        bot_token: str,
        channel_id: str,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._channel_id = channel_id
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"Authorization": f"Bot {bot_token}"}

    @property
    def channel_id(self) -> str:
        return self._channel_id

    async def send_message(self, payload: dict[str, Any]) -> str:
        """Post a new message and return its id."""
        response = await self._request(
            "POST",
            f"/channels/{self._channel_id}/messages",
            json_body=payload,
            api_method="messages.create",
        )
        self._raise_for_status(response)
        data = response.json()
        message_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(message_id, str) or not message_id:
            raise RemoteRequestError(
                service="discord",
                status_code=response.status_code,
                message="create message response is missing an id",
            )
        return message_id

    async def edit_message(self, message_id: str, payload: dict[str, Any]) -> None:
        """Edit an existing message in place.

        Raises ``MessageVanishedError`` when the message was deleted.
        """
        response = await self._request(
            "PATCH",
            f"/channels/{self._channel_id}/messages/{message_id}",
            json_body=payload,
            api_method="messages.edit",
        )
        if response.status_code == 404:
            raise MessageVanishedError(message_id)
        self._raise_for_status(response)

    async def fetch_message(self, message_id: str) -> dict[str, Any] | None:
        """Return the message payload, or ``None`` when it no longer exists."""
        response = await self._request(
            "GET",
            f"/channels/{self._channel_id}/messages/{message_id}",
            api_method="messages.get",
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        data = response.json()
        return data if isinstance(data, dict) else None

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        api_method: str,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{DISCORD_API_BASE}{path}"
        retry = 0
        while True:
            try:
                response = await self._http_client.request(
                    method, url, json=json_body, headers=self._headers
                )
            except httpx.HTTPError as exc:
                record_remote_call("discord", api_method, "error")
                raise TransientNetworkError(
                    f"Discord request failed: {type(exc).__name__}"
                ) from exc

            if response.status_code != 429 or retry >= RATE_LIMIT_MAX_RETRIES:
                break

            record_remote_call("discord", api_method, "rate_limited")
            backoff = _retry_after_seconds(response)
            logger.warning(
                "Discord API rate-limited, retrying in %.1fs (attempt %d/%d)",
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            retry += 1

        status = "success" if 200 <= response.status_code < 300 else "error"
        if response.status_code == 404:
            status = "not_found"
        record_remote_call("discord", api_method, status)
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        message = _safe_discord_error_message(response)
        if status in (401, 403):
            raise AuthExpiredError(f"Discord rejected the bot token ({status}): {message}")
        if status == 429 or status >= 500:
            raise TransientNetworkError(f"Discord unavailable ({status}): {message}")
        raise RemoteRequestError(service="discord", status_code=status, message=message)
