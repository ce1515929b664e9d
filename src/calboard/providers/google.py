"""Google Calendar REST client.

Covers the three remote operations the sync core consumes:

- event listing by update watermark (``updatedMin``, cancelled events included)
- event listing by time range (board window, warm-up)
- push channel registration (``events/watch``) and teardown (``channels/stop``)

Authentication uses a long-lived OAuth refresh token exchanged for short-lived
access tokens, cached until shortly before expiry.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from calboard.core.metrics import record_remote_call
from calboard.errors import (
    AuthExpiredError,
    RemoteRequestError,
    TransientNetworkError,
    redact_credentials,
)
from calboard.models import DEFAULT_EVENT_TITLE, CalendarEvent, EventBoundary, EventStatus

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

# Google caps maxResults per page at 2500; 250 is the documented default ceiling.
GOOGLE_MAX_PAGE_SIZE = 250


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @classmethod
    def from_json(cls, raw_value: str) -> GoogleOAuthCredentials:
        """Parse credential JSON, accepting the ``installed``/``web`` wrappers."""
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise AuthExpiredError(f"Credential JSON must be valid JSON: {exc.msg}") from exc

        if not isinstance(payload, dict):
            raise AuthExpiredError("Credential JSON must decode to a JSON object")

        values = {
            key: _extract_credential_value(payload, key)
            for key in ("client_id", "client_secret", "refresh_token")
        }
        invalid = sorted(
            key for key, value in values.items() if not isinstance(value, str) or not value.strip()
        )
        if invalid:
            raise AuthExpiredError(
                f"Credential JSON is missing non-empty string field(s): {', '.join(invalid)}"
            )
        return cls(**values)


def _extract_credential_value(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]

    for nested_key in ("installed", "web"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict) and key in nested:
            return nested[key]
    return None


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return redact_credentials(message)
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return redact_credentials(f"{error_payload}: {description}")
            return redact_credentials(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return redact_credentials(raw_text)
    return "Request failed without an error payload"


class _GoogleOAuthClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            record_remote_call("google", "oauth.token", "error")
            raise TransientNetworkError(
                f"Google OAuth token refresh request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code >= 500:
            record_remote_call("google", "oauth.token", "error")
            raise TransientNetworkError(
                f"Google OAuth token endpoint unavailable ({response.status_code})"
            )
        if response.status_code < 200 or response.status_code >= 300:
            record_remote_call("google", "oauth.token", "error")
            # 400 invalid_grant / 401 invalid_client: the refresh token is no longer usable.
            raise AuthExpiredError(
                "Google OAuth token refresh rejected "
                f"({response.status_code}): {_safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientNetworkError("Google OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthExpiredError("Google OAuth token response is missing an access_token")

        expires_in_raw = payload.get("expires_in") if isinstance(payload, dict) else None
        expires_in_seconds = _coerce_expires_in_seconds(expires_in_raw)
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)
        record_remote_call("google", "oauth.token", "success")


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_boundary(payload: Any) -> EventBoundary | None:
    if not isinstance(payload, dict):
        return None

    timezone = _normalize_optional_text(payload.get("timeZone"))
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return EventBoundary(date_time=parse_google_datetime(date_time), timezone=timezone)

    date_raw = payload.get("date")
    if isinstance(date_raw, str) and date_raw.strip():
        try:
            return EventBoundary(date_value=date.fromisoformat(date_raw.strip()), timezone=timezone)
        except ValueError as exc:
            raise ValueError(f"Google Calendar returned an invalid date value: {date_raw}") from exc

    return None


def _parse_status(value: Any) -> EventStatus:
    if isinstance(value, str):
        try:
            return EventStatus(value.strip().lower())
        except ValueError:
            pass
    return EventStatus.confirmed


def parse_google_event(payload: dict[str, Any]) -> CalendarEvent:
    """Convert one Google ``Event`` resource into a ``CalendarEvent``.

    Cancelled items are kept (with whatever fields Google still sends) so the
    classifier can see them.
    """
    event_id_raw = payload.get("id")
    if not isinstance(event_id_raw, str) or not event_id_raw.strip():
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    updated_raw = payload.get("updated")
    updated_at = None
    if isinstance(updated_raw, str) and updated_raw.strip():
        try:
            updated_at = parse_google_datetime(updated_raw)
        except ValueError:
            updated_at = None

    return CalendarEvent(
        event_id=event_id_raw.strip(),
        status=_parse_status(payload.get("status")),
        title=_normalize_optional_text(payload.get("summary")) or DEFAULT_EVENT_TITLE,
        start=_parse_boundary(payload.get("start")),
        end=_parse_boundary(payload.get("end")),
        updated_at=updated_at,
        location=_normalize_optional_text(payload.get("location")),
        html_link=_normalize_optional_text(payload.get("htmlLink")),
    )


def _parse_expiration_ms(value: Any) -> datetime | None:
    """Google reports channel expiration as a string of epoch milliseconds."""
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(millis / 1000, UTC)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GoogleCalendarClient:
    """Authenticated client for one Google calendar."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        *,
        calendar_id: str,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._calendar_id = calendar_id
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._oauth = _GoogleOAuthClient(credentials, self._http_client)

    @property
    def calendar_id(self) -> str:
        return self._calendar_id

    @property
    def _events_path(self) -> str:
        return f"/calendars/{quote(self._calendar_id, safe='')}/events"

    async def list_updated_since(
        self,
        updated_min: datetime,
        *,
        max_results: int = GOOGLE_MAX_PAGE_SIZE,
    ) -> list[CalendarEvent]:
        """Return events (cancelled included) updated at or after *updated_min*.

        Ordered by update time, capped at *max_results* items.
        """
        params: dict[str, Any] = {
            "updatedMin": google_rfc3339(updated_min),
            "showDeleted": True,
            "singleEvents": True,
            "orderBy": "updated",
        }
        return await self._list_events(params, max_results=max_results, api_method="events.delta")

    async def list_window(
        self,
        time_min: datetime,
        time_max: datetime,
        *,
        show_deleted: bool = False,
        max_results: int = GOOGLE_MAX_PAGE_SIZE,
    ) -> list[CalendarEvent]:
        """Return events overlapping ``[time_min, time_max)`` ordered by start time."""
        if time_max <= time_min:
            raise ValueError("time_max must be after time_min")
        params: dict[str, Any] = {
            "timeMin": google_rfc3339(time_min),
            "timeMax": google_rfc3339(time_max),
            "showDeleted": show_deleted,
            "singleEvents": True,
            "orderBy": "startTime",
        }
        return await self._list_events(params, max_results=max_results, api_method="events.window")

    async def _list_events(
        self,
        params: dict[str, Any],
        *,
        max_results: int,
        api_method: str,
    ) -> list[CalendarEvent]:
        if max_results < 1:
            raise ValueError("max_results must be at least 1")

        events: list[CalendarEvent] = []
        page_token: str | None = None
        while len(events) < max_results:
            page_params = dict(params)
            page_params["maxResults"] = min(max_results - len(events), GOOGLE_MAX_PAGE_SIZE)
            if page_token is not None:
                page_params["pageToken"] = page_token

            payload = await self._request_json(
                "GET", self._events_path, params=page_params, api_method=api_method
            )
            items = payload.get("items")
            if not isinstance(items, list):
                raise TransientNetworkError("Google Calendar events response missing items array")

            for item in items:
                if not isinstance(item, dict):
                    continue
                try:
                    events.append(parse_google_event(item))
                except ValueError as exc:
                    logger.warning("Skipping malformed calendar event: %s", exc)

            next_token = payload.get("nextPageToken")
            if not isinstance(next_token, str) or not next_token:
                break
            page_token = next_token

        return events[:max_results]

    async def watch(
        self,
        *,
        channel_id: str,
        address: str,
        ttl_seconds: int | None = None,
    ) -> tuple[str, datetime | None]:
        """Register a web_hook push channel; return ``(resource_id, expiration)``."""
        body: dict[str, Any] = {"id": channel_id, "type": "web_hook", "address": address}
        if ttl_seconds is not None:
            body["params"] = {"ttl": str(ttl_seconds)}

        payload = await self._request_json(
            "POST", f"{self._events_path}/watch", json_body=body, api_method="events.watch"
        )
        resource_id = payload.get("resourceId")
        if not isinstance(resource_id, str) or not resource_id.strip():
            raise RemoteRequestError(
                service="google",
                status_code=200,
                message="events.watch response is missing resourceId",
            )
        return resource_id.strip(), _parse_expiration_ms(payload.get("expiration"))

    async def stop_channel(self, *, channel_id: str, resource_id: str) -> None:
        await self._request_json(
            "POST",
            "/channels/stop",
            json_body={"id": channel_id, "resourceId": resource_id},
            api_method="channels.stop",
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        api_method: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method, path=path, params=params, json_body=json_body
        )

        status = response.status_code
        if 200 <= status < 300:
            record_remote_call("google", api_method, "success")
        elif status == 429:
            record_remote_call("google", api_method, "rate_limited")
        else:
            record_remote_call("google", api_method, "error")

        if status == 401:
            raise AuthExpiredError(
                f"Google Calendar rejected credentials: {_safe_google_error_message(response)}"
            )
        if status == 429 or status >= 500:
            raise TransientNetworkError(
                f"Google Calendar unavailable ({status}): {_safe_google_error_message(response)}"
            )
        if status < 200 or status >= 300:
            raise RemoteRequestError(
                service="google",
                status_code=status,
                message=_safe_google_error_message(response),
            )

        if status == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientNetworkError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise TransientNetworkError("Google Calendar API returned an unexpected payload shape")
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(
            method=method, url=url, params=params, json_body=json_body, force_refresh=False
        )

        if response.status_code == 401:
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=True
            )

        # Rate-limit retry: honour Retry-After header on 429, exponential backoff on 503.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=False
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise TransientNetworkError(
                f"Google Calendar request failed: {type(exc).__name__}"
            ) from exc
