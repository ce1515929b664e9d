"""Error taxonomy shared by the remote clients and the sync core.

- ``TransientNetworkError``: timeouts, connection failures, 5xx and exhausted
  rate-limit retries. A sync cycle that hits one is aborted and retried on the
  next trigger.
- ``AuthExpiredError``: credentials were rejected. Not auto-recovered; an
  operator has to refresh the credentials.
- ``RemoteRequestError``: any other non-success response.
"""

from __future__ import annotations

import re


class CalboardError(RuntimeError):
    """Base error for calboard remote and sync failures."""


class TransientNetworkError(CalboardError):
    """Raised for failures that are expected to succeed on a later retry."""


class AuthExpiredError(CalboardError):
    """Raised when a remote service rejects the configured credentials."""


class MessageVanishedError(CalboardError):
    """Raised when a chat message we hold an id for no longer exists."""

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__(f"Chat message {message_id} no longer exists")


class RemoteRequestError(CalboardError):
    """Raised when a remote API returns a non-retryable error response."""

    def __init__(self, *, service: str, status_code: int, message: str) -> None:
        self.service = service
        self.status_code = status_code
        self.message = message
        super().__init__(f"{service} request failed ({status_code}): {message}")


_CREDENTIAL_PAIR = re.compile(
    r"(?i)\b(client_secret|refresh_token|access_token|token|authorization)"
    r"\s*[=:]\s*((?:bearer\s+|bot\s+)?[^\s,;]+)"
)
_BEARER = re.compile(r"(?i)\b(bearer|bot)\s+[A-Za-z0-9._\-]{20,}")


def redact_credentials(message: str) -> str:
    """Strip credential-looking values from an error message."""
    redacted = _CREDENTIAL_PAIR.sub(r"\1=[REDACTED]", message)
    redacted = _BEARER.sub(r"\1 [REDACTED]", redacted)
    return " ".join(redacted.split())[:200]
