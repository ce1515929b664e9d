"""Response envelopes shared by the HTTP endpoints."""

from __future__ import annotations

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class BoardSetupResponse(BaseModel):
    message_id: str | None
    hint: str | None = None


class SyncTriggerResponse(BaseModel):
    status: str
    result: dict | None = None
