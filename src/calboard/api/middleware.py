"""API error handling: consistent ``{"error": {"code", "message"}}`` responses.

Status code mapping:
- ``AuthExpiredError`` → 502 Bad Gateway (credentials need operator action)
- ``TransientNetworkError`` → 503 Service Unavailable
- ``RemoteRequestError`` → 502 Bad Gateway
- ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calboard.api.models import ErrorDetail, ErrorResponse
from calboard.errors import AuthExpiredError, RemoteRequestError, TransientNetworkError

logger = logging.getLogger(__name__)


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_auth_expired(request: Request, exc: AuthExpiredError) -> JSONResponse:
    logger.error("Remote credentials rejected on %s: %s", request.url.path, exc)
    return _error_response(502, "AUTH_EXPIRED", str(exc))


async def _handle_transient(request: Request, exc: TransientNetworkError) -> JSONResponse:
    logger.warning("Transient remote failure on %s: %s", request.url.path, exc)
    return _error_response(503, "REMOTE_UNAVAILABLE", str(exc))


async def _handle_remote_request(request: Request, exc: RemoteRequestError) -> JSONResponse:
    logger.warning("Remote request failed on %s: %s", request.url.path, exc)
    return _error_response(502, "REMOTE_REQUEST_FAILED", str(exc))


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    logger.info("Validation error: %s", exc)
    return _error_response(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Converts any unhandled exception into the standard 500 envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(AuthExpiredError, _handle_auth_expired)  # type: ignore[arg-type]
    app.add_exception_handler(TransientNetworkError, _handle_transient)  # type: ignore[arg-type]
    app.add_exception_handler(RemoteRequestError, _handle_remote_request)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
