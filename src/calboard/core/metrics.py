"""Prometheus metrics instrumentation for the sync service.

Metrics exported:
- calboard_sync_cycles_total: Counter of sync cycles by trigger and outcome
- calboard_sync_cycle_seconds: Histogram of sync cycle duration
- calboard_changes_total: Counter of classified changes by kind
- calboard_board_refresh_total: Counter of board refreshes by outcome
- calboard_notifications_total: Counter of per-change chat notifications
- calboard_webhook_notifications_total: Counter of inbound push notifications
- calboard_remote_calls_total: Counter of remote API calls by service and method
- calboard_errors_total: Counter of errors by type and operation
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

sync_cycles_total = Counter(
    "calboard_sync_cycles_total",
    "Total number of sync cycles",
    labelnames=["trigger", "status"],
)

sync_cycle_seconds = Histogram(
    "calboard_sync_cycle_seconds",
    "Duration of sync cycles in seconds",
    labelnames=["status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

changes_total = Counter(
    "calboard_changes_total",
    "Total number of classified event changes",
    labelnames=["kind"],
)

board_refresh_total = Counter(
    "calboard_board_refresh_total",
    "Total number of board refresh attempts by outcome",
    labelnames=["outcome"],
)

notifications_total = Counter(
    "calboard_notifications_total",
    "Total number of per-change chat notifications",
    labelnames=["status"],
)

webhook_notifications_total = Counter(
    "calboard_webhook_notifications_total",
    "Total number of inbound calendar push notifications",
    labelnames=["disposition"],
)

remote_calls_total = Counter(
    "calboard_remote_calls_total",
    "Total number of remote API calls",
    labelnames=["service", "api_method", "status"],
)

errors_total = Counter(
    "calboard_errors_total",
    "Total number of errors by type",
    labelnames=["error_type", "operation"],
)


def record_remote_call(service: str, api_method: str, status: str) -> None:
    """Record a remote API call.

    Args:
        service: Remote service ("google", "discord")
        api_method: API method name (e.g., "events.list", "messages.edit")
        status: Call status ("success", "error", "rate_limited")
    """
    remote_calls_total.labels(service=service, api_method=api_method, status=status).inc()


def record_error(error_type: str, operation: str) -> None:
    errors_total.labels(error_type=error_type, operation=operation).inc()


def get_error_type(exc: BaseException) -> str:
    """Extract a metrics label from an exception."""
    exc_type = type(exc).__name__

    if exc_type == "TransientNetworkError":
        return "transient"
    if exc_type == "AuthExpiredError":
        return "auth_expired"
    if "Timeout" in exc_type:
        return "timeout"
    if "HTTPStatus" in exc_type or "HTTP" in exc_type or "RemoteRequest" in exc_type:
        return "http_error"
    if "ConnectionError" in exc_type or "ConnectError" in exc_type:
        return "connection_error"
    if "JSON" in exc_type or "Parse" in exc_type:
        return "parse_error"
    if "ValueError" in exc_type or "ValidationError" in exc_type:
        return "validation_error"

    return exc_type.lower()
