"""HTTP surface: FastAPI application factory.

Endpoints:
- ``POST /webhook/google``: push notification receiver. Responds at once; the
  sync cycle runs as a background task after the response is sent.
- ``GET /watch/start``, ``GET /watch/stop``, ``GET /watch/status``: push
  channel lifecycle.
- ``GET /board/setup``: create or refresh the board, return its message id.
- ``POST /sync``: manual sync trigger.
- ``GET /``, ``GET /test-discord``, ``GET /health``, ``GET /metrics``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from calboard import __version__
from calboard.api.middleware import register_error_handlers
from calboard.api.models import BoardSetupResponse, SyncTriggerResponse
from calboard.service import CalboardService
from calboard.sync.engine import NotificationDisposition, Trigger

logger = logging.getLogger(__name__)


def get_service(request: Request) -> CalboardService:
    return request.app.state.service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the service (warm-up, watch, ticker) before serving requests."""
    service: CalboardService = app.state.service
    manage = app.state.manage_lifecycle
    if manage:
        await service.startup()
    try:
        yield
    finally:
        if manage:
            await service.shutdown()


def create_app(service: CalboardService, *, manage_lifecycle: bool = True) -> FastAPI:
    """Create the FastAPI application bound to *service*.

    With ``manage_lifecycle=False`` the caller owns ``startup``/``shutdown``
    (used by tests and by CLI commands that drive the service directly).
    """
    app = FastAPI(title="calboard", version=__version__, lifespan=lifespan)
    app.state.service = service
    app.state.manage_lifecycle = manage_lifecycle

    register_error_handlers(app)

    @app.get("/", response_class=PlainTextResponse)
    async def index() -> str:
        return "Backend is running"

    @app.post("/webhook/google")
    async def google_webhook(
        background_tasks: BackgroundTasks,
        x_goog_channel_id: str | None = Header(default=None),
        x_goog_resource_state: str | None = Header(default=None),
        service: CalboardService = Depends(get_service),
    ) -> Response:
        disposition = service.engine.accept_notification(
            channel_id=x_goog_channel_id,
            resource_state=x_goog_resource_state,
        )
        if disposition != NotificationDisposition.stale_channel:
            background_tasks.add_task(
                service.engine.trigger,
                Trigger.webhook,
                heartbeat=disposition == NotificationDisposition.heartbeat,
            )
        return Response(status_code=200)

    @app.get("/watch/start")
    async def watch_start(service: CalboardService = Depends(get_service)) -> dict:
        await service.subscription.start()
        return service.subscription.status()

    @app.get("/watch/stop")
    async def watch_stop(service: CalboardService = Depends(get_service)) -> dict:
        stopped = await service.subscription.stop()
        return {"stopped": stopped, **service.subscription.status()}

    @app.get("/watch/status")
    async def watch_status(service: CalboardService = Depends(get_service)) -> dict:
        return {
            "watch": service.subscription.status(),
            "sync": service.sync_status(),
            "board": service.board_status(),
        }

    @app.get("/board/setup", response_model=BoardSetupResponse)
    async def board_setup(service: CalboardService = Depends(get_service)) -> BoardSetupResponse:
        message_id = await service.setup_board()
        hint = None
        if message_id and message_id != service.config.discord.board_message_id:
            hint = f"Set DISCORD_BOARD_MESSAGE_ID={message_id} to reuse this board after a restart"
        return BoardSetupResponse(message_id=message_id, hint=hint)

    @app.post("/sync", response_model=SyncTriggerResponse)
    async def trigger_sync(
        background_tasks: BackgroundTasks,
        wait: bool = False,
        service: CalboardService = Depends(get_service),
    ) -> SyncTriggerResponse:
        if not wait:
            background_tasks.add_task(service.engine.trigger, Trigger.manual)
            return SyncTriggerResponse(status="scheduled")
        result = await service.engine.trigger(Trigger.manual)
        if result is None:
            return SyncTriggerResponse(status="coalesced")
        return SyncTriggerResponse(status=result.status.value, result=result.as_dict())

    @app.get("/test-discord", response_class=PlainTextResponse)
    async def test_discord(service: CalboardService = Depends(get_service)) -> Response:
        try:
            await service.send_test_message()
        except Exception as exc:
            logger.error("Test message failed: %s", exc, exc_info=True)
            return PlainTextResponse("Failed to send test message", status_code=500)
        return PlainTextResponse("Test message sent")

    @app.get("/health")
    async def health(service: CalboardService = Depends(get_service)) -> JSONResponse:
        payload = service.health()
        status_code = 503 if payload["status"] == "unhealthy" else 200
        return JSONResponse(status_code=status_code, content=payload)

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app
