"""
FastAPI application for the notification service.

This application provides:
1. The pull API for a user's notifications (/notifications)
2. The live push channel (/ws/notifications)
3. A health check that reports each event consumer's supervisor state

The event consumers run inside the application's event loop for as long as
the app is up; the lifespan starts and stops them.

Run with:
    uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status

from api.websocket import WebSocketChannel
from event_driven.broadcaster import LiveBroadcaster
from event_driven.event_log import EventLog, create_event_log
from event_driven.notification_service import NotificationService
from shared.config import PipelineSettings, configure_logging
from shared.data_store import NotificationStore
from shared.models import NotificationDto

logger = logging.getLogger("notification_api")

USER_ID_HEADER = "X-User-Id"


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the event consumers on startup, drain them on shutdown."""
    service: NotificationService = app.state.notification_service
    logger.info("Starting notification service API")
    await service.start()
    yield
    logger.info("Shutting down")
    await service.stop()
    app.state.broadcaster.close()


def create_app(
    settings: Optional[PipelineSettings] = None,
    event_log: Optional[EventLog] = None,
) -> FastAPI:
    """
    Build the notification service application.

    Args:
        settings: Runtime configuration (defaults to the environment)
        event_log: Event log to consume from (defaults to the configured backend)
    """
    settings = settings or PipelineSettings()
    configure_logging(settings)

    app = FastAPI(
        title="Tarot Notification Service",
        description="""
    Notifications for spread owners, materialized from domain events.

    ## Endpoints

    - `/notifications` - Pull a user's notifications (header `X-User-Id`)
    - `/notifications/unread-count` - Count of unread notifications
    - `/ws/notifications` - Live push of new notifications
    """,
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.event_log = event_log or create_event_log(settings)
    app.state.store = NotificationStore()
    app.state.broadcaster = LiveBroadcaster()
    app.state.notification_service = NotificationService(
        app.state.event_log,
        app.state.store,
        app.state.broadcaster,
        settings,
    )
    _register_routes(app)
    return app


def get_notification_service(request: Request) -> NotificationService:
    return request.app.state.notification_service


def parse_user_id(raw: Optional[str]) -> Optional[UUID]:
    """Parse a user id header or query value; None if missing or malformed."""
    if not raw:
        return None
    try:
        return UUID(raw)
    except ValueError:
        return None


def require_user_id(x_user_id: Optional[str] = Header(default=None)) -> UUID:
    user_id = parse_user_id(x_user_id)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{USER_ID_HEADER} header must be a user UUID",
        )
    return user_id


def _register_routes(app: FastAPI) -> None:

    # =========================================================================
    # Health Check
    # =========================================================================

    @app.get("/health", tags=["Health"])
    def health_check(request: Request):
        """Health check endpoint with the state of every event consumer."""
        service: NotificationService = request.app.state.notification_service
        broadcaster: LiveBroadcaster = request.app.state.broadcaster
        return {
            "status": "healthy",
            "service": "notification-service",
            "consumers": service.health(),
            "liveUsers": broadcaster.active_user_count(),
            "liveChannels": broadcaster.active_channel_count(),
        }

    # =========================================================================
    # Pull API
    # =========================================================================

    @app.get("/notifications", response_model=list[NotificationDto], tags=["Notifications"])
    def list_notifications(
        is_read: Optional[bool] = Query(default=None, alias="isRead"),
        user_id: UUID = Depends(require_user_id),
        service: NotificationService = Depends(get_notification_service),
    ):
        """A user's notifications, newest first, optionally filtered by read state."""
        return service.list_for_user(user_id, is_read)

    @app.get("/notifications/unread-count", tags=["Notifications"])
    def unread_count(
        user_id: UUID = Depends(require_user_id),
        service: NotificationService = Depends(get_notification_service),
    ):
        return {"count": service.unread_count(user_id)}

    # =========================================================================
    # Live push
    # =========================================================================

    @app.websocket("/ws/notifications")
    async def notifications_websocket(websocket: WebSocket):
        """
        Live notifications for one user.

        The user is identified by the ``X-User-Id`` header, or the ``userId``
        query parameter for browser clients that cannot set headers. Inbound
        messages are ignored.
        """
        user_id = parse_user_id(
            websocket.headers.get(USER_ID_HEADER) or websocket.query_params.get("userId")
        )
        if user_id is None:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        settings: PipelineSettings = websocket.app.state.settings
        broadcaster: LiveBroadcaster = websocket.app.state.broadcaster
        channel = WebSocketChannel(
            websocket,
            asyncio.get_running_loop(),
            write_timeout=settings.websocket_write_timeout_seconds,
        )
        broadcaster.register(user_id, channel)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info(f"Websocket {channel.channel_id} of user {user_id} disconnected")
        finally:
            channel.closed = True
            broadcaster.unregister(user_id, channel)


app = create_app()
