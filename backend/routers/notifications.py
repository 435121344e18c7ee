import asyncio
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from backend.dependencies import get_notifications
from backend.security import decode_session_token, require_session
from backend.services.notifications import NotificationHub

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/notifications/recent")
def recent_notifications(
    limit: int = Query(default=20, ge=1, le=100),
    topic: str | None = None,
    _session: dict = Depends(require_session),
    notifications: NotificationHub = Depends(get_notifications),
):
    return notifications.recent(limit=limit, topic=topic)


async def _forward_events(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        event = await queue.get()
        await websocket.send_json(event)


async def _stop_forwarder(forwarder: asyncio.Task, sub_id: int) -> None:
    forwarder.cancel()
    (outcome,) = await asyncio.gather(forwarder, return_exceptions=True)
    if isinstance(outcome, Exception) and not isinstance(outcome, WebSocketDisconnect):
        logger.warning("Dashboard subscriber %d stopped forwarding: %s", sub_id, outcome)


@router.websocket("/ws/dashboard")
async def dashboard_socket(websocket: WebSocket, token: str | None = None):
    session = decode_session_token(token)
    if not session:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    hub: NotificationHub = websocket.app.state.notifications
    sub_id, queue = hub.subscribe()
    logger.info("Dashboard client %s connected (subscriber %d)", session["sub"], sub_id)

    forwarder = asyncio.create_task(_forward_events(websocket, queue))
    try:
        # Incoming frames are ignored; the loop only detects disconnects.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(sub_id)
        await _stop_forwarder(forwarder, sub_id)
        logger.info("Dashboard subscriber %d disconnected", sub_id)
