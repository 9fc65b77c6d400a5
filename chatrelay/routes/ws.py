"""
Live push over WebSocket.

Clients connect to `/ws?token=<jwt or api key>` and receive every event for
the sessions and webhooks of their account. The socket is push-only; a text
frame of "ping" is answered with a "pong" event.
"""
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.database import get_db
from chatrelay.dependencies.auth import resolve_user
from chatrelay.logging_config import get_logger
from chatrelay.responses import utc_timestamp

router = APIRouter(tags=["Live"])
logger = get_logger(component="websocket")


@router.websocket("/ws")
async def live_feed(
    websocket: WebSocket,
    token: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    user = await resolve_user(db, token=token) if token else None
    if user is None:
        logger.warning("websocket_rejected", reason="invalid_token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    owner_id = user.id
    # the db session is not needed while the socket is open
    await db.close()

    hub = websocket.app.state.runtime.hub
    await hub.connect(websocket, owner_id)
    try:
        while True:
            text = await websocket.receive_text()
            if text.strip().lower() == "ping":
                await websocket.send_json({"event": "pong", "data": None, "timestamp": utc_timestamp()})
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket, owner_id)
