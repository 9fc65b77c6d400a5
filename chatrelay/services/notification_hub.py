"""
Live notification hub.

Pushes events to connected WebSocket clients, scoped to the owning account.
Frames are JSON objects `{event, data, timestamp}`.
"""
import asyncio
from typing import Any

from fastapi import WebSocket

from chatrelay.logging_config import get_logger
from chatrelay.responses import utc_timestamp
from chatrelay.routes.metrics import update_websocket_connections

logger = get_logger(component="notification_hub")


class NotificationHub:
    """WebSocket connection manager keyed by owner id."""

    def __init__(self):
        # owner_id -> connected sockets
        self.active_connections: dict[str, list[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, owner_id: str) -> None:
        await websocket.accept()
        self.active_connections.setdefault(owner_id, []).append(websocket)
        update_websocket_connections(self.connection_count)
        logger.info(
            "websocket_connected",
            owner_id=owner_id,
            connections=len(self.active_connections[owner_id]),
        )

    def disconnect(self, websocket: WebSocket, owner_id: str) -> None:
        sockets = self.active_connections.get(owner_id)
        if not sockets:
            return
        try:
            sockets.remove(websocket)
        except ValueError:
            logger.warning("websocket_not_found", owner_id=owner_id)
        if not sockets:
            del self.active_connections[owner_id]
        update_websocket_connections(self.connection_count)
        logger.info("websocket_disconnected", owner_id=owner_id)

    @property
    def connection_count(self) -> int:
        return sum(len(sockets) for sockets in self.active_connections.values())

    async def publish(self, event: str, payload: Any, owner_id: str | None = None) -> None:
        """
        Push one event.

        Args:
            event: Event name, e.g. "session.update"
            payload: JSON-serialisable data
            owner_id: Deliver only to this owner's sockets; None broadcasts
        """
        if owner_id is None:
            targets = [(o, ws) for o, sockets in self.active_connections.items() for ws in sockets]
        else:
            targets = [(owner_id, ws) for ws in self.active_connections.get(owner_id, [])]
        if not targets:
            return

        frame = {"event": event, "data": payload, "timestamp": utc_timestamp()}
        results = await asyncio.gather(
            *(ws.send_json(frame) for _, ws in targets),
            return_exceptions=True,
        )
        for (target_owner, ws), result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("websocket_send_failed", owner_id=target_owner, error=str(result))
                self.disconnect(ws, target_owner)
