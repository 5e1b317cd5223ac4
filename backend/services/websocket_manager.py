"""WebSocket Connection Manager for the Door Access Edge Service.

Manages WebSocket connections and broadcasts real-time events to connected clients.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from fastapi import WebSocket

logger = logging.getLogger(__name__)

StatusProvider = Callable[[], Awaitable[dict[str, Any]]]


class WebSocketManager:
    """Manages WebSocket connections and event broadcasting."""

    def __init__(self) -> None:
        """Initialize WebSocket manager with empty connection list."""
        self._connections: list[WebSocket] = []
        self._status_task: asyncio.Task[None] | None = None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        """Accept and track a new WebSocket connection.

        Args:
            websocket: The WebSocket connection to accept.
        """
        await websocket.accept()
        self._connections.append(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self._connections)}")

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection from tracking.

        Args:
            websocket: The WebSocket connection to remove.
        """
        if websocket in self._connections:
            self._connections.remove(websocket)
            logger.info(f"WebSocket disconnected. Total connections: {len(self._connections)}")

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Broadcast a message to all connected clients.

        Args:
            message: Dictionary to serialize and send as JSON.
        """
        if not self._connections:
            return

        def json_serializer(obj: Any) -> str:
            if isinstance(obj, datetime):
                return obj.isoformat()
            raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

        text = json.dumps(message, default=json_serializer, ensure_ascii=False)
        disconnected: list[WebSocket] = []

        for connection in self._connections:
            try:
                await connection.send_text(text)
            except Exception as e:
                logger.warning(f"Failed to send to WebSocket: {e}")
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn)

    async def broadcast_audit_event(self, name: str, message: str, tags: list[str]) -> None:
        """Broadcast an AUDIT_EVENT.

        Args:
            name: Event name.
            message: Full description.
            tags: Normalized tags.
        """
        await self.broadcast({
            "type": "AUDIT_EVENT",
            "name": name,
            "message": message,
            "tags": tags,
            "timestamp": datetime.now(timezone.utc),
        })

    async def _status_update_loop(self, status_fn: StatusProvider, interval: float) -> None:
        """Periodically broadcast status updates.

        Args:
            status_fn: Coroutine function returning the status fields.
            interval: Seconds between updates.
        """
        while True:
            try:
                await asyncio.sleep(interval)
                if self._connections:
                    status = await status_fn()
                    await self.broadcast({"type": "STATUS_UPDATE", **status})
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in status update loop: {e}")
                await asyncio.sleep(interval)

    def start_status_updates(self, status_fn: StatusProvider, interval: float = 5.0) -> None:
        """Start periodic status update broadcasts.

        Args:
            status_fn: Coroutine function returning the status fields.
            interval: Seconds between updates.
        """
        if self._status_task is None or self._status_task.done():
            self._status_task = asyncio.create_task(self._status_update_loop(status_fn, interval))

    async def stop_status_updates(self) -> None:
        """Stop periodic status update broadcasts."""
        if self._status_task and not self._status_task.done():
            self._status_task.cancel()
            try:
                await self._status_task
            except asyncio.CancelledError:
                pass


# Global WebSocket manager instance
_ws_manager: WebSocketManager | None = None


def get_ws_manager() -> WebSocketManager:
    """Get WebSocket manager instance (singleton)."""
    global _ws_manager
    if _ws_manager is None:
        _ws_manager = WebSocketManager()
    return _ws_manager
