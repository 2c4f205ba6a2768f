"""Server-side fan-out of chat frames to authenticated WebSocket connections.

Key features:
    - Per-session sets of authenticated connections
    - Concurrent broadcasting with asyncio.gather()
    - Automatic dead connection cleanup

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.
"""
import asyncio
import logging
from typing import Dict, List

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class RelayHub:
    """Tracks which connections are joined to which session."""

    def __init__(self) -> None:
        # session_id -> authenticated WebSocket connections
        self.active_connections: Dict[str, List[WebSocket]] = {}

    def add(self, session_id: str, websocket: WebSocket) -> None:
        connections = self.active_connections.setdefault(session_id, [])
        if websocket not in connections:
            connections.append(websocket)
        logger.info(f"[Hub] Session {session_id} now has {len(connections)} connections")

    def remove(self, session_id: str, websocket: WebSocket) -> None:
        connections = self.active_connections.get(session_id)
        if not connections:
            return
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            del self.active_connections[session_id]

    def room_size(self, session_id: str) -> int:
        return len(self.active_connections.get(session_id, []))

    async def broadcast(self, message: dict, session_id: str) -> int:
        """Send ``message`` to every connection of a session concurrently.

        Connections that fail to receive are removed.

        Returns:
            Number of connections the message was delivered to.
        """
        connections = list(self.active_connections.get(session_id, []))
        if not connections:
            return 0

        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True
        )

        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        self._cleanup_connections(session_id, failed_connections)
        return len(connections) - len(failed_connections)

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"[Hub] Failed to send to connection: {e}")
            return False

    def _cleanup_connections(self, session_id: str, failed_connections: List[WebSocket]) -> None:
        for conn in failed_connections:
            self.remove(session_id, conn)
            logger.debug(f"[Hub] Removed dead connection from session {session_id}")

    def clear(self) -> None:
        self.active_connections.clear()


# Global hub instance shared by all WebSocket handlers
hub = RelayHub()
