"""WebSocket connection manager for real-time chat.

This module owns the transport side of the chat core: it accepts WebSocket
connections, assigns each one an opaque connection id, and delivers outbound
frames to one or many connections. It knows nothing about usernames or
rooms; the hub decides the audience and hands this manager a list of
connection ids.

Key features:
    - Backend-assigned connection ids (uuid4)
    - Concurrent fan-out with asyncio.gather()
    - Dead connections are dropped from the table when a send fails

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.
"""
import asyncio
import logging
import uuid
from typing import Dict, Iterable, List, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Maps connection ids to live WebSocket objects and sends JSON frames.

    Implements the emitter interface used by the router and presence
    tracker: ``send(connection_id, message)`` and
    ``broadcast(message, connection_ids)``.
    """

    def __init__(self) -> None:
        """Initialize an empty connection table."""
        # connection_id -> active WebSocket connection
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a WebSocket connection and assign it a connection id.

        Args:
            websocket: The WebSocket connection to accept.

        Returns:
            The backend-generated connection id.
        """
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self.active_connections[connection_id] = websocket
        logger.info(
            f"[Manager] Connection {connection_id} accepted "
            f"({len(self.active_connections)} active)"
        )
        return connection_id

    def disconnect(self, connection_id: str) -> Optional[WebSocket]:
        """Forget a connection. Returns its WebSocket if it was still tracked."""
        return self.active_connections.pop(connection_id, None)

    async def send(self, connection_id: str, message: dict) -> bool:
        """Send a frame to a single connection.

        Returns:
            True if delivered, False if the connection is unknown or failed.
        """
        connection = self.active_connections.get(connection_id)
        if connection is None:
            return False
        if await self._safe_send(connection, message):
            return True
        self._cleanup_connections([connection_id])
        return False

    async def broadcast(self, message: dict, connection_ids: Iterable[str]) -> List[str]:
        """Send a frame to every listed connection concurrently.

        Each connection id receives at most one copy, even if listed twice.

        Args:
            message: JSON-serializable frame.
            connection_ids: Audience computed by the caller.

        Returns:
            Connection ids the frame was delivered to.
        """
        targets = [
            (cid, self.active_connections[cid])
            for cid in dict.fromkeys(connection_ids)
            if cid in self.active_connections
        ]
        if not targets:
            return []

        results = await asyncio.gather(
            *[self._safe_send(conn, message) for _, conn in targets],
            return_exceptions=True
        )

        delivered = []
        failed = []
        for (cid, _), success in zip(targets, results):
            (delivered if success is True else failed).append(cid)
        self._cleanup_connections(failed)
        return delivered

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(self, failed_connections: List[str]) -> None:
        """Drop connections whose send failed.

        Session cleanup still runs through the endpoint's disconnect path.
        """
        for cid in failed_connections:
            if self.active_connections.pop(cid, None) is not None:
                logger.debug(f"Removed dead connection {cid}")

    def get_connection_count(self) -> int:
        """Get the number of active connections."""
        return len(self.active_connections)
