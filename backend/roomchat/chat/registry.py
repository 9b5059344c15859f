"""Connection registry: the single source of truth for who is connected.

Sessions are indexed by connection id. Room membership is never stored; it is
always a filter over the live sessions, so it cannot drift from the actual
connection set.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

from .errors import UsernameTaken

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Binds one active connection to a display name and its current room."""

    connection_id: str
    username: str
    current_room: str


class ConnectionRegistry:
    """Owns every Session for the lifetime of its connection.

    Iteration order of all membership queries is connection (insertion)
    order. Not thread-safe; intended for a single event loop.
    """

    def __init__(self, default_room: str = "general") -> None:
        self.default_room = default_room
        self._sessions: Dict[str, Session] = {}

    def register(
        self, connection_id: str, username: str, room: Optional[str] = None
    ) -> Session:
        """Create (or overwrite) the session for ``connection_id``.

        Raises:
            UsernameTaken: another live connection already uses ``username``.
        """
        holder = self.find_connection_by_username(username)
        if holder is not None and holder != connection_id:
            raise UsernameTaken(f"Username '{username}' is already in use", username=username)

        if connection_id in self._sessions:
            logger.info(f"[Registry] Re-registering connection {connection_id} as {username}")

        session = Session(
            connection_id=connection_id,
            username=username,
            current_room=room or self.default_room,
        )
        self._sessions[connection_id] = session
        return session

    def set_room(self, connection_id: str, room: str) -> Optional[Session]:
        """Move an existing session to ``room``; no-op when the session is absent."""
        session = self._sessions.get(connection_id)
        if session is None:
            logger.warning(f"[Registry] set_room for unknown connection {connection_id}")
            return None
        session.current_room = room
        return session

    def remove(self, connection_id: str) -> Optional[Session]:
        """Delete and return the session, or None if there was none."""
        return self._sessions.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def users_in_room(self, room: str) -> Iterator[str]:
        """Lazily yield usernames whose session is currently in ``room``."""
        return (s.username for s in list(self._sessions.values()) if s.current_room == room)

    def connections_in_room(self, room: str) -> Iterator[str]:
        """Lazily yield connection ids whose session is currently in ``room``."""
        return (s.connection_id for s in list(self._sessions.values()) if s.current_room == room)

    def find_connection_by_username(self, username: str) -> Optional[str]:
        """First connection whose session carries ``username``, else None."""
        for session in self._sessions.values():
            if session.username == username:
                return session.connection_id
        return None

    def sessions(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
