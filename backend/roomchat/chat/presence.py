"""Presence and typing tracker.

Derives join/leave notifications from registry changes and keeps the
ephemeral per-room typing sets. Every membership snapshot is recomputed
after the registry mutation it describes, so a departing user is never
listed in the ``user_left`` snapshot for the room they vacated.
"""
import logging
from typing import Dict, Iterable, List, Optional

from .errors import InvalidMessage
from .registry import ConnectionRegistry, Session
from .rooms import RoomDirectory
from .routing import MessageRouter

logger = logging.getLogger(__name__)

USERNAME_MAX_CHARS = 32


def normalize_username(value: object) -> str:
    """Strip and validate a display name.

    Raises:
        InvalidMessage: empty, too long, or containing control characters.
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidMessage("Username is required")
    name = value.strip()
    if len(name) > USERNAME_MAX_CHARS:
        raise InvalidMessage(f"Username exceeds {USERNAME_MAX_CHARS} characters")
    if any(ch in name for ch in ("\n", "\r", "\x00")):
        raise InvalidMessage("Username contains invalid characters")
    return name


class PresenceTracker:
    """Handles register / join / disconnect and typing state.

    Args:
        registry: Session owner.
        rooms: Room directory (rooms joined implicitly are added here).
        router: Used to append System messages to room transcripts.
        emitter: Outbound frame sink shared with the router.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        rooms: RoomDirectory,
        router: MessageRouter,
        emitter,
    ) -> None:
        self.registry = registry
        self.rooms = rooms
        self.router = router
        self.emitter = emitter
        # room -> usernames currently typing (dict as insertion-ordered set)
        self.typing: Dict[str, Dict[str, None]] = {}

    # =========================================================================
    # Membership
    # =========================================================================

    def _everyone(self) -> List[str]:
        return [s.connection_id for s in self.registry.sessions()]

    async def _broadcast_membership(self, event: str, username: str, room: str) -> None:
        await self.emitter.broadcast(
            {
                "type": event,
                "username": username,
                "room": room,
                "users": self.rooms.members(room),
            },
            self.registry.connections_in_room(room),
        )

    async def _send_room_state(self, connection_id: str, room: str) -> None:
        await self.emitter.send(
            connection_id,
            {"type": "room_users", "room": room, "users": self.rooms.members(room)},
        )
        typers = self.typing_users(room)
        if typers:
            await self.emitter.send(
                connection_id, {"type": "typing_users", "room": room, "users": typers}
            )

    async def room_created(self, room: str, extra: Iterable[str] = ()) -> None:
        """Tell every registered connection (plus ``extra``) about a new room."""
        await self.emitter.broadcast(
            {"type": "room_created", "room": room}, [*self._everyone(), *extra]
        )

    async def join(
        self, connection_id: str, username: str, room: Optional[str] = None
    ) -> Session:
        """Register a connection and place it in ``room``.

        Replaying the same registration on the same connection only re-sends
        the room state; it produces no second join notice.

        Raises:
            InvalidMessage: bad username or room name.
            UsernameTaken: another live connection holds ``username``.
        """
        username = normalize_username(username)
        room = self.rooms.normalize(room) if room else self.registry.default_room
        previous = self.registry.get(connection_id)
        if previous is not None:
            previous = Session(previous.connection_id, previous.username, previous.current_room)

        session = self.registry.register(connection_id, username, room)
        if self.rooms.ensure(room):
            await self.room_created(room)

        await self.emitter.send(
            connection_id, {"type": "room_list", "rooms": self.rooms.list_rooms()}
        )

        if previous is not None and (previous.username, previous.current_room) == (username, room):
            logger.info(f"[Presence] {username} re-registered in {room}; no state change")
            await self._send_room_state(connection_id, room)
            return session

        if previous is not None:
            await self.clear_typing(previous.username)
            await self._broadcast_membership("user_left", previous.username, previous.current_room)

        await self._send_room_state(connection_id, room)
        await self._broadcast_membership("user_joined", username, room)
        await self.router.announce(room, f"{username} joined the chat")
        logger.info(f"[Presence] {username} registered on {connection_id} in {room}")
        return session

    async def change_room(self, connection_id: str, room: str) -> Session:
        """Move a registered session to ``room`` with a dual broadcast.

        Raises:
            InvalidMessage: connection not registered, or bad room name.
        """
        session = self.router.require_session(connection_id)
        room = self.rooms.normalize(room)
        if room == session.current_room:
            await self._send_room_state(connection_id, room)
            return session

        previous_room = session.current_room
        self.registry.set_room(connection_id, room)
        if self.rooms.ensure(room):
            await self.room_created(room)

        await self.clear_typing(session.username, [previous_room])
        await self._broadcast_membership("user_left", session.username, previous_room)
        await self._broadcast_membership("user_joined", session.username, room)
        await self.emitter.send(
            connection_id, {"type": "room_changed", "room": room, "previousRoom": previous_room}
        )
        await self._send_room_state(connection_id, room)
        await self.router.announce(room, f"{session.username} entered this room")
        logger.info(f"[Presence] {session.username} moved from {previous_room} to {room}")
        return session

    async def disconnect(self, connection_id: str) -> Optional[Session]:
        """Remove the session, purge its typing state, and notify its room.

        Returns:
            The removed session, or None if the connection never registered.
        """
        session = self.registry.remove(connection_id)
        if session is None:
            return None

        await self.clear_typing(session.username)
        await self._broadcast_membership("user_left", session.username, session.current_room)
        await self.router.announce(session.current_room, f"{session.username} left the chat")
        logger.info(f"[Presence] {session.username} disconnected from {session.current_room}")
        return session

    # =========================================================================
    # Typing
    # =========================================================================

    def typing_users(self, room: str) -> List[str]:
        return list(self.typing.get(room, {}))

    async def _broadcast_typing(self, room: str) -> None:
        await self.emitter.broadcast(
            {"type": "typing_users", "room": room, "users": self.typing_users(room)},
            self.registry.connections_in_room(room),
        )

    async def start_typing(self, connection_id: str, room: Optional[str] = None) -> List[str]:
        """Mark the sender as typing in their current room.

        Raises:
            InvalidMessage: ``room`` names a room the sender is not in.
        """
        session = self.router.require_session(connection_id)
        room = self.rooms.normalize(room) if room else session.current_room
        if room != session.current_room:
            raise InvalidMessage("Typing is only shown in your current room", room=room)
        typers = self.typing.setdefault(room, {})
        if session.username not in typers:
            typers[session.username] = None
            await self._broadcast_typing(room)
        return self.typing_users(room)

    async def stop_typing(self, connection_id: str, room: Optional[str] = None) -> List[str]:
        session = self.router.require_session(connection_id)
        room = self.rooms.normalize(room) if room else session.current_room
        await self.clear_typing(session.username, [room])
        return self.typing_users(room)

    async def clear_typing(self, username: str, rooms: Optional[Iterable[str]] = None) -> List[str]:
        """Remove ``username`` from the typing set of ``rooms`` (default: all).

        Returns:
            Rooms whose typing set changed; each of them was rebroadcast.
        """
        targets = list(rooms) if rooms is not None else list(self.typing)
        changed = []
        for room in targets:
            typers = self.typing.get(room)
            if not typers or username not in typers:
                continue
            del typers[username]
            if not typers:
                del self.typing[room]
            changed.append(room)
            await self._broadcast_typing(room)
        return changed
