"""Client-side reconciliation state.

Holds everything a chat client knows: connection status, the identity to
replay after a reconnect, room lists, presence, typing sets and per-room
transcripts. Server frames are merged by ``apply``. Merges are idempotent so
redelivered or out-of-order frames leave the state unchanged:

    - messages are keyed by ``id``; a second copy is dropped
    - reactions and readBy are replaced wholesale, never appended
    - history pages are merged by ``id``, not by position
"""
import bisect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from roomchat.chat.schemas import conversation_key

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_WINDOW = 50


class ConnectionStatus(str, Enum):
    """Transport status as seen by the client.

    disconnected -> connecting -> connected -> {reconnecting <-> connected} -> disconnected
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def _order_key(message: Dict[str, Any]) -> Tuple[int, str, str]:
    return (message.get("seq") or 0, message.get("timestamp") or "", message.get("id") or "")


class ClientHistory:
    """Transcript of one room or private conversation.

    The durable transcript is unbounded and ordered by ``seq``. ``visible()``
    is the rolling display window: live messages push the oldest out of the
    window (not out of the transcript), while pages loaded on request widen
    it.
    """

    def __init__(self, window: int = DEFAULT_HISTORY_WINDOW) -> None:
        self.window = window
        self.by_id: Dict[str, Dict[str, Any]] = {}
        self._keys: List[Tuple[int, str, str]] = []
        self._visible = window
        self.has_more = True
        self.furthest_page = 0

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self.by_id

    def merge(self, message: Dict[str, Any]) -> bool:
        """Insert ``message`` in ``seq`` order. Returns False for a known id."""
        message_id = message.get("id")
        if not message_id or message_id in self.by_id:
            return False
        stored = dict(message)
        stored["reactions"] = {e: list(u) for e, u in (stored.get("reactions") or {}).items()}
        stored["readBy"] = list(stored.get("readBy") or [])
        self.by_id[message_id] = stored
        bisect.insort(self._keys, _order_key(stored))
        return True

    def merge_page(self, messages: List[Dict[str, Any]], has_more: bool, page: Optional[int] = None) -> int:
        """Merge one history page; tolerant of pages arriving out of order.

        ``has_more`` is taken from the furthest page seen so far, so a late
        page 2 cannot reopen a history that page 3 already closed.

        Returns:
            Number of messages that were new.
        """
        added = sum(1 for m in messages if self.merge(m))
        self._visible += added
        if page is None or page >= self.furthest_page:
            self.has_more = has_more
            if page is not None:
                self.furthest_page = page
        return added

    def messages(self) -> List[Dict[str, Any]]:
        return [self.by_id[key[2]] for key in self._keys]

    def visible(self) -> List[Dict[str, Any]]:
        return self.messages()[-self._visible:] if self._visible > 0 else []

    def reset_window(self) -> None:
        self._visible = self.window

    def get(self, message_id: str) -> Optional[Dict[str, Any]]:
        return self.by_id.get(message_id)


class ClientState:
    """Everything the client knows, updated only through the methods below.

    Args:
        history_window: Size of each transcript's display window.
    """

    def __init__(self, history_window: int = DEFAULT_HISTORY_WINDOW) -> None:
        self.history_window = history_window
        self.status = ConnectionStatus.DISCONNECTED
        self.connection_id: Optional[str] = None
        self.username: Optional[str] = None
        self.room: Optional[str] = None
        # room to restore if the server rejects a pending change_room
        self._room_before_change: Optional[str] = None
        self.rooms: List[str] = []
        self.room_users: Dict[str, List[str]] = {}
        self.typing: Dict[str, List[str]] = {}
        self.histories: Dict[str, ClientHistory] = {}
        self.reconnect_attempts = 0
        self.last_error: Optional[str] = None
        self.errors: List[Dict[str, Any]] = []

        self._appliers: Dict[str, Callable[[Dict[str, Any]], bool]] = {
            "connected": self._apply_connected,
            "room_list": self._apply_room_list,
            "room_created": self._apply_room_created,
            "room_users": self._apply_membership,
            "user_joined": self._apply_membership,
            "user_left": self._apply_membership,
            "room_changed": self._apply_room_changed,
            "receive_message": self._apply_message,
            "private_message": self._apply_message,
            "typing_users": self._apply_typing,
            "reaction_updated": self._apply_reactions,
            "read_receipt_updated": self._apply_read_receipt,
            "all_messages_read": self._apply_all_read,
            "more_messages_loaded": self._apply_page,
            "error": self._apply_error,
            "private_message_error": self._apply_error,
            "reaction_error": self._apply_error,
        }

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    @property
    def registered(self) -> bool:
        return self.username is not None

    def connecting(self) -> None:
        self.status = ConnectionStatus.CONNECTING
        logger.debug("[Client] Connecting")

    def on_connect(self, connection_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Enter ``connected`` and return the frames to replay.

        The server forgets a session when its socket closes, so a client that
        had registered must join again on every new connection.
        """
        was_reconnecting = self.status == ConnectionStatus.RECONNECTING
        self._room_before_change = None
        self.status = ConnectionStatus.CONNECTED
        self.reconnect_attempts = 0
        if connection_id:
            self.connection_id = connection_id
        if not self.registered:
            return []
        if was_reconnecting:
            logger.info(f"[Client] Reconnected; rejoining {self.room} as {self.username}")
        return [self.join_frame()]

    def on_disconnect(self, reason: Optional[str] = None, will_reconnect: bool = True) -> None:
        """Record a dropped connection; presence and typing views go stale."""
        self.status = ConnectionStatus.RECONNECTING if will_reconnect else ConnectionStatus.DISCONNECTED
        self.connection_id = None
        self.room_users.clear()
        self.typing.clear()
        logger.info(f"[Client] Disconnected ({reason or 'no reason'}); status={self.status.value}")

    def on_reconnect_attempt(self, attempt: int) -> None:
        self.status = ConnectionStatus.RECONNECTING
        self.reconnect_attempts = attempt

    def on_error(self, error: Any) -> None:
        """Remember a transport error without changing the status."""
        self.last_error = str(error)
        logger.warning(f"[Client] Transport error: {error}")

    def close(self) -> None:
        self.status = ConnectionStatus.DISCONNECTED
        self.connection_id = None

    # =========================================================================
    # Local intents
    # =========================================================================

    def join_frame(self) -> Dict[str, Any]:
        frame: Dict[str, Any] = {"type": "user_join", "username": self.username}
        if self.room:
            frame["room"] = self.room
        return frame

    def register(self, username: str, room: Optional[str] = None) -> Dict[str, Any]:
        self.username = username
        if room:
            self.room = room
        return self.join_frame()

    def change_room(self, room: str) -> Dict[str, Any]:
        """Switch the current room; the room's transcript is kept and re-shown.

        The switch is applied at once and rolled back if the server answers
        the change_room with an error.
        """
        if room != self.room:
            self._room_before_change = self.room
        self.room = room
        self.history(room).reset_window()
        return {"type": "change_room", "room": room}

    # =========================================================================
    # Queries
    # =========================================================================

    def history(self, key: str) -> ClientHistory:
        history = self.histories.get(key)
        if history is None:
            history = self.histories[key] = ClientHistory(self.history_window)
        return history

    def conversation(self, other: str) -> ClientHistory:
        """Private transcript with ``other``."""
        return self.history(conversation_key(self.username or "", other))

    def find_message(self, message_id: str, room: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if room is not None and room in self.histories:
            found = self.histories[room].get(message_id)
            if found is not None:
                return found
        for history in self.histories.values():
            found = history.get(message_id)
            if found is not None:
                return found
        return None

    def visible_messages(self, room: Optional[str] = None) -> List[Dict[str, Any]]:
        key = room or self.room
        return self.histories[key].visible() if key in self.histories else []

    def has_more(self, room: str) -> bool:
        return self.history(room).has_more

    # =========================================================================
    # Server frames
    # =========================================================================

    def apply(self, frame: Dict[str, Any]) -> bool:
        """Merge one server frame. Returns True if the state changed."""
        applier = self._appliers.get(frame.get("type"))
        if applier is None:
            logger.debug(f"[Client] Ignoring frame type {frame.get('type')!r}")
            return False
        return applier(frame)

    def merge_page(self, room: str, messages: List[Dict[str, Any]], has_more: bool, page: Optional[int] = None) -> int:
        return self.history(room).merge_page(messages, has_more, page)

    def _apply_connected(self, frame: Dict[str, Any]) -> bool:
        self.connection_id = frame.get("connectionId")
        return self._apply_room_list(frame)

    def _apply_room_list(self, frame: Dict[str, Any]) -> bool:
        rooms = list(frame.get("rooms") or [])
        if rooms == self.rooms:
            return False
        self.rooms = rooms
        return True

    def _apply_room_created(self, frame: Dict[str, Any]) -> bool:
        room = frame.get("room")
        if not room or room in self.rooms:
            return False
        self.rooms.append(room)
        return True

    def _apply_membership(self, frame: Dict[str, Any]) -> bool:
        room = frame.get("room")
        if room is None:
            return False
        users = list(frame.get("users") or [])
        changed = self.room_users.get(room) != users
        self.room_users[room] = users
        if frame.get("type") == "room_users" and self.room is None:
            # Joined without naming a room; the server placed us in its default
            self.room = room
            changed = True
        return changed

    def _apply_room_changed(self, frame: Dict[str, Any]) -> bool:
        self._room_before_change = None
        room = frame.get("room")
        if not room or room == self.room:
            return False
        self.room = room
        return True

    def _apply_message(self, frame: Dict[str, Any]) -> bool:
        message = {k: v for k, v in frame.items() if k != "type"}
        key = message.get("room")
        if not key:
            return False
        return self.history(key).merge(message)

    def _apply_typing(self, frame: Dict[str, Any]) -> bool:
        room = frame.get("room")
        if room is None:
            return False
        users = list(frame.get("users") or [])
        changed = self.typing.get(room, []) != users
        if users:
            self.typing[room] = users
        else:
            self.typing.pop(room, None)
        return changed

    def _apply_reactions(self, frame: Dict[str, Any]) -> bool:
        message = self.find_message(frame.get("messageId", ""), frame.get("room"))
        if message is None:
            return False
        reactions = {emoji: list(users) for emoji, users in (frame.get("reactions") or {}).items()}
        changed = message.get("reactions") != reactions
        message["reactions"] = reactions
        return changed

    def _apply_read_receipt(self, frame: Dict[str, Any]) -> bool:
        message = self.find_message(frame.get("messageId", ""), frame.get("room"))
        if message is None:
            return False
        read_by = list(frame.get("readBy") or [])
        changed = message.get("readBy") != read_by
        message["readBy"] = read_by
        return changed

    def _apply_all_read(self, frame: Dict[str, Any]) -> bool:
        room, username = frame.get("room"), frame.get("username")
        if room not in self.histories or not username:
            return False
        changed = False
        for message in self.histories[room].messages():
            if username not in message["readBy"]:
                message["readBy"].append(username)
                changed = True
        return changed

    def _apply_page(self, frame: Dict[str, Any]) -> bool:
        room = frame.get("room")
        if not room:
            return False
        added = self.merge_page(room, frame.get("messages") or [], bool(frame.get("hasMore")), frame.get("page"))
        return added > 0

    def _apply_error(self, frame: Dict[str, Any]) -> bool:
        self.last_error = frame.get("error")
        self.errors.append(dict(frame))
        if frame.get("event") == "change_room" and self._room_before_change is not None:
            logger.info(f"[Client] change_room to {self.room} rejected; back in {self._room_before_change}")
            self.room = self._room_before_change
            self._room_before_change = None
        logger.info(f"[Client] Server reported {frame.get('type')}: {frame.get('code')}: {self.last_error}")
        return True
