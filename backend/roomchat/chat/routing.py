"""Message router: validates inbound messages and fans them out.

Audiences are computed from the connection registry at delivery time, so a
user who left the room before the send does not receive it. Each recipient
connection gets at most one copy per event.

Delivery rules:
    - room messages (text, file, system): every connection in the room
    - private messages: the recipient plus an echo to the sender
    - reaction / read-receipt updates: the audience of the target message
"""
import base64
import binascii
import logging
from typing import List, Optional

from .errors import InvalidMessage, UnknownRecipient, UploadTooLarge
from .registry import ConnectionRegistry, Session
from .rooms import RoomDirectory
from .schemas import (
    ChatMessage,
    FileAttachment,
    FileMessageInput,
    MessageType,
    PrivateMessageInput,
    SYSTEM_SENDER,
    SendMessageInput,
    conversation_key,
    is_conversation_key,
    is_conversation_member,
    new_message_id,
    utc_now_iso,
)
from .store import MessageStore

logger = logging.getLogger(__name__)

# Upper bound enforced before fan-out; the upload endpoint applies the same limit
MAX_FILE_BYTES = 10 * 1024 * 1024


def inline_data_size(data: str) -> int:
    """Decoded size in bytes of inline file data (data URL or raw base64).

    Falls back to the raw string length when the payload is not base64.
    """
    encoded = data.split(",", 1)[1] if data.startswith("data:") and "," in data else data
    try:
        return len(base64.b64decode(encoded, validate=True))
    except (binascii.Error, ValueError):
        return len(encoded.encode("utf-8"))


class MessageRouter:
    """Dispatches broadcast, file, private, reaction and read-receipt events.

    Args:
        registry: Live sessions; the only source of audiences.
        rooms: Room directory used to validate room names.
        store: Volatile transcript used for dedup and reaction lookup.
        emitter: Object with ``send(connection_id, message)`` and
            ``broadcast(message, connection_ids)`` coroutines.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        rooms: RoomDirectory,
        store: MessageStore,
        emitter,
        *,
        max_file_bytes: int = MAX_FILE_BYTES,
        default_page_size: int = 20,
        max_page_size: int = 100,
    ) -> None:
        self.registry = registry
        self.rooms = rooms
        self.store = store
        self.emitter = emitter
        self.max_file_bytes = max_file_bytes
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    # =========================================================================
    # Helpers
    # =========================================================================

    def require_session(self, connection_id: str) -> Session:
        session = self.registry.get(connection_id)
        if session is None:
            raise InvalidMessage("Connection is not registered; send user_join first")
        return session

    def audience(self, message: ChatMessage) -> List[str]:
        """Connection ids that should see ``message`` and updates to it."""
        if message.is_private:
            participants = [message.sender, message.to or ""]
            found = (self.registry.find_connection_by_username(u) for u in participants)
            return list(dict.fromkeys(cid for cid in found if cid))
        return list(self.registry.connections_in_room(message.room))

    def conversation_connections(self, key: str) -> List[str]:
        return [
            s.connection_id for s in self.registry.sessions()
            if is_conversation_member(key, s.username)
        ]

    def _check_participant(self, message: ChatMessage, username: str) -> None:
        if message.is_private and username not in (message.sender, message.to):
            raise InvalidMessage(
                "Only conversation participants can update a private message",
                messageId=message.id,
            )

    def history_key(self, room: str, username: Optional[str]) -> str:
        """Resolve a room name or private conversation key the caller may read.

        Raises:
            InvalidMessage: bad room name, or a conversation key that does not
                include ``username``.
        """
        if isinstance(room, str) and is_conversation_key(room.strip()):
            key = room.strip()
            if not username or not is_conversation_member(key, username):
                raise InvalidMessage("Not a participant of this conversation", room=key)
            return key
        return self.rooms.normalize(room)

    async def _fan_out(self, event: str, message: ChatMessage) -> int:
        targets = self.audience(message)
        await self.emitter.broadcast({"type": event, **message.to_wire()}, targets)
        return len(targets)

    # =========================================================================
    # Room messages
    # =========================================================================

    async def route_broadcast(
        self, connection_id: str, payload: SendMessageInput
    ) -> Optional[ChatMessage]:
        """Store and deliver a text message to everyone in ``payload.room``.

        Returns:
            The stored message, or None for a duplicate (retried) send.

        Raises:
            InvalidMessage: sender unregistered, room or text missing.
        """
        session = self.require_session(connection_id)
        if not payload.room or not payload.room.strip():
            raise InvalidMessage("Invalid message format: room is required")
        if not payload.text or not payload.text.strip():
            raise InvalidMessage("Invalid message format: text is required")

        message = ChatMessage(
            kind=MessageType.MESSAGE,
            room=self.rooms.normalize(payload.room),
            sender=session.username,
            text=payload.text,
            timestamp=payload.timestamp or utc_now_iso(),
            id=payload.id or new_message_id(),
        )
        return await self._deliver_room_message(message)

    async def route_file(
        self, connection_id: str, payload: FileMessageInput
    ) -> Optional[ChatMessage]:
        """Deliver a file message with the same fan-out rule as text.

        Raises:
            InvalidMessage: sender unregistered, room or file name missing.
            UploadTooLarge: declared or inline size above the ceiling.
        """
        session = self.require_session(connection_id)
        if not payload.room or not payload.room.strip():
            raise InvalidMessage("Invalid file message: room is required")
        if not payload.name.strip():
            raise InvalidMessage("Invalid file message: name is required")

        size = max(payload.size, inline_data_size(payload.data))
        if size > self.max_file_bytes:
            raise UploadTooLarge(
                f"File exceeds the {self.max_file_bytes} byte limit",
                size=size,
                limit=self.max_file_bytes,
            )

        message = ChatMessage(
            kind=MessageType.FILE,
            room=self.rooms.normalize(payload.room),
            sender=session.username,
            text=payload.text or f"Shared file: {payload.name}",
            timestamp=payload.timestamp or utc_now_iso(),
            file=FileAttachment(
                name=payload.name, type=payload.mimeType, size=size, data=payload.data
            ),
            id=payload.id or new_message_id(),
        )
        return await self._deliver_room_message(message)

    async def announce(self, room: str, text: str) -> ChatMessage:
        """Append a System message to ``room`` and deliver it."""
        message = ChatMessage(kind=MessageType.SYSTEM, room=room, sender=SYSTEM_SENDER, text=text)
        return await self._deliver_room_message(message)

    async def _deliver_room_message(self, message: ChatMessage) -> Optional[ChatMessage]:
        stored = self.store.add_message(message)
        if stored is None:
            return None
        count = await self._fan_out("receive_message", stored)
        logger.info(
            f"[Router] {stored.kind.value} {stored.id} from {stored.sender} "
            f"in {stored.room} delivered to {count} connections"
        )
        return stored

    # =========================================================================
    # Private messages
    # =========================================================================

    async def route_private(
        self, connection_id: str, payload: PrivateMessageInput
    ) -> Optional[ChatMessage]:
        """Deliver a private message to its recipient and echo it to the sender.

        Raises:
            InvalidMessage: sender unregistered, recipient or text missing.
            UnknownRecipient: no connected session carries ``payload.to``.
        """
        session = self.require_session(connection_id)
        to = payload.to.strip()
        if not to:
            raise InvalidMessage("Invalid private message: recipient is required")
        if not payload.text or not payload.text.strip():
            raise InvalidMessage("Invalid private message: text is required")

        recipient = self.registry.find_connection_by_username(to)
        if recipient is None:
            raise UnknownRecipient(f"User '{to}' is not connected", to=to)

        message = ChatMessage(
            kind=MessageType.PRIVATE,
            room=conversation_key(session.username, to),
            sender=session.username,
            to=to,
            text=payload.text,
            timestamp=payload.timestamp or utc_now_iso(),
            id=payload.id or new_message_id(),
        )
        stored = self.store.add_message(message)
        if stored is None:
            return None

        targets = list(dict.fromkeys([recipient, connection_id]))
        await self.emitter.broadcast({"type": "private_message", **stored.to_wire()}, targets)
        logger.info(f"[Router] Private message {stored.id} {stored.sender} -> {to}")
        return stored

    # =========================================================================
    # Reactions and read receipts (full-set sync)
    # =========================================================================

    async def route_reaction(self, message_id: str, emoji: str, username: str) -> ChatMessage:
        """Add ``username`` to ``reactions[emoji]``; idempotent.

        Raises:
            MessageNotFound: the message is not held by the server.
        """
        emoji = self._require_emoji(emoji)
        message = self.store.require(message_id)
        self._check_participant(message, username)
        message, changed = self.store.add_reaction(message_id, emoji, username)
        if changed:
            await self._sync_reactions(message)
        return message

    async def remove_reaction(self, message_id: str, emoji: str, username: str) -> ChatMessage:
        """Remove ``username`` from ``reactions[emoji]``; idempotent."""
        emoji = self._require_emoji(emoji)
        message = self.store.require(message_id)
        self._check_participant(message, username)
        message, changed = self.store.remove_reaction(message_id, emoji, username)
        if changed:
            await self._sync_reactions(message)
        return message

    async def route_read_receipt(self, message_id: str, username: str) -> ChatMessage:
        """Add ``username`` to the message's readBy set and resync it."""
        message = self.store.require(message_id)
        self._check_participant(message, username)
        message, changed = self.store.mark_read(message_id, username)
        if changed:
            await self.emitter.broadcast(
                {
                    "type": "read_receipt_updated",
                    "messageId": message.id,
                    "room": message.room,
                    "readBy": list(message.readBy),
                },
                self.audience(message),
            )
        return message

    async def mark_all_read(self, room: str, username: str) -> int:
        """Mark every message in ``room`` (or a conversation of the reader) read.

        Returns:
            Number of messages that changed.
        """
        room = self.history_key(room, username)
        changed = self.store.mark_all_read(room, username)
        if changed:
            if is_conversation_key(room):
                targets = self.conversation_connections(room)
            else:
                targets = list(self.registry.connections_in_room(room))
            await self.emitter.broadcast(
                {"type": "all_messages_read", "room": room, "username": username},
                targets,
            )
        return changed

    async def _sync_reactions(self, message: ChatMessage) -> None:
        await self.emitter.broadcast(
            {
                "type": "reaction_updated",
                "messageId": message.id,
                "room": message.room,
                "reactions": {emoji: list(users) for emoji, users in message.reactions.items()},
            },
            self.audience(message),
        )

    @staticmethod
    def _require_emoji(emoji: str) -> str:
        if not emoji or not emoji.strip():
            raise InvalidMessage("Reaction emoji is required")
        return emoji.strip()

    # =========================================================================
    # History
    # =========================================================================

    async def load_more(
        self, connection_id: str, room: str, page: int = 1, limit: Optional[int] = None
    ) -> dict:
        """Send one page of ``room`` history to the requesting connection only.

        A private conversation key is served only to its participants.
        """
        session = self.registry.get(connection_id)
        room = self.history_key(room, session.username if session else None)
        limit = min(limit or self.default_page_size, self.max_page_size)
        messages, has_more, total = self.store.get_page(room, page, limit)
        response = {
            "type": "more_messages_loaded",
            "room": room,
            "page": page,
            "limit": limit,
            "total": total,
            "hasMore": has_more,
            "messages": [m.to_wire() for m in messages],
        }
        await self.emitter.send(connection_id, response)
        return response
