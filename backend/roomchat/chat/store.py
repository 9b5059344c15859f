"""Volatile message transcript held in process memory.

Keeps per-conversation history (rooms and private conversations alike), the
id index used by reactions and read receipts, and a bounded LRU of seen
message ids for deduplicating retried sends. A process restart loses it all.
"""
import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from .errors import InvalidMessage, MessageNotFound
from .schemas import ChatMessage

logger = logging.getLogger(__name__)

# Maximum number of message IDs to track for deduplication, per conversation
MESSAGE_DEDUP_CACHE_SIZE = 10000


def _add_unique(items: List[str], value: str) -> bool:
    if value in items:
        return False
    items.append(value)
    return True


class MessageStore:
    """In-memory history with set semantics for reactions and read receipts."""

    def __init__(self, max_history_per_room: int = 1000) -> None:
        self.max_history_per_room = max_history_per_room

        # conversation key -> list of messages, oldest first
        self.message_history: Dict[str, List[ChatMessage]] = {}

        # message id -> message, for reaction / read receipt lookup
        self._by_id: Dict[str, ChatMessage] = {}

        # conversation key -> last assigned seq
        self._seq: Dict[str, int] = {}

        # conversation key -> OrderedDict of message IDs (LRU cache)
        self.seen_message_ids: Dict[str, OrderedDict] = {}

    # =========================================================================
    # Deduplication
    # =========================================================================

    def is_duplicate_message(self, room: str, message_id: str) -> bool:
        """Check if a message ID has been seen before, recording it if new."""
        if not message_id:
            return False

        cache = self.seen_message_ids.setdefault(room, OrderedDict())
        if message_id in cache:
            cache.move_to_end(message_id)
            return True

        cache[message_id] = True
        while len(cache) > MESSAGE_DEDUP_CACHE_SIZE:
            cache.popitem(last=False)
        return False

    # =========================================================================
    # History
    # =========================================================================

    def add_message(self, message: ChatMessage) -> Optional[ChatMessage]:
        """Append a message, assigning its ``seq``.

        Returns:
            The stored message, or None if its id was already accepted for
            this conversation (retried send).

        Raises:
            InvalidMessage: the id belongs to a message in another conversation.
        """
        # ids are unique store-wide; reactions and receipts look up by id alone
        held = self._by_id.get(message.id)
        if held is not None and held.room != message.room:
            raise InvalidMessage("Message id is already in use", messageId=message.id)
        if held is not None or self.is_duplicate_message(message.room, message.id):
            logger.debug(f"[Store] Duplicate message ignored: {message.id} in {message.room}")
            return None

        seq = self._seq.get(message.room, 0) + 1
        self._seq[message.room] = seq
        message.seq = seq

        history = self.message_history.setdefault(message.room, [])
        history.append(message)
        self._by_id[message.id] = message

        while len(history) > self.max_history_per_room:
            evicted = history.pop(0)
            if self._by_id.get(evicted.id) is evicted:
                del self._by_id[evicted.id]
        return message

    def get(self, message_id: str) -> Optional[ChatMessage]:
        return self._by_id.get(message_id)

    def require(self, message_id: str) -> ChatMessage:
        message = self._by_id.get(message_id)
        if message is None:
            raise MessageNotFound(f"Message {message_id} not found", messageId=message_id)
        return message

    def get_history(self, room: str) -> List[ChatMessage]:
        return self.message_history.get(room, [])

    def get_message_count(self, room: str) -> int:
        return len(self.message_history.get(room, []))

    def get_page(
        self, room: str, page: int = 1, limit: int = 20
    ) -> Tuple[List[ChatMessage], bool, int]:
        """Page through a room's history, newest page first.

        Page 1 holds the newest ``limit`` messages; every page is returned
        oldest-first so clients can prepend it as-is.

        Returns:
            (messages, has_more, total)
        """
        messages = self.message_history.get(room, [])
        total = len(messages)
        end = total - (page - 1) * limit
        if end <= 0:
            return [], False, total
        start = max(0, end - limit)
        return messages[start:end], start > 0, total

    # =========================================================================
    # Reactions and read receipts
    # =========================================================================

    def add_reaction(self, message_id: str, emoji: str, username: str) -> Tuple[ChatMessage, bool]:
        """Add ``username`` to ``reactions[emoji]``. Returns (message, changed)."""
        message = self.require(message_id)
        changed = _add_unique(message.reactions.setdefault(emoji, []), username)
        return message, changed

    def remove_reaction(self, message_id: str, emoji: str, username: str) -> Tuple[ChatMessage, bool]:
        """Remove ``username`` from ``reactions[emoji]``. Returns (message, changed)."""
        message = self.require(message_id)
        users = message.reactions.get(emoji)
        if not users or username not in users:
            return message, False
        users.remove(username)
        if not users:
            del message.reactions[emoji]
        return message, True

    def mark_read(self, message_id: str, username: str) -> Tuple[ChatMessage, bool]:
        """Add ``username`` to the message's readBy set. Returns (message, changed)."""
        message = self.require(message_id)
        return message, _add_unique(message.readBy, username)

    def mark_all_read(self, room: str, username: str) -> int:
        """Mark every message in ``room`` as read by ``username``.

        Returns:
            Number of messages whose readBy set changed.
        """
        return sum(
            1 for message in self.message_history.get(room, [])
            if _add_unique(message.readBy, username)
        )

