"""Room directory: known room names plus live, derived membership."""
import logging
from typing import Dict, Iterable, List

from .errors import DuplicateRoom, InvalidMessage
from .registry import ConnectionRegistry
from .schemas import CONVERSATION_PREFIX

logger = logging.getLogger(__name__)


class RoomDirectory:
    """Set of room names in creation order.

    Membership and counts are read from the registry on every call and are
    never cached.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        seed_rooms: Iterable[str] = (),
        max_name_length: int = 64,
    ) -> None:
        self.registry = registry
        self.max_name_length = max_name_length
        # dict keeps insertion order and gives O(1) membership
        self._rooms: Dict[str, None] = {}
        for name in seed_rooms:
            self._rooms.setdefault(self.normalize(name), None)

    def normalize(self, name: object) -> str:
        """Validate and strip a room name.

        Raises:
            InvalidMessage: name is not a non-empty string within the length
                limit, or uses the private conversation prefix.
        """
        if not isinstance(name, str) or not name.strip():
            raise InvalidMessage("Room name is required")
        name = name.strip()
        if len(name) > self.max_name_length:
            raise InvalidMessage(
                f"Room name exceeds {self.max_name_length} characters"
            )
        if name.startswith(CONVERSATION_PREFIX):
            raise InvalidMessage(
                f"Room names may not start with '{CONVERSATION_PREFIX}'", room=name
            )
        return name

    def create_room(self, name: str) -> str:
        """Add a new room.

        Raises:
            DuplicateRoom: a room with this name already exists.
        """
        name = self.normalize(name)
        if name in self._rooms:
            raise DuplicateRoom(f"Room '{name}' already exists", room=name)
        self._rooms[name] = None
        logger.info(f"[Rooms] Created room {name}")
        return name

    def ensure(self, name: str) -> bool:
        """Add ``name`` if unknown. Returns True when the room was new."""
        name = self.normalize(name)
        if name in self._rooms:
            return False
        self._rooms[name] = None
        logger.info(f"[Rooms] Room {name} created implicitly by a join")
        return True

    def list_rooms(self) -> List[str]:
        return list(self._rooms)

    def members(self, room: str) -> List[str]:
        return list(self.registry.users_in_room(room))

    def member_count(self, room: str) -> int:
        return sum(1 for _ in self.registry.users_in_room(room))

    def summary(self) -> List[dict]:
        """Room names with their live member counts."""
        return [{"name": name, "users": self.member_count(name)} for name in self._rooms]

    def __contains__(self, name: object) -> bool:
        return name in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)
