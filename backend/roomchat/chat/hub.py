"""Chat hub: the event subscription table between transport and core.

Each inbound frame ``{"type": <event>, ...payload}`` is parsed into its
pydantic payload model and dispatched to the router or presence tracker.
The handler table is built once per hub. Failures are answered with a
typed error frame to the originating connection only; nothing raised by a
single frame escapes into the socket loop.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from roomchat.config import AppSettings, get_config

from .errors import ChatError, InvalidMessage
from .presence import PresenceTracker
from .registry import ConnectionRegistry
from .rooms import RoomDirectory
from .routing import MessageRouter
from .schemas import (
    ChangeRoomInput,
    CreateRoomInput,
    FileMessageInput,
    LoadMoreInput,
    MarkAllReadInput,
    PrivateMessageInput,
    ReactionInput,
    ReadReceiptInput,
    SendMessageInput,
    TypingInput,
    UserJoinInput,
)
from .store import MessageStore

logger = logging.getLogger(__name__)

Handler = Callable[[str, Any], Awaitable[Any]]

# Inbound event -> outbound error event; everything else uses "error"
ERROR_EVENTS = {
    "private_message": "private_message_error",
    "add_reaction": "reaction_error",
    "remove_reaction": "reaction_error",
}


class ChatHub:
    """Wires registry, rooms, store, router and tracker around one emitter.

    Args:
        emitter: Outbound sink (``ConnectionManager`` in production).
        settings: Application settings; defaults to ``get_config()``.
    """

    def __init__(self, emitter, settings: Optional[AppSettings] = None) -> None:
        self.emitter = emitter
        self.settings = settings or get_config()
        self.reset()
        self._handlers: Dict[str, Tuple[Type[BaseModel], Handler]] = {
            "user_join": (UserJoinInput, self._on_user_join),
            "change_room": (ChangeRoomInput, self._on_change_room),
            "send_message": (SendMessageInput, self._on_send_message),
            "send_file_message": (FileMessageInput, self._on_send_file_message),
            "private_message": (PrivateMessageInput, self._on_private_message),
            "typing": (TypingInput, self._on_typing),
            "stop_typing": (TypingInput, self._on_stop_typing),
            "add_reaction": (ReactionInput, self._on_add_reaction),
            "remove_reaction": (ReactionInput, self._on_remove_reaction),
            "mark_message_read": (ReadReceiptInput, self._on_mark_read),
            "mark_all_read": (MarkAllReadInput, self._on_mark_all_read),
            "create_room": (CreateRoomInput, self._on_create_room),
            "load_more_messages": (LoadMoreInput, self._on_load_more),
        }

    def reset(self) -> None:
        """Drop all sessions, rooms and history (fresh process state)."""
        rooms_cfg = self.settings.rooms
        self.registry = ConnectionRegistry(default_room=rooms_cfg.default_room)
        self.rooms = RoomDirectory(
            self.registry,
            seed_rooms=rooms_cfg.seed_rooms,
            max_name_length=rooms_cfg.max_room_name_length,
        )
        self.store = MessageStore(max_history_per_room=rooms_cfg.max_history_per_room)
        self.router = MessageRouter(
            self.registry,
            self.rooms,
            self.store,
            self.emitter,
            max_file_bytes=self.settings.uploads.max_bytes,
            default_page_size=rooms_cfg.default_page_size,
            max_page_size=rooms_cfg.max_page_size,
        )
        self.presence = PresenceTracker(self.registry, self.rooms, self.router, self.emitter)

    @property
    def events(self) -> Tuple[str, ...]:
        return tuple(self._handlers)

    # =========================================================================
    # Transport lifecycle
    # =========================================================================

    async def connect(self, connection_id: str) -> None:
        """Greet a fresh connection with its id and the room list."""
        await self.emitter.send(
            connection_id,
            {
                "type": "connected",
                "connectionId": connection_id,
                "rooms": self.rooms.list_rooms(),
            },
        )

    async def disconnect(self, connection_id: str) -> None:
        """Run session cleanup for a closed connection; safe to call twice."""
        await self.presence.disconnect(connection_id)

    async def handle(self, connection_id: str, data: Dict[str, Any]) -> None:
        """Dispatch one inbound frame. Never raises for bad input."""
        event = data.get("type") if isinstance(data, dict) else None
        entry = self._handlers.get(event) if isinstance(event, str) else None
        if entry is None:
            await self._send_error(
                connection_id, event, InvalidMessage(f"Unknown event type: {event}")
            )
            return

        model, handler = entry
        try:
            payload = model.model_validate(data)
            await handler(connection_id, payload)
        except ValidationError as exc:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
            logger.debug(f"[Hub] Invalid {event} payload from {connection_id}: {fields}")
            await self._send_error(
                connection_id, event,
                InvalidMessage(f"Invalid {event} payload", fields=fields),
            )
        except ChatError as exc:
            logger.info(f"[Hub] {event} from {connection_id} rejected: {exc.code}: {exc.message}")
            await self._send_error(connection_id, event, exc)
        except Exception:
            logger.exception(f"[Hub] Unhandled error while processing {event} from {connection_id}")
            await self._send_error(
                connection_id, event, ChatError("Internal error while processing event")
            )

    async def _send_error(self, connection_id: str, event: Optional[str], exc: ChatError) -> None:
        frame = {"type": ERROR_EVENTS.get(event or "", "error"), **exc.to_payload(event)}
        await self.emitter.send(connection_id, frame)

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _on_user_join(self, cid: str, payload: UserJoinInput) -> None:
        await self.presence.join(cid, payload.username, payload.room)

    async def _on_change_room(self, cid: str, payload: ChangeRoomInput) -> None:
        await self.presence.change_room(cid, payload.room)

    async def _on_send_message(self, cid: str, payload: SendMessageInput) -> None:
        await self.router.route_broadcast(cid, payload)

    async def _on_send_file_message(self, cid: str, payload: FileMessageInput) -> None:
        await self.router.route_file(cid, payload)

    async def _on_private_message(self, cid: str, payload: PrivateMessageInput) -> None:
        await self.router.route_private(cid, payload)

    async def _on_typing(self, cid: str, payload: TypingInput) -> None:
        await self.presence.start_typing(cid, payload.room)

    async def _on_stop_typing(self, cid: str, payload: TypingInput) -> None:
        await self.presence.stop_typing(cid, payload.room)

    async def _on_add_reaction(self, cid: str, payload: ReactionInput) -> None:
        session = self.router.require_session(cid)
        await self.router.route_reaction(payload.messageId, payload.emoji, session.username)

    async def _on_remove_reaction(self, cid: str, payload: ReactionInput) -> None:
        session = self.router.require_session(cid)
        await self.router.remove_reaction(payload.messageId, payload.emoji, session.username)

    async def _on_mark_read(self, cid: str, payload: ReadReceiptInput) -> None:
        session = self.router.require_session(cid)
        await self.router.route_read_receipt(payload.messageId, session.username)

    async def _on_mark_all_read(self, cid: str, payload: MarkAllReadInput) -> None:
        session = self.router.require_session(cid)
        await self.router.mark_all_read(payload.room or session.current_room, session.username)

    async def _on_create_room(self, cid: str, payload: CreateRoomInput) -> None:
        room = self.rooms.create_room(payload.roomName)
        extra = [] if cid in self.registry else [cid]
        await self.presence.room_created(room, extra)

    async def _on_load_more(self, cid: str, payload: LoadMoreInput) -> None:
        room = payload.room
        if not room:
            room = self.router.require_session(cid).current_room
        await self.router.load_more(cid, room, payload.page, payload.limit)
