"""Asyncio chat client.

``ChatClient`` owns the WebSocket (``websockets``) and HTTP (``httpx``)
transports and feeds every server frame through ``ClientState``. Listeners
registered with ``on()`` live in a single table for the client's lifetime;
reconnects reuse it and ``close()`` tears it down.

Example:
    client = ChatClient("http://localhost:5000")
    client.on("receive_message", lambda frame: print(frame["text"]))
    await client.join("alice", "nairobi")
    runner = asyncio.create_task(client.run())
"""
import inspect
import json
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx
import websockets

from roomchat.chat.errors import TransportError, UploadTooLarge
from roomchat.chat.schemas import conversation_key, new_message_id
from roomchat.config import get_config

from .state import ClientState, ConnectionStatus
from .typing import TypingDebouncer

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], Any]

# Listener key that receives every frame
ANY_EVENT = "*"


def websocket_url(base_url: str) -> str:
    """``http://host:port`` -> ``ws://host:port/ws`` (https -> wss)."""
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/ws"


class ChatClient:
    """Chat client with reconnect-and-replay.

    Args:
        base_url: Server HTTP root, e.g. ``http://localhost:5000``.
        history_window: Display window per transcript (config default 50).
        typing_delay: Typing debounce in seconds (config default 1.0).
        http_client: Optional ``httpx.AsyncClient``; one is created otherwise.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:5000",
        *,
        history_window: Optional[int] = None,
        typing_delay: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        client_cfg = get_config().client
        self.base_url = base_url.rstrip("/")
        self.ws_url = websocket_url(self.base_url)
        self.state = ClientState(history_window or client_cfg.history_window)
        self.typing = TypingDebouncer(
            self.send,
            typing_delay if typing_delay is not None else client_cfg.typing_debounce_s,
        )
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url)
        self._listeners: Dict[str, List[Listener]] = {}
        self._ws = None
        self._closing = False

    @property
    def status(self) -> ConnectionStatus:
        return self.state.status

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def on(self, event: str, listener: Listener) -> None:
        """Register ``listener`` for ``event`` (``"*"`` for every frame)."""
        listeners = self._listeners.setdefault(event, [])
        if listener not in listeners:
            listeners.append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    async def dispatch(self, frame: Dict[str, Any]) -> None:
        """Merge a server frame into state, then notify listeners."""
        self.state.apply(frame)
        event = frame.get("type", "")
        for listener in [*self._listeners.get(event, []), *self._listeners.get(ANY_EVENT, [])]:
            try:
                result = listener(frame)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"[Client] Listener for {event} failed")

    # =========================================================================
    # Transport
    # =========================================================================

    async def run(self) -> None:
        """Connect, replay the join, and pump frames until ``close()``.

        ``websockets.connect`` used as an async iterator reconnects with
        exponential backoff; each new connection is a fresh server session,
        so the last username and room are replayed.
        """
        self._closing = False
        self.state.connecting()
        attempt = 0
        async for ws in websockets.connect(self.ws_url):
            self._ws = ws
            try:
                for frame in self.state.on_connect():
                    await ws.send(json.dumps(frame))
                async for raw in ws:
                    await self._receive(raw)
                reason = "closed"
            except websockets.ConnectionClosed as exc:
                reason = str(exc)
            finally:
                self._ws = None
                self.typing.cancel()

            if self._closing:
                break
            attempt += 1
            self.state.on_disconnect(reason, will_reconnect=True)
            self.state.on_reconnect_attempt(attempt)
            logger.info(f"[Client] Reconnect attempt {attempt} to {self.ws_url}")
        self.state.close()

    async def _receive(self, raw: Any) -> None:
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError) as exc:
            self.state.on_error(exc)
            return
        if isinstance(frame, dict):
            await self.dispatch(frame)

    async def send(self, frame: Dict[str, Any]) -> None:
        """Send one frame.

        Raises:
            TransportError: not connected.
        """
        if self._ws is None:
            raise TransportError("Not connected", event=frame.get("type"))
        await self._ws.send(json.dumps(frame))

    async def close(self) -> None:
        """Close both transports and drop every listener."""
        self._closing = True
        self.typing.cancel()
        self._listeners.clear()
        if self._ws is not None:
            await self._ws.close()
        if self._owns_http:
            await self._http.aclose()
        self.state.close()

    # =========================================================================
    # Chat operations
    # =========================================================================

    async def join(self, username: str, room: Optional[str] = None) -> None:
        """Set the identity; sent now if connected, otherwise on connect."""
        frame = self.state.register(username, room)
        if self._ws is not None:
            await self.send(frame)

    async def change_room(self, room: str) -> None:
        self.typing.cancel()
        await self.send(self.state.change_room(room))

    async def send_message(self, text: str, room: Optional[str] = None) -> str:
        """Broadcast ``text``; returns the client-assigned message id.

        Resending with the same id after a reconnect is deduplicated server-side.
        """
        message_id = new_message_id()
        self.typing.stop()
        await self.send({
            "type": "send_message",
            "id": message_id,
            "room": room or self.state.room,
            "text": text,
        })
        return message_id

    async def send_file(
        self, name: str, mime_type: str, data: str, size: int,
        text: str = "", room: Optional[str] = None,
    ) -> str:
        message_id = new_message_id()
        await self.send({
            "type": "send_file_message",
            "id": message_id,
            "room": room or self.state.room,
            "name": name,
            "mimeType": mime_type,
            "size": size,
            "data": data,
            "text": text,
        })
        return message_id

    async def private_message(self, to: str, text: str) -> str:
        message_id = new_message_id()
        await self.send({"type": "private_message", "id": message_id, "to": to, "text": text})
        return message_id

    def keystroke(self, room: Optional[str] = None) -> None:
        self.typing.keystroke(room or self.state.room)

    async def add_reaction(self, message_id: str, emoji: str) -> None:
        await self.send({"type": "add_reaction", "messageId": message_id, "emoji": emoji})

    async def remove_reaction(self, message_id: str, emoji: str) -> None:
        await self.send({"type": "remove_reaction", "messageId": message_id, "emoji": emoji})

    async def mark_read(self, message_id: str) -> None:
        await self.send({"type": "mark_message_read", "messageId": message_id})

    async def mark_all_read(self, room: Optional[str] = None) -> None:
        await self.send({"type": "mark_all_read", "room": room or self.state.room})

    async def create_room(self, name: str) -> None:
        await self.send({"type": "create_room", "roomName": name})

    # =========================================================================
    # HTTP
    # =========================================================================

    async def list_rooms(self) -> List[Dict[str, Any]]:
        resp = await self._http.get("/rooms")
        resp.raise_for_status()
        return resp.json()["rooms"]

    async def load_more_messages(
        self, room: Optional[str] = None, page: Optional[int] = None, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Fetch the next older page of ``room`` and merge it into state.

        Returns:
            The messages on the fetched page (oldest first).
        """
        room = room or self.state.room
        if not room:
            raise TransportError("No room selected")
        history = self.state.history(room)
        page = page or history.furthest_page + 1
        params: Dict[str, Any] = {"page": page}
        if limit:
            params["limit"] = limit

        resp = await self._http.get(f"/messages/{room}", params=params)
        resp.raise_for_status()
        data = resp.json()
        self.state.merge_page(room, data["messages"], data["hasMore"], page)
        logger.debug(f"[Client] Loaded page {page} of {room}: {len(data['messages'])} messages")
        return data["messages"]

    async def load_conversation(
        self, other: str, page: Optional[int] = None, limit: Optional[int] = None
    ) -> None:
        """Request an older page of the private conversation with ``other``.

        Conversations are only paged over the socket; the answer arrives as
        ``more_messages_loaded`` and is merged by ``dispatch``.
        """
        history = self.state.conversation(other)
        frame: Dict[str, Any] = {
            "type": "load_more_messages",
            "room": conversation_key(self.state.username or "", other),
            "page": page or history.furthest_page + 1,
        }
        if limit:
            frame["limit"] = limit
        await self.send(frame)

    async def upload_file(self, name: str, content: bytes, mime_type: str) -> Dict[str, Any]:
        """Upload ``content``; returns ``{name, type, size, data, category}``.

        Raises:
            UploadTooLarge: the server rejected the size (HTTP 413).
        """
        resp = await self._http.post("/upload", files={"file": (name, content, mime_type)})
        if resp.status_code == 413:
            detail = resp.json().get("detail") or {}
            raise UploadTooLarge(detail.get("error", "File too large"), limit=detail.get("limit"))
        resp.raise_for_status()
        return resp.json()

    async def share_file(
        self, name: str, content: bytes, mime_type: str, room: Optional[str] = None
    ) -> str:
        """Upload a file and post it to ``room`` as a file message."""
        uploaded = await self.upload_file(name, content, mime_type)
        return await self.send_file(
            uploaded["name"], uploaded["type"], uploaded["data"], uploaded["size"], room=room
        )

