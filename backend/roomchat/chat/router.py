"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - GET /rooms: Known rooms with live member counts
    - GET /messages/{room}: Paginated message history
    - WebSocket /ws: Real-time chat event channel

The WebSocket protocol exchanges JSON frames ``{"type": <event>, ...}``:
    - user_join: register a username and enter a room
    - change_room: move to another room
    - send_message / send_file_message: broadcast to a room
    - private_message: direct message (echoed to the sender)
    - typing / stop_typing: typing indicator
    - add_reaction / remove_reaction: emoji reactions
    - mark_message_read / mark_all_read: read receipts
    - create_room: add a room
    - load_more_messages: history page over the socket
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .errors import InvalidMessage
from .hub import ChatHub
from .manager import ConnectionManager
from .schemas import is_conversation_key

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

# Global singletons shared by every WebSocket handler
manager = ConnectionManager()
hub = ChatHub(manager)


@router.get("/rooms")
async def list_rooms() -> JSONResponse:
    """List known rooms in creation order with their live member counts.

    Example:
        GET /rooms -> {"rooms": [{"name": "general", "users": 2}, ...]}
    """
    return JSONResponse({"rooms": hub.rooms.summary()})


@router.get("/messages/{room}")
async def get_message_history(
    room: str,
    page: int = Query(1, ge=1, description="Page number; 1 is the newest page"),
    limit: Optional[int] = Query(None, ge=1, description="Messages per page"),
) -> JSONResponse:
    """Get paginated message history for a room.

    Page 1 holds the newest messages. Every page is ordered oldest-first, so
    a client can prepend the page to what it already shows.

    Args:
        room: The room name.
        page: 1-based page number counted back from the newest message.
        limit: Page size (default and maximum come from config).

    Returns:
        JSON with room, page, limit, total, hasMore and messages.

    Raises:
        HTTPException: 403 for a private conversation key. The HTTP route
            carries no identity, so conversations are paged over the socket.

    Example:
        GET /messages/general?page=2&limit=20
    """
    if is_conversation_key(room.strip()):
        raise HTTPException(
            status_code=403,
            detail=InvalidMessage("Private conversations are not served over HTTP", room=room).to_payload(),
        )

    rooms_cfg = hub.settings.rooms
    limit = min(limit or rooms_cfg.default_page_size, rooms_cfg.max_page_size)
    messages, has_more, total = hub.store.get_page(room, page, limit)

    return JSONResponse({
        "room": room,
        "page": page,
        "limit": limit,
        "total": total,
        "hasMore": has_more,
        "messages": [msg.to_wire() for msg in messages],
    })


@router.websocket("/ws")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for the chat event channel.

    Protocol Flow:
        1. Client connects -> Server sends {type: "connected", connectionId, rooms}
        2. Client sends {type: "user_join", username, room?}
           -> joiner gets room_list and room_users
           -> room gets user_joined and a System receive_message
        3. Client sends events; each is handled to completion before the
           next frame is read
        4. On disconnect -> room gets user_left, typing_users (if the user
           was typing) and a System receive_message

    A reconnect is a fresh connection: the client must replay user_join.
    """
    connection_id = await manager.connect(websocket)

    try:
        await hub.connect(connection_id)

        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send(connection_id, {
                    "type": "error",
                    **InvalidMessage("Invalid message format: frame is not JSON").to_payload(),
                })
                continue

            logger.debug("[WS] %s received: type=%s", connection_id,
                         data.get("type", "?") if isinstance(data, dict) else "?")
            await hub.handle(connection_id, data)

    except WebSocketDisconnect:
        logger.info(f"[WS] Connection {connection_id} closed by client")
    finally:
        # Forget the socket first so cleanup broadcasts skip it
        manager.disconnect(connection_id)
        await hub.disconnect(connection_id)
        logger.info(
            f"[WS] Connection {connection_id} cleaned up; "
            f"{manager.get_connection_count()} connections remain"
        )
