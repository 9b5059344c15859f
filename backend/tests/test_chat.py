"""Tests for the chat WebSocket endpoint and HTTP history endpoints.

The endpoint assigns each socket a connection id on connect; identity is
bound only after the client sends user_join:
1. On connect, backend sends {type: "connected", connectionId, rooms}
2. user_join -> room_list, room_users, user_joined, System receive_message
3. Messages carry the backend-held username, never a client-supplied one
"""
from fastapi.testclient import TestClient

from roomchat.chat.router import hub
from roomchat.chat.schemas import ChatMessage
from roomchat.main import app


client = TestClient(app)


def receive_connected(ws):
    """Helper to receive and validate the connection greeting."""
    connected = ws.receive_json()
    assert connected["type"] == "connected"
    assert "connectionId" in connected
    assert "general" in connected["rooms"]
    return connected


def join(ws, username, room):
    """Send user_join and consume the joiner's four frames."""
    ws.send_json({"type": "user_join", "username": username, "room": room})
    frames = [ws.receive_json() for _ in range(4)]
    assert [f["type"] for f in frames] == [
        "room_list", "room_users", "user_joined", "receive_message",
    ]
    return frames


def test_websocket_join_and_message():
    """A single client can join a room and see its own message."""
    with client.websocket_connect("/ws") as ws:
        receive_connected(ws)
        frames = join(ws, "alice", "nairobi")
        assert frames[1]["users"] == ["alice"]
        assert frames[3]["text"] == "alice joined the chat"

        ws.send_json({"type": "send_message", "room": "nairobi", "text": "Hello"})
        data = ws.receive_json()

        assert data["type"] == "receive_message"
        assert data["sender"] == "alice"
        assert data["text"] == "Hello"
        assert data["room"] == "nairobi"
        assert "id" in data
        assert "timestamp" in data


def test_websocket_two_clients_same_room():
    """Two clients in the same room both receive each broadcast."""
    with client.websocket_connect("/ws") as ws1, \
         client.websocket_connect("/ws") as ws2:

        receive_connected(ws1)
        receive_connected(ws2)
        join(ws1, "alice", "general")
        join(ws2, "bob", "general")

        # alice sees bob arrive
        joined = ws1.receive_json()
        assert joined["type"] == "user_joined"
        assert joined["users"] == ["alice", "bob"]
        assert ws1.receive_json()["text"] == "bob joined the chat"

        ws2.send_json({"type": "send_message", "room": "general", "text": "Hi alice"})
        data1 = ws1.receive_json()
        data2 = ws2.receive_json()

        assert data1["type"] == "receive_message"
        assert data1["sender"] == "bob"
        assert data1 == data2


def test_websocket_rooms_are_isolated():
    """A message in one room must not reach a client in another room."""
    with client.websocket_connect("/ws") as ws1, \
         client.websocket_connect("/ws") as ws2:

        receive_connected(ws1)
        receive_connected(ws2)
        join(ws1, "alice", "nairobi")
        join(ws2, "bob", "mombasa")

        ws1.send_json({"type": "send_message", "room": "nairobi", "text": "nairobi only"})
        assert ws1.receive_json()["text"] == "nairobi only"

        # The next frame bob sees is his own message, not alice's
        ws2.send_json({"type": "send_message", "room": "mombasa", "text": "mombasa only"})
        data = ws2.receive_json()
        assert data["text"] == "mombasa only"
        assert data["sender"] == "bob"


def test_websocket_invalid_json():
    """Non-JSON frames get an InvalidMessage error and the socket stays open."""
    with client.websocket_connect("/ws") as ws:
        receive_connected(ws)
        ws.send_text("not json")

        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["code"] == "InvalidMessage"

        join(ws, "alice", "general")


def test_websocket_disconnect_notifies_room():
    """Closing a socket removes the user and tells the room."""
    with client.websocket_connect("/ws") as ws1:
        receive_connected(ws1)
        join(ws1, "alice", "general")

        with client.websocket_connect("/ws") as ws2:
            receive_connected(ws2)
            join(ws2, "bob", "general")
            ws1.receive_json()  # user_joined
            ws1.receive_json()  # bob joined the chat

        left = ws1.receive_json()
        assert left == {"type": "user_left", "username": "bob", "room": "general", "users": ["alice"]}
        assert ws1.receive_json()["text"] == "bob left the chat"


def test_rooms_endpoint():
    """GET /rooms lists seed rooms with live member counts."""
    response = client.get("/rooms")
    assert response.status_code == 200
    rooms = response.json()["rooms"]
    assert rooms[0] == {"name": "general", "users": 0}
    assert [r["name"] for r in rooms] == ["general", "nairobi", "mombasa", "kisumu", "coastal"]


def test_messages_endpoint_pagination():
    """GET /messages/{room} pages back from the newest message."""
    for i in range(25):
        hub.store.add_message(ChatMessage(room="general", sender="alice", text=f"m{i}"))

    response = client.get("/messages/general?page=1&limit=20")
    data = response.json()
    assert response.status_code == 200
    assert data["total"] == 25
    assert data["hasMore"] is True
    assert [m["text"] for m in data["messages"]] == [f"m{i}" for i in range(5, 25)]

    data = client.get("/messages/general", params={"page": 2, "limit": 20}).json()
    assert data["hasMore"] is False
    assert [m["text"] for m in data["messages"]] == [f"m{i}" for i in range(5)]


def test_messages_endpoint_clamps_limit():
    """limit above the configured maximum is clamped."""
    data = client.get("/messages/general", params={"limit": 10_000}).json()
    assert data["limit"] == hub.settings.rooms.max_page_size
    assert data["messages"] == []


def test_messages_endpoint_rejects_bad_page():
    """page must be at least 1."""
    response = client.get("/messages/general", params={"page": 0})
    assert response.status_code == 422


def test_messages_endpoint_refuses_private_conversations():
    """Conversation transcripts are never served over HTTP."""
    hub.store.add_message(ChatMessage(
        room="@alice:bob", sender="alice", to="bob", kind="private", text="secret",
    ))

    response = client.get("/messages/%40alice%3Abob")

    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "InvalidMessage"
    assert "secret" not in response.text


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
