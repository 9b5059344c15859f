"""Tests for join / change_room / disconnect notifications and typing state."""
import pytest

from roomchat.chat.errors import InvalidMessage
from roomchat.chat.presence import normalize_username


def system_texts(chat, cid):
    return [f["text"] for f in chat.frames(cid, "receive_message") if f["sender"] == "System"]


class TestJoin:
    """Registration and the notifications it produces."""

    @pytest.mark.asyncio
    async def test_join_sequence_for_joiner(self, chat):
        """The joiner should get the room list, membership, the join notice and a System message."""
        await chat.join("c1", "alice", "nairobi")

        assert chat.types("c1") == [
            "connected", "room_list", "room_users", "user_joined", "receive_message",
        ]
        room_users = chat.frames("c1", "room_users")[0]
        assert room_users == {"type": "room_users", "room": "nairobi", "users": ["alice"]}
        assert system_texts(chat, "c1") == ["alice joined the chat"]

    @pytest.mark.asyncio
    async def test_join_notifies_only_that_room(self, chat):
        """Existing members of the room see user_joined; other rooms see nothing."""
        await chat.join("c1", "alice", "nairobi")
        await chat.join("c2", "carol", "mombasa")
        chat.clear()

        await chat.join("c3", "bob", "nairobi")

        [joined] = chat.frames("c1", "user_joined")
        assert joined == {
            "type": "user_joined", "username": "bob", "room": "nairobi", "users": ["alice", "bob"],
        }
        assert chat.frames("c2") == []

    @pytest.mark.asyncio
    async def test_join_without_room_uses_default(self, chat, hub):
        """Omitting the room should place the user in the default room."""
        await chat.join("c1", "alice")
        assert hub.registry.get("c1").current_room == "general"

    @pytest.mark.asyncio
    async def test_join_unknown_room_creates_it(self, chat, hub):
        """Joining a room nobody created yet should add it and announce room_created."""
        await chat.join("c1", "alice", "general")
        chat.clear()

        await chat.join("c2", "bob", "eldoret")

        assert "eldoret" in hub.rooms
        assert chat.frames("c1", "room_created") == [{"type": "room_created", "room": "eldoret"}]

    @pytest.mark.asyncio
    async def test_username_taken(self, chat, hub):
        """A second connection may not take a name that is in use."""
        await chat.join("c1", "alice", "general")
        await chat.join("c2", "alice", "general")

        [error] = chat.frames("c2", "error")
        assert error["code"] == "UsernameTaken"
        assert error["event"] == "user_join"
        assert "c2" not in hub.registry

    @pytest.mark.asyncio
    async def test_same_connection_replay_has_no_second_join(self, chat):
        """Replaying an identical user_join on the same connection changes nothing for others."""
        await chat.join("c1", "alice", "general")
        await chat.join("c2", "bob", "general")
        chat.clear()

        await chat.join("c2", "bob", "general")

        assert chat.frames("c1") == []
        assert chat.types("c2") == ["room_list", "room_users"]

    @pytest.mark.asyncio
    async def test_reconnect_replay_yields_single_join(self, chat):
        """Drop then rejoin on a new connection: one user_left, one user_joined, no duplicate."""
        await chat.join("c1", "alice", "general")
        await chat.join("c2", "bob", "general")
        chat.clear()

        await chat.drop("c2")
        await chat.join("c2b", "bob", "general")

        assert chat.types("c1") == [
            "user_left", "receive_message", "user_joined", "receive_message",
        ]
        assert system_texts(chat, "c1") == ["bob left the chat", "bob joined the chat"]
        assert chat.frames("c1", "user_joined")[0]["users"] == ["alice", "bob"]

    def test_normalize_username(self):
        """Usernames are stripped; empty or overlong names are rejected."""
        assert normalize_username("  alice ") == "alice"
        for bad in ("", "   ", None, "x" * 33, "a\nb"):
            with pytest.raises(InvalidMessage):
                normalize_username(bad)


class TestChangeRoom:
    """Moving between rooms notifies both rooms."""

    @pytest.mark.asyncio
    async def test_change_room_dual_broadcast(self, chat, hub):
        """The old room sees user_left without the mover; the new room sees user_joined."""
        await chat.join("c1", "alice", "nairobi")
        await chat.join("c2", "bob", "nairobi")
        await chat.join("c3", "carol", "kisumu")
        chat.clear()

        await chat.send("c2", {"type": "change_room", "room": "kisumu"})

        [left] = chat.frames("c1", "user_left")
        assert left["users"] == ["alice"]
        [joined] = chat.frames("c3", "user_joined")
        assert joined["users"] == ["bob", "carol"]
        [changed] = chat.frames("c2", "room_changed")
        assert changed == {"type": "room_changed", "room": "kisumu", "previousRoom": "nairobi"}
        assert system_texts(chat, "c3") == ["bob entered this room"]
        assert hub.registry.get("c2").current_room == "kisumu"

    @pytest.mark.asyncio
    async def test_change_to_current_room_is_noop(self, chat):
        """Changing to the room you are in only re-sends its membership."""
        await chat.join("c1", "alice", "nairobi")
        await chat.join("c2", "bob", "nairobi")
        chat.clear()

        await chat.send("c2", {"type": "change_room", "room": "nairobi"})

        assert chat.frames("c1") == []
        assert chat.types("c2") == ["room_users"]

    @pytest.mark.asyncio
    async def test_change_room_accepts_legacy_field(self, chat, hub):
        """change_room should accept the newRoom field name."""
        await chat.join("c1", "alice", "nairobi")
        await chat.send("c1", {"type": "change_room", "newRoom": "coastal"})
        assert hub.registry.get("c1").current_room == "coastal"


class TestDisconnect:
    """Disconnect removes the session before notifying its room."""

    @pytest.mark.asyncio
    async def test_departed_user_excluded_from_snapshot(self, chat, hub):
        """user_left should list the room without the departed user."""
        await chat.join("c1", "alice", "general")
        await chat.join("c2", "bob", "general")
        chat.clear()

        await chat.drop("c2")

        [left] = chat.frames("c1", "user_left")
        assert left == {"type": "user_left", "username": "bob", "room": "general", "users": ["alice"]}
        assert "c2" not in hub.registry

    @pytest.mark.asyncio
    async def test_disconnect_twice_is_harmless(self, chat):
        """A second disconnect for the same connection should do nothing."""
        await chat.join("c1", "alice", "general")
        await chat.join("c2", "bob", "general")
        await chat.drop("c2")
        chat.clear()

        await chat.drop("c2")

        assert chat.frames("c1") == []

    @pytest.mark.asyncio
    async def test_disconnect_unregistered_connection(self, chat):
        """Dropping a connection that never joined should notify nobody."""
        await chat.join("c1", "alice", "general")
        await chat.connect("c2")
        chat.clear()

        await chat.drop("c2")

        assert chat.frames("c1") == []


class TestTyping:
    """Typing sets are per room and never outlive the session."""

    @pytest.mark.asyncio
    async def test_typing_broadcast_once(self, chat):
        """Repeated typing events should broadcast the set once."""
        await chat.join("c1", "alice", "general")
        await chat.join("c2", "bob", "general")
        chat.clear()

        await chat.send("c1", {"type": "typing"})
        await chat.send("c1", {"type": "typing", "room": "general"})

        assert chat.frames("c2", "typing_users") == [
            {"type": "typing_users", "room": "general", "users": ["alice"]}
        ]

    @pytest.mark.asyncio
    async def test_stop_typing(self, chat, hub):
        """stop_typing should remove the user and rebroadcast."""
        await chat.join("c1", "alice", "general")
        await chat.join("c2", "bob", "general")
        await chat.send("c1", {"type": "typing"})
        chat.clear()

        await chat.send("c1", {"type": "stop_typing"})
        await chat.send("c1", {"type": "stop_typing"})

        assert [f["users"] for f in chat.frames("c2", "typing_users")] == [[]]
        assert hub.presence.typing == {}

    @pytest.mark.asyncio
    async def test_disconnect_purges_typing_and_membership(self, chat, hub):
        """A typing user who disconnects should vanish from typing and membership."""
        await chat.join("c1", "alice", "general")
        await chat.join("c2", "bob", "general")
        await chat.send("c1", {"type": "typing"})
        chat.clear()

        await chat.drop("c1")

        assert chat.types("c2") == ["typing_users", "user_left", "receive_message"]
        assert chat.frames("c2", "typing_users")[0]["users"] == []
        assert chat.frames("c2", "user_left")[0]["users"] == ["bob"]
        assert hub.presence.typing_users("general") == []
        assert hub.rooms.members("general") == ["bob"]

    @pytest.mark.asyncio
    async def test_change_room_clears_typing_in_old_room(self, chat, hub):
        """Moving rooms should clear the mover from the old room's typing set."""
        await chat.join("c1", "alice", "nairobi")
        await chat.join("c2", "bob", "nairobi")
        await chat.send("c1", {"type": "typing"})
        chat.clear()

        await chat.send("c1", {"type": "change_room", "room": "mombasa"})

        assert chat.frames("c2", "typing_users")[0]["users"] == []
        assert hub.presence.typing_users("nairobi") == []

    @pytest.mark.asyncio
    async def test_joiner_sees_current_typers(self, chat):
        """A new member should be told who is already typing."""
        await chat.join("c1", "alice", "general")
        await chat.send("c1", {"type": "typing"})

        await chat.join("c2", "bob", "general")

        assert chat.frames("c2", "typing_users") == [
            {"type": "typing_users", "room": "general", "users": ["alice"]}
        ]

    @pytest.mark.asyncio
    async def test_typing_in_other_room_rejected(self, chat, hub):
        """A user may only show as typing in the room they are in."""
        await chat.join("c1", "alice", "nairobi")
        await chat.join("c2", "bob", "mombasa")
        chat.clear()

        await chat.send("c1", {"type": "typing", "room": "mombasa"})

        [error] = chat.frames("c1", "error")
        assert error["code"] == "InvalidMessage"
        assert error["event"] == "typing"
        assert chat.frames("c2") == []
        assert hub.presence.typing == {}

    @pytest.mark.asyncio
    async def test_rename_clears_old_name_from_typing(self, chat, hub):
        """Re-joining under a new name should drop the old name from every typing set."""
        await chat.join("c1", "alice", "nairobi")
        await chat.join("c2", "bob", "nairobi")
        await chat.send("c1", {"type": "typing"})
        chat.clear()

        await chat.join("c1", "alicia", "mombasa")

        assert chat.frames("c2", "typing_users")[0]["users"] == []
        assert hub.presence.typing == {}

        await chat.drop("c1")
        assert hub.presence.typing_users("nairobi") == []
