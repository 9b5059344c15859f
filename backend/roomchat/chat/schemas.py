"""Pydantic schemas for chat messages and inbound event payloads.

Wire field names are camelCase to match the browser client. Outbound models
are serialised with ``model_dump(mode="json")``.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

SYSTEM_SENDER = "System"

# Private conversation keys start with this; room names may not
CONVERSATION_PREFIX = "@"


def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


def new_message_id() -> str:
    return str(uuid.uuid4())


def conversation_key(first: str, second: str) -> str:
    """Key of the conceptual room shared by two private-message participants.

    Unordered: ``conversation_key("bob", "alice") == conversation_key("alice", "bob")``.
    """
    a, b = sorted((first, second))
    return f"{CONVERSATION_PREFIX}{a}:{b}"


def is_conversation_key(key: str) -> bool:
    return key.startswith(CONVERSATION_PREFIX)


def is_conversation_member(key: str, username: str) -> bool:
    """True if ``username`` is one of the two participants of ``key``."""
    if not is_conversation_key(key):
        return False
    head = f"{CONVERSATION_PREFIX}{username}:"
    if key.startswith(head) and conversation_key(username, key[len(head):]) == key:
        return True
    tail = f":{username}"
    if key.endswith(tail):
        other = key[len(CONVERSATION_PREFIX):-len(tail)]
        return conversation_key(other, username) == key
    return False


# =============================================================================
# Stored / outbound models
# =============================================================================


class MessageType(str, Enum):
    """Kind of chat message.

    Attributes:
        MESSAGE: Regular text broadcast to a room.
        FILE: Broadcast carrying an inline file attachment.
        SYSTEM: Join/leave notice generated by the server.
        PRIVATE: Direct message between two users.
    """
    MESSAGE = "message"
    FILE = "file"
    SYSTEM = "system"
    PRIVATE = "private"


class FileAttachment(BaseModel):
    """File metadata and inline data carried by a file message."""
    name: str = Field(..., description="Original filename")
    type: str = Field(default="application/octet-stream", description="MIME type")
    size: int = Field(default=0, ge=0, description="Size in bytes")
    data: str = Field(default="", description="Inline data (usually a data URL)")


class ChatMessage(BaseModel):
    """A message as held in the transcript and delivered to clients.

    ``reactions`` maps emoji to an ordered set of usernames and ``readBy`` is
    an ordered set of usernames. Only those two fields change after creation.
    """
    id: str = Field(default_factory=new_message_id, description="Message ID")
    kind: MessageType = Field(default=MessageType.MESSAGE)
    room: str = Field(..., description="Room name, or conversation key for private messages")
    sender: str = Field(..., description="Username of the sender")
    to: Optional[str] = Field(default=None, description="Recipient (private messages only)")
    text: str = Field(default="")
    timestamp: str = Field(default_factory=utc_now_iso)
    seq: int = Field(default=0, description="Position in the conversation, assigned by the server")
    file: Optional[FileAttachment] = None
    reactions: Dict[str, List[str]] = Field(default_factory=dict)
    readBy: List[str] = Field(default_factory=list)

    @property
    def is_private(self) -> bool:
        return self.kind == MessageType.PRIVATE

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")


# =============================================================================
# Inbound payloads
# =============================================================================


class _Inbound(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class UserJoinInput(_Inbound):
    username: str
    room: Optional[str] = None


class ChangeRoomInput(_Inbound):
    room: str = Field(..., validation_alias=AliasChoices("room", "newRoom"))


class SendMessageInput(_Inbound):
    id: Optional[str] = None
    text: str = Field(default="", validation_alias=AliasChoices("text", "message"))
    room: Optional[str] = None
    timestamp: Optional[str] = None


class FileMessageInput(_Inbound):
    id: Optional[str] = None
    name: str = ""
    mimeType: str = Field(
        default="application/octet-stream",
        validation_alias=AliasChoices("mimeType", "fileType"),
    )
    size: int = Field(default=0, ge=0)
    data: str = ""
    text: str = ""
    room: Optional[str] = None
    timestamp: Optional[str] = None


class PrivateMessageInput(_Inbound):
    id: Optional[str] = None
    to: str = ""
    text: str = Field(default="", validation_alias=AliasChoices("text", "message"))
    timestamp: Optional[str] = None


class TypingInput(_Inbound):
    room: Optional[str] = None


class ReactionInput(_Inbound):
    messageId: str
    emoji: str = Field(..., validation_alias=AliasChoices("emoji", "reactionType"))


class ReadReceiptInput(_Inbound):
    messageId: str


class MarkAllReadInput(_Inbound):
    room: Optional[str] = None


class CreateRoomInput(_Inbound):
    roomName: str = Field(..., validation_alias=AliasChoices("roomName", "room", "name"))


class LoadMoreInput(_Inbound):
    room: Optional[str] = None
    page: int = Field(default=1, ge=1)
    limit: Optional[int] = Field(default=None, ge=1)
