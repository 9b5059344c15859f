"""Error taxonomy for the chat core.

Every user-visible failure is a ``ChatError`` subclass carrying a stable
``code``. The hub turns these into a typed error frame sent to the
originating connection only; they never reach other sessions.
"""
from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base class for failures reported back to the originating client."""

    code = "ChatError"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self, event: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "error": self.message}
        if event:
            payload["event"] = event
        payload.update(self.details)
        return payload


class InvalidMessage(ChatError):
    """A required field is missing or malformed."""

    code = "InvalidMessage"


class UnknownRecipient(ChatError):
    """Private message target is not connected."""

    code = "UnknownRecipient"


class DuplicateRoom(ChatError):
    """create_room was called with a name that already exists."""

    code = "DuplicateRoom"


class UsernameTaken(ChatError):
    """Another live connection already holds this username."""

    code = "UsernameTaken"


class MessageNotFound(ChatError):
    """Reaction or read receipt targets a message the server does not hold."""

    code = "MessageNotFound"


class UploadTooLarge(ChatError):
    """File payload exceeds the configured upload ceiling."""

    code = "UploadTooLarge"


class TransportError(ChatError):
    """Connection-level failure; surfaced as a status change, not data."""

    code = "TransportError"
