"""Python chat client: connection state, typing debounce and transports."""
from .session import ChatClient
from .state import ClientHistory, ClientState, ConnectionStatus
from .typing import TypingDebouncer

__all__ = ["ChatClient", "ClientHistory", "ClientState", "ConnectionStatus", "TypingDebouncer"]
