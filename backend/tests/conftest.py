"""Shared test fixtures and configuration for backend tests."""
import copy
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set

import pytest
from fastapi.testclient import TestClient

from roomchat.chat.hub import ChatHub
from roomchat.chat.router import hub as app_hub
from roomchat.config import AppSettings
from roomchat.main import app


class RecordingEmitter:
    """Emitter double: records every frame delivered to each open connection."""

    def __init__(self) -> None:
        self.frames: Dict[str, List[dict]] = defaultdict(list)
        self.open: Set[str] = set()

    async def send(self, connection_id: str, message: dict) -> bool:
        if connection_id not in self.open:
            return False
        self.frames[connection_id].append(copy.deepcopy(message))
        return True

    async def broadcast(self, message: dict, connection_ids: Iterable[str]) -> List[str]:
        delivered = []
        for cid in dict.fromkeys(connection_ids):
            if await self.send(cid, message):
                delivered.append(cid)
        return delivered


class ChatHarness:
    """Drives a ChatHub the way the WebSocket endpoint does."""

    def __init__(self, hub: ChatHub, emitter: RecordingEmitter) -> None:
        self.hub = hub
        self.emitter = emitter

    async def connect(self, cid: str) -> None:
        self.emitter.open.add(cid)
        await self.hub.connect(cid)

    async def join(self, cid: str, username: str, room: Optional[str] = None) -> None:
        if cid not in self.emitter.open:
            await self.connect(cid)
        frame = {"type": "user_join", "username": username}
        if room:
            frame["room"] = room
        await self.hub.handle(cid, frame)

    async def send(self, cid: str, frame: dict) -> None:
        await self.hub.handle(cid, frame)

    async def drop(self, cid: str) -> None:
        self.emitter.open.discard(cid)
        await self.hub.disconnect(cid)

    def frames(self, cid: str, event: Optional[str] = None) -> List[dict]:
        frames = self.emitter.frames[cid]
        return [f for f in frames if event is None or f["type"] == event]

    def types(self, cid: str) -> List[str]:
        return [f["type"] for f in self.emitter.frames[cid]]

    def clear(self) -> None:
        for frames in self.emitter.frames.values():
            frames.clear()


@pytest.fixture
def settings():
    """Default settings, independent of any roomchat.settings.yaml on disk."""
    return AppSettings()


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def hub(emitter, settings):
    return ChatHub(emitter, settings)


@pytest.fixture
def chat(hub, emitter):
    return ChatHarness(hub, emitter)


@pytest.fixture
def api_client():
    """TestClient for the roomchat app, backed by the module-level hub that
    ``reset_app_hub`` empties around each test."""
    return TestClient(app)


@pytest.fixture(autouse=True)
def reset_app_hub():
    """Start every test with empty sessions, rooms and history on the app hub."""
    app_hub.reset()
    yield
    app_hub.reset()
