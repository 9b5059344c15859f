"""Client-side typing debounce.

The first keystroke in a room emits ``typing``; each further keystroke pushes
a fire-once timer back by ``delay`` seconds. When the timer runs out the
debouncer emits ``stop_typing``. Switching rooms or dropping the connection
cancels the timer so a stale ``stop_typing`` never lands in another room.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

DEFAULT_TYPING_DELAY = 1.0

SendFrame = Callable[[Dict[str, Any]], Any]


class TypingDebouncer:
    """Turns keystrokes into ``typing`` / ``stop_typing`` frames.

    Args:
        send: Called with each outbound frame; may return an awaitable,
            which is scheduled on the running loop.
        delay: Seconds of inactivity before ``stop_typing`` is sent.
    """

    def __init__(self, send: SendFrame, delay: float = DEFAULT_TYPING_DELAY) -> None:
        self._send = send
        self.delay = delay
        self.room: Optional[str] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        return self.room is not None

    def keystroke(self, room: str) -> None:
        """Record input activity in ``room``. Must run on the event loop."""
        if self.room is not None and self.room != room:
            self._emit("stop_typing", self.room)
            self.room = None
        if self.room is None:
            self.room = room
            self._emit("typing", room)
        self._reschedule()

    def stop(self) -> None:
        """Stop typing now (e.g. the message was sent)."""
        room = self.room
        self.cancel()
        if room is not None:
            self._emit("stop_typing", room)

    def cancel(self) -> None:
        """Drop the pending timer without emitting anything."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self.room = None

    def _reschedule(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._expire)

    def _expire(self) -> None:
        self._handle = None
        room, self.room = self.room, None
        if room is not None:
            logger.debug(f"[Typing] Idle for {self.delay}s in {room}")
            self._emit("stop_typing", room)

    def _emit(self, event: str, room: str) -> None:
        result = self._send({"type": event, "room": room})
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"[Typing] Failed to send typing frame: {task.exception()}")
