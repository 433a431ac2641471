"""System events queued for the main session.

Main-session cron jobs don't run the agent themselves. They leave a
system-originated line here, and the live conversation picks it up on its
next turn (or immediately, when a heartbeat is requested).

The queue is the hand-off point to the live ingress path, which owns the
main conversation: it calls ``drain()`` when it builds its next turn and
watches ``heartbeat_requested`` for wake-now jobs. Nothing in the cron
core consumes events itself.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from wakeline.logger import logger

MAX_EVENTS = 20


@dataclass
class SystemEvent:
    text: str
    ts: int


class SystemEventQueue:
    """Bounded FIFO of pending system events; drops consecutive duplicates."""

    def __init__(self, *, on_heartbeat: Callable[[], None] | None = None) -> None:
        self._events: deque[SystemEvent] = deque(maxlen=MAX_EVENTS)
        self._on_heartbeat = on_heartbeat
        self.heartbeat_requested = asyncio.Event()

    def enqueue_system_event(self, text: str, *, ts: int = 0) -> None:
        clean = text.strip()
        if not clean:
            return
        if self._events and self._events[-1].text == clean:
            return
        self._events.append(SystemEvent(text=clean, ts=ts))
        logger.debug("System event queued", pending=len(self._events))

    def request_heartbeat_now(self) -> None:
        self.heartbeat_requested.set()
        if self._on_heartbeat is not None:
            self._on_heartbeat()

    def peek(self) -> list[SystemEvent]:
        return list(self._events)

    def drain(self) -> list[SystemEvent]:
        """Take every pending event, oldest first, and clear the heartbeat flag."""
        events = list(self._events)
        self._events.clear()
        self.heartbeat_requested.clear()
        return events
