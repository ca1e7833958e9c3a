"""In-process event bus for BorgPilot.

Components publish ``(event, payload)`` pairs. Listeners are either plain
callbacks, invoked synchronously, or asyncio queues consumed by the API's
event stream.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from loguru import logger

# Event names
TERMINAL_LOG = "terminal-log"
JOB_STARTED = "job-started"
JOB_COMPLETE = "job-complete"
ACTIVITY_LOG = "activity-log"
MOUNT_EXITED = "mount-exited"
NOTICE = "notice"
BUSY_CHANGED = "busy-changed"

# Slow stream consumers lose events beyond this backlog
QUEUE_MAXSIZE = 1000


@dataclass
class Event:
    """A published event."""

    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.name,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


EventListener = Callable[[Event], None]


class EventBus:
    """Fan-out of events to callbacks and queues."""

    def __init__(self):
        self._listeners: list[EventListener] = []
        self._queues: set[asyncio.Queue[Event]] = set()

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a callback.

        Returns:
            A function that removes the callback again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def open_queue(self) -> asyncio.Queue[Event]:
        """Create a queue receiving every subsequent event."""
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=QUEUE_MAXSIZE)
        self._queues.add(queue)
        return queue

    def close_queue(self, queue: asyncio.Queue[Event]) -> None:
        self._queues.discard(queue)

    def publish(self, name: str, payload: dict[str, Any] | None = None) -> Event:
        """Publish an event to every listener."""
        event = Event(name=name, payload=payload or {})

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Event listener failed for '{name}': {e}")

        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(f"Event queue full, dropping '{name}'")

        return event
