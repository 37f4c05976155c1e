"""Fan-out of named host events to subscribers.

Background stream and watcher tasks publish events here. The host
server subscribes one queue per connected UI client.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from daemonbridge.adapters.events import HostEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Named-event emitter. Must be used from the event loop thread."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._maxsize = maxsize
        self._queues: list[asyncio.Queue[HostEvent]] = []
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def publish(self, name: str, payload: Any = None) -> None:
        """Deliver one event to every subscriber, in publish order."""
        if self._closed:
            return
        event = HostEvent(name=name, payload=payload)
        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "EventBus queue full, dropping: %s (queue size: %d)",
                    name, queue.qsize(),
                )

    def subscribe(self) -> asyncio.Queue[HostEvent]:
        queue: asyncio.Queue[HostEvent] = asyncio.Queue(maxsize=self._maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[HostEvent]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def close(self) -> None:
        """Stop delivering events permanently."""
        self._closed = True
