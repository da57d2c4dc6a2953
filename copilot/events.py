"""
EventHub: fan out session events to WebSocket listeners.

Each subscriber gets its own bounded queue; a slow listener loses events (put_nowait
+ QueueFull) instead of back-pressuring the audio path. Level events are throttled
per source.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from copilot.audio.frames import Source

logger = logging.getLogger(__name__)

_LEVEL_INTERVAL_SEC = 0.1


class EventHub:
    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue] = set()
        self._last_level: dict[Source, float] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        event = {"type": event_type, "timestamp": int(time.time() * 1000), **payload}
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Event queue full, dropping %s event", event_type)

    def publish_level(self, source: Source, level: float) -> None:
        now = time.monotonic()
        if now - self._last_level.get(source, 0.0) < _LEVEL_INTERVAL_SEC:
            return
        self._last_level[source] = now
        self.publish("level", {"source": source.value, "level": round(level, 3)})
