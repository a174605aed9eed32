"""In-process event bus for batch run and update notifications.

Notifiers (webhooks, chat bots) subscribe and drain their queue; the core
only publishes.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

EVENT_RUN_STARTED = "batch-run-started"
EVENT_RUN_COMPLETED = "batch-run-completed"
EVENT_RUN_FAILED = "batch-run-failed"
EVENT_IMAGE_UPDATE = "image-update-available"
EVENT_TRACKED_APP_UPDATE = "tracked-app-update-available"

DEFAULT_QUEUE_SIZE = 1000


class EventBus:
    """Lightweight async pub/sub of event dicts."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._listeners: set[asyncio.Queue[dict[str, Any]]] = set()
        self._lock = asyncio.Lock()
        self._queue_size = queue_size

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
        """Register a new listener and return its queue."""
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            self._listeners.add(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        async with self._lock:
            self._listeners.discard(queue)

    async def publish(self, event_type: str, **payload: Any) -> None:
        """Broadcast an event to all listeners.

        Args:
            event_type: One of the EVENT_* names
            **payload: Event fields
        """
        if not self._listeners:
            return

        event = {
            "type": event_type,
            **payload,
            "timestamp": payload.get("timestamp") or datetime.now(timezone.utc).isoformat(),
        }

        async with self._lock:
            dead_queues = []
            for queue in list(self._listeners):
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    logger.warning("Event queue full, removing slow consumer")
                    dead_queues.append(queue)

            for queue in dead_queues:
                self._listeners.discard(queue)
