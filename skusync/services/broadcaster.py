"""Realtime broadcaster — in-process fan-out of sync events.

Each subscriber (a websocket connection, a test) gets its own bounded
queue. publish() never raises: a slow subscriber whose queue is full loses
the event, and the sync path carries on.

Events: inventory:update, price:update, sync:started, sync:completed
"""

import asyncio
from datetime import datetime, timezone

from loguru import logger

INVENTORY_UPDATE = "inventory:update"
PRICE_UPDATE = "price:update"
SYNC_STARTED = "sync:started"
SYNC_COMPLETED = "sync:completed"


class Broadcaster:
    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: set[asyncio.Queue] = set()
        self.dropped = 0

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: str, data: dict) -> int:
        """Deliver to every subscriber; returns how many received it."""
        message = {"event": event, "data": data, "timestamp": datetime.now(timezone.utc).isoformat()}
        delivered = 0
        for q in list(self._subscribers):
            try:
                q.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                self.dropped += 1
                logger.warning("Realtime subscriber queue full, event dropped", event=event)
            except Exception as e:
                logger.error("Realtime publish failed", event=event, error=str(e))
        return delivered
