"""In-process fan-out of job events to connected observers.

Publishing never awaits: each observer has its own bounded queue, and an
observer whose queue is full is dropped instead of slowing the others down.
"""

import asyncio
import logging
from typing import Optional, Set

from config import settings

logger = logging.getLogger(__name__)

# Event types
PRODUCE = "produce"
CONSUME = "consume"
LOADTEST_STATS = "loadtest-stats"
PRODUCE_COMPLETE = "produce-complete"
CONSUME_COMPLETE = "consume-complete"
LOADTEST_COMPLETE = "loadtest-complete"

TERMINAL_EVENTS = {
    "produce": PRODUCE_COMPLETE,
    "consume": CONSUME_COMPLETE,
    "loadtest-producer": LOADTEST_COMPLETE,
    "loadtest-consumer": LOADTEST_COMPLETE,
}


def make_event(event_type: str, data: dict) -> dict:
    return {"type": event_type, "data": data}


class Subscription:
    """One observer's view of the event stream."""

    def __init__(self, maxsize: int):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def get(self) -> dict:
        return await self.queue.get()

    def offer(self, event: dict) -> bool:
        """Queue an event without waiting. False means the observer fell behind."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True


class EventBroadcaster:
    """Publish/subscribe hub shared by all jobs and all observers."""

    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size or settings.event_queue_size
        self._subscribers: Set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        subscription = Subscription(maxsize or self.queue_size)
        self._subscribers.add(subscription)
        logger.debug(f"Observer subscribed ({len(self._subscribers)} connected)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        self._subscribers.discard(subscription)

    def publish(self, event: dict) -> int:
        """Deliver an event to every current observer. Returns the delivery count."""
        delivered = 0
        for subscription in list(self._subscribers):
            if subscription.offer(event):
                delivered += 1
            else:
                logger.warning("Dropping observer that fell behind the event stream")
                self.unsubscribe(subscription)
        return delivered
