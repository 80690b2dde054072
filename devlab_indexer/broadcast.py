"""
Live fan-out: one broadcast channel per topic.

Topics are "global" (blocks, metrics) and "contract:<checksum address>"
(events). A subscriber holds a Subscription handle; closing it unsubscribes.
Each subscriber reads from its own queue, so delivery is ordered per
subscriber. A slow subscriber loses its oldest messages instead of stalling
the publisher.
"""

import asyncio
from typing import Any, Dict, Optional, Set

import structlog

from devlab_indexer import config
from devlab_indexer.helpers import to_addr

logger = structlog.get_logger()

GLOBAL_TOPIC = "global"

# message types pushed to live subscribers
RECENT_EVENTS = "recent-events"
NEW_EVENT = "new-event"
NEW_BLOCK = "new-block"
METRICS_UPDATE = "metrics-update"


def contract_topic(contract_address: str) -> str:
    return f"contract:{to_addr(contract_address)}"


class Subscription:

    def __init__(self, broadcaster: "Broadcaster", topic: str, queue: asyncio.Queue):
        self.topic = topic
        self.queue = queue
        self.dropped = 0
        self._broadcaster = broadcaster
        self.closed = False

    def deliver(self, message: Dict[str, Any]) -> None:
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(message)

    async def get(self) -> Dict[str, Any]:
        return await self.queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._broadcaster._remove(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed:
            raise StopAsyncIteration
        return await self.get()


class Broadcaster:

    def __init__(self, queue_size: int = config.SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._topics: Dict[str, Set[Subscription]] = {}

    def subscribe(self, topic: str, queue: Optional[asyncio.Queue] = None) -> Subscription:
        """
        Open a subscription on a topic. Several subscriptions may share one
        queue (e.g. one WebSocket client following many topics).
        """
        sub = Subscription(self, topic, queue or asyncio.Queue(maxsize=self.queue_size))
        self._topics.setdefault(topic, set()).add(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._topics.get(sub.topic)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._topics[sub.topic]

    def publish(self, topic: str, message_type: str, data: Any) -> int:
        """Deliver to every current subscriber of topic; returns how many got it."""
        subs = self._topics.get(topic)
        if not subs:
            return 0
        message = {"type": message_type, "data": data}
        for sub in list(subs):
            sub.deliver(message)
        return len(subs)

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is not None:
            return len(self._topics.get(topic, ()))
        return sum(len(s) for s in self._topics.values())
