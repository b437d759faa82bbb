"""In-process publish/subscribe channel for live auction updates.

Topics are plain strings keyed by tournament. Each subscriber owns a bounded
asyncio queue; a subscriber that falls behind loses its oldest messages rather
than blocking publishers.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Optional

import config

logger = logging.getLogger("auction.notify")


def auction_update_topic(tournament_id: int) -> str:
    return f"auction_update_{tournament_id}"


def auction_result_topic(tournament_id: int) -> str:
    return f"auction_result_{tournament_id}"


def team_update_topic(tournament_id: int) -> str:
    return f"team_update_{tournament_id}"


def tournament_topics(tournament_id: int) -> list[str]:
    return [
        auction_update_topic(tournament_id),
        auction_result_topic(tournament_id),
        team_update_topic(tournament_id),
    ]


class Subscription:
    """Messages for one subscriber across one or more topics. Yields (topic, payload)."""

    def __init__(self, bus: "NotificationBus", topics: list[str], maxsize: int):
        self._bus = bus
        self.topics = topics
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def deliver(self, topic: str, payload: Any) -> None:
        if self.closed:
            return
        if self.queue.full():
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            logger.warning("Subscriber on %s fell behind; dropped oldest message", ", ".join(self.topics))
        self.queue.put_nowait((topic, payload))

    async def get(self, timeout: Optional[float] = None) -> tuple[str, Any]:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def get_nowait(self) -> tuple[str, Any]:
        return self.queue.get_nowait()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> tuple[str, Any]:
        if self.closed:
            raise StopAsyncIteration
        return await self.queue.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


class NotificationBus:
    """Fan-out of payloads to every subscriber of a topic."""

    def __init__(self, queue_size: int = config.NOTIFICATION_QUEUE_SIZE):
        self._queue_size = queue_size
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)

    def subscribe(self, *topics: str) -> Subscription:
        if not topics:
            raise ValueError("subscribe() needs at least one topic")
        sub = Subscription(self, list(topics), self._queue_size)
        for topic in topics:
            self._subscribers[topic].add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        for topic in sub.topics:
            subs = self._subscribers.get(topic)
            if subs is None:
                continue
            subs.discard(sub)
            if not subs:
                del self._subscribers[topic]

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def publish(self, topic: str, payload: Any) -> int:
        """Deliver payload to every current subscriber of topic. Returns how many received it."""
        subs = list(self._subscribers.get(topic, ()))
        for sub in subs:
            sub.deliver(topic, payload)
        logger.debug("Published %s to %d subscriber(s)", topic, len(subs))
        return len(subs)


notification_bus = NotificationBus()
