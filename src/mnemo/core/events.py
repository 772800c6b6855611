"""
Event channel - explicit message passing for memory notifications.

Subscribers own a bounded queue. Publishing never blocks: when a subscriber
queue is full the event is dropped for that subscriber and counted.

Topics:
- episode.promoted
- patterns.discovered
- evolution.completed
- isolation.contamination_detected
- isolation.contamination_alert
- isolation.security_alert
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mnemo.core.logging import get_logger

logger = get_logger("core.events")


@dataclass(frozen=True)
class Event:
    """A single published notification."""

    topic: str
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)


class Subscription:
    """Bounded queue of events for one consumer."""

    def __init__(self, channel: "EventChannel", topics: Iterable[str] | None, maxsize: int):
        self._channel = channel
        self.topics = frozenset(topics or ())
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def matches(self, topic: str) -> bool:
        if not self.topics:
            return True
        for wanted in self.topics:
            if wanted == topic:
                return True
            # "patterns.*" style prefix subscriptions
            if wanted.endswith(".*") and topic.startswith(wanted[:-1]):
                return True
        return False

    async def get(self) -> Event:
        return await self.queue.get()

    def drain(self) -> list[Event]:
        """Return all queued events without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        self._channel.unsubscribe(self)


class EventChannel:
    """Fan-out of events to subscriber queues."""

    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._subscriptions: list[Subscription] = []
        self.published = 0

    def subscribe(self, topics: Iterable[str] | None = None) -> Subscription:
        subscription = Subscription(self, topics, self._queue_size)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, topic: str, **payload: Any) -> int:
        """Publish event, return number of subscribers it was delivered to."""
        event = Event(topic=topic, payload=payload)
        self.published += 1
        delivered = 0
        for subscription in list(self._subscriptions):
            if not subscription.matches(topic):
                continue
            try:
                subscription.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                subscription.dropped += 1
                logger.warning(f"Subscriber queue full, dropped {topic} event")
        return delivered

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
