"""In-process message bus with NATS subject semantics.

Used for local dry runs and tests. The most recent published messages
(up to ``record_limit``) are kept in ``published`` for inspection.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, List

from bet_coordinator.errors import TransportError, TransportPublishError
from bet_coordinator.transport.base import Message, MessageBus, Subscription, topic_matches

LOGGER = logging.getLogger(__name__)

_CLOSED = object()


class _MemorySubscription(Subscription):
    def __init__(self, bus: "InMemoryBus", topic: str) -> None:
        self.topic = topic
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def deliver(self, message: Message) -> None:
        if not self._closed:
            self._queue.put_nowait(message)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def __anext__(self) -> Message:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def unsubscribe(self) -> None:
        self._bus._remove(self)
        self.close()


class InMemoryBus(MessageBus):
    name = "memory"

    def __init__(self, record_limit: int = 10000) -> None:
        self._subscriptions: list[_MemorySubscription] = []
        self._connected = False
        self._published: Deque[Message] = deque(maxlen=max(0, record_limit))
        self.fail_publish = False

    @property
    def published(self) -> List[Message]:
        return list(self._published)

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    async def subscribe(self, topic: str) -> Subscription:
        if not self._connected:
            raise TransportError("in-memory bus is not connected")
        subscription = _MemorySubscription(self, topic)
        self._subscriptions.append(subscription)
        return subscription

    async def publish(self, topic: str, data: bytes) -> None:
        if not self._connected:
            raise TransportPublishError("in-memory bus is not connected")
        if self.fail_publish:
            raise TransportPublishError(f"publish to {topic} refused")
        message = Message(subject=topic, data=bytes(data))
        self._published.append(message)
        for subscription in list(self._subscriptions):
            if topic_matches(subscription.topic, topic):
                subscription.deliver(message)

    def published_on(self, topic: str) -> List[Message]:
        return [message for message in self._published if topic_matches(topic, message.subject)]

    async def aclose(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()
        self._connected = False

    def _remove(self, subscription: _MemorySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
