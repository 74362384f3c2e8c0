from __future__ import annotations

import asyncio
import logging
from typing import Any, List

import nats
from nats.aio.client import Client as NatsClient
from nats.errors import BadSubscriptionError, ConnectionClosedError
from nats.errors import Error as NatsError

from bet_coordinator.errors import TransportError, TransportPublishError
from bet_coordinator.transport.base import Message, MessageBus, Subscription

LOGGER = logging.getLogger(__name__)


class _NatsSubscription(Subscription):
    def __init__(self, topic: str, subscription: Any) -> None:
        self.topic = topic
        self._subscription = subscription
        self._messages = subscription.messages

    async def __anext__(self) -> Message:
        msg = await self._messages.__anext__()
        return Message(subject=msg.subject, data=bytes(msg.data))

    async def unsubscribe(self) -> None:
        try:
            await self._subscription.unsubscribe()
        except (ConnectionClosedError, BadSubscriptionError) as exc:
            LOGGER.debug("nats unsubscribe from %s ignored: %s", self.topic, exc)


class NatsBus(MessageBus):
    name = "nats"

    def __init__(
        self,
        servers: List[str],
        *,
        client_name: str = "bet-coordinator",
        connect_timeout_seconds: float = 5.0,
        flush_timeout_seconds: float = 2.0,
        max_reconnect_attempts: int = -1,
    ) -> None:
        self._servers = list(servers)
        self._client_name = client_name
        self._connect_timeout_seconds = connect_timeout_seconds
        self._flush_timeout_seconds = flush_timeout_seconds
        self._max_reconnect_attempts = max_reconnect_attempts
        self._nc: NatsClient | None = None

    @property
    def is_connected(self) -> bool:
        return self._nc is not None and self._nc.is_connected

    async def connect(self) -> None:
        try:
            # Reconnects are unbounded once up; the first connect must fail fast.
            self._nc = await asyncio.wait_for(
                nats.connect(
                    servers=self._servers,
                    name=self._client_name,
                    connect_timeout=self._connect_timeout_seconds,
                    max_reconnect_attempts=self._max_reconnect_attempts,
                    error_cb=self._on_error,
                    disconnected_cb=self._on_disconnected,
                    reconnected_cb=self._on_reconnected,
                ),
                timeout=self._connect_timeout_seconds * 2,
            )
        except (NatsError, OSError, asyncio.TimeoutError) as exc:
            raise TransportError(f"failed to connect to NATS at {self._servers}: {exc}") from exc
        LOGGER.info("connected to NATS servers=%s", ",".join(self._servers))

    async def subscribe(self, topic: str) -> Subscription:
        client = self._client()
        try:
            subscription = await client.subscribe(topic)
        except NatsError as exc:
            raise TransportError(f"subscribe to {topic} failed: {exc}") from exc
        LOGGER.info("subscribed to %s", topic)
        return _NatsSubscription(topic, subscription)

    async def publish(self, topic: str, data: bytes) -> None:
        client = self._client()
        try:
            await client.publish(topic, data)
        except (NatsError, OSError) as exc:
            # Covers outbound buffer overflow while reconnecting, draining and max payload.
            raise TransportPublishError(f"publish to {topic} failed: {exc}") from exc

    async def flush(self, timeout: float | None = None) -> None:
        effective = self._flush_timeout_seconds if timeout is None else timeout
        client = self._client()
        try:
            await client.flush(timeout=effective)
        except (NatsError, OSError, asyncio.TimeoutError) as exc:
            raise TransportPublishError(f"flush failed: {exc}") from exc

    async def aclose(self) -> None:
        if self._nc is None:
            return
        try:
            if not self._nc.is_closed:
                await self._nc.drain()
        except (NatsError, asyncio.TimeoutError) as exc:
            LOGGER.warning("error draining NATS connection: %s", exc)
        finally:
            if not self._nc.is_closed:
                await self._nc.close()
            self._nc = None
            LOGGER.info("NATS connection closed")

    def _client(self) -> NatsClient:
        if self._nc is None:
            raise TransportError("NATS bus is not connected")
        return self._nc

    async def _on_error(self, exc: Exception) -> None:
        LOGGER.error("NATS error: %s", exc)

    async def _on_disconnected(self) -> None:
        LOGGER.warning("NATS disconnected")

    async def _on_reconnected(self) -> None:
        LOGGER.info("NATS reconnected")
