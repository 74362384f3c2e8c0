from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass

# Topics consumed and published by the coordination core.
TOPIC_BETS_INCOMING = "bets.incoming"
TOPIC_OTP_UPDATES = "otp.updates"
TOPIC_BETS_ACK = "bets.ack"
TOPIC_BETS_PLACED = "bets.placed"
TOPIC_BETS_SETTLED = "bets.settled"


def cancel_topic(bookie: str) -> str:
    return f"{bookie}.cancel"


@dataclass(frozen=True)
class Message:
    subject: str
    data: bytes


def topic_matches(pattern: str, subject: str) -> bool:
    """NATS subject matching: ``*`` is one token, a trailing ``>`` is one or more."""
    pattern_tokens = pattern.split(".")
    subject_tokens = subject.split(".")
    for index, token in enumerate(pattern_tokens):
        if token == ">":
            return index == len(pattern_tokens) - 1 and len(subject_tokens) > index
        if index >= len(subject_tokens):
            return False
        if token != "*" and token != subject_tokens[index]:
            return False
    return len(pattern_tokens) == len(subject_tokens)


class Subscription(ABC):
    """Infinite async sequence of messages for one topic pattern."""

    topic: str

    def __aiter__(self) -> AsyncIterator[Message]:
        return self

    @abstractmethod
    async def __anext__(self) -> Message:
        raise NotImplementedError

    async def unsubscribe(self) -> None:
        return None


class MessageBus(ABC):
    """Publish/subscribe transport carrying opaque byte payloads.

    Delivery is best-effort FIFO per publisher with no global order, and
    duplicates are possible. Resubscribing after a reconnect is the
    caller's concern.
    """

    name: str = "bus"

    @abstractmethod
    async def connect(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def subscribe(self, topic: str) -> Subscription:
        raise NotImplementedError

    @abstractmethod
    async def publish(self, topic: str, data: bytes) -> None:
        raise NotImplementedError

    async def flush(self, timeout: float | None = None) -> None:
        return None

    @property
    def is_connected(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None
