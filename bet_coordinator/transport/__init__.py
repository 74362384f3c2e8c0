from bet_coordinator.transport.base import Message, MessageBus, Subscription, topic_matches
from bet_coordinator.transport.memory import InMemoryBus
from bet_coordinator.transport.nats_bus import NatsBus

__all__ = ["InMemoryBus", "Message", "MessageBus", "NatsBus", "Subscription", "topic_matches"]
