"""Lifecycle event publisher (received / placed / settled / cancel).

Publishing is fire-and-forget: a failed publish is logged and reported
as ``False`` but never raised, so message consumption is never blocked
on bus health. At-most-one ack per bet id is guaranteed by the intake
dedup window, not here.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from bet_coordinator import codec
from bet_coordinator.errors import TransportError
from bet_coordinator.models import AckType, BetResult, utc_now_iso
from bet_coordinator.transport.base import (
    TOPIC_BETS_ACK,
    TOPIC_BETS_PLACED,
    TOPIC_BETS_SETTLED,
    MessageBus,
    cancel_topic,
)

LOGGER = logging.getLogger(__name__)

RECEIVED_STATUS = "Received"


@dataclass
class PublisherStats:
    acks: int = 0
    results: int = 0
    settlements: int = 0
    cancels: int = 0
    failures: int = 0


class LifecyclePublisher:
    def __init__(self, bus: MessageBus, flush_timeout_seconds: float = 2.0) -> None:
        self._bus = bus
        self._flush_timeout_seconds = flush_timeout_seconds
        self._stats = PublisherStats()

    @property
    def stats(self) -> PublisherStats:
        return self._stats

    async def publish_received_ack(self, bet_id: str, ack_type: AckType = AckType.VALUE_BET) -> bool:
        payload = {
            "betId": bet_id,
            "status": RECEIVED_STATUS,
            "ackType": ack_type.value,
            "timestamp": utc_now_iso(),
        }
        # Flushed so the producer sees the ack before placement starts.
        if not await self._publish(TOPIC_BETS_ACK, payload, flush=True, label=f"ack for bet {bet_id}"):
            return False
        self._stats.acks += 1
        LOGGER.info("published ack for bet %s to %s", bet_id, TOPIC_BETS_ACK)
        return True

    async def publish_placed_result(self, result: BetResult) -> bool:
        if not await self._publish(TOPIC_BETS_PLACED, result.to_payload(), label=f"result for bet {result.bet_id}"):
            return False
        self._stats.results += 1
        LOGGER.info(
            "published result for bet %s to %s: status=%s payout=%s error=%s",
            result.bet_id,
            TOPIC_BETS_PLACED,
            result.status.value,
            result.payout,
            result.error,
        )
        return True

    async def publish_settled(self, settled: Mapping[str, Any]) -> bool:
        bet_id = settled.get("betId") or settled.get("BetID")
        if not await self._publish(TOPIC_BETS_SETTLED, dict(settled), label=f"settlement for bet {bet_id}"):
            return False
        self._stats.settlements += 1
        LOGGER.info("published settled bet %s to %s", bet_id, TOPIC_BETS_SETTLED)
        return True

    async def publish_cancel_request(
        self,
        bookie: str,
        bet_id: str,
        cycle_id: Optional[str],
        reason: str,
    ) -> bool:
        topic = cancel_topic(bookie)
        payload = {"betId": bet_id, "cycleId": cycle_id, "reason": reason, "timestamp": utc_now_iso()}
        if not await self._publish(topic, payload, label=f"cancel for bet {bet_id}"):
            return False
        self._stats.cancels += 1
        LOGGER.warning("requested cancel of bet %s on %s (cycle %s): %s", bet_id, bookie, cycle_id, reason)
        return True

    async def _publish(self, topic: str, payload: Mapping[str, Any], *, label: str, flush: bool = False) -> bool:
        try:
            await self._bus.publish(topic, codec.encode(payload))
            if flush:
                await self._bus.flush(timeout=self._flush_timeout_seconds)
        except (TransportError, asyncio.TimeoutError, OSError) as exc:
            self._stats.failures += 1
            LOGGER.error("failed to publish %s to %s: %s", label, topic, exc)
            return False
        return True
