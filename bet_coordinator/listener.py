"""Bet listener: consume the broadcast, decide, then act.

One listener runs per owned bookie account. Each message on
``bets.incoming`` goes through three steps:

1. decode at the transport boundary (bad bytes are logged and dropped),
2. decide with ``IntakeGate.screen`` (pure apart from the dedup insert),
3. act: ack, aggregate arbitrage legs, dispatch through the router.

A periodic sweep, decoupled from message arrival, expires stale arb
cycles, truncates the dedup window and drops unfinished tracker groups.
The consumption loop never dies on a bad message; only cancellation
stops it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from bet_coordinator import codec
from bet_coordinator.aggregator import ArbCycle, ArbCycleAggregator, LegOutcome, cycle_owner
from bet_coordinator.cycle_tracker import CycleTracker
from bet_coordinator.errors import AggregationTimeout, DecodeError, TransportError
from bet_coordinator.models import AckType, BetRequest, BetResult, BookieConfig, DispatchBundle
from bet_coordinator.otp import OtpStore, parse_otp_update
from bet_coordinator.publisher import LifecyclePublisher
from bet_coordinator.router import DispatchRouter
from bet_coordinator.transport.base import (
    TOPIC_BETS_INCOMING,
    TOPIC_BETS_PLACED,
    TOPIC_BETS_SETTLED,
    TOPIC_OTP_UPDATES,
    MessageBus,
    Subscription,
)
from bet_coordinator.validation import DropReason, IntakeAction, IntakeDecision, IntakeGate

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[bytes], Awaitable[object]]


@dataclass(frozen=True)
class ListenerConfig:
    """Configuration for one bet listener.

    Parameters
    ----------
    cleanup_interval_seconds:
        Sweep period for cycle expiry and dedup truncation. Default 10.
    shard_by_cycle:
        When True, only the listener owning ``cycle_owner(cycleId)``
        dispatches a completed cycle, and it dispatches every leg.
        When False, each listener dispatches its own legs. Default False.
    tracking_enabled:
        Follow ``bets.placed`` / ``bets.settled`` per cycle. Default True.
    """

    cleanup_interval_seconds: float = 10.0
    shard_by_cycle: bool = False
    tracking_enabled: bool = True


@dataclass
class ListenerStats:
    received: int = 0
    decode_failures: int = 0
    handler_errors: int = 0
    acked: int = 0
    value_dispatched: int = 0
    cycles_dispatched: int = 0
    cycles_expired: int = 0
    otp_updates: int = 0
    cancels_requested: int = 0
    dropped: Dict[str, int] = field(default_factory=dict)

    def record_drop(self, reason: DropReason) -> None:
        self.dropped[reason.value] = self.dropped.get(reason.value, 0) + 1


class BetListener:
    def __init__(
        self,
        bus: MessageBus,
        gate: IntakeGate,
        aggregator: ArbCycleAggregator,
        router: DispatchRouter,
        publisher: LifecyclePublisher,
        *,
        otp_store: OtpStore | None = None,
        tracker: CycleTracker | None = None,
        config: ListenerConfig | None = None,
        name: str | None = None,
    ) -> None:
        self._bus = bus
        self._gate = gate
        self._aggregator = aggregator
        self._router = router
        self._publisher = publisher
        self._otp_store = otp_store or OtpStore()
        self._tracker = tracker or CycleTracker()
        self._config = config or ListenerConfig()
        self._name = name or ",".join(sorted(gate.own_accounts)) or "listener"
        self._stats = ListenerStats()
        self._subscriptions: List[Subscription] = []
        self._tasks: List[asyncio.Task[None]] = []
        self._running = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def stats(self) -> ListenerStats:
        return self._stats

    @property
    def gate(self) -> IntakeGate:
        return self._gate

    @property
    def aggregator(self) -> ArbCycleAggregator:
        return self._aggregator

    @property
    def tracker(self) -> CycleTracker:
        return self._tracker

    @property
    def otp_store(self) -> OtpStore:
        return self._otp_store

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        handlers: List[tuple[str, MessageHandler]] = [
            (TOPIC_BETS_INCOMING, self.handle_bet_message),
            (TOPIC_OTP_UPDATES, self.handle_otp_message),
        ]
        if self._config.tracking_enabled:
            handlers.append((TOPIC_BETS_PLACED, self.handle_result_message))
            handlers.append((TOPIC_BETS_SETTLED, self.handle_settlement_message))

        for topic, handler in handlers:
            subscription = await self._bus.subscribe(topic)
            self._subscriptions.append(subscription)
            self._tasks.append(
                asyncio.create_task(self._consume(topic, subscription, handler), name=f"{self._name}:{topic}")
            )
        self._tasks.append(asyncio.create_task(self._sweep_loop(), name=f"{self._name}:sweep"))
        self._running = True
        LOGGER.info(
            "listener %s subscribed to %s (known bookies: %s)",
            self._name,
            ", ".join(topic for topic, _ in handlers),
            ",".join(sorted(self._gate.known_bookies)),
        )

    async def stop(self) -> None:
        """Stop consuming. Dispatched work keeps running in the router's pools."""
        self._running = False
        for subscription in self._subscriptions:
            try:
                await subscription.unsubscribe()
            except TransportError as exc:
                LOGGER.warning("listener %s could not unsubscribe: %s", self._name, exc)
        self._subscriptions.clear()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        LOGGER.info("listener %s stopped", self._name)

    def update_known_configs(self, configs: Iterable[BookieConfig]) -> None:
        names = [config.name for config in configs if config.name]
        self._gate.update_known_bookies(names)
        LOGGER.info("listener %s now tracking bookies: %s", self._name, ",".join(sorted(names)))

    async def _consume(self, topic: str, subscription: Subscription, handler: MessageHandler) -> None:
        async for message in subscription:
            try:
                await handler(message.data)
            except asyncio.CancelledError:
                raise
            except Exception:
                self._stats.handler_errors += 1
                LOGGER.exception("listener %s failed handling message on %s", self._name, topic)
        LOGGER.info("listener %s subscription to %s ended", self._name, topic)

    # ------------------------------------------------------------------
    # bets.incoming
    # ------------------------------------------------------------------

    async def handle_bet_message(self, data: bytes) -> IntakeDecision | None:
        self._stats.received += 1
        if not data:
            self._stats.decode_failures += 1
            LOGGER.warning("listener %s received empty bet payload", self._name)
            return None
        try:
            payload = codec.decode(data)
        except DecodeError as exc:
            self._stats.decode_failures += 1
            LOGGER.error("listener %s dropping undecodable bet: %s | %s", self._name, exc, codec.describe_payload(data))
            return None

        decision = self._gate.screen(payload)
        if not decision.accepted:
            self._log_drop(decision)
            return decision

        bet = decision.bet
        assert bet is not None
        if decision.action is IntakeAction.DISPATCH_VALUE:
            await self._ack(bet, AckType.VALUE_BET)
            await self._router.dispatch(DispatchBundle.value(bet))
            self._stats.value_dispatched += 1
        else:
            await self._collect_leg(bet, decision.owned)
        return decision

    def _log_drop(self, decision: IntakeDecision) -> None:
        reason = decision.reason or DropReason.MALFORMED
        self._stats.record_drop(reason)
        bet_id = decision.bet.bet_id if decision.bet is not None else None
        if reason in (DropReason.DUPLICATE, DropReason.NOT_OWNED, DropReason.UNKNOWN_BOOKIE):
            LOGGER.info("listener %s dropped bet %s (%s): %s", self._name, bet_id, reason.value, decision.detail)
        else:
            LOGGER.warning("listener %s dropped bet %s (%s): %s", self._name, bet_id, reason.value, decision.detail)

    async def _collect_leg(self, bet: BetRequest, owned: bool) -> None:
        result = self._aggregator.add_leg(bet)
        if result.expired is not None:
            await self._abandon(result.expired)

        if result.outcome not in (LegOutcome.COLLECTING, LegOutcome.COMPLETE):
            return

        if owned:
            await self._ack(bet, AckType.ARB_LEG)

        if result.bundle is None:
            return

        bundle = result.bundle
        if self._config.shard_by_cycle:
            owner = cycle_owner(result.cycle_id, sorted(self._gate.known_bookies))
            if not self._gate.owns(owner):
                LOGGER.info("arb cycle %s is driven by %s's listener", result.cycle_id, owner)
                return
            await self._router.dispatch(bundle)
        else:
            await self._router.dispatch(bundle, only_bookies=self._gate.own_accounts)
        self._stats.cycles_dispatched += 1

    async def _ack(self, bet: BetRequest, ack_type: AckType) -> None:
        if await self._publisher.publish_received_ack(bet.bet_id, ack_type):
            self._stats.acked += 1

    async def _abandon(self, cycle: ArbCycle) -> None:
        """Report a terminal Failed result for each owned leg of an expired cycle."""
        self._stats.cycles_expired += 1
        timeout = AggregationTimeout(cycle.cycle_id, len(cycle.legs), cycle.expected_legs)
        owned = [leg for leg in cycle.legs if self._gate.owns(leg.bookie)]
        if owned:
            LOGGER.warning("listener %s abandoning %d owned legs: %s", self._name, len(owned), timeout)
        for leg in owned:
            await self._publisher.publish_placed_result(BetResult.failed(leg, str(timeout)))

    # ------------------------------------------------------------------
    # otp.updates
    # ------------------------------------------------------------------

    async def handle_otp_message(self, data: bytes) -> bool:
        try:
            payload = codec.decode(data)
        except DecodeError as exc:
            LOGGER.error("listener %s dropping undecodable OTP update: %s | %s", self._name, exc, codec.describe_payload(data))
            return False
        update = parse_otp_update(payload)
        if update is None:
            LOGGER.warning("listener %s ignoring OTP update without bookie or otp", self._name)
            return False
        if not self._gate.owns(update.bookie):
            return False
        self._otp_store.put(update)
        self._stats.otp_updates += 1
        return True

    # ------------------------------------------------------------------
    # bets.placed / bets.settled
    # ------------------------------------------------------------------

    async def handle_result_message(self, data: bytes) -> List[str]:
        """Track a placement result; returns bet ids this listener asked to cancel."""
        try:
            payload = codec.decode(data)
        except DecodeError as exc:
            LOGGER.error("listener %s dropping undecodable result: %s | %s", self._name, exc, codec.describe_payload(data))
            return []
        if not isinstance(payload, dict):
            LOGGER.warning("listener %s ignoring result that is not a map", self._name)
            return []

        verdict = self._tracker.record_result(BetResult.from_payload(payload))
        if verdict is None:
            return []

        cancelled: List[str] = []
        for leg in verdict.cancel_candidates:
            if not self._gate.owns(leg.bookie):
                continue
            reason = f"arb cycle {verdict.cycle_id} only partially placed"
            if await self._publisher.publish_cancel_request(leg.bookie, leg.bet_id, verdict.cycle_id, reason):
                self._stats.cancels_requested += 1
                cancelled.append(leg.bet_id)
        return cancelled

    async def handle_settlement_message(self, data: bytes) -> Optional[float]:
        """Track a settlement; returns the profit once a cycle (or value bet) is complete."""
        try:
            payload = codec.decode(data)
        except DecodeError as exc:
            LOGGER.error("listener %s dropping undecodable settlement: %s | %s", self._name, exc, codec.describe_payload(data))
            return None
        if not isinstance(payload, dict):
            LOGGER.warning("listener %s ignoring settlement that is not a map", self._name)
            return None
        summary = self._tracker.record_settlement(payload)
        return None if summary is None else summary.profit

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep(self, now: float | None = None) -> Sequence[ArbCycle]:
        expired = self._aggregator.expire_stale(now)
        for cycle in expired:
            await self._abandon(cycle)
        self._gate.dedupe.truncate_if_needed()
        self._tracker.expire(now)
        return expired

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.cleanup_interval_seconds)
            try:
                await self.sweep()
            except Exception:
                LOGGER.exception("listener %s sweep failed", self._name)
