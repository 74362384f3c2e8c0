"""Arbitrage cycle aggregator.

Holds partial arbitrage cycles keyed by cycle id until every leg has
arrived, then hands the cycle off as one ``DispatchBundle``. Per cycle
the state machine is::

    ABSENT -> COLLECTING -> DISPATCHED | EXPIRED

An incomplete cycle is never dispatched. Cycles older than the
staleness threshold are removed by ``expire_stale`` (driven by the
listener's periodic sweep) and also lazily when a late leg arrives, so
a stale partner can never complete a cycle between sweeps.

A second leg from a bookie that already has a leg in the cycle is
rejected and the first leg kept; letting it through would let a cycle
"complete" with two legs on one bookie and none on the counterpart.

Usage::

    aggregator = ArbCycleAggregator(AggregatorConfig())
    outcome = aggregator.add_leg(bet)
    if outcome.bundle is not None:
        router.dispatch(outcome.bundle)
    for cycle in aggregator.expire_stale():
        ...
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from bet_coordinator.models import BetRequest, DispatchBundle

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AggregatorConfig:
    """Configuration for the cycle aggregator.

    Parameters
    ----------
    expected_legs:
        Legs required for a cycle to be complete. Fixed policy,
        not negotiated per message. Default 2.
    stale_after_seconds:
        Age past which a collecting cycle expires. Default 30.
    """

    expected_legs: int = 2
    stale_after_seconds: float = 30.0


# ---------------------------------------------------------------------------
# Cycle state
# ---------------------------------------------------------------------------


class CycleState(str, Enum):
    COLLECTING = "collecting"
    DISPATCHED = "dispatched"
    EXPIRED = "expired"


class LegOutcome(str, Enum):
    COLLECTING = "collecting"
    COMPLETE = "complete"
    DUPLICATE_BOOKIE = "duplicate_bookie"
    NOT_ARB = "not_arb"


@dataclass
class ArbCycle:
    cycle_id: str
    received_at: float
    expected_legs: int = 2
    legs: List[BetRequest] = field(default_factory=list)
    state: CycleState = CycleState.COLLECTING

    @property
    def bookies(self) -> set[str]:
        return {leg.bookie for leg in self.legs}

    @property
    def complete(self) -> bool:
        return len(self.legs) >= self.expected_legs

    def age(self, now: float) -> float:
        return now - self.received_at


@dataclass(frozen=True)
class AddLegResult:
    outcome: LegOutcome
    cycle_id: str
    received: int
    expected: int
    bundle: Optional[DispatchBundle] = None
    expired: Optional[ArbCycle] = None


@dataclass
class AggregatorStats:
    cycles_opened: int = 0
    cycles_dispatched: int = 0
    cycles_expired: int = 0
    legs_rejected: int = 0


# ---------------------------------------------------------------------------
# Ownership sharding
# ---------------------------------------------------------------------------


def cycle_shard(cycle_id: str, shard_count: int) -> int:
    """Deterministic shard index for a cycle id (stable across processes)."""
    if shard_count <= 0:
        raise ValueError("shard_count must be positive")
    digest = hashlib.sha256(cycle_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % shard_count


def cycle_owner(cycle_id: str, known_bookies: Sequence[str]) -> str:
    """The configured bookie whose listener drives ``cycle_id`` to completion."""
    ordered = sorted(set(known_bookies))
    if not ordered:
        raise ValueError("no known bookies to shard across")
    return ordered[cycle_shard(cycle_id, len(ordered))]


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class ArbCycleAggregator:
    """Keyed, time-bounded accumulator of arbitrage legs.

    Owned by a single listener; mutated only from its consumption loop
    and its sweep, which share one event loop.
    """

    def __init__(self, config: AggregatorConfig | None = None) -> None:
        self._config = config or AggregatorConfig()
        self._cycles: Dict[str, ArbCycle] = {}
        self._stats = AggregatorStats()

    @property
    def config(self) -> AggregatorConfig:
        return self._config

    @property
    def stats(self) -> AggregatorStats:
        return self._stats

    def __contains__(self, cycle_id: object) -> bool:
        return cycle_id in self._cycles

    def __len__(self) -> int:
        return len(self._cycles)

    def get(self, cycle_id: str) -> ArbCycle | None:
        return self._cycles.get(cycle_id)

    def pending_cycle_ids(self) -> List[str]:
        return list(self._cycles.keys())

    def add_leg(self, bet: BetRequest, now: float | None = None) -> AddLegResult:
        if now is None:
            now = time.monotonic()

        expected = self._config.expected_legs
        cycle_id = bet.arb_cycle_id
        if not cycle_id:
            return AddLegResult(LegOutcome.NOT_ARB, cycle_id="", received=0, expected=expected)

        expired: ArbCycle | None = None
        cycle = self._cycles.get(cycle_id)
        if cycle is not None and cycle.age(now) > self._config.stale_after_seconds:
            expired = self._expire(cycle)
            cycle = None

        if cycle is None:
            cycle = ArbCycle(cycle_id=cycle_id, received_at=now, expected_legs=expected)
            self._cycles[cycle_id] = cycle
            self._stats.cycles_opened += 1

        if bet.bookie in cycle.bookies:
            self._stats.legs_rejected += 1
            LOGGER.warning(
                "arb cycle %s already has a leg for bookie %s; rejecting leg %s (kept %s)",
                cycle_id,
                bet.bookie,
                bet.bet_id,
                next(leg.bet_id for leg in cycle.legs if leg.bookie == bet.bookie),
            )
            return AddLegResult(
                LegOutcome.DUPLICATE_BOOKIE,
                cycle_id=cycle_id,
                received=len(cycle.legs),
                expected=cycle.expected_legs,
                expired=expired,
            )

        cycle.legs.append(bet)

        if not cycle.complete:
            LOGGER.info(
                "waiting for more legs for arb cycle %s: received %d/%d",
                cycle_id,
                len(cycle.legs),
                cycle.expected_legs,
            )
            return AddLegResult(
                LegOutcome.COLLECTING,
                cycle_id=cycle_id,
                received=len(cycle.legs),
                expected=cycle.expected_legs,
                expired=expired,
            )

        cycle.state = CycleState.DISPATCHED
        del self._cycles[cycle_id]
        self._stats.cycles_dispatched += 1
        LOGGER.info("collected all %d legs for arb cycle %s", len(cycle.legs), cycle_id)
        return AddLegResult(
            LegOutcome.COMPLETE,
            cycle_id=cycle_id,
            received=len(cycle.legs),
            expected=cycle.expected_legs,
            bundle=DispatchBundle.arb(cycle_id, tuple(cycle.legs)),
            expired=expired,
        )

    def expire_stale(self, now: float | None = None) -> List[ArbCycle]:
        """Remove and return every collecting cycle past the staleness threshold."""
        if now is None:
            now = time.monotonic()

        stale = [
            cycle for cycle in self._cycles.values()
            if cycle.age(now) > self._config.stale_after_seconds
        ]
        return [self._expire(cycle) for cycle in stale]

    def clear(self) -> None:
        self._cycles.clear()

    def _expire(self, cycle: ArbCycle) -> ArbCycle:
        self._cycles.pop(cycle.cycle_id, None)
        cycle.state = CycleState.EXPIRED
        self._stats.cycles_expired += 1
        LOGGER.warning(
            "arb cycle %s timed out; legs received: %d/%d",
            cycle.cycle_id,
            len(cycle.legs),
            cycle.expected_legs,
        )
        return cycle
