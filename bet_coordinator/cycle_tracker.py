"""Follow arbitrage cycles after dispatch: placement results and settlement P/L.

Results (``bets.placed``) are grouped per cycle. Once every leg has
reported, a fully successful cycle is simply logged; a partially
successful one yields the successful legs as cancel candidates, since
a one-sided arbitrage position is an open exposure.

Settlements (``bets.settled``) are grouped the same way and, once
complete, reduced to a profit figure (total payout minus total stake).
Value bets have a single leg and report immediately.

Groups that never complete are dropped after their window.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Mapping, Optional, Tuple, TypeVar

from bet_coordinator.models import BetResult

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CycleTrackerConfig:
    """Configuration for cycle tracking.

    Parameters
    ----------
    expected_legs:
        Legs per arbitrage cycle. Default 2.
    result_window_seconds:
        How long to wait for every leg's placement result. Default 120.
    settlement_window_seconds:
        How long to wait for every leg's settlement. Default 86400.
    """

    expected_legs: int = 2
    result_window_seconds: float = 120.0
    settlement_window_seconds: float = 86400.0


@dataclass(frozen=True)
class CycleVerdict:
    cycle_id: str
    results: Tuple[BetResult, ...]

    @property
    def all_succeeded(self) -> bool:
        return all(result.success for result in self.results)

    @property
    def cancel_candidates(self) -> Tuple[BetResult, ...]:
        if self.all_succeeded:
            return ()
        return tuple(result for result in self.results if result.success and result.placed)


@dataclass(frozen=True)
class SettledLeg:
    bet_id: str
    bookie: str
    stake: float
    payout: float


@dataclass(frozen=True)
class SettlementSummary:
    cycle_id: Optional[str]
    legs: Tuple[SettledLeg, ...]

    @property
    def total_stake(self) -> float:
        return sum(leg.stake for leg in self.legs)

    @property
    def total_payout(self) -> float:
        return sum(leg.payout for leg in self.legs)

    @property
    def profit(self) -> float:
        return self.total_payout - self.total_stake


@dataclass
class _Group(Generic[T]):
    opened_at: float
    items: Dict[str, T] = field(default_factory=dict)


def _number(raw: Mapping[str, Any], *keys: str) -> float:
    for key in keys:
        value = raw.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return 0.0


def _text(raw: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = raw.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


class CycleTracker:
    def __init__(self, config: CycleTrackerConfig | None = None) -> None:
        self._config = config or CycleTrackerConfig()
        self._results: Dict[str, _Group[BetResult]] = {}
        self._settlements: Dict[str, _Group[SettledLeg]] = {}

    @property
    def config(self) -> CycleTrackerConfig:
        return self._config

    @property
    def pending_results(self) -> int:
        return len(self._results)

    @property
    def pending_settlements(self) -> int:
        return len(self._settlements)

    def record_result(self, result: BetResult, now: float | None = None) -> CycleVerdict | None:
        if not result.cycle_id:
            if not result.success:
                LOGGER.warning("value bet %s failed at %s: %s", result.bet_id, result.bookie, result.error or "unknown error")
            return None

        if now is None:
            now = time.monotonic()
        group = self._results.setdefault(result.cycle_id, _Group(opened_at=now))
        group.items[result.bet_id] = result

        if len(group.items) < self._config.expected_legs:
            LOGGER.info(
                "waiting for more results for arb cycle %s: received %d/%d",
                result.cycle_id,
                len(group.items),
                self._config.expected_legs,
            )
            return None

        del self._results[result.cycle_id]
        verdict = CycleVerdict(cycle_id=result.cycle_id, results=tuple(group.items.values()))
        if verdict.all_succeeded:
            LOGGER.info("arb cycle %s placed on every bookie", result.cycle_id)
        else:
            LOGGER.warning(
                "arb cycle %s incomplete: %d/%d legs placed",
                result.cycle_id,
                sum(1 for item in verdict.results if item.success),
                len(verdict.results),
            )
        return verdict

    def record_settlement(self, payload: Mapping[str, Any], now: float | None = None) -> SettlementSummary | None:
        bet_id = _text(payload, "betId", "BetID", "bet_id")
        if bet_id is None:
            LOGGER.error("settlement without bet id ignored: %s", dict(payload))
            return None

        leg = SettledLeg(
            bet_id=bet_id,
            bookie=_text(payload, "bookie", "Bookie") or "unknown",
            stake=_number(payload, "stake", "Stake"),
            payout=_number(payload, "payout", "Return", "return"),
        )
        cycle_id = _text(payload, "cycleId", "arbCycleId", "ArbCycleID", "arb_cycle_id")

        if cycle_id is None:
            summary = SettlementSummary(cycle_id=None, legs=(leg,))
            LOGGER.info("value bet %s settled at %s: profit/loss %.2f", bet_id, leg.bookie, summary.profit)
            return summary

        if now is None:
            now = time.monotonic()
        group = self._settlements.setdefault(cycle_id, _Group(opened_at=now))
        group.items[bet_id] = leg
        if len(group.items) < self._config.expected_legs:
            return None

        del self._settlements[cycle_id]
        summary = SettlementSummary(cycle_id=cycle_id, legs=tuple(group.items.values()))
        LOGGER.info(
            "arb cycle %s settled: stake=%.2f payout=%.2f profit/loss=%.2f",
            cycle_id,
            summary.total_stake,
            summary.total_payout,
            summary.profit,
        )
        return summary

    def expire(self, now: float | None = None) -> int:
        if now is None:
            now = time.monotonic()
        removed = 0
        for store, window, label in (
            (self._results, self._config.result_window_seconds, "results"),
            (self._settlements, self._config.settlement_window_seconds, "settlements"),
        ):
            for cycle_id in [key for key, group in store.items() if now - group.opened_at > window]:
                group = store.pop(cycle_id)
                removed += 1
                LOGGER.warning(
                    "timeout waiting for %s of arb cycle %s; received %d/%d",
                    label,
                    cycle_id,
                    len(group.items),
                    self._config.expected_legs,
                )
        return removed
