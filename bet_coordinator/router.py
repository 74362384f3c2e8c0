"""Dispatch router: hand bundles to per-bookie worker pools.

A value bet goes to the pool for its bookie. An arbitrage bundle is
split leg by leg and each leg goes to the pool for its *own* bookie, so
no worker ever sees or executes a counterpart leg.

Every leg the router is asked to dispatch ends in exactly one terminal
result: either the pool reports it after execution, or the router
reports a Failed result itself when no pool exists or the pool rejects
it under backpressure. An arbitrage bundle with any leg that has no pool
is refused whole: every planned leg gets a Failed result and none is
submitted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Collection, Dict, Iterable, List, Optional, Tuple

from bet_coordinator.errors import BackpressureError
from bet_coordinator.execution import BetExecutor
from bet_coordinator.models import BetKind, BetRequest, BetResult, BookieConfig, DispatchBundle
from bet_coordinator.worker_pool import ExecutionWorkerPool, ResultCallback, WorkerPoolConfig

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouterConfig:
    """Configuration for the dispatch router.

    Parameters
    ----------
    max_concurrency:
        Global ceiling on concurrent executions across all pools.
        Bounded by browser-context cost. Default 2.
    pool:
        Per-bookie worker pool configuration.
    """

    max_concurrency: int = 2
    pool: WorkerPoolConfig = field(default_factory=WorkerPoolConfig)


@dataclass
class DispatchReport:
    accepted: List[BetRequest] = field(default_factory=list)
    rejected: List[Tuple[BetRequest, str]] = field(default_factory=list)
    skipped: List[BetRequest] = field(default_factory=list)


def plan_legs(bundle: DispatchBundle, bookies: Optional[Collection[str]] = None) -> List[BetRequest]:
    """Legs of ``bundle`` this router should dispatch (all, or only ``bookies``)."""
    if bookies is None:
        return list(bundle.legs)
    return [leg for leg in bundle.legs if leg.bookie in bookies]


class DispatchRouter:
    def __init__(
        self,
        executor: BetExecutor,
        on_result: ResultCallback,
        config: RouterConfig | None = None,
    ) -> None:
        self._executor = executor
        self._on_result = on_result
        self._config = config or RouterConfig()
        self._limiter = asyncio.Semaphore(max(1, self._config.max_concurrency))
        self._pools: Dict[str, ExecutionWorkerPool] = {}
        self._started = False

    @property
    def config(self) -> RouterConfig:
        return self._config

    @property
    def bookies(self) -> List[str]:
        return list(self._pools.keys())

    def pool_for(self, bookie: str) -> ExecutionWorkerPool | None:
        return self._pools.get(bookie)

    def add_account(self, account: BookieConfig) -> ExecutionWorkerPool:
        existing = self._pools.get(account.name)
        if existing is not None:
            existing.update_account(account)
            return existing
        pool = ExecutionWorkerPool(
            account,
            self._executor,
            on_result=self._on_result,
            config=self._config.pool,
            limiter=self._limiter,
        )
        self._pools[account.name] = pool
        return pool

    def update_accounts(self, accounts: Iterable[BookieConfig]) -> None:
        """Refresh configs of pools already running (hot reload). No pools are added or removed."""
        for account in accounts:
            pool = self._pools.get(account.name)
            if pool is not None:
                pool.update_account(account)

    async def start(self) -> None:
        for pool in self._pools.values():
            await pool.start()
        self._started = True
        LOGGER.info(
            "dispatch router started pools=%s max_concurrency=%d",
            ",".join(sorted(self._pools)) or "(none)",
            self._config.max_concurrency,
        )

    async def dispatch(
        self,
        bundle: DispatchBundle,
        only_bookies: Optional[Collection[str]] = None,
    ) -> DispatchReport:
        report = DispatchReport()
        planned = plan_legs(bundle, only_bookies)
        report.skipped = [leg for leg in bundle.legs if leg not in planned]

        unrouted = sorted({leg.bookie for leg in planned if leg.bookie not in self._pools})
        if bundle.kind is BetKind.ARB and unrouted:
            # Placing only some legs would leave a one-sided position.
            reason = f"arb cycle {bundle.cycle_id} has no execution pool for bookie {','.join(unrouted)}"
            LOGGER.error("refusing to dispatch %d legs: %s", len(planned), reason)
            for leg in planned:
                report.rejected.append((leg, reason))
                await self._reject(leg, reason)
            return report

        for leg in planned:
            pool = self._pools.get(leg.bookie)
            if pool is None:
                reason = f"no execution pool for bookie {leg.bookie}"
                LOGGER.error("cannot dispatch bet %s: %s", leg.bet_id, reason)
                report.rejected.append((leg, reason))
                await self._reject(leg, reason)
                continue
            try:
                await pool.submit(leg)
            except BackpressureError as exc:
                LOGGER.error("dispatch rejected for bet %s: %s", leg.bet_id, exc)
                report.rejected.append((leg, str(exc)))
                await self._reject(leg, str(exc))
                continue
            report.accepted.append(leg)

        if bundle.cycle_id:
            LOGGER.info(
                "dispatched arb cycle %s: accepted=%d rejected=%d skipped=%d",
                bundle.cycle_id,
                len(report.accepted),
                len(report.rejected),
                len(report.skipped),
            )
        return report

    async def close(self, drain: bool = True) -> None:
        for pool in self._pools.values():
            await pool.close(drain=drain)
        self._started = False

    async def _reject(self, bet: BetRequest, reason: str) -> None:
        try:
            await self._on_result(BetResult.failed(bet, reason))
        except Exception:
            LOGGER.exception("result callback failed for rejected bet %s", bet.bet_id)
