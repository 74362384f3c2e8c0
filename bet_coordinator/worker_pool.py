"""Bounded execution worker pool for one bookie account.

Each pool owns a bounded queue and a fixed number of worker tasks bound
to a single bookie account. Workers pull one bet at a time, call the
execution capability under a per-bet timeout, and report exactly one
terminal ``BetResult`` per bet through the result callback.

A shared semaphore (owned by the router) caps concurrent executions
across every pool in the process, since each execution holds one
browser automation context.

Usage::

    pool = ExecutionWorkerPool(account, executor, on_result=publisher.publish_placed_result)
    await pool.start()
    await pool.submit(bet)
    ...
    await pool.close()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List

from bet_coordinator.errors import BackpressureError, ExecutionFault, ExecutionRejection
from bet_coordinator.execution import BetExecutor, ExecutionOutcome
from bet_coordinator.models import BetRequest, BetResult, BookieConfig

LOGGER = logging.getLogger(__name__)

ResultCallback = Callable[[BetResult], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy for transient execution faults.

    Parameters
    ----------
    max_retries:
        Retries after the first attempt. Business rejections are
        never retried. Default 2.
    retry_delay_seconds:
        Fixed delay between attempts. Default 2.0.
    """

    max_retries: int = 2
    retry_delay_seconds: float = 2.0


@dataclass(frozen=True)
class WorkerPoolConfig:
    """Configuration for one bookie's worker pool.

    Parameters
    ----------
    workers:
        Worker tasks in this pool. Default 1.
    queue_size:
        Bounded queue capacity. Default 32.
    bet_timeout_seconds:
        Per-attempt execution timeout. Default 30.
    enqueue_timeout_seconds:
        How long ``submit`` waits on a full queue before rejecting.
        Default 5.
    close_timeout_seconds:
        How long ``close`` waits for queued work to drain. Default 60.
    """

    workers: int = 1
    queue_size: int = 32
    bet_timeout_seconds: float = 30.0
    enqueue_timeout_seconds: float = 5.0
    close_timeout_seconds: float = 60.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)


# ---------------------------------------------------------------------------
# Work item + stats
# ---------------------------------------------------------------------------


@dataclass
class WorkItem:
    bet: BetRequest
    enqueued_at: float = field(default_factory=time.monotonic)
    attempts: int = 0


@dataclass
class PoolStats:
    submitted: int = 0
    rejected: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timed_out: int = 0

    @property
    def completed(self) -> int:
        return self.succeeded + self.failed


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class ExecutionWorkerPool:
    def __init__(
        self,
        account: BookieConfig,
        executor: BetExecutor,
        on_result: ResultCallback,
        config: WorkerPoolConfig | None = None,
        limiter: asyncio.Semaphore | None = None,
    ) -> None:
        self._account = account
        self._executor = executor
        self._on_result = on_result
        self._config = config or WorkerPoolConfig()
        self._limiter = limiter
        self._queue: asyncio.Queue[WorkItem] = asyncio.Queue(maxsize=max(1, self._config.queue_size))
        self._workers: List[asyncio.Task[None]] = []
        self._stats = PoolStats()
        self._closing = False

    @property
    def bookie(self) -> str:
        return self._account.name

    @property
    def account(self) -> BookieConfig:
        return self._account

    @property
    def config(self) -> WorkerPoolConfig:
        return self._config

    @property
    def stats(self) -> PoolStats:
        return self._stats

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def update_account(self, account: BookieConfig) -> None:
        """Swap the account config used for subsequent executions (hot reload)."""
        if account.name != self._account.name:
            raise ValueError(f"pool for {self._account.name} cannot take config for {account.name}")
        self._account = account

    async def start(self) -> None:
        if self._workers:
            return
        for index in range(max(1, self._config.workers)):
            self._workers.append(
                asyncio.create_task(self._worker(index), name=f"exec-{self.bookie}-{index}")
            )
        LOGGER.info("worker pool for %s started with %d workers", self.bookie, len(self._workers))

    async def submit(self, bet: BetRequest) -> None:
        """Enqueue a bet, waiting up to the enqueue timeout when the queue is full."""
        if self._closing:
            raise BackpressureError(f"worker pool for {self.bookie} is closing")

        item = WorkItem(bet=bet)
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            LOGGER.warning(
                "worker queue for %s full (%d); delaying bet %s",
                self.bookie,
                self._queue.maxsize,
                bet.bet_id,
            )
            try:
                await asyncio.wait_for(self._queue.put(item), timeout=self._config.enqueue_timeout_seconds)
            except asyncio.TimeoutError:
                self._stats.rejected += 1
                raise BackpressureError(
                    f"worker queue for {self.bookie} stayed full for "
                    f"{self._config.enqueue_timeout_seconds:.1f}s"
                ) from None
        self._stats.submitted += 1

    async def join(self) -> None:
        await self._queue.join()

    async def close(self, drain: bool = True) -> None:
        """Stop the pool. Bets still queued afterwards get a Failed result."""
        self._closing = True
        if drain and self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=self._config.close_timeout_seconds)
            except asyncio.TimeoutError:
                LOGGER.warning("worker pool for %s did not drain within %.0fs", self.bookie, self._config.close_timeout_seconds)

        for task in self._workers:
            task.cancel()
        for task in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers.clear()

        while not self._queue.empty():
            item = self._queue.get_nowait()
            self._queue.task_done()
            await self._emit(BetResult.failed(item.bet, "worker pool closed before execution"))
        LOGGER.info("worker pool for %s closed", self.bookie)

    async def _worker(self, index: int) -> None:
        while True:
            item = await self._queue.get()
            try:
                try:
                    result = await self._run(item)
                except asyncio.CancelledError:
                    await self._emit(BetResult.failed(item.bet, "execution cancelled at shutdown"))
                    raise
                await self._emit(result)
            finally:
                self._queue.task_done()

    async def _run(self, item: WorkItem) -> BetResult:
        bet = item.bet
        retry = self._config.retry
        last_error = "no attempt made"

        while True:
            item.attempts += 1
            outcome, retryable = await self._attempt(bet)
            if outcome.success:
                self._stats.succeeded += 1
                return BetResult(
                    bet_id=bet.bet_id,
                    cycle_id=bet.arb_cycle_id,
                    bookie=bet.bookie,
                    success=True,
                    placed=True,
                    payout=outcome.payout,
                )

            last_error = outcome.error or "execution failed"
            if not retryable or item.attempts > retry.max_retries:
                break

            self._stats.retried += 1
            LOGGER.warning(
                "transient failure for bet %s on %s (attempt %d/%d): %s; retrying in %.1fs",
                bet.bet_id,
                self.bookie,
                item.attempts,
                retry.max_retries + 1,
                last_error,
                retry.retry_delay_seconds,
            )
            await asyncio.sleep(retry.retry_delay_seconds)

        self._stats.failed += 1
        if item.attempts > 1:
            last_error = f"{last_error} (after {item.attempts} attempts)"
        LOGGER.error("bet %s failed on %s: %s", bet.bet_id, self.bookie, last_error)
        return BetResult.failed(bet, last_error)

    async def _attempt(self, bet: BetRequest) -> tuple[ExecutionOutcome, bool]:
        """One execution call. Returns (outcome, retryable)."""
        timeout = self._config.bet_timeout_seconds
        async with self._slot():
            try:
                outcome = await asyncio.wait_for(
                    self._executor.execute(self._account, bet),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                self._stats.timed_out += 1
                return ExecutionOutcome(success=False, error=f"execution timed out after {timeout:.0f}s"), True
            except ExecutionFault as exc:
                return ExecutionOutcome(success=False, error=str(exc) or "transient execution fault"), True
            except ExecutionRejection as exc:
                return ExecutionOutcome(success=False, error=str(exc) or "bet rejected"), False
            except Exception as exc:
                LOGGER.exception("executor %s raised for bet %s", self._executor.name, bet.bet_id)
                return ExecutionOutcome(success=False, error=f"{type(exc).__name__}: {exc}"), False
        return outcome, (not outcome.success and outcome.transient)

    @contextlib.asynccontextmanager
    async def _slot(self):
        if self._limiter is None:
            yield
            return
        async with self._limiter:
            yield

    async def _emit(self, result: BetResult) -> None:
        try:
            await self._on_result(result)
        except Exception:
            LOGGER.exception("result callback failed for bet %s", result.bet_id)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "bookie": self.bookie,
            "workers": len(self._workers),
            "queued": self.queued,
            "submitted": self._stats.submitted,
            "rejected": self._stats.rejected,
            "succeeded": self._stats.succeeded,
            "failed": self._stats.failed,
            "retried": self._stats.retried,
            "timed_out": self._stats.timed_out,
        }
