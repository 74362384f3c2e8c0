"""Tests for the per-bookie execution worker pool."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from bet_coordinator.errors import BackpressureError, ExecutionFault, ExecutionRejection
from bet_coordinator.execution import BetExecutor, DryRunExecutor, ExecutionOutcome
from bet_coordinator.models import BetRequest, BetResult, BookieConfig
from bet_coordinator.worker_pool import ExecutionWorkerPool, RetryPolicy, WorkerPoolConfig

FAST = WorkerPoolConfig(
    bet_timeout_seconds=1.0,
    enqueue_timeout_seconds=0.05,
    close_timeout_seconds=1.0,
    retry=RetryPolicy(max_retries=2, retry_delay_seconds=0.0),
)


def _bet(bet_id: str = "b1", bookie: str = "A", cycle_id: str | None = None) -> BetRequest:
    return BetRequest(
        bet_id=bet_id,
        bookie=bookie,
        arb_cycle_id=cycle_id,
        match_id="M1",
        home_team="X",
        away_team="Y",
        match_time="2025-10-25 15:00:00",
        side="home",
        strategy="S1",
        odds=2.5,
        stake=10.0,
        search_query="X vs Y",
        event_id="E1",
        timestamp="2025-10-25T14:00:00+00:00",
    )


class _ScriptedExecutor(BetExecutor):
    """Raises or returns the scripted items in order, one per call."""

    name = "scripted"

    def __init__(self, *script) -> None:
        self.script = list(script)
        self.calls = 0

    async def execute(self, account: BookieConfig, bet: BetRequest) -> ExecutionOutcome:
        self.calls += 1
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step


class _SlowExecutor(BetExecutor):
    name = "slow"

    def __init__(self, delay: float) -> None:
        self.delay = delay

    async def execute(self, account: BookieConfig, bet: BetRequest) -> ExecutionOutcome:
        await asyncio.sleep(self.delay)
        return ExecutionOutcome(success=True, payout=1.0)


async def _run_one(executor: BetExecutor, bet: BetRequest, config: WorkerPoolConfig = FAST) -> list[BetResult]:
    results: list[BetResult] = []

    async def collect(result: BetResult) -> None:
        results.append(result)

    pool = ExecutionWorkerPool(BookieConfig(name="A"), executor, on_result=collect, config=config)
    await pool.start()
    await pool.submit(bet)
    await pool.join()
    await pool.close()
    return results


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class TestOutcomes:
    def test_dry_run_success(self) -> None:
        results = asyncio.run(_run_one(DryRunExecutor(), _bet()))
        assert len(results) == 1
        assert results[0].success and results[0].placed
        assert results[0].payout == 25.0
        assert results[0].status.value == "Success"

    def test_transient_fault_retried_then_succeeds(self) -> None:
        executor = _ScriptedExecutor(
            ExecutionFault("selector not found"),
            ExecutionOutcome(success=False, error="navigation timeout", transient=True),
            ExecutionOutcome(success=True, payout=5.0),
        )
        results = asyncio.run(_run_one(executor, _bet()))
        assert executor.calls == 3
        assert [r.success for r in results] == [True]

    def test_transient_fault_exhausts_retries(self) -> None:
        executor = _ScriptedExecutor(*[ExecutionFault("selector not found")] * 3)
        results = asyncio.run(_run_one(executor, _bet()))
        assert executor.calls == 3
        assert len(results) == 1
        assert not results[0].success
        assert "after 3 attempts" in results[0].error

    def test_rejection_not_retried(self) -> None:
        executor = _ScriptedExecutor(ExecutionRejection("odds changed"))
        results = asyncio.run(_run_one(executor, _bet()))
        assert executor.calls == 1
        assert results[0].error == "odds changed"
        assert results[0].status.value == "Failed"

    def test_non_transient_outcome_not_retried(self) -> None:
        executor = _ScriptedExecutor(ExecutionOutcome(success=False, error="insufficient balance"))
        results = asyncio.run(_run_one(executor, _bet()))
        assert executor.calls == 1
        assert results[0].error == "insufficient balance"

    def test_unexpected_exception_becomes_failed_result(self) -> None:
        executor = _ScriptedExecutor(RuntimeError("browser crashed"))
        results = asyncio.run(_run_one(executor, _bet()))
        assert executor.calls == 1
        assert "RuntimeError" in results[0].error

    def test_timeout_is_transient(self) -> None:
        config = WorkerPoolConfig(
            bet_timeout_seconds=0.01,
            close_timeout_seconds=1.0,
            retry=RetryPolicy(max_retries=1, retry_delay_seconds=0.0),
        )
        results = asyncio.run(_run_one(_SlowExecutor(delay=1.0), _bet(), config))
        assert len(results) == 1
        assert "timed out" in results[0].error

    def test_result_carries_cycle_id(self) -> None:
        results = asyncio.run(_run_one(DryRunExecutor(), _bet(cycle_id="C1")))
        assert results[0].cycle_id == "C1"

    def test_callback_failure_does_not_kill_worker(self) -> None:
        async def scenario() -> int:
            on_result = AsyncMock(side_effect=[RuntimeError("publish broke"), None])
            pool = ExecutionWorkerPool(BookieConfig(name="A"), DryRunExecutor(), on_result=on_result, config=FAST)
            await pool.start()
            await pool.submit(_bet("b1"))
            await pool.submit(_bet("b2"))
            await pool.join()
            await pool.close()
            return on_result.await_count

        assert asyncio.run(scenario()) == 2


# ---------------------------------------------------------------------------
# Backpressure and shutdown
# ---------------------------------------------------------------------------


class TestBackpressure:
    def test_full_queue_rejects_after_timeout(self) -> None:
        async def scenario() -> ExecutionWorkerPool:
            on_result = AsyncMock()
            config = WorkerPoolConfig(queue_size=1, enqueue_timeout_seconds=0.01)
            # Not started: nothing drains the queue.
            pool = ExecutionWorkerPool(BookieConfig(name="A"), DryRunExecutor(), on_result=on_result, config=config)
            await pool.submit(_bet("b1"))
            with pytest.raises(BackpressureError):
                await pool.submit(_bet("b2"))
            return pool

        pool = asyncio.run(scenario())
        assert pool.stats.submitted == 1
        assert pool.stats.rejected == 1

    def test_close_fails_queued_bets(self) -> None:
        async def scenario() -> list[BetResult]:
            results: list[BetResult] = []

            async def collect(result: BetResult) -> None:
                results.append(result)

            pool = ExecutionWorkerPool(BookieConfig(name="A"), DryRunExecutor(), on_result=collect, config=FAST)
            await pool.submit(_bet("b1"))
            await pool.close(drain=False)
            return results

        results = asyncio.run(scenario())
        assert [(r.bet_id, r.success) for r in results] == [("b1", False)]
        assert results[0].error == "worker pool closed before execution"

    def test_submit_after_close_rejected(self) -> None:
        async def scenario() -> None:
            pool = ExecutionWorkerPool(BookieConfig(name="A"), DryRunExecutor(), on_result=AsyncMock(), config=FAST)
            await pool.close()
            with pytest.raises(BackpressureError):
                await pool.submit(_bet())

        asyncio.run(scenario())

    def test_cancelled_execution_reports_failure(self) -> None:
        async def scenario() -> list[BetResult]:
            results: list[BetResult] = []

            async def collect(result: BetResult) -> None:
                results.append(result)

            config = WorkerPoolConfig(bet_timeout_seconds=10.0, close_timeout_seconds=0.01)
            pool = ExecutionWorkerPool(BookieConfig(name="A"), _SlowExecutor(delay=5.0), on_result=collect, config=config)
            await pool.start()
            await pool.submit(_bet())
            await asyncio.sleep(0.01)
            await pool.close()
            return results

        results = asyncio.run(scenario())
        assert len(results) == 1
        assert results[0].error == "execution cancelled at shutdown"


class TestConcurrency:
    def test_shared_limiter_caps_executions(self) -> None:
        class _Tracking(BetExecutor):
            name = "tracking"

            def __init__(self) -> None:
                self.active = 0
                self.peak = 0

            async def execute(self, account: BookieConfig, bet: BetRequest) -> ExecutionOutcome:
                self.active += 1
                self.peak = max(self.peak, self.active)
                await asyncio.sleep(0.01)
                self.active -= 1
                return ExecutionOutcome(success=True)

        async def scenario() -> int:
            executor = _Tracking()
            limiter = asyncio.Semaphore(2)
            config = WorkerPoolConfig(workers=3, close_timeout_seconds=1.0)
            pools = [
                ExecutionWorkerPool(BookieConfig(name=name), executor, on_result=AsyncMock(), config=config, limiter=limiter)
                for name in ("A", "B")
            ]
            for pool in pools:
                await pool.start()
            for index in range(6):
                await pools[index % 2].submit(_bet(f"b{index}", bookie=pools[index % 2].bookie))
            for pool in pools:
                await pool.join()
                await pool.close()
            return executor.peak

        assert asyncio.run(scenario()) == 2

    def test_update_account_rejects_other_bookie(self) -> None:
        pool = ExecutionWorkerPool(BookieConfig(name="A"), DryRunExecutor(), on_result=AsyncMock())
        pool.update_account(BookieConfig(name="A", base_url="https://a.example"))
        assert pool.account.base_url == "https://a.example"
        with pytest.raises(ValueError):
            pool.update_account(BookieConfig(name="B"))
