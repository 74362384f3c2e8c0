"""End-to-end tests for the bet listener over the in-memory bus."""

from __future__ import annotations

import asyncio
import hashlib
import time
from unittest.mock import AsyncMock

from bet_coordinator import codec
from bet_coordinator.aggregator import ArbCycleAggregator, cycle_owner
from bet_coordinator.execution import DryRunExecutor
from bet_coordinator.framework.dedupe import DedupeConfig, DedupeWindow
from bet_coordinator.listener import BetListener, ListenerConfig
from bet_coordinator.models import BookieConfig
from bet_coordinator.publisher import LifecyclePublisher
from bet_coordinator.router import DispatchRouter, RouterConfig
from bet_coordinator.transport import InMemoryBus
from bet_coordinator.validation import DropReason, IntakeAction, IntakeGate
from bet_coordinator.worker_pool import RetryPolicy, WorkerPoolConfig


def _payload(bookie: str = "A", cycle: str | None = None, side: str = "home", match: str = "M1") -> dict:
    parts = [cycle] if cycle else []
    parts += [match, "X", "Y", "2025-10-25 15:00:00", bookie, side, "S1"]
    row = {
        "betId": hashlib.sha256("_".join(parts).encode("utf-8")).hexdigest(),
        "bookie": bookie,
        "matchId": match,
        "homeTeam": "X",
        "awayTeam": "Y",
        "matchTime": "2025-10-25 15:00:00",
        "side": side,
        "strategy": "S1",
        "odds": 2.0,
        "stake": 10.0,
        "searchQuery": "X vs Y",
        "eventId": "E1",
    }
    if cycle:
        row["arbCycleId"] = cycle
    return row


def _leg(bookie: str, cycle: str) -> dict:
    return _payload(bookie=bookie, cycle=cycle, side="home" if bookie == "A" else "away")


class _Stack:
    """Bus, publisher and router shared by one or more listeners, like one process."""

    def __init__(self, pools: tuple[str, ...] = ("A",)) -> None:
        self.bus = InMemoryBus()
        self.publisher = LifecyclePublisher(self.bus)
        self.router = DispatchRouter(
            DryRunExecutor(),
            on_result=self.publisher.publish_placed_result,
            config=RouterConfig(
                pool=WorkerPoolConfig(close_timeout_seconds=1.0, retry=RetryPolicy(retry_delay_seconds=0.0)),
            ),
        )
        self.pools = pools
        self.listeners: list[BetListener] = []

    async def start(self) -> None:
        await self.bus.connect()
        for name in self.pools:
            self.router.add_account(BookieConfig(name=name))
        await self.router.start()

    def listener(
        self,
        own: str = "A",
        known: tuple[str, ...] = ("A", "B"),
        dedupe: DedupeWindow | None = None,
        **config,
    ) -> BetListener:
        listener = BetListener(
            self.bus,
            IntakeGate([own], known, dedupe or DedupeWindow()),
            ArbCycleAggregator(),
            self.router,
            self.publisher,
            config=ListenerConfig(cleanup_interval_seconds=60.0, **config),
        )
        self.listeners.append(listener)
        return listener

    async def close(self) -> None:
        for listener in self.listeners:
            await listener.stop()
        await self.router.close()
        await self.bus.aclose()

    def decoded(self, topic: str) -> list[dict]:
        return [codec.decode(message.data) for message in self.bus.published_on(topic)]


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Value bets
# ---------------------------------------------------------------------------


class TestValueBets:
    def test_one_ack_then_one_result(self) -> None:
        async def scenario() -> _Stack:
            stack = _Stack()
            await stack.start()
            await stack.listener().start()
            await stack.bus.publish("bets.incoming", codec.encode(_payload()))
            await _wait_until(lambda: stack.bus.published_on("bets.placed"))
            await stack.close()
            return stack

        stack = asyncio.run(scenario())
        subjects = [m.subject for m in stack.bus.published if m.subject != "bets.incoming"]
        assert subjects == ["bets.ack", "bets.placed"]
        [ack] = stack.decoded("bets.ack")
        assert ack["status"] == "Received"
        assert ack["ackType"] == "value_bet"
        [placed] = stack.decoded("bets.placed")
        assert placed["betId"] == _payload()["betId"]
        assert placed["status"] == "Success"

    def test_duplicate_acked_once(self) -> None:
        async def scenario() -> tuple[_Stack, BetListener]:
            stack = _Stack()
            await stack.start()
            listener = stack.listener(tracking_enabled=False)
            data = codec.encode(_payload())
            await listener.handle_bet_message(data)
            decision = await listener.handle_bet_message(data)
            assert decision.reason is DropReason.DUPLICATE
            await stack.close()
            return stack, listener

        stack, listener = asyncio.run(scenario())
        assert len(stack.decoded("bets.ack")) == 1
        assert len(stack.decoded("bets.placed")) == 1
        assert listener.stats.dropped == {"duplicate": 1}

    def test_tampered_id_produces_nothing(self) -> None:
        async def scenario() -> _Stack:
            stack = _Stack()
            await stack.start()
            listener = stack.listener()
            raw = _payload()
            raw["side"] = "away"
            decision = await listener.handle_bet_message(codec.encode(raw))
            assert decision.reason is DropReason.BET_ID_MISMATCH
            await stack.close()
            return stack

        assert asyncio.run(scenario()).bus.published == []

    def test_other_accounts_value_bet_ignored(self) -> None:
        async def scenario() -> _Stack:
            stack = _Stack()
            await stack.start()
            listener = stack.listener(own="A")
            decision = await listener.handle_bet_message(codec.encode(_payload(bookie="B")))
            assert decision.reason is DropReason.NOT_OWNED
            await stack.close()
            return stack

        stack = asyncio.run(scenario())
        assert stack.bus.published == []
        assert stack.router.pool_for("A").stats.submitted == 0


# ---------------------------------------------------------------------------
# Arbitrage cycles
# ---------------------------------------------------------------------------


class TestArbCycles:
    def test_quorum_dispatches_own_leg_only(self) -> None:
        async def scenario() -> _Stack:
            stack = _Stack(pools=("A",))
            await stack.start()
            listener = stack.listener(own="A", tracking_enabled=False)
            first = await listener.handle_bet_message(codec.encode(_leg("B", "C1")))
            assert first.action is IntakeAction.COLLECT_ARB_LEG
            assert stack.decoded("bets.ack") == []
            await listener.handle_bet_message(codec.encode(_leg("A", "C1")))
            await stack.close()
            return stack

        stack = asyncio.run(scenario())
        [ack] = stack.decoded("bets.ack")
        assert ack["betId"] == _leg("A", "C1")["betId"]
        assert ack["ackType"] == "arb_leg"
        placed = stack.decoded("bets.placed")
        assert [(p["bookie"], p["cycleId"]) for p in placed] == [("A", "C1")]

    def test_lone_leg_never_dispatched(self) -> None:
        async def scenario() -> _Stack:
            stack = _Stack()
            await stack.start()
            listener = stack.listener(own="A", tracking_enabled=False)
            await listener.handle_bet_message(codec.encode(_leg("A", "C1")))
            assert stack.router.pool_for("A").stats.submitted == 0
            expired = await listener.sweep(now=time.monotonic() + 31.0)
            assert [cycle.cycle_id for cycle in expired] == ["C1"]
            assert "C1" not in listener.aggregator
            await stack.close()
            return stack

        stack = asyncio.run(scenario())
        assert stack.router.pool_for("A").stats.submitted == 0
        [placed] = stack.decoded("bets.placed")
        assert placed["status"] == "Failed"
        assert placed["error"] == "arb cycle C1 timed out with 1/2 legs"

    def test_expired_foreign_leg_gets_no_result(self) -> None:
        async def scenario() -> _Stack:
            stack = _Stack()
            await stack.start()
            listener = stack.listener(own="A", tracking_enabled=False)
            await listener.handle_bet_message(codec.encode(_leg("B", "C1")))
            await listener.sweep(now=time.monotonic() + 31.0)
            await stack.close()
            return stack

        assert asyncio.run(scenario()).bus.published == []

    def test_duplicate_bookie_leg_not_acked(self) -> None:
        async def scenario() -> _Stack:
            stack = _Stack()
            await stack.start()
            listener = stack.listener(own="A", tracking_enabled=False)
            await listener.handle_bet_message(codec.encode(_leg("A", "C1")))
            second = _payload(bookie="A", cycle="C1", side="draw")
            await listener.handle_bet_message(codec.encode(second))
            await stack.close()
            return stack

        stack = asyncio.run(scenario())
        assert [a["betId"] for a in stack.decoded("bets.ack")] == [_leg("A", "C1")["betId"]]

    def test_two_listeners_in_one_process(self) -> None:
        async def scenario() -> _Stack:
            stack = _Stack(pools=("A", "B"))
            await stack.start()
            await stack.listener(own="A").start()
            await stack.listener(own="B").start()
            await stack.bus.publish("bets.incoming", codec.encode(_leg("A", "C1")))
            await stack.bus.publish("bets.incoming", codec.encode(_leg("B", "C1")))
            await _wait_until(lambda: len(stack.bus.published_on("bets.placed")) == 2)
            await stack.close()
            return stack

        stack = asyncio.run(scenario())
        assert len(stack.decoded("bets.ack")) == 2
        assert sorted(p["bookie"] for p in stack.decoded("bets.placed")) == ["A", "B"]
        assert stack.bus.published_on("*.cancel") == []

    def test_shard_owner_dispatches_every_leg(self) -> None:
        owned = next(f"C{i}" for i in range(100) if cycle_owner(f"C{i}", ["A", "B"]) == "A")
        foreign = next(f"C{i}" for i in range(100) if cycle_owner(f"C{i}", ["A", "B"]) == "B")

        async def scenario() -> _Stack:
            stack = _Stack(pools=("A", "B"))
            await stack.start()
            listener = stack.listener(own="A", shard_by_cycle=True, tracking_enabled=False)
            for cycle in (owned, foreign):
                await listener.handle_bet_message(codec.encode(_leg("A", cycle)))
                await listener.handle_bet_message(codec.encode(_leg("B", cycle)))
            await stack.close()
            return stack

        stack = asyncio.run(scenario())
        placed = stack.decoded("bets.placed")
        assert sorted((p["cycleId"], p["bookie"]) for p in placed) == [(owned, "A"), (owned, "B")]

    def test_shard_owner_without_counterpart_pool_places_nothing(self) -> None:
        owned = next(f"C{i}" for i in range(100) if cycle_owner(f"C{i}", ["A", "B"]) == "A")

        async def scenario() -> _Stack:
            stack = _Stack(pools=("A",))
            await stack.start()
            listener = stack.listener(own="A", shard_by_cycle=True, tracking_enabled=False)
            await listener.handle_bet_message(codec.encode(_leg("A", owned)))
            await listener.handle_bet_message(codec.encode(_leg("B", owned)))
            await stack.close()
            return stack

        stack = asyncio.run(scenario())
        placed = stack.decoded("bets.placed")
        assert sorted(p["bookie"] for p in placed) == ["A", "B"]
        assert all(p["status"] == "Failed" for p in placed)
        assert stack.router.pool_for("A").stats.succeeded == 0


# ---------------------------------------------------------------------------
# Robustness
# ---------------------------------------------------------------------------


class TestRobustness:
    def test_poison_message_does_not_stop_loop(self) -> None:
        async def scenario() -> tuple[_Stack, BetListener]:
            stack = _Stack()
            await stack.start()
            listener = stack.listener()
            await listener.start()
            await stack.bus.publish("bets.incoming", b"\xc1")
            await stack.bus.publish("bets.incoming", b"")
            await stack.bus.publish("bets.incoming", codec.encode(["not", "a", "map"]))
            await stack.bus.publish("bets.incoming", codec.encode(_payload()))
            await _wait_until(lambda: stack.bus.published_on("bets.placed"))
            await stack.close()
            return stack, listener

        stack, listener = asyncio.run(scenario())
        assert listener.stats.decode_failures == 2
        assert listener.stats.dropped == {"malformed": 1}
        assert len(stack.decoded("bets.ack")) == 1

    def test_handler_error_is_logged_and_skipped(self) -> None:
        async def scenario() -> tuple[_Stack, BetListener]:
            stack = _Stack()
            await stack.start()
            listener = stack.listener(tracking_enabled=False)
            real_dispatch = stack.router.dispatch
            stack.router.dispatch = AsyncMock(side_effect=[RuntimeError("boom"), None])
            await listener.start()
            await stack.bus.publish("bets.incoming", codec.encode(_payload(match="M1")))
            await stack.bus.publish("bets.incoming", codec.encode(_payload(match="M2")))
            await _wait_until(lambda: stack.router.dispatch.await_count == 2)
            stack.router.dispatch = real_dispatch
            await stack.close()
            return stack, listener

        stack, listener = asyncio.run(scenario())
        assert listener.stats.handler_errors == 1
        assert len(stack.decoded("bets.ack")) == 2

    def test_ack_publish_failure_does_not_block_dispatch(self) -> None:
        async def scenario() -> _Stack:
            stack = _Stack()
            await stack.start()
            listener = stack.listener(tracking_enabled=False)
            stack.bus.fail_publish = True
            await listener.handle_bet_message(codec.encode(_payload()))
            await stack.router.pool_for("A").join()
            assert stack.router.pool_for("A").stats.succeeded == 1
            await stack.close()
            return stack

        stack = asyncio.run(scenario())
        assert stack.publisher.stats.failures == 2

    def test_sweep_truncates_dedup_window(self) -> None:
        async def scenario() -> BetListener:
            stack = _Stack()
            await stack.start()
            listener = stack.listener(dedupe=DedupeWindow(DedupeConfig(high_water_mark=1)), tracking_enabled=False)
            await listener.handle_bet_message(codec.encode(_payload(match="M1")))
            await listener.handle_bet_message(codec.encode(_payload(match="M2")))
            assert len(listener.gate.dedupe) == 2
            await listener.sweep()
            await stack.close()
            return listener

        assert len(asyncio.run(scenario()).gate.dedupe) == 0

    def test_config_reload_changes_known_bookies(self) -> None:
        async def scenario() -> BetListener:
            stack = _Stack()
            await stack.start()
            listener = stack.listener(own="A", known=("A", "B"), tracking_enabled=False)
            listener.update_known_configs([BookieConfig(name="A"), BookieConfig(name="C")])
            decision = await listener.handle_bet_message(codec.encode(_leg("B", "C1")))
            assert decision.reason is DropReason.UNKNOWN_BOOKIE
            await stack.close()
            return listener

        assert asyncio.run(scenario()).gate.known_bookies == frozenset({"A", "C"})


# ---------------------------------------------------------------------------
# OTP, results and settlements
# ---------------------------------------------------------------------------


class TestSideChannels:
    def test_otp_for_own_account_only(self) -> None:
        async def scenario() -> BetListener:
            stack = _Stack()
            await stack.start()
            listener = stack.listener(own="A")
            assert await listener.handle_otp_message(codec.encode({"Bookie": "A", "Otp": "111", "Status": "new"}))
            assert not await listener.handle_otp_message(codec.encode({"bookie": "B", "otp": "222"}))
            assert not await listener.handle_otp_message(codec.encode({"bookie": "A"}))
            await stack.close()
            return listener

        listener = asyncio.run(scenario())
        assert listener.otp_store.get("A").otp == "111"
        assert listener.otp_store.get("B") is None

    def test_partial_cycle_cancels_own_successful_leg(self) -> None:
        async def scenario() -> tuple[_Stack, list[str], list[str]]:
            stack = _Stack()
            await stack.start()
            listener_a = stack.listener(own="A")
            listener_b = stack.listener(own="B")
            success = {"betId": "a1", "cycleId": "C1", "bookie": "A", "success": True, "placed": True}
            failure = {"betId": "b1", "cycleId": "C1", "bookie": "B", "success": False, "error": "odds changed"}
            cancelled_a: list[str] = []
            cancelled_b: list[str] = []
            for payload in (success, failure):
                cancelled_a += await listener_a.handle_result_message(codec.encode(payload))
                cancelled_b += await listener_b.handle_result_message(codec.encode(payload))
            await stack.close()
            return stack, cancelled_a, cancelled_b

        stack, cancelled_a, cancelled_b = asyncio.run(scenario())
        assert cancelled_a == ["a1"]
        assert cancelled_b == []
        [cancel] = stack.decoded("A.cancel")
        assert cancel["betId"] == "a1"
        assert cancel["cycleId"] == "C1"

    def test_settlement_profit(self) -> None:
        async def scenario() -> list:
            stack = _Stack()
            await stack.start()
            listener = stack.listener()
            profits = [
                await listener.handle_settlement_message(
                    codec.encode({"BetID": "a1", "ArbCycleID": "C1", "Stake": 10, "Return": 21})
                ),
                await listener.handle_settlement_message(
                    codec.encode({"BetID": "b1", "ArbCycleID": "C1", "Stake": 10, "Return": 0})
                ),
            ]
            await stack.close()
            return profits

        first, second = asyncio.run(scenario())
        assert first is None
        assert second == 1.0
