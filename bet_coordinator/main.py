from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from bet_coordinator.aggregator import ArbCycleAggregator
from bet_coordinator.config import AppSettings, load_settings
from bet_coordinator.config_source import FileConfigSource
from bet_coordinator.cycle_tracker import CycleTracker
from bet_coordinator.errors import CoordinatorError, StartupError, TransportError
from bet_coordinator.execution import BetExecutor, load_executor
from bet_coordinator.framework.dedupe import DedupeWindow
from bet_coordinator.framework.process_supervision import GracefulShutdown
from bet_coordinator.listener import BetListener, ListenerConfig
from bet_coordinator.logging_setup import configure_logging
from bet_coordinator.models import BookieConfig
from bet_coordinator.otp import OtpStore
from bet_coordinator.publisher import LifecyclePublisher
from bet_coordinator.router import DispatchRouter
from bet_coordinator.transport import InMemoryBus, MessageBus, NatsBus
from bet_coordinator.validation import IntakeGate

LOGGER = logging.getLogger(__name__)

_MEMORY_BUS_RECORD_LIMIT = 1000


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Bet intake coordinator: validate, aggregate and dispatch bets from the bus",
    )
    parser.add_argument(
        "--bookie",
        action="append",
        default=None,
        help="Bookie account this process owns (repeatable; overrides BOOKIE_ACCOUNTS)",
    )
    parser.add_argument(
        "--config-path",
        type=str,
        default=None,
        help="Bookie config JSON file (overrides BOOKIE_CONFIG_PATH)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use the dry-run executor regardless of BET_EXECUTOR",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Log level (overrides LOG_LEVEL)",
    )
    parser.add_argument(
        "--memory-bus",
        action="store_true",
        help="Run against an in-process bus instead of NATS",
    )
    return parser.parse_args(argv)


def apply_args(settings: AppSettings, args: argparse.Namespace) -> AppSettings:
    if args.bookie:
        settings = replace(settings, bookies=replace(settings.bookies, accounts=list(args.bookie)))
    if args.config_path:
        settings = replace(settings, bookies=replace(settings.bookies, config_path=args.config_path))
    if args.dry_run:
        settings = replace(settings, execution=replace(settings.execution, executor="dry_run"))
    if args.log_level:
        settings = replace(settings, log_level=args.log_level)
    return settings


def resolve_own_accounts(requested: Sequence[str], configs: Sequence[BookieConfig]) -> List[BookieConfig]:
    """Accounts this process serves. Empty ``requested`` means the first configured one."""
    if not configs:
        raise StartupError("no valid bookie configs found")
    by_name = {config.name: config for config in configs}
    if not requested:
        return [configs[0]]
    missing = [name for name in requested if name not in by_name]
    if missing:
        raise StartupError(f"bookie accounts not configured: {', '.join(missing)}")
    return [by_name[name] for name in requested]


class Coordinator:
    """Wires one listener per owned account around a shared router and publisher."""

    def __init__(
        self,
        settings: AppSettings,
        bus: MessageBus,
        executor: BetExecutor,
        source: FileConfigSource,
        configs: Sequence[BookieConfig],
        own_accounts: Sequence[BookieConfig],
        otp_store: OtpStore | None = None,
    ) -> None:
        self._settings = settings
        self._bus = bus
        self._executor = executor
        self._source = source
        self._configs = list(configs)
        self._own_accounts = list(own_accounts)
        self._otp_store = otp_store or OtpStore()
        self._publisher = LifecyclePublisher(bus, flush_timeout_seconds=settings.transport.flush_timeout_seconds)
        self._router = DispatchRouter(
            executor,
            on_result=self._publisher.publish_placed_result,
            config=settings.execution.router_config(),
        )
        self._listeners: Dict[str, BetListener] = {}
        self._reload_task: Optional[asyncio.Task[None]] = None

    @property
    def listeners(self) -> Dict[str, BetListener]:
        return self._listeners

    @property
    def router(self) -> DispatchRouter:
        return self._router

    @property
    def publisher(self) -> LifecyclePublisher:
        return self._publisher

    def _build_listener(self, account: BookieConfig) -> BetListener:
        intake = self._settings.intake
        known = [config.name for config in self._configs]
        return BetListener(
            self._bus,
            IntakeGate([account.name], known, DedupeWindow(intake.dedupe_config())),
            ArbCycleAggregator(intake.aggregator_config()),
            self._router,
            self._publisher,
            otp_store=self._otp_store,
            tracker=CycleTracker(self._settings.tracking.tracker_config(intake.expected_legs)),
            config=ListenerConfig(
                cleanup_interval_seconds=intake.cleanup_interval_seconds,
                shard_by_cycle=intake.shard_by_cycle,
                tracking_enabled=self._settings.tracking.enabled,
            ),
            name=account.name,
        )

    def _unserved_bookies(self, configs: Sequence[BookieConfig]) -> List[str]:
        own = {account.name for account in self._own_accounts}
        return sorted(config.name for config in configs if config.name not in own)

    async def start(self) -> None:
        if self._settings.intake.shard_by_cycle:
            unserved = self._unserved_bookies(self._configs)
            if unserved:
                # A cycle owner dispatches every leg, so it needs a pool for every bookie.
                raise StartupError(
                    "ARB_SHARD_BY_CYCLE requires this process to own every configured bookie; "
                    f"missing: {', '.join(unserved)}"
                )
        for account in self._own_accounts:
            self._router.add_account(account)
            self._listeners[account.name] = self._build_listener(account)
        await self._router.start()
        for listener in self._listeners.values():
            await listener.start()
        if self._settings.bookies.reload_seconds > 0:
            self._reload_task = asyncio.create_task(self._reload_loop(), name="config-reload")
        LOGGER.info(
            "coordinator started accounts=%s executor=%s shard_by_cycle=%s",
            ",".join(self._listeners),
            self._executor.name,
            self._settings.intake.shard_by_cycle,
        )

    def reload_configs(self) -> bool:
        """Apply the config file if its content changed. Returns True when applied."""
        configs = self._source.refresh()
        if configs is None:
            return False
        if not configs:
            LOGGER.warning("reloaded bookie config is empty; keeping %d accounts", len(self._configs))
            return False
        self._configs = configs
        for listener in self._listeners.values():
            listener.update_known_configs(configs)
        self._router.update_accounts(configs)
        names = {config.name for config in configs}
        for account in self._listeners:
            if account not in names:
                LOGGER.warning("owned account %s is no longer configured; its listener keeps running", account)
        if self._settings.intake.shard_by_cycle:
            unserved = self._unserved_bookies(configs)
            if unserved:
                LOGGER.warning("no execution pool for %s; arb cycles including them will be refused", ",".join(unserved))
        return True

    async def _reload_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.bookies.reload_seconds)
            try:
                self.reload_configs()
            except Exception:
                LOGGER.exception("bookie config reload failed")

    async def stop(self) -> None:
        if self._reload_task is not None:
            self._reload_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reload_task
            self._reload_task = None
        for listener in self._listeners.values():
            await listener.stop()
        await self._router.close(drain=True)
        await self._executor.aclose()


def build_bus(settings: AppSettings, use_memory: bool, client_name: str) -> MessageBus:
    if use_memory:
        return InMemoryBus(record_limit=_MEMORY_BUS_RECORD_LIMIT)
    return NatsBus(
        settings.transport.servers,
        client_name=client_name,
        connect_timeout_seconds=settings.transport.connect_timeout_seconds,
        flush_timeout_seconds=settings.transport.flush_timeout_seconds,
    )


async def run(settings: AppSettings, use_memory_bus: bool = False, shutdown: GracefulShutdown | None = None) -> None:
    source = FileConfigSource(settings.bookies.config_path)
    try:
        configs = source.list_bookie_configs()
    except (OSError, ValueError) as exc:
        raise StartupError(f"cannot load bookie configs from {source.path}: {exc}") from exc
    own_accounts = resolve_own_accounts(settings.bookies.accounts, configs)

    otp_store = OtpStore()
    try:
        executor = load_executor(settings.execution.executor, settings=settings, otp_store=otp_store)
    except (ImportError, AttributeError, TypeError, ValueError) as exc:
        raise StartupError(f"cannot load bet executor {settings.execution.executor!r}: {exc}") from exc
    bus = build_bus(settings, use_memory_bus, client_name="bet-coordinator-" + "-".join(a.name for a in own_accounts))
    coordinator = Coordinator(settings, bus, executor, source, configs, own_accounts, otp_store=otp_store)

    shutdown = shutdown or GracefulShutdown()
    shutdown.register_callback("coordinator", coordinator.stop)
    shutdown.register_callback("bus", bus.aclose)

    try:
        await bus.connect()
        await coordinator.start()
    except BaseException:
        await shutdown.run_callbacks()
        raise

    shutdown.install_signal_handlers()
    try:
        reason = await shutdown.wait()
        LOGGER.info("shutting down: %s", reason)
    finally:
        shutdown.remove_signal_handlers()
        await shutdown.run_callbacks()


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    settings = apply_args(load_settings(), args)
    configure_logging(settings.log_level, settings.log_file)
    try:
        asyncio.run(run(settings, use_memory_bus=args.memory_bus))
    except StartupError as exc:
        LOGGER.error("startup failed: %s", exc)
        return 1
    except TransportError as exc:
        LOGGER.error("bus connection failed: %s", exc)
        return 1
    except CoordinatorError as exc:
        LOGGER.error("coordinator stopped with error: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
