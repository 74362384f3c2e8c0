from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import find_dotenv, load_dotenv

from bet_coordinator.aggregator import AggregatorConfig
from bet_coordinator.cycle_tracker import CycleTrackerConfig
from bet_coordinator.framework.dedupe import DedupeConfig
from bet_coordinator.router import RouterConfig
from bet_coordinator.worker_pool import RetryPolicy, WorkerPoolConfig


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_csv(value: str | None) -> List[str]:
    if value is None or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass(frozen=True)
class TransportSettings:
    servers: List[str] = field(default_factory=lambda: ["nats://localhost:4222"])
    connect_timeout_seconds: float = 5.0
    flush_timeout_seconds: float = 2.0


@dataclass(frozen=True)
class BookieSettings:
    accounts: List[str] = field(default_factory=list)
    config_path: str = "config/bookies.json"
    reload_seconds: float = 300.0


@dataclass(frozen=True)
class IntakeSettings:
    dedup_high_water: int = 10000
    expected_legs: int = 2
    stale_seconds: float = 30.0
    shard_by_cycle: bool = False
    cleanup_interval_seconds: float = 10.0

    def dedupe_config(self) -> DedupeConfig:
        return DedupeConfig(high_water_mark=self.dedup_high_water)

    def aggregator_config(self) -> AggregatorConfig:
        return AggregatorConfig(expected_legs=self.expected_legs, stale_after_seconds=self.stale_seconds)


@dataclass(frozen=True)
class ExecutionSettings:
    max_concurrency: int = 2
    workers_per_bookie: int = 1
    queue_size: int = 32
    enqueue_timeout_seconds: float = 5.0
    bet_timeout_seconds: float = 30.0
    max_retries: int = 2
    retry_delay_seconds: float = 2.0
    executor: str = "dry_run"

    def router_config(self) -> RouterConfig:
        return RouterConfig(
            max_concurrency=self.max_concurrency,
            pool=WorkerPoolConfig(
                workers=self.workers_per_bookie,
                queue_size=self.queue_size,
                bet_timeout_seconds=self.bet_timeout_seconds,
                enqueue_timeout_seconds=self.enqueue_timeout_seconds,
                retry=RetryPolicy(
                    max_retries=self.max_retries,
                    retry_delay_seconds=self.retry_delay_seconds,
                ),
            ),
        )


@dataclass(frozen=True)
class TrackingSettings:
    enabled: bool = True
    result_window_seconds: float = 120.0
    settlement_window_seconds: float = 86400.0

    def tracker_config(self, expected_legs: int) -> CycleTrackerConfig:
        return CycleTrackerConfig(
            expected_legs=expected_legs,
            result_window_seconds=self.result_window_seconds,
            settlement_window_seconds=self.settlement_window_seconds,
        )


@dataclass(frozen=True)
class AppSettings:
    log_level: str
    log_file: str | None
    transport: TransportSettings
    bookies: BookieSettings
    intake: IntakeSettings
    execution: ExecutionSettings
    tracking: TrackingSettings = field(default_factory=TrackingSettings)


def load_settings() -> AppSettings:
    load_dotenv(find_dotenv(usecwd=True), override=False)

    config_path = os.getenv("BOOKIE_CONFIG_PATH") or "config/bookies.json"
    config_path = str(Path(config_path).expanduser())

    log_file = (os.getenv("LOG_FILE") or "").strip() or None
    if log_file:
        log_file = str(Path(log_file).expanduser())

    return AppSettings(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=log_file,
        transport=TransportSettings(
            servers=_as_csv(os.getenv("NATS_SERVER")) or ["nats://localhost:4222"],
            connect_timeout_seconds=_as_float(os.getenv("NATS_CONNECT_TIMEOUT_SECONDS"), 5.0),
            flush_timeout_seconds=_as_float(os.getenv("NATS_FLUSH_TIMEOUT_SECONDS"), 2.0),
        ),
        bookies=BookieSettings(
            accounts=_as_csv(os.getenv("BOOKIE_ACCOUNTS")),
            config_path=config_path,
            reload_seconds=_as_float(os.getenv("BOOKIE_CONFIG_RELOAD_SECONDS"), 300.0),
        ),
        intake=IntakeSettings(
            dedup_high_water=_as_int(os.getenv("DEDUP_HIGH_WATER"), 10000),
            expected_legs=max(2, _as_int(os.getenv("ARB_EXPECTED_LEGS"), 2)),
            stale_seconds=_as_float(os.getenv("ARB_STALE_SECONDS"), 30.0),
            shard_by_cycle=_as_bool(os.getenv("ARB_SHARD_BY_CYCLE"), False),
            cleanup_interval_seconds=_as_float(os.getenv("CLEANUP_INTERVAL_SECONDS"), 10.0),
        ),
        execution=ExecutionSettings(
            max_concurrency=max(1, _as_int(os.getenv("EXEC_MAX_CONCURRENCY"), 2)),
            workers_per_bookie=max(1, _as_int(os.getenv("EXEC_WORKERS_PER_BOOKIE"), 1)),
            queue_size=max(1, _as_int(os.getenv("EXEC_QUEUE_SIZE"), 32)),
            enqueue_timeout_seconds=_as_float(os.getenv("EXEC_ENQUEUE_TIMEOUT_SECONDS"), 5.0),
            bet_timeout_seconds=_as_float(os.getenv("EXEC_BET_TIMEOUT_SECONDS"), 30.0),
            max_retries=max(0, _as_int(os.getenv("EXEC_MAX_RETRIES"), 2)),
            retry_delay_seconds=_as_float(os.getenv("EXEC_RETRY_DELAY_SECONDS"), 2.0),
            executor=(os.getenv("BET_EXECUTOR") or "dry_run").strip(),
        ),
        tracking=TrackingSettings(
            enabled=_as_bool(os.getenv("CYCLE_TRACKING_ENABLED"), True),
            result_window_seconds=_as_float(os.getenv("CYCLE_RESULT_WINDOW_SECONDS"), 120.0),
            settlement_window_seconds=_as_float(os.getenv("CYCLE_SETTLEMENT_WINDOW_SECONDS"), 86400.0),
        ),
    )
