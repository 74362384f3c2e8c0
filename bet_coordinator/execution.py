from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

from bet_coordinator.models import BetRequest, BookieConfig

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionOutcome:
    """What the execution capability reports for one placement attempt.

    ``transient`` marks a failure worth retrying (navigation or selector
    timeout); a failure without it is a business rejection.
    """

    success: bool
    payout: Optional[float] = None
    error: Optional[str] = None
    transient: bool = False


class BetExecutor(ABC):
    """Places one bet on one bookmaker account.

    Implementations own every browser/DOM concern and must be safe to
    call up to the retry bound for the same bet. They may raise
    ``ExecutionFault`` for transient faults and ``ExecutionRejection``
    for business rejections instead of returning an outcome.
    """

    name: str = "executor"

    @abstractmethod
    async def execute(self, account: BookieConfig, bet: BetRequest) -> ExecutionOutcome:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class DryRunExecutor(BetExecutor):
    """Reports every bet as placed without touching a bookmaker."""

    name = "dry_run"

    async def execute(self, account: BookieConfig, bet: BetRequest) -> ExecutionOutcome:
        payout = None
        if bet.stake is not None and bet.odds is not None:
            payout = round(bet.stake * bet.odds, 2)
        LOGGER.info(
            "dry-run placement bookie=%s bet=%s side=%s stake=%s odds=%s payout=%s",
            account.name,
            bet.bet_id,
            bet.side,
            bet.stake,
            bet.odds,
            payout,
        )
        return ExecutionOutcome(success=True, payout=payout)


def load_executor(target: str, **kwargs: Any) -> BetExecutor:
    """Build an executor from ``dry_run`` or a ``package.module:factory`` path.

    The factory is called with ``kwargs`` (settings, otp_store) and must
    return a ``BetExecutor``.
    """
    if not target or target == DryRunExecutor.name:
        return DryRunExecutor()
    if ":" not in target:
        raise ValueError(f"executor target must be 'dry_run' or 'module:factory', got {target!r}")

    module_name, factory_name = target.split(":", 1)
    module = importlib.import_module(module_name)
    factory: Callable[..., BetExecutor] = getattr(module, factory_name)
    executor = factory(**kwargs)
    if not isinstance(executor, BetExecutor):
        raise TypeError(f"{target} returned {type(executor).__name__}, not a BetExecutor")
    LOGGER.info("loaded bet executor %s from %s", executor.name, target)
    return executor
