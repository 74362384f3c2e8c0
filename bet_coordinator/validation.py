"""Intake gate: decide what to do with a decoded bet payload.

Every listener receives the full broadcast, so filtering happens in two
stages. First the bet's bookie must be one of the currently configured
accounts (anything else is foreign traffic). Second, a listener only
acts on a bet whose bookie is one of its *own* accounts. Arbitrage legs
for other known bookies are still collected, because a cycle can only
be judged complete once every leg has been seen, but they are never
acknowledged or dispatched by a non-owner.

``IntakeGate.screen`` is the decide step: it returns an
``IntakeDecision`` and performs no publishing or dispatch. Its only
side effect is inserting accepted ids into the listener's dedup window.
``IntakeGate.admit`` runs the same checks on a normalized bet and raises
``ValidationError`` or ``DuplicateError`` instead.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from bet_coordinator.errors import DuplicateError, ValidationError
from bet_coordinator.framework.dedupe import DedupeWindow
from bet_coordinator.identity import expected_bet_id, normalize
from bet_coordinator.models import UNKNOWN, BetRequest

LOGGER = logging.getLogger(__name__)


class IntakeAction(str, Enum):
    DROP = "drop"
    DISPATCH_VALUE = "dispatch_value"
    COLLECT_ARB_LEG = "collect_arb_leg"


class DropReason(str, Enum):
    MALFORMED = "malformed"
    UNKNOWN_BOOKIE = "unknown_bookie"
    MISSING_FIELDS = "missing_fields"
    BET_ID_MISMATCH = "bet_id_mismatch"
    NOT_OWNED = "not_owned"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class IntakeDecision:
    action: IntakeAction
    bet: Optional[BetRequest] = None
    reason: Optional[DropReason] = None
    detail: str = ""
    owned: bool = False

    @property
    def accepted(self) -> bool:
        return self.action is not IntakeAction.DROP


def _drop(reason: DropReason, detail: str, bet: BetRequest | None = None) -> IntakeDecision:
    return IntakeDecision(action=IntakeAction.DROP, bet=bet, reason=reason, detail=detail)


# ---------------------------------------------------------------------------
# Stateless checks
# ---------------------------------------------------------------------------


def validate(bet: BetRequest) -> bool:
    """Recompute the bet id from the row and compare it to the supplied one."""
    expected = expected_bet_id(bet)
    return hmac.compare_digest(expected.encode("utf-8"), bet.bet_id.encode("utf-8"))


def missing_required_fields(bet: BetRequest) -> list[str]:
    missing = [
        name
        for name, value in (
            ("betId", bet.bet_id),
            ("bookie", bet.bookie),
            ("matchId", bet.match_id),
            ("eventId", bet.event_id),
            ("searchQuery", bet.search_query),
        )
        if value == UNKNOWN
    ]
    if bet.stake is None or bet.stake <= 0:
        missing.append("stake")
    return missing


def belongs_to_known_bookie(bookie_name: str, known_bookies: Iterable[str]) -> bool:
    return bookie_name != UNKNOWN and bookie_name in set(known_bookies)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class IntakeGate:
    """Per-listener intake filter owning that listener's dedup window."""

    def __init__(
        self,
        own_accounts: Iterable[str],
        known_bookies: Iterable[str],
        dedupe: DedupeWindow | None = None,
    ) -> None:
        self._own_accounts = frozenset(own_accounts)
        self._known_bookies = frozenset(known_bookies)
        self._dedupe = dedupe or DedupeWindow()

    @property
    def own_accounts(self) -> frozenset[str]:
        return self._own_accounts

    @property
    def known_bookies(self) -> frozenset[str]:
        return self._known_bookies

    @property
    def dedupe(self) -> DedupeWindow:
        return self._dedupe

    def update_known_bookies(self, known_bookies: Iterable[str]) -> None:
        self._known_bookies = frozenset(known_bookies)

    def owns(self, bookie: str) -> bool:
        return bookie in self._own_accounts

    def screen(self, payload: Any) -> IntakeDecision:
        if not isinstance(payload, Mapping):
            return _drop(DropReason.MALFORMED, f"payload is {type(payload).__name__}, not a map")

        bet = normalize(payload)
        try:
            owned = self.admit(bet)
        except DuplicateError as exc:
            return _drop(DropReason.DUPLICATE, str(exc), bet)
        except ValidationError as exc:
            return _drop(DropReason(exc.reason), str(exc), bet)

        action = IntakeAction.COLLECT_ARB_LEG if bet.is_arb else IntakeAction.DISPATCH_VALUE
        return IntakeDecision(action=action, bet=bet, owned=owned)

    def admit(self, bet: BetRequest) -> bool:
        """Run every intake check on ``bet`` and mark it seen.

        Returns whether the bet belongs to one of this gate's own accounts.
        Raises ``ValidationError`` for a bet this listener must not act on
        and ``DuplicateError`` when the id is already in the dedup window.
        """
        if not belongs_to_known_bookie(bet.bookie, self._known_bookies):
            raise ValidationError(f"bookie {bet.bookie!r} is not configured", DropReason.UNKNOWN_BOOKIE.value)

        missing = missing_required_fields(bet)
        if missing:
            raise ValidationError("missing " + ",".join(missing), DropReason.MISSING_FIELDS.value)

        if not validate(bet):
            expected = expected_bet_id(bet)
            LOGGER.warning(
                "bet id mismatch bookie=%s cycle=%s expected=%s got=%s",
                bet.bookie,
                bet.arb_cycle_id,
                expected,
                bet.bet_id,
            )
            raise ValidationError(f"expected={expected} got={bet.bet_id}", DropReason.BET_ID_MISMATCH.value)

        owned = self.owns(bet.bookie)
        if not bet.is_arb and not owned:
            raise ValidationError(f"bookie {bet.bookie} belongs to another listener", DropReason.NOT_OWNED.value)

        if self._dedupe.check_and_mark(bet.bet_id):
            raise DuplicateError(f"bet {bet.bet_id} already accepted")
        return owned
