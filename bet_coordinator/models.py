from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

UNKNOWN = "unknown"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class BetKind(str, Enum):
    VALUE = "value"
    ARB = "arb"


class BetStatus(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"


class AckType(str, Enum):
    VALUE_BET = "value_bet"
    ARB_LEG = "arb_leg"


@dataclass(frozen=True)
class BookieConfig:
    name: str
    base_url: str = ""
    credentials_ref: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, raw: Dict[str, Any]) -> "BookieConfig":
        # Config files nest the account under "config" in the older layout.
        body = raw.get("config") if isinstance(raw.get("config"), dict) else raw
        name = str(body.get("name") or "").strip()
        base_url = str(body.get("base_url") or body.get("baseUrl") or "")
        credentials_ref = str(
            body.get("credentials_ref") or body.get("accountCredentialsRef") or ""
        )
        extra = {
            key: value
            for key, value in body.items()
            if key not in {"name", "base_url", "baseUrl", "credentials_ref", "accountCredentialsRef"}
        }
        return cls(name=name, base_url=base_url, credentials_ref=credentials_ref, extra=extra)


@dataclass(frozen=True)
class BetRequest:
    """Canonical, fixed-shape bet row produced once at the transport boundary."""

    bet_id: str
    bookie: str
    arb_cycle_id: Optional[str]
    match_id: str
    home_team: str
    away_team: str
    match_time: str
    side: str
    strategy: str
    odds: Optional[float]
    stake: Optional[float]
    search_query: str
    event_id: str
    timestamp: str
    team: str = UNKNOWN
    win_rate: Optional[float] = None
    ev: Optional[float] = None
    risk: Optional[float] = None

    @property
    def kind(self) -> BetKind:
        return BetKind.ARB if self.arb_cycle_id else BetKind.VALUE

    @property
    def is_arb(self) -> bool:
        return self.kind is BetKind.ARB

    def to_payload(self) -> Dict[str, Any]:
        return {
            "betId": self.bet_id,
            "bookie": self.bookie,
            "arbCycleId": self.arb_cycle_id,
            "matchId": self.match_id,
            "homeTeam": self.home_team,
            "awayTeam": self.away_team,
            "matchTime": self.match_time,
            "side": self.side,
            "strategy": self.strategy,
            "odds": self.odds,
            "stake": self.stake,
            "searchQuery": self.search_query,
            "eventId": self.event_id,
            "timestamp": self.timestamp,
            "team": self.team,
            "winRate": self.win_rate,
            "ev": self.ev,
            "risk": self.risk,
        }


@dataclass(frozen=True)
class DispatchBundle:
    """Unit handed to the dispatch router: one value bet or one complete arb cycle."""

    kind: BetKind
    legs: tuple[BetRequest, ...]
    cycle_id: Optional[str] = None

    @classmethod
    def value(cls, bet: BetRequest) -> "DispatchBundle":
        return cls(kind=BetKind.VALUE, legs=(bet,))

    @classmethod
    def arb(cls, cycle_id: str, legs: tuple[BetRequest, ...]) -> "DispatchBundle":
        return cls(kind=BetKind.ARB, legs=tuple(legs), cycle_id=cycle_id)

    @property
    def bet(self) -> BetRequest:
        if self.kind is not BetKind.VALUE:
            raise AttributeError("arb bundles carry legs, not a single bet")
        return self.legs[0]

    @property
    def bookies(self) -> set[str]:
        return {leg.bookie for leg in self.legs}


@dataclass(frozen=True)
class BetResult:
    bet_id: str
    cycle_id: Optional[str]
    bookie: str
    success: bool
    placed: bool
    payout: Optional[float] = None
    error: Optional[str] = None
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def status(self) -> BetStatus:
        return BetStatus.SUCCESS if self.success else BetStatus.FAILED

    @classmethod
    def failed(cls, bet: BetRequest, error: str) -> "BetResult":
        return cls(
            bet_id=bet.bet_id,
            cycle_id=bet.arb_cycle_id,
            bookie=bet.bookie,
            success=False,
            placed=False,
            error=error,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "betId": self.bet_id,
            "cycleId": self.cycle_id,
            "bookie": self.bookie,
            "success": self.success,
            "placed": self.placed,
            "payout": self.payout,
            "error": self.error,
            "status": self.status.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_payload(cls, raw: Dict[str, Any]) -> "BetResult":
        payout = raw.get("payout")
        return cls(
            bet_id=str(raw.get("betId") or raw.get("BetID") or ""),
            cycle_id=raw.get("cycleId") or raw.get("ArbCycleID") or None,
            bookie=str(raw.get("bookie") or raw.get("Bookie") or ""),
            success=bool(raw.get("success", raw.get("Status") == BetStatus.SUCCESS.value)),
            placed=bool(raw.get("placed", False)),
            payout=float(payout) if payout is not None else None,
            error=raw.get("error") or raw.get("Error"),
            timestamp=str(raw.get("timestamp") or utc_now_iso()),
        )


@dataclass(frozen=True)
class OtpUpdate:
    bookie: str
    otp: str
    status: Optional[str] = None
    received_at: float = 0.0
