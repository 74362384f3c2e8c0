"""Bet identity: canonical row normalization and content-hash bet ids.

Producers have shipped several historical layouts (flat or nested under
``data``; snake_case, PascalCase or camelCase keys). ``normalize`` maps
all of them onto one fixed-shape ``BetRequest`` so nothing downstream
needs field fallbacks.

Bet ids are SHA-256 hex digests over the ordered, ``_``-joined identity
fields::

    arb:   arbCycleId_matchId_homeTeam_awayTeam_matchTime_bookie_side_strategy
    value: matchId_homeTeam_awayTeam_matchTime_bookie_side_strategy

Usage::

    bet = normalize(decoded_payload)
    if bet.bet_id == expected_bet_id(bet):
        ...
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence

from bet_coordinator.models import UNKNOWN, BetRequest, utc_now_iso

ID_DELIMITER = "_"
MATCH_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# Canonical field -> accepted inbound keys, in lookup order.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "bet_id": ("betId", "bet_id", "BetID", "BetId"),
    "bookie": ("bookie", "Bookie", "bookie_channel", "bookieChannel"),
    "arb_cycle_id": ("arbCycleId", "arb_cycle_id", "arbcycle_id", "ArbCycleID", "ArbCycleId"),
    "match_id": ("matchId", "match_id", "MatchID", "MatchId"),
    "home_team": ("homeTeam", "home_team", "HomeTeam"),
    "away_team": ("awayTeam", "away_team", "AwayTeam"),
    "match_time": ("matchTime", "match_time", "MatchTime", "start_time", "startTime"),
    "side": ("side", "Side"),
    "strategy": ("strategy", "Strategy"),
    "odds": ("odds", "Odds"),
    "stake": ("stake", "Stake"),
    "search_query": ("searchQuery", "search_query", "SearchQuery"),
    "event_id": ("eventId", "event_id", "EventID", "EventId"),
    "timestamp": ("timestamp", "Timestamp"),
    "team": ("team", "Team"),
    "win_rate": ("winRate", "win_rate", "WinRate"),
    "ev": ("ev", "EV"),
    "risk": ("risk", "Risk"),
}


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _lookup(raw: Mapping[str, Any], field_name: str) -> Any:
    aliases = FIELD_ALIASES[field_name]
    nested = raw.get("data")
    # Nested payload fields win over envelope fields of the same name.
    sources: Sequence[Mapping[str, Any]] = (
        (nested, raw) if isinstance(nested, Mapping) else (raw,)
    )
    for source in sources:
        for alias in aliases:
            value = source.get(alias)
            if value is not None and value != "":
                return value
    return None


def _as_text(value: Any) -> str:
    if value is None:
        return UNKNOWN
    text = str(value).strip()
    return text or UNKNOWN


def _as_optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text == UNKNOWN:
        return None
    return text


def _as_optional_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_match_time(value: Any) -> str:
    """Render a match time as a UTC ``YYYY-MM-DD HH:MM:SS`` string.

    Accepts datetimes, ISO-8601 strings (naive values are taken as UTC)
    and Unix epoch seconds or milliseconds. Anything else is "unknown".
    """
    if value is None or isinstance(value, bool):
        return UNKNOWN

    parsed: datetime | None = None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = float(value)
        if seconds > 1e12:
            seconds /= 1000.0
        try:
            parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return UNKNOWN
    else:
        text = str(value).strip()
        if not text:
            return UNKNOWN
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return UNKNOWN

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).strftime(MATCH_TIME_FORMAT)


def normalize(raw: Mapping[str, Any]) -> BetRequest:
    """Map a decoded inbound payload onto the canonical ``BetRequest`` shape."""
    timestamp = _lookup(raw, "timestamp")
    return BetRequest(
        bet_id=_as_text(_lookup(raw, "bet_id")),
        bookie=_as_text(_lookup(raw, "bookie")),
        arb_cycle_id=_as_optional_text(_lookup(raw, "arb_cycle_id")),
        match_id=_as_text(_lookup(raw, "match_id")),
        home_team=_as_text(_lookup(raw, "home_team")),
        away_team=_as_text(_lookup(raw, "away_team")),
        match_time=normalize_match_time(_lookup(raw, "match_time")),
        side=_as_text(_lookup(raw, "side")),
        strategy=_as_text(_lookup(raw, "strategy")),
        odds=_as_optional_float(_lookup(raw, "odds")),
        stake=_as_optional_float(_lookup(raw, "stake")),
        search_query=_as_text(_lookup(raw, "search_query")),
        event_id=_as_text(_lookup(raw, "event_id")),
        timestamp=str(timestamp) if timestamp is not None else utc_now_iso(),
        team=_as_text(_lookup(raw, "team")),
        win_rate=_as_optional_float(_lookup(raw, "win_rate")),
        ev=_as_optional_float(_lookup(raw, "ev")),
        risk=_as_optional_float(_lookup(raw, "risk")),
    )


# ---------------------------------------------------------------------------
# Bet ids
# ---------------------------------------------------------------------------


def _digest(parts: Sequence[str]) -> str:
    return hashlib.sha256(ID_DELIMITER.join(parts).encode("utf-8")).hexdigest()


def _identity_fields(row: BetRequest) -> list[str]:
    return [
        row.match_id,
        row.home_team,
        row.away_team,
        row.match_time,
        row.bookie,
        row.side,
        row.strategy,
    ]


def compute_value_bet_id(row: BetRequest) -> str:
    return _digest(_identity_fields(row))


def compute_arb_bet_id(row: BetRequest) -> str:
    return _digest([row.arb_cycle_id or UNKNOWN, *_identity_fields(row)])


def expected_bet_id(row: BetRequest) -> str:
    """The id this row must carry, branching on arb-cycle membership."""
    if row.arb_cycle_id:
        return compute_arb_bet_id(row)
    return compute_value_bet_id(row)
