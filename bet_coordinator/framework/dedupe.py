"""Accepted-bet dedup window.

Tracks bet ids that already passed intake so a redelivered message is
never acknowledged or dispatched twice. The window only needs to cover
in-flight traffic, not all history, so it is bounded by a high-water
mark and cleared wholesale when the mark is crossed (no LRU
bookkeeping). Truncation runs from the periodic sweep, never from the
message path, so an id inserted by the current message is always
visible to the next one.

Each listener owns its own window; there is no shared global set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Set

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DedupeConfig:
    """Configuration for the dedup window.

    Parameters
    ----------
    high_water_mark:
        Window size above which the sweep clears every entry.
        Default 10000.
    enabled:
        Master enable/disable. Default True.
    """

    high_water_mark: int = 10000
    enabled: bool = True


@dataclass
class DedupeStats:
    """Statistics for the dedup window."""

    total_checked: int = 0
    total_blocked: int = 0
    total_registered: int = 0
    total_truncations: int = 0

    def reset(self) -> None:
        self.total_checked = 0
        self.total_blocked = 0
        self.total_registered = 0
        self.total_truncations = 0


# ---------------------------------------------------------------------------
# Window
# ---------------------------------------------------------------------------


class DedupeWindow:
    """Set of recently accepted bet ids with wholesale truncation."""

    def __init__(self, config: DedupeConfig | None = None) -> None:
        self._config = config or DedupeConfig()
        self._seen: Set[str] = set()
        self._stats = DedupeStats()

    @property
    def config(self) -> DedupeConfig:
        return self._config

    @property
    def stats(self) -> DedupeStats:
        return self._stats

    def __contains__(self, bet_id: object) -> bool:
        return bet_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def is_duplicate(self, bet_id: str) -> bool:
        """True if ``bet_id`` was already accepted and is still in the window."""
        if not self._config.enabled:
            return False

        self._stats.total_checked += 1
        if bet_id in self._seen:
            self._stats.total_blocked += 1
            return True
        return False

    def mark_seen(self, bet_id: str) -> None:
        if not self._config.enabled:
            return
        if bet_id not in self._seen:
            self._seen.add(bet_id)
            self._stats.total_registered += 1

    def check_and_mark(self, bet_id: str) -> bool:
        """Atomically test and insert. Returns True if it was a duplicate."""
        if self.is_duplicate(bet_id):
            return True
        self.mark_seen(bet_id)
        return False

    def truncate_if_needed(self) -> int:
        """Clear the window if it grew past the high-water mark. Returns count dropped."""
        size = len(self._seen)
        if size <= self._config.high_water_mark:
            return 0
        self._seen.clear()
        self._stats.total_truncations += 1
        LOGGER.info("dedup window cleared at %d entries (high-water mark %d)", size, self._config.high_water_mark)
        return size

    def clear(self) -> None:
        self._seen.clear()
