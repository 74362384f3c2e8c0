from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Mapping, Optional

from bet_coordinator.models import OtpUpdate

LOGGER = logging.getLogger(__name__)

_BOOKIE_KEYS = ("bookie", "Bookie", "bookie_channel")
_OTP_KEYS = ("otp", "Otp", "OTP")
_STATUS_KEYS = ("status", "Status")


def _first(raw: Mapping[str, Any], keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = raw.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def parse_otp_update(raw: Any, now: float | None = None) -> OtpUpdate | None:
    """Parse an ``otp.updates`` payload. Returns None when bookie or otp is missing."""
    if not isinstance(raw, Mapping):
        return None
    bookie = _first(raw, _BOOKIE_KEYS)
    otp = _first(raw, _OTP_KEYS)
    if bookie is None or otp is None:
        return None
    return OtpUpdate(
        bookie=bookie,
        otp=otp,
        status=_first(raw, _STATUS_KEYS),
        received_at=time.monotonic() if now is None else now,
    )


class OtpStore:
    """Latest one-time passcode per bookie account, for executors doing 2FA logins."""

    def __init__(self, max_age_seconds: float = 300.0) -> None:
        self._max_age_seconds = max_age_seconds
        self._latest: Dict[str, OtpUpdate] = {}
        self._events: Dict[str, asyncio.Event] = {}

    def put(self, update: OtpUpdate) -> None:
        self._latest[update.bookie] = update
        self._event(update.bookie).set()
        LOGGER.info("stored OTP for %s (status=%s)", update.bookie, update.status)

    def get(self, bookie: str, now: float | None = None) -> OtpUpdate | None:
        update = self._latest.get(bookie)
        if update is None:
            return None
        if now is None:
            now = time.monotonic()
        if now - update.received_at > self._max_age_seconds:
            return None
        return update

    def consume(self, bookie: str) -> OtpUpdate | None:
        """Return and forget the current passcode (each passcode is single use)."""
        update = self.get(bookie)
        self._latest.pop(bookie, None)
        self._event(bookie).clear()
        return update

    async def wait_for(self, bookie: str, timeout: float) -> OtpUpdate | None:
        current = self.get(bookie)
        if current is not None:
            return current
        event = self._event(bookie)
        event.clear()
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("no OTP for %s within %.0fs", bookie, timeout)
            return None
        return self.get(bookie)

    def _event(self, bookie: str) -> asyncio.Event:
        event = self._events.get(bookie)
        if event is None:
            event = asyncio.Event()
            self._events[bookie] = event
        return event
