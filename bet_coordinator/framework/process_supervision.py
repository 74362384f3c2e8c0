"""Process supervision: graceful shutdown for the asyncio service.

On SIGINT/SIGTERM the coordinator stops consuming new bets, lets the
worker pools drain (or fail) what they already accepted, closes the
bus connection, and exits. Cleanup steps are registered as async
callbacks and run in registration order; a failing step is logged and
the remaining steps still run.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from typing import Awaitable, Callable

LOGGER = logging.getLogger(__name__)

CleanupCallback = Callable[[], Awaitable[None]]


class GracefulShutdown:
    """Coordinates graceful shutdown of the coordinator.

    ``wait()`` blocks until shutdown is requested, either by a signal
    handler installed on the running loop or by ``request_shutdown``.
    """

    def __init__(self) -> None:
        self._shutdown_requested = False
        self._shutdown_ts: float = 0.0
        self._reason = ""
        self._event: asyncio.Event | None = None
        self._callbacks: list[tuple[str, CleanupCallback]] = []
        self._installed_signals: list[signal.Signals] = []

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @property
    def reason(self) -> str:
        return self._reason

    def _get_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._shutdown_requested:
                self._event.set()
        return self._event

    def request_shutdown(self, reason: str = "manual") -> None:
        """Request a graceful shutdown. Later requests are ignored."""
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        self._shutdown_ts = time.monotonic()
        self._reason = reason
        LOGGER.info("Graceful shutdown requested: %s", reason)
        if self._event is not None:
            self._event.set()

    async def wait(self) -> str:
        await self._get_event().wait()
        return self._reason

    def register_callback(self, name: str, callback: CleanupCallback) -> None:
        """Register an async cleanup step to run on shutdown."""
        self._callbacks.append((name, callback))

    async def run_callbacks(self) -> list[tuple[str, bool]]:
        """Run all registered callbacks in order. Returns list of (name, success)."""
        results: list[tuple[str, bool]] = []
        for name, callback in self._callbacks:
            try:
                await callback()
                results.append((name, True))
                LOGGER.info("Shutdown callback '%s' completed", name)
            except Exception as exc:
                results.append((name, False))
                LOGGER.error("Shutdown callback '%s' failed: %s", name, exc)
        return results

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Install SIGINT/SIGTERM handlers on the running loop. Only installs once."""
        if self._installed_signals:
            return
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, f"signal {sig.name}")
            except (NotImplementedError, RuntimeError):
                LOGGER.warning("cannot install handler for %s on this platform", sig.name)
                continue
            self._installed_signals.append(sig)
        LOGGER.info("Signal handlers installed for graceful shutdown")

    def remove_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in self._installed_signals:
            loop.remove_signal_handler(sig)
        self._installed_signals.clear()

    def reset(self) -> None:
        """Reset shutdown state (for testing)."""
        self._shutdown_requested = False
        self._shutdown_ts = 0.0
        self._reason = ""
        self._event = None
