"""Error taxonomy for the bet intake and dispatch core.

Every per-message failure maps onto one of these classes so the
consumption loop can log it at the right level and move on. Only
``StartupError`` (and bus connect failures) are allowed to stop the
process.
"""

from __future__ import annotations


class CoordinatorError(Exception):
    """Base class for all coordinator errors."""


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class TransportError(CoordinatorError):
    """Bus-level failure: connect, subscribe, or payload handling."""


class DecodeError(TransportError):
    """Payload could not be decoded. Treated as a poison message."""

    def __init__(self, message: str, raw: bytes = b"") -> None:
        super().__init__(message)
        self.raw = raw


class EncodeError(TransportError):
    """Outbound value could not be serialized."""


class TransportPublishError(TransportError):
    """Publishing or flushing an outbound message failed."""


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------


class ValidationError(CoordinatorError):
    """Bet id mismatch, missing required field, or unknown bookie.

    ``reason`` is the drop code the intake gate reports for it.
    """

    def __init__(self, message: str, reason: str = "malformed") -> None:
        super().__init__(message)
        self.reason = reason


class DuplicateError(CoordinatorError):
    """Bet id already accepted inside the dedup window."""


class AggregationTimeout(CoordinatorError):
    """Arbitrage cycle stayed incomplete past the staleness threshold."""

    def __init__(self, cycle_id: str, received: int, expected: int) -> None:
        super().__init__(
            f"arb cycle {cycle_id} timed out with {received}/{expected} legs"
        )
        self.cycle_id = cycle_id
        self.received = received
        self.expected = expected


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ExecutionFault(CoordinatorError):
    """Transient execution failure (navigation or selector timeout). Retryable."""


class ExecutionRejection(CoordinatorError):
    """Business-level rejection (odds no longer valid). Never retried."""


class BackpressureError(CoordinatorError):
    """Dispatch queue stayed full past the enqueue timeout."""


class StartupError(CoordinatorError):
    """Fatal condition at startup (no bookie configs, bus unreachable)."""
