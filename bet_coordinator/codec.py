"""Binary payload codec for cross-process bet traffic (msgpack).

Decoding is strict first: map keys and strings must be valid UTF-8.
Producers have drifted between string and binary encodings in the
past, so a failed strict decode is retried in raw mode with lenient
byte-string decoding before the payload is declared poison.
"""

from __future__ import annotations

import base64
import logging
from typing import Any

import msgpack

from bet_coordinator.errors import DecodeError, EncodeError

LOGGER = logging.getLogger(__name__)

# Cap on how much of a poison payload is dumped into the log.
_DUMP_LIMIT = 512


def encode(value: Any) -> bytes:
    try:
        return msgpack.packb(value, use_bin_type=True)
    except (TypeError, ValueError, OverflowError) as exc:
        raise EncodeError(f"failed to encode msgpack payload: {exc}") from exc


def decode(data: bytes) -> Any:
    if not data:
        raise DecodeError("empty payload", raw=b"")

    try:
        return msgpack.unpackb(data, raw=False)
    except (ValueError, TypeError, msgpack.UnpackException) as strict_exc:
        LOGGER.debug("strict msgpack decode failed (%s); retrying in raw mode", strict_exc)
        try:
            return _text_from_raw(msgpack.unpackb(data, raw=True, strict_map_key=False))
        except (ValueError, TypeError, msgpack.UnpackException) as raw_exc:
            raise DecodeError(
                f"failed to decode msgpack payload: {raw_exc} ({describe_payload(data)})",
                raw=bytes(data),
            ) from raw_exc


def describe_payload(data: bytes) -> str:
    """Length plus hex and base64 dumps, for diagnosing encoding drift."""
    head = bytes(data[:_DUMP_LIMIT])
    suffix = "..." if len(data) > _DUMP_LIMIT else ""
    return (
        f"length={len(data)} hex={head.hex()}{suffix} "
        f"base64={base64.b64encode(head).decode('ascii')}{suffix}"
    )


def _text_from_raw(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, dict):
        return {_text_from_raw(key): _text_from_raw(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_text_from_raw(item) for item in value]
    return value
