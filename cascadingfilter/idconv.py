"""Conversions between 64-bit integers and trace or span identifiers.

Trace identifiers are 16 raw bytes and span identifiers are 8 raw bytes,
both in big-endian order.
"""

from __future__ import annotations

import struct

_UINT64_MAX = 2**64 - 1
_TRACE_ID = struct.Struct(">QQ")
_SPAN_ID = struct.Struct(">Q")


def _check_uint64(value: int, what: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{what} must be an int, not {type(value).__name__}")
    if not 0 <= value <= _UINT64_MAX:
        raise ValueError(f"{what} {value} does not fit in an unsigned 64-bit integer")


def uint64_to_trace_id(high: int, low: int) -> bytes:
    """Build a 16-byte trace id from its high and low 64-bit halves."""
    _check_uint64(high, "high")
    _check_uint64(low, "low")
    return _TRACE_ID.pack(high, low)


def span_id_to_uint64(span_id: bytes) -> int:
    """Read an 8-byte span id as an unsigned big-endian integer."""
    if len(span_id) != _SPAN_ID.size:
        raise ValueError(f"span id must be {_SPAN_ID.size} bytes, got {len(span_id)}")
    (value,) = _SPAN_ID.unpack(bytes(span_id))
    return value


def uint64_to_span_id(value: int) -> bytes:
    """Build an 8-byte span id from an unsigned 64-bit integer."""
    _check_uint64(value, "value")
    return _SPAN_ID.pack(value)