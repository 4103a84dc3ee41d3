"""Helpers for safe debug logging.

Riders are anonymous: busfusion only ever stores hashed device ids, and raw
device tokens or fingerprints must never reach the logs. Payloads logged at
DEBUG go through :func:`redact_for_log`, which

- replaces secrets (tokens, fingerprints, credentials) with ``<redacted>``,
- shortens device ids to a prefix,
- coarsens coordinates to about 100 m so a log line cannot trace a rider.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from typing import Any

_SECRET_KEYS: frozenset[str] = frozenset(
    {
        "devicetoken",
        "device_token",
        "token",
        "fingerprint",
        "fingerprintdata",
        "fingerprint_data",
        "authorization",
        "cookie",
        "password",
    }
)

_DEVICE_ID_KEYS: frozenset[str] = frozenset({"device_id", "deviceid"})

_COORDINATE_KEYS: frozenset[str] = frozenset({"lat", "lng", "lon", "latitude", "longitude"})

#: Decimal places kept for logged coordinates (~110 m of latitude).
_COORDINATE_DIGITS = 3

_MAX_DEPTH = 8


def short_id(value: str | None, *, keep: int = 8) -> str:
    """Shorten an identifier for log lines (``"3fa2b9c1..."``)."""
    if not value:
        return "unknown"
    if len(value) <= keep:
        return value
    return f"{value[:keep]}..."


def _coarse(value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    if not math.isfinite(value):
        return value
    return round(float(value), _COORDINATE_DIGITS)


def _redact_field(key: str, value: Any, max_string: int, depth: int) -> Any:
    lowered = key.lower()
    if lowered in _SECRET_KEYS:
        return "<redacted>"
    if lowered in _DEVICE_ID_KEYS and isinstance(value, str):
        return short_id(value)
    if lowered in _COORDINATE_KEYS:
        return _coarse(value)
    return redact_for_log(value, max_string=max_string, _depth=depth + 1)


def redact_for_log(value: Any, *, max_string: int = 256, _depth: int = 0) -> Any:
    """Return a copy of *value* that is safe to put in a debug log.

    Ping payloads are flat, but nested mappings and lists are walked too
    (to a bounded depth) in case a client wraps its fields.
    """
    if _depth > _MAX_DEPTH:
        return "<max-depth>"

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}…<truncated>"

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        return {str(k): _redact_field(str(k), v, max_string, _depth) for k, v in value.items()}

    if isinstance(value, Sequence):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]

    return repr(value)
