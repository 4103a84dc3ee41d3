"""Lenient parsing for rider-submitted ping fields.

Browser geolocation shims and the mobile clients disagree on how to say
"no value": some omit the key, others send ``null``, ``"--"`` or ``NaN``.
These helpers fold all of those into ``None`` so the ping model's own
defaults and constraints decide what happens next.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

_PLACEHOLDERS = frozenset({"", "--", "-", "n/a", "nan", "null", "none", "undefined"})


def is_placeholder(value: Any) -> bool:
    """True for ``None``, empty containers and "no value" strings."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in _PLACEHOLDERS
    if isinstance(value, (dict, list, tuple)):
        return len(value) == 0
    return False


def parse_number(value: Any) -> float | None:
    """Parse a coordinate, accuracy, speed or heading.

    Booleans are refused even though ``float(True)`` works; a client sending
    ``"speed": true`` is broken, not stationary.
    """
    if isinstance(value, bool) or is_placeholder(value):
        return None
    if isinstance(value, str):
        value = value.strip()
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def drop_placeholders(payload: Mapping[str, Any]) -> dict[str, Any]:
    # Ping payloads are flat; nested values are kept as-is.
    return {str(key): value for key, value in payload.items() if not is_placeholder(value)}
