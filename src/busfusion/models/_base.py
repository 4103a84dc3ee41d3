"""Base model and shared field types.

Every busfusion record inherits from :class:`FusionBaseModel`, which is
frozen: state changes produce a new instance through ``model_copy``, so a
record handed to a collaborator can never change underneath it.

Timestamps are always timezone-aware UTC. :data:`UtcTimestamp` accepts
aware or naive datetimes, ISO-8601 strings, and epoch numbers in seconds
**or** milliseconds.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 100_000_000_000


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(value: Any) -> Any:
    """Convert epoch seconds/milliseconds (numbers or numeric strings) to a UTC datetime.

    Anything else is passed through for pydantic's own datetime parsing.
    """
    if isinstance(value, bool):
        return value
    if not isinstance(value, (int, float, str)):
        return value
    try:
        ts = float(value.strip() if isinstance(value, str) else value)
    except OverflowError as exc:
        raise ValueError(f"epoch timestamp out of range: {value!r}") from exc
    except ValueError:
        # Not numeric: leave ISO strings to pydantic.
        return value
    if not math.isfinite(ts) or ts <= 0:
        raise ValueError(f"invalid epoch timestamp: {value!r}")
    if ts >= _MS_THRESHOLD:
        ts /= 1000.0
    try:
        return datetime.fromtimestamp(ts, tz=UTC)
    except (OverflowError, OSError, ValueError) as exc:
        # pydantic only reports ValueError as a validation error.
        raise ValueError(f"epoch timestamp out of range: {value!r}") from exc


UtcTimestamp = Annotated[datetime, BeforeValidator(parse_timestamp), AfterValidator(ensure_utc)]
"""Annotated type that coerces epoch numbers and naive datetimes to aware UTC datetimes."""


def clamp_unit(value: float) -> float:
    """Clamp to ``[0, 1]``; NaN maps to 0."""
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


class FusionBaseModel(BaseModel):
    """Base for busfusion domain records (immutable, strict keys)."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
    )
