"""Ping models: raw GPS samples, validation results and ingest receipts."""

from __future__ import annotations

import uuid
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, ConfigDict, Field, field_validator

from busfusion.ingestion.normalize import parse_number, parse_text
from busfusion.models._base import FusionBaseModel, UtcTimestamp, utcnow


class ValidationFlag(StrEnum):
    """Why a ping lost confidence or was rejected."""

    MALFORMED = "malformed"
    INVALID_COORDINATES = "invalid_coordinates"
    OUT_OF_BOUNDS = "out_of_bounds"
    LOW_ACCURACY = "low_accuracy"
    IMPLAUSIBLE_SPEED = "implausible_speed"
    OUT_OF_ORDER = "out_of_order"
    OFF_ROUTE = "off_route"
    STALE_TIMESTAMP = "stale_timestamp"
    BELOW_THRESHOLD = "below_threshold"
    OUTLIER = "outlier"


#: Flags that reject a ping regardless of its remaining confidence.
HARD_REJECT_FLAGS: frozenset[ValidationFlag] = frozenset(
    {
        ValidationFlag.MALFORMED,
        ValidationFlag.INVALID_COORDINATES,
        ValidationFlag.OUT_OF_BOUNDS,
        ValidationFlag.OUT_OF_ORDER,
        ValidationFlag.IMPLAUSIBLE_SPEED,
    }
)


class RawPing(FusionBaseModel):
    """One GPS sample submitted by a device for a bus.

    Inbound payloads use a mix of camelCase and short keys, so every field
    accepts the common aliases (``latitude``/``lat``, ``busId``/``bus_id``...).

    Parameters
    ----------
    ping_id : str
        Server-assigned identifier.
    bus_id : str
        Bus the rider claims to be on.
    device_id : str
        Opaque device hash (never a raw token or fingerprint).
    lat, lng : float
        Position in decimal degrees.
    accuracy : float
        Reported horizontal accuracy in metres.
    speed : float or None
        Reported speed in km/h.
    heading : float or None
        Reported heading in degrees, normalized to ``[0, 360)``.
    client_timestamp : datetime
        Device clock at sampling time.
    server_timestamp : datetime
        Server clock at receipt.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    ping_id: str = Field(default_factory=lambda: uuid.uuid4().hex, validation_alias=AliasChoices("ping_id", "pingId"))
    bus_id: str = Field(validation_alias=AliasChoices("bus_id", "busId"))
    device_id: str = Field(validation_alias=AliasChoices("device_id", "deviceId"))
    lat: float = Field(validation_alias=AliasChoices("lat", "latitude"))
    lng: float = Field(validation_alias=AliasChoices("lng", "lon", "longitude"))
    accuracy: float = Field(ge=0.0, validation_alias=AliasChoices("accuracy", "acc", "horizontalAccuracy"))
    speed: float | None = Field(default=None, ge=0.0, validation_alias=AliasChoices("speed", "speedKmh"))
    heading: float | None = Field(default=None, validation_alias=AliasChoices("heading", "direction", "bearing"))
    client_timestamp: UtcTimestamp = Field(
        validation_alias=AliasChoices("client_timestamp", "clientTimestamp", "timestamp", "time"),
    )
    server_timestamp: UtcTimestamp = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("server_timestamp", "serverTimestamp"),
    )

    @field_validator("bus_id", "device_id", "ping_id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str:
        text = parse_text(value)
        if text is None:
            raise ValueError("identifier must be non-empty")
        return text

    @field_validator("lat", "lng", "accuracy", mode="before")
    @classmethod
    def _coerce_required_floats(cls, value: Any) -> Any:
        parsed = parse_number(value)
        # Returning the original lets pydantic report the type error.
        return value if parsed is None else parsed

    @field_validator("speed", mode="before")
    @classmethod
    def _coerce_speed(cls, value: Any) -> float | None:
        return parse_number(value)

    @field_validator("heading", mode="before")
    @classmethod
    def _coerce_heading(cls, value: Any) -> float | None:
        parsed = parse_number(value)
        if parsed is None:
            return None
        return parsed % 360.0


class ValidationResult(FusionBaseModel):
    """Outcome of :meth:`busfusion.validation.GPSValidator.validate`."""

    is_valid: bool
    confidence_weight: float = Field(ge=0.0, le=1.0)
    flags: frozenset[ValidationFlag] = frozenset()
    computed_speed_kmh: float | None = None

    @classmethod
    def rejected(cls, *flags: ValidationFlag, computed_speed_kmh: float | None = None) -> ValidationResult:
        return cls(
            is_valid=False,
            confidence_weight=0.0,
            flags=frozenset(flags),
            computed_speed_kmh=computed_speed_kmh,
        )


class ValidatedPing(FusionBaseModel):
    """A raw ping with its validation result attached."""

    ping: RawPing
    result: ValidationResult

    @property
    def ping_id(self) -> str:
        return self.ping.ping_id

    @property
    def bus_id(self) -> str:
        return self.ping.bus_id

    @property
    def device_id(self) -> str:
        return self.ping.device_id

    @property
    def is_valid(self) -> bool:
        return self.result.is_valid

    @property
    def confidence_weight(self) -> float:
        return self.result.confidence_weight


class SubmitResult(FusionBaseModel):
    """Receipt for a single submitted ping."""

    accepted: bool
    flags: frozenset[ValidationFlag] = frozenset()
    confidence_weight: float = 0.0
    ping_id: str | None = None
    error: str | None = None


class BatchResult(FusionBaseModel):
    """Receipt for a batch submission."""

    processed: int = 0
    valid: int = 0
    invalid: int = 0
