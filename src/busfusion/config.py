"""Engine configuration for busfusion."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from busfusion._constants import (
    DEFAULT_MAX_LAT,
    DEFAULT_MAX_LNG,
    DEFAULT_MIN_LAT,
    DEFAULT_MIN_LNG,
    DEFAULT_MQTT_TOPIC_PREFIX,
)
from busfusion.exceptions import BusFusionConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class GeoBounds:
    """Service-area bounding box in decimal degrees.

    Pings outside the box are rejected outright. Defaults cover Bangladesh.
    """

    min_lat: float = DEFAULT_MIN_LAT
    max_lat: float = DEFAULT_MAX_LAT
    min_lng: float = DEFAULT_MIN_LNG
    max_lng: float = DEFAULT_MAX_LNG

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng


@dataclasses.dataclass(frozen=True)
class FusionConfig:
    """Engine configuration.

    All durations are in seconds and all distances in metres.

    Parameters
    ----------
    bounds : GeoBounds
        Service-area bounding box.
    max_accuracy_m : float
        Reported accuracy above this scales confidence by
        ``max_accuracy_m / accuracy`` (clamped to ``min_accuracy_factor``).
    max_plausible_speed_kmh : float
        Computed speed between two pings of one device above this rejects
        the newer ping as ``implausible_speed``.
    corridor_radius_m : float
        Distance from the nearest stop or corridor segment beyond which a
        ping is flagged ``off_route``.
    stale_window : float
        Maximum skew between server time and the ping's client timestamp.
    rejection_threshold : float
        Pings whose confidence weight falls below this are invalid.
    reputation_smoothing : float
        EWMA factor applied to each new contribution outcome.
    accuracy_cutoff : float
        Outcome value at or above which a contribution counts as accurate.
    trusted_threshold : float
        Minimum trust score for ``is_trusted``.
    min_contributions : int
        Minimum contribution count for ``is_trusted``.
    trust_floor : float
        Trust never decays below this.
    trust_decay_window : float
        Idle time before trust starts decaying toward the neutral baseline.
    trust_decay_time_constant : float
        Exponential time constant of the decay once it starts.
    max_ping_age : float
        Pings older than this carry no recency weight in fusion.
    outlier_k : float
        Multiplier on the RMS dispersion radius for outlier suppression.
    outlier_min_distance_m / outlier_max_distance_m : float
        Bounds on the outlier threshold; the cap is the absolute distance cap.
    outlier_weight_factor : float
        Weight multiplier applied to suppressed pings.
    target_contributors : int
        Contributor count at which the count factor of confidence saturates.
    min_active_contributors / min_active_weight / low_trust_threshold
        Minimums for a fused position to be ``active`` rather than ``degraded``.
    material_change_distance_m / material_change_confidence : float
        Emission thresholds for position updates.
    position_stale_after : float
        A fused position older than this is served through the fallback view.
    session_inactivity_timeout : float
        Tracking sessions with no ping for this long are ended.
    static_gps_timeout / static_gps_tolerance_m : float
        A session whose pings stay within the tolerance for this long is ended
        as ``static_gps``.
    off_route_window / off_route_ratio : float
        A session whose share of ``off_route`` pings over the window exceeds
        the ratio is ended as ``off_route``.
    reliability_min_pings : int
        Pings needed before either reliability check applies.
    completion_grace : float
        Grace period after the scheduled trip end.
    trip_inactivity_timeout : float
        No valid ping on a bus for this long completes the trip.
    gap_minor_max / gap_moderate_max : float
        Fallback gap-severity thresholds on the last-known position age.
    fusion_interval / sweep_interval : float
        Periods of the two coordinator tasks.
    ping_retention : float
        Buffered pings older than this are purged by the sweep.
    max_pings_per_bus : int
        Hard bound on the per-bus ping buffer.
    device_token_salt : str
        Salt mixed into device-token hashes.
    mqtt_host : str or None
        Broker for the MQTT position broadcaster; ``None`` keeps updates in memory.
    archive_url : str or None
        HTTP endpoint for trip records; ``None`` keeps records in memory.
    """

    bounds: GeoBounds = dataclasses.field(default_factory=GeoBounds)

    # Validation
    max_accuracy_m: float = 50.0
    min_accuracy_factor: float = 0.1
    max_plausible_speed_kmh: float = 90.0
    corridor_radius_m: float = 300.0
    off_route_factor: float = 0.7
    stale_window: float = 300.0
    stale_factor: float = 0.8
    rejection_threshold: float = 0.3

    # Trust
    reputation_smoothing: float = 0.1
    accuracy_cutoff: float = 0.5
    trusted_threshold: float = 0.7
    min_contributions: int = 10
    trust_floor: float = 0.1
    trust_decay_window: float = 24 * 3600
    trust_decay_time_constant: float = 3 * 24 * 3600

    # Fusion
    max_ping_age: float = 120.0
    outlier_k: float = 2.0
    outlier_min_distance_m: float = 25.0
    outlier_max_distance_m: float = 100.0
    outlier_weight_factor: float = 0.0
    target_contributors: int = 3
    min_active_contributors: int = 2
    min_active_weight: float = 1.0
    low_trust_threshold: float = 0.4
    material_change_distance_m: float = 5.0
    material_change_confidence: float = 0.05
    position_stale_after: float = 60.0

    # Lifecycle
    session_inactivity_timeout: float = 15 * 60
    static_gps_timeout: float = 10 * 60
    static_gps_tolerance_m: float = 10.0
    off_route_window: float = 10 * 60
    off_route_ratio: float = 0.7
    reliability_min_pings: int = 3
    completion_grace: float = 5 * 60
    trip_inactivity_timeout: float = 45 * 60
    gap_minor_max: float = 30 * 60
    gap_moderate_max: float = 60 * 60

    # Scheduling and storage
    fusion_interval: float = 5.0
    sweep_interval: float = 30.0
    ping_retention: float = 6 * 3600
    max_pings_per_bus: int = 5000

    # Identity and collaborators
    device_token_salt: str = ""
    mqtt_host: str | None = None
    mqtt_port: int = 1883
    mqtt_topic_prefix: str = DEFAULT_MQTT_TOPIC_PREFIX
    mqtt_tls: bool = False
    archive_url: str | None = None
    archive_timeout: float = 10.0

    def __post_init__(self) -> None:
        unit_fields = (
            "min_accuracy_factor",
            "off_route_factor",
            "stale_factor",
            "rejection_threshold",
            "reputation_smoothing",
            "accuracy_cutoff",
            "trusted_threshold",
            "trust_floor",
            "outlier_weight_factor",
            "low_trust_threshold",
            "material_change_confidence",
            "off_route_ratio",
        )
        for name in unit_fields:
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise BusFusionConfigError(f"{name} must be within [0, 1], got {value}")

        positive_fields = (
            "max_accuracy_m",
            "max_plausible_speed_kmh",
            "corridor_radius_m",
            "stale_window",
            "trust_decay_time_constant",
            "max_ping_age",
            "outlier_k",
            "outlier_max_distance_m",
            "session_inactivity_timeout",
            "static_gps_timeout",
            "static_gps_tolerance_m",
            "off_route_window",
            "trip_inactivity_timeout",
            "fusion_interval",
            "sweep_interval",
            "ping_retention",
        )
        for name in positive_fields:
            value = getattr(self, name)
            if value <= 0:
                raise BusFusionConfigError(f"{name} must be positive, got {value}")

        if self.outlier_min_distance_m > self.outlier_max_distance_m:
            raise BusFusionConfigError("outlier_min_distance_m must not exceed outlier_max_distance_m")
        if self.gap_minor_max > self.gap_moderate_max:
            raise BusFusionConfigError("gap_minor_max must not exceed gap_moderate_max")
        if self.target_contributors < 1 or self.min_active_contributors < 1:
            raise BusFusionConfigError("contributor minimums must be at least 1")
        if self.max_pings_per_bus < 1:
            raise BusFusionConfigError("max_pings_per_bus must be at least 1")
        if self.reliability_min_pings < 1:
            raise BusFusionConfigError("reliability_min_pings must be at least 1")
        b = self.bounds
        if not (b.min_lat < b.max_lat and b.min_lng < b.max_lng):
            raise BusFusionConfigError(f"Invalid bounding box: {b}")

    @classmethod
    def from_env(cls, **overrides: Any) -> FusionConfig:
        """Create configuration from environment variables.

        Reads optional ``BUSFUSION_*`` variables. Explicit keyword arguments
        override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        FusionConfig
            Populated configuration.
        """
        env = os.environ

        bounds_kwargs: dict[str, float] = {}
        _ENV_BOUNDS_MAP = {
            "BUSFUSION_MIN_LAT": "min_lat",
            "BUSFUSION_MAX_LAT": "max_lat",
            "BUSFUSION_MIN_LNG": "min_lng",
            "BUSFUSION_MAX_LNG": "max_lng",
        }
        for env_key, field_name in _ENV_BOUNDS_MAP.items():
            val = env.get(env_key)
            if val is not None:
                bounds_kwargs[field_name] = float(val)

        # Allow overriding bounds via a nested dict
        bounds_overrides = overrides.pop("bounds", None)
        if isinstance(bounds_overrides, dict):
            bounds_kwargs.update(bounds_overrides)
        elif isinstance(bounds_overrides, GeoBounds):
            bounds_kwargs = dataclasses.asdict(bounds_overrides)

        config_kwargs: dict[str, Any] = {"bounds": GeoBounds(**bounds_kwargs)}

        _ENV_STR_MAP = {
            "BUSFUSION_DEVICE_TOKEN_SALT": "device_token_salt",
            "BUSFUSION_MQTT_HOST": "mqtt_host",
            "BUSFUSION_MQTT_TOPIC_PREFIX": "mqtt_topic_prefix",
            "BUSFUSION_ARCHIVE_URL": "archive_url",
        }
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        _ENV_FLOAT_MAP = {
            "BUSFUSION_MAX_ACCURACY_M": "max_accuracy_m",
            "BUSFUSION_MAX_SPEED_KMH": "max_plausible_speed_kmh",
            "BUSFUSION_CORRIDOR_RADIUS_M": "corridor_radius_m",
            "BUSFUSION_STALE_WINDOW": "stale_window",
            "BUSFUSION_MAX_PING_AGE": "max_ping_age",
            "BUSFUSION_FUSION_INTERVAL": "fusion_interval",
            "BUSFUSION_SWEEP_INTERVAL": "sweep_interval",
            "BUSFUSION_SESSION_TIMEOUT": "session_inactivity_timeout",
            "BUSFUSION_STATIC_GPS_TIMEOUT": "static_gps_timeout",
            "BUSFUSION_COMPLETION_GRACE": "completion_grace",
            "BUSFUSION_ARCHIVE_TIMEOUT": "archive_timeout",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = float(val)

        _ENV_INT_MAP = {
            "BUSFUSION_MIN_CONTRIBUTIONS": "min_contributions",
            "BUSFUSION_MAX_PINGS_PER_BUS": "max_pings_per_bus",
            "BUSFUSION_MQTT_PORT": "mqtt_port",
        }
        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = int(val)

        if "mqtt_tls" not in overrides:
            config_kwargs["mqtt_tls"] = _env_bool(env.get("BUSFUSION_MQTT_TLS"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
