"""Device reputation record."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field, model_validator

from busfusion._constants import NEUTRAL_TRUST
from busfusion.models._base import FusionBaseModel, UtcTimestamp, utcnow


class DeviceRecord(FusionBaseModel):
    """Trust and reputation of one anonymous device.

    Scores are deliberately *not* range-constrained at the model level: the
    trust store detects out-of-range values and repairs them without
    dropping the record.

    Parameters
    ----------
    device_id : str
        Opaque device hash.
    trust_score : float
        Weight of this device's pings in fusion (reputation with recency decay).
    reputation_score : float
        Exponentially-weighted accuracy of past contributions.
    total_contributions, accurate_contributions : int
        Outcome counters.
    is_trusted : bool
        Derived: trust above threshold with enough history.
    last_activity : datetime or None
        Time of the most recent recorded outcome.
    """

    device_id: str
    trust_score: float = NEUTRAL_TRUST
    reputation_score: float = NEUTRAL_TRUST
    total_contributions: int = Field(default=0, ge=0)
    accurate_contributions: int = Field(default=0, ge=0)
    is_trusted: bool = False
    last_activity: UtcTimestamp | None = None
    created_at: UtcTimestamp = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_counters(self) -> DeviceRecord:
        if self.accurate_contributions > self.total_contributions:
            raise ValueError("accurate_contributions cannot exceed total_contributions")
        return self

    @property
    def accuracy_ratio(self) -> float | None:
        if self.total_contributions == 0:
            return None
        return self.accurate_contributions / self.total_contributions

    def idle_seconds(self, now: datetime) -> float:
        reference = self.last_activity or self.created_at
        return max(0.0, (now - reference).total_seconds())
