"""Per-device trust and reputation store.

:meth:`DeviceTrustStore.record_outcome` is the only entry point that mutates
a device's scores, so the range and decay invariants are enforced here and
nowhere else.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable
from datetime import datetime

from busfusion._constants import NEUTRAL_TRUST
from busfusion._redact import short_id
from busfusion.config import FusionConfig
from busfusion.exceptions import TrustStoreCorruptionError
from busfusion.models._base import clamp_unit, utcnow
from busfusion.models.device import DeviceRecord
from busfusion.state.locks import KeyedLocks
from busfusion.state.policy import derive_trust, update_reputation

_logger = logging.getLogger(__name__)


def _check_scores(record: DeviceRecord) -> None:
    for name in ("trust_score", "reputation_score"):
        value = getattr(record, name)
        if not math.isfinite(value) or not 0.0 <= value <= 1.0:
            raise TrustStoreCorruptionError(f"{name}={value!r} outside [0, 1]", device_id=record.device_id)


class DeviceTrustStore:
    """In-memory trust records, serialized per device.

    Reads are lock-free snapshots; every read-modify-write holds the
    device's key lock.
    """

    def __init__(self, config: FusionConfig, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._config = config
        self._clock = clock
        self._records: dict[str, DeviceRecord] = {}
        self._locks = KeyedLocks()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._records

    def _derive(self, reputation: float, idle_seconds: float) -> float:
        cfg = self._config
        return derive_trust(
            reputation,
            idle_seconds,
            window=cfg.trust_decay_window,
            time_constant=cfg.trust_decay_time_constant,
            floor=cfg.trust_floor,
        )

    def _trusted(self, trust: float, total_contributions: int) -> bool:
        return trust >= self._config.trusted_threshold and total_contributions >= self._config.min_contributions

    def _repaired(self, record: DeviceRecord) -> DeviceRecord:
        """Clamp a corrupted record instead of failing the caller."""
        try:
            _check_scores(record)
        except TrustStoreCorruptionError as exc:
            _logger.warning("Trust record corrupted for device=%s: %s; clamping", short_id(record.device_id), exc)
            trust = clamp_unit(record.trust_score)
            return record.model_copy(
                update={
                    "trust_score": trust,
                    "reputation_score": clamp_unit(record.reputation_score),
                    "is_trusted": self._trusted(trust, record.total_contributions),
                }
            )
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, device_id: str) -> DeviceRecord | None:
        return self._records.get(device_id)

    def lookup(self, device_id: str, now: datetime | None = None) -> tuple[float, bool]:
        """Decay-aware ``(trust_score, is_trusted)`` for a device.

        Unknown devices are neutral and untrusted.
        """
        record = self._records.get(device_id)
        if record is None:
            return NEUTRAL_TRUST, False
        now = now or self._clock()
        trust = self._derive(clamp_unit(record.reputation_score), record.idle_seconds(now))
        return trust, self._trusted(trust, record.total_contributions)

    def trust_score(self, device_id: str, now: datetime | None = None) -> float:
        return self.lookup(device_id, now)[0]

    def is_trusted(self, device_id: str, now: datetime | None = None) -> bool:
        return self.lookup(device_id, now)[1]

    def snapshot(self) -> list[DeviceRecord]:
        return list(self._records.values())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def record_outcome(
        self,
        device_id: str,
        was_valid: bool,
        agreement: float | None = None,
        *,
        now: datetime | None = None,
    ) -> float:
        """Fold one contribution outcome into a device's scores.

        Parameters
        ----------
        device_id
            Device hash.
        was_valid
            Whether the ping passed validation. Invalid pings score 0.
        agreement
            Agreement with the fused result in ``[0, 1]``; ``None`` when the
            ping has not been compared against a fused position.

        Returns
        -------
        float
            The updated trust score.
        """
        async with self._locks.hold(device_id):
            now = now or self._clock()
            record = self._records.get(device_id)
            if record is None:
                record = DeviceRecord(device_id=device_id, created_at=now)
            record = self._repaired(record)

            if not was_valid:
                outcome = 0.0
            elif agreement is None:
                outcome = 1.0
            else:
                outcome = clamp_unit(agreement)

            cfg = self._config
            reputation = update_reputation(record.reputation_score, outcome, cfg.reputation_smoothing)
            trust = self._derive(reputation, 0.0)
            total = record.total_contributions + 1
            accurate = record.accurate_contributions + (1 if outcome >= cfg.accuracy_cutoff else 0)

            self._records[device_id] = record.model_copy(
                update={
                    "reputation_score": reputation,
                    "trust_score": trust,
                    "total_contributions": total,
                    "accurate_contributions": accurate,
                    "is_trusted": self._trusted(trust, total),
                    "last_activity": now,
                }
            )
        _logger.debug(
            "Trust outcome device=%s valid=%s agreement=%s -> trust=%.3f reputation=%.3f",
            short_id(device_id),
            was_valid,
            agreement,
            trust,
            reputation,
        )
        return trust

    def apply_decay(self, now: datetime | None = None) -> int:
        """Refresh stored trust for idle devices; returns the number of records changed.

        Records whose key lock is held are skipped: their pending update
        recomputes trust anyway.
        """
        now = now or self._clock()
        changed = 0
        for device_id, record in list(self._records.items()):
            if self._locks.locked(device_id):
                continue
            record = self._repaired(record)
            trust = self._derive(record.reputation_score, record.idle_seconds(now))
            trusted = self._trusted(trust, record.total_contributions)
            if trust != record.trust_score or trusted != record.is_trusted:
                record = record.model_copy(update={"trust_score": trust, "is_trusted": trusted})
                changed += 1
            self._records[device_id] = record
        if changed:
            _logger.debug("Trust decay refreshed %d device record(s)", changed)
        return changed

    def restore(self, records: Iterable[DeviceRecord]) -> None:
        """Load persisted records, repairing any that are out of range."""
        for record in records:
            self._records[record.device_id] = self._repaired(record)
