"""Keyed store of the latest fused position per bus.

Writers hold the bus's key lock (see :meth:`PositionStore.hold`) so a fusion
cycle and a completion finalize never interleave on the same bus. Reads are
plain dict lookups of immutable snapshots.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator

from busfusion.config import FusionConfig
from busfusion.models.position import FusedPosition, PositionStatus
from busfusion.state.locks import KeyedLocks
from busfusion.state.policy import is_material_change

_logger = logging.getLogger(__name__)


class PositionStore:
    def __init__(self, config: FusionConfig) -> None:
        self._config = config
        self._positions: dict[str, FusedPosition] = {}
        self._locks = KeyedLocks()

    def __len__(self) -> int:
        return len(self._positions)

    @contextlib.asynccontextmanager
    async def hold(self, bus_id: str) -> AsyncIterator[None]:
        async with self._locks.hold(bus_id):
            yield

    def get(self, bus_id: str) -> FusedPosition | None:
        return self._positions.get(bus_id)

    def bus_ids(self) -> set[str]:
        return set(self._positions)

    def live_bus_ids(self) -> set[str]:
        """Buses whose stored position is not yet stale."""
        return {bus_id for bus_id, pos in self._positions.items() if pos.status != PositionStatus.STALE}

    def update(self, position: FusedPosition) -> bool:
        """Store *position*; returns whether it differs materially from the previous one."""
        previous = self._positions.get(position.bus_id)
        self._positions[position.bus_id] = position
        return is_material_change(
            previous,
            position,
            distance_m=self._config.material_change_distance_m,
            confidence_delta=self._config.material_change_confidence,
        )

    def mark_stale(self, bus_id: str) -> FusedPosition | None:
        """Escalate a bus's position to ``stale``.

        Returns the new snapshot, or ``None`` when there is nothing to escalate.
        """
        current = self._positions.get(bus_id)
        if current is None or current.status == PositionStatus.STALE:
            return None
        stale = current.model_copy(update={"status": PositionStatus.STALE})
        self._positions[bus_id] = stale
        _logger.debug("Position for bus=%s marked stale", bus_id)
        return stale
