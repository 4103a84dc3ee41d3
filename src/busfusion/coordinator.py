"""Periodic fusion and sweep cycles.

Two independent asyncio tasks share the engine's keyed in-memory state:

- the fusion cycle fuses every bus with fresh pings or a live position,
- the sweep expires idle sessions, ends unreliable ones, decays trust,
  completes trips and purges old pings.

Every external call (broadcast, archive) is dispatched as a background task
*after* the in-memory transition it reports has committed. A failing
collaborator is logged and never rolls state back.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from busfusion.completion import TripCompletionDetector
from busfusion.config import FusionConfig
from busfusion.fusion import LocationFusionEngine
from busfusion.models._base import utcnow
from busfusion.models.position import PositionUpdate
from busfusion.models.session import SessionEndReason
from busfusion.models.trip import CompletionResult, TripRecord
from busfusion.sinks import ArchiveSink, PositionBroadcaster
from busfusion.state.pings import PingBuffer
from busfusion.state.positions import PositionStore
from busfusion.state.sessions import TrackingSessionManager
from busfusion.state.trust import DeviceTrustStore

_logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class FusionCycleReport:
    fused: int = 0
    emitted: int = 0
    escalated_stale: int = 0
    failed: int = 0


@dataclasses.dataclass(frozen=True)
class SweepReport:
    sessions_expired: int = 0
    sessions_deactivated: int = 0
    trust_refreshed: int = 0
    trips_completed: tuple[TripRecord, ...] = ()
    pings_purged: int = 0
    failed: int = 0


class BatchCoordinator:
    """Drives the periodic work of a :class:`~busfusion.engine.FusionEngine`."""

    def __init__(
        self,
        config: FusionConfig,
        *,
        trust: DeviceTrustStore,
        sessions: TrackingSessionManager,
        pings: PingBuffer,
        positions: PositionStore,
        fusion: LocationFusionEngine,
        completion: TripCompletionDetector,
        broadcaster: PositionBroadcaster,
        archive_sink: ArchiveSink,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._trust = trust
        self._sessions = sessions
        self._pings = pings
        self._positions = positions
        self._fusion = fusion
        self._completion = completion
        self._broadcaster = broadcaster
        self._archive_sink = archive_sink
        self._clock = clock
        self._tasks: list[asyncio.Task[None]] = []
        self._dispatched: set[asyncio.Task[None]] = set()

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, label: str, coro: Awaitable[None]) -> None:
        async def _run() -> None:
            try:
                await coro
            except Exception:
                _logger.warning("Dispatch %s failed", label, exc_info=True)

        task = asyncio.get_running_loop().create_task(_run(), name=f"busfusion-dispatch-{label}")
        self._dispatched.add(task)
        task.add_done_callback(self._dispatched.discard)

    def emit_position(self, update: PositionUpdate) -> None:
        self._dispatch(f"publish:{update.bus_id}", self._broadcaster.publish(update))

    def emit_record(self, record: TripRecord) -> None:
        self._dispatch(f"archive:{record.record_id}", self._archive_sink.archive(record))

    async def drain(self) -> None:
        """Wait for every in-flight dispatch to finish."""
        while self._dispatched:
            await asyncio.gather(*list(self._dispatched), return_exceptions=True)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def _fuse_bus(self, bus_id: str, now: datetime) -> tuple[bool, bool, bool]:
        """Returns ``(fused, emitted, escalated_stale)``."""
        async with self._positions.hold(bus_id):
            window = self._pings.window(bus_id, now=now, max_age=self._config.max_ping_age)
            position = await self._fusion.fuse(bus_id, window, now=now)
            if position is None:
                stale = self._positions.mark_stale(bus_id)
                if stale is None:
                    return False, False, False
                self.emit_position(PositionUpdate.from_position(stale))
                return False, True, True

            changed = self._positions.update(position)
            self._completion.observe_position(bus_id, position)
        if changed:
            self.emit_position(PositionUpdate.from_position(position))
        return True, changed, False

    async def run_fusion_cycle(self, now: datetime | None = None) -> FusionCycleReport:
        """Fuse every bus with fresh pings or a still-live position."""
        now = now or self._clock()
        bus_ids = self._pings.drain_pending() | self._positions.live_bus_ids()
        fused = emitted = escalated = failed = 0
        for bus_id in sorted(bus_ids):
            try:
                did_fuse, did_emit, did_escalate = await self._fuse_bus(bus_id, now)
            except Exception:
                failed += 1
                _logger.warning("Fusion failed for bus=%s", bus_id, exc_info=True)
                continue
            fused += did_fuse
            emitted += did_emit
            escalated += did_escalate
        if bus_ids:
            _logger.debug(
                "Fusion cycle buses=%d fused=%d emitted=%d stale=%d failed=%d",
                len(bus_ids),
                fused,
                emitted,
                escalated,
                failed,
            )
        return FusionCycleReport(fused=fused, emitted=emitted, escalated_stale=escalated, failed=failed)

    async def complete_trip(self, bus_id: str, *, now: datetime) -> tuple[CompletionResult, TripRecord | None]:
        """Check one bus and finalize its trip if complete."""
        async with self._positions.hold(bus_id):
            result = self._completion.check_completion(bus_id, now=now)
            if not result.completed:
                return result, None
            record = self._completion.finalize(result, now=now)
            stale = self._positions.get(bus_id)
        self.emit_record(record)
        if stale is not None:
            self.emit_position(PositionUpdate.from_position(stale))
        return result, record

    async def run_sweep(self, now: datetime | None = None) -> SweepReport:
        """Expire and deactivate sessions, refresh trust, complete trips and purge old pings."""
        now = now or self._clock()
        expired = self._sessions.expire_inactive(now)
        deactivated = self._sessions.deactivate_unreliable(now)
        for session in deactivated:
            if session.end_reason == SessionEndReason.OFF_ROUTE:
                # Static GPS ends the session without a trust penalty.
                await self._trust.record_outcome(session.device_id, False, now=now)
        refreshed = self._trust.apply_decay(now)

        completed: list[TripRecord] = []
        failed = 0
        for bus_id in sorted(self._completion.candidate_bus_ids()):
            try:
                _, record = await self.complete_trip(bus_id, now=now)
            except Exception:
                failed += 1
                _logger.warning("Completion check failed for bus=%s", bus_id, exc_info=True)
                continue
            if record is not None:
                completed.append(record)

        purged = self._pings.purge(now, self._config.ping_retention)
        return SweepReport(
            sessions_expired=len(expired),
            sessions_deactivated=len(deactivated),
            trust_refreshed=refreshed,
            trips_completed=tuple(completed),
            pings_purged=purged,
            failed=failed,
        )

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    async def _loop(self, name: str, interval: float, cycle: Callable[[], Awaitable[object]]) -> None:
        while True:
            try:
                await cycle()
            except asyncio.CancelledError:
                raise
            except Exception:
                _logger.warning("%s cycle failed", name, exc_info=True)
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self.is_running:
            return
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(
                self._loop("fusion", self._config.fusion_interval, self.run_fusion_cycle),
                name="busfusion-fusion",
            ),
            loop.create_task(
                self._loop("sweep", self._config.sweep_interval, self.run_sweep),
                name="busfusion-sweep",
            ),
        ]
        _logger.info(
            "Coordinator started fusion_interval=%ss sweep_interval=%ss",
            self._config.fusion_interval,
            self._config.sweep_interval,
        )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if tasks:
            _logger.info("Coordinator stopped")
