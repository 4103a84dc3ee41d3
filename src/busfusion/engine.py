"""High-level async facade over the fusion engine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any

import aiohttp

from busfusion._redact import short_id
from busfusion.completion import TripCompletionDetector
from busfusion.config import FusionConfig
from busfusion.coordinator import BatchCoordinator, FusionCycleReport, SweepReport
from busfusion.exceptions import MalformedPingError
from busfusion.fallback import FallbackResolver
from busfusion.fusion import LocationFusionEngine
from busfusion.ingestion.submit import hash_device_token, malformed_result, parse_ping, result_for
from busfusion.models._base import utcnow
from busfusion.models.ping import BatchResult, RawPing, SubmitResult, ValidatedPing
from busfusion.models.position import FallbackView, FusedPosition, PositionStatus
from busfusion.models.route import TripPlan
from busfusion.models.session import TrackingSession
from busfusion.models.trip import CompletionResult, TripProgress
from busfusion.sinks import ArchiveSink, PositionBroadcaster, archive_sink_from_config, broadcaster_from_config
from busfusion.state.archive import TripArchive
from busfusion.state.pings import PingBuffer
from busfusion.state.positions import PositionStore
from busfusion.state.sessions import TrackingSessionManager
from busfusion.state.trust import DeviceTrustStore
from busfusion.validation import GPSValidator

_logger = logging.getLogger(__name__)

PingPayload = Mapping[str, Any] | RawPing


class FusionEngine:
    """Crowd-sourced bus position engine.

    Usage::

        async with FusionEngine(FusionConfig.from_env()) as engine:
            await engine.submit({"busId": "B1", "device_token": "...", ...})
            position = engine.get_current_position("B1")

    With ``background=True`` (the default) the fusion and sweep cycles run as
    asyncio tasks while the engine is open; otherwise drive them with
    :meth:`run_fusion_cycle` and :meth:`run_sweep`.
    """

    def __init__(
        self,
        config: FusionConfig | None = None,
        *,
        broadcaster: PositionBroadcaster | None = None,
        archive_sink: ArchiveSink | None = None,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], datetime] = utcnow,
        background: bool = True,
    ) -> None:
        self._config = config or FusionConfig()
        self._clock = clock
        self._background = background

        self.broadcaster = broadcaster or broadcaster_from_config(self._config)
        self.archive_sink = archive_sink or archive_sink_from_config(self._config, session=session)

        self.trust = DeviceTrustStore(self._config, clock=clock)
        self.sessions = TrackingSessionManager(self._config, clock=clock)
        self.pings = PingBuffer(self._config)
        self.positions = PositionStore(self._config)
        self.archive = TripArchive()
        self.validator = GPSValidator(self._config)
        self.fusion = LocationFusionEngine(self._config, self.trust, self.pings)
        self.completion = TripCompletionDetector(
            self._config,
            sessions=self.sessions,
            pings=self.pings,
            positions=self.positions,
            archive=self.archive,
            clock=clock,
        )
        self.fallback = FallbackResolver(self._config, positions=self.positions, archive=self.archive, clock=clock)
        self.coordinator = BatchCoordinator(
            self._config,
            trust=self.trust,
            sessions=self.sessions,
            pings=self.pings,
            positions=self.positions,
            fusion=self.fusion,
            completion=self.completion,
            broadcaster=self.broadcaster,
            archive_sink=self.archive_sink,
            clock=clock,
        )

    @property
    def config(self) -> FusionConfig:
        return self._config

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> FusionEngine:
        await self.broadcaster.start()
        await self.archive_sink.start()
        if self._background:
            self.coordinator.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.coordinator.stop()
        await self.coordinator.drain()
        try:
            await self.broadcaster.close()
        finally:
            await self.archive_sink.close()

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def device_id_for_token(self, token: str) -> str:
        """Opaque device id for a raw device token."""
        return hash_device_token(token, self._config.device_token_salt)

    def _parse(self, payload: PingPayload, now: datetime) -> RawPing:
        if isinstance(payload, RawPing):
            # Receipt time always comes from the engine clock.
            return payload.model_copy(update={"server_timestamp": now})
        return parse_ping(payload, received_at=now, salt=self._config.device_token_salt)

    async def _ingest(self, ping: RawPing, now: datetime) -> SubmitResult:
        prior = self.pings.prior_ping(ping.device_id)
        route = self.completion.route_context(ping.bus_id)
        result = self.validator.validate(ping, prior, route, now=now)
        validated = ValidatedPing(ping=ping, result=result)

        self.pings.add(validated)
        self.sessions.record_ping(
            ping.device_id,
            ping.bus_id,
            validated.is_valid,
            flags=result.flags,
            location=(ping.lat, ping.lng),
            now=now,
        )
        if not validated.is_valid:
            await self.trust.record_outcome(ping.device_id, False, now=now)
        return result_for(validated)

    async def submit(self, payload: PingPayload) -> SubmitResult:
        """Validate and buffer one ping.

        Structurally broken payloads are answered with ``accepted=False`` and
        the ``malformed`` flag; nothing is stored for them.
        """
        now = self._clock()
        try:
            ping = self._parse(payload, now)
        except MalformedPingError as exc:
            _logger.debug("Rejected malformed ping: %s", exc)
            return malformed_result(exc)
        return await self._ingest(ping, now)

    async def submit_batch(self, payloads: Iterable[PingPayload]) -> BatchResult:
        """Submit many pings at once.

        Devices are processed concurrently; each device's pings keep their
        submission order. A failure on one ping is counted as invalid and
        does not affect the rest.
        """
        now = self._clock()
        processed = invalid = 0
        by_device: dict[str, list[RawPing]] = {}
        for payload in payloads:
            processed += 1
            try:
                ping = self._parse(payload, now)
            except MalformedPingError as exc:
                _logger.debug("Rejected malformed ping in batch: %s", exc)
                invalid += 1
                continue
            by_device.setdefault(ping.device_id, []).append(ping)

        async def _device(device_id: str, pings: list[RawPing]) -> tuple[int, int]:
            valid = failed = 0
            for ping in pings:
                try:
                    result = await self._ingest(ping, now)
                except Exception:
                    _logger.warning("Ping %s from device=%s failed", ping.ping_id, short_id(device_id), exc_info=True)
                    failed += 1
                    continue
                if result.accepted:
                    valid += 1
                else:
                    failed += 1
            return valid, failed

        outcomes = await asyncio.gather(*(_device(d, p) for d, p in by_device.items()))
        valid = sum(v for v, _ in outcomes)
        invalid += sum(f for _, f in outcomes)
        _logger.debug("Batch processed=%d valid=%d invalid=%d", processed, valid, invalid)
        return BatchResult(processed=processed, valid=valid, invalid=invalid)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_current_position(self, bus_id: str) -> FusedPosition | FallbackView:
        """Live fused position, or the fallback view once it has gone stale."""
        now = self._clock()
        position = self.positions.get(bus_id)
        if (
            position is not None
            and position.status != PositionStatus.STALE
            and position.age_seconds(now) <= self._config.position_stale_after
        ):
            return position
        return self.fallback.resolve(bus_id, now=now)

    def get_session_status(self, device_id: str, bus_id: str) -> TrackingSession | None:
        return self.sessions.get(device_id, bus_id)

    def get_trip_progress(self, bus_id: str) -> TripProgress | None:
        """Stop progression of the bus's active trip; ``None`` without a plan."""
        return self.completion.trip_progress(bus_id)

    # ------------------------------------------------------------------
    # Session control and schedule
    # ------------------------------------------------------------------

    def start_tracking(self, device_id: str, bus_id: str) -> TrackingSession:
        return self.sessions.start(device_id, bus_id, now=self._clock())

    def stop_tracking(self, device_id: str, bus_id: str) -> TrackingSession | None:
        return self.sessions.stop(device_id, bus_id, now=self._clock())

    def set_trip_plan(self, plan: TripPlan) -> None:
        self.completion.set_plan(plan)

    async def check_completion(self, bus_id: str) -> CompletionResult:
        """Check a bus now, finalizing and archiving its trip if complete."""
        result, _ = await self.coordinator.complete_trip(bus_id, now=self._clock())
        return result

    # ------------------------------------------------------------------
    # Manual cycle control
    # ------------------------------------------------------------------

    async def run_fusion_cycle(self) -> FusionCycleReport:
        return await self.coordinator.run_fusion_cycle(self._clock())

    async def run_sweep(self) -> SweepReport:
        return await self.coordinator.run_sweep(self._clock())

    async def drain(self) -> None:
        await self.coordinator.drain()
