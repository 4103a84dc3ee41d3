#!/usr/bin/env python3
"""Drive a synthetic multi-rider trip through the fusion engine.

Riders sit on one bus moving along a straight route between two Dhaka
stops. Each rider reports a noisy position every few seconds; optionally one
rider is a spoofer reporting a point far off the route. The script runs the
fusion cycle on a simulated clock and prints the fused track, then sweeps
until the trip completes.

Usage
-----
::

    python scripts/simulate_riders.py --riders 4 --spoofer --steps 30
    python scripts/simulate_riders.py --json --output track.json

Options::

    --riders N        Honest riders on the bus (default: 3)
    --spoofer         Add one rider reporting a far-away position
    --steps N         Fusion cycles to simulate (default: 40)
    --interval S      Seconds between pings and cycles (default: 5)
    --noise M         Per-ping GPS noise in metres (default: 8)
    --seed N          Random seed (default: 7)
    --json            Output machine-readable JSON
    --output FILE     Write output to FILE instead of stdout
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import random
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from busfusion import FusedPosition, FusionConfig, FusionEngine, Stop, TripPlan  # noqa: E402
from busfusion.geo import haversine_m, offset_m  # noqa: E402

ORIGIN = Stop(name="Farmgate", lat=23.7580, lng=90.3900, radius_m=120)
MIDPOINT = Stop(name="Karwan Bazar", lat=23.7512, lng=90.3930, radius_m=120)
TERMINUS = Stop(name="Shahbag", lat=23.7380, lng=90.3960, radius_m=120)


class SimClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _bus_point(fraction: float) -> tuple[float, float]:
    stops = (ORIGIN, MIDPOINT, TERMINUS)
    legs = len(stops) - 1
    scaled = min(max(fraction, 0.0), 1.0) * legs
    leg = min(int(scaled), legs - 1)
    t = scaled - leg
    a, b = stops[leg], stops[leg + 1]
    return a.lat + (b.lat - a.lat) * t, a.lng + (b.lng - a.lng) * t


def _ping(
    rng: random.Random,
    clock: SimClock,
    token: str,
    point: tuple[float, float],
    noise: float,
) -> dict[str, Any]:
    lat, lng = offset_m(point[0], point[1], rng.gauss(0, noise), rng.gauss(0, noise))
    return {
        "busId": "SIM-1",
        "device_token": token,
        "latitude": lat,
        "longitude": lng,
        "accuracy": max(3.0, abs(rng.gauss(noise, 2))),
        "speed": max(0.0, rng.gauss(22, 3)),
        "heading": 165 + rng.gauss(0, 5),
        "timestamp": int(clock().timestamp() * 1000),
    }


def _row(step: int, position: FusedPosition | None, truth: tuple[float, float]) -> dict[str, Any]:
    if position is None:
        return {"step": step, "status": "none"}
    return {
        "step": step,
        "lat": round(position.lat, 6),
        "lng": round(position.lng, 6),
        "error_m": round(haversine_m(position.lat, position.lng, truth[0], truth[1]), 1),
        "confidence": round(position.confidence_level, 3),
        "trackers": position.active_trackers,
        "outliers": position.outliers_suppressed,
        "status": str(position.status),
    }


async def run(args: argparse.Namespace) -> dict[str, Any]:
    rng = random.Random(args.seed)
    clock = SimClock(datetime(2026, 1, 5, 8, 0, tzinfo=UTC))
    config = FusionConfig.from_env(fusion_interval=args.interval)
    duration = args.steps * args.interval

    rows: list[dict[str, Any]] = []
    async with FusionEngine(config, clock=clock, background=False) as engine:
        engine.set_trip_plan(
            TripPlan(
                trip_id="sim-trip",
                bus_id="SIM-1",
                stops=(ORIGIN, MIDPOINT, TERMINUS),
                scheduled_start=clock(),
                scheduled_end=clock() + timedelta(seconds=duration * 2),
            )
        )
        tokens = [f"rider-{i}" for i in range(args.riders)]

        for step in range(args.steps + 1):
            truth = _bus_point(step / args.steps)
            payloads = [_ping(rng, clock, token, truth, args.noise) for token in tokens]
            if args.spoofer:
                far = offset_m(truth[0], truth[1], 450.0, -300.0)
                payloads.append(_ping(rng, clock, "spoofer", far, args.noise))
            await engine.submit_batch(payloads)
            await engine.run_fusion_cycle()
            rows.append(_row(step, engine.positions.get("SIM-1"), truth))
            clock.advance(args.interval)

        sweep = await engine.run_sweep()
        await engine.drain()

        trust = {
            token: round(engine.trust.trust_score(engine.device_id_for_token(token)), 3)
            for token in [*tokens, *(["spoofer"] if args.spoofer else [])]
        }
        completed = [
            {"reason": str(r.reason), "pings": r.summary.total_pings, "distance_m": round(r.summary.total_distance_m)}
            for r in sweep.trips_completed
        ]

    return {"track": rows, "trust": trust, "completed": completed}


def _render(result: dict[str, Any]) -> str:
    lines = [f"{'step':>4} {'error_m':>8} {'conf':>6} {'trk':>3} {'out':>3} status"]
    for row in result["track"]:
        if row["status"] == "none":
            lines.append(f"{row['step']:>4} {'-':>8} {'-':>6} {'-':>3} {'-':>3} none")
            continue
        lines.append(
            f"{row['step']:>4} {row['error_m']:>8} {row['confidence']:>6} "
            f"{row['trackers']:>3} {row['outliers']:>3} {row['status']}"
        )
    lines.append("")
    lines.append("trust:")
    lines.extend(f"  {token:<10} {score}" for token, score in result["trust"].items())
    lines.append(f"completed: {result['completed'] or 'no'}")
    return "\n".join(lines)


def main() -> None:
    parser = argparse.ArgumentParser(description="Simulate riders sharing GPS on one bus.")
    parser.add_argument("--riders", type=int, default=3, help="Honest riders on the bus")
    parser.add_argument("--spoofer", action="store_true", help="Add one rider reporting a far-away position")
    parser.add_argument("--steps", type=int, default=40, help="Fusion cycles to simulate")
    parser.add_argument("--interval", type=float, default=5.0, help="Seconds between pings and cycles")
    parser.add_argument("--noise", type=float, default=8.0, help="Per-ping GPS noise in metres")
    parser.add_argument("--seed", type=int, default=7, help="Random seed")
    parser.add_argument("--json", action="store_true", dest="json_mode", help="Output machine-readable JSON")
    parser.add_argument("--output", "-o", help="Write output to FILE instead of stdout")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)

    result = asyncio.run(run(args))
    text = json.dumps(result, indent=2) if args.json_mode else _render(result)
    if args.output:
        Path(args.output).write_text(text + "\n", encoding="utf-8")
    else:
        print(text)


if __name__ == "__main__":
    main()
