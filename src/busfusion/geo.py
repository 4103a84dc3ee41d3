"""Geodesic helpers.

Distances are in metres, angles in degrees. Great-circle distance uses the
haversine formula; point-to-segment distance uses a local equirectangular
projection, which is accurate to well under a metre at city scale.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence

from busfusion._constants import EARTH_RADIUS_M

LatLng = tuple[float, float]


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def bearing_deg(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Initial bearing from the first point to the second, clockwise from north in ``[0, 360)``."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_lambda = math.radians(lng2 - lng1)

    y = math.sin(d_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    return math.fmod(math.degrees(math.atan2(y, x)) + 360.0, 360.0)


def angular_difference_deg(a: float, b: float) -> float:
    """Smallest absolute difference between two headings, in ``[0, 180]``."""
    diff = abs(a - b) % 360.0
    return 360.0 - diff if diff > 180.0 else diff


def within_radius(lat: float, lng: float, center_lat: float, center_lng: float, radius_m: float) -> bool:
    return haversine_m(lat, lng, center_lat, center_lng) <= radius_m


def _project(lat: float, lng: float, ref_lat: float, ref_lng: float) -> tuple[float, float]:
    """Project onto a local plane (x east, y north) in metres around the reference point."""
    x = math.radians(lng - ref_lng) * math.cos(math.radians(ref_lat)) * EARTH_RADIUS_M
    y = math.radians(lat - ref_lat) * EARTH_RADIUS_M
    return x, y


def distance_to_segment_m(
    lat: float,
    lng: float,
    a_lat: float,
    a_lng: float,
    b_lat: float,
    b_lng: float,
) -> float:
    """Shortest distance from a point to the segment A-B."""
    ax, ay = _project(a_lat, a_lng, lat, lng)
    bx, by = _project(b_lat, b_lng, lat, lng)
    dx = bx - ax
    dy = by - ay
    length_sq = dx * dx + dy * dy
    if length_sq == 0.0:
        return math.hypot(ax, ay)
    # The point sits at the origin of the projection.
    t = max(0.0, min(1.0, -(ax * dx + ay * dy) / length_sq))
    return math.hypot(ax + t * dx, ay + t * dy)


def is_near_segment(
    lat: float,
    lng: float,
    a_lat: float,
    a_lng: float,
    b_lat: float,
    b_lng: float,
    threshold_m: float,
) -> bool:
    return distance_to_segment_m(lat, lng, a_lat, a_lng, b_lat, b_lng) <= threshold_m


def distance_to_polyline_m(lat: float, lng: float, points: Sequence[LatLng]) -> float | None:
    """Shortest distance from a point to a polyline, or ``None`` for an empty one."""
    if not points:
        return None
    if len(points) == 1:
        return haversine_m(lat, lng, points[0][0], points[0][1])
    return min(
        distance_to_segment_m(lat, lng, a[0], a[1], b[0], b[1])
        for a, b in zip(points, points[1:], strict=False)
    )


def weighted_centroid(points: Iterable[tuple[float, float, float]]) -> LatLng | None:
    """Weighted mean of ``(lat, lng, weight)`` triples; ``None`` when the total weight is zero."""
    total = 0.0
    lat_sum = 0.0
    lng_sum = 0.0
    for lat, lng, weight in points:
        if weight <= 0.0:
            continue
        total += weight
        lat_sum += lat * weight
        lng_sum += lng * weight
    if total <= 0.0:
        return None
    return lat_sum / total, lng_sum / total


def offset_m(lat: float, lng: float, north_m: float, east_m: float) -> LatLng:
    """Point displaced from ``(lat, lng)`` by the given metres north and east."""
    d_lat = math.degrees(north_m / EARTH_RADIUS_M)
    d_lng = math.degrees(east_m / (EARTH_RADIUS_M * math.cos(math.radians(lat))))
    return lat + d_lat, lng + d_lng
