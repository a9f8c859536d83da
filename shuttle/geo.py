"""
Geographic helpers shared by the correction, tracking and trip modules.

Coordinates travel as ``(lng, lat)`` tuples wherever a route vertex is
involved and as ``{"lat": ..., "lng": ...}`` mappings elsewhere.
"""
from __future__ import annotations

import math
from typing import Dict, Mapping, Optional, Tuple

from shapely.geometry import LineString, Point

EARTH_RADIUS_M = 6371000.0
KNOTS_TO_KMH = 1.852

LngLat = Tuple[float, float]


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Compute the great-circle distance between two coordinates in metres.
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def distance(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    return haversine_m(a["lat"], a["lng"], b["lat"], b["lng"])


def bearing(origin: Mapping[str, float], target: Mapping[str, float]) -> float:
    """
    Compute forward azimuth in degrees from ``origin`` to ``target``.
    """
    phi1 = math.radians(origin["lat"])
    phi2 = math.radians(target["lat"])
    d_lambda = math.radians(target["lng"] - origin["lng"])

    x = math.sin(d_lambda) * math.cos(phi2)
    y = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(
        d_lambda
    )
    return (math.degrees(math.atan2(x, y)) + 360) % 360


def project_onto_segment(
    point: LngLat,
    start: LngLat,
    end: LngLat,
    line: Optional[LineString] = None,
) -> Dict[str, object]:
    """
    Project ``point`` onto the segment ``start``-``end``.

    The projection is planar in (lng, lat) space and clamped to the segment,
    while the reported distance is the haversine distance to the projected
    point. Route segments are tens of metres long, so the two agree closely.
    """
    px, py = point
    ax, ay = start
    bx, by = end

    if ax == bx and ay == by:
        return {
            "projected": (ax, ay),
            "distance": haversine_m(py, px, ay, ax),
            "t": 0.0,
        }

    segment = line if line is not None else LineString([start, end])
    # LineString.project clamps to [0, length] for points beyond either end.
    t = segment.project(Point(px, py)) / segment.length
    t = max(0.0, min(1.0, t))

    projected_lng = ax + t * (bx - ax)
    projected_lat = ay + t * (by - ay)
    return {
        "projected": (projected_lng, projected_lat),
        "distance": haversine_m(py, px, projected_lat, projected_lng),
        "t": t,
    }


def knots_to_kmh(knots: float) -> float:
    return knots * KNOTS_TO_KMH


def valid_coordinates(lat: float, lng: float) -> bool:
    if lat is None or lng is None:
        return False
    if math.isnan(lat) or math.isnan(lng):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0
