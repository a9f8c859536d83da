"""
Position correction: snap a fix to a stop when close enough, otherwise onto
the route network.
"""
from __future__ import annotations

from typing import Dict, Iterable, Optional

from .geo import haversine_m
from .routes import DEFAULT_MAX_CORRECTION_M, RouteNetwork, get_route_network

DEFAULT_STOP_SNAP_RADIUS_M = 20.0


def _stop_value(stop, key):
    if isinstance(stop, dict):
        return stop[key]
    return getattr(stop, key)


def _ordered_stops(stops: Iterable) -> list:
    # First match wins, so the order must not depend on the caller.
    return sorted(stops, key=lambda stop: _stop_value(stop, "id"))


def snap_to_stop(
    lng: float,
    lat: float,
    stops: Iterable,
    snap_radius: float = DEFAULT_STOP_SNAP_RADIUS_M,
) -> Dict[str, object]:
    """
    Pull the fix onto the first stop (ascending id) within ``snap_radius``.

    Stops may be model instances or mappings with ``id``, ``name``, ``lat``
    and ``lng``. The first stop in range wins even when a later one is closer.
    """
    for stop in _ordered_stops(stops):
        stop_lat = _stop_value(stop, "lat")
        stop_lng = _stop_value(stop, "lng")
        if haversine_m(lat, lng, stop_lat, stop_lng) <= snap_radius:
            return {
                "lng": stop_lng,
                "lat": stop_lat,
                "snapped_to_stop": True,
                "stop_id": _stop_value(stop, "id"),
                "stop_name": _stop_value(stop, "name"),
            }

    return {
        "lng": lng,
        "lat": lat,
        "snapped_to_stop": False,
        "stop_id": None,
        "stop_name": None,
    }


def full_correction(
    lng: float,
    lat: float,
    stops: Iterable,
    stop_snap_radius: float = DEFAULT_STOP_SNAP_RADIUS_M,
    route_max_distance: float = DEFAULT_MAX_CORRECTION_M,
    network: Optional[RouteNetwork] = None,
) -> Dict[str, object]:
    """
    Stop snapping first, route snapping second, raw fix otherwise.
    """
    stop_snap = snap_to_stop(lng, lat, stops, stop_snap_radius)
    if stop_snap["snapped_to_stop"]:
        return {
            "lng": stop_snap["lng"],
            "lat": stop_snap["lat"],
            "correction_type": "stop",
            "stop_id": stop_snap["stop_id"],
            "stop_name": stop_snap["stop_name"],
            "distance": 0.0,
        }

    if network is None:
        network = get_route_network()
    route_snap = network.snap(lng, lat, route_max_distance)
    if route_snap["snapped"]:
        return {
            "lng": route_snap["lng"],
            "lat": route_snap["lat"],
            "correction_type": "route",
            "stop_id": None,
            "stop_name": None,
            "distance": route_snap["distance"],
        }

    return {
        "lng": lng,
        "lat": lat,
        "correction_type": "none",
        "stop_id": None,
        "stop_name": None,
        "distance": route_snap["distance"],
    }
