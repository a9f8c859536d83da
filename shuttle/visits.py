"""
Per-vehicle stop tracking: which stop geofence a vehicle is inside, the
visit records that follow from enter/exit transitions, and the debounced
geofence audit log.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from django.conf import settings
from django.db.models import Count, Max, Sum

from .geo import distance, haversine_m
from .models import GeofenceEvent, Stop, StopVisit, Vehicle

logger = logging.getLogger(__name__)

DEFAULT_GEOFENCE_RADIUS_M = 15
GEOFENCE_DEBOUNCE_SECONDS = 60


def nearest_stop_in_geofence(
    lat: float, lng: float, stops: Iterable[Stop]
) -> Tuple[Optional[Stop], Optional[float]]:
    """
    Closest stop whose own geofence contains the position, or ``(None, None)``.
    """
    point = {"lat": lat, "lng": lng}
    nearest = None
    nearest_distance = None
    for stop in stops:
        d = distance(point, stop.as_point())
        radius = stop.geofence_radius or DEFAULT_GEOFENCE_RADIUS_M
        if d <= radius and (nearest_distance is None or d < nearest_distance):
            nearest = stop
            nearest_distance = d
    return nearest, nearest_distance


def _close_visit(visit: StopVisit, now: datetime) -> StopVisit:
    visit.exit_time = now
    visit.duration = max(int(round((now - visit.enter_time).total_seconds())), 0)
    visit.save(update_fields=["exit_time", "duration"])
    logger.info(
        f"Vehicle {visit.vehicle_id} left stop {visit.stop_id} after {visit.duration}s"
    )
    return visit


def record_stop_enter(vehicle: Vehicle, stop_id: int, now: datetime) -> StopVisit:
    """
    Open a visit for ``vehicle`` at ``stop_id``.

    An open visit for the same stop is reused. Open visits at other stops are
    closed first, so a vehicle never has two open visits.
    """
    open_visit = StopVisit.objects.filter(
        vehicle=vehicle, stop_id=stop_id, exit_time__isnull=True
    ).first()
    if open_visit is not None:
        return open_visit

    stale = StopVisit.objects.filter(vehicle=vehicle, exit_time__isnull=True).exclude(
        stop_id=stop_id
    )
    for visit in stale:
        _close_visit(visit, now)

    visit = StopVisit.objects.create(vehicle=vehicle, stop_id=stop_id, enter_time=now)
    logger.info(f"Vehicle {vehicle.pk} entered stop {stop_id} (visit {visit.pk})")
    return visit


def record_stop_exit(vehicle: Vehicle, stop_id: int, now: datetime) -> Optional[StopVisit]:
    open_visit = (
        StopVisit.objects.filter(vehicle=vehicle, stop_id=stop_id, exit_time__isnull=True)
        .order_by("-enter_time", "-id")
        .first()
    )
    if open_visit is None:
        logger.info(f"No open visit for vehicle {vehicle.pk} at stop {stop_id}")
        return None
    return _close_visit(open_visit, now)


def record_geofence_event(
    vehicle_id: int,
    stop_id: int,
    event_type: str,
    distance: float,
    now: datetime,
) -> Optional[GeofenceEvent]:
    """
    Append to the geofence audit log.

    A repeated ``enter`` for the same vehicle and stop within the debounce
    window of a previous ``enter`` is dropped and ``None`` is returned.
    """
    if event_type == GeofenceEvent.ENTER:
        window = settings.SHUTTLE_CONFIG.get(
            "geofence_debounce_seconds", GEOFENCE_DEBOUNCE_SECONDS
        )
        last = (
            GeofenceEvent.objects.filter(vehicle_id=vehicle_id, stop_id=stop_id)
            .order_by("-timestamp", "-id")
            .first()
        )
        if (
            last is not None
            and last.type == GeofenceEvent.ENTER
            and (now - last.timestamp).total_seconds() <= window
        ):
            logger.debug(
                f"Debounced enter for vehicle {vehicle_id} at stop {stop_id}"
            )
            return None

    return GeofenceEvent.objects.create(
        vehicle_id=vehicle_id,
        stop_id=stop_id,
        type=event_type,
        distance=distance,
        timestamp=now,
    )


def track_geofence(
    vehicle: Vehicle,
    lat: float,
    lng: float,
    stops: Iterable[Stop],
    now: datetime,
) -> Optional[Dict[str, object]]:
    """
    Advance the vehicle's "inside stop X or nowhere" state for a new position.

    Compares the newly computed stop with the persisted
    ``vehicle.last_geofence_stop_id`` and opens or closes visits accordingly.
    The new value is stored even when it did not change. Returns the
    transition, or ``None`` when the vehicle stayed where it was.
    """
    stops = list(stops)
    stop, stop_distance = nearest_stop_in_geofence(lat, lng, stops)
    nearest_stop_id = stop.pk if stop is not None else None
    previous_stop_id = vehicle.last_geofence_stop_id
    transition = None

    if nearest_stop_id is not None and nearest_stop_id != previous_stop_id:
        if previous_stop_id is not None:
            record_stop_exit(vehicle, previous_stop_id, now)
            record_geofence_event(
                vehicle.pk,
                previous_stop_id,
                GeofenceEvent.EXIT,
                _distance_to(previous_stop_id, stops, lat, lng),
                now,
            )
        visit = record_stop_enter(vehicle, nearest_stop_id, now)
        record_geofence_event(
            vehicle.pk, nearest_stop_id, GeofenceEvent.ENTER, stop_distance, now
        )
        transition = {
            "type": GeofenceEvent.ENTER,
            "stop_id": nearest_stop_id,
            "previous_stop_id": previous_stop_id,
            "visit_id": visit.pk,
        }
    elif nearest_stop_id is None and previous_stop_id is not None:
        visit = record_stop_exit(vehicle, previous_stop_id, now)
        record_geofence_event(
            vehicle.pk,
            previous_stop_id,
            GeofenceEvent.EXIT,
            _distance_to(previous_stop_id, stops, lat, lng),
            now,
        )
        transition = {
            "type": GeofenceEvent.EXIT,
            "stop_id": previous_stop_id,
            "previous_stop_id": previous_stop_id,
            "visit_id": visit.pk if visit is not None else None,
        }

    vehicle.last_geofence_stop_id = nearest_stop_id
    vehicle.save(update_fields=["last_geofence_stop"])
    return transition


def _distance_to(stop_id: int, stops: List[Stop], lat: float, lng: float) -> float:
    for stop in stops:
        if stop.pk == stop_id:
            return haversine_m(lat, lng, stop.lat, stop.lng)
    stop = Stop.objects.filter(pk=stop_id).first()
    if stop is None:
        return 0.0
    return haversine_m(lat, lng, stop.lat, stop.lng)


def _visit_payload(visit: StopVisit) -> Dict[str, object]:
    return {
        "id": visit.pk,
        "vehicle_id": visit.vehicle_id,
        "vehicle_name": visit.vehicle.name,
        "vehicle_plate": visit.vehicle.plate_number,
        "stop_id": visit.stop_id,
        "stop_name": visit.stop.name,
        "stop_icon": visit.stop.icon,
        "enter_time": visit.enter_time.isoformat(),
        "exit_time": visit.exit_time.isoformat() if visit.exit_time else None,
        "duration": visit.duration,
    }


def visits_between(
    start: datetime,
    end: datetime,
    vehicle_id: Optional[int] = None,
    stop_id: Optional[int] = None,
    limit: int = 500,
) -> List[Dict[str, object]]:
    queryset = StopVisit.objects.select_related("vehicle", "stop").filter(
        enter_time__gte=start, enter_time__lte=end
    )
    if vehicle_id is not None:
        queryset = queryset.filter(vehicle_id=vehicle_id)
    if stop_id is not None:
        queryset = queryset.filter(stop_id=stop_id)
    return [_visit_payload(visit) for visit in queryset.order_by("-enter_time")[:limit]]


def stop_statistics(start: datetime, end: datetime) -> List[Dict[str, object]]:
    """Visit counts and dwell times per stop, busiest stop first."""
    rows = (
        StopVisit.objects.filter(enter_time__gte=start, enter_time__lte=end)
        .values("stop_id", "stop__name", "stop__icon")
        .annotate(
            visit_count=Count("id"),
            unique_vehicles=Count("vehicle", distinct=True),
            total_duration=Sum("duration"),
        )
        .order_by("-visit_count", "stop_id")
    )
    return [
        {
            "stop_id": row["stop_id"],
            "stop_name": row["stop__name"],
            "stop_icon": row["stop__icon"],
            "visit_count": row["visit_count"],
            "unique_vehicles": row["unique_vehicles"],
            "total_duration": row["total_duration"] or 0,
            "avg_duration": round((row["total_duration"] or 0) / row["visit_count"]),
        }
        for row in rows
    ]


def vehicle_stop_statistics(
    vehicle_id: int, start: datetime, end: datetime
) -> List[Dict[str, object]]:
    rows = (
        StopVisit.objects.filter(
            vehicle_id=vehicle_id, enter_time__gte=start, enter_time__lte=end
        )
        .values("stop_id", "stop__name", "stop__icon")
        .annotate(
            visit_count=Count("id"),
            total_duration=Sum("duration"),
            last_visit=Max("enter_time"),
        )
        .order_by("-visit_count", "stop_id")
    )
    return [
        {
            "stop_id": row["stop_id"],
            "stop_name": row["stop__name"],
            "stop_icon": row["stop__icon"],
            "visit_count": row["visit_count"],
            "total_duration": row["total_duration"] or 0,
            "avg_duration": round((row["total_duration"] or 0) / row["visit_count"]),
            "last_visit": row["last_visit"].isoformat() if row["last_visit"] else None,
        }
        for row in rows
    ]
