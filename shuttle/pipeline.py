"""
Single entry point for a new vehicle position: correction, heading, stop
tracking, automatic task advancement and persistence, all in one
transaction with the vehicle row locked.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from . import signals
from .correction import full_correction
from .dispatch import advance_on_arrival
from .exceptions import InvalidInput, NotFound
from .geo import valid_coordinates
from .models import Stop, Vehicle, VehiclePosition
from .routes import get_route_network
from .trips import update_trip_stats
from .visits import track_geofence

logger = logging.getLogger(__name__)


def active_stops():
    return list(Stop.objects.filter(is_active=True).order_by("id"))


def process_position(
    vehicle_id: int,
    lat: float,
    lng: float,
    speed_kmh: float = 0.0,
    heading: float = 0.0,
    server_time: Optional[datetime] = None,
    correct: Optional[bool] = None,
) -> Optional[Dict[str, object]]:
    """
    Apply one position report to a vehicle.

    Returns the corrected snapshot, or ``None`` when the report is older than
    the vehicle's last processed position.
    """
    try:
        lat = float(lat)
        lng = float(lng)
        speed_kmh = float(speed_kmh or 0.0)
        heading = float(heading or 0.0)
    except (TypeError, ValueError):
        raise InvalidInput("lat, lng, speed and heading must be numbers")
    if not valid_coordinates(lat, lng):
        raise InvalidInput(f"Invalid coordinates ({lat}, {lng})")

    config = settings.SHUTTLE_CONFIG
    if correct is None:
        correct = config.get("correct_positions", True)
    now = timezone.now()
    fix_time = server_time or now

    with transaction.atomic():
        try:
            vehicle = Vehicle.objects.select_for_update().get(pk=vehicle_id)
        except (Vehicle.DoesNotExist, ValueError, TypeError):
            raise NotFound(f"Vehicle {vehicle_id} not found")

        if vehicle.last_update is not None and fix_time < vehicle.last_update:
            logger.info(
                f"Dropping stale position for vehicle {vehicle.pk} ({fix_time} < {vehicle.last_update})"
            )
            return None

        stops = active_stops()
        final_lat, final_lng, final_heading = lat, lng, heading
        correction_type = "none"
        correction_distance = 0.0

        if correct:
            network = get_route_network()
            correction = full_correction(
                lng,
                lat,
                stops,
                stop_snap_radius=config.get("stop_snap_radius", 15),
                route_max_distance=config.get("route_max_distance", 40),
                network=network,
            )
            final_lat = correction["lat"]
            final_lng = correction["lng"]
            correction_type = correction["correction_type"]
            correction_distance = correction["distance"]
            if correction_type != "none":
                final_heading = network.correct_heading(final_lng, final_lat, heading)

        vehicle.lat = final_lat
        vehicle.lng = final_lng
        vehicle.speed = speed_kmh
        vehicle.heading = final_heading
        vehicle.gps_signal = True
        vehicle.last_update = fix_time
        vehicle.save(
            update_fields=["lat", "lng", "speed", "heading", "gps_signal", "last_update", "updated_at"]
        )

        transition = track_geofence(vehicle, final_lat, final_lng, stops, now)

        VehiclePosition.objects.create(
            vehicle=vehicle,
            lat=final_lat,
            lng=final_lng,
            speed=speed_kmh,
            heading=final_heading,
            correction_type=correction_type,
            timestamp=fix_time,
        )
        update_trip_stats(vehicle, speed_kmh, final_lat, final_lng)

        task_action = None
        if transition is not None and transition["type"] == "enter":
            task_action = advance_on_arrival(vehicle, transition["stop_id"])

        snapshot = {
            "vehicle_id": vehicle.pk,
            "vehicle_name": vehicle.name,
            "lat": final_lat,
            "lng": final_lng,
            "heading": final_heading,
            "speed": speed_kmh,
            "nearest_stop_id": vehicle.last_geofence_stop_id,
            "status": vehicle.status,
            "correction_type": correction_type,
            "correction_distance": correction_distance,
            "transition": transition,
            "task_action": task_action,
            "timestamp": fix_time.isoformat(),
        }

        transaction.on_commit(
            lambda: signals.position_processed.send(sender=Vehicle, snapshot=snapshot)
        )
        if transition is not None:
            transaction.on_commit(
                lambda: signals.stop_visit_changed.send(
                    sender=Vehicle,
                    vehicle_id=vehicle.pk,
                    stop_id=transition["stop_id"],
                    type=transition["type"],
                )
            )

    if correction_type != "none":
        logger.debug(
            f"Vehicle {vehicle.pk} corrected by {correction_type} ({correction_distance:.1f} m)"
        )
    return snapshot
