"""
Trip detection driven by the tracking server's moving/stopped events.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from .geo import haversine_m
from .models import Trip, Vehicle

logger = logging.getLogger(__name__)


def open_trip(vehicle: Vehicle) -> Optional[Trip]:
    return (
        Trip.objects.select_for_update()
        .filter(vehicle=vehicle, end_time__isnull=True)
        .first()
    )


def start_trip(
    vehicle: Vehicle,
    lat: float,
    lng: float,
    when: datetime,
    stop_id: Optional[int] = None,
) -> Trip:
    trip = open_trip(vehicle)
    if trip is not None:
        return trip

    trip = Trip.objects.create(
        vehicle=vehicle,
        start_time=when,
        start_lat=lat,
        start_lng=lng,
        end_lat=lat,
        end_lng=lng,
        start_stop_id=stop_id,
    )
    logger.info(f"Trip {trip.pk} started for vehicle {vehicle.pk}")
    return trip


def end_trip(
    vehicle: Vehicle,
    lat: float,
    lng: float,
    when: datetime,
    stop_id: Optional[int] = None,
) -> Optional[Trip]:
    trip = open_trip(vehicle)
    if trip is None:
        return None

    trip.distance += haversine_m(trip.end_lat, trip.end_lng, lat, lng)
    trip.end_time = when
    trip.end_lat = lat
    trip.end_lng = lng
    trip.end_stop_id = stop_id
    trip.duration = max(int(round((when - trip.start_time).total_seconds())), 0)
    trip.save()
    logger.info(
        f"Trip {trip.pk} ended for vehicle {vehicle.pk}: {trip.distance:.0f} m in {trip.duration}s"
    )
    return trip


def update_trip_stats(vehicle: Vehicle, speed_kmh: float, lat: float, lng: float) -> Optional[Trip]:
    """
    Fold one position into the open trip: distance travelled since the last
    point, top speed and running average speed.
    """
    trip = open_trip(vehicle)
    if trip is None:
        return None

    trip.distance += haversine_m(trip.end_lat, trip.end_lng, lat, lng)
    trip.end_lat = lat
    trip.end_lng = lng
    trip.max_speed = max(trip.max_speed, speed_kmh)
    trip.speed_samples += 1
    trip.average_speed += (speed_kmh - trip.average_speed) / trip.speed_samples
    trip.save(
        update_fields=[
            "distance",
            "end_lat",
            "end_lng",
            "max_speed",
            "speed_samples",
            "average_speed",
        ]
    )
    return trip
