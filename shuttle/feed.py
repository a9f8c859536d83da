"""
Consumption of the tracking server feed.

``FeedProcessor`` turns feed messages (``positions``, ``devices`` and
``events`` lists, the shape the tracking server pushes over its socket) into
pipeline calls. ``FeedConnection`` keeps a polling connection alive and feeds
the processor. Neither keeps per-vehicle tracking state of its own: the stop
a vehicle is in is always read back from the database, so a reconnect picks
up exactly where the last processed position left it.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from datetime import datetime, timezone as dt_timezone
from typing import Callable, Dict, List, Optional

from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from . import dispatch, trips
from .exceptions import ShuttleError, TrackingServerError
from .geo import haversine_m, knots_to_kmh
from .models import GeofenceEvent, Stop, Vehicle
from .pipeline import process_position
from .tracking_server import TrackingServerClient
from .visits import record_geofence_event

logger = logging.getLogger(__name__)

GEOFENCE_EVENT_TYPES = {"geofenceEnter": GeofenceEvent.ENTER, "geofenceExit": GeofenceEvent.EXIT}
# Errors that condemn a single feed item, not the stream.
DROPPABLE = (ShuttleError, KeyError, TypeError, ValueError)


def parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = parse_datetime(str(value))
        if parsed is None:
            raise ValueError(f"Unparseable time {value!r}")
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed, dt_timezone.utc)
    return parsed


def parse_position(raw: Dict) -> Optional[Dict[str, object]]:
    """
    Normalise a raw feed position. Speed arrives in knots and leaves in km/h.
    Fixes the device flags as invalid are discarded.
    """
    if not raw.get("valid", True):
        return None
    return {
        "position_id": raw.get("id"),
        "device_id": int(raw["deviceId"]),
        "lat": float(raw["latitude"]),
        "lng": float(raw["longitude"]),
        "speed_kmh": knots_to_kmh(float(raw.get("speed") or 0.0)),
        "heading": float(raw.get("course") or 0.0),
        "server_time": parse_time(raw.get("serverTime")),
    }


class FeedProcessor:
    def __init__(self, correct: Optional[bool] = None):
        self.correct = correct
        self._vehicle_ids: Dict[int, int] = {}
        self._last_position_ids: Dict[int, object] = {}
        self._locks: Dict[int, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def refresh_vehicles(self) -> None:
        self._vehicle_ids = dict(
            Vehicle.objects.filter(tracking_device_id__isnull=False).values_list(
                "tracking_device_id", "id"
            )
        )

    def vehicle_id_for(self, device_id: int) -> Optional[int]:
        if device_id not in self._vehicle_ids:
            self.refresh_vehicles()
        return self._vehicle_ids.get(device_id)

    def _lock_for(self, vehicle_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks[vehicle_id]

    def handle_message(self, message: Dict) -> Dict[str, List]:
        """
        Process one feed message. A bad item is logged and skipped; the rest
        of the message is still processed.
        """
        results = {"positions": [], "devices": [], "events": []}
        for raw in message.get("positions") or []:
            try:
                snapshot = self.handle_position(raw)
            except DROPPABLE as error:
                logger.warning(f"Dropped position {raw!r}: {error}")
                continue
            if snapshot is not None:
                results["positions"].append(snapshot)

        for device in message.get("devices") or []:
            try:
                status = self.handle_device(device)
            except DROPPABLE as error:
                logger.warning(f"Dropped device update {device!r}: {error}")
                continue
            if status is not None:
                results["devices"].append(status)

        for event in message.get("events") or []:
            try:
                outcome = self.handle_event(event)
            except DROPPABLE as error:
                logger.warning(f"Dropped event {event!r}: {error}")
                continue
            if outcome is not None:
                results["events"].append(outcome)
        return results

    def handle_position(self, raw: Dict) -> Optional[Dict[str, object]]:
        position = parse_position(raw)
        if position is None:
            return None
        vehicle_id = self.vehicle_id_for(position["device_id"])
        if vehicle_id is None:
            return None

        position_id = position["position_id"]
        with self._lock_for(vehicle_id):
            if position_id is not None and self._last_position_ids.get(vehicle_id) == position_id:
                return None
            snapshot = process_position(
                vehicle_id,
                position["lat"],
                position["lng"],
                speed_kmh=position["speed_kmh"],
                heading=position["heading"],
                server_time=position["server_time"],
                correct=self.correct,
            )
            self._last_position_ids[vehicle_id] = position_id
        return snapshot

    def handle_device(self, device: Dict) -> Optional[Dict[str, object]]:
        vehicle_id = self.vehicle_id_for(int(device["id"]))
        if vehicle_id is None:
            return None
        online = device.get("status") == "online"
        with self._lock_for(vehicle_id), transaction.atomic():
            vehicle = Vehicle.objects.select_for_update().filter(pk=vehicle_id).first()
            if vehicle is None:
                return None
            previous = vehicle.status
            status = dispatch.apply_device_status(vehicle, online)
        return {
            "vehicle_id": vehicle_id,
            "status": status,
            "previous_status": previous,
            "device_status": device.get("status"),
        }

    def handle_event(self, event: Dict) -> Optional[Dict[str, object]]:
        vehicle_id = self.vehicle_id_for(int(event["deviceId"]))
        if vehicle_id is None:
            return None
        event_type = event.get("type")
        now = timezone.now()

        with self._lock_for(vehicle_id), transaction.atomic():
            vehicle = Vehicle.objects.select_for_update().filter(pk=vehicle_id).first()
            if vehicle is None:
                return None

            if event_type in GEOFENCE_EVENT_TYPES and event.get("geofenceId"):
                stop = Stop.objects.filter(tracking_geofence_id=event["geofenceId"]).first()
                if stop is None:
                    logger.info(f"Geofence {event['geofenceId']} is not mapped to a stop")
                    return None
                recorded = record_geofence_event(
                    vehicle.pk,
                    stop.pk,
                    GEOFENCE_EVENT_TYPES[event_type],
                    haversine_m(vehicle.lat, vehicle.lng, stop.lat, stop.lng),
                    now,
                )
                return {
                    "vehicle_id": vehicle.pk,
                    "type": GEOFENCE_EVENT_TYPES[event_type],
                    "stop_id": stop.pk,
                    "recorded": recorded is not None,
                }

            if event_type == "deviceMoving":
                trip = trips.start_trip(
                    vehicle, vehicle.lat, vehicle.lng, now, vehicle.last_geofence_stop_id
                )
                return {"vehicle_id": vehicle.pk, "type": event_type, "trip_id": trip.pk}

            if event_type == "deviceStopped":
                trip = trips.end_trip(
                    vehicle, vehicle.lat, vehicle.lng, now, vehicle.last_geofence_stop_id
                )
                return {
                    "vehicle_id": vehicle.pk,
                    "type": event_type,
                    "trip_id": trip.pk if trip is not None else None,
                }

            if event_type in ("deviceOnline", "deviceOffline"):
                status = dispatch.apply_device_status(vehicle, event_type == "deviceOnline")
                return {"vehicle_id": vehicle.pk, "type": event_type, "status": status}

        return None


class FeedConnection:
    """
    Polls the tracking server and hands each batch to a ``FeedProcessor``.
    Connection failures back off exponentially up to ``max_reconnect_delay``.
    """

    def __init__(
        self,
        client: TrackingServerClient,
        processor: FeedProcessor,
        poll_interval: float = 5.0,
        reconnect_delay: float = 5.0,
        max_reconnect_delay: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.processor = processor
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.sleep = sleep
        self.connected = False
        self.events_since: Optional[datetime] = None
        self._failures = 0
        self._stopped = threading.Event()

    def connect(self) -> bool:
        self.connected = self.client.login()
        if self.connected:
            self._failures = 0
            self.processor.refresh_vehicles()
            if self.events_since is None:
                self.events_since = timezone.now()
            logger.info("Tracking feed connected")
        return self.connected

    def next_backoff(self) -> float:
        delay = self.reconnect_delay * (2 ** max(self._failures - 1, 0))
        return min(delay, self.max_reconnect_delay)

    def poll_once(self) -> Dict[str, List]:
        devices = self.client.get_devices()
        positions = self.client.get_positions()
        until = timezone.now()
        since = self.events_since or until
        events = self.client.get_events([device["id"] for device in devices], since, until)
        # The cursor only moves once the report has been fetched.
        self.events_since = until
        return self.processor.handle_message(
            {"devices": devices, "positions": positions, "events": events}
        )

    def stop(self) -> None:
        self._stopped.set()

    def run(self, max_cycles: Optional[int] = None) -> None:
        cycles = 0
        while not self._stopped.is_set():
            if max_cycles is not None and cycles >= max_cycles:
                break
            cycles += 1

            if not self.connected and not self.connect():
                self._failures += 1
                delay = self.next_backoff()
                logger.warning(f"Tracking feed unavailable, retrying in {delay:.0f}s")
                self.sleep(delay)
                continue

            try:
                self.poll_once()
            except TrackingServerError as error:
                logger.warning(f"Tracking feed disconnected: {error}")
                self.connected = False
                self._failures += 1
                self.sleep(self.next_backoff())
                continue
            except Exception:
                logger.exception("Unexpected error while processing the tracking feed")

            self.sleep(self.poll_interval)
