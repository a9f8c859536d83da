"""
Client for the GPS tracking server (Traccar REST API).

The client owns its HTTP session and credentials; nothing is cached at module
level, so tests and the feed command can each build their own instance.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone as dt_timezone
from typing import Dict, List, Optional

import requests
from django.conf import settings
from django.db import transaction

from .exceptions import InvalidTransition, NotFound, TrackingServerError
from .models import Stop, Vehicle

LOGGER = logging.getLogger(__name__)


class TrackingServerClient:
    def __init__(
        self,
        base_url: str,
        user: str,
        password: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.user = user
        self.password = password
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        self.logged_in = False

    @classmethod
    def from_settings(cls) -> "TrackingServerClient":
        config = getattr(settings, "TRACKING_SERVER", {})
        return cls(
            base_url=config.get("url", "http://localhost:8082"),
            user=config.get("user", "admin"),
            password=config.get("password", "admin"),
            timeout=config.get("timeout", 10.0),
        )

    def login(self) -> bool:
        """
        Open a session. Falls back to basic auth when the server hands out no
        session cookie.
        """
        try:
            response = self.session.post(
                f"{self.base_url}/api/session",
                data={"email": self.user, "password": self.password},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as error:
            LOGGER.warning("Tracking server login failed: %s", error)
            self.logged_in = False
            return False

        if not response.ok:
            LOGGER.warning(f"Tracking server login rejected: {response.status_code}")
            self.logged_in = False
            return False

        if "JSESSIONID" not in self.session.cookies:
            self.session.auth = (self.user, self.password)
        self.logged_in = True
        LOGGER.info("Tracking server login successful")
        return True

    def _request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        if not self.logged_in:
            self.login()

        url = f"{self.base_url}{endpoint}"
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, url, **kwargs)
            if response.status_code == 401:
                LOGGER.info("Tracking server session expired, logging in again")
                if self.login():
                    response = self.session.request(method, url, **kwargs)
            response.raise_for_status()
        except requests.exceptions.RequestException as error:
            raise TrackingServerError(f"{method} {endpoint} failed: {error}")
        return response

    def _json(self, method: str, endpoint: str, **kwargs):
        response = self._request(method, endpoint, **kwargs)
        if not response.content:
            return None
        try:
            return response.json()
        except json.JSONDecodeError as error:
            raise TrackingServerError(f"{method} {endpoint} returned invalid JSON: {error}")

    def check_connection(self) -> Dict[str, object]:
        try:
            server = self._json("GET", "/api/server")
        except TrackingServerError as error:
            return {"connected": False, "error": error.detail}
        return {"connected": True, "version": (server or {}).get("version")}

    def get_devices(self) -> List[Dict]:
        return self._json("GET", "/api/devices") or []

    def get_device(self, device_id: int) -> Optional[Dict]:
        devices = self._json("GET", "/api/devices", params={"id": device_id}) or []
        return devices[0] if devices else None

    def get_positions(self) -> List[Dict]:
        return self._json("GET", "/api/positions") or []

    def get_events(self, device_ids: List[int], since: datetime, until: datetime) -> List[Dict]:
        """
        Events (moving, stopped, online, offline, geofence enter and exit)
        reported for ``device_ids`` between ``since`` and ``until``.
        """
        if not device_ids:
            return []
        params = {
            "deviceId": list(device_ids),
            "from": _iso_utc(since),
            "to": _iso_utc(until),
        }
        return self._json("GET", "/api/reports/events", params=params) or []

    def create_geofence(self, name: str, lat: float, lng: float, radius: float) -> Dict:
        payload = {"name": name, "area": circle_area(lat, lng, radius)}
        return self._json("POST", "/api/geofences", json=payload)

    def update_geofence(
        self, geofence_id: int, name: str, lat: float, lng: float, radius: float
    ) -> Dict:
        payload = {"id": geofence_id, "name": name, "area": circle_area(lat, lng, radius)}
        return self._json("PUT", f"/api/geofences/{geofence_id}", json=payload)

    def delete_geofence(self, geofence_id: int) -> None:
        self._request("DELETE", f"/api/geofences/{geofence_id}")

    def link_device_geofence(self, device_id: int, geofence_id: int) -> None:
        self._request(
            "POST",
            "/api/permissions",
            json={"deviceId": device_id, "geofenceId": geofence_id},
        )

    def unlink_device_geofence(self, device_id: int, geofence_id: int) -> None:
        self._request(
            "DELETE",
            "/api/permissions",
            json={"deviceId": device_id, "geofenceId": geofence_id},
        )


def _iso_utc(value: datetime) -> str:
    return value.astimezone(dt_timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def circle_area(lat: float, lng: float, radius: float) -> str:
    # WKT circle as the tracking server expects it: CIRCLE (lng lat, radius)
    return f"CIRCLE ({lng} {lat}, {radius})"


def sync_stop_geofence(stop: Stop, client: TrackingServerClient) -> int:
    """
    Mirror a stop as a circle geofence on the tracking server and remember
    the remote id on the stop.
    """
    radius = stop.geofence_radius or 15
    if stop.tracking_geofence_id:
        client.update_geofence(stop.tracking_geofence_id, stop.name, stop.lat, stop.lng, radius)
    else:
        geofence = client.create_geofence(stop.name, stop.lat, stop.lng, radius)
        stop.tracking_geofence_id = geofence["id"]
        stop.save(update_fields=["tracking_geofence_id", "updated_at"])
        for device_id in linked_device_ids():
            client.link_device_geofence(device_id, stop.tracking_geofence_id)
    LOGGER.info(f"Stop {stop.pk} mirrored as geofence {stop.tracking_geofence_id}")
    return stop.tracking_geofence_id


def remove_stop_geofence(stop: Stop, client: TrackingServerClient) -> Optional[int]:
    geofence_id = stop.tracking_geofence_id
    if not geofence_id:
        return None
    client.delete_geofence(geofence_id)
    stop.tracking_geofence_id = None
    stop.save(update_fields=["tracking_geofence_id", "updated_at"])
    LOGGER.info(f"Geofence {geofence_id} of stop {stop.pk} removed")
    return geofence_id


def linked_device_ids() -> List[int]:
    return list(
        Vehicle.objects.filter(tracking_device_id__isnull=False).values_list("tracking_device_id", flat=True)
    )


def mirrored_geofence_ids() -> List[int]:
    return list(
        Stop.objects.filter(is_active=True, tracking_geofence_id__isnull=False).values_list(
            "tracking_geofence_id", flat=True
        )
    )


def link_vehicle_device(vehicle_id: int, device_id: int, client: TrackingServerClient) -> Vehicle:
    """
    Attach a tracking server device to a vehicle and grant the device every
    mirrored stop geofence, so its enter and exit events reach the feed.
    """
    if not Vehicle.objects.filter(pk=vehicle_id).exists():
        raise NotFound(f"Vehicle {vehicle_id} not found")
    device = client.get_device(device_id)
    if device is None:
        raise NotFound(f"Tracking device {device_id} not found")

    with transaction.atomic():
        vehicle = Vehicle.objects.select_for_update().filter(pk=vehicle_id).first()
        if vehicle is None:
            raise NotFound(f"Vehicle {vehicle_id} not found")
        if vehicle.tracking_device_id == device_id:
            return vehicle
        if vehicle.tracking_device_id is not None:
            raise InvalidTransition(
                f"Vehicle {vehicle_id} is already linked to device {vehicle.tracking_device_id}"
            )
        holder = Vehicle.objects.filter(tracking_device_id=device_id).first()
        if holder is not None:
            raise InvalidTransition(f"Device {device_id} is already linked to vehicle {holder.pk}")
        vehicle.tracking_device_id = device_id
        vehicle.save(update_fields=["tracking_device_id", "updated_at"])

    for geofence_id in mirrored_geofence_ids():
        client.link_device_geofence(device_id, geofence_id)
    LOGGER.info(f"Vehicle {vehicle_id} linked to device {device_id} ({device.get('name')})")
    return vehicle


def unlink_vehicle_device(vehicle_id: int, client: TrackingServerClient) -> Vehicle:
    with transaction.atomic():
        vehicle = Vehicle.objects.select_for_update().filter(pk=vehicle_id).first()
        if vehicle is None:
            raise NotFound(f"Vehicle {vehicle_id} not found")
        device_id = vehicle.tracking_device_id
        if device_id is None:
            return vehicle
        vehicle.tracking_device_id = None
        vehicle.gps_signal = False
        vehicle.save(update_fields=["tracking_device_id", "gps_signal", "updated_at"])

    for geofence_id in mirrored_geofence_ids():
        client.unlink_device_geofence(device_id, geofence_id)
    LOGGER.info(f"Vehicle {vehicle_id} unlinked from device {device_id}")
    return vehicle
