"""
Resort route network: snapping GPS fixes onto the buggy routes and deriving
travel heading from route direction.
"""
from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

from django.conf import settings
from shapely.geometry import LineString

from .geo import LngLat, bearing, haversine_m, project_onto_segment

logger = logging.getLogger(__name__)

RUN_BREAK_M = 200.0
DEFAULT_MAX_CORRECTION_M = 50.0

# Buggy routes traced over the resort paths, (lng, lat) per vertex.
ROUTE_DEFINITIONS: Sequence[Dict[str, object]] = [
    {
        "id": "route-1",
        "name": "Lobby Loop",
        "coordinates": [
            (27.560724, 37.138598),
            (27.5606261, 37.1385691),
            (27.5605443, 37.1384889),
            (27.5603982, 37.1384964),
            (27.5602882, 37.138599),
            (27.5602252, 37.1386696),
            (27.5601836, 37.1387006),
            (27.5601205, 37.1387049),
            (27.5601192, 37.1386643),
            (27.5601728, 37.138598),
            (27.5602533, 37.1385039),
            (27.5604089, 37.1383863),
            (27.5605376, 37.1382767),
            (27.5607227, 37.138142),
            (27.5609292, 37.1381548),
            (27.5610312, 37.1382125),
            (27.5611492, 37.1383644),
            (27.5613557, 37.1387663),
            (27.5613047, 37.1387941),
            (27.5612055, 37.1387663),
            (27.5610982, 37.1385504),
            (27.5610124, 37.1385653),
            (27.5609614, 37.1386851),
            (27.5607495, 37.1385996),
        ],
    },
    {
        "id": "route-2",
        "name": "West Villas",
        "coordinates": [
            (27.5600924, 37.1386728),
            (27.5599673, 37.1386413),
            (27.5598131, 37.1386274),
            (27.5596602, 37.1385707),
            (27.559569, 37.1385408),
            (27.5594242, 37.1384766),
            (27.5592766, 37.1384446),
            (27.5590889, 37.1385365),
            (27.5589682, 37.1385729),
            (27.5588394, 37.1385878),
            (27.5587643, 37.1386584),
            (27.5586919, 37.1387161),
            (27.5586462, 37.1386968),
            (27.5586436, 37.1386604),
            (27.5587187, 37.1385749),
            (27.5587669, 37.1384979),
        ],
    },
    {
        "id": "route-3",
        "name": "Beach Road",
        "coordinates": [
            (27.5587609, 37.1384824),
            (27.5586429, 37.1384568),
            (27.5585034, 37.138337),
            (27.5582406, 37.1383071),
            (27.5580206, 37.1384226),
            (27.5577041, 37.1385851),
            (27.55757, 37.138692),
            (27.5573769, 37.1387176),
            (27.5571355, 37.138692),
            (27.5570336, 37.1386022),
            (27.5571355, 37.1383627),
            (27.5572321, 37.1380719),
            (27.5572804, 37.1379308),
            (27.5574466, 37.1379821),
            (27.5577202, 37.1380377),
            (27.5579187, 37.138042),
            (27.5581869, 37.1379778),
            (27.5587824, 37.1379949),
            (27.5586322, 37.1384611),
        ],
    },
    {
        "id": "route-4",
        "name": "Pool Terrace",
        "coordinates": [
            (27.5587464, 37.1381147),
            (27.5588564, 37.1382023),
            (27.5589476, 37.1382152),
            (27.5594036, 37.1381318),
            (27.5598676, 37.1382836),
            (27.5600902, 37.1381895),
            (27.5605864, 37.1377726),
            (27.5607447, 37.1375758),
            (27.5605945, 37.1375074),
            (27.5602565, 37.137516),
            (27.5600044, 37.1375331),
            (27.5598757, 37.1376357),
            (27.5597576, 37.1376999),
            (27.5595431, 37.1377512),
            (27.5590227, 37.1378752),
            (27.5588081, 37.1379607),
            (27.5587824, 37.1379949),
        ],
    },
    {
        "id": "route-5",
        "name": "Spa and Tennis",
        "coordinates": [
            (27.5599443, 37.1375972),
            (27.5598477, 37.1374262),
            (27.5597994, 37.1371952),
            (27.5601588, 37.1369643),
            (27.5604968, 37.1366564),
            (27.5604539, 37.136233),
            (27.5601374, 37.1361603),
            (27.5600086, 37.1362288),
            (27.5596653, 37.1368403),
            (27.5594239, 37.1369215),
            (27.5584154, 37.1371739),
            (27.5579809, 37.1372551),
        ],
    },
    {
        "id": "route-6",
        "name": "Marina Ring",
        "coordinates": [
            (27.5604539, 37.136233),
            (27.5605447, 37.1360256),
            (27.5607969, 37.1357647),
            (27.5610329, 37.1357904),
            (27.5612689, 37.135923),
            (27.561564, 37.1361026),
            (27.5617035, 37.1365259),
            (27.5617893, 37.1374924),
            (27.5618429, 37.1381339),
            (27.5619019, 37.138754),
            (27.5618697, 37.1388566),
            (27.5618161, 37.1388994),
            (27.5615801, 37.1388737),
            (27.5613557, 37.1387663),
        ],
    },
]


class RouteNetwork:
    """
    Immutable polyline of route vertices in (lng, lat) order.

    Consecutive vertices further apart than ``run_break_m`` belong to
    different route runs; no projection is made across that gap.
    """

    def __init__(self, coordinates: Sequence[LngLat], run_break_m: float = RUN_BREAK_M):
        self.coordinates: Tuple[LngLat, ...] = tuple(
            (float(lng), float(lat)) for lng, lat in coordinates
        )
        self.run_break_m = run_break_m
        self.segments: List[Tuple[LngLat, LngLat, LineString]] = []
        for start, end in zip(self.coordinates[:-1], self.coordinates[1:]):
            if haversine_m(start[1], start[0], end[1], end[0]) > run_break_m:
                continue
            self.segments.append((start, end, LineString([start, end])))

    def __len__(self) -> int:
        return len(self.coordinates)

    def snap(
        self, lng: float, lat: float, max_distance: float = DEFAULT_MAX_CORRECTION_M
    ) -> Dict[str, object]:
        """
        Snap a fix to the closest point of the network.

        Fixes further than ``max_distance`` from every segment come back
        unchanged with ``snapped=False``; the measured distance is always
        reported.
        """
        min_distance = math.inf
        nearest: LngLat = (lng, lat)

        for start, end, line in self.segments:
            projection = project_onto_segment((lng, lat), start, end, line=line)
            if projection["distance"] < min_distance:
                min_distance = projection["distance"]
                nearest = projection["projected"]

        if min_distance <= max_distance:
            return {
                "lng": nearest[0],
                "lat": nearest[1],
                "snapped": True,
                "distance": min_distance,
                "original_lng": lng,
                "original_lat": lat,
            }

        return {
            "lng": lng,
            "lat": lat,
            "snapped": False,
            "distance": min_distance,
            "original_lng": lng,
            "original_lat": lat,
        }

    def nearest_vertex(self, lng: float, lat: float) -> Optional[Dict[str, object]]:
        """Closest route vertex (not segment) to the given position."""
        if not self.coordinates:
            return None

        min_distance = math.inf
        nearest_index = 0
        for index, (vertex_lng, vertex_lat) in enumerate(self.coordinates):
            d = haversine_m(lat, lng, vertex_lat, vertex_lng)
            if d < min_distance:
                min_distance = d
                nearest_index = index

        return {
            "point": self.coordinates[nearest_index],
            "distance": min_distance,
            "index": nearest_index,
        }

    def correct_heading(self, lng: float, lat: float, current_heading: float) -> float:
        """
        Heading along the route from the nearest vertex towards the next one.
        """
        nearest = self.nearest_vertex(lng, lat)
        if nearest is None:
            return current_heading

        index = nearest["index"]
        if index >= len(self.coordinates) - 1:
            return current_heading

        current_lng, current_lat = self.coordinates[index]
        next_lng, next_lat = self.coordinates[index + 1]
        return bearing(
            {"lat": current_lat, "lng": current_lng},
            {"lat": next_lat, "lng": next_lng},
        )


def _build_network(run_break_m: float = RUN_BREAK_M) -> RouteNetwork:
    coordinates: List[LngLat] = []
    for definition in ROUTE_DEFINITIONS:
        coordinates.extend(definition["coordinates"])
    network = RouteNetwork(coordinates, run_break_m=run_break_m)
    logger.debug(
        f"Route network loaded with {len(network)} vertices and {len(network.segments)} segments"
    )
    return network


_NETWORK_CACHE: Dict[float, RouteNetwork] = {}


def get_route_network() -> RouteNetwork:
    run_break_m = float(settings.SHUTTLE_CONFIG.get("route_run_break", RUN_BREAK_M))
    network = _NETWORK_CACHE.get(run_break_m)
    if network is None:
        network = _build_network(run_break_m)
        _NETWORK_CACHE[run_break_m] = network
    return network
