"""Delivery zone membership.

Zones are either polygons (``[[lat, lng], ...]``) or circles (center plus
``radius_km``). Latitude is treated as the y axis and longitude as the x axis
everywhere, in storage as well as in the tests.
"""

import math
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Location

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def point_in_polygon(lat: float, lng: float, polygon: Sequence[Sequence[float]]) -> bool:
    """Even-odd ray casting; ``polygon`` is an ordered list of ``[lat, lng]`` vertices."""
    inside = False
    n = len(polygon)
    j = n - 1
    for i in range(n):
        yi, xi = polygon[i][0], polygon[i][1]
        yj, xj = polygon[j][0], polygon[j][1]
        if (xi > lng) != (xj > lng):
            cross_lat = (yj - yi) * (lng - xi) / (xj - xi) + yi
            if lat < cross_lat:
                inside = not inside
        j = i
    return inside


def _polygon_of(zone: Location) -> Optional[List[List[float]]]:
    raw = zone.polygon_coordinates
    if not isinstance(raw, list) or len(raw) < 3:
        return None
    vertices = []
    for vertex in raw:
        if not isinstance(vertex, (list, tuple)) or len(vertex) < 2:
            return None
        try:
            vertices.append([float(vertex[0]), float(vertex[1])])
        except (TypeError, ValueError):
            return None
    return vertices


def zone_contains(zone: Location, lat: float, lng: float) -> bool:
    """Polygon test first, then the radius test. Incomplete zones never match."""
    polygon = _polygon_of(zone)
    if polygon is not None and point_in_polygon(lat, lng, polygon):
        return True

    if zone.latitude is not None and zone.longitude is not None and zone.radius_km is not None:
        distance = haversine_km(lat, lng, float(zone.latitude), float(zone.longitude))
        return distance <= float(zone.radius_km)

    return False


class GeoZoneService:
    """Membership tests over a snapshot of zone rows, taken in natural (id) order."""

    def __init__(self, zones: Iterable[Location]):
        self.zones = [z for z in zones if z.is_active is not False]

    @classmethod
    def from_db(cls, db: Session) -> "GeoZoneService":
        rows = db.execute(
            select(Location).where(Location.is_active.is_(True)).order_by(Location.id)
        ).scalars().all()
        return cls(rows)

    def is_inside_any_zone(self, lat: float, lng: float) -> bool:
        return self.find_containing_zone(lat, lng) is not None

    def matches_zone(self, lat: float, lng: float, zone_id: int) -> bool:
        for zone in self.zones:
            if zone.id == zone_id:
                return zone_contains(zone, lat, lng)
        return False

    def find_containing_zone(self, lat: float, lng: float) -> Optional[Location]:
        for zone in self.zones:
            if zone_contains(zone, lat, lng):
                return zone
        return None

    def get(self, zone_id: int) -> Optional[Location]:
        for zone in self.zones:
            if zone.id == zone_id:
                return zone
        return None
