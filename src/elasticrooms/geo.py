from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from elasticrooms.constants import EARTH_RADIUS_KM, KM_PER_DEGREE
from elasticrooms.models import GeoPoint


@dataclass(frozen=True)
class BoundingBox:
    north: float
    south: float
    east: float
    west: float

    @property
    def wraps(self) -> bool:
        return self.west < -180.0 or self.east > 180.0

    def contains(self, point: GeoPoint) -> bool:
        # Boxes crossing the antimeridian only filter on latitude.
        if not self.south <= point.lat <= self.north:
            return False
        return self.wraps or self.west <= point.lon <= self.east


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two points in kilometres."""
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.lon - a.lon)

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(max(0.0, 1 - h)))


def bounding_box(center: GeoPoint, radius_km: float) -> BoundingBox:
    """Degree box enclosing a circle, used to prefilter geo queries.

    Near the poles the longitude span covers the whole globe.
    """
    lat_delta = radius_km / KM_PER_DEGREE
    cos_lat = math.cos(math.radians(center.lat))
    if cos_lat <= 1e-9:
        lon_delta = 180.0
    else:
        lon_delta = min(180.0, radius_km / (KM_PER_DEGREE * cos_lat))
    return BoundingBox(
        north=min(90.0, center.lat + lat_delta),
        south=max(-90.0, center.lat - lat_delta),
        east=center.lon + lon_delta,
        west=center.lon - lon_delta,
    )


def within_radius(center: GeoPoint, point: GeoPoint, radius_km: float) -> bool:
    return haversine_km(center, point) <= radius_km


def centroid(points: Iterable[GeoPoint]) -> GeoPoint:
    pts = list(points)
    if not pts:
        raise ValueError("Cannot compute the centroid of no points")
    return GeoPoint(
        lat=sum(p.lat for p in pts) / len(pts),
        lon=sum(p.lon for p in pts) / len(pts),
    )
