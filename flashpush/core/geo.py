"""Distance math shared by dispatch targeting and the reach preview."""

import math
from dataclasses import dataclass

EARTH_RADIUS_METERS = 6_371_000.0
METERS_PER_MILE = 1609.344


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


def distance_meters(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two points (haversine)."""
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def bounding_box(center: GeoPoint, radius_meters: float) -> tuple[float, float, float, float] | None:
    """Latitude/longitude box enclosing a circle, for SQL prefiltering.

    Returns (min_lat, max_lat, min_lon, max_lon), or None when the box would
    cross a pole or the antimeridian (callers then skip the prefilter).
    """
    angular = radius_meters / EARTH_RADIUS_METERS
    d_lat = math.degrees(angular)
    min_lat, max_lat = center.latitude - d_lat, center.latitude + d_lat
    if min_lat <= -90 or max_lat >= 90:
        return None

    ratio = math.sin(angular) / math.cos(math.radians(center.latitude))
    if ratio >= 1:
        return None
    d_lon = math.degrees(math.asin(ratio))
    min_lon, max_lon = center.longitude - d_lon, center.longitude + d_lon
    if min_lon <= -180 or max_lon >= 180:
        return None

    return min_lat, max_lat, min_lon, max_lon
