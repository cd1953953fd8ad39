"""Great-circle distance helpers used by search and the distance endpoint.

All functions are pure. Coordinates are validated before any arithmetic so an
out-of-range point raises instead of producing a plausible-looking distance.
"""

import math
from typing import Iterable, List, Optional, Tuple, TypeVar

from servicefinder.models import BoundingBox, GeoPoint
from servicefinder.services.errors import InvalidCoordinatesError, InvalidRadiusError

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = 111.32
MILES_PER_KM = 0.621371
# 111.32 km/degree is slightly longer than a haversine degree (~111.195 km), so
# the pre-filter box is widened to keep points lying exactly on the circle.
PREFILTER_MARGIN = 1.05

T = TypeVar("T")


def is_valid_location(latitude: Optional[float], longitude: Optional[float]) -> bool:
    if latitude is None or longitude is None:
        return False
    if math.isnan(latitude) or math.isnan(longitude):
        return False
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0


def validate_point(point: GeoPoint, *, field: str = "point") -> GeoPoint:
    if not is_valid_location(point.latitude, point.longitude):
        raise InvalidCoordinatesError(
            f"Invalid {field} coordinates ({point.latitude}, {point.longitude}); "
            "latitude must be within [-90, 90] and longitude within [-180, 180]"
        )
    return point


def validate_radius(radius_km: float) -> float:
    if radius_km is None or math.isnan(radius_km) or radius_km <= 0:
        raise InvalidRadiusError(f"Search radius must be positive, got {radius_km}")
    return radius_km


def distance_km(a: GeoPoint, b: GeoPoint) -> float:
    """Haversine distance in km, rounded to meter precision."""
    validate_point(a, field="first point")
    validate_point(b, field="second point")
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    dphi = math.radians(b.latitude - a.latitude)
    dlambda = math.radians(b.longitude - a.longitude)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return round(EARTH_RADIUS_KM * c, 3)


def km_to_miles(km: float) -> float:
    return km * MILES_PER_KM


def within_radius(center: GeoPoint, point: GeoPoint, radius_km: float) -> bool:
    validate_radius(radius_km)
    return distance_km(center, point) <= radius_km


def _box_offsets(center: GeoPoint, radius_km: float) -> Tuple[float, float]:
    validate_point(center, field="center")
    validate_radius(radius_km)
    lat_offset = radius_km / KM_PER_DEGREE_LAT
    cos_lat = math.cos(math.radians(center.latitude))
    # At the poles every meridian is within reach.
    if cos_lat < 1e-9:
        return lat_offset, 360.0
    return lat_offset, radius_km / (KM_PER_DEGREE_LAT * cos_lat)


def bounding_box(center: GeoPoint, radius_km: float) -> BoundingBox:
    """Approximate lat/lon square around the search circle, clamped to valid ranges.

    The longitude edge is clamped at +/-180; use ``bounding_boxes`` when the
    part of the circle beyond the antimeridian matters.
    """
    lat_offset, lon_offset = _box_offsets(center, radius_km)
    return BoundingBox(
        min_lat=max(-90.0, center.latitude - lat_offset),
        max_lat=min(90.0, center.latitude + lat_offset),
        min_lon=max(-180.0, center.longitude - lon_offset),
        max_lon=min(180.0, center.longitude + lon_offset),
    )


def bounding_boxes(center: GeoPoint, radius_km: float) -> List[BoundingBox]:
    """One box, or two when the circle crosses the antimeridian."""
    lat_offset, lon_offset = _box_offsets(center, radius_km)
    min_lat = max(-90.0, center.latitude - lat_offset)
    max_lat = min(90.0, center.latitude + lat_offset)
    west = center.longitude - lon_offset
    east = center.longitude + lon_offset
    if lon_offset >= 180.0:
        spans = [(-180.0, 180.0)]
    elif west < -180.0:
        spans = [(-180.0, east), (west + 360.0, 180.0)]
    elif east > 180.0:
        spans = [(west, 180.0), (-180.0, east - 360.0)]
    else:
        spans = [(west, east)]
    return [
        BoundingBox(min_lat=min_lat, max_lat=max_lat, min_lon=min_lon, max_lon=max_lon)
        for min_lon, max_lon in spans
    ]


def in_box(box: BoundingBox, point: GeoPoint) -> bool:
    return box.min_lat <= point.latitude <= box.max_lat and box.min_lon <= point.longitude <= box.max_lon


def filter_within_radius(
    center: GeoPoint,
    radius_km: float,
    candidates: Iterable[Tuple[T, GeoPoint]],
) -> List[Tuple[T, float]]:
    """Bounding-box pre-filter, then exact distance; returns (item, km) sorted nearest first."""
    validate_radius(radius_km)
    boxes = bounding_boxes(center, radius_km * PREFILTER_MARGIN)
    matches: List[Tuple[T, float]] = []
    for item, point in candidates:
        if not is_valid_location(point.latitude, point.longitude):
            continue
        if not any(in_box(box, point) for box in boxes):
            continue
        km = distance_km(center, point)
        if km <= radius_km:
            matches.append((item, km))
    matches.sort(key=lambda pair: pair[1])
    return matches
