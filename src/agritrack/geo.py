"""Great-circle helpers on WGS84 degree coordinates."""

from __future__ import annotations

import math

from agritrack._constants import EARTH_RADIUS_KM

#: Internal coordinate type: (latitude, longitude) in degrees.
LatLng = tuple[float, float]


def is_valid_coordinate(latitude: float | None, longitude: float | None) -> bool:
    """Return ``True`` when both values are finite and inside WGS84 bounds."""
    if latitude is None or longitude is None:
        return False
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        return False
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0


def haversine_km(start: LatLng, end: LatLng) -> float:
    """Great-circle distance in kilometres using the mean Earth radius."""
    lat1, lng1 = start
    lat2, lng2 = end
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = math.sin(d_lat / 2) ** 2 + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def haversine_m(start: LatLng, end: LatLng) -> float:
    """Great-circle distance in metres."""
    return haversine_km(start, end) * 1000.0


def require_finite(point: LatLng, *, name: str = "coordinate") -> LatLng:
    """Validate a coordinate pair, raising :class:`ValueError` if unusable."""
    latitude, longitude = point
    if not is_valid_coordinate(latitude, longitude):
        raise ValueError(f"{name} must be a finite WGS84 (lat, lng) pair, got {point!r}")
    return float(latitude), float(longitude)
