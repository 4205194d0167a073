"""
Geographic helpers.

Points are stored as GeoJSON ``{"type": "Point", "coordinates": [lng, lat]}``
and nothing else; callers convert ``{lat, lng}`` input once with ``to_point``.
"""
from math import asin, cos, radians, sin, sqrt
from typing import Any, Dict, Optional, Tuple

EARTH_RADIUS_KM = 6371.0

UNSET_COORDINATES = [0.0, 0.0]


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate the great circle distance between two points on the earth (km)."""
    # convert decimal degrees to radians
    lon1, lat1, lon2, lat2 = map(radians, [lon1, lat1, lon2, lat2])
    # haversine formula; sin^2 of the half-difference handles antimeridian crossings
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(min(1.0, sqrt(a)))
    return c * EARTH_RADIUS_KM


def valid_lat_lng(lat: float, lng: float) -> bool:
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def to_point(lat: float, lng: float) -> Dict[str, Any]:
    return {"type": "Point", "coordinates": [float(lng), float(lat)]}


def unset_point() -> Dict[str, Any]:
    return {"type": "Point", "coordinates": list(UNSET_COORDINATES)}


def point_lat_lng(point: Optional[Dict[str, Any]]) -> Optional[Tuple[float, float]]:
    if not point:
        return None
    coords = point.get("coordinates") or []
    if len(coords) != 2:
        return None
    lng, lat = float(coords[0]), float(coords[1])
    return lat, lng


def has_location(pharmacy: Dict[str, Any]) -> bool:
    """True when the pharmacy configured a real location (not the [0, 0] sentinel)."""
    if not pharmacy.get("location_set"):
        return False
    lat_lng = point_lat_lng(pharmacy.get("location"))
    if lat_lng is None:
        return False
    return list(lat_lng) != UNSET_COORDINATES


def distance_to(pharmacy: Dict[str, Any], lat: float, lng: float) -> Optional[float]:
    if not has_location(pharmacy):
        return None
    p_lat, p_lng = point_lat_lng(pharmacy["location"])
    return haversine_km(lat, lng, p_lat, p_lng)


def within_radius(pharmacy: Dict[str, Any], lat: float, lng: float, radius_km: float) -> bool:
    d = distance_to(pharmacy, lat, lng)
    return d is not None and d <= radius_km
