"""
GPS geofence checks.

Great-circle distance with the haversine formula on a spherical Earth. This
is not ellipsoidal geodesy; at a 100m radius the difference is irrelevant.
"""

import math
from typing import NamedTuple, Union

from errors import ValidationError
from schemas import GeoPoint
from settings import settings

EARTH_RADIUS_METERS = 6371000


class GeofenceResult(NamedTuple):
    ok: bool
    meters: int


def valid_coordinate(lat: float, lon: float) -> bool:
    return -90 <= lat <= 90 and -180 <= lon <= 180


def validate_point(point: Union[GeoPoint, dict]) -> GeoPoint:
    if isinstance(point, dict):
        lat, lon = point.get("latitude"), point.get("longitude")
    else:
        lat, lon = point.latitude, point.longitude
    if lat is None or lon is None or not valid_coordinate(lat, lon):
        raise ValidationError("Invalid coordinates", latitude=lat, longitude=lon)
    return GeoPoint.model_construct(latitude=lat, longitude=lon)


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def within_geofence(claim_point, confirm_point, max_meters: float = None) -> GeofenceResult:
    """Check that confirm_point lies within max_meters of claim_point.

    The pass/fail decision uses the exact distance; the reported distance is
    rounded to the nearest metre for user-facing messages.
    """
    if max_meters is None:
        max_meters = settings.geofence_meters
    a = validate_point(claim_point)
    b = validate_point(confirm_point)
    meters = distance_meters(a.latitude, a.longitude, b.latitude, b.longitude)
    # half-up, not banker's rounding
    return GeofenceResult(ok=meters <= max_meters, meters=int(math.floor(meters + 0.5)))
