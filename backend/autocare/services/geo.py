import math
from typing import Optional

from autocare.models import Coordinate

EARTH_RADIUS_KM = 6371.0


def distance_km(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two WGS84 points on a spherical Earth.

    NaN coordinates propagate to a NaN result; callers validate upstream.
    """
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    dphi = math.radians(b.latitude - a.latitude)
    dlambda = math.radians(b.longitude - a.longitude)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    # Rounding can push h a hair above 1 for antipodal points.
    if h > 1.0:
        h = 1.0
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_KM * c


def is_valid_coordinate(latitude: Optional[float], longitude: Optional[float]) -> bool:
    if latitude is None or longitude is None:
        return False
    if math.isnan(latitude) or math.isnan(longitude):
        return False
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0
