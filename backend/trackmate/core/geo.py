"""Distance helpers shared by stop detection and ETA estimation."""

import math

EARTH_RADIUS_M = 6_371_000
LAT_M_PER_DEG = 111_320.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two lat/lon points."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.asin(math.sqrt(min(1.0, a)))


def lon_m_per_deg(ref_lat: float) -> float:
    """Meters per degree of longitude at the given latitude."""
    return LAT_M_PER_DEG * math.cos(math.radians(ref_lat))


def to_local_xy(lat: float, lon: float, ref_lat: float) -> tuple[float, float]:
    """Equirectangular projection to meters around ``ref_lat``."""
    return lon * lon_m_per_deg(ref_lat), lat * LAT_M_PER_DEG
