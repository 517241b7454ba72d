"""
shared/utils/geo.py
Great-circle distance and ETA helpers used by matching and live tracking.
"""

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Tuple

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres between two (lat, lng) points in degrees."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, a)))


def round_half_up(value: float, places: int = 0) -> Decimal:
    exponent = Decimal(1).scaleb(-places)
    return Decimal(str(value)).quantize(exponent, rounding=ROUND_HALF_UP)


def round_distance(distance_km: float) -> float:
    """Distances are reported with 2 decimal places."""
    return float(round_half_up(distance_km, 2))


def eta_minutes(distance_km: float, speed_kmh: float) -> int:
    """round(distance / speed * 60), half-up so 2.5 minutes reads as 3."""
    if distance_km <= 0:
        return 0
    return int(round_half_up(distance_km / speed_kmh * 60))


def distance_and_eta(
    origin: Tuple[float, float],
    destination: Tuple[float, float],
    speed_kmh: float,
) -> Tuple[float, int]:
    """(distance_km rounded to 2dp, eta in whole minutes) from origin to destination."""
    raw = haversine_km(origin[0], origin[1], destination[0], destination[1])
    return round_distance(raw), eta_minutes(raw, speed_kmh)


def bounding_box(lat: float, lng: float, radius_km: float) -> Tuple[float, float, float, float]:
    """
    (min_lat, max_lat, min_lng, max_lng) enclosing the circle of `radius_km`.
    Used as an index-friendly SQL prefilter before the exact haversine check.
    """
    d_lat = math.degrees(radius_km / EARTH_RADIUS_KM)
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-6:
        d_lng = 180.0
    else:
        d_lng = min(180.0, math.degrees(radius_km / (EARTH_RADIUS_KM * cos_lat)))
    return lat - d_lat, lat + d_lat, lng - d_lng, lng + d_lng
