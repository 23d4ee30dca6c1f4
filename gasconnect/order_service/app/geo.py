"""Great-circle distance and arrival estimates.

ETAs are a straight-line heuristic (haversine distance over a constant average
speed); they are not routing-engine results.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def distance_or_none(
    lat1: float | None, lon1: float | None, lat2: float | None, lon2: float | None
) -> float | None:
    if None in (lat1, lon1, lat2, lon2):
        return None
    return haversine_km(lat1, lon1, lat2, lon2)  # type: ignore[arg-type]


def estimate_minutes(distance_km: float, average_speed_kmh: float) -> int:
    # Round before ceil so float noise (20.000000000004) does not add a minute.
    return math.ceil(round(distance_km / average_speed_kmh * 60, 6))


def estimate_arrival(now: datetime, distance_km: float, average_speed_kmh: float) -> tuple[int, datetime]:
    minutes = estimate_minutes(distance_km, average_speed_kmh)
    return minutes, now + timedelta(minutes=minutes)


def validate_coordinates(latitude: float, longitude: float) -> list[dict[str, str]]:
    errors: list[dict[str, str]] = []
    if not -90 <= latitude <= 90:
        errors.append({"field": "latitude", "message": "must be between -90 and 90"})
    if not -180 <= longitude <= 180:
        errors.append({"field": "longitude", "message": "must be between -180 and 180"})
    return errors
