"""
Geographic helpers for washer tracking.

Great-circle distance, ETA estimation and the easing/interpolation used to
smooth movement between two position samples. No HA or network imports.
"""
from __future__ import annotations

import dataclasses
import math

from .const import DEFAULT_AVERAGE_SPEED_KMH, EARTH_RADIUS_M
from .models import Position


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Return the great-circle distance in metres between two coordinates.

    Example:
        >>> round(haversine_distance(30.0444, 31.2357, 30.0500, 31.2400))
        748
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def calculate_eta(
    position: Position,
    destination_lat: float,
    destination_lng: float,
    average_speed_kmh: float = DEFAULT_AVERAGE_SPEED_KMH,
) -> int:
    """
    Estimate minutes from position to the destination.

    Uses the position's reported speed when it is positive, otherwise the
    average speed. Minutes are rounded half-up; a non-positive effective
    speed yields 0.
    """
    distance = haversine_distance(
        position.latitude, position.longitude, destination_lat, destination_lng
    )
    if position.speed is not None and position.speed > 0:
        speed = position.speed
    else:
        speed = average_speed_kmh * 1000 / 3600

    if speed <= 0:
        return 0
    return int(math.floor(distance / speed / 60 + 0.5))


def ease_out_cubic(progress: float) -> float:
    """Cubic ease-out on a progress fraction clamped to [0, 1]."""
    progress = min(max(progress, 0.0), 1.0)
    return 1 - (1 - progress) ** 3


def interpolate_position(origin: Position, target: Position, fraction: float) -> Position:
    """
    Linearly interpolate latitude/longitude at the given fraction.

    Heading, speed and timestamp always come from the target sample.
    """
    if fraction >= 1.0:
        return target
    return dataclasses.replace(
        target,
        latitude=origin.latitude + (target.latitude - origin.latitude) * fraction,
        longitude=origin.longitude + (target.longitude - origin.longitude) * fraction,
    )
