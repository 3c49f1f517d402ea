"""
Great-circle distance & geofence helpers.

Pure functions, no I/O. Callers validate coordinates with
``is_valid_coordinates`` before asking for distances.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_METERS = 6_371_000.0


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


class GeoCalculator:
    """Haversine distance and point-in-radius test."""

    @staticmethod
    def distance_meters(a: Coordinates, b: Coordinates) -> float:
        phi1 = math.radians(a.latitude)
        phi2 = math.radians(b.latitude)
        dphi = math.radians(b.latitude - a.latitude)
        dlambda = math.radians(b.longitude - a.longitude)
        h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
        # Rounding can push near-antipodal pairs just past 1
        h = min(1.0, max(0.0, h))
        return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))

    def is_within_radius(self, point: Coordinates, center: Coordinates, radius_meters: float) -> bool:
        return self.distance_meters(point, center) <= radius_meters


def is_valid_coordinates(point: Coordinates) -> bool:
    """Reject out-of-range values and the (0, 0) "not geocoded" sentinel."""
    if not (-90 <= point.latitude <= 90 and -180 <= point.longitude <= 180):
        return False
    return not (point.latitude == 0 and point.longitude == 0)


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{round(meters)}m"
    return f"{meters / 1000:.2f}km"
