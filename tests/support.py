"""
Plain helpers shared by the test modules (fixtures live in conftest.py).
"""

import math
from datetime import datetime, timezone

from geoattend.core.security import create_access_token
from geoattend.models.user import User
from geoattend.services.geo import EARTH_RADIUS_METERS, Coordinates

# Lagos office used throughout the suite
OFFICE = Coordinates(6.5244, 3.3792)
# Monday 2024-06-03, 09:00 UTC
MONDAY_9AM = datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)


def north_of(point: Coordinates, meters: float) -> Coordinates:
    """Point *meters* due north of *point* (exact along a meridian)."""
    return Coordinates(point.latitude + math.degrees(meters / EARTH_RADIUS_METERS), point.longitude)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.company_id)}"}
