"""
Fence candidates for a company and nearest-fence matching.

The candidate set is the primary office (when configured) plus, when the
company has multi-location enabled and the employee is allowed to use it,
every active named location. Check-in and location pings use the same set.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from geoattend.models.company import Company, CompanyLocation
from geoattend.models.user import UserAttendanceSettings
from geoattend.services.geo import Coordinates, GeoCalculator

PRIMARY_OFFICE_NAME = "Main Office"


@dataclass(frozen=True)
class FenceCandidate:
    center: Coordinates
    radius_meters: float
    location_id: int | None = None
    name: str | None = None


@dataclass(frozen=True)
class FenceMatch:
    inside: bool
    distance_meters: float
    location_id: int | None = None
    location_name: str | None = None


async def load_candidates(
    session: AsyncSession,
    company: Company,
    user_settings: UserAttendanceSettings | None,
) -> list[FenceCandidate]:
    candidates: list[FenceCandidate] = []
    if company.has_office_location:
        candidates.append(
            FenceCandidate(
                center=Coordinates(company.office_latitude, company.office_longitude),
                radius_meters=company.geofence_radius_meters,
                name=PRIMARY_OFFICE_NAME,
            )
        )

    multi_location = (
        company.multi_location_enabled
        and user_settings is not None
        and user_settings.allow_multi_location_clockin
    )
    if multi_location:
        result = await session.execute(
            select(CompanyLocation)
            .where(
                CompanyLocation.company_id == company.id,
                CompanyLocation.is_active.is_(True),
            )
            .order_by(CompanyLocation.id)
        )
        for loc in result.scalars().all():
            candidates.append(
                FenceCandidate(
                    center=Coordinates(loc.latitude, loc.longitude),
                    radius_meters=loc.radius_meters,
                    location_id=loc.id,
                    name=loc.name,
                )
            )
    return candidates


def match_fence(
    geo: GeoCalculator,
    point: Coordinates,
    candidates: list[FenceCandidate],
) -> FenceMatch | None:
    """First fence containing *point*, else the nearest one (``inside=False``)."""
    nearest: float | None = None
    for candidate in candidates:
        distance = geo.distance_meters(point, candidate.center)
        if distance <= candidate.radius_meters:
            return FenceMatch(True, distance, candidate.location_id, candidate.name)
        if nearest is None or distance < nearest:
            nearest = distance
    if nearest is None:
        return None
    return FenceMatch(False, nearest)
