"""
Device location pings and location-verification staleness.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from geoattend.core.exceptions import CompanyNotFound, InvalidLocation, InvalidUser
from geoattend.core.timeutils import Clock, ensure_utc, utcnow
from geoattend.models.company import Company
from geoattend.models.location_ping import (PERMISSION_GRANTED,
                                            PERMISSION_STATES, LocationPing)
from geoattend.models.user import User, UserAttendanceSettings
from geoattend.services.geo import (Coordinates, GeoCalculator,
                                    is_valid_coordinates)
from geoattend.services.geofence import load_candidates, match_fence
from geoattend.services.notifications import AdminNotifier

logger = logging.getLogger(__name__)


class LocationPingService:
    def __init__(
        self,
        session: AsyncSession,
        geo: GeoCalculator,
        notifier: AdminNotifier,
        clock: Clock = utcnow,
        verification_max_age_days: int = 7,
    ) -> None:
        self.session = session
        self.geo = geo
        self.notifier = notifier
        self._clock = clock
        self.verification_max_age = timedelta(days=verification_max_age_days)

    async def record_ping(
        self,
        user_id: int,
        company_id: int,
        latitude: float,
        longitude: float,
        accuracy: float | None = None,
        permission_state: str = PERMISSION_GRANTED,
    ) -> LocationPing:
        point = Coordinates(latitude, longitude)
        if not is_valid_coordinates(point) or permission_state not in PERMISSION_STATES:
            raise InvalidLocation(latitude=latitude, longitude=longitude)

        company = await self.session.get(Company, company_id)
        if company is None or not company.is_active:
            raise CompanyNotFound(company_id=company_id)
        user = await self.session.get(User, user_id)
        if user is None or user.company_id != company_id or not user.is_active:
            raise InvalidUser(user_id=user_id)

        user_settings = await self.session.get(UserAttendanceSettings, user_id)
        candidates = await load_candidates(self.session, company, user_settings)
        fence = match_fence(self.geo, point, candidates)

        previous = (
            await self.session.execute(
                select(LocationPing.is_inside_geofence)
                .where(LocationPing.user_id == user_id)
                .order_by(LocationPing.created_at.desc(), LocationPing.id.desc())
                .limit(1)
            )
        ).first()

        ping = LocationPing(
            user_id=user_id,
            company_id=company_id,
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy,
            is_inside_geofence=fence.inside if fence else None,
            distance_meters=fence.distance_meters if fence else None,
            permission_state=permission_state,
            created_at=self._clock(),
        )
        self.session.add(ping)
        await self.session.commit()

        entered = (
            fence is not None
            and fence.inside
            and (previous is None or previous.is_inside_geofence is False)
            and permission_state == PERMISSION_GRANTED
        )
        if entered:
            logger.info("User %s entered office zone", user_id)
            self.notifier.geofence_entry(user_id)
        return ping

    async def is_location_verification_required(self, user_id: int, now: datetime | None = None) -> bool:
        now = now or self._clock()
        user_settings = await self.session.get(UserAttendanceSettings, user_id)
        if user_settings is None or user_settings.last_location_verified_at is None:
            return True
        return now - ensure_utc(user_settings.last_location_verified_at) > self.verification_max_age

    async def mark_location_verified(self, user_id: int, now: datetime | None = None) -> UserAttendanceSettings:
        now = now or self._clock()
        user_settings = await self.session.get(UserAttendanceSettings, user_id)
        if user_settings is None:
            user_settings = UserAttendanceSettings(user_id=user_id)
            self.session.add(user_settings)
        user_settings.last_location_verified_at = now
        await self.session.commit()
        return user_settings
