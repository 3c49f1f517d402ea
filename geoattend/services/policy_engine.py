"""
Attendance policy engine — clock-in / clock-out state machine.

Per user and company-local day::

    NOT_CLOCKED_IN -> CLOCKED_IN -> (ON_BREAK <-> CLOCKED_IN) -> CLOCKED_OUT

``CLOCKED_OUT`` is terminal unless the employee may clock in several times
a day. Every precondition is evaluated before anything is written; the
first failing one is raised as an ``AttendanceError``.

Serialisation per user happens in the database: the user row is locked
``FOR UPDATE`` for the duration of a check-in, the unique indexes on
``attendance_records`` reject a second open record, and checkout is a
conditional ``UPDATE ... WHERE clock_out_time IS NULL``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from geoattend.core.exceptions import (AlreadyCheckedOut, AlreadyClockedIn,
                                       AutoDisabled, BiometricRequired,
                                       CompanyNotFound, GeofenceNotConfigured,
                                       InvalidLocation, InvalidUser,
                                       NotAWorkingDay, OutsideGeofence,
                                       RecordNotFound)
from geoattend.core.timeutils import Clock, ensure_utc
from geoattend.models.attendance import (METHOD_AUTO, METHOD_MANUAL,
                                         STATUS_EARLY_DEPARTURE, STATUS_LATE,
                                         STATUS_ON_BREAK, STATUS_PRESENT,
                                         AttendanceBreak, AttendanceRecord)
from geoattend.models.company import Company
from geoattend.models.notification import AuditLog
from geoattend.models.user import User, UserAttendanceSettings
from geoattend.services.biometrics import BiometricVerifier
from geoattend.services.breaks import BreakTracker, total_break_minutes
from geoattend.services.calendar import WorkCalendarResolver
from geoattend.services.geo import (Coordinates, GeoCalculator,
                                    is_valid_coordinates)
from geoattend.services.geofence import FenceMatch, load_candidates, match_fence
from geoattend.services.notifications import AdminNotifier

logger = logging.getLogger(__name__)


@dataclass
class AttendanceView:
    """A record together with its breaks, as returned by the read operations."""

    record: AttendanceRecord
    breaks: list[AttendanceBreak] = field(default_factory=list)
    total_break_minutes: float = 0.0
    employee_name: str | None = None


def remote_permitted(
    company: Company,
    user_settings: UserAttendanceSettings | None,
    iso_weekday: int,
) -> bool:
    """Whether the employee may clock in away from every fence on *iso_weekday*."""
    if company.allow_remote_clockin:
        return True
    if user_settings is None or not user_settings.allow_remote_clockin:
        return False
    days = user_settings.remote_work_days or []
    return not days or iso_weekday in {int(d) for d in days}


class AttendancePolicyEngine:
    def __init__(
        self,
        session: AsyncSession,
        calendar: WorkCalendarResolver,
        geo: GeoCalculator,
        notifier: AdminNotifier,
        verifier: BiometricVerifier,
        clock: Clock | None = None,
    ) -> None:
        self.session = session
        self.calendar = calendar
        self.geo = geo
        self.notifier = notifier
        self.verifier = verifier
        self._clock = clock or calendar.now
        self.breaks = BreakTracker(session, self._clock)

    # ── Loaders ─────────────────────────────────────────────────────
    async def _company(self, company_id: int) -> Company:
        company = await self.session.get(Company, company_id)
        if company is None or not company.is_active or company.deleted_at is not None:
            raise CompanyNotFound(company_id=company_id)
        return company

    async def _locked_user(self, user_id: int, company_id: int) -> User:
        result = await self.session.execute(
            select(User).where(User.id == user_id).with_for_update()
        )
        user = result.scalar_one_or_none()
        if (
            user is None
            or not user.is_active
            or user.deleted_at is not None
            or user.company_id != company_id
        ):
            raise InvalidUser(user_id=user_id)
        return user

    async def _user_settings(self, user_id: int) -> UserAttendanceSettings | None:
        return await self.session.get(UserAttendanceSettings, user_id)

    async def _records_on(self, user_id: int, local_day: date) -> list[AttendanceRecord]:
        result = await self.session.execute(
            select(AttendanceRecord)
            .where(
                AttendanceRecord.user_id == user_id,
                AttendanceRecord.local_date == local_day,
            )
            .order_by(AttendanceRecord.session_seq)
        )
        return list(result.scalars().all())

    async def _check_biometrics(self, company: Company, method: str, proof: str | None) -> None:
        if not company.biometrics_required or method != METHOD_MANUAL:
            return
        if not proof or not await self.verifier.verify(proof):
            raise BiometricRequired()

    def _audit(
        self,
        record: AttendanceRecord,
        action: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.session.add(
            AuditLog(
                company_id=record.company_id,
                user_id=record.user_id,
                action=action,
                entity_type="attendance",
                entity_id=record.id,
                details=details,
            )
        )

    # ── Check-in ────────────────────────────────────────────────────
    async def check_in(
        self,
        user_id: int,
        company_id: int,
        location: Coordinates | None = None,
        method: str = METHOD_MANUAL,
        biometrics_proof: str | None = None,
    ) -> AttendanceRecord:
        now = self._clock()

        company = await self._company(company_id)
        if location is not None and not is_valid_coordinates(location):
            raise InvalidLocation(latitude=location.latitude, longitude=location.longitude)

        user = await self._locked_user(user_id, company_id)
        user_settings = await self._user_settings(user_id)

        await self._check_biometrics(company, method, biometrics_proof)

        if method == METHOD_AUTO and not company.auto_clockin_enabled:
            raise AutoDisabled()

        local_now = self.calendar.to_local(company, now)
        local_day = local_now.date()
        todays = await self._records_on(user_id, local_day)
        if any(r.is_open for r in todays):
            raise AlreadyClockedIn()
        multi_allowed = user_settings is not None and user_settings.allow_multiple_clockins_per_day
        if todays and not multi_allowed:
            raise AlreadyClockedIn("You have already completed a shift today", attendance_id=todays[-1].id)

        # Working day / remote non-working-day exception
        working_day = self.calendar.is_working_day(local_day, company)
        remote_any = company.allow_remote_clockin or (
            user_settings is not None and user_settings.allow_remote_clockin
        )
        remote_off_day = False
        if not working_day:
            allowed = (
                remote_any
                and company.allow_remote_clockin_on_non_working_days
                and method == METHOD_MANUAL
                and location is not None
            )
            if not allowed:
                raise NotAWorkingDay(weekday=local_day.isoweekday())
            remote_off_day = True

        # Geofence
        fence: FenceMatch | None = None
        if location is not None:
            candidates = await load_candidates(self.session, company, user_settings)
            enforce = company.require_geofence_for_clockin or remote_off_day
            if not candidates and enforce:
                raise GeofenceNotConfigured()
            fence = match_fence(self.geo, location, candidates)

            if remote_off_day and fence is not None and fence.inside:
                raise NotAWorkingDay(weekday=local_day.isoweekday())

            if (
                fence is not None
                and company.require_geofence_for_clockin
                and not fence.inside
                and not remote_permitted(company, user_settings, local_day.isoweekday())
            ):
                distance = round(fence.distance_meters)
                self.notifier.geofence_violation(company.id, user.id, fence.distance_meters)
                raise OutsideGeofence(
                    f"You must be within the geofence to check in. Distance: {distance}m",
                    distance_meters=distance,
                    radius_meters=company.geofence_radius_meters,
                )

        # Lateness (never on a remote non-working-day check-in)
        is_late, minutes_late = False, 0
        if working_day:
            start = datetime.combine(local_day, self.calendar.work_start(company), tzinfo=local_now.tzinfo)
            seconds_after_start = (local_now - start).total_seconds()
            if seconds_after_start > (company.grace_period_minutes or 0) * 60:
                is_late = True
                minutes_late = max(int(seconds_after_start // 60), 0)

        record = AttendanceRecord(
            company_id=company.id,
            user_id=user.id,
            local_date=local_day,
            session_seq=len(todays) + 1,
            clock_in_time=now,
            clock_in_latitude=location.latitude if location else None,
            clock_in_longitude=location.longitude if location else None,
            clock_in_distance_meters=fence.distance_meters if fence else None,
            is_within_geofence=fence.inside if fence else None,
            location_id=fence.location_id if fence else None,
            location_name=fence.location_name if fence else None,
            status=STATUS_LATE if is_late else STATUS_PRESENT,
            is_late_arrival=is_late,
            minutes_late=minutes_late,
            check_in_method=method,
        )
        self.session.add(record)
        try:
            await self.session.flush()
            self._audit(
                record,
                "CLOCK_IN",
                {"method": method, "within_geofence": record.is_within_geofence},
            )
            if is_late:
                self._audit(record, "LATE_ARRIVAL", {"minutes_late": minutes_late})
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info("Concurrent check-in rejected for user %s on %s", user_id, local_day)
            raise AlreadyClockedIn()

        logger.info(
            "User %s checked in (method=%s, late=%s, minutes_late=%d, within_geofence=%s)",
            user_id,
            method,
            is_late,
            minutes_late,
            record.is_within_geofence,
        )
        if is_late:
            self.notifier.late_arrival(record.id)
        return record

    # ── Check-out ───────────────────────────────────────────────────
    async def check_out(
        self,
        user_id: int,
        company_id: int,
        attendance_id: int,
        location: Coordinates | None = None,
        method: str = METHOD_MANUAL,
        departure_reason: str | None = None,
        biometrics_proof: str | None = None,
    ) -> AttendanceRecord:
        now = self._clock()

        result = await self.session.execute(
            select(AttendanceRecord).where(
                AttendanceRecord.id == attendance_id,
                AttendanceRecord.user_id == user_id,
                AttendanceRecord.company_id == company_id,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise RecordNotFound(attendance_id=attendance_id)
        if not record.is_open:
            raise AlreadyCheckedOut(attendance_id=attendance_id)

        company = await self._company(company_id)
        await self._check_biometrics(company, method, biometrics_proof)
        if location is not None and not is_valid_coordinates(location):
            raise InvalidLocation(latitude=location.latitude, longitude=location.longitude)

        # Distance is recorded for audit only, it never gates a checkout
        distance: float | None = None
        if location is not None:
            candidates = await load_candidates(
                self.session, company, await self._user_settings(user_id)
            )
            fence = match_fence(self.geo, location, candidates)
            distance = fence.distance_meters if fence else None

        await self.breaks.close_open_breaks(record.id, now)

        working_day = self.calendar.is_working_day(record.local_date, company)
        duration = max(int((now - ensure_utc(record.clock_in_time)).total_seconds() // 60), 0)

        is_early, minutes_early, overtime = False, 0, duration
        if working_day:
            # Shift end of the day the session belongs to, not of the checkout day
            end = datetime.combine(
                record.local_date, self.calendar.work_end(company), tzinfo=self.calendar.zone(company)
            )
            seconds_before_end = (end - now).total_seconds()
            threshold = (company.early_departure_threshold_minutes or 0) * 60
            if seconds_before_end > threshold:
                is_early = True
                minutes_early = int(seconds_before_end // 60)
            overtime = max(int(-seconds_before_end // 60), 0)

        if is_early:
            status = STATUS_EARLY_DEPARTURE
        elif record.status == STATUS_ON_BREAK:
            status = STATUS_PRESENT
        else:
            status = record.status

        reason = (departure_reason or "").strip() or None
        if is_early and reason is None:
            logger.info("Unexplained early departure by user %s (record %s)", user_id, record.id)

        outcome = await self.session.execute(
            update(AttendanceRecord)
            .where(
                AttendanceRecord.id == record.id,
                AttendanceRecord.clock_out_time.is_(None),
            )
            .values(
                clock_out_time=now,
                clock_out_latitude=location.latitude if location else None,
                clock_out_longitude=location.longitude if location else None,
                clock_out_distance_meters=distance,
                check_out_method=method,
                status=status,
                is_early_departure=is_early,
                minutes_early=minutes_early,
                departure_reason=reason if is_early else None,
                duration_minutes=duration,
                overtime_minutes=overtime,
            )
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount != 1:
            await self.session.rollback()
            raise AlreadyCheckedOut(attendance_id=attendance_id)

        self._audit(record, "CLOCK_OUT", {"method": method, "duration_minutes": duration})
        if is_early:
            self._audit(
                record,
                "EARLY_DEPARTURE",
                {"minutes_early": minutes_early, "reason": reason},
            )
        await self.session.commit()
        await self.session.refresh(record)

        logger.info(
            "User %s checked out (method=%s, duration=%d, early=%s, minutes_early=%d)",
            user_id,
            method,
            duration,
            is_early,
            minutes_early,
        )
        if is_early and company.notify_early_departure:
            self.notifier.early_departure(record.id)
        return record

    # ── Reads ───────────────────────────────────────────────────────
    async def current_attendance(self, user_id: int, company_id: int) -> AttendanceView | None:
        """Latest record of today, with breaks and live break total."""
        company = await self._company(company_id)
        now = self._clock()
        result = await self.session.execute(
            select(AttendanceRecord)
            .where(
                AttendanceRecord.user_id == user_id,
                AttendanceRecord.company_id == company_id,
                AttendanceRecord.local_date == self.calendar.local_date(company, now),
            )
            .order_by(AttendanceRecord.session_seq.desc())
            .limit(1)
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None
        breaks = (await self.breaks.breaks_for([record.id]))[record.id]
        return AttendanceView(
            record=record,
            breaks=breaks,
            total_break_minutes=total_break_minutes(breaks, include_open=True, now=now),
        )

    async def list_company_attendance(
        self,
        company_id: int,
        start: date | None = None,
        end: date | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AttendanceView]:
        """Company-wide listing; breaks of all returned records come from one query."""
        company = await self._company(company_id)
        start, end = self.calendar.resolve_reporting_window(company, start, end, default_days=1)

        stmt = (
            select(AttendanceRecord, User.full_name, User.email)
            .join(User, User.id == AttendanceRecord.user_id)
            .where(
                AttendanceRecord.company_id == company_id,
                AttendanceRecord.local_date >= start,
                AttendanceRecord.local_date <= end,
            )
        )
        if status:
            stmt = stmt.where(AttendanceRecord.status == status)
        stmt = stmt.order_by(AttendanceRecord.clock_in_time.desc()).limit(limit).offset(offset)

        rows = (await self.session.execute(stmt)).all()
        grouped = await self.breaks.breaks_for([row[0].id for row in rows])
        return [
            AttendanceView(
                record=record,
                breaks=grouped[record.id],
                total_break_minutes=total_break_minutes(grouped[record.id]),
                employee_name=full_name or email,
            )
            for record, full_name, email in rows
        ]
