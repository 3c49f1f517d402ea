"""
Auto clock-in / clock-out scheduler and the in-process periodic runner.

Jobs live in ``auto_attendance_jobs``. Scheduling relies on the unique
``(company_id, job_date, job_type)`` constraint so several processes can
run the scheduler at once; claiming a job is a conditional
``pending -> processing`` update so no two processes run the same job.

Inside a job every employee is handled in its own session. A failure is
logged and counted and never stops the batch; nothing is retried within
the same run.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from geoattend.core.config import Settings, settings
from geoattend.core.exceptions import AttendanceError
from geoattend.core.timeutils import Clock, ensure_utc, utcnow
from geoattend.models.attendance import METHOD_AUTO, AttendanceRecord
from geoattend.models.company import Company
from geoattend.models.job import (JOB_CLOCKIN, JOB_CLOCKOUT, JOB_COMPLETED,
                                  JOB_FAILED, JOB_PENDING, JOB_PROCESSING,
                                  AutoAttendanceJob)
from geoattend.models.location_ping import PERMISSION_GRANTED, LocationPing
from geoattend.models.user import User
from geoattend.services.biometrics import BiometricVerifier
from geoattend.services.calendar import WorkCalendarResolver
from geoattend.services.geo import Coordinates, GeoCalculator
from geoattend.services.notifications import AdminNotifier
from geoattend.services.performance import PerformanceSnapshotAggregator
from geoattend.services.policy_engine import AttendancePolicyEngine

logger = logging.getLogger(__name__)


class AutoAttendanceScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        calendar: WorkCalendarResolver,
        geo: GeoCalculator,
        notifier: AdminNotifier,
        verifier: BiometricVerifier,
        config: Settings = settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self.calendar = calendar
        self.geo = geo
        self.notifier = notifier
        self.verifier = verifier
        self.config = config
        self._sleep = sleep

    def _engine(self, session: AsyncSession, now: datetime) -> AttendancePolicyEngine:
        return AttendancePolicyEngine(
            session, self.calendar, self.geo, self.notifier, self.verifier, clock=lambda: now
        )

    def _shift_bounds(self, company: Company, local_now: datetime) -> tuple[datetime, datetime]:
        day = local_now.date()
        start = datetime.combine(day, self.calendar.work_start(company), tzinfo=local_now.tzinfo)
        end = datetime.combine(day, self.calendar.work_end(company), tzinfo=local_now.tzinfo)
        return start, end

    async def _active_companies(self, *conditions) -> list[Company]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Company).where(
                    Company.is_active.is_(True),
                    Company.deleted_at.is_(None),
                    *conditions,
                )
            )
            return list(result.scalars().all())

    # ── Scheduling ──────────────────────────────────────────────────
    async def schedule_jobs(self, now: datetime) -> int:
        """Enqueue clock-in/out jobs for companies inside their windows."""
        companies = await self._active_companies(
            Company.auto_clockin_enabled.is_(True) | Company.auto_clockout_enabled.is_(True)
        )
        created = 0
        for company in companies:
            local_now = self.calendar.to_local(company, now)
            if not self.calendar.is_working_day(local_now.date(), company):
                continue
            start, end = self._shift_bounds(company, local_now)

            due: list[str] = []
            grace = timedelta(minutes=company.grace_period_minutes or 0)
            if company.auto_clockin_enabled and start <= local_now <= start + grace:
                due.append(JOB_CLOCKIN)
            window = timedelta(minutes=self.config.CLOCKOUT_WINDOW_MINUTES)
            if company.auto_clockout_enabled and end <= local_now <= end + window:
                due.append(JOB_CLOCKOUT)

            for job_type in due:
                if await self._enqueue(company.id, job_type, local_now.date(), now):
                    created += 1
        if created:
            logger.info("Scheduled %d auto-attendance job(s)", created)
        return created

    async def _enqueue(self, company_id: int, job_type: str, job_date: date, now: datetime) -> bool:
        async with self._session_factory() as session:
            session.add(
                AutoAttendanceJob(
                    company_id=company_id,
                    job_type=job_type,
                    job_date=job_date,
                    status=JOB_PENDING,
                    scheduled_at=now,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug("Job %s for company %s on %s already exists", job_type, company_id, job_date)
                return False
        return True

    # ── Processing ──────────────────────────────────────────────────
    async def process_pending_jobs(self, now: datetime) -> dict[int, str]:
        """Claim and run up to one batch of pending jobs; ``{job_id: final status}``."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(AutoAttendanceJob.id)
                .where(AutoAttendanceJob.status == JOB_PENDING)
                .order_by(AutoAttendanceJob.scheduled_at, AutoAttendanceJob.id)
                .limit(self.config.AUTO_ATTENDANCE_JOB_BATCH)
            )
            pending = list(result.scalars().all())

        outcome: dict[int, str] = {}
        for job_id in pending:
            if not await self._claim(job_id, now):
                continue
            try:
                processed, errors = await self._run_job(job_id, now)
            except Exception as exc:
                logger.exception("Auto-attendance job %s failed", job_id)
                await self._finish(job_id, JOB_FAILED, now, error_message=str(exc)[:1000])
                outcome[job_id] = JOB_FAILED
                continue
            message = f"{errors} employee(s) failed" if errors else None
            await self._finish(job_id, JOB_COMPLETED, now, processed, errors, message)
            outcome[job_id] = JOB_COMPLETED
        return outcome

    async def _claim(self, job_id: int, now: datetime) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(AutoAttendanceJob)
                .where(AutoAttendanceJob.id == job_id, AutoAttendanceJob.status == JOB_PENDING)
                .values(status=JOB_PROCESSING, started_at=now)
            )
            await session.commit()
            return result.rowcount == 1

    async def _finish(
        self,
        job_id: int,
        status: str,
        now: datetime,
        processed: int = 0,
        errors: int = 0,
        error_message: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(AutoAttendanceJob)
                .where(AutoAttendanceJob.id == job_id)
                .values(
                    status=status,
                    completed_at=now,
                    processed_count=processed,
                    error_count=errors,
                    error_message=error_message,
                )
            )
            await session.commit()

    async def _run_job(self, job_id: int, now: datetime) -> tuple[int, int]:
        async with self._session_factory() as session:
            job = await session.get(AutoAttendanceJob, job_id)
            company = await session.get(Company, job.company_id)
        if company is None:
            raise LookupError(f"company {job.company_id} not found")

        if job.job_type == JOB_CLOCKIN:
            return await self._auto_clock_in(company, job.job_date, now)
        if job.job_type == JOB_CLOCKOUT:
            return await self._auto_clock_out(company, job.job_date, now)
        raise ValueError(f"unknown job type {job.job_type!r}")

    @staticmethod
    async def _latest_pings(
        session: AsyncSession,
        company_id: int,
        user_ids: list[int],
        since: datetime,
    ) -> dict[int, list[LocationPing]]:
        """Pings per user since *since*, oldest first, in one query."""
        grouped: dict[int, list[LocationPing]] = defaultdict(list)
        if not user_ids:
            return grouped
        result = await session.execute(
            select(LocationPing)
            .where(
                LocationPing.company_id == company_id,
                LocationPing.user_id.in_(user_ids),
                LocationPing.created_at >= since,
            )
            .order_by(LocationPing.created_at, LocationPing.id)
        )
        for ping in result.scalars().all():
            grouped[ping.user_id].append(ping)
        return grouped

    async def _auto_clock_in(self, company: Company, job_date: date, now: datetime) -> tuple[int, int]:
        if not company.auto_clockin_enabled:
            logger.info("Auto clock-in disabled for company %s, nothing to do", company.id)
            return 0, 0

        fresh_since = now - timedelta(minutes=self.config.CLOCKIN_PING_FRESHNESS_MINUTES)
        async with self._session_factory() as session:
            already = select(AttendanceRecord.user_id).where(
                AttendanceRecord.company_id == company.id,
                AttendanceRecord.local_date == job_date,
            )
            result = await session.execute(
                select(User.id)
                .where(
                    User.company_id == company.id,
                    User.is_active.is_(True),
                    User.deleted_at.is_(None),
                    User.id.not_in(already),
                )
                .order_by(User.id)
            )
            user_ids = list(result.scalars().all())
            pings = await self._latest_pings(session, company.id, user_ids, fresh_since)

        eligible: list[tuple[int, LocationPing]] = []
        for user_id in user_ids:
            if not pings.get(user_id):
                continue
            latest = pings[user_id][-1]
            if latest.permission_state != PERMISSION_GRANTED:
                continue
            if company.require_geofence_for_clockin and not latest.is_inside_geofence:
                continue
            eligible.append((user_id, latest))
        eligible = eligible[: self.config.AUTO_ATTENDANCE_EMPLOYEE_BATCH]

        processed = errors = 0
        for user_id, ping in eligible:
            async with self._session_factory() as session:
                try:
                    record = await self._engine(session, now).check_in(
                        user_id,
                        company.id,
                        location=Coordinates(ping.latitude, ping.longitude),
                        method=METHOD_AUTO,
                    )
                except AttendanceError as exc:
                    errors += 1
                    logger.info("Auto clock-in skipped for user %s: %s", user_id, exc.code)
                except Exception:
                    errors += 1
                    logger.exception("Auto clock-in failed for user %s", user_id)
                else:
                    processed += 1
                    self.notifier.auto_clock_event(record.id, JOB_CLOCKIN)
            await self._sleep(self.config.AUTO_ATTENDANCE_CALL_DELAY_SECONDS)

        logger.info(
            "Auto clock-in for company %s: %d processed, %d failed", company.id, processed, errors
        )
        return processed, errors

    async def _auto_clock_out(self, company: Company, job_date: date, now: datetime) -> tuple[int, int]:
        if not company.auto_clockout_enabled:
            logger.info("Auto clock-out disabled for company %s, nothing to do", company.id)
            return 0, 0

        fresh_since = now - timedelta(minutes=self.config.CLOCKOUT_PING_FRESHNESS_MINUTES)
        streak_needed = timedelta(minutes=self.config.CLOCKOUT_OUTSIDE_MINUTES)
        async with self._session_factory() as session:
            result = await session.execute(
                select(AttendanceRecord)
                .where(
                    AttendanceRecord.company_id == company.id,
                    AttendanceRecord.local_date == job_date,
                    AttendanceRecord.clock_out_time.is_(None),
                )
                .order_by(AttendanceRecord.user_id)
            )
            records = list(result.scalars().all())
            earliest = min((ensure_utc(r.clock_in_time) for r in records), default=now)
            pings = await self._latest_pings(
                session, company.id, [r.user_id for r in records], earliest
            )

        eligible: list[tuple[AttendanceRecord, LocationPing]] = []
        for record in records:
            since_clock_in = [
                p for p in pings.get(record.user_id, [])
                if ensure_utc(p.created_at) >= ensure_utc(record.clock_in_time)
            ]
            if not since_clock_in:
                continue
            latest = since_clock_in[-1]
            if (
                ensure_utc(latest.created_at) < fresh_since
                or latest.permission_state != PERMISSION_GRANTED
                or latest.is_inside_geofence is not False
            ):
                continue
            streak_start = outside_streak_start(since_clock_in)
            if streak_start is not None and streak_start <= now - streak_needed:
                eligible.append((record, latest))
        eligible = eligible[: self.config.AUTO_ATTENDANCE_EMPLOYEE_BATCH]

        processed = errors = 0
        for record, ping in eligible:
            async with self._session_factory() as session:
                try:
                    closed = await self._engine(session, now).check_out(
                        record.user_id,
                        company.id,
                        record.id,
                        location=Coordinates(ping.latitude, ping.longitude),
                        method=METHOD_AUTO,
                    )
                except AttendanceError as exc:
                    errors += 1
                    logger.info("Auto clock-out skipped for record %s: %s", record.id, exc.code)
                except Exception:
                    errors += 1
                    logger.exception("Auto clock-out failed for record %s", record.id)
                else:
                    processed += 1
                    self.notifier.auto_clock_event(closed.id, JOB_CLOCKOUT)
            await self._sleep(self.config.AUTO_ATTENDANCE_CALL_DELAY_SECONDS)

        logger.info(
            "Auto clock-out for company %s: %d processed, %d failed", company.id, processed, errors
        )
        return processed, errors

    # ── Reminders ───────────────────────────────────────────────────
    async def send_clockout_reminders(self, now: datetime) -> int:
        """Remind employees still clocked in an hour after work end. Never closes records."""
        reminded = 0
        for company in await self._active_companies():
            local_now = self.calendar.to_local(company, now)
            _, end = self._shift_bounds(company, local_now)
            window_start = end + timedelta(minutes=self.config.REMINDER_START_MINUTES)
            window_end = end + timedelta(minutes=self.config.REMINDER_END_MINUTES)
            if not window_start <= local_now <= window_end:
                continue

            async with self._session_factory() as session:
                result = await session.execute(
                    select(AttendanceRecord.id).where(
                        AttendanceRecord.company_id == company.id,
                        AttendanceRecord.local_date == local_now.date(),
                        AttendanceRecord.clock_out_time.is_(None),
                        AttendanceRecord.clockout_reminder_sent.is_(False),
                    )
                )
                record_ids = list(result.scalars().all())
            for record_id in record_ids:
                self.notifier.clockout_reminder(record_id)
            reminded += len(record_ids)
        if reminded:
            logger.info("Queued %d clock-out reminder(s)", reminded)
        return reminded


def outside_streak_start(pings: list[LocationPing]) -> datetime | None:
    """Start of the trailing run of outside pings (pings oldest first).

    ``None`` when the latest known position is inside a fence. Pings with
    an unknown inside/outside state neither start nor break a streak.
    """
    start: datetime | None = None
    for ping in pings:
        if ping.is_inside_geofence is True:
            start = None
        elif ping.is_inside_geofence is False and start is None:
            start = ensure_utc(ping.created_at)
    return start


class AttendanceJobRunner:
    """Periodic driver started from the application lifespan.

    Every tick runs schedule -> process -> reminders, and once per UTC day
    after ``snapshot_hour`` the performance snapshot batch. Each step is
    isolated; an exception is logged and the loop carries on.
    """

    def __init__(
        self,
        scheduler: AutoAttendanceScheduler,
        aggregator: PerformanceSnapshotAggregator | None,
        interval_seconds: float,
        snapshot_hour: int = 0,
        clock: Clock = utcnow,
    ) -> None:
        self.scheduler = scheduler
        self.aggregator = aggregator
        self.interval_seconds = interval_seconds
        self.snapshot_hour = snapshot_hour
        self._clock = clock
        self._last_snapshot_day: date | None = None
        self._task: asyncio.Task | None = None

    async def tick(self) -> None:
        now = self._clock()
        steps = (
            ("schedule", self.scheduler.schedule_jobs),
            ("process", self.scheduler.process_pending_jobs),
            ("reminders", self.scheduler.send_clockout_reminders),
        )
        for name, step in steps:
            try:
                await step(now)
            except Exception:
                logger.exception("Auto-attendance step %s failed", name)

        if (
            self.aggregator is not None
            and now.hour >= self.snapshot_hour
            and self._last_snapshot_day != now.date()
        ):
            self._last_snapshot_day = now.date()
            try:
                await self.aggregator.run_daily_snapshots(now)
            except Exception:
                logger.exception("Performance snapshot batch failed")

    async def _loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())
            logger.info("Attendance job runner started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Attendance job runner stopped")
