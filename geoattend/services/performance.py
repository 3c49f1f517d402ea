"""
Performance snapshot aggregation.

The nightly batch scores every active non-owner employee of every active
company over a rolling window and upserts one ranked ``daily`` snapshot per
employee. Each company runs in its own session and transaction; one
company failing is logged and does not stop the others.

``live_leaderboard`` runs the same aggregation ad hoc without persisting.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from geoattend.core.timeutils import ensure_utc
from geoattend.models.attendance import AttendanceRecord
from geoattend.models.company import Company
from geoattend.models.performance import PerformanceSnapshot
from geoattend.models.task import TASK_COMPLETED, Task
from geoattend.models.user import User
from geoattend.services import scoring
from geoattend.services.calendar import WorkCalendarResolver

logger = logging.getLogger(__name__)

PERIOD_DAILY = "daily"


@dataclass
class EmployeeScore:
    user_id: int
    name: str
    attendance_score: int
    task_completion_score: int | None
    overall_score: int
    rank_position: int = 0
    tier: str = scoring.TIER_BRONZE
    present_days: int = 0
    late_days: int = 0
    tasks_due: int = 0


@dataclass
class CompanyScores:
    company_id: int
    snapshot_date: date
    window_start: date
    window_end: date
    expected_days: int
    scores: list[EmployeeScore]


class PerformanceSnapshotAggregator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        calendar: WorkCalendarResolver,
        window_days: int = 30,
        snapshot_tier_rule: str = "rank",
        leaderboard_tier_rule: str = "score",
    ) -> None:
        self._session_factory = session_factory
        self.calendar = calendar
        self.window_days = window_days
        self.snapshot_tier_rule = snapshot_tier_rule
        self.leaderboard_tier_rule = leaderboard_tier_rule

    # ── Batch ───────────────────────────────────────────────────────
    async def run_daily_snapshots(self, now: datetime | None = None) -> dict[int, int | None]:
        """Snapshot every active company.

        Returns ``{company_id: snapshots_written}``, ``None`` for a company
        whose run failed.
        """
        now = now or self.calendar.now()
        async with self._session_factory() as session:
            result = await session.execute(
                select(Company.id).where(
                    Company.is_active.is_(True),
                    Company.deleted_at.is_(None),
                )
            )
            company_ids = list(result.scalars().all())

        outcome: dict[int, int | None] = {}
        for company_id in company_ids:
            try:
                outcome[company_id] = await self.compute_company_snapshots(company_id, now)
            except Exception:
                logger.exception("Performance snapshot failed for company %s", company_id)
                outcome[company_id] = None
        logger.info(
            "Performance snapshots done: %d companies, %d failed",
            len(outcome),
            sum(1 for v in outcome.values() if v is None),
        )
        return outcome

    async def compute_company_snapshots(self, company_id: int, now: datetime | None = None) -> int:
        now = now or self.calendar.now()
        async with self._session_factory() as session:
            company = await session.get(Company, company_id)
            if company is None:
                return 0
            computed = await self._score_company(session, company, now, self.snapshot_tier_rule)
            if not computed.scores:
                return 0

            rows = [
                {
                    "company_id": company_id,
                    "user_id": s.user_id,
                    "date": computed.snapshot_date,
                    "period_type": PERIOD_DAILY,
                    "attendance_score": s.attendance_score,
                    "task_completion_score": s.task_completion_score,
                    "overall_score": s.overall_score,
                    "tier": s.tier,
                    "rank_position": s.rank_position,
                    "created_at": now,
                }
                for s in computed.scores
            ]
            insert = pg_insert if session.get_bind().dialect.name == "postgresql" else sqlite_insert
            stmt = insert(PerformanceSnapshot).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=["company_id", "user_id", "date", "period_type"],
                set_={
                    "attendance_score": stmt.excluded.attendance_score,
                    "task_completion_score": stmt.excluded.task_completion_score,
                    "overall_score": stmt.excluded.overall_score,
                    "tier": stmt.excluded.tier,
                    "rank_position": stmt.excluded.rank_position,
                    "created_at": stmt.excluded.created_at,
                },
            )
            await session.execute(stmt)
            await session.commit()

        logger.info(
            "Company %s: %d snapshots for %s (expected days %d)",
            company_id,
            len(rows),
            computed.snapshot_date,
            computed.expected_days,
        )
        return len(rows)

    async def live_leaderboard(
        self,
        company_id: int,
        now: datetime | None = None,
        session: AsyncSession | None = None,
    ) -> CompanyScores | None:
        now = now or self.calendar.now()
        if session is not None:
            company = await session.get(Company, company_id)
            if company is None:
                return None
            return await self._score_company(session, company, now, self.leaderboard_tier_rule)
        async with self._session_factory() as own:
            company = await own.get(Company, company_id)
            if company is None:
                return None
            return await self._score_company(own, company, now, self.leaderboard_tier_rule)

    # ── Aggregation ─────────────────────────────────────────────────
    async def _score_company(
        self,
        session: AsyncSession,
        company: Company,
        now: datetime,
        tier_rule: str,
    ) -> CompanyScores:
        today = self.calendar.local_date(company, now)
        start, end = self.calendar.resolve_reporting_window(
            company, None, today, default_days=self.window_days
        )
        expected = self.calendar.expected_work_days(company, start, end)
        weights = scoring.normalize_weights(company.attendance_weight, company.task_completion_weight)

        employees = (
            await session.execute(
                select(User)
                .where(
                    User.company_id == company.id,
                    User.is_active.is_(True),
                    User.deleted_at.is_(None),
                    User.role != "owner",
                )
                .order_by(User.id)
            )
        ).scalars().all()
        if not employees:
            return CompanyScores(company.id, today, start, end, expected, [])

        attendance = await self._attendance_stats(session, company, start, end)
        tasks = await self._task_stats(session, company, start, end, now)

        partial: list[EmployeeScore] = []
        for emp in employees:
            att = attendance.get(emp.id, scoring.AttendanceStats())
            tsk = tasks.get(emp.id, scoring.TaskStats())
            a_score = scoring.attendance_score(att, expected)
            t_score = scoring.task_score(tsk)
            overall = scoring.overall_score(a_score, t_score, expected, weights)
            partial.append(
                EmployeeScore(
                    user_id=emp.id,
                    name=emp.display_name,
                    attendance_score=scoring.truncate(a_score),
                    task_completion_score=None if t_score is None else scoring.truncate(t_score),
                    overall_score=scoring.truncate(overall),
                    present_days=att.present_days,
                    late_days=att.late_days,
                    tasks_due=tsk.due_total,
                )
            )

        by_user = {s.user_id: s for s in partial}
        ranked: list[EmployeeScore] = []
        for user_id, score, rank in scoring.dense_rank((s.user_id, s.overall_score) for s in partial):
            entry = by_user[user_id]
            entry.rank_position = rank
            entry.tier = scoring.tier_for(tier_rule, rank, score)
            ranked.append(entry)
        return CompanyScores(company.id, today, start, end, expected, ranked)

    async def _attendance_stats(
        self,
        session: AsyncSession,
        company: Company,
        start: date,
        end: date,
    ) -> dict[int, scoring.AttendanceStats]:
        result = await session.execute(
            select(
                AttendanceRecord.user_id,
                AttendanceRecord.local_date,
                AttendanceRecord.clock_in_time,
                AttendanceRecord.is_late_arrival,
                AttendanceRecord.minutes_late,
                AttendanceRecord.is_early_departure,
            ).where(
                AttendanceRecord.company_id == company.id,
                AttendanceRecord.local_date >= start,
                AttendanceRecord.local_date <= end,
            )
        )

        # One row per user per local day: the latest clock-in of that day
        daily: dict[tuple[int, date], tuple] = {}
        for row in result.all():
            key = (row.user_id, row.local_date)
            current = daily.get(key)
            if current is None or ensure_utc(row.clock_in_time) > ensure_utc(current.clock_in_time):
                daily[key] = row

        grace = company.grace_period_minutes or 0
        counters: dict[int, list[int]] = defaultdict(lambda: [0, 0, 0, 0])
        for (user_id, _day), row in daily.items():
            c = counters[user_id]
            c[0] += 1
            if row.is_late_arrival:
                c[1] += 1
            if row.is_early_departure:
                c[2] += 1
            c[3] += max((row.minutes_late or 0) - grace, 0)
        return {uid: scoring.AttendanceStats(*c) for uid, c in counters.items()}

    async def _task_stats(
        self,
        session: AsyncSession,
        company: Company,
        start: date,
        end: date,
        now: datetime,
    ) -> dict[int, scoring.TaskStats]:
        window_start, _ = self.calendar.local_bounds(company, start)
        _, window_end = self.calendar.local_bounds(company, end)
        result = await session.execute(
            select(Task).where(
                Task.company_id == company.id,
                Task.deleted_at.is_(None),
                Task.assigned_to.is_not(None),
                Task.due_date.is_not(None),
                Task.due_date >= window_start,
                Task.due_date < window_end,
            )
        )

        counters: dict[int, list[int]] = defaultdict(lambda: [0, 0, 0, 0])
        for task in result.scalars().all():
            due = ensure_utc(task.due_date)
            completed = ensure_utc(task.completed_at)
            c = counters[task.assigned_to]
            c[0] += 1
            if task.status == TASK_COMPLETED and completed is not None:
                if completed <= due:
                    c[1] += 1
                else:
                    c[2] += 1
            elif task.status != TASK_COMPLETED and due < now:
                c[3] += 1
        return {uid: scoring.TaskStats(*c) for uid, c in counters.items()}
