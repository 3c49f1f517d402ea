"""
Break sub-state of an open attendance record.

Break durations are minutes as a float rounded to two decimals; the same
rule is used for stored durations, totals and checkout force-closes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from geoattend.core.exceptions import (BreakAlreadyActive, BreaksNotEnabled,
                                       CompanyNotFound, NoActiveBreak,
                                       NotClockedIn)
from geoattend.core.timeutils import Clock, ensure_utc, utcnow
from geoattend.models.attendance import (STATUS_ON_BREAK, STATUS_PRESENT,
                                         AttendanceBreak, AttendanceRecord)
from geoattend.models.company import Company

logger = logging.getLogger(__name__)


def break_minutes(start: datetime, end: datetime) -> float:
    seconds = (ensure_utc(end) - ensure_utc(start)).total_seconds()  # type: ignore[operator]
    return round(max(seconds, 0.0) / 60, 2)


def total_break_minutes(
    breaks: Iterable[AttendanceBreak],
    include_open: bool = False,
    now: datetime | None = None,
) -> float:
    """Sum of break durations.

    Stored totals leave open breaks out; pass ``include_open=True`` (and
    *now*) for a live display that counts the elapsed part of an open break.
    """
    total = 0.0
    for brk in breaks:
        if brk.end_time is not None:
            if brk.duration_minutes is not None:
                total += brk.duration_minutes
            else:
                total += break_minutes(brk.start_time, brk.end_time)
        elif include_open and now is not None:
            total += break_minutes(brk.start_time, now)
    return round(total, 2)


class BreakTracker:
    def __init__(self, session: AsyncSession, clock: Clock = utcnow) -> None:
        self.session = session
        self._clock = clock

    async def _open_record(self, user_id: int, company_id: int) -> AttendanceRecord | None:
        result = await self.session.execute(
            select(AttendanceRecord)
            .where(
                AttendanceRecord.user_id == user_id,
                AttendanceRecord.company_id == company_id,
                AttendanceRecord.clock_out_time.is_(None),
            )
            .order_by(AttendanceRecord.clock_in_time.desc())
            .limit(1)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _open_break(self, record_id: int) -> AttendanceBreak | None:
        result = await self.session.execute(
            select(AttendanceBreak).where(
                AttendanceBreak.attendance_record_id == record_id,
                AttendanceBreak.end_time.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def start_break(self, user_id: int, company_id: int) -> AttendanceBreak:
        company = await self.session.get(Company, company_id)
        if company is None:
            raise CompanyNotFound(company_id=company_id)

        record = await self._open_record(user_id, company_id)
        if record is None:
            raise NotClockedIn()
        if not company.breaks_enabled:
            raise BreaksNotEnabled()
        if await self._open_break(record.id) is not None:
            raise BreakAlreadyActive(attendance_id=record.id)

        now = self._clock()
        brk = AttendanceBreak(attendance_record_id=record.id, start_time=now)
        self.session.add(brk)
        record.status = STATUS_ON_BREAK
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise BreakAlreadyActive(attendance_id=record.id)

        logger.info("Break started for user %s (record %s)", user_id, record.id)
        return brk

    async def end_break(self, user_id: int, company_id: int) -> AttendanceBreak:
        record = await self._open_record(user_id, company_id)
        if record is None:
            raise NoActiveBreak()
        brk = await self._open_break(record.id)
        if brk is None:
            raise NoActiveBreak(attendance_id=record.id)

        now = self._clock()
        brk.end_time = now
        brk.duration_minutes = break_minutes(brk.start_time, now)
        record.status = STATUS_PRESENT
        await self.session.commit()

        logger.info(
            "Break ended for user %s (record %s, %.2f min)",
            user_id,
            record.id,
            brk.duration_minutes,
        )
        return brk

    async def close_open_breaks(self, record_id: int, now: datetime) -> int:
        """Close any open break on *record_id* without committing."""
        result = await self.session.execute(
            select(AttendanceBreak).where(
                AttendanceBreak.attendance_record_id == record_id,
                AttendanceBreak.end_time.is_(None),
            )
        )
        closed = 0
        for brk in result.scalars().all():
            brk.end_time = now
            brk.duration_minutes = break_minutes(brk.start_time, now)
            closed += 1
        if closed:
            await self.session.flush()
            logger.info("Force-closed %d open break(s) on record %s", closed, record_id)
        return closed

    async def breaks_for(self, record_ids: list[int]) -> dict[int, list[AttendanceBreak]]:
        """Breaks of many records in one query, grouped by record id."""
        grouped: dict[int, list[AttendanceBreak]] = {rid: [] for rid in record_ids}
        if not record_ids:
            return grouped
        result = await self.session.execute(
            select(AttendanceBreak)
            .where(AttendanceBreak.attendance_record_id.in_(record_ids))
            .order_by(AttendanceBreak.start_time)
        )
        for brk in result.scalars().all():
            grouped[brk.attendance_record_id].append(brk)
        return grouped
