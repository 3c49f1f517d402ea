"""
Admin / employee notifications for attendance events.

Delivery is fire-and-forget: ``AdminNotifier`` schedules an asyncio task
after the attendance transaction has committed, works in its own session,
and logs and swallows every failure. A notification problem never reaches
the caller and never undoes an attendance mutation.

Late-arrival, early-departure and clock-out reminder notifications are sent
at most once per record. The notifier claims the record's flag with a
conditional UPDATE first and only sends when it won the claim.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from geoattend.models.attendance import AttendanceRecord
from geoattend.models.notification import Notification
from geoattend.models.user import User
from geoattend.services.geo import format_distance

logger = logging.getLogger(__name__)

ADMIN_ROLES = ("owner", "admin")


class NotificationSink(Protocol):
    async def notify_late_arrival(
        self, admin: User, employee: User, minutes_late: int, record: AttendanceRecord
    ) -> None: ...

    async def notify_early_departure(
        self,
        admin: User,
        employee: User,
        minutes_early: int,
        reason: str | None,
        record: AttendanceRecord,
    ) -> None: ...

    async def notify_geofence_violation(
        self, admin: User, employee: User, distance_meters: float
    ) -> None: ...

    async def notify_auto_clock_event(
        self, employee: User, event: str, record: AttendanceRecord
    ) -> None: ...

    async def notify_clockout_reminder(self, employee: User, record: AttendanceRecord) -> None: ...

    async def notify_geofence_entry(self, employee: User) -> None: ...


class InAppNotificationSink:
    """Writes every event into the ``notifications`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _write(
        self,
        user: User,
        type_: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        async with self._session_factory() as session:
            session.add(
                Notification(
                    user_id=user.id,
                    company_id=user.company_id,
                    type=type_,
                    title=title,
                    body=body,
                    data=data,
                )
            )
            await session.commit()

    async def notify_late_arrival(
        self, admin: User, employee: User, minutes_late: int, record: AttendanceRecord
    ) -> None:
        await self._write(
            admin,
            "late_arrival",
            "Late arrival",
            f"{employee.display_name} checked in {minutes_late} minutes late",
            {"employee_id": employee.id, "attendance_id": record.id, "minutes_late": minutes_late},
        )

    async def notify_early_departure(
        self,
        admin: User,
        employee: User,
        minutes_early: int,
        reason: str | None,
        record: AttendanceRecord,
    ) -> None:
        body = f"{employee.display_name} left {minutes_early} minutes early"
        body += f": {reason}" if reason else " (no reason given)"
        await self._write(
            admin,
            "early_departure",
            "Early departure",
            body,
            {"employee_id": employee.id, "attendance_id": record.id, "minutes_early": minutes_early},
        )

    async def notify_geofence_violation(
        self, admin: User, employee: User, distance_meters: float
    ) -> None:
        await self._write(
            admin,
            "geofence_violation",
            "Check-in outside office",
            f"{employee.display_name} tried to check in {format_distance(distance_meters)} from the office",
            {"employee_id": employee.id, "distance_meters": round(distance_meters)},
        )

    async def notify_auto_clock_event(
        self, employee: User, event: str, record: AttendanceRecord
    ) -> None:
        verb = "in" if event == "clockin" else "out"
        await self._write(
            employee,
            f"auto_{event}",
            f"Automatically clocked {verb}",
            f"You were automatically clocked {verb} based on your location",
            {"attendance_id": record.id},
        )

    async def notify_clockout_reminder(self, employee: User, record: AttendanceRecord) -> None:
        await self._write(
            employee,
            "clockout_reminder",
            "Forgot to clock out?",
            "Your shift ended an hour ago and you are still clocked in",
            {"attendance_id": record.id},
        )

    async def notify_geofence_entry(self, employee: User) -> None:
        await self._write(
            employee,
            "geofence_entry",
            "Welcome to the office",
            "You have entered the office zone. Don't forget to clock in!",
        )


class AdminNotifier:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sink: NotificationSink,
        enabled: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._sink = sink
        self._enabled = enabled
        self._tasks: set[asyncio.Task] = set()

    # ── Task bookkeeping ────────────────────────────────────────────
    def _schedule(self, name: str, factory: Callable[[], Awaitable[None]]) -> None:
        if not self._enabled:
            return
        task = asyncio.create_task(self._guard(name, factory))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, name: str, factory: Callable[[], Awaitable[None]]) -> None:
        try:
            await factory()
        except Exception:
            logger.exception("Notification %s failed", name)

    async def drain(self) -> None:
        """Wait for every in-flight notification."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Lookups ─────────────────────────────────────────────────────
    @staticmethod
    async def _admins(session: AsyncSession, company_id: int) -> list[User]:
        result = await session.execute(
            select(User).where(
                User.company_id == company_id,
                User.role.in_(ADMIN_ROLES),
                User.is_active.is_(True),
                User.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())

    @staticmethod
    async def _claim(session: AsyncSession, record_id: int, flag) -> bool:
        result = await session.execute(
            update(AttendanceRecord)
            .where(AttendanceRecord.id == record_id, flag.is_(False))
            .values({flag.key: True})
        )
        await session.commit()
        return result.rowcount == 1

    # ── Public API (all fire-and-forget) ────────────────────────────
    def late_arrival(self, record_id: int) -> None:
        self._schedule(f"late_arrival:{record_id}", lambda: self._send_late(record_id))

    def early_departure(self, record_id: int) -> None:
        self._schedule(f"early_departure:{record_id}", lambda: self._send_early(record_id))

    def geofence_violation(self, company_id: int, user_id: int, distance_meters: float) -> None:
        self._schedule(
            f"geofence_violation:{user_id}",
            lambda: self._send_violation(company_id, user_id, distance_meters),
        )

    def auto_clock_event(self, record_id: int, event: str) -> None:
        self._schedule(f"auto_{event}:{record_id}", lambda: self._send_auto(record_id, event))

    def clockout_reminder(self, record_id: int) -> None:
        self._schedule(f"clockout_reminder:{record_id}", lambda: self._send_reminder(record_id))

    def geofence_entry(self, user_id: int) -> None:
        self._schedule(f"geofence_entry:{user_id}", lambda: self._send_entry(user_id))

    # ── Senders ─────────────────────────────────────────────────────
    async def _send_late(self, record_id: int) -> None:
        async with self._session_factory() as session:
            if not await self._claim(session, record_id, AttendanceRecord.admin_notified_late):
                return
            record = await session.get(AttendanceRecord, record_id)
            employee = await session.get(User, record.user_id)
            for admin in await self._admins(session, record.company_id):
                await self._sink.notify_late_arrival(admin, employee, record.minutes_late, record)
        logger.info("Late arrival notified for record %s", record_id)

    async def _send_early(self, record_id: int) -> None:
        async with self._session_factory() as session:
            if not await self._claim(session, record_id, AttendanceRecord.early_departure_notified):
                return
            record = await session.get(AttendanceRecord, record_id)
            employee = await session.get(User, record.user_id)
            for admin in await self._admins(session, record.company_id):
                await self._sink.notify_early_departure(
                    admin, employee, record.minutes_early, record.departure_reason, record
                )
        logger.info("Early departure notified for record %s", record_id)

    async def _send_violation(self, company_id: int, user_id: int, distance_meters: float) -> None:
        async with self._session_factory() as session:
            employee = await session.get(User, user_id)
            for admin in await self._admins(session, company_id):
                await self._sink.notify_geofence_violation(admin, employee, distance_meters)

    async def _send_auto(self, record_id: int, event: str) -> None:
        async with self._session_factory() as session:
            record = await session.get(AttendanceRecord, record_id)
            employee = await session.get(User, record.user_id)
            await self._sink.notify_auto_clock_event(employee, event, record)

    async def _send_reminder(self, record_id: int) -> None:
        async with self._session_factory() as session:
            if not await self._claim(session, record_id, AttendanceRecord.clockout_reminder_sent):
                return
            record = await session.get(AttendanceRecord, record_id)
            employee = await session.get(User, record.user_id)
            await self._sink.notify_clockout_reminder(employee, record)

    async def _send_entry(self, user_id: int) -> None:
        async with self._session_factory() as session:
            employee = await session.get(User, user_id)
            await self._sink.notify_geofence_entry(employee)
