"""
Attendance & break models — core business domain.

Uniqueness is enforced in the database, not in application code:

* ``uq_attendance_user_day_seq`` — one row per (user, local day, session).
  Without multi clock-in every session is number 1, so a second clock-in on
  the same day collides.
* ``uq_attendance_open_per_day`` — at most one open (not clocked out) record
  per user per local day.
* ``uq_break_open_per_record`` — at most one open break per record.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import (Boolean, Column, Date, DateTime, Float, ForeignKey,
                        Index, Integer, String, UniqueConstraint, text)
from sqlalchemy.orm import relationship

from geoattend.db.base import Base

STATUS_PRESENT = "present"
STATUS_LATE = "late"
STATUS_ON_BREAK = "on_break"
STATUS_EARLY_DEPARTURE = "early_departure"
STATUS_ABSENT = "absent"

METHOD_MANUAL = "manual"
METHOD_AUTO = "auto"


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (
        UniqueConstraint("user_id", "local_date", "session_seq", name="uq_attendance_user_day_seq"),
        Index(
            "uq_attendance_open_per_day",
            "user_id",
            "local_date",
            unique=True,
            postgresql_where=text("clock_out_time IS NULL"),
            sqlite_where=text("clock_out_time IS NULL"),
        ),
        Index("ix_attendance_company_day", "company_id", "local_date"),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    company_id: int = Column(Integer, ForeignKey("companies.id"), nullable=False)  # type: ignore[assignment]
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)  # type: ignore[assignment]
    local_date: date = Column(Date, nullable=False)  # type: ignore[assignment]
    session_seq: int = Column(Integer, nullable=False, default=1)  # type: ignore[assignment]

    clock_in_time: datetime = Column(DateTime(timezone=True), nullable=False)  # type: ignore[assignment]
    clock_out_time: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]

    clock_in_latitude: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    clock_in_longitude: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    clock_out_latitude: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    clock_out_longitude: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    clock_in_distance_meters: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    clock_out_distance_meters: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    is_within_geofence: bool | None = Column(Boolean, nullable=True)  # type: ignore[assignment]
    location_id: int | None = Column(Integer, ForeignKey("company_locations.id"), nullable=True)  # type: ignore[assignment]
    location_name: str | None = Column(String(200), nullable=True)  # type: ignore[assignment]

    status: str = Column(String(20), nullable=False, default=STATUS_PRESENT)  # type: ignore[assignment]
    # present | late | on_break | early_departure | absent
    is_late_arrival: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    minutes_late: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
    is_early_departure: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    minutes_early: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
    departure_reason: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
    duration_minutes: int | None = Column(Integer, nullable=True)  # type: ignore[assignment]
    overtime_minutes: int | None = Column(Integer, nullable=True)  # type: ignore[assignment]

    check_in_method: str = Column(String(10), nullable=False, default=METHOD_MANUAL)  # type: ignore[assignment]
    check_out_method: str | None = Column(String(10), nullable=True)  # type: ignore[assignment]

    admin_notified_late: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    early_departure_notified: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    clockout_reminder_sent: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]

    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    breaks = relationship(
        "AttendanceBreak",
        back_populates="record",
        order_by="AttendanceBreak.start_time",
    )

    @property
    def is_open(self) -> bool:
        return self.clock_out_time is None


class AttendanceBreak(Base):
    __tablename__ = "attendance_breaks"
    __table_args__ = (
        Index(
            "uq_break_open_per_record",
            "attendance_record_id",
            unique=True,
            postgresql_where=text("end_time IS NULL"),
            sqlite_where=text("end_time IS NULL"),
        ),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    attendance_record_id: int = Column(  # type: ignore[assignment]
        Integer, ForeignKey("attendance_records.id"), nullable=False, index=True
    )
    start_time: datetime = Column(DateTime(timezone=True), nullable=False)  # type: ignore[assignment]
    end_time: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    duration_minutes: float | None = Column(Float, nullable=True)  # type: ignore[assignment]

    record = relationship("AttendanceRecord", back_populates="breaks")
