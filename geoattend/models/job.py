"""
AutoAttendanceJob model — persisted job queue for the auto clock-in/out scheduler.

One job per (company, company-local day, type); the unique constraint is
what keeps several scheduler processes from enqueuing the same job twice.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import (Column, Date, DateTime, ForeignKey, Integer, String,
                        UniqueConstraint)

from geoattend.db.base import Base

JOB_CLOCKIN = "clockin"
JOB_CLOCKOUT = "clockout"

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


class AutoAttendanceJob(Base):
    __tablename__ = "auto_attendance_jobs"
    __table_args__ = (
        UniqueConstraint("company_id", "job_date", "job_type", name="uq_job_company_day_type"),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    company_id: int = Column(Integer, ForeignKey("companies.id"), nullable=False)  # type: ignore[assignment]
    job_type: str = Column(String(10), nullable=False)  # type: ignore[assignment]  # clockin | clockout
    job_date: date = Column(Date, nullable=False)  # type: ignore[assignment]
    status: str = Column(String(12), nullable=False, default=JOB_PENDING, index=True)  # type: ignore[assignment]
    scheduled_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    started_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    completed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    processed_count: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
    error_count: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
    error_message: str | None = Column(String(1000), nullable=True)  # type: ignore[assignment]
