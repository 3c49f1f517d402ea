"""
PerformanceSnapshot model — nightly ranked KPI rows, upserted per (company, user, date, period).
"""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import (Column, Date, DateTime, Float, ForeignKey, Integer,
                        String, UniqueConstraint)

from geoattend.db.base import Base


class PerformanceSnapshot(Base):
    __tablename__ = "performance_snapshots"
    __table_args__ = (
        UniqueConstraint(
            "company_id", "user_id", "date", "period_type", name="uq_snapshot_company_user_date_period"
        ),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    company_id: int = Column(Integer, ForeignKey("companies.id"), nullable=False)  # type: ignore[assignment]
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False)  # type: ignore[assignment]
    date: date = Column(Date, nullable=False)  # type: ignore[assignment]
    period_type: str = Column(String(10), nullable=False, default="daily")  # type: ignore[assignment]
    attendance_score: float = Column(Float, nullable=False)  # type: ignore[assignment]
    task_completion_score: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    overall_score: float = Column(Float, nullable=False)  # type: ignore[assignment]
    tier: str = Column(String(10), nullable=False)  # type: ignore[assignment]  # Bronze | Silver | Gold | Diamond
    rank_position: int = Column(Integer, nullable=False)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
