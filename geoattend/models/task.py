"""
Task model — read-only input for performance scoring.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from geoattend.db.base import Base

TASK_COMPLETED = "completed"


class Task(Base):
    __tablename__ = "tasks"

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    company_id: int = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)  # type: ignore[assignment]
    assigned_to: int | None = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)  # type: ignore[assignment]
    title: str = Column(String(300), nullable=False, default="")  # type: ignore[assignment]
    status: str = Column(String(20), nullable=False, default="pending")  # type: ignore[assignment]
    due_date: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    completed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    deleted_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
