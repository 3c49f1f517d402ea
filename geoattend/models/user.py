"""
User model — authentication, tenant membership & per-employee attendance settings.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (JSON, Boolean, Column, DateTime, ForeignKey, Integer,
                        String)
from sqlalchemy.orm import relationship

from geoattend.db.base import Base


class User(Base):
    __tablename__ = "users"

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    company_id: int = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)  # type: ignore[assignment]
    email: str = Column(String(320), unique=True, nullable=False, index=True)  # type: ignore[assignment]
    hashed_password: str = Column(String(128), nullable=False)  # type: ignore[assignment]
    full_name: str | None = Column(String(200), nullable=True)  # type: ignore[assignment]
    role: str = Column(  # type: ignore[assignment]
        String(20),
        nullable=False,
        default="employee",
        server_default="employee",
    )  # owner | admin | manager | employee
    is_active: bool = Column(Boolean, default=True, server_default="true")  # type: ignore[assignment]
    deleted_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    attendance_settings = relationship(
        "UserAttendanceSettings",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )

    @property
    def is_admin(self) -> bool:
        return self.role in ("owner", "admin")

    @property
    def display_name(self) -> str:
        return self.full_name or self.email


class UserAttendanceSettings(Base):
    """Per-employee overrides read by the policy engine.

    ``allow_multi_location_clockin`` only widens the set of geofences an
    employee may clock in at; ``allow_multiple_clockins_per_day`` is the
    separate switch for starting a new session after clocking out.
    """

    __tablename__ = "user_attendance_settings"

    user_id: int = Column(Integer, ForeignKey("users.id"), primary_key=True)  # type: ignore[assignment]
    allow_remote_clockin: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    remote_work_days: list[int] | None = Column(JSON, nullable=True)  # type: ignore[assignment]  # ISO weekdays
    allow_multi_location_clockin: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    allow_multiple_clockins_per_day: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    last_location_verified_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]

    user = relationship("User", back_populates="attendance_settings")
