"""
Company (tenant policy) & named office locations.

One ``Company`` row carries the whole attendance policy for a tenant:
work hours, grace periods, geofence, remote-work rules, automation toggles
and KPI weights. The policy engine only ever reads it.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (JSON, Boolean, Column, DateTime, Float, ForeignKey,
                        Integer, String)
from sqlalchemy.orm import relationship

from geoattend.db.base import Base


class Company(Base):
    __tablename__ = "companies"

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    name: str = Column(String(200), nullable=False)  # type: ignore[assignment]
    is_active: bool = Column(Boolean, default=True, server_default="true")  # type: ignore[assignment]
    deleted_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]

    # ── Calendar ─────────────────────────────────────────────────────
    timezone: str = Column(String(64), nullable=False, default="UTC")  # type: ignore[assignment]
    working_days: list[int] | None = Column(JSON, nullable=True, default=lambda: [1, 2, 3, 4, 5])  # type: ignore[assignment]
    work_start_time: str = Column(String(8), nullable=False, default="09:00")  # type: ignore[assignment]
    work_end_time: str = Column(String(8), nullable=False, default="17:00")  # type: ignore[assignment]
    grace_period_minutes: int = Column(Integer, nullable=False, default=15)  # type: ignore[assignment]
    early_departure_threshold_minutes: int = Column(Integer, nullable=False, default=30)  # type: ignore[assignment]

    # ── Geofence ─────────────────────────────────────────────────────
    office_latitude: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    office_longitude: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    geofence_radius_meters: float = Column(Float, nullable=False, default=100)  # type: ignore[assignment]
    require_geofence_for_clockin: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    multi_location_enabled: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]

    # ── Remote work ──────────────────────────────────────────────────
    allow_remote_clockin: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    allow_remote_clockin_on_non_working_days: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]

    # ── Features ─────────────────────────────────────────────────────
    biometrics_required: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    auto_clockin_enabled: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    auto_clockout_enabled: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    breaks_enabled: bool = Column(Boolean, nullable=False, default=True)  # type: ignore[assignment]
    notify_early_departure: bool = Column(Boolean, nullable=False, default=True)  # type: ignore[assignment]

    # ── KPI weights (normalised by their sum) ───────────────────────
    attendance_weight: float = Column(Float, nullable=False, default=40)  # type: ignore[assignment]
    task_completion_weight: float = Column(Float, nullable=False, default=60)  # type: ignore[assignment]

    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    locations = relationship(
        "CompanyLocation",
        back_populates="company",
        cascade="all, delete-orphan",
    )

    @property
    def has_office_location(self) -> bool:
        return self.office_latitude is not None and self.office_longitude is not None


class CompanyLocation(Base):
    __tablename__ = "company_locations"

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    company_id: int = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)  # type: ignore[assignment]
    name: str = Column(String(200), nullable=False)  # type: ignore[assignment]
    latitude: float = Column(Float, nullable=False)  # type: ignore[assignment]
    longitude: float = Column(Float, nullable=False)  # type: ignore[assignment]
    radius_meters: float = Column(Float, nullable=False, default=100)  # type: ignore[assignment]
    is_active: bool = Column(Boolean, default=True, server_default="true")  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    company = relationship("Company", back_populates="locations")
