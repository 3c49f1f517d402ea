"""
LocationPing model — device location signals consumed by the auto-attendance scheduler.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (Boolean, Column, DateTime, Float, ForeignKey, Index,
                        Integer, String)

from geoattend.db.base import Base

PERMISSION_GRANTED = "granted"
PERMISSION_STATES = {"granted", "denied", "prompt", "unavailable"}


class LocationPing(Base):
    __tablename__ = "location_pings"
    __table_args__ = (
        Index("ix_ping_company_created", "company_id", "created_at"),
        Index("ix_ping_user_created", "user_id", "created_at"),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False)  # type: ignore[assignment]
    company_id: int = Column(Integer, ForeignKey("companies.id"), nullable=False)  # type: ignore[assignment]
    latitude: float = Column(Float, nullable=False)  # type: ignore[assignment]
    longitude: float = Column(Float, nullable=False)  # type: ignore[assignment]
    accuracy: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    is_inside_geofence: bool | None = Column(Boolean, nullable=True)  # type: ignore[assignment]
    distance_meters: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    permission_state: str = Column(String(20), nullable=False)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
