"""
Notification & audit log models.

The notification table has one fixed shape; delivery channels (email, push)
read from it and are out of this service's hands.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (JSON, Boolean, Column, DateTime, ForeignKey, Index,
                        Integer, String)

from geoattend.db.base import Base


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (Index("ix_notification_user_created", "user_id", "created_at"),)

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False)  # type: ignore[assignment]
    company_id: int = Column(Integer, ForeignKey("companies.id"), nullable=False)  # type: ignore[assignment]
    type: str = Column(String(40), nullable=False)  # type: ignore[assignment]
    title: str = Column(String(200), nullable=False)  # type: ignore[assignment]
    body: str = Column(String(1000), nullable=False)  # type: ignore[assignment]
    data: dict | None = Column(JSON, nullable=True)  # type: ignore[assignment]
    is_read: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_company_created", "company_id", "created_at"),)

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    company_id: int = Column(Integer, ForeignKey("companies.id"), nullable=False)  # type: ignore[assignment]
    user_id: int | None = Column(Integer, ForeignKey("users.id"), nullable=True)  # type: ignore[assignment]
    action: str = Column(String(40), nullable=False)  # type: ignore[assignment]
    entity_type: str = Column(String(40), nullable=False)  # type: ignore[assignment]
    entity_id: int | None = Column(Integer, nullable=True)  # type: ignore[assignment]
    details: dict | None = Column(JSON, nullable=True)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
