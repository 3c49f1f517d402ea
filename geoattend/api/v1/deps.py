"""
FastAPI dependencies — database session, auth guards and service wiring.

Services are built per request from these factories. The long-lived
collaborators (notifier, biometric verifier) hang off ``app.state`` and
are created by the app factory, so tests can swap any of them through
``app.dependency_overrides``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Optional

from fastapi import Cookie, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from geoattend.core.config import settings
from geoattend.core.security import decode_access_token
from geoattend.core.timeutils import Clock, utcnow
from geoattend.db.session import async_session_factory
from geoattend.models.user import User
from geoattend.services.biometrics import BiometricVerifier
from geoattend.services.breaks import BreakTracker
from geoattend.services.calendar import WorkCalendarResolver
from geoattend.services.geo import GeoCalculator
from geoattend.services.location import LocationPingService
from geoattend.services.notifications import AdminNotifier
from geoattend.services.performance import PerformanceSnapshotAggregator
from geoattend.services.policy_engine import AttendancePolicyEngine

# auto_error=False so the cookie can be checked when the header is missing
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


# ── Database session ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


# ── Auth dependencies ───────────────────────────────────────────────
async def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    access_token: Optional[str] = Cookie(default=None),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Decode JWT from Header OR Cookie, look up user."""

    # Priority: Header > Cookie
    final_token = token
    if not final_token and access_token:
        final_token = access_token.removeprefix("Bearer ")

    credentials_exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not final_token:
        raise credentials_exc

    payload = decode_access_token(final_token)
    if payload is None or payload.get("sub") is None:
        raise credentials_exc

    result = await db.execute(select(User).where(User.id == int(payload["sub"])))
    user = result.scalar_one_or_none()
    if user is None or user.deleted_at is not None:
        raise credentials_exc
    # A user moved to another company must log in again
    if payload.get("cid") is not None and payload["cid"] != user.company_id:
        raise credentials_exc
    return user


async def get_current_active_user(
    current_user: User = Depends(get_current_user),
) -> User:
    """Reject inactive accounts."""
    if not current_user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user account")
    return current_user


async def require_admin(
    current_user: User = Depends(get_current_active_user),
) -> User:
    """Only company owners and admins may proceed."""
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return current_user


async def require_manager(
    current_user: User = Depends(get_current_active_user),
) -> User:
    """Owners, admins and managers may read company-wide data."""
    if current_user.role not in ("owner", "admin", "manager"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Manager privileges required",
        )
    return current_user


# ── Services ────────────────────────────────────────────────────────
def get_clock() -> Clock:
    return utcnow


def get_calendar(clock: Clock = Depends(get_clock)) -> WorkCalendarResolver:
    return WorkCalendarResolver(clock)


def get_geo() -> GeoCalculator:
    return GeoCalculator()


def get_notifier(request: Request) -> AdminNotifier:
    return request.app.state.notifier


def get_verifier(request: Request) -> BiometricVerifier:
    return request.app.state.verifier


def get_policy_engine(
    db: AsyncSession = Depends(get_db),
    calendar: WorkCalendarResolver = Depends(get_calendar),
    geo: GeoCalculator = Depends(get_geo),
    notifier: AdminNotifier = Depends(get_notifier),
    verifier: BiometricVerifier = Depends(get_verifier),
) -> AttendancePolicyEngine:
    return AttendancePolicyEngine(db, calendar, geo, notifier, verifier)


def get_break_tracker(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> BreakTracker:
    return BreakTracker(db, clock)


def get_location_service(
    db: AsyncSession = Depends(get_db),
    geo: GeoCalculator = Depends(get_geo),
    notifier: AdminNotifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
) -> LocationPingService:
    return LocationPingService(
        db,
        geo,
        notifier,
        clock,
        verification_max_age_days=settings.LOCATION_VERIFICATION_MAX_AGE_DAYS,
    )


def get_aggregator(
    request: Request,
    calendar: WorkCalendarResolver = Depends(get_calendar),
) -> PerformanceSnapshotAggregator:
    return PerformanceSnapshotAggregator(
        request.app.state.session_factory,
        calendar,
        window_days=settings.PERFORMANCE_WINDOW_DAYS,
        snapshot_tier_rule=settings.SNAPSHOT_TIER_RULE,
        leaderboard_tier_rule=settings.LEADERBOARD_TIER_RULE,
    )
