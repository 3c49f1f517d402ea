"""
Geoattend — Application entry point.

This is the **only** file that assembles the app. All business logic
lives in the `services/`, `api/`, `models/` and `core/` packages.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import select

from geoattend.api.v1.api import api_router
from geoattend.api.v1.endpoints.auth import limiter
from geoattend.core.config import settings
from geoattend.core.exceptions import register_exception_handlers
from geoattend.core.security import get_password_hash
from geoattend.db.base import Base
from geoattend.db.session import async_session_factory, engine

# Ensure all models are imported so metadata.create_all can see them
from geoattend.models.attendance import AttendanceBreak, AttendanceRecord  # noqa: F401
from geoattend.models.company import Company, CompanyLocation  # noqa: F401
from geoattend.models.job import AutoAttendanceJob  # noqa: F401
from geoattend.models.location_ping import LocationPing  # noqa: F401
from geoattend.models.notification import AuditLog, Notification  # noqa: F401
from geoattend.models.performance import PerformanceSnapshot  # noqa: F401
from geoattend.models.task import Task  # noqa: F401
from geoattend.models.user import User, UserAttendanceSettings
from geoattend.services.biometrics import PresenceBiometricVerifier
from geoattend.services.calendar import WorkCalendarResolver
from geoattend.services.geo import GeoCalculator
from geoattend.services.notifications import AdminNotifier, InAppNotificationSink
from geoattend.services.performance import PerformanceSnapshotAggregator
from geoattend.services.scheduler import (AttendanceJobRunner,
                                          AutoAttendanceScheduler)

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


async def _seed_owner() -> None:
    """Create the first company and its owner on an empty database."""
    async with async_session_factory() as session:
        result = await session.execute(
            select(User).where(User.email == settings.FIRST_ADMIN_EMAIL)
        )
        if result.scalar_one_or_none() is not None:
            return

        company = Company(name=settings.FIRST_COMPANY_NAME)
        session.add(company)
        await session.flush()
        owner = User(
            company_id=company.id,
            email=settings.FIRST_ADMIN_EMAIL,
            hashed_password=get_password_hash(settings.FIRST_ADMIN_PASSWORD),
            full_name="Company Owner",
            role="owner",
        )
        session.add(owner)
        await session.flush()
        session.add(UserAttendanceSettings(user_id=owner.id))
        await session.commit()
        logger.info(
            "Default owner created: %s (password: <redacted>)",
            settings.FIRST_ADMIN_EMAIL,
        )


def _build_runner(app: FastAPI) -> AttendanceJobRunner:
    calendar = WorkCalendarResolver()
    scheduler = AutoAttendanceScheduler(
        app.state.session_factory,
        calendar,
        GeoCalculator(),
        app.state.notifier,
        app.state.verifier,
    )
    aggregator = None
    if settings.PERFORMANCE_SNAPSHOTS_ENABLED:
        aggregator = PerformanceSnapshotAggregator(
            app.state.session_factory,
            calendar,
            window_days=settings.PERFORMANCE_WINDOW_DAYS,
            snapshot_tier_rule=settings.SNAPSHOT_TIER_RULE,
            leaderboard_tier_rule=settings.LEADERBOARD_TIER_RULE,
        )
    return AttendanceJobRunner(
        scheduler,
        aggregator,
        interval_seconds=settings.AUTO_ATTENDANCE_INTERVAL_SECONDS,
        snapshot_hour=settings.PERFORMANCE_SNAPSHOT_HOUR,
    )


# ── Lifespan ────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")

    await _seed_owner()

    runner = None
    if settings.SCHEDULER_ENABLED:
        runner = _build_runner(app)
        runner.start()

    logger.info("Geoattend v%s started", settings.VERSION)
    yield

    if runner is not None:
        await runner.stop()
    await app.state.notifier.drain()
    await engine.dispose()
    logger.info("Shutdown complete")


# ── App factory ─────────────────────────────────────────────────────
def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.PROJECT_NAME,
        description="Geofenced workforce attendance",
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Long-lived collaborators, reached through api/v1/deps.py
    application.state.session_factory = async_session_factory
    application.state.notifier = AdminNotifier(
        async_session_factory,
        InAppNotificationSink(async_session_factory),
        enabled=settings.NOTIFICATIONS_ENABLED,
    )
    application.state.verifier = PresenceBiometricVerifier()

    # Login rate limiting
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]

    # CORS
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Global exception handlers (prevent stack-trace leakage)
    register_exception_handlers(application)

    # Mount API v1
    application.include_router(api_router, prefix=settings.API_V1_PREFIX)

    return application


app = create_app()
