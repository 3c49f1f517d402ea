"""
Shared test fixtures for the Geoattend test suite.

Every test gets its own SQLite database file (aiosqlite), a frozen clock,
and an ``AdminNotifier`` that records sink calls instead of writing
notification rows.
"""

import os
import sys
from datetime import datetime
from typing import AsyncGenerator

import pytest

# Ensure project root is importable
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

# Override environment BEFORE importing application modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CORS_ORIGINS"] = '["*"]'
os.environ["SCHEDULER_ENABLED"] = "false"

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from geoattend.api.v1 import deps
from geoattend.api.v1.endpoints.auth import limiter
from geoattend.core.security import get_password_hash
from geoattend.db.base import Base
from geoattend.main import app
from geoattend.models.company import Company
from geoattend.models.user import User, UserAttendanceSettings
from geoattend.services.biometrics import PresenceBiometricVerifier
from geoattend.services.calendar import WorkCalendarResolver
from geoattend.services.geo import GeoCalculator
from geoattend.services.notifications import AdminNotifier
from geoattend.services.policy_engine import AttendancePolicyEngine
from support import MONDAY_9AM, OFFICE

# Keep the in-memory login limiter out of the way of repeated logins
limiter.enabled = False


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, **fields) -> datetime:
        """Move to another wall time on the same day, e.g. ``set(hour=16, minute=25)``."""
        self.now = self.now.replace(**fields)
        return self.now


class RecordingSink:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []

    def of(self, event: str) -> list[dict]:
        return [kw for name, kw in self.calls if name == event]

    async def notify_late_arrival(self, admin, employee, minutes_late, record):
        self.calls.append(("late_arrival", {"admin": admin.id, "employee": employee.id, "minutes_late": minutes_late}))

    async def notify_early_departure(self, admin, employee, minutes_early, reason, record):
        self.calls.append(
            ("early_departure", {"admin": admin.id, "employee": employee.id, "minutes_early": minutes_early, "reason": reason})
        )

    async def notify_geofence_violation(self, admin, employee, distance_meters):
        self.calls.append(("geofence_violation", {"admin": admin.id, "employee": employee.id, "distance": distance_meters}))

    async def notify_auto_clock_event(self, employee, event, record):
        self.calls.append(("auto_clock", {"employee": employee.id, "event": event, "record": record.id}))

    async def notify_clockout_reminder(self, employee, record):
        self.calls.append(("clockout_reminder", {"employee": employee.id, "record": record.id}))

    async def notify_geofence_entry(self, employee):
        self.calls.append(("geofence_entry", {"employee": employee.id}))


# ── Database ────────────────────────────────────────────────────────
@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'geoattend.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Return a raw database session for direct queries in tests."""
    async with session_factory() as session:
        yield session


# ── Services ────────────────────────────────────────────────────────
@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(MONDAY_9AM)


@pytest.fixture
def calendar(clock) -> WorkCalendarResolver:
    return WorkCalendarResolver(clock)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
async def notifier(session_factory, sink) -> AsyncGenerator[AdminNotifier, None]:
    notifier = AdminNotifier(session_factory, sink)
    yield notifier
    await notifier.drain()


@pytest.fixture
def policy(db_session, calendar, notifier) -> AttendancePolicyEngine:
    return AttendancePolicyEngine(db_session, calendar, GeoCalculator(), notifier, PresenceBiometricVerifier())


# ── Data ────────────────────────────────────────────────────────────
@pytest.fixture
def make_company(session_factory):
    async def _make(**overrides) -> Company:
        fields = dict(
            name="Acme Lagos",
            timezone="UTC",
            working_days=[1, 2, 3, 4, 5],
            work_start_time="09:00",
            work_end_time="17:00",
            grace_period_minutes=15,
            early_departure_threshold_minutes=30,
            office_latitude=OFFICE.latitude,
            office_longitude=OFFICE.longitude,
            geofence_radius_meters=100,
            require_geofence_for_clockin=True,
        )
        fields.update(overrides)
        async with session_factory() as session:
            company = Company(**fields)
            session.add(company)
            await session.commit()
            return company

    return _make


@pytest.fixture
def make_user(session_factory):
    async def _make(company: Company, role: str = "employee", email: str | None = None, **attendance) -> User:
        async with session_factory() as session:
            user = User(
                company_id=company.id,
                email=email or f"{role}-{os.urandom(4).hex()}@example.com",
                hashed_password=get_password_hash("password123"),
                full_name=f"Test {role.title()}",
                role=role,
            )
            session.add(user)
            await session.flush()
            session.add(UserAttendanceSettings(user_id=user.id, **attendance))
            await session.commit()
            return user

    return _make


@pytest.fixture
async def company(make_company) -> Company:
    return await make_company()


@pytest.fixture
async def admin(make_user, company) -> User:
    return await make_user(company, role="admin")


@pytest.fixture
async def employee(make_user, company, admin) -> User:
    return await make_user(company)


# ── HTTP ────────────────────────────────────────────────────────────
@pytest.fixture
async def async_client(session_factory, notifier, clock) -> AsyncGenerator[AsyncClient, None]:
    """Return a httpx AsyncClient wired to the app against the test database."""

    async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[deps.get_db] = _override_get_db
    app.dependency_overrides[deps.get_notifier] = lambda: notifier
    app.dependency_overrides[deps.get_clock] = lambda: clock
    app.state.session_factory = session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()

