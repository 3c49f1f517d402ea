"""
Policy engine — check-in/check-out state machine against a real database.
"""

from datetime import date, timedelta

import pytest
from sqlalchemy import func, select

from geoattend.core.exceptions import (AlreadyCheckedOut, AlreadyClockedIn,
                                       AutoDisabled, BiometricRequired,
                                       CompanyNotFound, GeofenceNotConfigured,
                                       InvalidLocation, InvalidUser,
                                       NotAWorkingDay, OutsideGeofence,
                                       RecordNotFound)
from geoattend.models.attendance import (METHOD_AUTO, STATUS_EARLY_DEPARTURE,
                                         STATUS_LATE, STATUS_PRESENT,
                                         AttendanceBreak, AttendanceRecord)
from geoattend.models.company import Company, CompanyLocation
from geoattend.models.notification import AuditLog
from geoattend.models.user import User, UserAttendanceSettings
from geoattend.services.biometrics import PresenceBiometricVerifier
from geoattend.services.geo import Coordinates, GeoCalculator
from geoattend.services.policy_engine import (AttendancePolicyEngine,
                                              remote_permitted)
from support import OFFICE, north_of

INSIDE = north_of(OFFICE, 20)
OUTSIDE = north_of(OFFICE, 150)


async def _count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


# ── Geofence ────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_outside_geofence_rejected_and_admin_alerted(policy, employee, notifier, sink, db_session):
    """150 m from a 100 m fence without remote allowance is refused, admins alerted once."""
    with pytest.raises(OutsideGeofence) as exc_info:
        await policy.check_in(employee.id, employee.company_id, OUTSIDE)

    assert exc_info.value.context["distance_meters"] == 150
    assert "150m" in exc_info.value.message
    await notifier.drain()
    assert len(sink.of("geofence_violation")) == 1
    assert await _count(db_session, AttendanceRecord) == 0


@pytest.mark.asyncio
async def test_remote_work_day_allows_outside_check_in(policy, make_user, company, admin):
    """A remote day for the employee lets them clock in from anywhere."""
    remote = await make_user(company, allow_remote_clockin=True, remote_work_days=[1])

    record = await policy.check_in(remote.id, company.id, OUTSIDE)

    assert record.is_within_geofence is False
    assert record.clock_in_distance_meters == pytest.approx(150, abs=0.5)
    assert record.status == STATUS_PRESENT


@pytest.mark.asyncio
async def test_remote_allowance_on_other_weekday_does_not_apply(policy, make_user, company, admin):
    """Remote days are matched against today's ISO weekday."""
    remote = await make_user(company, allow_remote_clockin=True, remote_work_days=[3])
    with pytest.raises(OutsideGeofence):
        await policy.check_in(remote.id, company.id, OUTSIDE)


def test_remote_permitted_rules():
    """Company-wide remote wins; an empty day list means every day."""
    company = Company(allow_remote_clockin=False)
    assert remote_permitted(company, None, 1) is False
    assert remote_permitted(company, UserAttendanceSettings(allow_remote_clockin=True, remote_work_days=[]), 4)
    assert not remote_permitted(company, UserAttendanceSettings(allow_remote_clockin=False, remote_work_days=[1]), 1)
    company.allow_remote_clockin = True
    assert remote_permitted(company, None, 6)


@pytest.mark.asyncio
async def test_inside_geofence_records_office(policy, employee):
    """A check-in inside the fence stores distance and the office name."""
    record = await policy.check_in(employee.id, employee.company_id, INSIDE)
    assert record.is_within_geofence is True
    assert record.clock_in_distance_meters == pytest.approx(20, abs=0.5)
    assert record.location_name == "Main Office"
    assert record.session_seq == 1


@pytest.mark.asyncio
async def test_geofence_not_enforced_records_distance_only(policy, make_company, make_user):
    """Without enforcement an outside check-in succeeds and is flagged."""
    relaxed = await make_company(require_geofence_for_clockin=False)
    await make_user(relaxed, role="admin")
    worker = await make_user(relaxed)

    record = await policy.check_in(worker.id, relaxed.id, OUTSIDE)
    assert record.is_within_geofence is False


@pytest.mark.asyncio
async def test_geofence_required_without_office(policy, make_company, make_user):
    """Enforcement with no configured fence is a configuration error."""
    bare = await make_company(office_latitude=None, office_longitude=None)
    worker = await make_user(bare)
    with pytest.raises(GeofenceNotConfigured):
        await policy.check_in(worker.id, bare.id, INSIDE)


@pytest.mark.asyncio
async def test_multi_location_matches_named_site(policy, make_company, make_user, session_factory):
    """Employees allowed multi-location can clock in at any active site."""
    branch_point = Coordinates(6.4281, 3.4219)
    company = await make_company(multi_location_enabled=True)
    async with session_factory() as session:
        branch = CompanyLocation(
            company_id=company.id,
            name="Victoria Island",
            latitude=branch_point.latitude,
            longitude=branch_point.longitude,
            radius_meters=80,
        )
        session.add(branch)
        await session.commit()
    roaming = await make_user(company, allow_multi_location_clockin=True)
    fixed = await make_user(company)

    record = await policy.check_in(roaming.id, company.id, north_of(branch_point, 30))
    assert record.location_id == branch.id
    assert record.location_name == "Victoria Island"

    with pytest.raises(OutsideGeofence):
        await policy.check_in(fixed.id, company.id, north_of(branch_point, 30))


# ── Preconditions ───────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_biometrics_checked_before_geofence(make_company, make_user, db_session, calendar, notifier, sink):
    """A missing proof is rejected before any geofence work or write."""
    company = await make_company(biometrics_required=True)
    await make_user(company, role="admin")
    worker = await make_user(company)
    engine = AttendancePolicyEngine(db_session, calendar, GeoCalculator(), notifier, PresenceBiometricVerifier())

    with pytest.raises(BiometricRequired):
        await engine.check_in(worker.id, company.id, OUTSIDE)
    with pytest.raises(BiometricRequired):
        await engine.check_in(worker.id, company.id, INSIDE, biometrics_proof="   ")

    await notifier.drain()
    assert sink.of("geofence_violation") == []
    assert await _count(db_session, AttendanceRecord) == 0

    record = await engine.check_in(worker.id, company.id, INSIDE, biometrics_proof="assertion")
    assert record.id is not None


@pytest.mark.asyncio
async def test_auto_check_in_skips_biometrics_but_needs_flag(policy, make_company, make_user):
    """Automatic check-ins need the company toggle; biometrics never apply to them."""
    company = await make_company(biometrics_required=True)
    worker = await make_user(company)
    with pytest.raises(AutoDisabled):
        await policy.check_in(worker.id, company.id, INSIDE, method=METHOD_AUTO)

    enabled = await make_company(biometrics_required=True, auto_clockin_enabled=True)
    auto_worker = await make_user(enabled)
    record = await policy.check_in(auto_worker.id, enabled.id, INSIDE, method=METHOD_AUTO)
    assert record.check_in_method == METHOD_AUTO


@pytest.mark.asyncio
async def test_invalid_inputs(policy, employee, make_company, make_user):
    """Unknown company, bad coordinates and foreign users are rejected."""
    with pytest.raises(CompanyNotFound):
        await policy.check_in(employee.id, 9999, INSIDE)
    with pytest.raises(InvalidLocation):
        await policy.check_in(employee.id, employee.company_id, Coordinates(0, 0))
    with pytest.raises(InvalidLocation):
        await policy.check_in(employee.id, employee.company_id, Coordinates(91, 3))

    other = await make_company(name="Other Co")
    stranger = await make_user(other)
    with pytest.raises(InvalidUser):
        await policy.check_in(stranger.id, employee.company_id, INSIDE)


@pytest.mark.asyncio
async def test_inactive_user_rejected(policy, make_user, company, session_factory):
    """Deactivated accounts cannot clock in."""
    worker = await make_user(company)
    async with session_factory() as session:
        (await session.get(User, worker.id)).is_active = False
        await session.commit()
    with pytest.raises(InvalidUser):
        await policy.check_in(worker.id, company.id, INSIDE)


# ── Lateness ────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_lateness_boundary(policy, make_user, company, clock):
    """Exactly the grace period is on time; one second more is late."""
    punctual = await make_user(company)
    tardy = await make_user(company)

    clock.set(minute=15, second=0)
    on_time = await policy.check_in(punctual.id, company.id, INSIDE)
    assert on_time.is_late_arrival is False
    assert on_time.status == STATUS_PRESENT

    clock.set(minute=15, second=1)
    late = await policy.check_in(tardy.id, company.id, INSIDE)
    assert late.is_late_arrival is True
    assert late.minutes_late == 15
    assert late.status == STATUS_LATE


@pytest.mark.asyncio
async def test_late_arrival_notified_once(policy, employee, clock, notifier, sink, db_session):
    """The late flag is claimed once, so repeat notifications are dropped."""
    clock.set(minute=42)
    record = await policy.check_in(employee.id, employee.company_id, INSIDE)
    assert record.minutes_late == 42

    await notifier.drain()
    notifier.late_arrival(record.id)
    await notifier.drain()

    assert [n["minutes_late"] for n in sink.of("late_arrival")] == [42]
    actions = (await db_session.execute(select(AuditLog.action).order_by(AuditLog.id))).scalars().all()
    assert actions == ["CLOCK_IN", "LATE_ARRIVAL"]


@pytest.mark.asyncio
async def test_lateness_uses_company_timezone(policy, make_company, make_user, clock):
    """08:30 UTC is 09:30 in Lagos, which is 30 minutes late there."""
    lagos = await make_company(timezone="Africa/Lagos")
    worker = await make_user(lagos)
    clock.set(hour=8, minute=30)
    record = await policy.check_in(worker.id, lagos.id, INSIDE)
    assert record.minutes_late == 30
    assert record.local_date == date(2024, 6, 3)


# ── One open record per day ─────────────────────────────────────────
@pytest.mark.asyncio
async def test_second_check_in_rejected(policy, employee, clock):
    """Open or completed, a second check-in on the same day is refused by default."""
    record = await policy.check_in(employee.id, employee.company_id, INSIDE)
    with pytest.raises(AlreadyClockedIn):
        await policy.check_in(employee.id, employee.company_id, INSIDE)

    clock.set(hour=17, minute=5)
    await policy.check_out(employee.id, employee.company_id, record.id, INSIDE)
    with pytest.raises(AlreadyClockedIn):
        await policy.check_in(employee.id, employee.company_id, INSIDE)


@pytest.mark.asyncio
async def test_multiple_sessions_per_day(policy, make_user, company, clock):
    """With multiple clock-ins allowed, each session gets the next sequence number."""
    worker = await make_user(company, allow_multiple_clockins_per_day=True)
    first = await policy.check_in(worker.id, company.id, INSIDE)
    with pytest.raises(AlreadyClockedIn):
        await policy.check_in(worker.id, company.id, INSIDE)

    clock.set(hour=12)
    await policy.check_out(worker.id, company.id, first.id, INSIDE)
    clock.set(hour=13)
    second = await policy.check_in(worker.id, company.id, INSIDE)
    assert second.session_seq == 2
    # Lateness is judged against the day's start time for every session
    assert second.is_late_arrival is True


@pytest.mark.asyncio
async def test_concurrent_check_in_loses_on_unique_index(policy, employee, monkeypatch):
    """A check-in that missed a concurrent insert is mapped to ALREADY_CLOCKED_IN."""
    await policy.check_in(employee.id, employee.company_id, INSIDE)

    async def _stale_view(user_id, local_day):
        return []

    monkeypatch.setattr(policy, "_records_on", _stale_view)
    with pytest.raises(AlreadyClockedIn):
        await policy.check_in(employee.id, employee.company_id, INSIDE)


# ── Non-working days ────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_non_working_day_rejected(policy, employee, clock):
    """Saturday is closed without the remote exception."""
    clock.now = clock.now.replace(day=8, hour=10)
    with pytest.raises(NotAWorkingDay):
        await policy.check_in(employee.id, employee.company_id, INSIDE)


@pytest.mark.asyncio
async def test_remote_non_working_day_exception(policy, make_company, make_user, clock):
    """Remote off-day work is allowed away from the office only, and never late."""
    company = await make_company(allow_remote_clockin=True, allow_remote_clockin_on_non_working_days=True)
    worker = await make_user(company)
    clock.now = clock.now.replace(day=8, hour=11)

    with pytest.raises(NotAWorkingDay):
        await policy.check_in(worker.id, company.id, INSIDE)
    with pytest.raises(NotAWorkingDay):
        await policy.check_in(worker.id, company.id, None)

    record = await policy.check_in(worker.id, company.id, OUTSIDE)
    assert record.is_within_geofence is False
    assert record.is_late_arrival is False


@pytest.mark.asyncio
async def test_remote_non_working_day_needs_a_fence(policy, make_company, make_user, clock):
    """Remote off-day check-ins need a configured office to measure against."""
    company = await make_company(
        office_latitude=None,
        office_longitude=None,
        require_geofence_for_clockin=False,
        allow_remote_clockin=True,
        allow_remote_clockin_on_non_working_days=True,
    )
    worker = await make_user(company)
    clock.now = clock.now.replace(day=9, hour=11)
    with pytest.raises(GeofenceNotConfigured):
        await policy.check_in(worker.id, company.id, OUTSIDE)


# ── Check-out ───────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_early_departure(policy, employee, clock, notifier, sink):
    """Leaving at 16:25 with a 30 minute threshold is 35 minutes early."""
    record = await policy.check_in(employee.id, employee.company_id, INSIDE)
    clock.set(hour=16, minute=25)

    out = await policy.check_out(
        employee.id, employee.company_id, record.id, INSIDE, departure_reason="  Doctor  "
    )

    assert out.is_early_departure is True
    assert out.minutes_early == 35
    assert out.status == STATUS_EARLY_DEPARTURE
    assert out.departure_reason == "Doctor"
    assert out.duration_minutes == 445
    assert out.overtime_minutes == 0

    await notifier.drain()
    assert len(sink.of("early_departure")) == 1
    assert sink.of("early_departure")[0]["minutes_early"] == 35

    with pytest.raises(AlreadyCheckedOut):
        await policy.check_out(employee.id, employee.company_id, record.id, INSIDE)
    await notifier.drain()
    assert len(sink.of("early_departure")) == 1


@pytest.mark.asyncio
async def test_early_departure_threshold_is_exclusive(policy, employee, clock, notifier, sink):
    """Exactly the threshold before end of day is not early."""
    record = await policy.check_in(employee.id, employee.company_id, INSIDE)
    clock.set(hour=16, minute=30)
    out = await policy.check_out(employee.id, employee.company_id, record.id)
    assert out.is_early_departure is False
    assert out.minutes_early == 0
    assert out.departure_reason is None
    await notifier.drain()
    assert sink.of("early_departure") == []


@pytest.mark.asyncio
async def test_early_departure_notification_can_be_disabled(policy, make_company, make_user, clock, notifier, sink):
    """notify_early_departure=False records the departure silently."""
    quiet = await make_company(notify_early_departure=False)
    await make_user(quiet, role="admin")
    worker = await make_user(quiet)
    record = await policy.check_in(worker.id, quiet.id, INSIDE)
    clock.set(hour=11)
    out = await policy.check_out(worker.id, quiet.id, record.id)
    assert out.is_early_departure is True
    await notifier.drain()
    assert sink.of("early_departure") == []


@pytest.mark.asyncio
async def test_overtime(policy, employee, clock):
    """Minutes past end of day are overtime; the late status is kept."""
    clock.set(minute=30)
    record = await policy.check_in(employee.id, employee.company_id, INSIDE)
    clock.set(hour=17, minute=40, second=59)
    out = await policy.check_out(employee.id, employee.company_id, record.id, INSIDE)
    assert out.overtime_minutes == 40
    assert out.duration_minutes == 490
    assert out.status == STATUS_LATE
    assert out.clock_out_distance_meters == pytest.approx(20, abs=0.5)


@pytest.mark.asyncio
async def test_check_out_after_midnight_uses_session_day(policy, employee, clock, notifier, sink):
    """A Monday session closed after midnight is measured against Monday's shift end."""
    record = await policy.check_in(employee.id, employee.company_id, INSIDE)
    clock.now = clock.now + timedelta(hours=16)
    out = await policy.check_out(employee.id, employee.company_id, record.id, INSIDE)
    assert out.is_early_departure is False
    assert out.minutes_early == 0
    assert out.status == STATUS_PRESENT
    assert out.duration_minutes == 960
    assert out.overtime_minutes == 480
    await notifier.drain()
    assert sink.of("early_departure") == []


@pytest.mark.asyncio
async def test_off_day_session_is_all_overtime(policy, make_company, make_user, clock):
    """A remote session on a non-working day counts entirely as overtime."""
    company = await make_company(allow_remote_clockin=True, allow_remote_clockin_on_non_working_days=True)
    worker = await make_user(company)
    clock.now = clock.now.replace(day=8, hour=10)
    record = await policy.check_in(worker.id, company.id, OUTSIDE)
    clock.set(hour=12, minute=15)
    out = await policy.check_out(worker.id, company.id, record.id, OUTSIDE)
    assert out.is_early_departure is False
    assert out.duration_minutes == 135
    assert out.overtime_minutes == 135


@pytest.mark.asyncio
async def test_check_out_closes_open_break(policy, employee, clock, db_session):
    """An open break is force-closed at checkout time."""
    record = await policy.check_in(employee.id, employee.company_id, INSIDE)
    clock.set(hour=12)
    await policy.breaks.start_break(employee.id, employee.company_id)
    clock.set(hour=17, minute=0, second=0)
    out = await policy.check_out(employee.id, employee.company_id, record.id)

    assert out.status == STATUS_PRESENT
    brk = (await db_session.execute(select(AttendanceBreak))).scalar_one()
    assert brk.end_time is not None
    assert brk.duration_minutes == 300.0


@pytest.mark.asyncio
async def test_check_out_unknown_record(policy, employee, make_user, company):
    """Records belong to their owner only."""
    with pytest.raises(RecordNotFound):
        await policy.check_out(employee.id, employee.company_id, 12345)

    record = await policy.check_in(employee.id, employee.company_id, INSIDE)
    colleague = await make_user(company)
    with pytest.raises(RecordNotFound):
        await policy.check_out(colleague.id, company.id, record.id)


@pytest.mark.asyncio
async def test_concurrent_check_out_only_one_wins(employee, session_factory, calendar, notifier, clock):
    """Two sessions that both saw the record open: the second update matches no row."""

    def _engine(session):
        return AttendancePolicyEngine(session, calendar, GeoCalculator(), notifier, PresenceBiometricVerifier())

    async with session_factory() as first, session_factory() as second:
        record = await _engine(first).check_in(employee.id, employee.company_id, INSIDE)
        # Second session loads the record while it is still open
        stale = await second.get(AttendanceRecord, record.id)
        assert stale.is_open

        clock.set(hour=17, minute=10)
        winner = await _engine(first).check_out(employee.id, employee.company_id, record.id)
        assert winner.clock_out_time is not None

        with pytest.raises(AlreadyCheckedOut):
            await _engine(second).check_out(employee.id, employee.company_id, record.id)

    async with session_factory() as fresh:
        actions = (
            await fresh.execute(select(AuditLog.action).where(AuditLog.action == "CLOCK_OUT"))
        ).scalars().all()
        assert actions == ["CLOCK_OUT"]


# ── Reads ───────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_current_attendance_with_live_break(policy, employee, clock):
    """The current view counts the elapsed part of an open break."""
    assert await policy.current_attendance(employee.id, employee.company_id) is None

    await policy.check_in(employee.id, employee.company_id, INSIDE)
    clock.set(hour=12)
    await policy.breaks.start_break(employee.id, employee.company_id)
    clock.set(hour=12, minute=20)

    view = await policy.current_attendance(employee.id, employee.company_id)
    assert view.record.status == "on_break"
    assert len(view.breaks) == 1
    assert view.total_break_minutes == 20.0


@pytest.mark.asyncio
async def test_list_company_attendance(policy, make_user, company, admin, clock):
    """Listing covers today by default, filters by status and names employees."""
    alice = await make_user(company, email="alice@example.com")
    bob = await make_user(company, email="bob@example.com")
    await policy.check_in(alice.id, company.id, INSIDE)
    clock.set(minute=40)
    await policy.check_in(bob.id, company.id, INSIDE)
    clock.set(hour=10)
    await policy.breaks.start_break(bob.id, company.id)
    clock.set(hour=10, minute=15)
    await policy.breaks.end_break(bob.id, company.id)

    everyone = await policy.list_company_attendance(company.id)
    assert [v.record.user_id for v in everyone] == [bob.id, alice.id]
    assert everyone[0].total_break_minutes == 15.0
    assert everyone[0].employee_name == "Test Employee"

    present = await policy.list_company_attendance(company.id, status=STATUS_PRESENT)
    assert {v.record.user_id for v in present} == {alice.id, bob.id}

    late_only = await policy.list_company_attendance(company.id, status=STATUS_LATE)
    assert late_only == []

    yesterday = await policy.list_company_attendance(company.id, start=date(2024, 6, 2), end=date(2024, 6, 2))
    assert yesterday == []
