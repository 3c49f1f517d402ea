"""Tests for the break sub-state of an open attendance record."""

from datetime import datetime, timedelta, timezone

import pytest

from geoattend.core.exceptions import (BreakAlreadyActive, BreaksNotEnabled,
                                       NoActiveBreak, NotClockedIn)
from geoattend.models.attendance import AttendanceBreak
from geoattend.services.breaks import break_minutes, total_break_minutes
from support import OFFICE, north_of

INSIDE = north_of(OFFICE, 10)
T0 = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


def test_break_minutes_rounds_to_two_decimals():
    """Durations are fractional minutes, rounded to 0.01."""
    assert break_minutes(T0, T0 + timedelta(seconds=90)) == 1.5
    assert break_minutes(T0, T0 + timedelta(seconds=100)) == 1.67
    assert break_minutes(T0, T0 - timedelta(minutes=5)) == 0.0


def test_break_minutes_accepts_naive_utc():
    """Naive timestamps read back from SQLite are treated as UTC."""
    assert break_minutes(T0.replace(tzinfo=None), T0 + timedelta(minutes=10)) == 10.0


def test_total_break_minutes_open_breaks():
    """Open breaks only count in the live total."""
    closed = AttendanceBreak(start_time=T0, end_time=T0 + timedelta(minutes=15), duration_minutes=15.0)
    open_ = AttendanceBreak(start_time=T0 + timedelta(minutes=30))
    now = T0 + timedelta(minutes=40)
    assert total_break_minutes([closed, open_]) == 15.0
    assert total_break_minutes([closed, open_], include_open=True, now=now) == 25.0


@pytest.mark.asyncio
async def test_break_requires_clock_in(policy, employee):
    """Starting a break without an open record is refused."""
    with pytest.raises(NotClockedIn):
        await policy.breaks.start_break(employee.id, employee.company_id)
    with pytest.raises(NoActiveBreak):
        await policy.breaks.end_break(employee.id, employee.company_id)


@pytest.mark.asyncio
async def test_breaks_disabled(policy, make_company, make_user):
    """Companies can switch breaks off."""
    company = await make_company(breaks_enabled=False)
    worker = await make_user(company)
    await policy.check_in(worker.id, company.id, INSIDE)
    with pytest.raises(BreaksNotEnabled):
        await policy.breaks.start_break(worker.id, company.id)


@pytest.mark.asyncio
async def test_break_cycle(policy, employee, clock):
    """start -> on_break, end -> present, duration stored."""
    await policy.check_in(employee.id, employee.company_id, INSIDE)
    clock.set(hour=12)
    brk = await policy.breaks.start_break(employee.id, employee.company_id)
    assert brk.end_time is None

    with pytest.raises(BreakAlreadyActive):
        await policy.breaks.start_break(employee.id, employee.company_id)

    clock.set(hour=12, minute=30, second=30)
    ended = await policy.breaks.end_break(employee.id, employee.company_id)
    assert ended.id == brk.id
    assert ended.duration_minutes == 30.5

    view = await policy.current_attendance(employee.id, employee.company_id)
    assert view.record.status == "present"
    assert view.total_break_minutes == 30.5

    with pytest.raises(NoActiveBreak):
        await policy.breaks.end_break(employee.id, employee.company_id)


@pytest.mark.asyncio
async def test_breaks_for_groups_in_one_query(policy, make_user, company, clock):
    """Breaks of several records come back keyed by record id."""
    alice = await make_user(company)
    bob = await make_user(company)
    a = await policy.check_in(alice.id, company.id, INSIDE)
    b = await policy.check_in(bob.id, company.id, INSIDE)
    for minute in (0, 20):
        clock.set(hour=10, minute=minute)
        await policy.breaks.start_break(alice.id, company.id)
        clock.set(hour=10, minute=minute + 5)
        await policy.breaks.end_break(alice.id, company.id)

    grouped = await policy.breaks.breaks_for([a.id, b.id])
    assert [brk.duration_minutes for brk in grouped[a.id]] == [5.0, 5.0]
    assert grouped[b.id] == []
    assert await policy.breaks.breaks_for([]) == {}
