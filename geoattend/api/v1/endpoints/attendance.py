"""
Attendance endpoints — check-in / check-out, breaks, current status and the company listing.

- Check-in, check-out and breaks act on the authenticated user only.
- The company-wide listing requires manager privileges.
- Policy rejections are raised as ``AttendanceError`` and rendered by the
  global handlers with their code and context.
"""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query

from geoattend.api.v1.deps import (get_break_tracker, get_current_active_user,
                                   get_policy_engine, require_manager)
from geoattend.models.attendance import METHOD_MANUAL, STATUS_ON_BREAK
from geoattend.models.user import User
from geoattend.schemas.attendance import (AttendanceDetail,
                                          AttendanceRecordRead, BreakRead,
                                          CheckInRequest, CheckOutRequest,
                                          CompanyAttendanceResponse,
                                          CurrentAttendanceResponse)
from geoattend.services.breaks import BreakTracker
from geoattend.services.policy_engine import AttendancePolicyEngine

router = APIRouter(prefix="/attendance", tags=["attendance"])


@router.post("/check-in", response_model=AttendanceRecordRead, status_code=201)
async def check_in(
    body: CheckInRequest,
    user: User = Depends(get_current_active_user),
    engine: AttendancePolicyEngine = Depends(get_policy_engine),
):
    return await engine.check_in(
        user.id,
        user.company_id,
        location=body.location.to_coordinates() if body.location else None,
        method=METHOD_MANUAL,
        biometrics_proof=body.biometrics_proof,
    )


@router.post("/check-out", response_model=AttendanceRecordRead)
async def check_out(
    body: CheckOutRequest,
    user: User = Depends(get_current_active_user),
    engine: AttendancePolicyEngine = Depends(get_policy_engine),
):
    return await engine.check_out(
        user.id,
        user.company_id,
        body.attendance_id,
        location=body.location.to_coordinates() if body.location else None,
        method=METHOD_MANUAL,
        departure_reason=body.departure_reason,
        biometrics_proof=body.biometrics_proof,
    )


# ── Breaks ──────────────────────────────────────────────────────────
@router.post("/breaks/start", response_model=BreakRead, status_code=201)
async def start_break(
    user: User = Depends(get_current_active_user),
    tracker: BreakTracker = Depends(get_break_tracker),
):
    return await tracker.start_break(user.id, user.company_id)


@router.post("/breaks/end", response_model=BreakRead)
async def end_break(
    user: User = Depends(get_current_active_user),
    tracker: BreakTracker = Depends(get_break_tracker),
):
    return await tracker.end_break(user.id, user.company_id)


# ── Reads ───────────────────────────────────────────────────────────
@router.get("/current", response_model=CurrentAttendanceResponse)
async def current_attendance(
    user: User = Depends(get_current_active_user),
    engine: AttendancePolicyEngine = Depends(get_policy_engine),
) -> CurrentAttendanceResponse:
    """Today's latest record for the caller, with breaks and live break total."""
    view = await engine.current_attendance(user.id, user.company_id)
    if view is None:
        return CurrentAttendanceResponse(clocked_in=False, on_break=False)
    return CurrentAttendanceResponse(
        clocked_in=view.record.is_open,
        on_break=view.record.is_open and view.record.status == STATUS_ON_BREAK,
        attendance=AttendanceDetail.model_validate(view),
    )


@router.get("/company", response_model=CompanyAttendanceResponse)
async def company_attendance(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    manager: User = Depends(require_manager),
    engine: AttendancePolicyEngine = Depends(get_policy_engine),
) -> CompanyAttendanceResponse:
    """Company-wide records for a date range (defaults to today)."""
    views = await engine.list_company_attendance(
        manager.company_id,
        start=start_date,
        end=end_date,
        status=status,
        limit=limit,
        offset=offset,
    )
    return CompanyAttendanceResponse(
        start_date=start_date,
        end_date=end_date,
        count=len(views),
        records=[AttendanceDetail.model_validate(v) for v in views],
    )
