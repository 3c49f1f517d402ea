"""
Company policy endpoints — admin-configurable attendance rules, office locations
and per-employee attendance overrides.

Everything is scoped to the admin's own company.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from geoattend.api.v1.deps import get_db, require_admin
from geoattend.core.exceptions import CompanyNotFound
from geoattend.models.company import Company, CompanyLocation
from geoattend.models.notification import AuditLog
from geoattend.models.user import User, UserAttendanceSettings
from geoattend.schemas.company import (CompanyLocationCreate,
                                       CompanyLocationRead, CompanyPolicyRead,
                                       CompanyPolicyUpdate,
                                       UserAttendanceSettingsRead,
                                       UserAttendanceSettingsUpdate)

router = APIRouter(prefix="/settings", tags=["settings"])
logger = logging.getLogger(__name__)


async def _company(db: AsyncSession, company_id: int) -> Company:
    company = await db.get(Company, company_id)
    if company is None:
        raise CompanyNotFound(company_id=company_id)
    return company


# ── Company policy ──────────────────────────────────────────────────
@router.get("/company", response_model=CompanyPolicyRead)
async def get_company_policy(
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> Company:
    """Get the attendance policy of the admin's company."""
    return await _company(db, admin.company_id)


@router.put("/company", response_model=CompanyPolicyRead)
async def update_company_policy(
    body: CompanyPolicyUpdate,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> Company:
    """Update work hours, geofence, remote-work rules, automation toggles or KPI weights."""
    company = await _company(db, admin.company_id)
    changes = body.model_dump(exclude_unset=True)

    for field, value in changes.items():
        setattr(company, field, value)

    db.add(
        AuditLog(
            company_id=company.id,
            user_id=admin.id,
            action="POLICY_UPDATED",
            entity_type="company",
            entity_id=company.id,
            details=changes,
        )
    )
    await db.commit()
    await db.refresh(company)
    logger.info("Company %s policy updated: %s", company.id, sorted(changes))
    return company


# ── Office locations ────────────────────────────────────────────────
@router.get("/locations", response_model=list[CompanyLocationRead])
async def list_locations(
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> list[CompanyLocation]:
    result = await db.execute(
        select(CompanyLocation)
        .where(CompanyLocation.company_id == admin.company_id)
        .order_by(CompanyLocation.id)
    )
    return list(result.scalars().all())


@router.post("/locations", response_model=CompanyLocationRead, status_code=201)
async def create_location(
    body: CompanyLocationCreate,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> CompanyLocation:
    location = CompanyLocation(company_id=admin.company_id, **body.model_dump())
    db.add(location)
    await db.commit()
    await db.refresh(location)
    logger.info("Location %s added to company %s", location.id, admin.company_id)
    return location


@router.delete("/locations/{location_id}", response_model=CompanyLocationRead)
async def deactivate_location(
    location_id: int,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> CompanyLocation:
    """Locations are deactivated, never deleted; records keep pointing at them."""
    location = await db.get(CompanyLocation, location_id)
    if location is None or location.company_id != admin.company_id:
        raise HTTPException(status_code=404, detail="Location not found")
    location.is_active = False
    await db.commit()
    await db.refresh(location)
    return location


# ── Per-user overrides ──────────────────────────────────────────────
async def _company_user(db: AsyncSession, user_id: int, company_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None or user.company_id != company_id or user.deleted_at is not None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("/users/{user_id}", response_model=UserAttendanceSettingsRead)
async def get_user_settings(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> UserAttendanceSettingsRead:
    await _company_user(db, user_id, admin.company_id)
    row = await db.get(UserAttendanceSettings, user_id)
    if row is None:
        return UserAttendanceSettingsRead(user_id=user_id)
    return UserAttendanceSettingsRead.model_validate(row)


@router.put("/users/{user_id}", response_model=UserAttendanceSettingsRead)
async def update_user_settings(
    user_id: int,
    body: UserAttendanceSettingsUpdate,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> UserAttendanceSettings:
    """Remote work, multi-location and multiple-clock-in overrides for one employee."""
    await _company_user(db, user_id, admin.company_id)
    row = await db.get(UserAttendanceSettings, user_id)
    if row is None:
        row = UserAttendanceSettings(user_id=user_id)
        db.add(row)

    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(row, field, value)

    await db.commit()
    await db.refresh(row)
    logger.info("Attendance settings updated for user %s by %s", user_id, admin.id)
    return row
