"""
Location endpoints — device ping ingest and the periodic location verification.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from geoattend.api.v1.deps import get_current_active_user, get_location_service
from geoattend.models.user import User
from geoattend.schemas.location import PingRequest, PingResponse, VerificationStatus
from geoattend.services.location import LocationPingService

router = APIRouter(prefix="/location", tags=["location"])


@router.post("/ping", response_model=PingResponse, status_code=201)
async def ingest_ping(
    body: PingRequest,
    user: User = Depends(get_current_active_user),
    service: LocationPingService = Depends(get_location_service),
):
    return await service.record_ping(
        user.id,
        user.company_id,
        body.latitude,
        body.longitude,
        accuracy=body.accuracy,
        permission_state=body.permission_state,
    )


@router.get("/verification", response_model=VerificationStatus)
async def verification_status(
    user: User = Depends(get_current_active_user),
    service: LocationPingService = Depends(get_location_service),
) -> VerificationStatus:
    return VerificationStatus(
        verification_required=await service.is_location_verification_required(user.id)
    )


@router.post("/verification", response_model=VerificationStatus)
async def mark_verified(
    user: User = Depends(get_current_active_user),
    service: LocationPingService = Depends(get_location_service),
) -> VerificationStatus:
    row = await service.mark_location_verified(user.id)
    return VerificationStatus(
        verification_required=False,
        last_location_verified_at=row.last_location_verified_at,
    )
