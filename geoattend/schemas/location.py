"""Pydantic schemas for device location pings."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from geoattend.models.location_ping import PERMISSION_STATES


class PingRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: float | None = Field(default=None, ge=0)
    permission_state: str = "granted"

    @field_validator("permission_state")
    @classmethod
    def _permission(cls, v: str) -> str:
        if v not in PERMISSION_STATES:
            raise ValueError(f"permission_state must be one of: {sorted(PERMISSION_STATES)}")
        return v


class PingResponse(BaseModel):
    id: int
    is_inside_geofence: bool | None
    distance_meters: float | None
    created_at: datetime | None

    model_config = {"from_attributes": True}


class VerificationStatus(BaseModel):
    verification_required: bool
    last_location_verified_at: datetime | None = None
