"""Pydantic schemas for check-in / check-out, breaks and attendance listings."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field, field_validator

from geoattend.services.geo import Coordinates


# ── Location ────────────────────────────────────────────────────────
class LocationIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)

    def to_coordinates(self) -> Coordinates:
        return Coordinates(self.latitude, self.longitude)


# ── Check-in / out ──────────────────────────────────────────────────
class CheckInRequest(BaseModel):
    location: LocationIn | None = None
    biometrics_proof: str | None = None


class CheckOutRequest(BaseModel):
    attendance_id: int
    location: LocationIn | None = None
    departure_reason: str | None = Field(default=None, max_length=500)
    biometrics_proof: str | None = None

    @field_validator("departure_reason")
    @classmethod
    def _strip_reason(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None


# ── Records ─────────────────────────────────────────────────────────
class BreakRead(BaseModel):
    id: int
    attendance_record_id: int
    start_time: datetime
    end_time: datetime | None
    duration_minutes: float | None

    model_config = {"from_attributes": True}


class AttendanceRecordRead(BaseModel):
    id: int
    user_id: int
    company_id: int
    local_date: date
    session_seq: int
    clock_in_time: datetime
    clock_out_time: datetime | None
    clock_in_distance_meters: float | None
    clock_out_distance_meters: float | None
    is_within_geofence: bool | None
    location_id: int | None
    location_name: str | None
    status: str
    is_late_arrival: bool
    minutes_late: int
    is_early_departure: bool
    minutes_early: int
    departure_reason: str | None
    duration_minutes: int | None
    overtime_minutes: int | None
    check_in_method: str
    check_out_method: str | None

    model_config = {"from_attributes": True}


class AttendanceDetail(BaseModel):
    record: AttendanceRecordRead
    breaks: list[BreakRead] = Field(default_factory=list)
    total_break_minutes: float = 0.0
    employee_name: str | None = None

    model_config = {"from_attributes": True}


class CurrentAttendanceResponse(BaseModel):
    clocked_in: bool
    on_break: bool
    attendance: AttendanceDetail | None = None


class CompanyAttendanceResponse(BaseModel):
    start_date: date | None
    end_date: date | None
    count: int
    records: list[AttendanceDetail]
