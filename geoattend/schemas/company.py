"""Pydantic schemas for company attendance policy, office locations and per-user overrides."""

from __future__ import annotations

import re
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d(:[0-5]\d)?$")


def _validate_weekdays(v: list[int] | None) -> list[int] | None:
    if v is None:
        return None
    days = sorted({int(d) for d in v})
    if any(d < 1 or d > 7 for d in days):
        raise ValueError("Weekdays must be ISO numbers 1 (Monday) to 7 (Sunday)")
    return days


# ── Company policy ──────────────────────────────────────────────────
class CompanyPolicyRead(BaseModel):
    id: int
    name: str
    timezone: str
    working_days: list[int] | None
    work_start_time: str
    work_end_time: str
    grace_period_minutes: int
    early_departure_threshold_minutes: int
    office_latitude: float | None
    office_longitude: float | None
    geofence_radius_meters: float
    require_geofence_for_clockin: bool
    multi_location_enabled: bool
    allow_remote_clockin: bool
    allow_remote_clockin_on_non_working_days: bool
    biometrics_required: bool
    auto_clockin_enabled: bool
    auto_clockout_enabled: bool
    breaks_enabled: bool
    notify_early_departure: bool
    attendance_weight: float
    task_completion_weight: float

    model_config = {"from_attributes": True}


class CompanyPolicyUpdate(BaseModel):
    timezone: str | None = None
    working_days: list[int] | None = None
    work_start_time: str | None = None
    work_end_time: str | None = None
    grace_period_minutes: int | None = Field(default=None, ge=0, le=240)
    early_departure_threshold_minutes: int | None = Field(default=None, ge=0, le=480)
    office_latitude: float | None = Field(default=None, ge=-90, le=90)
    office_longitude: float | None = Field(default=None, ge=-180, le=180)
    geofence_radius_meters: float | None = Field(default=None, gt=0, le=50_000)
    require_geofence_for_clockin: bool | None = None
    multi_location_enabled: bool | None = None
    allow_remote_clockin: bool | None = None
    allow_remote_clockin_on_non_working_days: bool | None = None
    biometrics_required: bool | None = None
    auto_clockin_enabled: bool | None = None
    auto_clockout_enabled: bool | None = None
    breaks_enabled: bool | None = None
    notify_early_departure: bool | None = None
    attendance_weight: float | None = Field(default=None, ge=0)
    task_completion_weight: float | None = Field(default=None, ge=0)

    @field_validator("timezone")
    @classmethod
    def _timezone(cls, v: str | None) -> str | None:
        if v is None:
            return None
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone {v!r}")
        return v

    @field_validator("work_start_time", "work_end_time")
    @classmethod
    def _time_of_day(cls, v: str | None) -> str | None:
        if v is not None and not _TIME_RE.match(v):
            raise ValueError("Time must be HH:MM or HH:MM:SS")
        return v

    @field_validator("working_days")
    @classmethod
    def _working_days(cls, v: list[int] | None) -> list[int] | None:
        days = _validate_weekdays(v)
        if days is not None and not days:
            raise ValueError("At least one working day is required")
        return days


# ── Office locations ────────────────────────────────────────────────
class CompanyLocationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    radius_meters: float = Field(default=100, gt=0, le=50_000)


class CompanyLocationRead(BaseModel):
    id: int
    name: str
    latitude: float
    longitude: float
    radius_meters: float
    is_active: bool
    created_at: datetime | None

    model_config = {"from_attributes": True}


# ── Per-user overrides ──────────────────────────────────────────────
class UserAttendanceSettingsRead(BaseModel):
    user_id: int
    allow_remote_clockin: bool = False
    remote_work_days: list[int] | None = None
    allow_multi_location_clockin: bool = False
    allow_multiple_clockins_per_day: bool = False
    last_location_verified_at: datetime | None = None

    model_config = {"from_attributes": True}


class UserAttendanceSettingsUpdate(BaseModel):
    allow_remote_clockin: bool | None = None
    remote_work_days: list[int] | None = None
    allow_multi_location_clockin: bool | None = None
    allow_multiple_clockins_per_day: bool | None = None

    @field_validator("remote_work_days")
    @classmethod
    def _remote_days(cls, v: list[int] | None) -> list[int] | None:
        return _validate_weekdays(v)
