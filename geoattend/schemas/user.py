"""Pydantic schemas for company users."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, field_validator

ROLES = ("owner", "admin", "manager", "employee")
# Owners are seeded with the company, never created over the API
_CREATABLE_ROLES = {"admin", "manager", "employee"}


class UserCreate(BaseModel):
    email: str
    password: str
    full_name: str | None = None
    role: str = "employee"

    @field_validator("role")
    @classmethod
    def _validate_role(cls, v: str) -> str:
        if v not in _CREATABLE_ROLES:
            raise ValueError(f"Role must be one of: {sorted(_CREATABLE_ROLES)}")
        return v

    @field_validator("email")
    @classmethod
    def _normalise_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v

    @field_validator("password")
    @classmethod
    def _password_length(cls, v: str) -> str:
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        return v


class UserRead(BaseModel):
    id: int
    company_id: int
    email: str
    full_name: str | None
    role: str
    is_active: bool
    created_at: datetime | None

    model_config = {"from_attributes": True}
