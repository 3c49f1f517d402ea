"""
Attendance domain errors and global exception handlers.

Every policy rejection raised by the services is an ``AttendanceError``
carrying a stable ``code`` and enough ``context`` (distance, minutes, ...)
for the client to explain the rejection. The FastAPI handlers below render
them without leaking stack traces.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

logger = logging.getLogger(__name__)


# ── Domain errors ───────────────────────────────────────────────────
class AttendanceError(Exception):
    """Base class for caller-visible attendance rejections."""

    code: str = "ATTENDANCE_ERROR"
    status_code: int = 400
    default_message: str = "Attendance request rejected"

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "detail": self.message,
            "code": self.code,
            "context": self.context,
            "success": False,
        }


# Configuration errors: an admin must fix the company setup.
class CompanyNotFound(AttendanceError):
    code = "COMPANY_NOT_FOUND"
    status_code = 404
    default_message = "Company not found"


class GeofenceNotConfigured(AttendanceError):
    code = "GEOFENCE_NOT_CONFIGURED"
    status_code = 409
    default_message = (
        "Office location is not configured for geofence validation. "
        "Please contact your administrator."
    )


# Policy rejections: expected business outcomes.
class InvalidUser(AttendanceError):
    code = "INVALID_USER"
    status_code = 403
    default_message = "User not found, inactive or not part of this company"


class InvalidLocation(AttendanceError):
    code = "INVALID_LOCATION"
    status_code = 422
    default_message = "Location coordinates are invalid"


class BiometricRequired(AttendanceError):
    code = "BIOMETRIC_REQUIRED"
    status_code = 401
    default_message = "Biometric verification required"


class AutoDisabled(AttendanceError):
    code = "AUTO_DISABLED"
    status_code = 403
    default_message = "Auto check-in is disabled for this company"


class AlreadyClockedIn(AttendanceError):
    code = "ALREADY_CLOCKED_IN"
    status_code = 409
    default_message = "Already clocked in today"


class NotAWorkingDay(AttendanceError):
    code = "NOT_A_WORKING_DAY"
    status_code = 403
    default_message = (
        "Today is not a working day according to company policy. "
        "Please contact your administrator if you need to work today."
    )


class OutsideGeofence(AttendanceError):
    code = "OUTSIDE_GEOFENCE"
    status_code = 403
    default_message = "You must be within the geofence to check in"


class RecordNotFound(AttendanceError):
    code = "RECORD_NOT_FOUND"
    status_code = 404
    default_message = "Attendance record not found"


class AlreadyCheckedOut(AttendanceError):
    code = "ALREADY_CHECKED_OUT"
    status_code = 409
    default_message = "Already checked out"


class NotClockedIn(AttendanceError):
    code = "NOT_CLOCKED_IN"
    status_code = 409
    default_message = "You must be clocked in to start a break"


class BreaksNotEnabled(AttendanceError):
    code = "BREAKS_NOT_ENABLED"
    status_code = 403
    default_message = "Breaks are not enabled for this company"


class BreakAlreadyActive(AttendanceError):
    code = "BREAK_ALREADY_ACTIVE"
    status_code = 409
    default_message = "You are already on a break"


class NoActiveBreak(AttendanceError):
    code = "NO_ACTIVE_BREAK"
    status_code = 409
    default_message = "No active break found"


# ── HTTP handlers ───────────────────────────────────────────────────
async def _attendance_error_handler(_request: Request, exc: AttendanceError) -> JSONResponse:
    logger.info("Attendance rejection %s: %s", exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _http_exception_handler(_request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "success": False},
        headers=getattr(exc, "headers", None),
    )


async def _integrity_error_handler(_request: Request, exc: IntegrityError) -> JSONResponse:
    logger.error("Database integrity error: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=409,
        content={"detail": "Database constraint violation", "success": False},
    )


async def _sqlalchemy_error_handler(_request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Database error: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal database error", "success": False},
    )


async def _generic_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "success": False},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI app."""
    app.add_exception_handler(AttendanceError, _attendance_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(IntegrityError, _integrity_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(SQLAlchemyError, _sqlalchemy_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _generic_exception_handler)
