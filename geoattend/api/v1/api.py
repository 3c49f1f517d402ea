"""
V1 API router aggregator — wires all endpoint modules together.
"""

from fastapi import APIRouter

from geoattend.api.v1.endpoints import (analytics, attendance, auth, location,
                                        settings)

api_router = APIRouter()

# Auth (login, refresh, user management)
api_router.include_router(auth.router)

# Check-in / check-out, breaks, listings
api_router.include_router(attendance.router)

# Company policy, office locations, per-user overrides
api_router.include_router(settings.router)

# Location pings
api_router.include_router(location.router)

# Leaderboard & performance snapshots
api_router.include_router(analytics.router)
