"""
Analytics endpoints — live leaderboard and stored performance snapshots.
"""

from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from geoattend.api.v1.deps import (get_aggregator, get_db, require_admin,
                                   require_manager)
from geoattend.models.performance import PerformanceSnapshot
from geoattend.models.user import User
from geoattend.schemas.performance import (LeaderboardEntry,
                                           LeaderboardResponse, SnapshotRead,
                                           SnapshotRunResponse)
from geoattend.services.performance import PerformanceSnapshotAggregator

router = APIRouter(prefix="/analytics", tags=["analytics"])
logger = logging.getLogger(__name__)


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def leaderboard(
    manager: User = Depends(require_manager),
    aggregator: PerformanceSnapshotAggregator = Depends(get_aggregator),
) -> LeaderboardResponse:
    """Scores computed now over the rolling window; nothing is stored."""
    computed = await aggregator.live_leaderboard(manager.company_id)
    if computed is None:
        raise HTTPException(status_code=404, detail="Company not found")
    return LeaderboardResponse(
        company_id=computed.company_id,
        window_start=computed.window_start,
        window_end=computed.window_end,
        expected_days=computed.expected_days,
        entries=[LeaderboardEntry.model_validate(s) for s in computed.scores],
    )


@router.get("/snapshots", response_model=list[SnapshotRead])
async def list_snapshots(
    snapshot_date: date | None = Query(default=None, alias="date"),
    db: AsyncSession = Depends(get_db),
    manager: User = Depends(require_manager),
) -> list[PerformanceSnapshot]:
    """Stored daily snapshots, latest date by default, ordered by rank."""
    if snapshot_date is None:
        snapshot_date = (
            await db.execute(
                select(func.max(PerformanceSnapshot.date)).where(
                    PerformanceSnapshot.company_id == manager.company_id
                )
            )
        ).scalar_one_or_none()
        if snapshot_date is None:
            return []

    result = await db.execute(
        select(PerformanceSnapshot)
        .where(
            PerformanceSnapshot.company_id == manager.company_id,
            PerformanceSnapshot.date == snapshot_date,
        )
        .order_by(PerformanceSnapshot.rank_position, PerformanceSnapshot.user_id)
    )
    return list(result.scalars().all())


@router.post("/snapshots/run", response_model=SnapshotRunResponse)
async def run_snapshots(
    admin: User = Depends(require_admin),
    aggregator: PerformanceSnapshotAggregator = Depends(get_aggregator),
) -> SnapshotRunResponse:
    """Recompute today's snapshot for the admin's company on demand."""
    written = await aggregator.compute_company_snapshots(admin.company_id)
    logger.info("Manual snapshot run for company %s by %s", admin.company_id, admin.id)
    return SnapshotRunResponse(company_id=admin.company_id, snapshots_written=written)
