"""Pydantic schemas for leaderboards and performance snapshots."""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel


class LeaderboardEntry(BaseModel):
    user_id: int
    name: str
    attendance_score: int
    task_completion_score: int | None
    overall_score: int
    rank_position: int
    tier: str
    present_days: int
    late_days: int
    tasks_due: int

    model_config = {"from_attributes": True}


class LeaderboardResponse(BaseModel):
    company_id: int
    window_start: date
    window_end: date
    expected_days: int
    entries: list[LeaderboardEntry]


class SnapshotRead(BaseModel):
    user_id: int
    date: date
    period_type: str
    attendance_score: float
    task_completion_score: float | None
    overall_score: float
    tier: str
    rank_position: int

    model_config = {"from_attributes": True}


class SnapshotRunResponse(BaseModel):
    company_id: int
    snapshots_written: int
