"""
Pure KPI scoring functions used by the performance aggregator.

All scores are clamped to ``[0, 100]`` and then truncated to whole points.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

DEFAULT_ATTENDANCE_WEIGHT = 40.0
DEFAULT_TASK_WEIGHT = 60.0

TIER_DIAMOND = "Diamond"
TIER_GOLD = "Gold"
TIER_SILVER = "Silver"
TIER_BRONZE = "Bronze"


@dataclass(frozen=True)
class AttendanceStats:
    present_days: int = 0
    late_days: int = 0
    early_days: int = 0
    excess_late_minutes: int = 0


@dataclass(frozen=True)
class TaskStats:
    due_total: int = 0
    completed_on_time: int = 0
    completed_late: int = 0
    overdue_open: int = 0


def clamp(value: float) -> float:
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return max(0.0, min(100.0, value))


def truncate(value: float) -> int:
    return int(math.floor(clamp(value)))


def normalize_weights(attendance: float | None, task: float | None) -> tuple[float, float]:
    """Weights as fractions of their sum; 50/50 when the sum is not positive."""
    attendance = DEFAULT_ATTENDANCE_WEIGHT if attendance is None else float(attendance)
    task = DEFAULT_TASK_WEIGHT if task is None else float(task)
    total = attendance + task
    if total <= 0:
        return 0.5, 0.5
    return attendance / total, task / total


def attendance_score(stats: AttendanceStats, expected_days: int) -> float:
    base = stats.present_days / expected_days * 100 if expected_days > 0 else 0.0
    late_penalty = stats.late_days * 5 + stats.excess_late_minutes // 10
    early_penalty = stats.early_days * 2
    return clamp(base - late_penalty - early_penalty)


def task_score(stats: TaskStats) -> float | None:
    if stats.due_total <= 0:
        return None
    base = stats.completed_on_time / stats.due_total * 100
    penalty = stats.completed_late * 5 + stats.overdue_open * 10
    return clamp(base - penalty)


def overall_score(
    attendance: float,
    task: float | None,
    expected_days: int,
    weights: tuple[float, float],
) -> float:
    if expected_days <= 0 and task is None:
        return 0.0
    if task is None:
        return clamp(attendance)
    if expected_days <= 0:
        return clamp(task)
    return clamp(attendance * weights[0] + task * weights[1])


def dense_rank(scores: Iterable[tuple[int, float]]) -> list[tuple[int, float, int]]:
    """Rank ``(user_id, score)`` pairs.

    Ordered by score descending then user id ascending; equal scores share
    a rank and the next distinct score takes the following one.
    """
    ordered = sorted(scores, key=lambda pair: (-pair[1], pair[0]))
    ranked: list[tuple[int, float, int]] = []
    rank = 0
    previous: float | None = None
    for user_id, score in ordered:
        if score != previous:
            rank += 1
            previous = score
        ranked.append((user_id, score, rank))
    return ranked


def rank_tier(rank_position: int) -> str:
    if rank_position == 1:
        return TIER_DIAMOND
    if rank_position == 2:
        return TIER_GOLD
    if rank_position == 3:
        return TIER_SILVER
    return TIER_BRONZE


def score_tier(score: float) -> str:
    if score >= 90:
        return TIER_DIAMOND
    if score >= 80:
        return TIER_GOLD
    if score >= 60:
        return TIER_SILVER
    return TIER_BRONZE


def tier_for(rule: str, rank_position: int, score: float) -> str:
    return rank_tier(rank_position) if rule == "rank" else score_tier(score)
