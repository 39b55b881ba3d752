from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any

from .db import db, now_iso

logger = logging.getLogger(__name__)


class GoalMetric(str, Enum):
    STEPS = "steps"
    WATER_OZ = "water_oz"
    ACTIVE_CALORIES = "active_calories"
    EXERCISE_MINUTES = "exercise_minutes"
    SLEEP_HOURS = "sleep_hours"
    DIETARY_CALORIES = "dietary_calories"


DEFAULT_GOALS: dict[GoalMetric, float] = {
    GoalMetric.STEPS: 10000.0,
    GoalMetric.WATER_OZ: 64.0,
    GoalMetric.ACTIVE_CALORIES: 500.0,
    GoalMetric.EXERCISE_MINUTES: 30.0,
    GoalMetric.SLEEP_HOURS: 8.0,
    GoalMetric.DIETARY_CALORIES: 2000.0,
}


class InvalidGoalError(ValueError):
    pass


@dataclass(frozen=True)
class Goals:
    """Point-in-time copy of every goal, as read by the scorer and the rules."""

    steps: float = DEFAULT_GOALS[GoalMetric.STEPS]
    water_oz: float = DEFAULT_GOALS[GoalMetric.WATER_OZ]
    active_calories: float = DEFAULT_GOALS[GoalMetric.ACTIVE_CALORIES]
    exercise_minutes: float = DEFAULT_GOALS[GoalMetric.EXERCISE_MINUTES]
    sleep_hours: float = DEFAULT_GOALS[GoalMetric.SLEEP_HOURS]
    dietary_calories: float = DEFAULT_GOALS[GoalMetric.DIETARY_CALORIES]

    def get(self, metric: GoalMetric) -> float:
        return float(getattr(self, metric.value))

    def to_dict(self) -> dict[str, float]:
        return {f.name: float(getattr(self, f.name)) for f in fields(self)}


def progress_ratio(measured: float, goal: float) -> float:
    """Fraction of `goal` reached, capped at 1.0. A zero goal counts as met."""
    if goal <= 0:
        return 1.0
    return max(0.0, min(1.0, float(measured) / float(goal)))


def parse_metric(metric: Any) -> GoalMetric:
    if isinstance(metric, GoalMetric):
        return metric
    try:
        return GoalMetric(str(metric))
    except ValueError as exc:
        raise InvalidGoalError(f"Unknown goal metric: {metric}") from exc


def validate_goal(value: Any) -> float:
    if isinstance(value, bool):
        raise InvalidGoalError(f"Invalid goal value: {value!r}")
    try:
        v = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidGoalError(f"Invalid goal value: {value!r}") from exc
    if not math.isfinite(v) or v < 0:
        raise InvalidGoalError(f"Goal must be a finite number >= 0, got {value!r}")
    return v


class GoalStore:
    """Per-metric targets persisted in the `goals` table.

    Unset metrics read as their default. Invalid writes raise
    `InvalidGoalError` and leave the stored goal untouched.
    """

    def __init__(self, path: str | None = None) -> None:
        self.path = path
        self._lock = threading.Lock()

    def get_goal(self, metric: GoalMetric | str) -> float:
        m = parse_metric(metric)
        with self._lock, db(self.path) as conn:
            row = conn.execute("SELECT value FROM goals WHERE metric = ?", (m.value,)).fetchone()
        return float(row["value"]) if row else DEFAULT_GOALS[m]

    def set_goal(self, metric: GoalMetric | str, value: Any) -> float:
        m = parse_metric(metric)
        v = validate_goal(value)
        with self._lock, db(self.path) as conn:
            conn.execute(
                """
                INSERT INTO goals(metric, value, updated_at)
                VALUES(?, ?, ?)
                ON CONFLICT(metric) DO UPDATE SET
                  value=excluded.value,
                  updated_at=excluded.updated_at
                """,
                (m.value, v, now_iso()),
            )
        logger.info("Goal %s set to %s", m.value, v)
        return v

    def reset_goal(self, metric: GoalMetric | str) -> float:
        m = parse_metric(metric)
        with self._lock, db(self.path) as conn:
            conn.execute("DELETE FROM goals WHERE metric = ?", (m.value,))
        return DEFAULT_GOALS[m]

    def all_goals(self) -> Goals:
        with self._lock, db(self.path) as conn:
            rows = conn.execute("SELECT metric, value FROM goals").fetchall()
        stored = {}
        for r in rows:
            try:
                stored[GoalMetric(r["metric"]).value] = float(r["value"])
            except ValueError:
                logger.warning("Ignoring unknown goal row: %s", r["metric"])
        return Goals(**stored)
