"""Composite wellness score.

Each metric is normalized to [0, 1] by its own rule, weighted, and summed.
Steps, sleep, activity and water are daily-progress metrics and always
count. Every other metric only counts when it has a reading; otherwise its
weight drops out of both the numerator and the denominator, so the score is
computed over the metrics actually populated. The result is rescaled to
0-100.

All thresholds live in `ScoringConfig` so they can be tuned without touching
the algorithm.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from .goals import Goals, progress_ratio
from .metrics import MetricsSnapshot
from .trend import TrendWindow


@dataclass(frozen=True)
class Band:
    """Full credit inside [low, high], fixed partial credit outside."""

    low: float
    high: float
    below: float
    above: float

    def credit(self, value: float) -> float:
        if value < self.low:
            return self.below
        if value > self.high:
            return self.above
        return 1.0


@dataclass(frozen=True)
class ScoringConfig:
    weights: dict[str, float] = field(
        default_factory=lambda: {
            "steps": 0.25,
            "sleep": 0.20,
            "activity": 0.15,
            "water": 0.15,
            "heart_rate": 0.10,
            "blood_pressure": 0.07,
            "oxygen": 0.05,
            "respiratory": 0.015,
            "temperature": 0.015,
        }
    )
    always_included: frozenset[str] = frozenset({"steps", "sleep", "activity", "water"})

    sleep_low_hours: float = 7.0
    sleep_high_hours: float = 9.0
    sleep_oversleep_floor: float = 0.5
    heart_rate: Band = Band(low=60, high=100, below=0.8, above=0.7)
    respiratory: Band = Band(low=12, high=20, below=0.7, above=0.7)
    temperature_f: Band = Band(low=97.0, high=99.5, below=0.7, above=0.7)

    bp_normal_systolic: int = 120
    bp_normal_diastolic: int = 80
    bp_elevated_systolic: int = 130
    bp_elevated_credit: float = 0.8
    bp_high_credit: float = 0.6

    oxygen_full_pct: float = 98.0
    oxygen_ok_pct: float = 95.0
    oxygen_ok_credit: float = 0.8
    oxygen_low_credit: float = 0.6

    excellent_threshold: int = 85
    good_threshold: int = 70
    fair_threshold: int = 50


DEFAULT_SCORING = ScoringConfig()


@dataclass(frozen=True)
class ScoreResult:
    score: int
    breakdown: dict[str, int]
    band: str

    def to_dict(self) -> dict:
        return {"score": self.score, "band": self.band, "breakdown": dict(self.breakdown)}


def sleep_credit(hours: float, cfg: ScoringConfig = DEFAULT_SCORING) -> float:
    if hours <= 0:
        return 0.0
    if hours < cfg.sleep_low_hours:
        return hours / cfg.sleep_low_hours
    if hours > cfg.sleep_high_hours:
        return max(cfg.sleep_oversleep_floor, cfg.sleep_high_hours / hours)
    return 1.0


def blood_pressure_credit(systolic: int, diastolic: int, cfg: ScoringConfig = DEFAULT_SCORING) -> float:
    if systolic < cfg.bp_normal_systolic and diastolic < cfg.bp_normal_diastolic:
        return 1.0
    if systolic < cfg.bp_elevated_systolic:
        return cfg.bp_elevated_credit
    return cfg.bp_high_credit


def oxygen_credit(pct: float, cfg: ScoringConfig = DEFAULT_SCORING) -> float:
    if pct >= cfg.oxygen_full_pct:
        return 1.0
    if pct >= cfg.oxygen_ok_pct:
        return cfg.oxygen_ok_credit
    return cfg.oxygen_low_credit


def _components(
    s: MetricsSnapshot, goals: Goals, cfg: ScoringConfig
) -> dict[str, tuple[bool, Callable[[], float]]]:
    # name -> (has data, normalizer)
    return {
        "steps": (s.steps > 0, lambda: progress_ratio(s.steps, goals.steps)),
        "sleep": (s.sleep_hours > 0, lambda: sleep_credit(s.sleep_hours, cfg)),
        "activity": (s.active_calories > 0, lambda: progress_ratio(s.active_calories, goals.active_calories)),
        "water": (s.water_intake_oz > 0, lambda: progress_ratio(s.water_intake_oz, goals.water_oz)),
        "heart_rate": (s.heart_rate_bpm > 0, lambda: cfg.heart_rate.credit(s.heart_rate_bpm)),
        "blood_pressure": (
            s.systolic_bp > 0 and s.diastolic_bp > 0,
            lambda: blood_pressure_credit(s.systolic_bp, s.diastolic_bp, cfg),
        ),
        "oxygen": (s.oxygen_saturation_pct > 0, lambda: oxygen_credit(s.oxygen_saturation_pct, cfg)),
        "respiratory": (s.respiratory_rate_per_min > 0, lambda: cfg.respiratory.credit(s.respiratory_rate_per_min)),
        "temperature": (s.body_temperature_f > 0, lambda: cfg.temperature_f.credit(s.body_temperature_f)),
    }


def score_band(score: int, cfg: ScoringConfig = DEFAULT_SCORING) -> str:
    if score >= cfg.excellent_threshold:
        return "excellent"
    if score >= cfg.good_threshold:
        return "good"
    if score >= cfg.fair_threshold:
        return "fair"
    return "needs_attention"


def score(
    snapshot: MetricsSnapshot,
    goals: Goals,
    trend: TrendWindow | None = None,
    config: ScoringConfig = DEFAULT_SCORING,
) -> ScoreResult:
    """Score `snapshot` against `goals`. Pure and deterministic.

    `trend` is accepted so callers can pass the full scoring context; the
    current formula only uses today's values.
    """
    numerator = 0.0
    denominator = 0.0
    breakdown: dict[str, int] = {}
    for name, (has_data, normalize) in _components(snapshot, goals, config).items():
        weight = config.weights.get(name, 0.0)
        if weight <= 0:
            continue
        if not has_data and name not in config.always_included:
            continue
        credit = max(0.0, min(1.0, normalize()))
        numerator += credit * weight
        denominator += weight
        breakdown[name] = int(round(credit * 100))

    value = int(round(100.0 * numerator / denominator)) if denominator > 0 else 0
    value = max(0, min(100, value))
    return ScoreResult(score=value, breakdown=breakdown, band=score_band(value, config))


def progress(snapshot: MetricsSnapshot, goals: Goals) -> dict[str, float]:
    """Progress ratio toward every goal, in [0, 1]."""
    return {
        "steps": progress_ratio(snapshot.steps, goals.steps),
        "water_oz": progress_ratio(snapshot.water_intake_oz, goals.water_oz),
        "active_calories": progress_ratio(snapshot.active_calories, goals.active_calories),
        "exercise_minutes": progress_ratio(snapshot.exercise_minutes, goals.exercise_minutes),
        "sleep_hours": progress_ratio(snapshot.sleep_hours, goals.sleep_hours),
        "dietary_calories": progress_ratio(snapshot.dietary_calories, goals.dietary_calories),
    }
