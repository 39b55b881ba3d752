"""Value types shared by the source adapter, the aggregator and the scorers.

A `MetricsSnapshot` is immutable: the aggregator builds a new one for every
completed refresh and swaps the reference. Every numeric field has a sentinel
"unknown" default (0, or an empty mapping) so a snapshot can always be built,
even when no sub-query succeeded.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Union

from .db import LOCAL_TZ

LBS_PER_KG = 2.2046226218
INCHES_PER_METER = 39.3700787
ML_PER_FL_OZ = 29.5735


class MetricKind(str, Enum):
    STEPS = "steps"
    ACTIVE_CALORIES = "active_calories"
    DIETARY_CALORIES = "dietary_calories"
    HEART_RATE = "heart_rate"
    SLEEP = "sleep"
    WEIGHT = "weight"
    HEIGHT = "height"
    BLOOD_PRESSURE = "blood_pressure"
    OXYGEN_SATURATION = "oxygen_saturation"
    RESPIRATORY_RATE = "respiratory_rate"
    BODY_TEMPERATURE = "body_temperature"
    WATER = "water"
    EXERCISE_MINUTES = "exercise_minutes"
    WEEKLY_STEPS = "weekly_steps"


ALL_KINDS: frozenset[MetricKind] = frozenset(MetricKind)

# Kinds refreshed by the 60s timer; the 300s timer refreshes everything.
LIGHTWEIGHT_KINDS: frozenset[MetricKind] = frozenset(
    {
        MetricKind.STEPS,
        MetricKind.ACTIVE_CALORIES,
        MetricKind.DIETARY_CALORIES,
        MetricKind.HEART_RATE,
        MetricKind.WATER,
        MetricKind.EXERCISE_MINUTES,
    }
)

# Totals that restart every calendar day. A value from yesterday is never
# carried into today's snapshot.
DAILY_KINDS: frozenset[MetricKind] = frozenset(
    {
        MetricKind.STEPS,
        MetricKind.ACTIVE_CALORIES,
        MetricKind.DIETARY_CALORIES,
        MetricKind.SLEEP,
        MetricKind.WATER,
        MetricKind.EXERCISE_MINUTES,
    }
)

# Snapshot field(s) owned by each kind. The merge step only ever touches
# the fields listed here for a given kind.
KIND_FIELDS: dict[MetricKind, tuple[str, ...]] = {
    MetricKind.STEPS: ("steps",),
    MetricKind.ACTIVE_CALORIES: ("active_calories",),
    MetricKind.DIETARY_CALORIES: ("dietary_calories",),
    MetricKind.HEART_RATE: ("heart_rate_bpm",),
    MetricKind.SLEEP: ("sleep_hours",),
    MetricKind.WEIGHT: ("weight_lbs",),
    MetricKind.HEIGHT: ("height_inches",),
    MetricKind.BLOOD_PRESSURE: ("systolic_bp", "diastolic_bp"),
    MetricKind.OXYGEN_SATURATION: ("oxygen_saturation_pct",),
    MetricKind.RESPIRATORY_RATE: ("respiratory_rate_per_min",),
    MetricKind.BODY_TEMPERATURE: ("body_temperature_f",),
    MetricKind.WATER: ("water_intake_oz",),
    MetricKind.EXERCISE_MINUTES: ("exercise_minutes",),
    MetricKind.WEEKLY_STEPS: ("weekly_steps",),
}

INT_FIELDS = frozenset(
    {
        "steps",
        "active_calories",
        "dietary_calories",
        "heart_rate_bpm",
        "systolic_bp",
        "diastolic_bp",
        "respiratory_rate_per_min",
        "exercise_minutes",
    }
)


class AuthState(str, Enum):
    UNDETERMINED = "undetermined"
    AUTHORIZED = "authorized"
    DENIED = "denied"


@dataclass(frozen=True)
class Unavailable:
    """Explicit marker for a kind that produced no value in this fetch."""

    reason: str
    detail: str | None = None

    DENIED = "denied"
    NO_SAMPLES = "no_samples"
    ERROR = "error"
    TIMEOUT = "timeout"


# kind -> value (int, float, (systolic, diastolic) or {day: steps}) or Unavailable
PartialResult = dict[MetricKind, Union[Any, Unavailable]]


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    @classmethod
    def for_day(cls, day: date, now: datetime | None = None) -> "DateRange":
        start = datetime.combine(day, time.min, tzinfo=LOCAL_TZ)
        end = start + timedelta(days=1)
        if now is not None and now < end:
            end = now
        return cls(start=start, end=end)

    @classmethod
    def trailing_days(cls, day: date, n_days: int, now: datetime | None = None) -> "DateRange":
        """`n_days` calendar days ending with (and including) `day`."""
        today = cls.for_day(day, now)
        return cls(start=today.start - timedelta(days=n_days - 1), end=today.end)

    @classmethod
    def last_hours(cls, now: datetime, hours: float) -> "DateRange":
        return cls(start=now - timedelta(hours=hours), end=now)

    def contains(self, dt: datetime) -> bool:
        return self.start <= dt < self.end


@dataclass(frozen=True)
class MetricsSnapshot:
    day: date | None = None
    steps: int = 0
    active_calories: int = 0
    dietary_calories: int = 0
    heart_rate_bpm: int = 0
    sleep_hours: float = 0.0
    weight_lbs: float = 0.0
    height_inches: float = 0.0
    systolic_bp: int = 0
    diastolic_bp: int = 0
    oxygen_saturation_pct: float = 0.0
    respiratory_rate_per_min: int = 0
    body_temperature_f: float = 0.0
    water_intake_oz: float = 0.0
    exercise_minutes: int = 0
    weekly_steps: Mapping[date, int] = field(default_factory=dict)
    refreshed_at: datetime | None = None

    def __post_init__(self) -> None:
        ordered = dict(sorted(self.weekly_steps.items()))
        object.__setattr__(self, "weekly_steps", MappingProxyType(ordered))

    @property
    def bmi(self) -> float | None:
        if self.weight_lbs <= 0 or self.height_inches <= 0:
            return None
        meters = self.height_inches / INCHES_PER_METER
        kg = self.weight_lbs / LBS_PER_KG
        return kg / (meters * meters)

    @property
    def total_calories(self) -> int:
        return self.active_calories + self.dietary_calories

    def evolve(self, **changes: Any) -> "MetricsSnapshot":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        bmi = self.bmi
        return {
            "day": self.day.isoformat() if self.day else None,
            "steps": self.steps,
            "activeCalories": self.active_calories,
            "dietaryCalories": self.dietary_calories,
            "totalCalories": self.total_calories,
            "heartRateBpm": self.heart_rate_bpm,
            "sleepHours": round(self.sleep_hours, 2),
            "weightLbs": round(self.weight_lbs, 1),
            "heightInches": round(self.height_inches, 1),
            "bmi": round(bmi, 1) if bmi is not None else None,
            "systolicBP": self.systolic_bp,
            "diastolicBP": self.diastolic_bp,
            "oxygenSaturationPct": round(self.oxygen_saturation_pct, 1),
            "respiratoryRatePerMin": self.respiratory_rate_per_min,
            "bodyTemperatureF": round(self.body_temperature_f, 1),
            "waterIntakeOz": round(self.water_intake_oz, 1),
            "exerciseMinutes": self.exercise_minutes,
            "weeklySteps": [{"date": d.isoformat(), "steps": v} for d, v in self.weekly_steps.items()],
            "refreshedAt": self.refreshed_at.isoformat() if self.refreshed_at else None,
        }


SENTINELS: dict[str, Any] = {
    f.name: ({} if f.name == "weekly_steps" else f.default)
    for f in fields(MetricsSnapshot)
    if f.name not in ("day", "refreshed_at")
}


def _finite(value: Any) -> float:
    v = float(value)
    if not math.isfinite(v):
        raise ValueError(f"non-finite value: {value!r}")
    return v


def fields_for(kind: MetricKind, value: Any) -> dict[str, Any]:
    """Map one fetched value onto the snapshot fields owned by `kind`.

    Raises ValueError for values that cannot be stored, including NaN and
    infinities.
    """
    names = KIND_FIELDS[kind]
    if kind == MetricKind.WEEKLY_STEPS:
        return {"weekly_steps": {d: int(round(_finite(v))) for d, v in dict(value).items()}}
    if kind == MetricKind.BLOOD_PRESSURE:
        if isinstance(value, Mapping):
            systolic, diastolic = value.get("systolic", 0), value.get("diastolic", 0)
        else:
            systolic, diastolic = value
        return {"systolic_bp": int(round(_finite(systolic))), "diastolic_bp": int(round(_finite(diastolic)))}
    (name,) = names
    if name in INT_FIELDS:
        return {name: int(round(_finite(value)))}
    return {name: _finite(value)}


def sentinels_for(kind: MetricKind) -> dict[str, Any]:
    return {name: SENTINELS[name] for name in KIND_FIELDS[kind]}


def today_local(now: datetime | None = None) -> date:
    return (now or datetime.now(LOCAL_TZ)).astimezone(LOCAL_TZ).date()
