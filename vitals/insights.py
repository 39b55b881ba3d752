"""Rule-based insights over (snapshot, goals, trend).

Every rule is a pure function returning at most one `Insight`. Rules never
look at each other's output, so evaluation order only affects the tie order
of the final list, never which insights are produced.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from .goals import Goals, progress_ratio
from .metrics import MetricsSnapshot
from .trend import TrendWindow


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


class InsightKind(str, Enum):
    ACHIEVEMENT = "achievement"
    RECOMMENDATION = "recommendation"
    TREND = "trend"
    WARNING = "warning"


@dataclass(frozen=True)
class Insight:
    title: str
    message: str
    icon_tag: str
    color_tag: str
    priority: Priority = Priority.NORMAL
    kind: InsightKind = InsightKind.RECOMMENDATION
    key: str = ""

    def to_dict(self) -> dict:
        d = asdict(self)
        return {
            "key": d["key"],
            "kind": self.kind.value,
            "title": d["title"],
            "message": d["message"],
            "iconTag": d["icon_tag"],
            "colorTag": d["color_tag"],
            "priority": self.priority.value,
        }


Rule = Callable[[MetricsSnapshot, Goals, TrendWindow], Optional[Insight]]

AVERAGE_DEVIATION = 0.20
TREND_CHANGE = 0.15
ALMOST_THERE = 0.8
LOW_PROGRESS = 0.5


def _pct(x: float) -> int:
    return int(round(x * 100))


def steps_goal(s: MetricsSnapshot, goals: Goals, trend: TrendWindow) -> Insight | None:
    if s.steps <= 0:
        return None
    ratio = progress_ratio(s.steps, goals.steps)
    if ratio >= 1.0:
        return Insight(
            title="Steps Goal Achieved!",
            message=f"You've reached your daily step goal of {int(goals.steps)} steps. Great job staying active!",
            icon_tag="figure.walk",
            color_tag="green",
            priority=Priority.HIGH,
            kind=InsightKind.ACHIEVEMENT,
            key="steps_goal",
        )
    if ratio >= ALMOST_THERE:
        remaining = max(0, int(goals.steps) - s.steps)
        return Insight(
            title="Almost There!",
            message=(
                f"Your step goal is {_pct(1.0 - ratio)}% away. "
                f"Just {remaining} more steps to reach it!"
            ),
            icon_tag="figure.walk",
            color_tag="orange",
            key="steps_goal",
        )
    if ratio < LOW_PROGRESS:
        return Insight(
            title="Boost Your Activity",
            message=f"You've taken {s.steps} steps today. Try a short walk to increase your activity level.",
            icon_tag="figure.walk",
            color_tag="blue",
            key="steps_goal",
        )
    return None


def steps_vs_average(s: MetricsSnapshot, goals: Goals, trend: TrendWindow) -> Insight | None:
    avg = trend.average()
    if avg <= 0 or s.steps <= 0:
        return None
    delta = (s.steps - avg) / avg
    if delta <= -AVERAGE_DEVIATION:
        return Insight(
            title="Below Your Weekly Average",
            message=(
                f"Today's steps are {_pct(-delta)}% below your 7-day average "
                f"of {int(round(avg))}. A short walk can close the gap."
            ),
            icon_tag="chart.bar",
            color_tag="orange",
            kind=InsightKind.TREND,
            key="steps_vs_average",
        )
    if delta >= AVERAGE_DEVIATION:
        return Insight(
            title="Above Your Weekly Average",
            message=f"Today's steps are {_pct(delta)}% above your 7-day average of {int(round(avg))}.",
            icon_tag="chart.bar",
            color_tag="green",
            kind=InsightKind.TREND,
            key="steps_vs_average",
        )
    return None


def weekly_trend(s: MetricsSnapshot, goals: Goals, trend: TrendWindow) -> Insight | None:
    ratio = trend.change_ratio()
    if ratio is None:
        return None
    if ratio > 1.0 + TREND_CHANGE:
        return Insight(
            title="Activity Trend: Upward",
            message=f"Your average daily steps have increased by {_pct(ratio - 1.0)}% this week. Keep it up!",
            icon_tag="chart.line.uptrend.xyaxis",
            color_tag="green",
            priority=Priority.HIGH,
            kind=InsightKind.TREND,
            key="weekly_trend",
        )
    if ratio < 1.0 - TREND_CHANGE:
        return Insight(
            title="Activity Decreasing",
            message=(
                "Your step count has decreased recently. "
                "Consider adding a daily walk to maintain your activity level."
            ),
            icon_tag="chart.line.downtrend.xyaxis",
            color_tag="orange",
            kind=InsightKind.WARNING,
            key="weekly_trend",
        )
    return None


def sleep(s: MetricsSnapshot, goals: Goals, trend: TrendWindow) -> Insight | None:
    h = s.sleep_hours
    if h <= 0:
        return None
    if 7 <= h <= 9:
        return Insight(
            title="Great Sleep Last Night",
            message=f"You got {h:.1f} hours of sleep. This is within the recommended 7-9 hour range for adults.",
            icon_tag="bed.double.fill",
            color_tag="green",
            priority=Priority.HIGH,
            kind=InsightKind.ACHIEVEMENT,
            key="sleep",
        )
    if h < 6:
        return Insight(
            title="Insufficient Sleep",
            message=f"You got only {h:.1f} hours of sleep. Aim for 7-9 hours for optimal health.",
            icon_tag="bed.double.fill",
            color_tag="orange",
            priority=Priority.HIGH,
            kind=InsightKind.WARNING,
            key="sleep",
        )
    if h > 10:
        return Insight(
            title="Excessive Sleep",
            message=(
                f"You slept {h:.1f} hours. While rest is important, "
                "too much sleep may indicate underlying issues."
            ),
            icon_tag="bed.double.fill",
            color_tag="blue",
            key="sleep",
        )
    return None


def heart_rate(s: MetricsSnapshot, goals: Goals, trend: TrendWindow) -> Insight | None:
    bpm = s.heart_rate_bpm
    if bpm <= 0:
        return None
    if bpm > 100:
        return Insight(
            title="Elevated Heart Rate",
            message=f"Your heart rate is {bpm} bpm. If this persists at rest, consider consulting a healthcare provider.",
            icon_tag="heart.fill",
            color_tag="orange",
            priority=Priority.HIGH,
            kind=InsightKind.WARNING,
            key="heart_rate",
        )
    if bpm < 60:
        return Insight(
            title="Low Resting Heart Rate",
            message=f"Your resting heart rate is {bpm} bpm. This is low and may indicate good cardiovascular fitness.",
            icon_tag="heart.fill",
            color_tag="green",
            key="heart_rate",
        )
    return Insight(
        title="Healthy Heart Rate",
        message=f"Your resting heart rate of {bpm} bpm is within the normal range (60-100 bpm).",
        icon_tag="heart.fill",
        color_tag="green",
        kind=InsightKind.ACHIEVEMENT,
        key="heart_rate",
    )


def active_calories(s: MetricsSnapshot, goals: Goals, trend: TrendWindow) -> Insight | None:
    kcal = s.active_calories
    if kcal <= 0:
        return None
    if kcal >= 600:
        return Insight(
            title="Active Day!",
            message=f"You've burned {kcal} active calories today. Your body is getting great movement!",
            icon_tag="flame.fill",
            color_tag="orange",
            kind=InsightKind.ACHIEVEMENT,
            key="active_calories",
        )
    if kcal < 300:
        return Insight(
            title="Increase Movement",
            message="Try to increase your daily activity. Even a 10-minute walk can help boost your active calorie burn.",
            icon_tag="figure.walk",
            color_tag="blue",
            key="active_calories",
        )
    return None


def hydration(s: MetricsSnapshot, goals: Goals, trend: TrendWindow) -> Insight | None:
    oz = s.water_intake_oz
    if oz <= 0:
        return None
    ratio = progress_ratio(oz, goals.water_oz)
    if ratio >= 1.0:
        return Insight(
            title="Hydration Goal Met!",
            message=f"You've consumed {oz:.1f} oz of water today. Excellent hydration!",
            icon_tag="drop.fill",
            color_tag="cyan",
            kind=InsightKind.ACHIEVEMENT,
            key="hydration",
        )
    if ratio < LOW_PROGRESS:
        return Insight(
            title="Stay Hydrated",
            message=f"You're at {_pct(ratio)}% of your hydration goal. Try drinking more water throughout the day.",
            icon_tag="drop.fill",
            color_tag="blue",
            key="hydration",
        )
    return None


def exercise_goal(s: MetricsSnapshot, goals: Goals, trend: TrendWindow) -> Insight | None:
    if s.exercise_minutes <= 0 or progress_ratio(s.exercise_minutes, goals.exercise_minutes) < 1.0:
        return None
    return Insight(
        title="Exercise Goal Met",
        message=f"You logged {s.exercise_minutes} minutes of exercise today, meeting your {int(goals.exercise_minutes)}-minute goal.",
        icon_tag="figure.run",
        color_tag="green",
        kind=InsightKind.ACHIEVEMENT,
        key="exercise_goal",
    )


def blood_pressure(s: MetricsSnapshot, goals: Goals, trend: TrendWindow) -> Insight | None:
    if s.systolic_bp <= 0 or s.diastolic_bp <= 0:
        return None
    if s.systolic_bp < 130 and s.diastolic_bp < 80:
        return None
    return Insight(
        title="Elevated Blood Pressure",
        message=(
            f"Your latest reading is {s.systolic_bp}/{s.diastolic_bp} mmHg. "
            "Recheck at rest and talk to a healthcare provider if it stays high."
        ),
        icon_tag="waveform.path.ecg",
        color_tag="red",
        priority=Priority.HIGH,
        kind=InsightKind.WARNING,
        key="blood_pressure",
    )


def oxygen(s: MetricsSnapshot, goals: Goals, trend: TrendWindow) -> Insight | None:
    pct = s.oxygen_saturation_pct
    if pct <= 0 or pct >= 95:
        return None
    return Insight(
        title="Low Blood Oxygen",
        message=f"Your blood oxygen reading is {pct:.0f}%. Levels below 95% are worth discussing with a healthcare provider.",
        icon_tag="lungs.fill",
        color_tag="red",
        priority=Priority.HIGH,
        kind=InsightKind.WARNING,
        key="oxygen",
    )


def sleep_activity_balance(s: MetricsSnapshot, goals: Goals, trend: TrendWindow) -> Insight | None:
    if not 7 <= s.sleep_hours <= 9:
        return None
    if s.steps <= 0 or s.steps < goals.steps * ALMOST_THERE:
        return None
    return Insight(
        title="Great Balance!",
        message=(
            "You're maintaining a healthy balance of sleep and activity. "
            "This combination supports overall wellness."
        ),
        icon_tag="star.fill",
        color_tag="purple",
        priority=Priority.HIGH,
        kind=InsightKind.ACHIEVEMENT,
        key="sleep_activity_balance",
    )


def activity_intake_balance(s: MetricsSnapshot, goals: Goals, trend: TrendWindow) -> Insight | None:
    if s.active_calories < 500 or s.dietary_calories <= 0:
        return None
    if s.active_calories / s.dietary_calories <= 0.3:
        return None
    return Insight(
        title="Active Lifestyle",
        message="Your activity level is well-matched with your calorie intake. Keep maintaining this balance!",
        icon_tag="figure.run",
        color_tag="green",
        kind=InsightKind.TREND,
        key="activity_intake_balance",
    )


RULES: tuple[Rule, ...] = (
    steps_goal,
    steps_vs_average,
    weekly_trend,
    sleep,
    heart_rate,
    active_calories,
    hydration,
    exercise_goal,
    blood_pressure,
    oxygen,
    sleep_activity_balance,
    activity_intake_balance,
)


def generate_insights(
    snapshot: MetricsSnapshot,
    goals: Goals,
    trend: TrendWindow,
    rules: Iterable[Rule] = RULES,
) -> list[Insight]:
    found = [i for i in (rule(snapshot, goals, trend) for rule in rules) if i is not None]
    # stable: rule order is kept within a priority
    return sorted(found, key=lambda i: i.priority != Priority.HIGH)


async def generate_insights_async(
    snapshot: MetricsSnapshot,
    goals: Goals,
    trend: TrendWindow,
    rules: Iterable[Rule] = RULES,
) -> list[Insight]:
    # rules are cheap; yield once so callers never run them inline with a publish
    await asyncio.sleep(0)
    return generate_insights(snapshot, goals, trend, rules)
