from __future__ import annotations

import unittest
from datetime import date

from vitals.goals import Goals
from vitals.metrics import MetricsSnapshot
from vitals.scoring import (
    ScoringConfig,
    blood_pressure_credit,
    oxygen_credit,
    progress,
    score,
    score_band,
    sleep_credit,
)

DAY = date(2024, 3, 1)


def snap(**kw) -> MetricsSnapshot:
    return MetricsSnapshot(day=DAY, **kw)


class ScoreTests(unittest.TestCase):
    def test_typical_day_lands_in_good_band(self) -> None:
        s = snap(steps=12000, sleep_hours=8.0, heart_rate_bpm=72, water_intake_oz=40.0)
        result = score(s, Goals())
        self.assertEqual(result.score, 76)
        self.assertGreaterEqual(result.score, 70)
        self.assertEqual(result.band, "good")
        self.assertEqual(result.breakdown["steps"], 100)
        self.assertEqual(result.breakdown["sleep"], 100)
        self.assertEqual(result.breakdown["heart_rate"], 100)
        self.assertEqual(result.breakdown["activity"], 0)
        self.assertIn(result.breakdown["water"], (62, 63))

    def test_empty_snapshot_scores_zero(self) -> None:
        result = score(snap(), Goals())
        self.assertEqual(result.score, 0)
        self.assertEqual(result.band, "needs_attention")
        self.assertEqual(set(result.breakdown), {"steps", "sleep", "activity", "water"})

    def test_perfect_day_scores_100(self) -> None:
        s = snap(
            steps=10000,
            sleep_hours=8.0,
            active_calories=500,
            water_intake_oz=64.0,
            heart_rate_bpm=70,
            systolic_bp=110,
            diastolic_bp=70,
            oxygen_saturation_pct=99.0,
            respiratory_rate_per_min=14,
            body_temperature_f=98.6,
        )
        result = score(s, Goals())
        self.assertEqual(result.score, 100)
        self.assertEqual(result.band, "excellent")
        self.assertTrue(all(v == 100 for v in result.breakdown.values()))
        self.assertEqual(len(result.breakdown), 9)

    def test_unmeasured_vitals_are_excluded(self) -> None:
        only_steps = score(snap(steps=10000), Goals())
        # 0.25 / (0.25 + 0.20 + 0.15 + 0.15)
        self.assertEqual(only_steps.score, 33)
        self.assertNotIn("heart_rate", only_steps.breakdown)

        with_hr = score(snap(steps=10000, heart_rate_bpm=110), Goals())
        self.assertEqual(with_hr.score, 38)
        self.assertEqual(with_hr.breakdown["heart_rate"], 70)

    def test_score_respects_goals(self) -> None:
        s = snap(steps=5000)
        self.assertLess(score(s, Goals()).score, score(s, Goals(steps=5000)).score)

    def test_zero_goal_gives_full_credit(self) -> None:
        result = score(snap(), Goals(steps=0, active_calories=0, water_oz=0))
        self.assertEqual(result.breakdown["steps"], 100)
        self.assertEqual(result.breakdown["water"], 100)

    def test_score_always_within_bounds(self) -> None:
        extremes = [
            snap(),
            snap(steps=10**9, sleep_hours=30.0, active_calories=10**6, water_intake_oz=10**5),
            snap(heart_rate_bpm=250, systolic_bp=220, diastolic_bp=140, oxygen_saturation_pct=50.0),
        ]
        for s in extremes:
            r = score(s, Goals())
            self.assertGreaterEqual(r.score, 0)
            self.assertLessEqual(r.score, 100)

    def test_custom_weights(self) -> None:
        cfg = ScoringConfig(weights={"steps": 1.0})
        result = score(snap(steps=5000, heart_rate_bpm=72), Goals(), config=cfg)
        self.assertEqual(result.score, 50)
        self.assertEqual(result.band, "fair")
        self.assertEqual(list(result.breakdown), ["steps"])

    def test_to_dict(self) -> None:
        d = score(snap(steps=10000), Goals()).to_dict()
        self.assertEqual(set(d), {"score", "band", "breakdown"})


class NormalizerTests(unittest.TestCase):
    def test_sleep_credit(self) -> None:
        self.assertEqual(sleep_credit(0), 0.0)
        self.assertAlmostEqual(sleep_credit(3.5), 0.5)
        self.assertEqual(sleep_credit(7), 1.0)
        self.assertEqual(sleep_credit(9), 1.0)
        self.assertAlmostEqual(sleep_credit(12), 0.75)
        self.assertEqual(sleep_credit(20), 0.5)

    def test_blood_pressure_credit(self) -> None:
        self.assertEqual(blood_pressure_credit(118, 79), 1.0)
        self.assertEqual(blood_pressure_credit(125, 85), 0.8)
        self.assertEqual(blood_pressure_credit(140, 90), 0.6)

    def test_oxygen_credit(self) -> None:
        self.assertEqual(oxygen_credit(98), 1.0)
        self.assertEqual(oxygen_credit(96), 0.8)
        self.assertEqual(oxygen_credit(90), 0.6)

    def test_bands(self) -> None:
        self.assertEqual(score_band(85), "excellent")
        self.assertEqual(score_band(84), "good")
        self.assertEqual(score_band(70), "good")
        self.assertEqual(score_band(50), "fair")
        self.assertEqual(score_band(49), "needs_attention")


class ProgressTests(unittest.TestCase):
    def test_progress_per_goal(self) -> None:
        s = snap(steps=5000, water_intake_oz=64.0, exercise_minutes=45, sleep_hours=4.0)
        p = progress(s, Goals())
        self.assertEqual(p["steps"], 0.5)
        self.assertEqual(p["water_oz"], 1.0)
        self.assertEqual(p["exercise_minutes"], 1.0)
        self.assertEqual(p["sleep_hours"], 0.5)
        self.assertEqual(p["active_calories"], 0.0)


if __name__ == "__main__":
    unittest.main()
