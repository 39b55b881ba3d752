from __future__ import annotations

import importlib
import math
import os
import tempfile
import unittest


class GoalStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._tmp.name, "test_goals.db")
        self._old_db_path = os.environ.get("DB_PATH")
        os.environ["DB_PATH"] = self.db_path

        import vitals.db as db_mod
        importlib.reload(db_mod)
        import vitals.goals as goals_mod

        db_mod.init_db()
        self.goals_mod = goals_mod
        self.store = goals_mod.GoalStore()

    def tearDown(self) -> None:
        if self._old_db_path is None:
            os.environ.pop("DB_PATH", None)
        else:
            os.environ["DB_PATH"] = self._old_db_path
        self._tmp.cleanup()

    def test_defaults_when_nothing_stored(self) -> None:
        self.assertEqual(self.store.get_goal("steps"), 10000.0)
        self.assertEqual(self.store.get_goal("water_oz"), 64.0)
        goals = self.store.all_goals()
        self.assertEqual(goals.active_calories, 500.0)
        self.assertEqual(goals.exercise_minutes, 30.0)
        self.assertEqual(goals.sleep_hours, 8.0)

    def test_set_goal_is_visible_immediately(self) -> None:
        self.store.set_goal("steps", 8000)
        self.assertEqual(self.store.get_goal(self.goals_mod.GoalMetric.STEPS), 8000.0)
        self.assertEqual(self.store.all_goals().steps, 8000.0)

    def test_set_goal_persists_across_store_instances(self) -> None:
        self.store.set_goal("water_oz", 80)
        other = self.goals_mod.GoalStore()
        self.assertEqual(other.get_goal("water_oz"), 80.0)

    def test_invalid_values_keep_prior_goal(self) -> None:
        self.store.set_goal("steps", 9000)
        for bad in (-1, float("nan"), float("inf"), "abc", None, True):
            with self.assertRaises(self.goals_mod.InvalidGoalError):
                self.store.set_goal("steps", bad)
        self.assertEqual(self.store.get_goal("steps"), 9000.0)

    def test_invalid_goal_error_is_value_error(self) -> None:
        with self.assertRaises(ValueError):
            self.store.set_goal("steps", -5)

    def test_unknown_metric_rejected(self) -> None:
        with self.assertRaises(self.goals_mod.InvalidGoalError):
            self.store.get_goal("floors")
        with self.assertRaises(self.goals_mod.InvalidGoalError):
            self.store.set_goal("floors", 10)

    def test_zero_goal_allowed(self) -> None:
        self.assertEqual(self.store.set_goal("exercise_minutes", 0), 0.0)
        self.assertEqual(self.store.get_goal("exercise_minutes"), 0.0)

    def test_reset_goal_restores_default(self) -> None:
        self.store.set_goal("sleep_hours", 6)
        self.assertEqual(self.store.reset_goal("sleep_hours"), 8.0)
        self.assertEqual(self.store.get_goal("sleep_hours"), 8.0)


class ProgressRatioTests(unittest.TestCase):
    def test_ratio_is_capped_and_never_negative(self) -> None:
        from vitals.goals import progress_ratio

        self.assertEqual(progress_ratio(12000, 10000), 1.0)
        self.assertEqual(progress_ratio(5000, 10000), 0.5)
        self.assertEqual(progress_ratio(-10, 100), 0.0)

    def test_zero_goal_counts_as_met(self) -> None:
        from vitals.goals import progress_ratio

        self.assertEqual(progress_ratio(0, 0), 1.0)
        self.assertEqual(progress_ratio(123, 0), 1.0)

    def test_validate_goal(self) -> None:
        from vitals.goals import InvalidGoalError, validate_goal

        self.assertEqual(validate_goal("42.5"), 42.5)
        self.assertTrue(math.isfinite(validate_goal(0)))
        with self.assertRaises(InvalidGoalError):
            validate_goal([])


if __name__ == "__main__":
    unittest.main()
