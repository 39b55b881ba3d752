from __future__ import annotations

import importlib
import os
import tempfile
import unittest
from datetime import datetime, time, timezone

from fastapi.testclient import TestClient


class MainEndpointsTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._tmp.name, "test_main_endpoints.db")
        self._old_db_path = os.environ.get("DB_PATH")
        self._old_api_key = os.environ.get("API_KEY")
        os.environ["DB_PATH"] = self.db_path
        os.environ["API_KEY"] = "test-api-key"

        import vitals.db as db_mod
        importlib.reload(db_mod)
        db_mod.init_db()
        self.db_mod = db_mod

        import vitals.main as main_mod
        importlib.reload(main_mod)
        self.main_mod = main_mod

        self.client_ctx = TestClient(main_mod.app)
        self.client = self.client_ctx.__enter__()
        self.headers = {"X-Api-Key": "test-api-key"}

    def tearDown(self) -> None:
        self.client_ctx.__exit__(None, None, None)
        if self._old_db_path is None:
            os.environ.pop("DB_PATH", None)
        else:
            os.environ["DB_PATH"] = self._old_db_path

        if self._old_api_key is None:
            os.environ.pop("API_KEY", None)
        else:
            os.environ["API_KEY"] = self._old_api_key

        self._tmp.cleanup()

    def sync_payload(self, records: list[dict], permissions: list[str] | None = None) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        body = {
            "deviceId": "pixel-8",
            "syncId": f"sync-{len(records)}-{now}",
            "syncedAt": now,
            "rangeStart": now,
            "rangeEnd": now,
            "records": records,
        }
        if permissions is not None:
            body["grantedPermissions"] = permissions
        return body

    def start_of_today(self) -> str:
        local_midnight = datetime.combine(datetime.now(self.db_mod.LOCAL_TZ).date(), time.min, tzinfo=self.db_mod.LOCAL_TZ)
        return local_midnight.isoformat()

    def refresh(self) -> dict:
        r = self.client.post("/api/refresh", headers=self.headers)
        self.assertEqual(r.status_code, 200)
        return r.json()

    def test_requires_api_key(self) -> None:
        r = self.client.get("/api/snapshot")
        self.assertEqual(r.status_code, 401)
        r = self.client.get("/api/snapshot", headers={"X-Api-Key": "wrong"})
        self.assertEqual(r.status_code, 401)
        r = self.client.get("/api/snapshot", headers={"X-Api-Key": "test-api-key-longer"})
        self.assertEqual(r.status_code, 401)
        self.assertEqual(r.json()["detail"], "Invalid or missing X-Api-Key")

    def test_unset_api_key_refuses_everything(self) -> None:
        os.environ.pop("API_KEY", None)
        r = self.client.get("/api/snapshot", headers=self.headers)
        self.assertEqual(r.status_code, 500)
        self.assertIn("API_KEY not set", r.json()["detail"])

    def test_status_before_any_sync(self) -> None:
        r = self.client.get("/api/status", headers=self.headers)
        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["totalRecords"], 0)
        self.assertEqual(body["authorization"], "undetermined")
        self.assertEqual(body["viewers"], 0)

    def test_sync_then_snapshot_score_and_insights(self) -> None:
        start = self.start_of_today()
        records = [
            {"type": "StepsRecord", "recordId": "s1", "source": "com.phone", "startTime": start, "endTime": start, "payload": {"count": 4200}},
            {"type": "HeartRateRecord", "recordId": "h1", "source": "com.watch", "time": start, "payload": {"beatsPerMinute": 66}},
        ]
        r = self.client.post(
            "/api/sync",
            headers=self.headers,
            json=self.sync_payload(records, ["android.permission.health.READ_STEPS"]),
        )
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["upsertedCount"], 2)
        self.assertEqual(r.json()["authorization"], "authorized")

        availability = self.refresh()["availability"]
        self.assertEqual(availability["steps"], "ok")
        self.assertEqual(availability["heart_rate"], "denied")

        snap = self.client.get("/api/snapshot", headers=self.headers).json()
        self.assertEqual(snap["steps"], 4200)
        self.assertEqual(snap["heartRateBpm"], 0)

        score = self.client.get("/api/score", headers=self.headers).json()
        self.assertTrue(0 <= score["score"] <= 100)
        self.assertIn("steps", score["breakdown"])

        insights = self.client.get("/api/insights", params={"fresh": "true"}, headers=self.headers).json()
        self.assertIn("steps_goal", [i["key"] for i in insights])

        auth = self.client.get("/api/authorization", headers=self.headers).json()
        self.assertEqual(auth["state"], "authorized")
        self.assertEqual(auth["grantedKinds"], ["steps", "weekly_steps"])

        trend = self.client.get("/api/trend", headers=self.headers).json()
        self.assertEqual(len(trend["days"]), 7)
        self.assertEqual(trend["days"][-1]["steps"], 4200)

    def test_resync_is_idempotent(self) -> None:
        start = self.start_of_today()
        records = [{"type": "StepsRecord", "recordId": "s1", "source": "com.phone", "startTime": start, "payload": {"count": 100}}]
        body = self.sync_payload(records)
        self.client.post("/api/sync", headers=self.headers, json=body)
        self.client.post("/api/sync", headers=self.headers, json=body)
        status = self.client.get("/api/status", headers=self.headers).json()
        self.assertEqual(status["totalRecords"], 1)
        self.assertEqual(status["lastSyncId"], body["syncId"])

    def test_manual_logging(self) -> None:
        r = self.client.post("/api/water", headers=self.headers, json={"amountOz": 16})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(len(r.json()["recordKeys"]), 1)

        r = self.client.post("/api/meals", headers=self.headers, json={"name": "Lunch", "calories": 650})
        self.assertEqual(r.status_code, 200)

        r = self.client.post("/api/body", headers=self.headers, json={})
        self.assertEqual(r.status_code, 400)
        r = self.client.post("/api/body", headers=self.headers, json={"weightLbs": 180, "heightInches": 70})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(len(r.json()["recordKeys"]), 2)

        r = self.client.post("/api/water", headers=self.headers, json={"amountOz": -3})
        self.assertEqual(r.status_code, 422)

        self.refresh()
        snap = self.client.get("/api/snapshot", headers=self.headers).json()
        self.assertAlmostEqual(snap["waterIntakeOz"], 16.0)
        self.assertEqual(snap["dietaryCalories"], 650)
        self.assertAlmostEqual(snap["weightLbs"], 180.0)
        self.assertIsNotNone(snap["bmi"])

        progress = self.client.get("/api/progress", headers=self.headers).json()
        self.assertAlmostEqual(progress["water_oz"], 0.25)

    def test_goal_endpoints(self) -> None:
        goals = self.client.get("/api/goals", headers=self.headers).json()
        self.assertEqual(goals["steps"], 10000.0)

        r = self.client.put("/api/goals/steps", headers=self.headers, json={"value": 8000})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json(), {"metric": "steps", "value": 8000.0})
        self.assertEqual(self.client.get("/api/goals/steps", headers=self.headers).json()["value"], 8000.0)

        r = self.client.put("/api/goals/steps", headers=self.headers, json={"value": -5})
        self.assertEqual(r.status_code, 400)
        self.assertEqual(self.client.get("/api/goals/steps", headers=self.headers).json()["value"], 8000.0)

        r = self.client.put("/api/goals/floors", headers=self.headers, json={"value": 10})
        self.assertEqual(r.status_code, 404)

        r = self.client.delete("/api/goals/steps", headers=self.headers)
        self.assertEqual(r.json()["value"], 10000.0)

    def test_goal_change_reschedules_insights(self) -> None:
        self.refresh()
        core = self.main_mod.core
        gen = core._insight_gen
        r = self.client.put("/api/goals/water_oz", headers=self.headers, json={"value": 80})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(core._insight_gen, gen + 1)
        self.assertEqual(core.get_goal("water_oz"), 80.0)

        r = self.client.delete("/api/goals/water_oz", headers=self.headers)
        self.assertEqual(r.status_code, 200)
        self.assertEqual(core._insight_gen, gen + 2)

        # a rejected goal leaves insights alone
        self.client.put("/api/goals/water_oz", headers=self.headers, json={"value": -1})
        self.assertEqual(core._insight_gen, gen + 2)

    def test_refresh_rejects_unknown_kind(self) -> None:
        r = self.client.post("/api/refresh", headers=self.headers, json={"kinds": ["mood"]})
        self.assertEqual(r.status_code, 400)

    def test_refresh_reports_unreachable_source(self) -> None:
        from vitals.source import StaticSource

        self.refresh()
        self.main_mod.core.aggregator.source = StaticSource(reachable=False)
        r = self.client.post("/api/refresh", headers=self.headers, json={"kinds": ["steps"]})
        self.assertEqual(r.status_code, 503)
        # previous snapshot still served
        self.assertEqual(self.client.get("/api/snapshot", headers=self.headers).status_code, 200)

    def test_session_visibility(self) -> None:
        r = self.client.post("/api/session/foreground", headers=self.headers)
        self.assertEqual(r.json()["viewers"], 1)
        r = self.client.post("/api/session/background", headers=self.headers)
        self.assertEqual(r.json(), {"viewers": 0, "timersRunning": False})

    def test_request_authorization(self) -> None:
        r = self.client.post("/api/authorization", headers=self.headers)
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["state"], "undetermined")


if __name__ == "__main__":
    unittest.main()
