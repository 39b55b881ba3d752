from __future__ import annotations

import asyncio
import json
import logging
import math
import sqlite3
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from .db import LOCAL_TZ, db, dumps_payload, iso, now_iso
from .metrics import (
    INCHES_PER_METER,
    LBS_PER_KG,
    ML_PER_FL_OZ,
    AuthState,
    DateRange,
    MetricKind,
    PartialResult,
    Unavailable,
)

logger = logging.getLogger(__name__)

MANUAL_SOURCE = "manual"
LOCAL_DEVICE_ID = "local"

RECORD_TYPES: dict[MetricKind, str] = {
    MetricKind.STEPS: "StepsRecord",
    MetricKind.WEEKLY_STEPS: "StepsRecord",
    MetricKind.ACTIVE_CALORIES: "ActiveCaloriesBurnedRecord",
    MetricKind.DIETARY_CALORIES: "NutritionRecord",
    MetricKind.HEART_RATE: "HeartRateRecord",
    MetricKind.SLEEP: "SleepSessionRecord",
    MetricKind.WEIGHT: "WeightRecord",
    MetricKind.HEIGHT: "HeightRecord",
    MetricKind.BLOOD_PRESSURE: "BloodPressureRecord",
    MetricKind.OXYGEN_SATURATION: "OxygenSaturationRecord",
    MetricKind.RESPIRATORY_RATE: "RespiratoryRateRecord",
    MetricKind.BODY_TEMPERATURE: "BodyTemperatureRecord",
    MetricKind.WATER: "HydrationRecord",
    MetricKind.EXERCISE_MINUTES: "ExerciseSessionRecord",
}

# Health Connect read permissions -> kinds they unlock
PERMISSION_KINDS: dict[str, tuple[MetricKind, ...]] = {
    "READ_STEPS": (MetricKind.STEPS, MetricKind.WEEKLY_STEPS),
    "READ_ACTIVE_CALORIES_BURNED": (MetricKind.ACTIVE_CALORIES,),
    "READ_NUTRITION": (MetricKind.DIETARY_CALORIES,),
    "READ_HEART_RATE": (MetricKind.HEART_RATE,),
    "READ_SLEEP": (MetricKind.SLEEP,),
    "READ_WEIGHT": (MetricKind.WEIGHT,),
    "READ_HEIGHT": (MetricKind.HEIGHT,),
    "READ_BLOOD_PRESSURE": (MetricKind.BLOOD_PRESSURE,),
    "READ_OXYGEN_SATURATION": (MetricKind.OXYGEN_SATURATION,),
    "READ_RESPIRATORY_RATE": (MetricKind.RESPIRATORY_RATE,),
    "READ_BODY_TEMPERATURE": (MetricKind.BODY_TEMPERATURE,),
    "READ_HYDRATION": (MetricKind.WATER,),
    "READ_EXERCISE": (MetricKind.EXERCISE_MINUTES,),
}

WRITABLE_KINDS = frozenset(
    {MetricKind.WATER, MetricKind.DIETARY_CALORIES, MetricKind.WEIGHT, MetricKind.HEIGHT}
)


class SourceUnavailableError(Exception):
    """The provider as a whole could not be reached. Recoverable."""


class MetricSource(ABC):
    """Contract for an external biometric provider.

    `fetch` answers every requested kind with either a value or an
    `Unavailable` marker; it only raises `SourceUnavailableError` when the
    provider cannot be reached at all.
    """

    @abstractmethod
    def authorization_status(self) -> AuthState: ...

    @abstractmethod
    async def request_authorization(self) -> AuthState: ...

    @abstractmethod
    async def fetch(self, kinds: Iterable[MetricKind], rng: DateRange) -> PartialResult: ...


def parse_permissions(raw: Iterable[str]) -> set[MetricKind]:
    """Accept kind names ("steps") or Health Connect permission strings."""
    out: set[MetricKind] = set()
    for item in raw:
        name = str(item).strip()
        try:
            kind = MetricKind(name.lower())
        except ValueError:
            kinds = PERMISSION_KINDS.get(name.rsplit(".", 1)[-1].upper())
            if kinds:
                out.update(kinds)
            continue
        out.add(kind)
        if kind == MetricKind.STEPS:
            out.add(MetricKind.WEEKLY_STEPS)
    return out


def record_permissions(conn: sqlite3.Connection, device_id: str, raw: Iterable[str]) -> set[MetricKind]:
    kinds = parse_permissions(raw)
    ts = now_iso()
    conn.execute("DELETE FROM granted_permissions")
    for kind in sorted(kinds, key=lambda k: k.value):
        conn.execute(
            "INSERT INTO granted_permissions(kind, granted_at) VALUES(?,?)",
            (kind.value, ts),
        )
    conn.execute(
        "INSERT INTO permission_reports(device_id, granted_count, reported_at) VALUES(?,?,?)",
        (device_id, len(kinds), ts),
    )
    return kinds


# ---------------------------------------------------------------------------
# Record extraction helpers
# ---------------------------------------------------------------------------


def _parse_iso(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _local_day(dt: datetime) -> date:
    return dt.astimezone(LOCAL_TZ).date()


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        n = float(value)
    except (ValueError, OverflowError):
        return None
    # "inf", "nan" and "1e400" parse but are not measurements
    return n if math.isfinite(n) else None


def _find_number(obj: Any, key_candidates: set[str], max_depth: int = 6) -> float | None:
    def rec(x: Any, depth: int) -> float | None:
        if depth > max_depth:
            return None
        if isinstance(x, dict):
            # direct hit
            for k, v in x.items():
                if k in key_candidates:
                    n = _to_float(v)
                    if n is not None:
                        return n
            # dive
            for v in x.values():
                hit = rec(v, depth + 1)
                if hit is not None:
                    return hit
        if isinstance(x, list):
            for v in x:
                hit = rec(v, depth + 1)
                if hit is not None:
                    return hit
        return None

    return rec(obj, 0)


def _to_percent(v: float | None) -> float | None:
    if v is None:
        return None
    # Some sources send percentage as 0-1, others as 0-100.
    if 0 <= v <= 1.2:
        return v * 100.0
    return v


def _collapse_sources(by_source: Mapping[str, float]) -> float | None:
    """Avoid double counting when the same metric is mirrored by multiple sources.

    Device sources mirror each other, so only the largest one counts. Entries
    logged through this service are never mirrored and are added on top.
    """
    if not by_source:
        return None
    manual = by_source.get(MANUAL_SOURCE, 0.0)
    mirrored = [v for k, v in by_source.items() if k != MANUAL_SOURCE]
    return manual + (max(mirrored) if mirrored else 0.0)


def _merged_interval_minutes(intervals: list[tuple[datetime, datetime]]) -> float:
    if not intervals:
        return 0.0
    normalized = sorted(intervals, key=lambda x: x[0])
    cur_start, cur_end = normalized[0]
    total_sec = 0.0
    for st, et in normalized[1:]:
        if st <= cur_end:
            if et > cur_end:
                cur_end = et
        else:
            total_sec += max(0.0, (cur_end - cur_start).total_seconds())
            cur_start, cur_end = st, et
    total_sec += max(0.0, (cur_end - cur_start).total_seconds())
    return total_sec / 60.0


def _rows(conn: sqlite3.Connection, record_type: str) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT start_time, end_time, time, source, payload_json FROM health_records WHERE type=?",
        (record_type,),
    ).fetchall()


def _point_time(r: sqlite3.Row) -> datetime | None:
    return _parse_iso(r["time"]) or _parse_iso(r["end_time"]) or _parse_iso(r["start_time"])


def _sum_by_source(
    rows: Iterable[sqlite3.Row],
    rng: DateRange,
    extract: Callable[[dict[str, Any]], float | None],
) -> dict[str, float]:
    out: dict[str, float] = defaultdict(float)
    for r in rows:
        dt = _parse_iso(r["start_time"]) or _point_time(r)
        if not dt or not rng.contains(dt):
            continue
        n = extract(json.loads(r["payload_json"]))
        if n is None:
            continue
        out[r["source"] or "unknown"] += n
    return dict(out)


def _latest(
    rows: Iterable[sqlite3.Row],
    rng: DateRange,
    extract: Callable[[dict[str, Any]], Any],
) -> Any:
    best: tuple[datetime, Any] | None = None
    for r in rows:
        payload = json.loads(r["payload_json"])
        samples = payload.get("samples")
        if isinstance(samples, list) and samples:
            default_dt = _point_time(r)
            points = [
                (_parse_iso(s.get("time")) or default_dt, s) for s in samples if isinstance(s, dict)
            ]
        else:
            points = [(_point_time(r), payload)]
        for dt, obj in points:
            if not dt or not rng.contains(dt):
                continue
            v = extract(obj)
            if v is None:
                continue
            if best is None or dt > best[0]:
                best = (dt, v)
    return best[1] if best else None


def _interval_minutes_by_source(rows: Iterable[sqlite3.Row], rng: DateRange) -> dict[str, float]:
    intervals: dict[str, list[tuple[datetime, datetime]]] = defaultdict(list)
    for r in rows:
        st = _parse_iso(r["start_time"])
        et = _parse_iso(r["end_time"])
        if not st or not et or et <= st:
            continue
        if et <= rng.start or st >= rng.end:
            continue
        intervals[r["source"] or "unknown"].append((max(st, rng.start), min(et, rng.end)))
    return {k: _merged_interval_minutes(v) for k, v in intervals.items()}


def _kcal(payload: dict[str, Any]) -> float | None:
    return _find_number(payload, {"inKilocalories", "kilocalories", "kcal"})


def _water_oz(payload: dict[str, Any]) -> float | None:
    ml = _find_number(payload, {"inMilliliters", "milliliters", "ml"})
    if ml is not None:
        return ml / ML_PER_FL_OZ
    liters = _find_number(payload, {"inLiters", "liters"})
    if liters is not None:
        return liters * 1000.0 / ML_PER_FL_OZ
    return _find_number(payload, {"inFluidOuncesUs", "fluidOuncesUs", "fl_oz"})


def _weight_lbs(payload: dict[str, Any]) -> float | None:
    kg = _find_number(payload, {"inKilograms", "kilograms", "kg"})
    if kg is not None:
        return kg * LBS_PER_KG
    return _find_number(payload, {"inPounds", "pounds", "lbs"})


def _height_inches(payload: dict[str, Any]) -> float | None:
    m = _find_number(payload, {"inMeters", "meters"})
    if m is not None:
        return m * INCHES_PER_METER
    return _find_number(payload, {"inInches", "inches"})


def _temperature_f(payload: dict[str, Any]) -> float | None:
    c = _find_number(payload, {"inCelsius", "celsius"})
    if c is not None:
        return c * 9.0 / 5.0 + 32.0
    return _find_number(payload, {"inFahrenheit", "fahrenheit"})


def _blood_pressure(payload: dict[str, Any]) -> tuple[float, float] | None:
    keys = {"inMillimetersOfMercury", "millimetersOfMercury", "value"}
    systolic = _find_number(payload.get("systolic"), keys)
    diastolic = _find_number(payload.get("diastolic"), keys)
    if systolic is None or diastolic is None:
        return None
    return systolic, diastolic


def _extract_cumulative(extract: Callable[[dict[str, Any]], float | None]):
    def run(conn: sqlite3.Connection, record_type: str, rng: DateRange) -> float | None:
        return _collapse_sources(_sum_by_source(_rows(conn, record_type), rng, extract))

    return run


def _extract_latest(extract: Callable[[dict[str, Any]], Any]):
    def run(conn: sqlite3.Connection, record_type: str, rng: DateRange) -> Any:
        return _latest(_rows(conn, record_type), rng, extract)

    return run


def _extract_interval_hours(conn: sqlite3.Connection, record_type: str, rng: DateRange) -> float | None:
    minutes = _collapse_sources(_interval_minutes_by_source(_rows(conn, record_type), rng))
    return minutes / 60.0 if minutes is not None else None


def _extract_interval_minutes(conn: sqlite3.Connection, record_type: str, rng: DateRange) -> float | None:
    return _collapse_sources(_interval_minutes_by_source(_rows(conn, record_type), rng))


def _extract_daily_steps(conn: sqlite3.Connection, record_type: str, rng: DateRange) -> dict[date, int] | None:
    by_day_source: dict[date, dict[str, float]] = defaultdict(lambda: defaultdict(float))
    for r in _rows(conn, record_type):
        dt = _parse_iso(r["start_time"]) or _point_time(r)
        if not dt or not rng.contains(dt):
            continue
        c = _to_float(json.loads(r["payload_json"]).get("count"))
        if c is None:
            continue
        by_day_source[_local_day(dt)][r["source"] or "unknown"] += c
    if not by_day_source:
        return None
    return {day: int(round(_collapse_sources(m) or 0.0)) for day, m in by_day_source.items()}


EXTRACTORS: dict[MetricKind, Callable[[sqlite3.Connection, str, DateRange], Any]] = {
    MetricKind.STEPS: _extract_cumulative(lambda p: _to_float(p.get("count"))),
    MetricKind.ACTIVE_CALORIES: _extract_cumulative(_kcal),
    MetricKind.DIETARY_CALORIES: _extract_cumulative(_kcal),
    MetricKind.WATER: _extract_cumulative(_water_oz),
    MetricKind.EXERCISE_MINUTES: _extract_interval_minutes,
    MetricKind.SLEEP: _extract_interval_hours,
    MetricKind.HEART_RATE: _extract_latest(lambda p: _find_number(p, {"beatsPerMinute", "bpm"})),
    MetricKind.WEIGHT: _extract_latest(_weight_lbs),
    MetricKind.HEIGHT: _extract_latest(_height_inches),
    MetricKind.BLOOD_PRESSURE: _extract_latest(_blood_pressure),
    MetricKind.OXYGEN_SATURATION: _extract_latest(
        lambda p: _to_percent(_find_number(p, {"value", "percentage", "percent"}))
    ),
    MetricKind.RESPIRATORY_RATE: _extract_latest(lambda p: _find_number(p, {"rate", "breathsPerMinute"})),
    MetricKind.BODY_TEMPERATURE: _extract_latest(_temperature_f),
    MetricKind.WEEKLY_STEPS: _extract_daily_steps,
}


class HealthRecordsSource(MetricSource):
    """Reads the records synced into the local `health_records` table."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path
        self._auth_state: AuthState | None = None

    def _read_auth_state(self) -> AuthState:
        try:
            with db(self.path) as conn:
                last = conn.execute(
                    "SELECT granted_count FROM permission_reports ORDER BY id DESC LIMIT 1"
                ).fetchone()
        except sqlite3.Error as exc:
            logger.warning("Could not read permission state: %s", exc)
            return AuthState.UNDETERMINED
        if last is None:
            return AuthState.UNDETERMINED
        return AuthState.AUTHORIZED if int(last["granted_count"]) > 0 else AuthState.DENIED

    def authorization_status(self) -> AuthState:
        if self._auth_state is None:
            self._auth_state = self._read_auth_state()
        return self._auth_state

    async def request_authorization(self) -> AuthState:
        # Grants happen on the device; asking again just picks up the latest report.
        self._auth_state = await asyncio.to_thread(self._read_auth_state)
        logger.info("Authorization state: %s", self._auth_state.value)
        return self._auth_state

    async def fetch(self, kinds: Iterable[MetricKind], rng: DateRange) -> PartialResult:
        return await asyncio.to_thread(self._fetch_sync, frozenset(kinds), rng)

    def _fetch_sync(self, kinds: frozenset[MetricKind], rng: DateRange) -> PartialResult:
        out: PartialResult = {}
        try:
            with db(self.path) as conn:
                conn.execute("SELECT 1 FROM health_records LIMIT 1").fetchall()
                reported = conn.execute("SELECT COUNT(*) AS c FROM permission_reports").fetchone()["c"]
                granted = None
                if reported:
                    granted = {
                        MetricKind(r["kind"])
                        for r in conn.execute("SELECT kind FROM granted_permissions").fetchall()
                    }

                for kind in kinds:
                    if granted is not None and kind not in granted:
                        out[kind] = Unavailable(Unavailable.DENIED)
                        continue
                    try:
                        value = EXTRACTORS[kind](conn, RECORD_TYPES[kind], rng)
                    except (sqlite3.DatabaseError, ValueError, TypeError) as exc:
                        logger.warning("Failed to read %s: %s", kind.value, exc)
                        out[kind] = Unavailable(Unavailable.ERROR, str(exc))
                        continue
                    out[kind] = Unavailable(Unavailable.NO_SAMPLES) if value is None else value
        except sqlite3.Error as exc:
            raise SourceUnavailableError(f"Health record store unreachable: {exc}") from exc
        return out

    def write_sample(
        self,
        kind: MetricKind,
        value: float,
        *,
        name: str | None = None,
        at: datetime | None = None,
    ) -> str:
        """Store a manually logged sample (water, meal, weight, height)."""
        if kind not in WRITABLE_KINDS:
            raise ValueError(f"{kind.value} cannot be written")
        if value < 0:
            raise ValueError("value must be >= 0")

        if kind == MetricKind.WATER:
            payload: dict[str, Any] = {"volume": {"inMilliliters": value * ML_PER_FL_OZ}}
        elif kind == MetricKind.DIETARY_CALORIES:
            payload = {"energy": {"inKilocalories": value}}
            if name:
                payload["name"] = name
        elif kind == MetricKind.WEIGHT:
            payload = {"weight": {"inKilograms": value / LBS_PER_KG}}
        else:
            payload = {"height": {"inMeters": value / INCHES_PER_METER}}

        ts = iso(at or datetime.now(timezone.utc))
        record_key = uuid.uuid4().hex
        with db(self.path) as conn:
            conn.execute(
                """
                INSERT INTO health_records(
                  record_key, device_id, type, record_id, source,
                  start_time, end_time, time, last_modified_time, unit,
                  payload_json, ingested_at
                ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    record_key,
                    LOCAL_DEVICE_ID,
                    RECORD_TYPES[kind],
                    None,
                    MANUAL_SOURCE,
                    ts,
                    ts,
                    ts,
                    ts,
                    None,
                    dumps_payload(payload),
                    now_iso(),
                ),
            )
        logger.info("Logged manual %s sample: %s", kind.value, value)
        return record_key


class StaticSource(MetricSource):
    """In-memory provider with fixed values.

    `delays` and `gate` make fetches slow or blocking, `failures` marks kinds
    unavailable, and `reachable=False` simulates a total outage.
    """

    def __init__(
        self,
        values: Mapping[MetricKind, Any] | None = None,
        *,
        auth_state: AuthState = AuthState.AUTHORIZED,
        grant_on_request: bool = True,
        delays: Mapping[MetricKind, float] | None = None,
        failures: Mapping[MetricKind, str] | None = None,
        gate: asyncio.Event | None = None,
        reachable: bool = True,
    ) -> None:
        self.values = dict(values or {})
        self.auth_state = auth_state
        self.grant_on_request = grant_on_request
        self.delays = dict(delays or {})
        self.failures = dict(failures or {})
        self.gate = gate
        self.reachable = reachable
        self.fetch_calls = 0
        self.auth_requests = 0

    def authorization_status(self) -> AuthState:
        return self.auth_state

    async def request_authorization(self) -> AuthState:
        self.auth_requests += 1
        if self.auth_state == AuthState.UNDETERMINED:
            self.auth_state = AuthState.AUTHORIZED if self.grant_on_request else AuthState.DENIED
        return self.auth_state

    async def fetch(self, kinds: Iterable[MetricKind], rng: DateRange) -> PartialResult:
        self.fetch_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if not self.reachable:
            raise SourceUnavailableError("Static source is offline")

        out: PartialResult = {}
        for kind in kinds:
            delay = self.delays.get(kind)
            if delay:
                await asyncio.sleep(delay)
            if self.auth_state == AuthState.DENIED:
                out[kind] = Unavailable(Unavailable.DENIED)
            elif kind in self.failures:
                out[kind] = Unavailable(self.failures[kind])
            elif kind in self.values:
                out[kind] = self.values[kind]
            else:
                out[kind] = Unavailable(Unavailable.NO_SAMPLES)
        return out
