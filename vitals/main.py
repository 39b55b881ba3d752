from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import sqlite3
from datetime import date, datetime
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException

from .core import VitalsCore
from .db import DB_PATH, db, dumps_payload, init_db, iso, now_iso
from .goals import GoalMetric, GoalStore, InvalidGoalError, parse_metric
from .metrics import MetricKind, today_local
from .models import (
    AuthorizationResponse,
    BodyLogRequest,
    GoalResponse,
    GoalUpdateRequest,
    InsightOut,
    LogResponse,
    MealLogRequest,
    RefreshRequest,
    RefreshResponse,
    ScoreResponse,
    SessionResponse,
    StatusResponse,
    SyncRequest,
    SyncResponse,
    WaterLogRequest,
)
from .security import require_api_key
from .source import HealthRecordsSource, SourceUnavailableError, record_permissions

logger = logging.getLogger(__name__)

app = FastAPI(title="Vitals Core (Local PC)", version="0.1.0")

core: Optional[VitalsCore] = None


@app.on_event("startup")
async def _startup() -> None:
    global core
    init_db()
    core = VitalsCore(HealthRecordsSource(), GoalStore())
    await core.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    if core is not None:
        await core.stop()


def get_core() -> VitalsCore:
    if core is None:
        raise HTTPException(status_code=503, detail="Core not started")
    return core


def _records_source(c: VitalsCore) -> HealthRecordsSource:
    if not isinstance(c.source, HealthRecordsSource):
        raise HTTPException(status_code=409, detail="Source does not accept manual samples")
    return c.source


def _stable_json(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)


def compute_record_key(device_id: str, r: dict[str, Any]) -> str:
    # recordId is stable across re-syncs; fall back to hashing the content.
    record_id = r.get("recordId")
    source = r.get("source") or ""
    type_ = r.get("type")

    if record_id:
        basis = f"v1|{device_id}|{type_}|{record_id}|{source}"
        return hashlib.sha256(basis.encode("utf-8")).hexdigest()

    base = {
        "deviceId": device_id,
        "type": type_,
        "source": source,
        "startTime": r.get("startTime"),
        "endTime": r.get("endTime"),
        "time": r.get("time"),
        "payload": r.get("payload"),
    }
    return hashlib.sha256(_stable_json(base).encode("utf-8")).hexdigest()


def _parse_kinds(raw: list[str] | None) -> list[MetricKind] | None:
    if not raw:
        return None
    try:
        return [MetricKind(k) for k in raw]
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown metric kind: {exc}") from exc


def _store_sync(req: SyncRequest) -> tuple[int, int]:
    upserted = 0
    skipped = 0

    with db() as conn:
        conn.execute(
            """
            INSERT OR IGNORE INTO sync_runs(
              sync_id, device_id, synced_at, range_start, range_end, received_at, record_count
            ) VALUES(?,?,?,?,?,?,?)
            """,
            (
                req.syncId,
                req.deviceId,
                iso(req.syncedAt),
                iso(req.rangeStart),
                iso(req.rangeEnd),
                now_iso(),
                len(req.records),
            ),
        )

        for rec in req.records:
            r_json = rec.model_dump(mode="json")
            record_key = r_json.get("recordKey") or compute_record_key(req.deviceId, r_json)
            try:
                conn.execute(
                    """
                    INSERT INTO health_records(
                      record_key, device_id, type, record_id, source,
                      start_time, end_time, time, last_modified_time, unit,
                      payload_json, ingested_at
                    ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?)
                    ON CONFLICT(record_key) DO UPDATE SET
                      payload_json=excluded.payload_json,
                      last_modified_time=excluded.last_modified_time,
                      ingested_at=excluded.ingested_at
                    """,
                    (
                        record_key,
                        req.deviceId,
                        rec.type,
                        rec.recordId,
                        rec.source,
                        iso(rec.startTime),
                        iso(rec.endTime),
                        iso(rec.time),
                        iso(rec.lastModifiedTime),
                        rec.unit,
                        dumps_payload(rec.payload),
                        now_iso(),
                    ),
                )
                upserted += 1
            except sqlite3.IntegrityError as exc:
                logger.warning("Skipping record %s: %s", record_key, exc)
                skipped += 1

        conn.execute(
            "UPDATE sync_runs SET upserted_count=?, skipped_count=? WHERE sync_id=?",
            (upserted, skipped, req.syncId),
        )

        if req.grantedPermissions is not None:
            kinds = record_permissions(conn, req.deviceId, req.grantedPermissions)
            logger.info("Device %s reported %d readable kinds", req.deviceId, len(kinds))

    return upserted, skipped


@app.post("/api/sync", response_model=SyncResponse)
async def sync(req: SyncRequest, _: None = Depends(require_api_key)) -> SyncResponse:
    c = get_core()
    upserted, skipped = await asyncio.to_thread(_store_sync, req)
    state = c.authorization_status()
    if req.grantedPermissions is not None:
        state = await c.request_authorization()
    logger.info("Sync %s: upserted=%d skipped=%d", req.syncId, upserted, skipped)
    c.trigger("sync")
    return SyncResponse(
        accepted=True, upsertedCount=upserted, skippedCount=skipped, authorization=state.value
    )


@app.get("/api/status", response_model=StatusResponse)
def status(_: None = Depends(require_api_key)) -> StatusResponse:
    c = get_core()
    with db() as conn:
        total = conn.execute("SELECT COUNT(*) AS c FROM health_records").fetchone()["c"]
        last = conn.execute(
            "SELECT received_at, sync_id FROM sync_runs ORDER BY received_at DESC LIMIT 1"
        ).fetchone()

    return StatusResponse(
        ok=True,
        dbPath=str(DB_PATH),
        totalRecords=int(total),
        lastReceivedAt=last["received_at"] if last else None,
        lastSyncId=last["sync_id"] if last else None,
        authorization=c.authorization_status().value,
        refreshing=c.refreshing,
        lastRefreshAt=c.current_snapshot().refreshed_at,
        viewers=c.viewers,
    )


def _granted_kinds() -> list[str]:
    with db() as conn:
        rows = conn.execute("SELECT kind FROM granted_permissions ORDER BY kind").fetchall()
    return [r["kind"] for r in rows]


@app.get("/api/authorization", response_model=AuthorizationResponse)
def authorization(_: None = Depends(require_api_key)) -> AuthorizationResponse:
    c = get_core()
    return AuthorizationResponse(state=c.authorization_status().value, grantedKinds=_granted_kinds())


@app.post("/api/authorization", response_model=AuthorizationResponse)
async def request_authorization(_: None = Depends(require_api_key)) -> AuthorizationResponse:
    c = get_core()
    state = await c.request_authorization()
    granted = await asyncio.to_thread(_granted_kinds)
    return AuthorizationResponse(state=state.value, grantedKinds=granted)


@app.post("/api/refresh", response_model=RefreshResponse)
async def refresh(req: Optional[RefreshRequest] = None, _: None = Depends(require_api_key)) -> RefreshResponse:
    c = get_core()
    kinds = _parse_kinds(req.kinds if req else None)
    try:
        ran = await c.refresh(kinds)
    except SourceUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if not ran:
        # folded into the refresh already running; answer once it has finished
        await c.wait_idle()
    return RefreshResponse(
        ran=ran,
        refreshedAt=c.current_snapshot().refreshed_at,
        availability={k.value: v for k, v in sorted(c.aggregator.availability.items())},
    )


@app.post("/api/session/foreground", response_model=SessionResponse)
async def session_foreground(_: None = Depends(require_api_key)) -> SessionResponse:
    c = get_core()
    viewers = c.attach_viewer()
    c.trigger("foreground")
    return SessionResponse(viewers=viewers, timersRunning=c.light_timer.running)


@app.post("/api/session/background", response_model=SessionResponse)
async def session_background(_: None = Depends(require_api_key)) -> SessionResponse:
    c = get_core()
    viewers = c.detach_viewer()
    return SessionResponse(viewers=viewers, timersRunning=c.light_timer.running)


@app.get("/api/snapshot")
def snapshot(_: None = Depends(require_api_key)) -> dict[str, Any]:
    return get_core().current_snapshot().to_dict()


@app.get("/api/score", response_model=ScoreResponse)
def current_score(_: None = Depends(require_api_key)) -> ScoreResponse:
    return ScoreResponse(**get_core().current_score().to_dict())


@app.get("/api/insights", response_model=list[InsightOut])
async def insights(fresh: bool = False, _: None = Depends(require_api_key)) -> list[InsightOut]:
    c = get_core()
    found = await c.generate_insights() if fresh else c.latest_insights()
    return [InsightOut(**i.to_dict()) for i in found]


@app.get("/api/trend")
def trend(_: None = Depends(require_api_key)) -> dict[str, Any]:
    return get_core().trend().to_dict()


@app.get("/api/progress")
def progress(_: None = Depends(require_api_key)) -> dict[str, float]:
    return get_core().progress()


@app.get("/api/goals")
def goals(_: None = Depends(require_api_key)) -> dict[str, float]:
    return get_core().goals().to_dict()


def _goal_metric(metric: str) -> GoalMetric:
    try:
        return parse_metric(metric)
    except InvalidGoalError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/api/goals/{metric}", response_model=GoalResponse)
def get_goal(metric: str, _: None = Depends(require_api_key)) -> GoalResponse:
    m = _goal_metric(metric)
    return GoalResponse(metric=m.value, value=get_core().get_goal(m))


@app.put("/api/goals/{metric}", response_model=GoalResponse)
async def put_goal(metric: str, req: GoalUpdateRequest, _: None = Depends(require_api_key)) -> GoalResponse:
    m = _goal_metric(metric)
    c = get_core()
    try:
        value = await asyncio.to_thread(c.goal_store.set_goal, m, req.value)
    except InvalidGoalError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    c.goals_changed()
    return GoalResponse(metric=m.value, value=value)


@app.delete("/api/goals/{metric}", response_model=GoalResponse)
async def delete_goal(metric: str, _: None = Depends(require_api_key)) -> GoalResponse:
    m = _goal_metric(metric)
    c = get_core()
    value = await asyncio.to_thread(c.goal_store.reset_goal, m)
    c.goals_changed()
    return GoalResponse(metric=m.value, value=value)


def _log_day(at: datetime | None) -> date:
    return today_local(at)


@app.post("/api/water", response_model=LogResponse)
async def log_water(req: WaterLogRequest, _: None = Depends(require_api_key)) -> LogResponse:
    c = get_core()
    src = _records_source(c)
    key = await asyncio.to_thread(src.write_sample, MetricKind.WATER, req.amountOz, at=req.time)
    c.trigger("water", [MetricKind.WATER])
    return LogResponse(ok=True, recordKeys=[key], day=_log_day(req.time))


@app.post("/api/meals", response_model=LogResponse)
async def log_meal(req: MealLogRequest, _: None = Depends(require_api_key)) -> LogResponse:
    c = get_core()
    src = _records_source(c)
    key = await asyncio.to_thread(
        src.write_sample, MetricKind.DIETARY_CALORIES, req.calories, name=req.name, at=req.time
    )
    c.trigger("meal", [MetricKind.DIETARY_CALORIES])
    return LogResponse(ok=True, recordKeys=[key], day=_log_day(req.time))


@app.post("/api/body", response_model=LogResponse)
async def log_body(req: BodyLogRequest, _: None = Depends(require_api_key)) -> LogResponse:
    if req.weightLbs is None and req.heightInches is None:
        raise HTTPException(status_code=400, detail="weightLbs or heightInches is required")
    c = get_core()
    src = _records_source(c)
    keys: list[str] = []
    kinds: list[MetricKind] = []
    if req.weightLbs is not None:
        keys.append(await asyncio.to_thread(src.write_sample, MetricKind.WEIGHT, req.weightLbs, at=req.time))
        kinds.append(MetricKind.WEIGHT)
    if req.heightInches is not None:
        keys.append(await asyncio.to_thread(src.write_sample, MetricKind.HEIGHT, req.heightInches, at=req.time))
        kinds.append(MetricKind.HEIGHT)
    c.trigger("body", kinds)
    return LogResponse(ok=True, recordKeys=keys, day=_log_day(req.time))
