from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class RecordEnvelope(BaseModel):
    type: str
    recordId: Optional[str] = None
    recordKey: Optional[str] = None
    source: Optional[str] = None

    startTime: Optional[datetime] = None
    endTime: Optional[datetime] = None
    time: Optional[datetime] = None

    lastModifiedTime: Optional[datetime] = None
    unit: Optional[str] = None

    payload: dict[str, Any] = Field(default_factory=dict)


class SyncRequest(BaseModel):
    deviceId: str
    syncId: str
    syncedAt: datetime
    rangeStart: datetime
    rangeEnd: datetime
    records: list[RecordEnvelope]
    # Read permissions currently granted on the device; None = not reported
    grantedPermissions: Optional[list[str]] = None


class SyncResponse(BaseModel):
    accepted: bool
    upsertedCount: int
    skippedCount: int
    authorization: str


class StatusResponse(BaseModel):
    ok: bool
    dbPath: str
    totalRecords: int
    lastReceivedAt: Optional[datetime] = None
    lastSyncId: Optional[str] = None
    authorization: str
    refreshing: bool
    lastRefreshAt: Optional[datetime] = None
    viewers: int


class AuthorizationResponse(BaseModel):
    state: str
    grantedKinds: list[str] = Field(default_factory=list)


class RefreshRequest(BaseModel):
    kinds: Optional[list[str]] = None


class RefreshResponse(BaseModel):
    ran: bool
    refreshedAt: Optional[datetime] = None
    availability: dict[str, str] = Field(default_factory=dict)


class SessionResponse(BaseModel):
    viewers: int
    timersRunning: bool


class ScoreResponse(BaseModel):
    score: int = Field(ge=0, le=100)
    band: str
    breakdown: dict[str, int]


class InsightOut(BaseModel):
    key: str
    kind: str
    title: str
    message: str
    iconTag: str
    colorTag: str
    priority: str


class GoalUpdateRequest(BaseModel):
    # Range checks live in the goal store so a bad value is a 400, not a 422
    value: Any


class GoalResponse(BaseModel):
    metric: str
    value: float


class WaterLogRequest(BaseModel):
    amountOz: float = Field(gt=0, le=200)
    time: Optional[datetime] = None


class MealLogRequest(BaseModel):
    name: Optional[str] = None
    calories: float = Field(ge=0, le=10000)
    time: Optional[datetime] = None


class BodyLogRequest(BaseModel):
    weightLbs: Optional[float] = Field(default=None, gt=0, le=1500)
    heightInches: Optional[float] = Field(default=None, gt=0, le=120)
    time: Optional[datetime] = None


class LogResponse(BaseModel):
    ok: bool
    recordKeys: list[str]
    day: date
