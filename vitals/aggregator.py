from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from . import settings
from .db import LOCAL_TZ
from .metrics import (
    ALL_KINDS,
    DAILY_KINDS,
    KIND_FIELDS,
    DateRange,
    MetricKind,
    MetricsSnapshot,
    PartialResult,
    Unavailable,
    fields_for,
    sentinels_for,
    today_local,
)
from .source import MetricSource, SourceUnavailableError

logger = logging.getLogger(__name__)

# How far back an instantaneous reading may come from
VITALS_LOOKBACK = timedelta(days=7)
BODY_LOOKBACK = timedelta(days=365)
SLEEP_LOOKBACK_HOURS = 24
WEEK_DAYS = 7

VITAL_KINDS = frozenset(
    {
        MetricKind.HEART_RATE,
        MetricKind.BLOOD_PRESSURE,
        MetricKind.OXYGEN_SATURATION,
        MetricKind.RESPIRATORY_RATE,
        MetricKind.BODY_TEMPERATURE,
    }
)


def range_for(kind: MetricKind, now: datetime) -> DateRange:
    day = today_local(now)
    if kind == MetricKind.WEEKLY_STEPS:
        return DateRange.trailing_days(day, WEEK_DAYS, now)
    if kind == MetricKind.SLEEP:
        return DateRange.last_hours(now, SLEEP_LOOKBACK_HOURS)
    if kind in VITAL_KINDS:
        return DateRange(start=now - VITALS_LOOKBACK, end=now)
    if kind in (MetricKind.WEIGHT, MetricKind.HEIGHT):
        return DateRange(start=now - BODY_LOOKBACK, end=now)
    return DateRange.for_day(day, now)


def merge_snapshot(
    previous: MetricsSnapshot | None,
    partial: PartialResult,
    *,
    day,
    refreshed_at: datetime | None = None,
) -> MetricsSnapshot:
    """Build the next snapshot from the previous one and a fetch result.

    Per kind:
    - a fetched value replaces the kind's fields;
    - an `Unavailable` marker, a timeout or a kind that was not fetched keeps
      the previous snapshot's fields (last-known-good);
    - with no previous snapshot the fields take their sentinel defaults.
    Daily totals (steps, calories, water, sleep, exercise) only carry over
    within the same calendar day.
    """
    values: dict[str, Any] = {}
    for kind in MetricKind:
        raw = partial.get(kind)
        if raw is not None and not isinstance(raw, Unavailable):
            try:
                values.update(fields_for(kind, raw))
                continue
            except (TypeError, ValueError, OverflowError) as exc:
                logger.warning("Dropping malformed %s value %r: %s", kind.value, raw, exc)

        same_day = previous is not None and previous.day == day
        if previous is not None and (kind not in DAILY_KINDS or same_day):
            values.update({name: getattr(previous, name) for name in KIND_FIELDS[kind]})
        else:
            values.update(sentinels_for(kind))

    return MetricsSnapshot(day=day, refreshed_at=refreshed_at, **values)


class SnapshotAggregator:
    """Owns the live snapshot and runs refresh cycles against a source.

    Only one refresh runs at a time. Triggers that arrive while one is in
    flight return immediately and are folded into a single follow-up cycle.
    """

    def __init__(
        self,
        source: MetricSource,
        *,
        kinds: Iterable[MetricKind] = ALL_KINDS,
        timeout: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.source = source
        self.kinds = frozenset(kinds)
        self.timeout = settings.REFRESH_TIMEOUT_SEC if timeout is None else timeout
        self._clock = clock or (lambda: datetime.now(LOCAL_TZ))
        self._snapshot: MetricsSnapshot | None = None
        self._subscribers: list[Callable[[MetricsSnapshot], None]] = []
        self._in_flight = False
        self._pending: frozenset[MetricKind] | None = None
        self.availability: dict[MetricKind, str] = {}
        self.cycles = 0

    @property
    def current(self) -> MetricsSnapshot:
        if self._snapshot is None:
            return MetricsSnapshot(day=today_local(self._clock()))
        return self._snapshot

    @property
    def has_snapshot(self) -> bool:
        return self._snapshot is not None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def subscribe(self, callback: Callable[[MetricsSnapshot], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def refresh(self, kinds: Iterable[MetricKind] | None = None) -> bool:
        """Run a refresh cycle. Returns False when the trigger was coalesced."""
        requested = frozenset(kinds) if kinds else self.kinds
        if self._in_flight:
            self._pending = requested if self._pending is None else self._pending | requested
            logger.debug("Refresh in flight; trigger coalesced")
            return False

        self._in_flight = True
        error: SourceUnavailableError | None = None
        try:
            while True:
                try:
                    await self._run_cycle(requested)
                    error = None
                except SourceUnavailableError as exc:
                    logger.warning("Refresh failed, keeping previous snapshot: %s", exc)
                    error = exc
                if self._pending is None:
                    break
                requested, self._pending = self._pending, None
        finally:
            self._in_flight = False
            self._pending = None

        if error is not None:
            raise error
        return True

    async def _fetch_one(self, kind: MetricKind, now: datetime) -> tuple[MetricKind, Any]:
        rng = range_for(kind, now)
        try:
            result = await asyncio.wait_for(self.source.fetch({kind}, rng), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out fetching %s after %.1fs", kind.value, self.timeout)
            return kind, Unavailable(Unavailable.TIMEOUT)
        except SourceUnavailableError:
            raise
        except Exception as exc:
            logger.warning("Provider error fetching %s: %s", kind.value, exc)
            return kind, Unavailable(Unavailable.ERROR, str(exc))
        value = result.get(kind, Unavailable(Unavailable.NO_SAMPLES))
        if not isinstance(value, Unavailable):
            try:
                fields_for(kind, value)
            except (TypeError, ValueError, OverflowError) as exc:
                logger.warning("Dropping malformed %s value %r: %s", kind.value, value, exc)
                return kind, Unavailable(Unavailable.ERROR, str(exc))
        return kind, value

    async def _run_cycle(self, kinds: frozenset[MetricKind]) -> None:
        self.cycles += 1
        now = self._clock()
        ordered = sorted(kinds, key=lambda k: k.value)
        results = await asyncio.gather(
            *(self._fetch_one(kind, now) for kind in ordered),
            return_exceptions=True,
        )

        partial: PartialResult = {}
        for item in results:
            if isinstance(item, BaseException):
                raise item
            kind, value = item
            partial[kind] = value

        snapshot = merge_snapshot(self._snapshot, partial, day=today_local(now), refreshed_at=now)
        for kind, value in partial.items():
            self.availability[kind] = value.reason if isinstance(value, Unavailable) else "ok"
        missing = sorted(k.value for k, v in partial.items() if isinstance(v, Unavailable))
        logger.info(
            "Refresh cycle %d: %d kinds fetched, unavailable=%s",
            self.cycles,
            len(partial),
            ",".join(missing) or "-",
        )
        self._publish(snapshot)

    def _publish(self, snapshot: MetricsSnapshot) -> None:
        self._snapshot = snapshot
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Snapshot subscriber failed")
