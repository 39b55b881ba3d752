"""The facade the HTTP layer talks to.

`VitalsCore` wires the source, the aggregator, the goal store, the trend
window, the scorer and the insight engine together. Insights are regenerated
in a background task after every published snapshot so publication never
waits on them.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Coroutine, Iterable

from . import settings
from .aggregator import SnapshotAggregator
from .goals import GoalMetric, Goals, GoalStore
from .insights import Insight, generate_insights_async
from .metrics import LIGHTWEIGHT_KINDS, AuthState, MetricKind, MetricsSnapshot
from .scoring import DEFAULT_SCORING, ScoreResult, ScoringConfig, progress, score
from .source import MetricSource
from .trend import TrendWindow

logger = logging.getLogger(__name__)


class RefreshTimer:
    """Runs `callback` every `period` seconds until stopped."""

    def __init__(self, period: float, callback: Callable[[], Awaitable[Any]], *, name: str = "timer") -> None:
        if period <= 0:
            raise ValueError("period must be positive")
        self.period = period
        self.callback = callback
        self.name = name
        self.ticks = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"refresh-timer-{self.name}")
        logger.debug("Timer %s started (%.0fs)", self.name, self.period)

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.debug("Timer %s stopped", self.name)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.period)
            self.ticks += 1
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # a failed tick never stops the timer
                logger.warning("Timer %s refresh failed: %s", self.name, exc)


class VitalsCore:
    def __init__(
        self,
        source: MetricSource,
        goal_store: GoalStore,
        *,
        timeout: float | None = None,
        clock: Callable[[], datetime] | None = None,
        light_period: float | None = None,
        full_period: float | None = None,
        timers_enabled: bool | None = None,
        scoring: ScoringConfig = DEFAULT_SCORING,
    ) -> None:
        self.source = source
        self.goal_store = goal_store
        self.scoring = scoring
        self.aggregator = SnapshotAggregator(source, timeout=timeout, clock=clock)
        self._unsubscribe = self.aggregator.subscribe(self._on_snapshot)

        self._trend = TrendWindow()
        self._insights: list[Insight] = []
        self._insight_gen = 0

        self.timers_enabled = settings.TIMERS_ENABLED if timers_enabled is None else timers_enabled
        self.light_timer = RefreshTimer(
            settings.LIGHT_REFRESH_SEC if light_period is None else light_period,
            lambda: self.refresh(LIGHTWEIGHT_KINDS),
            name="light",
        )
        self.full_timer = RefreshTimer(
            settings.FULL_REFRESH_SEC if full_period is None else full_period,
            self.refresh,
            name="full",
        )
        self._viewers = 0

        self._tasks: set[asyncio.Task] = set()
        self._refreshes: set[asyncio.Task] = set()
        self._cancelled: set[asyncio.Task] = set()

    # authorization

    def authorization_status(self) -> AuthState:
        return self.source.authorization_status()

    async def request_authorization(self) -> AuthState:
        return await self.source.request_authorization()

    # refresh

    async def refresh(self, kinds: Iterable[MetricKind] | None = None) -> bool:
        """Run (or coalesce) a refresh.

        Returns True when a cycle ran, False when the trigger was folded into
        the one in flight or the refresh was cancelled by `cancel_refresh`.
        Raises `SourceUnavailableError` when the provider is unreachable.
        """
        task = asyncio.get_running_loop().create_task(self.aggregator.refresh(kinds))
        self._refreshes.add(task)
        task.add_done_callback(self._refreshes.discard)
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._cancelled:
                self._cancelled.discard(task)
                logger.info("Refresh cancelled; nothing published")
                return False
            raise

    def trigger(self, reason: str, kinds: Iterable[MetricKind] | None = None) -> asyncio.Task:
        """Start a refresh without waiting for it. Failures are logged."""
        logger.info("Refresh triggered: %s", reason)
        task = self._spawn(self.refresh(kinds), name=f"refresh-{reason}")
        task.add_done_callback(lambda t: self._log_trigger(reason, t))
        return task

    def _log_trigger(self, reason: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Refresh (%s) failed: %s", reason, exc)

    def cancel_refresh(self) -> int:
        """Cancel every in-flight refresh. Returns how many were cancelled."""
        pending = [t for t in self._refreshes if not t.done()]
        for t in pending:
            self._cancelled.add(t)
            t.cancel()
        return len(pending)

    @property
    def refreshing(self) -> bool:
        return self.aggregator.in_flight

    # snapshot, score, trend

    def current_snapshot(self) -> MetricsSnapshot:
        return self.aggregator.current

    def trend(self) -> TrendWindow:
        return self._trend

    def current_score(self) -> ScoreResult:
        return score(self.current_snapshot(), self.goals(), self._trend, self.scoring)

    def progress(self) -> dict[str, float]:
        return progress(self.current_snapshot(), self.goals())

    # goals

    def goals(self) -> Goals:
        return self.goal_store.all_goals()

    def get_goal(self, metric: GoalMetric | str) -> float:
        return self.goal_store.get_goal(metric)

    def set_goal(self, metric: GoalMetric | str, value: Any) -> float:
        v = self.goal_store.set_goal(metric, value)
        self.goals_changed()
        return v

    def reset_goal(self, metric: GoalMetric | str) -> float:
        v = self.goal_store.reset_goal(metric)
        self.goals_changed()
        return v

    def goals_changed(self) -> None:
        """Rebuild insights after a goal edit, if there is a loop to run on."""
        if not self.aggregator.has_snapshot:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._schedule_insights(self.current_snapshot())

    # insights

    def latest_insights(self) -> list[Insight]:
        return list(self._insights)

    async def generate_insights(
        self, snapshot: MetricsSnapshot | None = None, trend: TrendWindow | None = None
    ) -> list[Insight]:
        goals = await asyncio.to_thread(self.goal_store.all_goals)
        return await generate_insights_async(
            snapshot if snapshot is not None else self.current_snapshot(),
            goals,
            trend if trend is not None else self._trend,
        )

    def _on_snapshot(self, snapshot: MetricsSnapshot) -> None:
        trend = TrendWindow.from_daily(snapshot.weekly_steps, snapshot.day)
        # the live step count is fresher than the weekly series, unless it is
        # only a carried-over or sentinel value
        if self.aggregator.availability.get(MetricKind.STEPS) == "ok":
            trend.update(snapshot.day, snapshot.steps)
        self._trend = trend
        self._schedule_insights(snapshot)

    def _schedule_insights(self, snapshot: MetricsSnapshot) -> None:
        self._insight_gen += 1
        self._spawn(self._run_insights(self._insight_gen, snapshot, self._trend), name="insights")

    async def _run_insights(self, gen: int, snapshot: MetricsSnapshot, trend: TrendWindow) -> None:
        try:
            insights = await self.generate_insights(snapshot, trend)
        except Exception:
            logger.exception("Insight generation failed")
            return
        if gen != self._insight_gen:
            # a newer snapshot already has its own run
            return
        self._insights = insights
        logger.debug("Generated %d insights", len(insights))

    async def wait_idle(self) -> None:
        """Wait for refreshes and insight runs (including coalesced follow-ups) to settle."""
        while self._tasks or self._refreshes:
            await asyncio.gather(*self._tasks, *self._refreshes, return_exceptions=True)

    # viewers and lifecycle

    @property
    def viewers(self) -> int:
        return self._viewers

    def attach_viewer(self) -> int:
        self._viewers += 1
        if self._viewers == 1 and self.timers_enabled:
            self.light_timer.start()
            self.full_timer.start()
        return self._viewers

    def detach_viewer(self) -> int:
        if self._viewers == 0:
            return 0
        self._viewers -= 1
        if self._viewers == 0:
            self.light_timer.stop()
            self.full_timer.stop()
            cancelled = self.cancel_refresh()
            if cancelled:
                logger.info("Last viewer left; cancelled %d refresh(es)", cancelled)
        return self._viewers

    async def start(self) -> None:
        state = self.authorization_status()
        if state == AuthState.UNDETERMINED:
            state = await self.request_authorization()
        logger.info("Starting vitals core (authorization=%s)", state.value)
        self.trigger("cold_start")

    async def stop(self) -> None:
        self.light_timer.stop()
        self.full_timer.stop()
        self._viewers = 0
        self.cancel_refresh()
        for t in list(self._tasks):
            t.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._unsubscribe()
        logger.info("Vitals core stopped")

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
