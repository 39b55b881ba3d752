from __future__ import annotations

import math
from collections import OrderedDict
from datetime import date, timedelta
from typing import Iterator, Mapping

WINDOW_DAYS = 7
TREND_SPAN_DAYS = 3


class TrendWindow:
    """Rolling day -> step count history for the trailing week.

    Days without data are kept as explicit zeros, and every statistic divides
    by the full window size. A week with two active days therefore averages
    low instead of being inflated by ignoring the empty days.
    """

    def __init__(self, size: int = WINDOW_DAYS) -> None:
        if size <= 0:
            raise ValueError("size must be positive")
        self.size = size
        self._days: OrderedDict[date, int] = OrderedDict()

    @classmethod
    def from_daily(cls, daily: Mapping[date, int], today: date, size: int = WINDOW_DAYS) -> "TrendWindow":
        """Window ending at `today`, every day present (0 when missing)."""
        w = cls(size)
        for offset in range(size - 1, -1, -1):
            d = today - timedelta(days=offset)
            w.update(d, int(daily.get(d, 0)))
        return w

    def update(self, day: date, steps: int) -> None:
        steps = max(0, int(steps))
        if day in self._days:
            self._days[day] = steps
            return

        if self._days:
            newest = next(reversed(self._days))
            if day < newest:
                # too old for the window
                if len(self._days) >= self.size or (newest - day).days >= self.size:
                    return
                self._days[day] = steps
                self._days = OrderedDict(sorted(self._days.items()))
                self._fill_gaps()
                return
            gap = newest + timedelta(days=1)
            while gap < day:
                self._days[gap] = 0
                gap += timedelta(days=1)

        self._days[day] = steps
        while len(self._days) > self.size:
            self._days.popitem(last=False)

    def _fill_gaps(self) -> None:
        days = list(self._days)
        cur = days[0]
        filled: OrderedDict[date, int] = OrderedDict()
        while cur <= days[-1]:
            filled[cur] = self._days.get(cur, 0)
            cur += timedelta(days=1)
        self._days = filled

    def __len__(self) -> int:
        return len(self._days)

    def __iter__(self) -> Iterator[tuple[date, int]]:
        return iter(self._days.items())

    def __contains__(self, day: object) -> bool:
        return day in self._days

    def get(self, day: date, default: int = 0) -> int:
        return self._days.get(day, default)

    def days(self) -> list[date]:
        return list(self._days)

    def values(self) -> list[int]:
        """Counts oldest first, left-padded with zeros to the window size."""
        vals = list(self._days.values())
        return [0] * (self.size - len(vals)) + vals

    @property
    def latest_day(self) -> date | None:
        return next(reversed(self._days)) if self._days else None

    def total(self) -> int:
        return sum(self._days.values())

    def average(self) -> float:
        return self.total() / self.size

    def percentile(self, p: float) -> float:
        """Value at percentile `p` (0-100), linear interpolation."""
        if not 0 <= p <= 100:
            raise ValueError("p must be within [0, 100]")
        vals = sorted(self.values())
        pos = (len(vals) - 1) * p / 100.0
        lo, hi = math.floor(pos), math.ceil(pos)
        if lo == hi:
            return float(vals[lo])
        return vals[lo] + (vals[hi] - vals[lo]) * (pos - lo)

    def percentile_rank(self, steps: int) -> float:
        """Percentage of window days with fewer steps than `steps`."""
        vals = self.values()
        below = sum(1 for v in vals if v < steps)
        return below * 100.0 / len(vals)

    def change_ratio(self, span: int = TREND_SPAN_DAYS) -> float | None:
        """Mean of the most recent `span` days over the mean of the oldest `span`.

        None while the earlier days have no steps at all.
        """
        vals = self.values()
        earlier = sum(vals[:span]) / span
        recent = sum(vals[-span:]) / span
        if earlier <= 0:
            return None
        return recent / earlier

    def to_dict(self) -> dict:
        return {
            "days": [{"date": d.isoformat(), "steps": v} for d, v in self._days.items()],
            "average": round(self.average(), 1),
            "median": round(self.percentile(50), 1),
            "changeRatio": self.change_ratio(),
        }
