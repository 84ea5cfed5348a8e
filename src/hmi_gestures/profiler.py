"""Per-stage timing of the detection tick.

The dispatcher wraps its phases (conditions, detection, sequence, handlers,
publish) in ``stage()``; the engine records the whole tick under ``"tick"``.
Stages appear on first use, so hosts can time their own work in the same
profiler.

Usage:
    profiler = TickProfiler(budget_ms=16.0)

    with profiler.stage("detection"):
        result = detector(frame)

    print(profiler.summary())
"""

from __future__ import annotations

import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

import numpy as np


@dataclass
class StageStats:
    """Timings for one stage over the current window."""
    name: str
    avg_ms: float
    min_ms: float
    max_ms: float
    p95_ms: float
    call_count: int
    over_budget: int = 0


class _StageWindow:
    __slots__ = ("samples", "calls", "over_budget")

    def __init__(self, size: int):
        self.samples: deque[float] = deque(maxlen=size)
        self.calls = 0
        self.over_budget = 0


class TickProfiler:
    """Rolling timings per named tick stage.

    Args:
        window_size: Measurements kept per stage for the statistics.
        budget_ms: A measurement above this counts as over budget.
            None disables the count.
    """

    def __init__(self, window_size: int = 120, budget_ms: Optional[float] = None):
        self._window_size = window_size
        self._budget_ms = budget_ms
        self._stages: dict[str, _StageWindow] = {}
        self.enabled = True

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        if not self.enabled:
            yield
            return
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record(name, (time.perf_counter() - started) * 1000.0)

    def record(self, name: str, elapsed_ms: float):
        """Add a measurement taken elsewhere."""
        window = self._stages.get(name)
        if window is None:
            window = self._stages[name] = _StageWindow(self._window_size)
        window.samples.append(elapsed_ms)
        window.calls += 1
        if self._budget_ms is not None and elapsed_ms > self._budget_ms:
            window.over_budget += 1

    def get_stage_stats(self, name: str) -> StageStats | None:
        window = self._stages.get(name)
        if window is None or not window.samples:
            return None
        values = np.fromiter(window.samples, dtype=float)
        return StageStats(
            name=name,
            avg_ms=float(values.mean()),
            min_ms=float(values.min()),
            max_ms=float(values.max()),
            p95_ms=float(np.percentile(values, 95, method="higher")),
            call_count=window.calls,
            over_budget=window.over_budget,
        )

    def last(self, name: str) -> float | None:
        window = self._stages.get(name)
        return window.samples[-1] if window and window.samples else None

    def slowest(self, exclude: tuple[str, ...] = ("tick",)) -> str | None:
        """Stage with the highest average, ignoring the whole-tick entry."""
        averages = {}
        for name in self._stages:
            stats = self.get_stage_stats(name)
            if stats is not None and name not in exclude:
                averages[name] = stats.avg_ms
        return max(averages, key=averages.get) if averages else None

    def summary(self) -> dict[str, dict]:
        """Stages with data, rounded for display."""
        result = {}
        for name in self._stages:
            stats = self.get_stage_stats(name)
            if stats is None:
                continue
            result[name] = {
                "avg_ms": round(stats.avg_ms, 3),
                "min_ms": round(stats.min_ms, 3),
                "max_ms": round(stats.max_ms, 3),
                "p95_ms": round(stats.p95_ms, 3),
                "calls": stats.call_count,
                "over_budget": stats.over_budget,
            }
        return result

    def reset(self):
        self._stages.clear()

    @property
    def budget_ms(self) -> Optional[float]:
        return self._budget_ms
