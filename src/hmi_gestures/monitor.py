"""Frame-timing monitor with smoothed fps, alerts and performance mode.

The engine calls ``record_frame(now)`` once per tick. Alerts are
observational: they are appended to a bounded log and reported through
``on_alert``, they never change control flow.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger("hmi_gestures.monitor")

BASE_SAMPLE_RATE = 60.0
MIN_SAMPLE_RATE = 15.0
PERFORMANCE_MODE_SAMPLES = 100
REPORT_WINDOW = 60
REPORT_ALERT_WINDOW_MS = 60_000.0

# (used, limit) in bytes, or None when unavailable
MemoryProbe = Callable[[], Optional[tuple[float, float]]]


@dataclass
class Alert:
    type: str
    data: dict
    timestamp: float


@dataclass
class FrameSample:
    timestamp: float
    fps: float
    frame_time: float
    memory_ratio: Optional[float] = None


@dataclass
class MonitorMetrics:
    fps: float = BASE_SAMPLE_RATE
    frame_time: float = 1000.0 / BASE_SAMPLE_RATE
    memory_ratio: Optional[float] = None
    frames: int = 0


class PerformanceMonitor:
    """Exponential moving averages of fps and frame time from tick deltas.

    Usage:
        monitor = PerformanceMonitor(alert_fps=30)
        monitor.start(now)
        for now in tick_times:
            alerts = monitor.record_frame(now)
        print(monitor.report())
    """

    def __init__(
        self,
        sample_rate: float = BASE_SAMPLE_RATE,
        alert_fps: float = 30.0,
        max_frame_time: float = 33.0,
        memory_threshold: float = 0.8,
        alpha: float = 0.1,
        max_samples: int = 1000,
        max_alerts: int = 100,
        memory_probe: Optional[MemoryProbe] = None,
        on_alert: Optional[Callable[[Alert], None]] = None,
    ):
        self.base_sample_rate = float(sample_rate)
        self.sample_rate = float(sample_rate)
        self.alert_fps = alert_fps
        self.max_frame_time = max_frame_time
        self.memory_threshold = memory_threshold
        self.alpha = alpha
        self.memory_probe = memory_probe
        self.on_alert = on_alert

        self._metrics = MonitorMetrics(fps=self.base_sample_rate, frame_time=1000.0 / self.base_sample_rate)
        self._samples: deque[FrameSample] = deque(maxlen=max_samples)
        self._alerts: deque[Alert] = deque(maxlen=max_alerts)
        self._active: set[str] = set()
        self._last_frame: Optional[float] = None
        self._monitoring = False
        self._performance_mode = False

    def start(self, now: float):
        if self._monitoring:
            return
        self._monitoring = True
        self._last_frame = now
        logger.info("Performance monitoring started")

    def stop(self):
        if not self._monitoring:
            return
        self._monitoring = False
        self._last_frame = None
        logger.info("Performance monitoring stopped")

    @property
    def monitoring(self) -> bool:
        return self._monitoring

    def record_frame(self, now: float) -> list[Alert]:
        """Fold one tick into the averages and evaluate alert thresholds.

        Returns:
            Alerts raised by this frame.
        """
        last, self._last_frame = self._last_frame, now
        if last is None:
            return []
        frame_time = now - last
        if frame_time <= 0 or not math.isfinite(frame_time):
            return []

        fps = 1000.0 / frame_time
        m = self._metrics
        m.fps = m.fps * (1 - self.alpha) + fps * self.alpha
        m.frame_time = m.frame_time * (1 - self.alpha) + frame_time * self.alpha
        m.memory_ratio = self._memory_ratio()
        m.frames += 1

        self._samples.append(FrameSample(
            timestamp=now, fps=fps, frame_time=frame_time, memory_ratio=m.memory_ratio,
        ))
        return self._check_alerts(now)

    def _memory_ratio(self) -> Optional[float]:
        if self.memory_probe is None:
            return None
        try:
            reading = self.memory_probe()
        except Exception as e:
            logger.error("Memory probe failed: %s", e)
            return None
        if not reading:
            return None
        used, limit = reading
        return used / limit if limit > 0 else None

    def _check_alerts(self, now: float) -> list[Alert]:
        m = self._metrics
        raised = []
        checks = (
            ("low_fps", m.fps < self.alert_fps,
             {"fps": m.fps, "threshold": self.alert_fps}),
            ("high_frame_time", m.frame_time > self.max_frame_time,
             {"frame_time": m.frame_time, "threshold": self.max_frame_time}),
            ("high_memory", m.memory_ratio is not None and m.memory_ratio > self.memory_threshold,
             {"usage": m.memory_ratio, "threshold": self.memory_threshold}),
        )
        for alert_type, triggered, data in checks:
            if not triggered:
                self._active.discard(alert_type)
                continue
            # Log and notify on entry into the alert state, not every frame
            entering = alert_type not in self._active
            self._active.add(alert_type)
            raised.append(self.add_alert(alert_type, data, now, notify=entering))
        return raised

    def add_alert(self, alert_type: str, data: dict, timestamp: float, notify: bool = True) -> Alert:
        """Append to the bounded alert log."""
        alert = Alert(type=alert_type, data=data, timestamp=timestamp)
        self._alerts.append(alert)
        if notify:
            logger.warning("Performance alert [%s]: %s", alert_type, data)
            if self.on_alert:
                self.on_alert(alert)
        return alert

    # -- performance mode ------------------------------------------------

    def enable_performance_mode(self) -> float:
        """Halve the sampling rate (floor 15) and keep only recent samples."""
        self.sample_rate = max(MIN_SAMPLE_RATE, self.sample_rate / 2)
        recent = list(self._samples)[-PERFORMANCE_MODE_SAMPLES:]
        self._samples.clear()
        self._samples.extend(recent)
        self._performance_mode = True
        logger.info("Performance mode enabled (sample rate %.1f)", self.sample_rate)
        return self.sample_rate

    def disable_performance_mode(self) -> float:
        self.sample_rate = self.base_sample_rate
        self._performance_mode = False
        logger.info("Performance mode disabled")
        return self.sample_rate

    @property
    def performance_mode(self) -> bool:
        return self._performance_mode

    @property
    def sampling_stride(self) -> int:
        """Keep one of every N input samples."""
        return max(1, round(self.base_sample_rate / self.sample_rate))

    # -- queries ---------------------------------------------------------

    @property
    def fps(self) -> float:
        return self._metrics.fps

    @property
    def frame_time(self) -> float:
        return self._metrics.frame_time

    def metrics(self) -> dict:
        m = self._metrics
        return {
            "fps": m.fps,
            "frame_time": m.frame_time,
            "memory_ratio": m.memory_ratio,
            "frames": m.frames,
            "sample_rate": self.sample_rate,
            "performance_mode": self._performance_mode,
        }

    def recent_samples(self, count: int = REPORT_WINDOW) -> list[FrameSample]:
        return list(self._samples)[-count:] if count > 0 else []

    def alerts(self, since: float = 0.0) -> list[Alert]:
        return [a for a in self._alerts if a.timestamp >= since]

    def recent_alerts(self, count: int = 10) -> list[Alert]:
        return list(self._alerts)[-count:] if count > 0 else []

    def report(self, now: Optional[float] = None) -> dict:
        samples = self.recent_samples()
        if not samples:
            return {"error": "No samples available"}

        fps = [s.fps for s in samples]
        frame_times = [s.frame_time for s in samples]
        now = samples[-1].timestamp if now is None else now
        return {
            "fps": {
                "current": self._metrics.fps,
                "average": sum(fps) / len(fps),
                "min": min(fps),
                "max": max(fps),
            },
            "frame_time": {
                "current": self._metrics.frame_time,
                "average": sum(frame_times) / len(frame_times),
                "max": max(frame_times),
            },
            "memory_ratio": self._metrics.memory_ratio,
            "alerts": self.alerts(now - REPORT_ALERT_WINDOW_MS),
            "sample_count": len(samples),
            "monitoring": self._monitoring,
        }

    def reset(self):
        self._metrics = MonitorMetrics(fps=self.base_sample_rate, frame_time=1000.0 / self.base_sample_rate)
        self._samples.clear()
        self._alerts.clear()
        self._active.clear()
        self._last_frame = None
