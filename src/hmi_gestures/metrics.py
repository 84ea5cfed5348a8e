"""Prometheus text exposition of engine counters.

Rendered by ``EngineDiagnostics.render_prometheus()`` and the CLI
``benchmark`` command; the host decides where to expose it.

Tracked metrics:
- hmi_gestures_detections_total (counter, by gesture name)
- hmi_gestures_suppressed_total (counter, by gesture name)
- hmi_gestures_handler_errors_total (counter, by gesture name)
- hmi_gestures_pattern_errors_total (counter, by gesture name)
- hmi_gestures_samples_total / hmi_gestures_samples_dropped_total (counters)
- hmi_gestures_ticks_total (counter)
- hmi_gestures_tick_latency_seconds (histogram)
- hmi_gestures_fps, hmi_gestures_performance_mode, hmi_gestures_registrations (gauges)
"""

from __future__ import annotations

import threading
import time
from collections import Counter


class _Histogram:
    """Cumulative-bucket histogram."""

    def __init__(self, buckets: list[float]):
        self.buckets = sorted(buckets)
        self.bucket_counts = [0] * len(self.buckets)
        self.count = 0
        self.sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float):
        with self._lock:
            self.count += 1
            self.sum += value
            for i, b in enumerate(self.buckets):
                if value <= b:
                    self.bucket_counts[i] += 1
                    break

    def render(self, name: str, help_text: str) -> list[str]:
        lines = [
            f"# HELP {name} {help_text}",
            f"# TYPE {name} histogram",
        ]
        with self._lock:
            cumulative = 0
            for i, b in enumerate(self.buckets):
                cumulative += self.bucket_counts[i]
                lines.append(f'{name}_bucket{{le="{b}"}} {cumulative}')
            lines.append(f'{name}_bucket{{le="+Inf"}} {self.count}')
            lines.append(f"{name}_sum {self.sum:.6f}")
            lines.append(f"{name}_count {self.count}")
        return lines


def _labelled(name: str, help_text: str, label: str, counts: Counter) -> list[str]:
    lines = [f"# HELP {name} {help_text}", f"# TYPE {name} counter"]
    for key, count in sorted(counts.items()):
        lines.append(f'{name}{{{label}="{key}"}} {count}')
    return lines


def _scalar(name: str, kind: str, help_text: str, value) -> list[str]:
    return [f"# HELP {name} {help_text}", f"# TYPE {name} {kind}", f"{name} {value}"]


class MetricsCollector:
    """Thread-safe engine counters, rendered as Prometheus text."""

    def __init__(self):
        self._detections: Counter = Counter()
        self._suppressed: Counter = Counter()
        self._handler_errors: Counter = Counter()
        self._pattern_errors: Counter = Counter()
        self._samples = 0
        self._dropped = 0
        self._ticks = 0
        self._fps = 0.0
        self._performance_mode = False
        self._registrations = 0
        self._lock = threading.Lock()

        # Tick latency buckets from 0.5ms to 100ms
        self._latency = _Histogram(
            [0.0005, 0.001, 0.002, 0.005, 0.010, 0.016, 0.033, 0.050, 0.100]
        )
        self._start_time = time.time()

    def record_detection(self, name: str):
        with self._lock:
            self._detections[name] += 1

    def record_suppressed(self, name: str):
        with self._lock:
            self._suppressed[name] += 1

    def record_handler_error(self, name: str):
        with self._lock:
            self._handler_errors[name] += 1

    def record_pattern_error(self, name: str):
        with self._lock:
            self._pattern_errors[name] += 1

    def record_sample(self, accepted: bool):
        with self._lock:
            if accepted:
                self._samples += 1
            else:
                self._dropped += 1

    def record_tick(self, latency_seconds: float):
        with self._lock:
            self._ticks += 1
        self._latency.observe(latency_seconds)

    def set_gauges(self, fps: float, performance_mode: bool, registrations: int):
        with self._lock:
            self._fps = fps
            self._performance_mode = performance_mode
            self._registrations = registrations

    def render(self) -> str:
        lines: list[str] = []
        with self._lock:
            sections = [
                _scalar("hmi_gestures_uptime_seconds", "gauge",
                        "Time since the collector was created",
                        f"{time.time() - self._start_time:.1f}"),
                _labelled("hmi_gestures_detections_total",
                          "Gestures fired by registration name", "gesture", self._detections),
                _labelled("hmi_gestures_suppressed_total",
                          "Matches suppressed by cooldown", "gesture", self._suppressed),
                _labelled("hmi_gestures_handler_errors_total",
                          "Handler exceptions by registration name", "gesture", self._handler_errors),
                _labelled("hmi_gestures_pattern_errors_total",
                          "Pattern evaluation errors by registration name", "gesture", self._pattern_errors),
                _scalar("hmi_gestures_samples_total", "counter",
                        "Samples accepted into the buffer", self._samples),
                _scalar("hmi_gestures_samples_dropped_total", "counter",
                        "Malformed samples dropped at ingestion", self._dropped),
                _scalar("hmi_gestures_ticks_total", "counter",
                        "Detection passes run", self._ticks),
                _scalar("hmi_gestures_fps", "gauge",
                        "Smoothed ticks per second", f"{self._fps:.2f}"),
                _scalar("hmi_gestures_performance_mode", "gauge",
                        "1 while performance mode is enabled", int(self._performance_mode)),
                _scalar("hmi_gestures_registrations", "gauge",
                        "Registered gestures", self._registrations),
            ]
        sections.append(self._latency.render(
            "hmi_gestures_tick_latency_seconds", "Detection pass latency in seconds",
        ))
        for section in sections:
            lines.extend(section)
            lines.append("")
        return "\n".join(lines) + "\n"

    @property
    def detection_counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self._detections)

    @property
    def dropped_samples(self) -> int:
        with self._lock:
            return self._dropped

    @property
    def ticks(self) -> int:
        with self._lock:
            return self._ticks
