"""GestureEngine: ingestion, the tick loop and the host-facing API.

Everything runs on one logical thread. Input callbacks call ``feed`` /
``end_channel``; the frame loop calls ``tick`` (or awaits ``run``). Inputs
from other threads go through ``feed_threadsafe`` and are drained at the
start of the next tick.

Sample timestamps drive the detectors and may use any epoch. Sequence
timing follows the tick clock: lifecycle and emitted events are stamped
with the time of the tick that consumes them.

Usage:
    engine = GestureEngine()
    (engine.register("undo")
        .pattern("swipe", direction="left")
        .handler(lambda event: editor.undo()))
    engine.start()

    # Input callbacks:
    engine.feed(POINTER, {"x": 10, "y": 20, "timestamp": t})

    # Frame callback:
    engine.tick()
"""

from __future__ import annotations

import asyncio
import logging
import queue
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Hashable, Mapping, Optional

from hmi_gestures.config import EngineConfig, load_gesture_specs
from hmi_gestures.contexts import ContextManager, GestureContext
from hmi_gestures.dispatcher import GestureDispatcher, GestureEvent, RegistrationBuilder
from hmi_gestures.errors import ConfigurationError, IngestionError
from hmi_gestures.events import BusEvent, DispatchReport, EventBus
from hmi_gestures.factory import Builder, DetectorFactory
from hmi_gestures.metrics import MetricsCollector
from hmi_gestures.monitor import Alert, MemoryProbe, PerformanceMonitor
from hmi_gestures.patterns import DetectionInput, Detector, TouchTrack
from hmi_gestures.profiler import TickProfiler
from hmi_gestures.recorder import SampleRecorder
from hmi_gestures.samples import (
    POINTER,
    POINTER_DOWN,
    POINTER_UP,
    TOUCH_END,
    TOUCH_START,
    Sample,
    SampleBuffer,
)
from hmi_gestures.sequences import SequenceEvent

logger = logging.getLogger("hmi_gestures.engine")

NORMAL = "normal"
PERFORMANCE = "performance"

ENGINE_STARTED = "engine-started"
ENGINE_STOPPED = "engine-stopped"
PERFORMANCE_ALERT = "performance-alert"
PERFORMANCE_ISSUE = "performance-issue"
PERFORMANCE_MODE = "performance-mode"


def _default_clock() -> float:
    return time.perf_counter() * 1000.0


class GestureEngine:
    """Facade over the buffer, dispatcher, event bus and monitor."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], float]] = None,
        factory: Optional[DetectorFactory] = None,
        memory_probe: Optional[MemoryProbe] = None,
    ):
        self.config = config or EngineConfig()
        self._clock = clock or _default_clock
        cfg = self.config

        self.buffer = SampleBuffer(cfg.buffer_capacity)
        self.bus = EventBus(
            max_history=cfg.history_size,
            frame_budget_ms=cfg.frame_budget_ms,
            clock=self._clock,
            on_slow_dispatch=self._on_slow_dispatch,
        )
        self.profiler = TickProfiler(budget_ms=cfg.frame_budget_ms)
        self.metrics = MetricsCollector()
        self.monitor = PerformanceMonitor(
            sample_rate=cfg.tick_rate,
            alert_fps=cfg.alert_fps,
            max_frame_time=cfg.max_frame_time_ms,
            memory_threshold=cfg.memory_threshold,
            alpha=cfg.smoothing,
            max_samples=cfg.max_frame_samples,
            max_alerts=cfg.max_alerts,
            memory_probe=memory_probe,
            on_alert=self._on_alert,
        )
        self.dispatcher = GestureDispatcher(
            factory=factory,
            bus=self.bus,
            profiler=self.profiler,
            metrics=self.metrics,
            default_cooldown_ms=cfg.default_cooldown_ms,
            degraded_ticks=cfg.degraded_ticks,
        )
        self.contexts = ContextManager(self.bus)
        self.diagnostics = EngineDiagnostics(self)

        self._inbox: queue.SimpleQueue = queue.SimpleQueue()
        self._ending: list[Hashable] = []
        self._strides: dict[Hashable, int] = {}
        self._recorder: Optional[SampleRecorder] = None
        self._running = False
        self._paused = False
        self._mode = NORMAL

    # -- ingestion -------------------------------------------------------

    def feed(self, channel_id: Hashable, sample: Sample | Mapping[str, Any]) -> bool:
        """Record one input sample.

        Malformed samples are dropped and logged; the channel is untouched.

        Returns:
            True if the sample was stored in the buffer.
        """
        with self.profiler.stage("ingest"):
            try:
                sample = sample.validate() if isinstance(sample, Sample) else Sample.from_dict(sample)
            except IngestionError as e:
                logger.warning("Dropped sample on channel %s: %s", channel_id, e)
                self.metrics.record_sample(False)
                return False

            if self._is_ending(channel_id):
                self._finish_channel(channel_id)

            opening = channel_id not in self.buffer
            if not opening and not self._keep_sample(channel_id):
                return False

            self.buffer.push(channel_id, sample)
            self.metrics.record_sample(True)
            if self._recorder:
                self._recorder.record_sample(channel_id, sample)

            if opening:
                self.dispatcher.push_event(SequenceEvent(
                    type=POINTER_DOWN if channel_id == POINTER else TOUCH_START,
                    data={
                        "channel": channel_id, "x": sample.x, "y": sample.y,
                        "input_timestamp": sample.timestamp,
                    },
                ))
            return True

    def _keep_sample(self, channel_id: Hashable) -> bool:
        stride = self.monitor.sampling_stride if self._mode == PERFORMANCE else 1
        if stride <= 1:
            return True
        count = self._strides.get(channel_id, 0) + 1
        self._strides[channel_id] = count
        return count % stride == 0

    def end_channel(self, channel_id: Hashable, timestamp: Optional[float] = None) -> bool:
        """Mark a pointer/touch as lifted.

        While the engine runs, the history stays visible to the next tick
        and is cleared right after it.
        """
        if channel_id not in self.buffer or self._is_ending(channel_id):
            return False
        timestamp = self._clock() if timestamp is None else timestamp
        if self._recorder:
            self._recorder.record_end(channel_id, timestamp)

        last = self.buffer.latest(channel_id)
        self.dispatcher.push_event(SequenceEvent(
            type=POINTER_UP if channel_id == POINTER else TOUCH_END,
            data={"channel": channel_id, "x": last.x, "y": last.y, "input_timestamp": timestamp},
        ))

        if self._running and not self._paused:
            self._ending.append(channel_id)
        else:
            self._finish_channel(channel_id)
        return True

    def _is_ending(self, channel_id: Hashable) -> bool:
        return channel_id in self._ending

    def _finish_channel(self, channel_id: Hashable):
        self._ending = [ch for ch in self._ending if ch != channel_id]
        self._strides.pop(channel_id, None)
        self.buffer.end_channel(channel_id)

    def feed_threadsafe(self, channel_id: Hashable, sample: Sample | Mapping[str, Any]):
        """Queue a sample from any thread; applied at the start of the next tick."""
        self._inbox.put(("feed", channel_id, sample))

    def end_channel_threadsafe(self, channel_id: Hashable, timestamp: Optional[float] = None):
        self._inbox.put(("end", channel_id, timestamp))

    def _drain_inbox(self):
        while True:
            try:
                kind, channel_id, value = self._inbox.get_nowait()
            except queue.Empty:
                return
            if kind == "feed":
                self.feed(channel_id, value)
            else:
                self.end_channel(channel_id, value)

    def emit(self, event_type: str, data: Optional[Mapping[str, Any]] = None,
             timestamp: Optional[float] = None) -> DispatchReport:
        """Publish an external event (key press, speech...) on the bus.

        The event is also a sequence candidate for the next tick, timed by
        that tick. ``timestamp`` is what an attached recorder stores.
        """
        timestamp = self._clock() if timestamp is None else timestamp
        data = dict(data or {})
        if self._recorder:
            self._recorder.record_event(event_type, data, timestamp)
        self.dispatcher.push_event(SequenceEvent(type=event_type, data=data))
        return self.bus.publish(event_type, data)

    # -- registration ----------------------------------------------------

    def register(self, name: str) -> RegistrationBuilder:
        """Start a fluent registration. Raises ConfigurationError on a duplicate name."""
        return self.dispatcher.register(name)

    def unregister(self, name: str) -> bool:
        return self.dispatcher.unregister(name)

    def load_gestures(self, path: str | Path) -> dict[str, RegistrationBuilder]:
        """Register every gesture in a YAML file, all or nothing."""
        specs = load_gesture_specs(path)
        handles: dict[str, RegistrationBuilder] = {}
        try:
            for spec in specs:
                handle = self.register(spec.name)
                handles[spec.name] = handle
                if spec.cooldown is not None:
                    handle.cooldown(spec.cooldown)
                handle.pattern(spec.pattern, **spec.params)
        except ConfigurationError:
            for handle in handles.values():
                handle.stop()
            raise
        logger.info("Loaded %d gestures from %s", len(handles), path)
        return handles

    def register_pattern_type(self, pattern_type: str, builder: Builder, replace: bool = False):
        self.dispatcher.factory.register(pattern_type, builder, replace=replace)

    def create_detector(self, pattern_type: str, **params) -> Detector:
        """A standalone detector for any registered pattern type."""
        return self.dispatcher.factory.build(pattern_type, **params)

    def register_context(self, context: GestureContext):
        self.contexts.register(context)

    # -- events ----------------------------------------------------------

    def on(
        self,
        event_name: str,
        handler: Callable[[BusEvent], Any],
        once: bool = False,
        throttle_ms: float = 0.0,
        debounce_ms: float = 0.0,
    ) -> Callable[[], bool]:
        return self.bus.subscribe(
            event_name, handler, once=once, throttle_ms=throttle_ms, debounce_ms=debounce_ms,
        )

    def off(self, event_name: str, handler: Callable) -> bool:
        return self.bus.off(event_name, handler)

    # -- lifecycle -------------------------------------------------------

    def start(self, context_id: Optional[str] = None, now: Optional[float] = None):
        """Begin detection, optionally with a single active context."""
        if context_id is not None:
            self.contexts.set_active(context_id)
        else:
            self.contexts.activate_all()

        if self._running:
            return
        self._running = True
        self._paused = False
        self.monitor.start(self._clock() if now is None else now)
        logger.info("Gesture engine started (context=%s)", context_id or "all")
        self.bus.publish(ENGINE_STARTED, {"context": context_id})

    def stop(self):
        """No detection pass runs after this returns."""
        if not self._running:
            return
        self._running = False
        self._paused = False
        self.monitor.stop()
        self.dispatcher.sequences.reset()
        for channel_id in list(self._ending):
            self._finish_channel(channel_id)
        logger.info("Gesture engine stopped")
        self.bus.publish(ENGINE_STOPPED, {})

    def pause(self):
        if self._running and not self._paused:
            self._paused = True
            self.monitor.stop()
            logger.info("Gesture engine paused")

    def resume(self, now: Optional[float] = None):
        if self._running and self._paused:
            self._paused = False
            self.monitor.start(self._clock() if now is None else now)
            logger.info("Gesture engine resumed")

    def set_mode(self, mode: str):
        if mode not in (NORMAL, PERFORMANCE):
            raise ConfigurationError(f"mode must be '{NORMAL}' or '{PERFORMANCE}', got {mode!r}")
        if mode == self._mode:
            return
        self._mode = mode
        self._strides.clear()
        if mode == PERFORMANCE:
            rate = self.monitor.enable_performance_mode()
            self.buffer.set_capacity(max(1, self.config.buffer_capacity // 2))
        else:
            rate = self.monitor.disable_performance_mode()
            self.buffer.set_capacity(self.config.buffer_capacity)
        self.bus.publish(PERFORMANCE_MODE, {"mode": mode, "sample_rate": rate})

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return self._paused

    # -- ticking ---------------------------------------------------------

    def tick(self, now: Optional[float] = None) -> list[GestureEvent]:
        """Run one detection pass. Does nothing while stopped or paused.

        Returns:
            The gestures fired this tick.
        """
        if not self._running or self._paused:
            return []
        now = self._clock() if now is None else now
        t0 = time.perf_counter()

        self._drain_inbox()
        fired = self.dispatcher.tick(self._frame(now), now)
        for event in fired:
            self.contexts.dispatch(event)
        self.bus.flush(now)

        for channel_id in list(self._ending):
            self._finish_channel(channel_id)

        elapsed = time.perf_counter() - t0
        self.profiler.record("tick", elapsed * 1000.0)
        self.metrics.record_tick(elapsed)
        self.monitor.record_frame(now)
        self._check_performance(now)
        self.metrics.set_gauges(self.monitor.fps, self._mode == PERFORMANCE, len(self.dispatcher))
        return fired

    def _frame(self, now: float) -> DetectionInput:
        touches = tuple(
            TouchTrack(
                channel_id=ch,
                origin=self.buffer.origin(ch),
                samples=self.buffer.snapshot(ch),
            )
            for ch in self.buffer.touch_channels
        )
        return DetectionInput(points=self.buffer.snapshot(POINTER), touches=touches, timestamp=now)

    def _check_performance(self, now: float):
        if not self.config.auto_performance_mode or self._mode == PERFORMANCE:
            return
        fps = self.monitor.fps
        if fps < self.config.emergency_fps:
            logger.warning("Fps %.1f below %.1f, enabling performance mode", fps, self.config.emergency_fps)
            self.bus.publish(PERFORMANCE_ISSUE, {
                "fps": fps, "threshold": self.config.emergency_fps, "timestamp": now,
            })
            self.set_mode(PERFORMANCE)

    async def run(self, max_ticks: Optional[int] = None):
        """Pace ticks at ``config.tick_rate`` until ``stop()`` is called."""
        interval = 1.0 / self.config.tick_rate
        if not self._running:
            self.start()
        ticks = 0
        while self._running and (max_ticks is None or ticks < max_ticks):
            started = time.perf_counter()
            self.tick()
            ticks += 1
            await asyncio.sleep(max(0.0, interval - (time.perf_counter() - started)))

    # -- recording -------------------------------------------------------

    def attach_recorder(self, recorder: SampleRecorder):
        self._recorder = recorder

    def detach_recorder(self) -> Optional[SampleRecorder]:
        recorder, self._recorder = self._recorder, None
        return recorder

    # -- diagnostics -----------------------------------------------------

    def get_metrics(self) -> dict:
        return {
            "fps": self.monitor.fps,
            "frame_time": self.monitor.frame_time,
            "triggered_counts": self.dispatcher.triggered_counts(),
            "recent_alerts": [asdict(a) for a in self.monitor.recent_alerts()],
            "registration_count": len(self.dispatcher),
            "mode": self._mode,
            "running": self._running,
            "paused": self._paused,
            "ticks": self.dispatcher.tick_count,
            "dropped_samples": self.metrics.dropped_samples,
            "bus": self.bus.metrics(),
            "profiler": self.profiler.summary(),
        }

    def _on_alert(self, alert: Alert):
        self.bus.publish(PERFORMANCE_ALERT, asdict(alert))

    def _on_slow_dispatch(self, report: DispatchReport):
        if report.event.type == PERFORMANCE_ALERT:
            return
        self.monitor.add_alert(
            "slow_dispatch",
            {"event": report.event.type, "duration_ms": report.duration_ms, "listeners": report.listeners},
            report.event.timestamp,
        )


class EngineDiagnostics:
    """Read-mostly view of an engine, handed to the host application."""

    def __init__(self, engine: GestureEngine):
        self._engine = engine

    def get_state(self) -> dict:
        engine = self._engine
        return {
            "running": engine.running,
            "paused": engine.paused,
            "mode": engine.mode,
            "registrations": engine.dispatcher.describe(),
            "channels": {str(ch): len(engine.buffer.snapshot(ch)) for ch in engine.buffer.channels},
            "buffer_capacity": engine.buffer.capacity,
            "contexts": engine.contexts.names,
            "active_contexts": engine.contexts.active_names,
            "pattern_types": engine.dispatcher.factory.types,
        }

    def get_metrics(self) -> dict:
        return self._engine.get_metrics()

    def performance_report(self) -> dict:
        return self._engine.monitor.report()

    def recent_events(self, event_type: Optional[str] = None, limit: int = 20) -> list[BusEvent]:
        return self._engine.bus.history(event_type=event_type, limit=limit)

    def switch_context(self, name: str):
        self._engine.contexts.set_active(name)

    def toggle_detection(self) -> bool:
        """Pause or resume. Returns True if detection is now running."""
        engine = self._engine
        if not engine.running:
            engine.start()
        elif engine.paused:
            engine.resume()
        else:
            engine.pause()
        return engine.running and not engine.paused

    def render_prometheus(self) -> str:
        return self._engine.metrics.render()
