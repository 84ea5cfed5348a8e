"""Gesture registry and per-tick dispatch.

Each tick, every active registration is evaluated in registration order:

    conditions (AND) -> pattern -> cooldown -> fire (stats, handlers, bus)

Handlers, conditions and user detectors are isolated: an exception in one
is logged and never aborts the rest of the tick.

Usage:
    dispatcher = GestureDispatcher(bus=bus)
    (dispatcher.register("undo")
        .pattern("swipe", direction="left", min_distance=80)
        .condition(lambda: editor.has_history)
        .cooldown(500)
        .handler(lambda event: editor.undo()))

    fired = dispatcher.tick(frame, now)
"""

from __future__ import annotations

import itertools
import logging
import math
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Iterator, Optional

from hmi_gestures.errors import ConfigurationError
from hmi_gestures.factory import SEQUENCE, DetectorFactory
from hmi_gestures.patterns import DetectionInput, DetectionResult, Detector, GesturePattern
from hmi_gestures.sequences import GestureSequence, SequenceEngine, SequenceEvent

if TYPE_CHECKING:
    from hmi_gestures.events import EventBus
    from hmi_gestures.metrics import MetricsCollector
    from hmi_gestures.profiler import TickProfiler

logger = logging.getLogger("hmi_gestures.dispatcher")

DEFAULT_COOLDOWN_MS = 100.0
DEFAULT_DEGRADED_TICKS = 30
GESTURE_DETECTED = "gesture-detected"
PATTERN_ERROR = "pattern-error"

Condition = Callable[[], bool]


@dataclass
class RegistrationStats:
    """Trigger statistics plus diagnostic counters."""
    trigger_count: int = 0
    average_confidence: float = 0.0
    total_confidence: float = 0.0
    suppressed_count: int = 0
    handler_errors: int = 0
    pattern_errors: int = 0

    def record_trigger(self, confidence: float):
        self.trigger_count += 1
        self.total_confidence += confidence
        self.average_confidence = self.total_confidence / self.trigger_count

    def to_dict(self) -> dict:
        return {
            "trigger_count": self.trigger_count,
            "average_confidence": self.average_confidence,
            "suppressed_count": self.suppressed_count,
            "handler_errors": self.handler_errors,
            "pattern_errors": self.pattern_errors,
        }


@dataclass
class GestureEvent:
    """Passed to handlers and published as ``gesture-detected``."""
    name: str
    type: str
    result: DetectionResult
    timestamp: float
    stats: dict = field(default_factory=dict)
    registration_id: int = 0

    @property
    def confidence(self) -> float:
        return self.result.confidence

    @property
    def payload(self) -> dict:
        return self.result.payload


@dataclass
class GestureRegistration:
    """One named binding. Owned by the registry; inactive until it has a pattern."""
    id: int
    name: str
    pattern: Optional[GesturePattern] = None
    detector: Optional[Detector] = None
    conditions: list[Condition] = field(default_factory=list)
    cooldown_ms: float = DEFAULT_COOLDOWN_MS
    last_triggered_at: Optional[float] = None
    handlers: list[Callable[[GestureEvent], Any]] = field(default_factory=list)
    stats: RegistrationStats = field(default_factory=RegistrationStats)
    active: bool = False
    paused: bool = False
    removed: bool = False
    degraded_ticks_left: int = 0

    @property
    def degraded(self) -> bool:
        return self.degraded_ticks_left > 0

    def describe(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "pattern": self.pattern.to_dict() if self.pattern else None,
            "cooldown_ms": self.cooldown_ms,
            "conditions": len(self.conditions),
            "handlers": len(self.handlers),
            "active": self.active,
            "paused": self.paused,
            "degraded": self.degraded,
            "last_triggered_at": self.last_triggered_at,
            "stats": self.stats.to_dict(),
        }


class GestureRegistry:
    """Registrations by unique name, iterated in registration order."""

    def __init__(self):
        self._by_name: dict[str, GestureRegistration] = {}
        self._ids = itertools.count(1)

    def create(self, name: str, cooldown_ms: float = DEFAULT_COOLDOWN_MS) -> GestureRegistration:
        """Reserve ``name``.

        Raises:
            ConfigurationError: if the name is empty or already registered.
        """
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f"gesture name must be a non-empty string, got {name!r}")
        if name in self._by_name:
            raise ConfigurationError(f"gesture '{name}' is already registered")
        registration = GestureRegistration(id=next(self._ids), name=name, cooldown_ms=cooldown_ms)
        self._by_name[name] = registration
        return registration

    def remove(self, registration: GestureRegistration) -> bool:
        """Remove this exact registration (not a later one reusing its name)."""
        if self._by_name.get(registration.name) is not registration:
            return False
        del self._by_name[registration.name]
        registration.removed = True
        registration.active = False
        return True

    def get(self, name: str) -> Optional[GestureRegistration]:
        return self._by_name.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._by_name)

    def __iter__(self) -> Iterator[GestureRegistration]:
        return iter(list(self._by_name.values()))

    def __len__(self) -> int:
        return len(self._by_name)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name


class RegistrationBuilder:
    """Fluent registration that doubles as the control handle.

    The registration becomes active when ``pattern()`` succeeds;
    conditions, cooldown and handlers may be added before or after.
    """

    def __init__(self, dispatcher: GestureDispatcher, registration: GestureRegistration):
        self._dispatcher = dispatcher
        self._registration = registration

    def pattern(self, pattern_type: str, **params) -> RegistrationBuilder:
        reg = self._registration
        if reg.removed:
            raise ConfigurationError(f"gesture '{reg.name}' was removed")
        if reg.pattern is not None:
            raise ConfigurationError(f"gesture '{reg.name}' already has a pattern")
        self._dispatcher._activate(reg, GesturePattern(type=pattern_type, params=params))
        return self

    def condition(self, predicate: Condition) -> RegistrationBuilder:
        if not callable(predicate):
            raise ConfigurationError(f"condition must be callable, got {predicate!r}")
        self._registration.conditions.append(predicate)
        return self

    when = condition

    def cooldown(self, ms: float) -> RegistrationBuilder:
        if isinstance(ms, bool) or not isinstance(ms, (int, float)) or not math.isfinite(ms) or ms < 0:
            raise ConfigurationError(f"cooldown must be a finite number >= 0, got {ms!r}")
        self._registration.cooldown_ms = float(ms)
        return self

    def handler(self, callback: Callable[[GestureEvent], Any]) -> RegistrationBuilder:
        if not callable(callback):
            raise ConfigurationError(f"handler must be callable, got {callback!r}")
        self._registration.handlers.append(callback)
        return self

    on = handler

    def stop(self) -> bool:
        """Unregister. The name becomes available again."""
        return self._dispatcher.unregister(self._registration)

    def pause(self):
        self._dispatcher.pause(self._registration)

    def resume(self):
        self._dispatcher.resume(self._registration)

    @property
    def name(self) -> str:
        return self._registration.name

    @property
    def active(self) -> bool:
        reg = self._registration
        return reg.active and not reg.paused

    @property
    def stats(self) -> dict:
        return self._registration.stats.to_dict()

    def describe(self) -> dict:
        return self._registration.describe()


class GestureDispatcher:
    """Runs one detection pass per tick over the registry."""

    def __init__(
        self,
        factory: Optional[DetectorFactory] = None,
        bus: Optional[EventBus] = None,
        profiler: Optional[TickProfiler] = None,
        metrics: Optional[MetricsCollector] = None,
        default_cooldown_ms: float = DEFAULT_COOLDOWN_MS,
        degraded_ticks: int = DEFAULT_DEGRADED_TICKS,
    ):
        self.registry = GestureRegistry()
        self.factory = factory or DetectorFactory()
        self.sequences = SequenceEngine()
        self.bus = bus
        self.profiler = profiler
        self.metrics = metrics
        self.default_cooldown_ms = default_cooldown_ms
        self.degraded_ticks = degraded_ticks
        self._pending: list[SequenceEvent] = []
        self._ticks = 0

    # -- registration ----------------------------------------------------

    def register(self, name: str) -> RegistrationBuilder:
        registration = self.registry.create(name, self.default_cooldown_ms)
        return RegistrationBuilder(self, registration)

    def _activate(self, registration: GestureRegistration, pattern: GesturePattern):
        try:
            if pattern.type == SEQUENCE:
                self.sequences.add(
                    registration.id, GestureSequence.from_params(registration.name, pattern.params)
                )
                detector = None
            else:
                detector = self.factory.create(pattern)
        except ConfigurationError:
            # Release the name so a corrected registration can be made
            self.registry.remove(registration)
            raise

        registration.pattern = pattern
        registration.detector = detector
        registration.active = True
        logger.info("Registered gesture %s (%s)", registration.name, pattern.type)

    def unregister(self, registration: GestureRegistration | str) -> bool:
        if isinstance(registration, str):
            registration = self.registry.get(registration)
            if registration is None:
                return False
        if not self.registry.remove(registration):
            return False
        self.sequences.remove(registration.id)
        logger.info("Unregistered gesture %s", registration.name)
        return True

    def pause(self, registration: GestureRegistration):
        registration.paused = True
        self.sequences.reset(registration.id)

    def resume(self, registration: GestureRegistration):
        registration.paused = False

    # -- ticking ---------------------------------------------------------

    def push_event(self, event: SequenceEvent):
        """Queue a candidate event for sequence matching on the next tick.

        An event without a timestamp is stamped with that tick's time, so
        sequence deadlines run on the same clock as the ticks.
        """
        self._pending.append(event)

    def tick(self, frame: DetectionInput, now: float) -> list[GestureEvent]:
        """Evaluate every active registration once.

        Returns:
            The gestures fired this tick, in registration order.
        """
        self._ticks += 1
        candidates, self._pending = self._pending, []
        for candidate in candidates:
            if candidate.timestamp is None:
                candidate.timestamp = now
        if candidates:
            frame = replace(frame, events=tuple(candidates))
        fired: list[GestureEvent] = []

        for reg in self.registry:
            if reg.removed or not reg.active or reg.paused:
                continue
            if reg.degraded_ticks_left > 0:
                reg.degraded_ticks_left -= 1
                continue

            with self._stage("conditions"):
                allowed = self._conditions_pass(reg)
            if not allowed:
                continue

            result = self._evaluate(reg, frame, candidates, now)
            if result is None or not result.matches:
                continue

            if reg.last_triggered_at is not None and now - reg.last_triggered_at < reg.cooldown_ms:
                reg.stats.suppressed_count += 1
                if self.metrics:
                    self.metrics.record_suppressed(reg.name)
                continue

            fired.append(self._fire(reg, result, now))

        return fired

    def _conditions_pass(self, reg: GestureRegistration) -> bool:
        for condition in reg.conditions:
            try:
                if not condition():
                    return False
            except Exception as e:
                logger.error("Condition error for %s: %s", reg.name, e)
                return False
        return True

    def _evaluate(
        self,
        reg: GestureRegistration,
        frame: DetectionInput,
        candidates: list[SequenceEvent],
        now: float,
    ) -> Optional[DetectionResult]:
        is_sequence = reg.pattern.type == SEQUENCE
        try:
            with self._stage("sequence" if is_sequence else "detection"):
                if is_sequence:
                    return self.sequences.advance(reg.id, candidates, now)
                return DetectionResult.coerce(reg.detector(frame))
        except Exception as e:
            reg.stats.pattern_errors += 1
            reg.degraded_ticks_left = self.degraded_ticks
            logger.error(
                "Pattern error for %s, degraded for %d ticks: %s",
                reg.name, self.degraded_ticks, e,
            )
            if self.metrics:
                self.metrics.record_pattern_error(reg.name)
            if self.bus:
                self.bus.publish(PATTERN_ERROR, {"name": reg.name, "error": str(e)})
            return None

    def _fire(self, reg: GestureRegistration, result: DetectionResult, now: float) -> GestureEvent:
        reg.last_triggered_at = now
        reg.stats.record_trigger(result.confidence)

        event = GestureEvent(
            name=reg.name,
            type=reg.pattern.type,
            result=result,
            timestamp=now,
            stats=reg.stats.to_dict(),
            registration_id=reg.id,
        )
        logger.debug("Gesture %s fired (confidence %.2f)", reg.name, result.confidence)

        with self._stage("handlers"):
            for handler in list(reg.handlers):
                try:
                    handler(event)
                except Exception as e:
                    reg.stats.handler_errors += 1
                    logger.error("Gesture handler error for %s: %s", reg.name, e)
                    if self.metrics:
                        self.metrics.record_handler_error(reg.name)

        if self.metrics:
            self.metrics.record_detection(reg.name)

        self._pending.append(SequenceEvent(
            type=reg.name, timestamp=now, data=dict(result.payload), pattern=reg.pattern.type,
        ))

        if self.bus:
            with self._stage("publish"):
                self.bus.publish(GESTURE_DETECTED, event)
        return event

    def _stage(self, name: str):
        return self.profiler.stage(name) if self.profiler else nullcontext()

    # -- queries ---------------------------------------------------------

    def triggered_counts(self) -> dict[str, int]:
        return {reg.name: reg.stats.trigger_count for reg in self.registry}

    def describe(self) -> list[dict]:
        return [reg.describe() for reg in self.registry]

    def reset(self):
        """Clear cooldowns, sequence progress and queued candidates."""
        for reg in self.registry:
            reg.last_triggered_at = None
            reg.degraded_ticks_left = 0
        self.sequences.reset()
        self._pending.clear()

    @property
    def tick_count(self) -> int:
        return self._ticks

    @property
    def pending_events(self) -> int:
        return len(self._pending)

    def __len__(self) -> int:
        return len(self.registry)
