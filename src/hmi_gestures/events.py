"""Publish/subscribe event bus with throttle, debounce and once wrappers.

Subscribers run synchronously inside ``publish``. Debounced subscribers
have no timers: their pending call is released by ``flush(now)``, which
the engine calls once per tick.

Usage:
    bus = EventBus()
    unsubscribe = bus.subscribe("gesture-detected", on_gesture, throttle_ms=250)
    bus.publish("gesture-detected", {"name": "circle"})
    unsubscribe()
"""

from __future__ import annotations

import itertools
import logging
import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger("hmi_gestures.events")

WILDCARD = "*"
DEFAULT_FRAME_BUDGET_MS = 1000.0 / 60.0


def _default_clock() -> float:
    return time.perf_counter() * 1000.0


@dataclass
class BusEvent:
    """What subscribers receive."""
    type: str
    data: Any
    timestamp: float
    id: int = 0


@dataclass
class DispatchReport:
    """Outcome of one publish call."""
    event: BusEvent
    listeners: int
    success_count: int
    duration_ms: float
    slow: bool = False


class _Subscription:
    """A handler plus its rate-limiting state."""

    def __init__(
        self,
        event_name: str,
        handler: Callable[[BusEvent], Any],
        once: bool,
        throttle_ms: float,
        debounce_ms: float,
    ):
        self.event_name = event_name
        self.handler = handler
        self.once = once
        self.throttle_ms = throttle_ms
        self.debounce_ms = debounce_ms
        self.last_call: Optional[float] = None
        self.pending: Optional[BusEvent] = None
        self.pending_due = 0.0
        self.done = False

    def offer(self, event: BusEvent, now: float) -> bool:
        """Apply once/throttle/debounce; returns True if the handler ran."""
        if self.done:
            return False

        if self.throttle_ms and self.last_call is not None and now - self.last_call < self.throttle_ms:
            return False

        if self.debounce_ms:
            self.pending = event
            self.pending_due = now + self.debounce_ms
            return False

        self._call(event, now)
        return True

    def release(self, now: float) -> bool:
        """Run a due debounced call."""
        if self.pending is None or now < self.pending_due or self.done:
            return False
        event, self.pending = self.pending, None
        self._call(event, now)
        return True

    def _call(self, event: BusEvent, now: float):
        self.last_call = now
        if self.once:
            self.done = True
        self.handler(event)


class EventBus:
    """Synchronous event bus with bounded diagnostic history."""

    def __init__(
        self,
        max_history: int = 1000,
        frame_budget_ms: float = DEFAULT_FRAME_BUDGET_MS,
        clock: Optional[Callable[[], float]] = None,
        on_slow_dispatch: Optional[Callable[[DispatchReport], None]] = None,
    ):
        self._subscriptions: dict[str, list[_Subscription]] = {}
        self._history: deque[BusEvent] = deque(maxlen=max_history)
        self._clock = clock or _default_clock
        self._ids = itertools.count(1)
        self.frame_budget_ms = frame_budget_ms
        self.on_slow_dispatch = on_slow_dispatch
        self._published = 0
        self._errors = 0
        self._slow = 0

    def subscribe(
        self,
        event_name: str,
        handler: Callable[[BusEvent], Any],
        once: bool = False,
        throttle_ms: float = 0.0,
        debounce_ms: float = 0.0,
    ) -> Callable[[], bool]:
        """Add a subscriber. ``"*"`` receives every event.

        Returns:
            A function that removes this subscription.
        """
        if throttle_ms < 0 or debounce_ms < 0:
            raise ValueError("throttle_ms and debounce_ms must be >= 0")
        sub = _Subscription(event_name, handler, once, throttle_ms, debounce_ms)
        self._subscriptions.setdefault(event_name, []).append(sub)
        return lambda: self._remove(sub)

    def off(self, event_name: str, handler: Callable) -> bool:
        """Remove the first subscription of ``handler`` for ``event_name``."""
        for sub in self._subscriptions.get(event_name, []):
            if sub.handler is handler or sub.handler == handler:
                return self._remove(sub)
        return False

    def _remove(self, sub: _Subscription) -> bool:
        subs = self._subscriptions.get(sub.event_name)
        if not subs or sub not in subs:
            return False
        subs.remove(sub)
        if not subs:
            del self._subscriptions[sub.event_name]
        return True

    def publish(self, event_name: str, data: Any = None) -> DispatchReport:
        """Call every current subscriber, isolating their errors."""
        now = self._clock()
        event = BusEvent(type=event_name, data=data, timestamp=now, id=next(self._ids))
        self._history.append(event)
        self._published += 1

        subs = list(self._subscriptions.get(event_name, []))
        if event_name != WILDCARD:
            subs += self._subscriptions.get(WILDCARD, [])

        t0 = time.perf_counter()
        success = 0
        for sub in subs:
            try:
                if sub.offer(event, now):
                    success += 1
            except Exception as e:
                self._errors += 1
                logger.error("Event listener error for %s: %s", event_name, e)
            if sub.done:
                self._remove(sub)
        duration_ms = (time.perf_counter() - t0) * 1000.0

        report = DispatchReport(
            event=event,
            listeners=len(subs),
            success_count=success,
            duration_ms=duration_ms,
            slow=duration_ms > self.frame_budget_ms,
        )
        if report.slow:
            self._slow += 1
            logger.warning("Slow event dispatch: %s took %.2fms", event_name, duration_ms)
            if self.on_slow_dispatch:
                self.on_slow_dispatch(report)
        return report

    def flush(self, now: Optional[float] = None) -> int:
        """Release debounced calls whose quiet period has elapsed."""
        now = self._clock() if now is None else now
        released = 0
        for subs in list(self._subscriptions.values()):
            for sub in list(subs):
                try:
                    if sub.release(now):
                        released += 1
                except Exception as e:
                    self._errors += 1
                    logger.error("Debounced listener error for %s: %s", sub.event_name, e)
                if sub.done:
                    self._remove(sub)
        return released

    def history(
        self,
        event_type: Optional[str] = None,
        since: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> list[BusEvent]:
        events = list(self._history)
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        if since is not None:
            events = [e for e in events if e.timestamp >= since]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def listener_count(self, event_name: Optional[str] = None) -> int:
        if event_name is not None:
            return len(self._subscriptions.get(event_name, []))
        return sum(len(s) for s in self._subscriptions.values())

    def metrics(self) -> dict:
        types = Counter(e.type for e in self._history)
        return {
            "total_events": len(self._history),
            "published": self._published,
            "active_listeners": self.listener_count(),
            "listener_errors": self._errors,
            "slow_dispatches": self._slow,
            "event_types": dict(types),
            "recent_events": [
                {"id": e.id, "type": e.type, "timestamp": e.timestamp}
                for e in list(self._history)[-10:]
            ],
        }

    def clear(self):
        self._subscriptions.clear()
        self._history.clear()
