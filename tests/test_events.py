"""Tests for the event bus."""

import time

import pytest

from hmi_gestures.events import EventBus


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def make_bus(**kwargs):
    clock = FakeClock()
    return EventBus(clock=clock, **kwargs), clock


class TestSubscribe:
    def test_publish_delivers(self):
        bus, _ = make_bus()
        received = []
        bus.subscribe("tap", received.append)
        report = bus.publish("tap", {"x": 1})

        assert received[0].type == "tap"
        assert received[0].data == {"x": 1}
        assert report.listeners == 1
        assert report.success_count == 1

    def test_unsubscribe(self):
        bus, _ = make_bus()
        received = []
        unsubscribe = bus.subscribe("tap", received.append)
        assert unsubscribe() is True
        assert unsubscribe() is False
        bus.publish("tap")
        assert received == []
        assert bus.listener_count() == 0

    def test_off(self):
        bus, _ = make_bus()
        received = []
        bus.subscribe("tap", received.append)
        assert bus.off("tap", received.append) is True
        assert bus.off("tap", received.append) is False
        bus.publish("tap")
        assert received == []

    def test_wildcard(self):
        bus, _ = make_bus()
        received = []
        bus.subscribe("*", lambda e: received.append(e.type))
        bus.publish("a")
        bus.publish("b")
        assert received == ["a", "b"]

    def test_negative_rates_rejected(self):
        bus, _ = make_bus()
        with pytest.raises(ValueError):
            bus.subscribe("a", print, throttle_ms=-1)
        with pytest.raises(ValueError):
            bus.subscribe("a", print, debounce_ms=-5)


class TestWrappers:
    def test_once(self):
        bus, _ = make_bus()
        received = []
        bus.subscribe("tap", received.append, once=True)
        bus.publish("tap")
        bus.publish("tap")
        assert len(received) == 1
        assert bus.listener_count("tap") == 0

    def test_throttle(self):
        bus, clock = make_bus()
        received = []
        bus.subscribe("move", lambda e: received.append(clock.now), throttle_ms=100)
        for t in (0, 50, 99, 100, 150, 250):
            clock.now = t
            bus.publish("move")
        assert received == [0, 100, 250]

    def test_debounce_releases_last_event_on_flush(self):
        bus, clock = make_bus()
        received = []
        bus.subscribe("resize", lambda e: received.append(e.data), debounce_ms=100)
        for t, value in ((0, 1), (30, 2), (60, 3)):
            clock.now = t
            bus.publish("resize", value)

        assert bus.flush(100) == 0
        assert received == []
        assert bus.flush(160) == 1
        assert received == [3]
        assert bus.flush(500) == 0

    def test_once_debounced(self):
        bus, clock = make_bus()
        received = []
        bus.subscribe("a", received.append, once=True, debounce_ms=10)
        bus.publish("a")
        bus.flush(10)
        bus.publish("a")
        bus.flush(100)
        assert len(received) == 1
        assert bus.listener_count() == 0


class TestIsolation:
    def test_failing_listener_does_not_stop_others(self):
        bus, _ = make_bus()
        received = []

        def boom(event):
            raise RuntimeError("listener failed")

        bus.subscribe("tap", boom)
        bus.subscribe("tap", received.append)
        report = bus.publish("tap")

        assert len(received) == 1
        assert report.success_count == 1
        assert bus.metrics()["listener_errors"] == 1

    def test_unsubscribe_during_publish(self):
        bus, _ = make_bus()
        received = []
        unsubscribe = {}

        def first(event):
            unsubscribe["second"]()

        bus.subscribe("tap", first)
        unsubscribe["second"] = bus.subscribe("tap", received.append)
        bus.publish("tap")
        bus.publish("tap")
        assert len(received) == 1


class TestHistory:
    def test_bounded(self):
        bus, clock = make_bus(max_history=5)
        for i in range(10):
            clock.now = float(i)
            bus.publish("tick", i)
        history = bus.history()
        assert len(history) == 5
        assert [e.data for e in history] == [5, 6, 7, 8, 9]

    def test_filters(self):
        bus, clock = make_bus()
        for i, name in enumerate(["a", "b", "a", "a"]):
            clock.now = float(i * 10)
            bus.publish(name)
        assert len(bus.history("a")) == 3
        assert len(bus.history(since=20)) == 2
        assert len(bus.history("a", limit=1)) == 1
        assert bus.history(limit=0) == []

    def test_ids_increase(self):
        bus, _ = make_bus()
        ids = [bus.publish("a").event.id for _ in range(3)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 3

    def test_metrics(self):
        bus, _ = make_bus()
        bus.subscribe("a", lambda e: None)
        bus.publish("a")
        bus.publish("b")
        metrics = bus.metrics()
        assert metrics["total_events"] == 2
        assert metrics["published"] == 2
        assert metrics["active_listeners"] == 1
        assert metrics["event_types"] == {"a": 1, "b": 1}
        assert [e["type"] for e in metrics["recent_events"]] == ["a", "b"]

    def test_clear(self):
        bus, _ = make_bus()
        bus.subscribe("a", lambda e: None)
        bus.publish("a")
        bus.clear()
        assert bus.history() == []
        assert bus.listener_count() == 0


class TestSlowDispatch:
    def test_slow_dispatch_reported(self):
        reports = []
        bus, _ = make_bus(frame_budget_ms=0.5, on_slow_dispatch=reports.append)
        bus.subscribe("heavy", lambda e: time.sleep(0.005))
        report = bus.publish("heavy")

        assert report.slow is True
        assert report.duration_ms > 0.5
        assert reports == [report]
        assert bus.metrics()["slow_dispatches"] == 1

    def test_fast_dispatch_not_reported(self):
        reports = []
        bus, _ = make_bus(frame_budget_ms=1000, on_slow_dispatch=reports.append)
        bus.subscribe("light", lambda e: None)
        assert bus.publish("light").slow is False
        assert reports == []
