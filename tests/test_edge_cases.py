"""Edge case tests for the gesture engine."""

import math

import pytest

from hmi_gestures.config import EngineConfig
from hmi_gestures.engine import GestureEngine
from hmi_gestures.patterns import detect_circle, detect_line, detect_swipe, detect_zigzag
from hmi_gestures.samples import POINTER, Sample


class TestDegenerateStrokes:
    def test_all_points_identical(self):
        points = [Sample(10, 10, float(i)) for i in range(20)]
        assert detect_circle(points).matches is False
        assert detect_swipe(points).matches is False
        assert detect_line(points).matches is False
        assert detect_zigzag(points).matches is False

    def test_zero_duration_swipe(self):
        result = detect_swipe([Sample(0, 0, 5), Sample(100, 0, 5)])
        assert result.matches is True
        assert result.payload["velocity"] == 0.0

    def test_huge_coordinates(self):
        points = [Sample(1e12 + 10 * i, 1e12, float(i)) for i in range(10)]
        assert detect_line(points, min_length=50).matches is True


class TestEngineEdgeCases:
    def test_detector_returning_none_is_pattern_error(self):
        engine = GestureEngine(clock=lambda: 0.0)
        engine.register("broken").pattern("custom", fn=lambda points, touches: None)
        engine.start(now=0)
        assert engine.tick(16) == []
        assert engine.dispatcher.registry.get("broken").stats.pattern_errors == 1

    def test_handler_unregisters_itself(self):
        engine = GestureEngine(clock=lambda: 0.0)
        calls = []

        def once(event):
            calls.append(event.name)
            handle.stop()

        handle = engine.register("x").pattern("custom", fn=lambda p, t: True).cooldown(0).handler(once)
        engine.start(now=0)
        engine.tick(16)
        engine.tick(32)
        assert calls == ["x"]

    def test_handler_registers_during_tick(self):
        engine = GestureEngine(clock=lambda: 0.0)
        added = []

        def add_more(event):
            if not added:
                added.append(engine.register("late").pattern("custom", fn=lambda p, t: True))

        engine.register("first").pattern("custom", fn=lambda p, t: True).handler(add_more)
        engine.start(now=0)
        assert [e.name for e in engine.tick(16)] == ["first"]
        assert "late" in [e.name for e in engine.tick(32)]

    def test_feed_inf_timestamp_dropped(self):
        engine = GestureEngine(clock=lambda: 0.0)
        assert engine.feed(POINTER, {"x": 0, "y": 0, "timestamp": math.inf}) is False

    def test_integer_channel_ids(self):
        engine = GestureEngine(clock=lambda: 0.0)
        engine.feed(0, {"x": 0, "y": 0, "timestamp": 0})
        assert engine.buffer.touch_channels == [0]

    def test_capacity_one(self):
        engine = GestureEngine(EngineConfig(buffer_capacity=1), clock=lambda: 0.0)
        engine.set_mode("performance")
        assert engine.buffer.capacity == 1

    @pytest.mark.parametrize("value", [None, 3, "x"])
    def test_sample_not_a_mapping(self, value):
        engine = GestureEngine(clock=lambda: 0.0)
        assert engine.feed(POINTER, value) is False
