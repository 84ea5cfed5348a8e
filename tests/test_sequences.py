"""Tests for multi-step gesture sequences."""

import pytest

from hmi_gestures.errors import ConfigurationError
from hmi_gestures.sequences import (
    GestureSequence,
    SequenceEngine,
    SequenceEvent,
    SequenceStep,
)


def ev(event_type, timestamp, pattern=None, **data):
    return SequenceEvent(type=event_type, timestamp=timestamp, data=data, pattern=pattern)


def make_engine(*steps, reg_id=1, **params):
    engine = SequenceEngine()
    engine.add(reg_id, GestureSequence.from_params("combo", {"steps": list(steps), **params}))
    return engine


class TestSequenceStep:
    def test_from_string(self):
        assert SequenceStep.from_value("tap") == SequenceStep("tap")

    def test_from_dict_shorthand(self):
        step = SequenceStep.from_value({"type": "swipe", "direction": "up", "timeout": 300})
        assert step.data == {"direction": "up"}
        assert step.timeout == 300.0

    def test_matches_pattern_type(self):
        step = SequenceStep("swipe", {"direction": "up"})
        assert step.matches(ev("flick", 0, pattern="swipe", direction="up"))
        assert not step.matches(ev("flick", 0, pattern="swipe", direction="down"))

    def test_wildcard(self):
        assert SequenceStep("*").matches(ev("anything", 0))

    @pytest.mark.parametrize("value", ["", 42, {"data": {}}, {"type": "tap", "timeout": -1}])
    def test_invalid(self, value):
        with pytest.raises(ConfigurationError):
            SequenceStep.from_value(value)


class TestFromParams:
    def test_defaults(self):
        seq = GestureSequence.from_params("combo", {"steps": ["a", "b"]})
        assert seq.timeout == 5000.0
        assert seq.allow_gaps is False
        assert [s.type for s in seq.steps] == ["a", "b"]

    @pytest.mark.parametrize("params", [
        {},
        {"steps": []},
        {"steps": "abc"},
        {"steps": ["a"], "timeout": 0},
        {"steps": ["a"], "max_gap": "long"},
        {"steps": ["a"], "colour": "red"},
    ])
    def test_invalid(self, params):
        with pytest.raises(ConfigurationError):
            GestureSequence.from_params("combo", params)


class TestSequenceEngine:
    def test_three_steps_complete(self):
        engine = make_engine("A", "B", "C", timeout=1000)
        assert not engine.feed(1, ev("A", 0)).matches
        assert not engine.feed(1, ev("B", 200)).matches
        result = engine.feed(1, ev("C", 400))

        assert result.matches is True
        assert [t["type"] for t in result.payload["trace"]] == ["A", "B", "C"]
        assert result.payload["duration"] == 400
        assert engine.state(1).current_index == 0

    def test_deadline_resets(self):
        engine = make_engine("A", "B", "C", timeout=1000)
        engine.feed(1, ev("A", 0))
        engine.feed(1, ev("B", 500))
        assert engine.state(1).current_index == 2

        assert engine.expire(1, 1600) is True
        assert engine.state(1).current_index == 0
        assert engine.state(1).trace == []

    def test_late_step_does_not_complete(self):
        engine = make_engine("A", "B", "C", timeout=1000)
        engine.feed(1, ev("A", 0))
        engine.feed(1, ev("B", 500))
        assert engine.feed(1, ev("C", 1600)).matches is False
        assert engine.state(1).current_index == 0

    def test_mismatch_resets_and_retests_first_step(self):
        engine = make_engine("A", "B", timeout=1000)
        engine.feed(1, ev("A", 0))
        engine.feed(1, ev("A", 100))
        assert engine.state(1).current_index == 1
        assert engine.state(1).trace[0]["timestamp"] == 100
        assert engine.feed(1, ev("B", 200)).matches is True

    def test_unrelated_event_resets(self):
        engine = make_engine("A", "B")
        engine.feed(1, ev("A", 0))
        engine.feed(1, ev("X", 50))
        assert engine.state(1).current_index == 0

    def test_lifecycle_events_between_gesture_steps(self):
        engine = make_engine("circle", {"type": "swipe", "direction": "up"})
        engine.feed(1, ev("spin", 0, pattern="circle"))
        engine.feed(1, ev("pointerup", 10))
        engine.feed(1, ev("pointerdown", 300))
        assert engine.state(1).current_index == 1
        assert engine.feed(1, ev("flick", 500, pattern="swipe", direction="up")).matches is True

    def test_lifecycle_steps_stay_contiguous(self):
        engine = make_engine("pointerdown", "pointerup")
        engine.feed(1, ev("pointerdown", 0))
        engine.feed(1, ev("touchstart", 10))
        assert engine.state(1).current_index == 0

    def test_gesture_between_gesture_steps_resets(self):
        engine = make_engine("circle", "swipe")
        engine.feed(1, ev("spin", 0, pattern="circle"))
        engine.feed(1, ev("shake", 50, pattern="zigzag"))
        assert engine.state(1).current_index == 0

    def test_gaps_tolerated(self):
        engine = make_engine("A", "B", allow_gaps=True, max_gap=300)
        engine.feed(1, ev("A", 0))
        engine.feed(1, ev("X", 100))
        assert engine.state(1).current_index == 1
        assert engine.feed(1, ev("B", 200)).matches is True

    def test_gap_too_long_resets(self):
        engine = make_engine("A", "B", allow_gaps=True, max_gap=300)
        engine.feed(1, ev("A", 0))
        engine.feed(1, ev("X", 400))
        assert engine.state(1).current_index == 0

    def test_step_data(self):
        engine = make_engine({"type": "key", "key": "a"}, {"type": "key", "key": "b"})
        engine.feed(1, ev("key", 0, key="a"))
        assert engine.feed(1, ev("key", 10, key="c")).matches is False
        engine.feed(1, ev("key", 20, key="a"))
        assert engine.feed(1, ev("key", 30, key="b")).matches is True

    def test_per_step_timeout(self):
        engine = make_engine("A", {"type": "B", "timeout": 100}, timeout=5000)
        engine.feed(1, ev("A", 0))
        assert engine.state(1).deadline == 100
        assert engine.feed(1, ev("B", 150)).matches is False

    def test_advance_batches_then_expires(self):
        engine = make_engine("A", "B", timeout=100)
        result = engine.advance(1, [ev("A", 0), ev("B", 50)], now=60)
        assert result.matches is True

        engine.advance(1, [ev("A", 100)], now=120)
        assert engine.state(1).current_index == 1
        engine.advance(1, [], now=250)
        assert engine.state(1).current_index == 0

    def test_state_is_copy(self):
        engine = make_engine("A", "B")
        engine.feed(1, ev("A", 0))
        state = engine.state(1)
        state.trace.clear()
        state.current_index = 0
        assert engine.state(1).current_index == 1
        assert len(engine.state(1).trace) == 1

    def test_remove_and_reset(self):
        engine = make_engine("A", "B")
        engine.feed(1, ev("A", 0))
        engine.reset(1)
        assert engine.state(1).current_index == 0

        assert engine.remove(1) is True
        assert engine.state(1) is None
        assert 1 not in engine
        assert engine.remove(1) is False

    def test_duplicate_add(self):
        engine = make_engine("A")
        with pytest.raises(ConfigurationError):
            engine.add(1, GestureSequence("other", [SequenceStep("B")]))

    def test_independent_registrations(self):
        engine = SequenceEngine()
        engine.add(1, GestureSequence("one", [SequenceStep("A"), SequenceStep("B")]))
        engine.add(2, GestureSequence("two", [SequenceStep("A"), SequenceStep("C")]))
        engine.feed(1, ev("A", 0))
        assert engine.state(2).current_index == 0
        assert len(engine) == 2
