"""Tests for the detector factory."""

import math

import pytest

from hmi_gestures.errors import ConfigurationError, PatternEvaluationError
from hmi_gestures.factory import DetectorFactory
from hmi_gestures.patterns import DetectionInput, DetectionResult, GesturePattern
from hmi_gestures.samples import Sample
from hmi_gestures.sequences import SequenceEvent


def circle_frame(n=16, r=50.0):
    points = tuple(
        Sample(100 + r * math.cos(2 * math.pi * i / n), 100 + r * math.sin(2 * math.pi * i / n), 10.0 * i)
        for i in range(n)
    )
    return DetectionInput(points=points)


class TestBuiltins:
    def test_circle(self):
        detector = DetectorFactory().build("circle", radius=50, tolerance=0.3)
        assert detector(circle_frame()).matches is True

    def test_create_from_pattern(self):
        detector = DetectorFactory().create(GesturePattern("circle", {"radius": 50}))
        assert detector(circle_frame()).matches is True

    def test_defaults(self):
        factory = DetectorFactory()
        for pattern_type in ("circle", "swipe", "line", "zigzag", "pinch"):
            detector = factory.build(pattern_type)
            assert detector(DetectionInput()).matches is False

    def test_types(self):
        factory = DetectorFactory()
        assert "sequence" in factory.types
        assert "template" in factory.types
        assert "sequence" in factory
        assert "tap" not in factory


class TestValidation:
    def test_unknown_type(self):
        with pytest.raises(ConfigurationError, match="unknown pattern type"):
            DetectorFactory().build("spiral")

    def test_unknown_parameter(self):
        with pytest.raises(ConfigurationError, match="radus"):
            DetectorFactory().build("circle", radus=50)

    @pytest.mark.parametrize("pattern_type,params", [
        ("circle", {"radius": -5}),
        ("circle", {"radius": "big"}),
        ("circle", {"tolerance": math.nan}),
        ("swipe", {"direction": "north"}),
        ("swipe", {"max_time": 0}),
        ("line", {"min_length": True}),
        ("zigzag", {"axis": "z"}),
        ("zigzag", {"min_points": 2.5}),
        ("pinch", {"threshold": 0}),
        ("custom", {}),
        ("custom", {"fn": 42}),
        ("voice", {}),
        ("template", {"template": {"type": "hologram"}}),
    ])
    def test_invalid_params(self, pattern_type, params):
        with pytest.raises(ConfigurationError):
            DetectorFactory().build(pattern_type, **params)


class TestCustom:
    def test_custom_receives_points_and_touches(self):
        seen = {}

        def fn(points, touches):
            seen["points"] = points
            seen["touches"] = touches
            return {"matches": True, "confidence": 0.6, "label": "wave"}

        frame = circle_frame()
        result = DetectorFactory().build("custom", fn=fn)(frame)
        assert seen["points"] is frame.points
        assert seen["touches"] == ()
        assert result.matches is True
        assert result.payload["label"] == "wave"

    def test_custom_bad_return_raises(self):
        detector = DetectorFactory().build("custom", fn=lambda points, touches: "yes")
        with pytest.raises(PatternEvaluationError):
            detector(DetectionInput())

    def test_voice_matcher(self):
        detector = DetectorFactory().build("voice", matcher=lambda: {"matches": True, "phrase": "delete"})
        result = detector(DetectionInput())
        assert result.matches
        assert result.payload["phrase"] == "delete"


class TestTemplate:
    def test_spatial_template(self):
        template = {"type": "spatial", "shape": "circle", "center": [100, 100], "radius": 50}
        detector = DetectorFactory().build("template", template=template)
        assert detector(circle_frame()).matches is True

    def test_fuzzy_template_uses_features(self):
        template = {"type": "fuzzy", "features": {"count": 16}}
        detector = DetectorFactory().build("template", template=template)
        assert detector(circle_frame()).matches is True

    @pytest.mark.parametrize("template", [
        {"type": "spatial", "shape": "circle"},
        {"type": "spatial", "shape": "circle", "center": [100, 100]},
        {"type": "spatial", "shape": "circle", "center": [100], "radius": 50},
        {"type": "spatial", "shape": "circle", "center": [100, 100], "radius": -5},
        {"type": "spatial", "shape": "line", "start": [0, 0]},
        {"type": "spatial", "shape": "rectangle", "bounds": [0, 0, 10]},
        {"type": "spatial", "shape": "rectangle", "bounds": [0, 0, -10, 10]},
        {"type": "spatial", "shape": "star"},
        {"type": "temporal"},
        {"type": "temporal", "duration": 600, "intervals": []},
        {"type": "temporal", "duration": 600, "intervals": [200, "slow"]},
        {"type": "sequence"},
        {"type": "sequence", "sequence": []},
        {"type": "sequence", "sequence": ["tap"]},
        {"type": "sequence", "sequence": [{"type": "tap", "data": 3}]},
        {"type": "sequence", "sequence": [{"type": "tap"}], "max_gap": 0},
        {"type": "fuzzy"},
        {"type": "fuzzy", "features": {}},
        {"type": "fuzzy", "features": {"width": 200}, "weights": {"width": "heavy"}},
        {"type": "fuzzy", "features": {"width": 200}, "tolerance": -1},
        {"type": ["spatial"]},
        "circle",
    ])
    def test_incomplete_template_rejected(self, template):
        with pytest.raises(ConfigurationError):
            DetectorFactory().build("template", template=template)

    @pytest.mark.parametrize("template", [
        {"type": "spatial", "shape": "line", "start": [0, 0], "end": [100, 0]},
        {"type": "spatial", "shape": "rectangle", "bounds": [0, 0, 100, 50]},
        {"type": "temporal", "duration": 600, "intervals": [200, 200, 200]},
        {"type": "sequence", "sequence": [{"type": "tap"}, {"type": "tap"}], "allow_gaps": True},
        {"type": "fuzzy", "features": {"width": 200}, "weights": {"width": 2}, "threshold": 0.5},
    ])
    def test_complete_template_accepted(self, template):
        assert callable(DetectorFactory().build("template", template=template))

    def test_sequence_template_reads_tick_events(self):
        template = {"type": "sequence", "sequence": [{"type": "key", "data": {"key": "a"}}, {"type": "key"}]}
        detector = DetectorFactory().build("template", template=template)

        first = detector(DetectionInput(events=(SequenceEvent("key", 0, {"key": "a"}),)))
        assert first.matches is False

        second = detector(DetectionInput(events=(SequenceEvent("key", 20, {"key": "b"}),)))
        assert second.matches is True
        assert detector(DetectionInput()).matches is False

    def test_sequence_template_skips_lifecycle_events(self):
        template = {"type": "sequence", "sequence": [{"type": "swipe"}, {"type": "swipe"}]}
        detector = DetectorFactory().build("template", template=template)
        events = (
            SequenceEvent("flick", 0, pattern="swipe"),
            SequenceEvent("pointerup", 10),
            SequenceEvent("pointerdown", 20),
            SequenceEvent("flick", 30, pattern="swipe"),
        )
        assert detector(DetectionInput(events=events)).matches is True


class TestRegistration:
    def test_register_new_type(self):
        factory = DetectorFactory()

        def build_tap(params):
            max_points = params.get("max_points", 3)
            return lambda frame: DetectionResult(0 < len(frame.points) <= max_points, 1.0)

        factory.register("tap", build_tap)
        detector = factory.build("tap")
        assert detector(DetectionInput(points=(Sample(0, 0, 0),))).matches is True
        assert "tap" in factory.types

    def test_duplicate_type(self):
        factory = DetectorFactory()
        with pytest.raises(ConfigurationError):
            factory.register("circle", lambda params: None)
        factory.register("circle", lambda params: (lambda frame: DetectionResult(True, 1.0)), replace=True)
        assert factory.build("circle")(DetectionInput()).matches is True

    def test_sequence_reserved(self):
        with pytest.raises(ConfigurationError):
            DetectorFactory().register("sequence", lambda params: None)
