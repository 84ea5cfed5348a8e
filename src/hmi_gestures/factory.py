"""Detector factory keyed by pattern-type string.

Each builder validates the pattern's parameters up front (raising
ConfigurationError) and returns a Detector closure, so a bad registration
fails at registration time rather than on the first tick.

Extend with new pattern types:

    factory = DetectorFactory()

    def build_tap(params):
        max_ms = params.get("max_ms", 150)
        return lambda frame: detect_tap(frame.points, max_ms)

    factory.register("tap", build_tap)
"""

from __future__ import annotations

import logging
import math
from collections import deque
from typing import Any, Callable, Mapping, Optional

from hmi_gestures.errors import ConfigurationError
from hmi_gestures.matcher import PatternMatcher
from hmi_gestures.patterns import (
    DIRECTIONS,
    DetectionInput,
    DetectionResult,
    Detector,
    GesturePattern,
    detect_circle,
    detect_line,
    detect_pinch,
    detect_swipe,
    detect_zigzag,
    frame_features,
    pinch_contacts,
)

logger = logging.getLogger("hmi_gestures.factory")

SEQUENCE = "sequence"
SEQUENCE_WINDOW = 32
TEMPLATE_SHAPES = ("circle", "line", "rectangle")

Builder = Callable[[Mapping[str, Any]], Detector]


def _check_keys(kind: str, params: Mapping[str, Any], allowed: set[str], required: set[str] = frozenset()):
    unknown = set(params) - allowed
    if unknown:
        raise ConfigurationError(
            f"unknown parameter(s) for {kind} pattern: {', '.join(sorted(unknown))}"
        )
    missing = required - set(params)
    if missing:
        raise ConfigurationError(
            f"missing parameter(s) for {kind} pattern: {', '.join(sorted(missing))}"
        )


def _number(
    params: Mapping[str, Any],
    key: str,
    default: float,
    minimum: Optional[float] = None,
    positive: bool = False,
) -> float:
    value = params.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ConfigurationError(f"parameter '{key}' must be a finite number, got {value!r}")
    value = float(value)
    if positive and value <= 0:
        raise ConfigurationError(f"parameter '{key}' must be positive, got {value}")
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"parameter '{key}' must be >= {minimum}, got {value}")
    return value


def _callable(params: Mapping[str, Any], key: str) -> Callable:
    fn = params.get(key)
    if not callable(fn):
        raise ConfigurationError(f"parameter '{key}' must be callable, got {fn!r}")
    return fn


def build_circle(params: Mapping[str, Any]) -> Detector:
    _check_keys("circle", params, {"radius", "tolerance"})
    radius = _number(params, "radius", 50.0, positive=True)
    tolerance = _number(params, "tolerance", 0.3, minimum=0.0)
    return lambda frame: detect_circle(frame.points, radius, tolerance)


def build_swipe(params: Mapping[str, Any]) -> Detector:
    _check_keys("swipe", params, {"direction", "min_distance", "max_time"})
    direction = params.get("direction")
    if direction is not None and direction not in DIRECTIONS:
        raise ConfigurationError(
            f"swipe direction must be one of {', '.join(DIRECTIONS)}, got {direction!r}"
        )
    min_distance = _number(params, "min_distance", 50.0, minimum=0.0)
    max_time = _number(params, "max_time", 500.0, positive=True)
    return lambda frame: detect_swipe(frame.points, direction, min_distance, max_time)


def build_line(params: Mapping[str, Any]) -> Detector:
    _check_keys("line", params, {"min_length", "max_deviation"})
    min_length = _number(params, "min_length", 100.0, positive=True)
    max_deviation = _number(params, "max_deviation", 20.0, minimum=0.0)
    return lambda frame: detect_line(frame.points, min_length, max_deviation)


def build_zigzag(params: Mapping[str, Any]) -> Detector:
    _check_keys("zigzag", params, {"min_points", "amplitude", "axis", "min_reversal"})
    min_points = _number(params, "min_points", 4, positive=True)
    if min_points != int(min_points):
        raise ConfigurationError(f"parameter 'min_points' must be an integer, got {min_points}")
    amplitude = _number(params, "amplitude", 30.0, minimum=0.0)
    min_reversal = _number(params, "min_reversal", 0.0, minimum=0.0)
    axis = params.get("axis", "y")
    if axis not in ("x", "y"):
        raise ConfigurationError(f"zigzag axis must be 'x' or 'y', got {axis!r}")
    return lambda frame: detect_zigzag(frame.points, int(min_points), amplitude, axis, min_reversal)


def build_pinch(params: Mapping[str, Any]) -> Detector:
    _check_keys("pinch", params, {"threshold"})
    threshold = _number(params, "threshold", 0.2, positive=True)
    return lambda frame: detect_pinch(pinch_contacts(frame.touches), threshold)


def build_custom(params: Mapping[str, Any]) -> Detector:
    _check_keys("custom", params, {"fn"}, required={"fn"})
    fn = _callable(params, "fn")
    return lambda frame: DetectionResult.coerce(fn(frame.points, frame.touches))


def build_voice(params: Mapping[str, Any]) -> Detector:
    _check_keys("voice", params, {"matcher"}, required={"matcher"})
    matcher = _callable(params, "matcher")
    return lambda frame: DetectionResult.coerce(matcher())


def _coordinates(template: Mapping[str, Any], key: str, size: int) -> tuple[float, ...]:
    value = template.get(key)
    if (
        not isinstance(value, (list, tuple)) or len(value) != size
        or not all(
            isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)
            for v in value
        )
    ):
        raise ConfigurationError(f"template '{key}' must be a list of {size} numbers, got {value!r}")
    return tuple(float(v) for v in value)


def _check_spatial(template: Mapping[str, Any]):
    shape = template.get("shape")
    if shape == "circle":
        _coordinates(template, "center", 2)
        _number(template, "radius", None, positive=True)
    elif shape == "line":
        _coordinates(template, "start", 2)
        _coordinates(template, "end", 2)
    elif shape == "rectangle":
        _, _, width, height = _coordinates(template, "bounds", 4)
        if width < 0 or height < 0:
            raise ConfigurationError(f"template 'bounds' needs a non-negative size, got {width}x{height}")
    else:
        raise ConfigurationError(
            f"spatial template shape must be one of {', '.join(TEMPLATE_SHAPES)}, got {shape!r}"
        )


def _check_temporal(template: Mapping[str, Any]):
    _number(template, "duration", None, positive=True)
    intervals = template.get("intervals")
    if intervals is not None:
        if not isinstance(intervals, (list, tuple)) or not intervals:
            raise ConfigurationError(f"template 'intervals' must be a non-empty list, got {intervals!r}")
        for value in intervals:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not value > 0:
                raise ConfigurationError(f"template 'intervals' must hold positive numbers, got {value!r}")


def _check_sequence(template: Mapping[str, Any]):
    steps = template.get("sequence")
    if not isinstance(steps, (list, tuple)) or not steps:
        raise ConfigurationError(f"template 'sequence' must be a non-empty list, got {steps!r}")
    for step in steps:
        if not isinstance(step, Mapping) or not isinstance(step.get("type"), str):
            raise ConfigurationError(f"template sequence step needs a 'type', got {step!r}")
        if step.get("data") is not None and not isinstance(step["data"], Mapping):
            raise ConfigurationError(f"template sequence step data must be a mapping, got {step['data']!r}")
    if "max_gap" in template:
        _number(template, "max_gap", None, positive=True)


def _check_fuzzy(template: Mapping[str, Any]):
    features = template.get("features")
    if not isinstance(features, Mapping) or not features:
        raise ConfigurationError(f"template 'features' must be a non-empty mapping, got {features!r}")
    weights = template.get("weights") or {}
    if not isinstance(weights, Mapping):
        raise ConfigurationError(f"template 'weights' must be a mapping, got {weights!r}")
    for name in weights:
        _number(weights, name, None, minimum=0.0)
    if "threshold" in template:
        _number(template, "threshold", None, minimum=0.0)


_TEMPLATE_CHECKS = {
    "spatial": _check_spatial,
    "temporal": _check_temporal,
    "sequence": _check_sequence,
    "fuzzy": _check_fuzzy,
}


def check_template(template: Any) -> str:
    """Validate a matcher template, returning its type.

    Raises:
        ConfigurationError: on an unknown type or a missing/invalid field.
    """
    kind = template.get("type") if isinstance(template, Mapping) else None
    check = _TEMPLATE_CHECKS.get(kind) if isinstance(kind, str) else None
    if check is None:
        raise ConfigurationError(f"invalid template: {template!r}")
    check(template)
    if "tolerance" in template:
        _number(template, "tolerance", None, minimum=0.0)
    return kind


def _sequence_template(matcher: PatternMatcher, template: Mapping[str, Any]) -> Detector:
    # Candidates seen over recent ticks; cleared once the template matches
    recent: deque[dict] = deque(maxlen=max(SEQUENCE_WINDOW, 4 * len(template["sequence"])))

    def detect(frame: DetectionInput) -> DetectionResult:
        recent.extend(
            {"type": e.type, "pattern": e.pattern, "timestamp": e.timestamp, "data": dict(e.data)}
            for e in frame.events
        )
        result = matcher.match(template, {"sequence": list(recent)}, use_cache=False)
        if result.matches:
            recent.clear()
        return result

    return detect


def build_template(params: Mapping[str, Any]) -> Detector:
    _check_keys("template", params, {"template", "tolerance"}, required={"template"})
    template = params["template"]
    kind = check_template(template)
    matcher = PatternMatcher(tolerance=_number(params, "tolerance", 0.3, minimum=0.0))
    if kind == "sequence":
        return _sequence_template(matcher, template)

    def detect(frame: DetectionInput) -> DetectionResult:
        data = {
            "points": frame.points,
            "events": frame.points,
            **frame_features(frame.points),
        }
        return matcher.match(template, data)

    return detect


class DetectorFactory:
    """Maps pattern-type strings to detector builders.

    ``sequence`` patterns are not built here; the sequence engine owns
    their state.
    """

    def __init__(self):
        self._builders: dict[str, Builder] = {}
        self.register("circle", build_circle)
        self.register("swipe", build_swipe)
        self.register("line", build_line)
        self.register("zigzag", build_zigzag)
        self.register("pinch", build_pinch)
        self.register("custom", build_custom)
        self.register("voice", build_voice)
        self.register("template", build_template)

    def register(self, pattern_type: str, builder: Builder, replace: bool = False):
        """Add a pattern type. Existing types are only replaced when asked."""
        if pattern_type == SEQUENCE:
            raise ConfigurationError("'sequence' is reserved for the sequence engine")
        if pattern_type in self._builders and not replace:
            raise ConfigurationError(f"pattern type '{pattern_type}' already registered")
        self._builders[pattern_type] = builder
        logger.debug("Registered pattern type: %s", pattern_type)

    def create(self, pattern: GesturePattern) -> Detector:
        builder = self._builders.get(pattern.type)
        if builder is None:
            raise ConfigurationError(
                f"unknown pattern type '{pattern.type}' "
                f"(known: {', '.join(self.types)})"
            )
        return builder(pattern.params)

    def build(self, pattern_type: str, **params) -> Detector:
        """Resolve a detector for a type string at call time."""
        return self.create(GesturePattern(type=pattern_type, params=params))

    @property
    def types(self) -> list[str]:
        return sorted(self._builders) + [SEQUENCE]

    def __contains__(self, pattern_type: str) -> bool:
        return pattern_type in self._builders or pattern_type == SEQUENCE
