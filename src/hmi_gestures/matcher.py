"""Template matching against expected geometry, rhythm or features.

Where the detectors in ``patterns`` classify a stroke by shape, the
PatternMatcher compares observed data against a concrete template: a
circle at a known position, a tap rhythm, an ordered list of events or a
weighted feature profile.

Templates are plain dicts so they can live in YAML gesture files:

    {"type": "spatial", "shape": "circle", "center": [100, 100], "radius": 50}
    {"type": "temporal", "duration": 600, "intervals": [200, 200, 200]}
    {"type": "sequence", "sequence": [{"type": "tap"}, {"type": "tap"}]}
    {"type": "fuzzy", "features": {"width": 200, "height": 20}, "weights": {"width": 2}}
"""

from __future__ import annotations

import json
import math
from collections import OrderedDict
from typing import Any, Mapping, Optional, Sequence

import numpy as np

from hmi_gestures.patterns import DetectionResult, points_array
from hmi_gestures.samples import LIFECYCLE_EVENTS

CACHE_SIZE = 100


def _events_match(event: Mapping[str, Any], expected: Mapping[str, Any]) -> bool:
    kind = expected.get("type")
    if kind is None or kind not in (event.get("type"), event.get("pattern")):
        return False
    wanted = expected.get("data") or {}
    actual = event.get("data") or {}
    return all(actual.get(k) == v for k, v in wanted.items())


def fuzzy_score(expected: Any, actual: Any) -> float:
    """Similarity in [0, 1] between an expected and observed feature value."""
    numeric = (int, float)
    if (
        isinstance(expected, numeric) and isinstance(actual, numeric)
        and not isinstance(expected, bool) and not isinstance(actual, bool)
    ):
        diff = abs(expected - actual)
        scale = max(abs(expected), abs(actual)) or 1.0
        return max(0.0, 1.0 - diff / scale)
    return 1.0 if expected == actual else 0.0


class PatternMatcher:
    """Matches observed data against dict templates, with a bounded LRU cache."""

    def __init__(self, tolerance: float = 0.3, cache_size: int = CACHE_SIZE):
        self.tolerance = tolerance
        self._cache_size = cache_size
        self._cache: OrderedDict[tuple, DetectionResult] = OrderedDict()

    def match(
        self,
        template: Mapping[str, Any],
        data: Mapping[str, Any],
        use_cache: bool = True,
    ) -> DetectionResult:
        key = self._cache_key(template, data) if use_cache else None
        if key is not None:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                return cached

        result = self._perform_match(template, data)

        if key is not None:
            self._cache[key] = result
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)

        return result

    def _perform_match(self, template: Mapping[str, Any], data: Mapping[str, Any]) -> DetectionResult:
        kind = template.get("type")
        if kind == "spatial":
            return self.match_spatial(template, data)
        if kind == "temporal":
            return self.match_temporal(template, data)
        if kind == "sequence":
            return self.match_sequence(template, data)
        if kind == "fuzzy":
            return self.match_fuzzy(template, data)
        return DetectionResult.no_match(reason=f"unknown template type {kind!r}")

    # -- spatial ---------------------------------------------------------

    def match_spatial(self, template: Mapping[str, Any], data: Mapping[str, Any]) -> DetectionResult:
        points = data.get("points") or ()
        if len(points) < 3:
            return DetectionResult.no_match(points=len(points))

        tolerance = template.get("tolerance", self.tolerance)
        shape = template.get("shape")
        xy = points_array(points)

        if shape == "circle":
            return self._match_circle(xy, template, tolerance)
        if shape == "line":
            return self._match_line(xy, template, tolerance)
        if shape == "rectangle":
            return self._match_rectangle(xy, template, tolerance)
        return DetectionResult.no_match(reason=f"unknown shape {shape!r}")

    @staticmethod
    def _match_circle(xy: np.ndarray, template: Mapping[str, Any], tolerance: float) -> DetectionResult:
        expected_center = np.asarray(template["center"], dtype=np.float64)
        expected_radius = float(template["radius"])

        center = xy.mean(axis=0)
        radius = float(np.linalg.norm(xy - center, axis=1).mean())
        center_offset = float(np.linalg.norm(center - expected_center))
        radius_diff = abs(radius - expected_radius)

        limit = expected_radius * tolerance
        confidence = max(0.0, 1.0 - (center_offset + radius_diff) / (expected_radius * 2))

        return DetectionResult(
            matches=center_offset <= limit and radius_diff <= limit and confidence > 0.5,
            confidence=confidence,
            payload={
                "center": (float(center[0]), float(center[1])),
                "radius": radius,
                "center_offset": center_offset,
            },
        )

    @staticmethod
    def _match_line(xy: np.ndarray, template: Mapping[str, Any], tolerance: float) -> DetectionResult:
        expected_start = np.asarray(template["start"], dtype=np.float64)
        expected_end = np.asarray(template["end"], dtype=np.float64)
        expected_length = float(np.linalg.norm(expected_end - expected_start)) or 1.0

        start_offset = float(np.linalg.norm(xy[0] - expected_start))
        end_offset = float(np.linalg.norm(xy[-1] - expected_end))
        limit = expected_length * tolerance
        confidence = max(0.0, 1.0 - (start_offset + end_offset) / (expected_length * 2))

        return DetectionResult(
            matches=start_offset <= limit and end_offset <= limit,
            confidence=confidence,
            payload={"start_offset": start_offset, "end_offset": end_offset},
        )

    @staticmethod
    def _match_rectangle(xy: np.ndarray, template: Mapping[str, Any], tolerance: float) -> DetectionResult:
        ex, ey, ew, eh = (float(v) for v in template["bounds"])
        lo = xy.min(axis=0)
        hi = xy.max(axis=0)
        observed = np.array([lo[0], lo[1], hi[0] - lo[0], hi[1] - lo[1]])
        expected = np.array([ex, ey, ew, eh])

        scale = max(ew, eh) or 1.0
        error = float(np.abs(observed - expected).max())
        confidence = max(0.0, 1.0 - error / scale)

        return DetectionResult(
            matches=error <= scale * tolerance,
            confidence=confidence,
            payload={"bounds": tuple(float(v) for v in observed)},
        )

    # -- temporal --------------------------------------------------------

    def match_temporal(self, template: Mapping[str, Any], data: Mapping[str, Any]) -> DetectionResult:
        events = data.get("events") or ()
        if len(events) < 2:
            return DetectionResult.no_match(events=len(events))

        tolerance = template.get("tolerance", self.tolerance)
        duration = float(template["duration"])
        intervals = list(template.get("intervals") or [duration / (len(events) - 1)])

        stamps = [_timestamp(e) for e in events]
        actual_duration = stamps[-1] - stamps[0]
        duration_match = abs(actual_duration - duration) <= duration * tolerance

        hits = 0
        for i in range(1, len(stamps)):
            actual = stamps[i] - stamps[i - 1]
            expected = intervals[min(i - 1, len(intervals) - 1)]
            if abs(actual - expected) <= expected * tolerance:
                hits += 1

        interval_confidence = hits / (len(stamps) - 1)
        confidence = (interval_confidence + (1.0 if duration_match else 0.0)) / 2

        return DetectionResult(
            matches=confidence > 0.7,
            confidence=confidence,
            payload={
                "interval_matches": hits,
                "duration_match": duration_match,
                "duration": actual_duration,
            },
        )

    # -- sequence --------------------------------------------------------

    def match_sequence(self, template: Mapping[str, Any], data: Mapping[str, Any]) -> DetectionResult:
        expected = list(template.get("sequence") or [])
        observed = list(data.get("sequence") or [])
        if not expected or len(observed) < len(expected):
            return DetectionResult.no_match(matched=0, total=len(expected))

        allow_gaps = template.get("allow_gaps", False)
        max_gap = float(template.get("max_gap", 1000.0))

        matched = 0
        last_match: Optional[float] = None
        for event in observed:
            if matched >= len(expected):
                break
            stamp = _timestamp(event)
            if _events_match(event, expected[matched]):
                if last_match is None or not allow_gaps or stamp - last_match <= max_gap:
                    matched += 1
                    last_match = stamp
            elif not allow_gaps and matched and not _skippable(event, expected[matched]):
                # Contiguous runs only; start over on an unrelated event
                matched = 1 if _events_match(event, expected[0]) else 0
                last_match = stamp if matched else None

        confidence = matched / len(expected)
        return DetectionResult(
            matches=confidence >= 0.8,
            confidence=confidence,
            payload={"matched": matched, "total": len(expected)},
        )

    # -- fuzzy -----------------------------------------------------------

    def match_fuzzy(self, template: Mapping[str, Any], data: Mapping[str, Any]) -> DetectionResult:
        features = template.get("features") or {}
        weights = template.get("weights") or {}

        total_score = 0.0
        total_weight = 0.0
        scores = {}
        for name, expected in features.items():
            weight = float(weights.get(name, 1.0))
            score = fuzzy_score(expected, data.get(name))
            scores[name] = score
            total_score += score * weight
            total_weight += weight

        confidence = total_score / total_weight if total_weight > 0 else 0.0
        threshold = template.get("threshold", 0.6)
        return DetectionResult(
            matches=confidence > threshold,
            confidence=confidence,
            payload={"scores": scores},
        )

    # -- cache -----------------------------------------------------------

    @staticmethod
    def _cache_key(template: Mapping[str, Any], data: Mapping[str, Any]) -> Optional[tuple]:
        """Hashable key over the data values, or None when one is unhashable.

        Samples are frozen, so a point snapshot keys by value without being
        stringified.
        """
        frozen = []
        for name in sorted(data):
            value = data[name]
            if isinstance(value, list):
                value = tuple(value)
            try:
                hash(value)
            except TypeError:
                return None
            frozen.append((name, value))
        return json.dumps(template, sort_keys=True, default=str), tuple(frozen)

    def clear_cache(self):
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)


def _skippable(event: Mapping[str, Any], expected: Mapping[str, Any]) -> bool:
    return event.get("type") in LIFECYCLE_EVENTS and expected.get("type") not in LIFECYCLE_EVENTS


def _timestamp(event: Any) -> float:
    if isinstance(event, Mapping):
        return float(event.get("timestamp", 0.0))
    stamp = getattr(event, "timestamp", 0.0)
    return float(stamp) if stamp is not None and math.isfinite(stamp) else 0.0
