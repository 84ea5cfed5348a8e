"""Pattern library: pure detectors over buffer snapshots.

Every detector takes an immutable snapshot (tuple of Samples) plus its
parameters and returns a DetectionResult. Detectors never mutate shared
state, so repeated evaluation on the same input yields the same result.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Hashable, Mapping, Optional, Sequence

import numpy as np

from hmi_gestures.errors import PatternEvaluationError
from hmi_gestures.samples import Sample

CIRCLE_MIN_POINTS = 8
CIRCLE_MIN_COVERAGE = 0.7

DIRECTIONS = ("right", "down", "left", "up")


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of one detector evaluation.

    ``matches=False`` is the normal non-match, not an error. Confidence is
    clamped into [0, 1].
    """
    matches: bool
    confidence: float = 0.0
    payload: dict = field(default_factory=dict)

    def __post_init__(self):
        conf = float(self.confidence)
        if math.isnan(conf):
            conf = 0.0
        object.__setattr__(self, "confidence", min(1.0, max(0.0, conf)))
        object.__setattr__(self, "matches", bool(self.matches))

    @classmethod
    def no_match(cls, **payload) -> DetectionResult:
        return cls(matches=False, confidence=0.0, payload=payload)

    @classmethod
    def coerce(cls, value: Any) -> DetectionResult:
        """Normalize what a user callable returned.

        Accepts a DetectionResult, a mapping with a ``matches`` key (extra
        keys become the payload) or a plain bool.
        """
        if isinstance(value, DetectionResult):
            return value
        if isinstance(value, bool):
            return cls(matches=value, confidence=1.0 if value else 0.0)
        if isinstance(value, Mapping) and "matches" in value:
            matches = bool(value["matches"])
            confidence = value.get("confidence")
            if confidence is None:
                confidence = 1.0 if matches else 0.0
            payload = dict(value.get("payload") or {})
            payload.update({
                k: v for k, v in value.items()
                if k not in ("matches", "confidence", "payload")
            })
            return cls(matches=matches, confidence=confidence, payload=payload)
        raise PatternEvaluationError(
            f"detector returned {type(value).__name__}, expected a detection result"
        )

    def to_dict(self) -> dict:
        return {
            "matches": self.matches,
            "confidence": self.confidence,
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class GesturePattern:
    """A pattern type tag plus its parameters. Immutable after registration."""
    type: str
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    def to_dict(self) -> dict:
        return {"type": self.type, "params": dict(self.params)}


@dataclass(frozen=True)
class TouchTrack:
    """Snapshot of one touch contact."""
    channel_id: Hashable
    origin: Sample
    samples: tuple[Sample, ...]

    @property
    def current(self) -> Sample:
        return self.samples[-1] if self.samples else self.origin


@dataclass(frozen=True)
class DetectionInput:
    """Everything a detector may read during one tick."""
    points: tuple[Sample, ...] = ()
    touches: tuple[TouchTrack, ...] = ()
    timestamp: float = 0.0
    events: tuple = ()  # sequence candidates consumed by this tick


Detector = Callable[[DetectionInput], DetectionResult]


def points_array(points: Sequence[Sample]) -> np.ndarray:
    return np.array([(p.x, p.y) for p in points], dtype=np.float64).reshape(-1, 2)


def centroid(points: Sequence[Sample]) -> tuple[float, float]:
    xy = points_array(points)
    c = xy.mean(axis=0)
    return float(c[0]), float(c[1])


def swipe_direction(angle_deg: float) -> str:
    """Bucket an angle (screen coordinates, y down) into a compass direction."""
    normalized = angle_deg % 360.0
    if normalized < 45.0 or normalized >= 315.0:
        return "right"
    if normalized < 135.0:
        return "down"
    if normalized < 225.0:
        return "left"
    return "up"


def detect_circle(
    points: Sequence[Sample], radius: float = 50.0, tolerance: float = 0.3
) -> DetectionResult:
    """Check whether the points lie on a circle of the given radius.

    A point counts when its distance to the centroid is within
    ``radius * tolerance`` of ``radius``. Confidence is the fraction of
    counted points.
    """
    if len(points) < CIRCLE_MIN_POINTS:
        return DetectionResult.no_match(points=len(points))

    xy = points_array(points)
    center = xy.mean(axis=0)
    distances = np.linalg.norm(xy - center, axis=1)
    counted = np.abs(distances - radius) <= radius * tolerance

    n_counted = int(counted.sum())
    coverage = n_counted / len(points)
    mean_radius = float(distances[counted].mean()) if n_counted else 0.0

    return DetectionResult(
        matches=coverage >= CIRCLE_MIN_COVERAGE,
        confidence=coverage,
        payload={
            "center": (float(center[0]), float(center[1])),
            "radius": mean_radius,
            "coverage": coverage,
            "points": len(points),
        },
    )


def detect_swipe(
    points: Sequence[Sample],
    direction: Optional[str] = None,
    min_distance: float = 50.0,
    max_time: float = 500.0,
) -> DetectionResult:
    """Compare the first and last sample for a fast, long enough stroke."""
    if len(points) < 2:
        return DetectionResult.no_match(points=len(points))

    start, end = points[0], points[-1]
    dx = end.x - start.x
    dy = end.y - start.y
    distance = math.hypot(dx, dy)
    duration = end.timestamp - start.timestamp

    if distance < min_distance or duration > max_time:
        return DetectionResult.no_match(distance=distance, duration=duration)

    angle = math.degrees(math.atan2(dy, dx))
    detected = swipe_direction(angle)
    matches = direction is None or detected == direction

    return DetectionResult(
        matches=matches,
        confidence=1.0 if matches else 0.0,
        payload={
            "direction": detected,
            "distance": distance,
            "duration": duration,
            "velocity": distance / duration if duration > 0 else 0.0,
            "angle": angle,
        },
    )


def detect_line(
    points: Sequence[Sample], min_length: float = 100.0, max_deviation: float = 20.0
) -> DetectionResult:
    """Check the stroke stays within ``max_deviation`` of the first-to-last segment."""
    if len(points) < 2:
        return DetectionResult.no_match(points=len(points))

    xy = points_array(points)
    start, end = xy[0], xy[-1]
    segment = end - start
    length = float(np.linalg.norm(segment))

    if length < min_length:
        return DetectionResult.no_match(length=length)

    inner = xy[1:-1]
    if len(inner):
        # Distance to the segment, not the infinite line
        t = np.clip((inner - start) @ segment / (length * length), 0.0, 1.0)
        closest = start + t[:, None] * segment
        deviations = np.linalg.norm(inner - closest, axis=1)
        worst = float(deviations.max())
        mean_dev = float(deviations.mean())
    else:
        worst = mean_dev = 0.0

    matches = worst <= max_deviation
    if not matches:
        confidence = 0.0
    elif max_deviation > 0:
        confidence = 1.0 - mean_dev / max_deviation
    else:
        confidence = 1.0

    return DetectionResult(
        matches=matches,
        confidence=confidence,
        payload={
            "length": length,
            "angle": math.degrees(math.atan2(segment[1], segment[0])),
            "max_deviation": worst,
            "mean_deviation": mean_dev,
            "start": (float(start[0]), float(start[1])),
            "end": (float(end[0]), float(end[1])),
        },
    )


def _leg_amplitudes(values: np.ndarray) -> list[float]:
    """Spans of the legs that end in a direction reversal."""
    amplitudes: list[float] = []
    leg_start = extreme = float(values[0])
    direction = 0

    for value in values[1:]:
        value = float(value)
        if direction == 0:
            if value != leg_start:
                direction = 1 if value > leg_start else -1
                extreme = value
            continue
        if (value - extreme) * direction >= 0:
            if (value - extreme) * direction > 0:
                extreme = value
            continue
        amplitudes.append(abs(extreme - leg_start))
        leg_start = extreme
        extreme = value
        direction = -direction

    return amplitudes


def detect_zigzag(
    points: Sequence[Sample],
    min_points: int = 4,
    amplitude: float = 30.0,
    axis: str = "y",
    min_reversal: float = 0.0,
) -> DetectionResult:
    """Count direction reversals along one axis.

    A reversal's amplitude is the span of the leg ending at it; reversals
    smaller than ``min_reversal`` are ignored.
    """
    if len(points) < max(min_points, 3):
        return DetectionResult.no_match(points=len(points))

    values = np.array([p.y if axis == "y" else p.x for p in points], dtype=np.float64)
    reversals = [a for a in _leg_amplitudes(values) if a >= min_reversal]
    changes = len(reversals)
    avg_amplitude = sum(reversals) / changes if changes else 0.0
    needed = min_points / 2

    return DetectionResult(
        matches=changes >= needed and avg_amplitude >= amplitude,
        confidence=min(changes / needed, 1.0) if needed > 0 else 1.0,
        payload={
            "changes": changes,
            "avg_amplitude": avg_amplitude,
            "axis": axis,
        },
    )


def detect_pinch(
    contacts: Sequence[tuple[Sample, Sample]], threshold: float = 0.2
) -> DetectionResult:
    """Scale change between two contacts relative to their baseline.

    Args:
        contacts: ``(origin, current)`` pairs, one per touch contact. The
            origins are the positions captured when the contact pair formed.
    """
    if len(contacts) != 2:
        return DetectionResult.no_match(contacts=len(contacts))

    (origin_a, current_a), (origin_b, current_b) = contacts
    initial = origin_a.distance_to(origin_b)
    if initial <= 0:
        return DetectionResult.no_match(reason="zero baseline")

    current = current_a.distance_to(current_b)
    scale = current / initial
    change = abs(1.0 - scale)

    return DetectionResult(
        matches=change >= threshold,
        confidence=min(change / threshold, 1.0) if threshold > 0 else 1.0,
        payload={
            "scale": scale,
            "scale_change": change,
            "initial_distance": initial,
            "current_distance": current,
            "is_pinch_in": scale < 1.0,
            "is_pinch_out": scale > 1.0,
            "center": (
                (current_a.x + current_b.x) / 2.0,
                (current_a.y + current_b.y) / 2.0,
            ),
        },
    )


def pinch_contacts(touches: Sequence[TouchTrack]) -> list[tuple[Sample, Sample]]:
    return [(t.origin, t.current) for t in touches]


def frame_features(points: Sequence[Sample]) -> dict[str, float]:
    """Scalar stroke features used by fuzzy templates."""
    if not points:
        return {"count": 0.0, "duration": 0.0, "path_length": 0.0,
                "width": 0.0, "height": 0.0, "velocity": 0.0}

    xy = points_array(points)
    steps = np.linalg.norm(np.diff(xy, axis=0), axis=1) if len(xy) > 1 else np.zeros(0)
    path_length = float(steps.sum())
    duration = points[-1].timestamp - points[0].timestamp
    span = xy.max(axis=0) - xy.min(axis=0)

    return {
        "count": float(len(points)),
        "duration": duration,
        "path_length": path_length,
        "width": float(span[0]),
        "height": float(span[1]),
        "velocity": path_length / duration if duration > 0 else 0.0,
    }
