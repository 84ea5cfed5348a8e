"""Timestamped input samples and bounded per-channel history.

One channel exists for the pointer (``POINTER``) and one per active touch
contact. Each channel keeps a FIFO of the most recent samples plus an
origin sample, which survives eviction and serves as the baseline for
two-finger gestures.
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from typing import Any, Hashable, Mapping, Optional

from hmi_gestures.errors import IngestionError

POINTER = "pointer"

# Channel lifecycle events offered to sequences
POINTER_DOWN = "pointerdown"
POINTER_UP = "pointerup"
TOUCH_START = "touchstart"
TOUCH_END = "touchend"
LIFECYCLE_EVENTS = frozenset({POINTER_DOWN, POINTER_UP, TOUCH_START, TOUCH_END})

DEFAULT_CAPACITY = 100


def _require_number(data: Mapping[str, Any], key: str) -> float:
    if key not in data or data[key] is None:
        raise IngestionError(f"sample is missing '{key}'")
    return _check_number(key, data[key])


def _check_number(key: str, value: Any) -> float:
    # bool is an int subclass but never a coordinate
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise IngestionError(f"sample field '{key}' is not numeric: {value!r}")
    value = float(value)
    if not math.isfinite(value):
        raise IngestionError(f"sample field '{key}' is not finite: {value!r}")
    return value


@dataclass(frozen=True)
class Sample:
    """One recorded 2D point. Timestamps are in milliseconds."""
    x: float
    y: float
    timestamp: float
    pressure: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Sample:
        """Validate a raw mapping and build a sample.

        Raises:
            IngestionError: if a coordinate or the timestamp is missing,
                non-numeric or not finite.
        """
        if not isinstance(data, Mapping):
            raise IngestionError(f"sample must be a mapping, got {type(data).__name__}")

        pressure = data.get("pressure")
        if pressure is not None:
            pressure = _require_number(data, "pressure")

        return cls(
            x=_require_number(data, "x"),
            y=_require_number(data, "y"),
            timestamp=_require_number(data, "timestamp"),
            pressure=pressure,
        )

    def validate(self) -> Sample:
        """Re-check a directly constructed sample, returning it unchanged."""
        for key in ("x", "y", "timestamp"):
            _check_number(key, getattr(self, key))
        if self.pressure is not None:
            _check_number("pressure", self.pressure)
        return self

    def distance_to(self, other: Sample) -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def to_dict(self) -> dict:
        data = {"x": self.x, "y": self.y, "timestamp": self.timestamp}
        if self.pressure is not None:
            data["pressure"] = self.pressure
        return data


class SampleBuffer:
    """Bounded FIFO history per input channel.

    Usage:
        buffer = SampleBuffer(capacity=100)
        buffer.push(POINTER, Sample(10, 20, 0.0))
        points = buffer.snapshot(POINTER)   # immutable tuple
        buffer.end_channel(POINTER)
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._history: dict[Hashable, deque[Sample]] = {}
        self._origins: dict[Hashable, Sample] = {}

    def push(self, channel_id: Hashable, sample: Sample) -> bool:
        """Append a sample, evicting the oldest when full.

        Returns True if this sample opened a new channel.
        """
        history = self._history.get(channel_id)
        created = history is None
        if created:
            if channel_id != POINTER:
                self._recapture_touch_origins()
            history = deque(maxlen=self._capacity)
            self._history[channel_id] = history
            self._origins[channel_id] = sample
        history.append(sample)
        return created

    def _recapture_touch_origins(self):
        # Baselines are relative to the current set of contacts
        for channel_id in self.touch_channels:
            latest = self.latest(channel_id)
            if latest is not None:
                self._origins[channel_id] = latest

    def snapshot(self, channel_id: Hashable) -> tuple[Sample, ...]:
        """Copy of the channel history, oldest first."""
        history = self._history.get(channel_id)
        if history is None:
            return ()
        return tuple(history)

    def origin(self, channel_id: Hashable) -> Optional[Sample]:
        """Baseline position of a channel.

        For the pointer this is the first sample of the stroke. For a touch
        contact it is the position held when the current set of contacts
        formed (re-captured whenever a contact starts or ends).
        """
        return self._origins.get(channel_id)

    def latest(self, channel_id: Hashable) -> Optional[Sample]:
        history = self._history.get(channel_id)
        return history[-1] if history else None

    def end_channel(self, channel_id: Hashable) -> bool:
        """Drop a channel's history. Returns False if it was not open."""
        self._origins.pop(channel_id, None)
        existed = self._history.pop(channel_id, None) is not None
        if existed and channel_id != POINTER:
            self._recapture_touch_origins()
        return existed

    def set_capacity(self, capacity: int):
        """Resize every channel, keeping the most recent samples."""
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        for channel_id, history in self._history.items():
            self._history[channel_id] = deque(history, maxlen=capacity)

    def clear(self):
        self._history.clear()
        self._origins.clear()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def channels(self) -> list[Hashable]:
        """Open channels in the order they were opened."""
        return list(self._history.keys())

    @property
    def touch_channels(self) -> list[Hashable]:
        return [c for c in self._history if c != POINTER]

    def __len__(self) -> int:
        return sum(len(h) for h in self._history.values())

    def __contains__(self, channel_id: Hashable) -> bool:
        return channel_id in self._history
