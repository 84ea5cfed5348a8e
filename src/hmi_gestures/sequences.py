"""Multi-step gesture sequences.

Detects ordered chains like circle → swipe up → double tap. Each step
has its own timeout, measured from the previous matched step. Progress is
an explicit state record per registration, advanced by the dispatcher
once per tick with the candidate events collected since the last tick.

Pointer and touch lifecycle events arrive between every pair of strokes.
While a sequence waits for a non-lifecycle step they are skipped, so
chaining gestures drawn as separate strokes does not need ``allow_gaps``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Optional

from hmi_gestures.errors import ConfigurationError
from hmi_gestures.patterns import DetectionResult
from hmi_gestures.samples import LIFECYCLE_EVENTS

logger = logging.getLogger("hmi_gestures.sequences")

DEFAULT_STEP_TIMEOUT = 5000.0
DEFAULT_MAX_GAP = 1000.0
WILDCARD = "*"


@dataclass
class SequenceEvent:
    """A candidate event: an input lifecycle event, an external event or a fired gesture.

    A None timestamp is filled in with the time of the tick that consumes it.
    """
    type: str
    timestamp: Optional[float] = None
    data: dict = field(default_factory=dict)
    pattern: Optional[str] = None  # pattern type when the event is a fired gesture


@dataclass(frozen=True)
class SequenceStep:
    """One expected event. ``data`` entries must all equal the event's data."""
    type: str
    data: Mapping[str, Any] = field(default_factory=dict)
    timeout: Optional[float] = None  # ms allowed since the previous step

    def matches(self, event: SequenceEvent) -> bool:
        if self.type not in (WILDCARD, event.type, event.pattern):
            return False
        return all(event.data.get(k) == v for k, v in self.data.items())

    @classmethod
    def from_value(cls, value: Any) -> SequenceStep:
        """Build a step from a type string or a ``{type, data, timeout}`` dict.

        Extra dict keys are folded into ``data`` so ``{"type": "swipe",
        "direction": "up"}`` works as shorthand.
        """
        if isinstance(value, SequenceStep):
            return value
        if isinstance(value, str) and value:
            return cls(type=value)
        if isinstance(value, Mapping) and isinstance(value.get("type"), str):
            data = dict(value.get("data") or {})
            data.update({k: v for k, v in value.items() if k not in ("type", "data", "timeout")})
            timeout = value.get("timeout")
            if timeout is not None and (
                isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
            ):
                raise ConfigurationError(f"step timeout must be a positive number, got {timeout!r}")
            return cls(type=value["type"], data=data, timeout=None if timeout is None else float(timeout))
        raise ConfigurationError(f"invalid sequence step: {value!r}")


@dataclass
class GestureSequence:
    """A named ordered list of steps that completes into one detection."""
    name: str
    steps: list[SequenceStep]
    timeout: float = DEFAULT_STEP_TIMEOUT  # default per-step timeout
    allow_gaps: bool = False
    max_gap: float = DEFAULT_MAX_GAP
    description: str = ""

    def step_timeout(self, index: int) -> float:
        step_timeout = self.steps[index].timeout
        return step_timeout if step_timeout is not None else self.timeout

    @classmethod
    def from_params(cls, name: str, params: Mapping[str, Any]) -> GestureSequence:
        """Validate ``sequence`` pattern parameters.

        Raises:
            ConfigurationError: on missing/empty steps or bad timing values.
        """
        allowed = {"steps", "timeout", "allow_gaps", "max_gap", "description"}
        unknown = set(params) - allowed
        if unknown:
            raise ConfigurationError(
                f"unknown parameter(s) for sequence pattern: {', '.join(sorted(unknown))}"
            )

        raw_steps = params.get("steps")
        if not raw_steps or isinstance(raw_steps, (str, Mapping)):
            raise ConfigurationError("sequence pattern needs a non-empty list of steps")
        steps = [SequenceStep.from_value(s) for s in raw_steps]

        timeout = params.get("timeout", DEFAULT_STEP_TIMEOUT)
        max_gap = params.get("max_gap", DEFAULT_MAX_GAP)
        for key, value in (("timeout", timeout), ("max_gap", max_gap)):
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationError(f"sequence {key} must be a positive number, got {value!r}")

        return cls(
            name=name,
            steps=steps,
            timeout=float(timeout),
            allow_gaps=bool(params.get("allow_gaps", False)),
            max_gap=float(max_gap),
            description=str(params.get("description", "")),
        )


@dataclass
class SequenceState:
    """Progress through one sequence. Only moves forward, or back to 0."""
    current_index: int = 0
    deadline: Optional[float] = None
    trace: list[dict] = field(default_factory=list)
    started_at: Optional[float] = None
    last_match_at: Optional[float] = None

    def reset(self):
        self.current_index = 0
        self.deadline = None
        self.trace = []
        self.started_at = None
        self.last_match_at = None


class SequenceEngine:
    """Owns sequence definitions and their state, keyed by registration id.

    Usage:
        engine = SequenceEngine()
        engine.add(7, GestureSequence("combo", [SequenceStep("circle"), SequenceStep("swipe")]))

        # Once per tick with the events collected since the last tick:
        result = engine.advance(7, events, now)
        if result.matches:
            print(result.payload["trace"])
    """

    def __init__(self):
        self._sequences: dict[int, GestureSequence] = {}
        self._states: dict[int, SequenceState] = {}

    def add(self, registration_id: int, sequence: GestureSequence):
        if registration_id in self._sequences:
            raise ConfigurationError(f"sequence already tracked for registration {registration_id}")
        self._sequences[registration_id] = sequence
        self._states[registration_id] = SequenceState()

    def remove(self, registration_id: int) -> bool:
        """Drop a sequence and its state together."""
        self._states.pop(registration_id, None)
        return self._sequences.pop(registration_id, None) is not None

    def state(self, registration_id: int) -> Optional[SequenceState]:
        """A copy of the current progress, or None if untracked."""
        state = self._states.get(registration_id)
        if state is None:
            return None
        return replace(state, trace=list(state.trace))

    def expire(self, registration_id: int, now: float) -> bool:
        """Reset the sequence if its step deadline has passed."""
        state = self._states[registration_id]
        if state.deadline is not None and now > state.deadline:
            logger.debug(
                "Sequence %s timed out at step %d",
                self._sequences[registration_id].name, state.current_index,
            )
            state.reset()
            return True
        return False

    def feed(self, registration_id: int, event: SequenceEvent) -> DetectionResult:
        """Offer one candidate event to a sequence."""
        sequence = self._sequences[registration_id]
        state = self._states[registration_id]

        self.expire(registration_id, event.timestamp)

        expected = sequence.steps[state.current_index]
        if expected.matches(event):
            return self._advance_step(sequence, state, event)

        if state.current_index == 0:
            return DetectionResult.no_match(step=0)

        if event.type in LIFECYCLE_EVENTS and expected.type not in LIFECYCLE_EVENTS:
            return DetectionResult.no_match(step=state.current_index)

        if sequence.allow_gaps and event.timestamp - state.last_match_at <= sequence.max_gap:
            return DetectionResult.no_match(step=state.current_index)

        state.reset()
        if sequence.steps[0].matches(event):
            return self._advance_step(sequence, state, event)
        return DetectionResult.no_match(step=0)

    def _advance_step(
        self, sequence: GestureSequence, state: SequenceState, event: SequenceEvent
    ) -> DetectionResult:
        if state.started_at is None:
            state.started_at = event.timestamp

        state.trace.append({
            "step": state.current_index,
            "type": event.type,
            "pattern": event.pattern,
            "timestamp": event.timestamp,
            "data": dict(event.data),
        })
        state.current_index += 1
        state.last_match_at = event.timestamp

        if state.current_index < len(sequence.steps):
            state.deadline = event.timestamp + sequence.step_timeout(state.current_index)
            return DetectionResult.no_match(step=state.current_index)

        result = DetectionResult(
            matches=True,
            confidence=1.0,
            payload={
                "sequence": sequence.name,
                "trace": list(state.trace),
                "duration": event.timestamp - state.started_at,
            },
        )
        state.reset()
        return result

    def advance(
        self, registration_id: int, events: Iterable[SequenceEvent], now: float
    ) -> DetectionResult:
        """Feed a tick's events in order, then apply the deadline at ``now``.

        Returns the first completion in this batch, if any.
        """
        completed: Optional[DetectionResult] = None
        for event in events:
            result = self.feed(registration_id, event)
            if result.matches and completed is None:
                completed = result

        self.expire(registration_id, now)

        if completed is not None:
            return completed
        return DetectionResult.no_match(step=self._states[registration_id].current_index)

    def reset(self, registration_id: Optional[int] = None):
        """Clear progress for one or all sequences."""
        if registration_id is not None:
            state = self._states.get(registration_id)
            if state:
                state.reset()
        else:
            for state in self._states.values():
                state.reset()

    def __len__(self) -> int:
        return len(self._sequences)

    def __contains__(self, registration_id: int) -> bool:
        return registration_id in self._sequences
