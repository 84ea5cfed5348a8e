"""Engine configuration and YAML gesture files.

An engine config file is a flat mapping (optionally nested under
``engine:``); unknown keys are ignored:

    buffer_capacity: 80
    tick_rate: 60
    auto_performance_mode: true

A gesture file lists registrations; handlers are attached in code through
the handles returned by ``GestureEngine.load_gestures``:

    gestures:
      - name: undo
        pattern: swipe
        params: {direction: left, min_distance: 80}
        cooldown: 500
      - name: confirm
        pattern: sequence
        params:
          steps: [circle, {type: swipe, direction: up}]
          timeout: 1500
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from hmi_gestures.errors import ConfigurationError


@dataclass
class EngineConfig:
    buffer_capacity: int = 100
    tick_rate: float = 60.0
    frame_budget_ms: float = 1000.0 / 60.0
    default_cooldown_ms: float = 100.0
    degraded_ticks: int = 30
    history_size: int = 1000
    max_alerts: int = 100
    max_frame_samples: int = 1000
    alert_fps: float = 30.0
    max_frame_time_ms: float = 33.0
    memory_threshold: float = 0.8
    smoothing: float = 0.1
    emergency_fps: float = 20.0
    auto_performance_mode: bool = False

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raises ConfigurationError on the first invalid value."""
        for name in ("buffer_capacity", "degraded_ticks", "history_size", "max_alerts", "max_frame_samples"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

        for name in ("tick_rate", "frame_budget_ms", "alert_fps", "max_frame_time_ms", "emergency_fps"):
            _positive(name, getattr(self, name))

        cooldown = self.default_cooldown_ms
        if not _is_number(cooldown) or cooldown < 0:
            raise ConfigurationError(f"default_cooldown_ms must be >= 0, got {cooldown!r}")

        for name in ("memory_threshold", "smoothing"):
            value = getattr(self, name)
            if not _is_number(value) or not 0 < value <= 1:
                raise ConfigurationError(f"{name} must be in (0, 1], got {value!r}")

        if not isinstance(self.auto_performance_mode, bool):
            raise ConfigurationError(
                f"auto_performance_mode must be a bool, got {self.auto_performance_mode!r}"
            )

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> EngineConfig:
        data = data or {}
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"engine config must be a mapping, got {type(data).__name__}")
        if isinstance(data.get("engine"), Mapping):
            data = data["engine"]
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_yaml(cls, path: str | Path) -> EngineConfig:
        with open(path) as f:
            return cls.from_dict(yaml.safe_load(f))

    def to_dict(self) -> dict:
        return asdict(self)

    def to_yaml(self, path: str | Path):
        with open(path, "w") as f:
            yaml.dump({"engine": self.to_dict()}, f, default_flow_style=False, sort_keys=False)


@dataclass
class GestureSpec:
    """One registration as declared in a gesture file."""
    name: str
    pattern: str
    params: dict[str, Any] = field(default_factory=dict)
    cooldown: Optional[float] = None
    description: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GestureSpec:
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"gesture entry must be a mapping, got {data!r}")
        name = data.get("name")
        pattern = data.get("pattern")
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f"gesture entry needs a name: {dict(data)!r}")
        if not isinstance(pattern, str) or not pattern:
            raise ConfigurationError(f"gesture '{name}' needs a pattern type")
        params = data.get("params") or {}
        if not isinstance(params, Mapping):
            raise ConfigurationError(f"gesture '{name}' params must be a mapping")
        cooldown = data.get("cooldown")
        if cooldown is not None and (not _is_number(cooldown) or cooldown < 0):
            raise ConfigurationError(f"gesture '{name}' cooldown must be >= 0, got {cooldown!r}")
        return cls(
            name=name,
            pattern=pattern,
            params=dict(params),
            cooldown=None if cooldown is None else float(cooldown),
            description=str(data.get("description", "")),
        )

    def to_dict(self) -> dict:
        entry: dict[str, Any] = {"name": self.name, "pattern": self.pattern}
        if self.params:
            entry["params"] = dict(self.params)
        if self.cooldown is not None:
            entry["cooldown"] = self.cooldown
        if self.description:
            entry["description"] = self.description
        return entry


def load_gesture_specs(path: str | Path) -> list[GestureSpec]:
    """Parse a gesture file. Duplicate names are rejected here, before any registration."""
    with open(path) as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, Mapping):
        raise ConfigurationError(f"{path}: expected a mapping with a 'gestures' list")

    entries = config.get("gestures", [])
    if not isinstance(entries, list):
        raise ConfigurationError(f"{path}: 'gestures' must be a list")

    specs = [GestureSpec.from_dict(entry) for entry in entries]
    seen: set[str] = set()
    for spec in specs:
        if spec.name in seen:
            raise ConfigurationError(f"{path}: gesture '{spec.name}' is declared twice")
        seen.add(spec.name)
    return specs


def dump_gesture_specs(specs: list[GestureSpec], path: str | Path):
    with open(path, "w") as f:
        yaml.dump({"gestures": [s.to_dict() for s in specs]}, f, default_flow_style=False, sort_keys=False)


def _is_number(value: Any) -> bool:
    return (
        not isinstance(value, bool)
        and isinstance(value, (int, float))
        and math.isfinite(value)
    )


def _positive(name: str, value: Any):
    if not _is_number(value) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive number, got {value!r}")
