"""Input trace recording and replay.

Capture what an engine was fed for:
- Reproducible tests without an input device
- Benchmarks against real sessions
- Bug reports that replay deterministically

Channel ids must be JSON-serializable (strings or integers).
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Hashable, Iterator, Optional

from hmi_gestures.samples import Sample

if TYPE_CHECKING:
    from hmi_gestures.dispatcher import GestureEvent
    from hmi_gestures.engine import GestureEngine

logger = logging.getLogger("hmi_gestures.recorder")

TRACE_VERSION = 1
SAMPLE = "sample"
END = "end"
EVENT = "event"


@dataclass
class TraceEntry:
    """One recorded input: a sample, a channel end or an emitted event."""
    kind: str
    timestamp: float
    channel: Any = None
    sample: Optional[dict] = None
    event_type: Optional[str] = None
    data: Optional[dict] = None


class SampleRecorder:
    """Records what an engine is fed.

    Usage:
        recorder = SampleRecorder()
        engine.attach_recorder(recorder)
        recorder.start()
        ...
        recorder.stop()
        recorder.save("session.json")
    """

    def __init__(self):
        self._entries: list[TraceEntry] = []
        self._recording = False

    def start(self):
        """Begin a new recording session."""
        self._entries = []
        self._recording = True

    def stop(self) -> int:
        """Stop recording. Returns number of entries captured."""
        self._recording = False
        return len(self._entries)

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    @property
    def duration(self) -> float:
        """Milliseconds between the first and last entry."""
        if not self._entries:
            return 0.0
        return self._entries[-1].timestamp - self._entries[0].timestamp

    def record_sample(self, channel_id: Hashable, sample: Sample):
        if self._recording:
            self._entries.append(TraceEntry(
                kind=SAMPLE, timestamp=sample.timestamp, channel=channel_id, sample=sample.to_dict(),
            ))

    def record_end(self, channel_id: Hashable, timestamp: float):
        if self._recording:
            self._entries.append(TraceEntry(kind=END, timestamp=timestamp, channel=channel_id))

    def record_event(self, event_type: str, data: Optional[dict], timestamp: float):
        if self._recording:
            self._entries.append(TraceEntry(
                kind=EVENT, timestamp=timestamp, event_type=event_type, data=dict(data or {}),
            ))

    def save(self, path: str | Path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "version": TRACE_VERSION,
            "entry_count": len(self._entries),
            "duration": self.duration,
            "entries": [asdict(e) for e in self._entries],
        }
        with open(path, "w") as f:
            json.dump(data, f)
        logger.info("Saved %d trace entries to %s", len(self._entries), path)


class SamplePlayer:
    """Replays a recorded trace into an engine.

    Usage:
        player = SamplePlayer.load("session.json")
        fired = player.replay_into(engine)
    """

    def __init__(self, entries: list[TraceEntry]):
        self._entries = sorted(entries, key=lambda e: e.timestamp)

    @classmethod
    def load(cls, path: str | Path) -> SamplePlayer:
        with open(path) as f:
            data = json.load(f)

        version = data.get("version", TRACE_VERSION)
        if version != TRACE_VERSION:
            raise ValueError(f"unsupported trace version {version}")

        entries = [
            TraceEntry(
                kind=e["kind"],
                timestamp=float(e["timestamp"]),
                channel=e.get("channel"),
                sample=e.get("sample"),
                event_type=e.get("event_type"),
                data=e.get("data"),
            )
            for e in data["entries"]
        ]
        return cls(entries)

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    @property
    def duration(self) -> float:
        if not self._entries:
            return 0.0
        return self._entries[-1].timestamp - self._entries[0].timestamp

    def play(self) -> Iterator[TraceEntry]:
        """Iterate through all entries in timestamp order."""
        yield from self._entries

    def replay_into(
        self,
        engine: GestureEngine,
        frame_ms: float = 1000.0 / 60.0,
        settle_frames: int = 1,
    ) -> list[GestureEvent]:
        """Feed every entry, ticking the engine on a fixed frame grid.

        Ticks run at each frame boundary reached by the trace's own
        timestamps, so replay is deterministic and independent of wall time.

        Args:
            frame_ms: Simulated tick interval.
            settle_frames: Extra ticks after the last entry.

        Returns:
            Every gesture fired during the replay.
        """
        if frame_ms <= 0:
            raise ValueError("frame_ms must be positive")
        if not self._entries:
            return []

        start = self._entries[0].timestamp
        if not engine.running:
            engine.start(now=start)

        fired: list[GestureEvent] = []
        next_tick = start + frame_ms
        for entry in self._entries:
            while next_tick <= entry.timestamp:
                fired.extend(engine.tick(next_tick))
                next_tick += frame_ms
            self._apply(engine, entry)

        for _ in range(settle_frames):
            fired.extend(engine.tick(next_tick))
            next_tick += frame_ms
        return fired

    @staticmethod
    def _apply(engine: GestureEngine, entry: TraceEntry):
        if entry.kind == SAMPLE:
            engine.feed(entry.channel, entry.sample)
        elif entry.kind == END:
            engine.end_channel(entry.channel, timestamp=entry.timestamp)
        elif entry.kind == EVENT:
            engine.emit(entry.event_type, entry.data, timestamp=entry.timestamp)
        else:
            logger.warning("Skipping unknown trace entry kind: %s", entry.kind)
