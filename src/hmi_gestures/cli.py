"""hmi-gestures CLI: developer tooling around the engine.

Usage:
    hmi-gestures synth         — Write a synthetic input trace
    hmi-gestures replay        — Replay a trace against a gesture file
    hmi-gestures benchmark     — Measure tick latency with synthetic input
    hmi-gestures check-config  — Validate an engine config or gesture file
"""

from __future__ import annotations

import logging
import math
import time
from pathlib import Path
from typing import List, Optional

import numpy as np
import typer
import yaml

from hmi_gestures.config import EngineConfig, load_gesture_specs
from hmi_gestures.engine import GestureEngine
from hmi_gestures.errors import ConfigurationError
from hmi_gestures.recorder import SamplePlayer, SampleRecorder
from hmi_gestures.samples import POINTER, Sample

app = typer.Typer(
    name="hmi-gestures",
    help="Pointer and touch gesture recognition engine.",
    add_completion=False,
)

SHAPES = ("circle", "swipe", "line", "zigzag")


@app.callback()
def _configure(
    log_level: str = typer.Option("warning", "--log-level", help="Logging level"),
):
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def synthetic_stroke(
    shape: str,
    start: float = 0.0,
    points: int = 16,
    duration: float = 200.0,
    jitter: float = 0.0,
    seed: int = 0,
) -> list[Sample]:
    """Points for a named shape, evenly spaced in time."""
    if shape not in SHAPES:
        raise ValueError(f"unknown shape {shape!r}")
    rng = np.random.default_rng(seed)
    t = np.linspace(0.0, 1.0, points)

    if shape == "circle":
        angles = t * 2 * math.pi * (points - 1) / points
        xy = np.stack([100 + 50 * np.cos(angles), 100 + 50 * np.sin(angles)], axis=1)
    elif shape == "swipe":
        xy = np.stack([50 + 150 * t, np.full_like(t, 100.0)], axis=1)
    elif shape == "line":
        xy = np.stack([20 + 200 * t, 20 + 100 * t], axis=1)
    else:
        xy = np.stack([20 + 200 * t, 100 + 40 * np.where(np.arange(points) % 2, 1.0, -1.0)], axis=1)

    if jitter:
        xy = xy + rng.normal(0.0, jitter, xy.shape)
    stamps = start + t * duration
    return [Sample(float(x), float(y), float(ts)) for (x, y), ts in zip(xy, stamps)]


@app.command()
def synth(
    output: str = typer.Argument(..., help="Output trace path (.json)"),
    shape: List[str] = typer.Option(["circle", "swipe"], "--shape", help="Shapes to draw, in order"),
    gap: float = typer.Option(400.0, help="Milliseconds between strokes"),
    jitter: float = typer.Option(0.0, help="Gaussian jitter in pixels"),
):
    """Write a synthetic pointer trace, one stroke per shape."""
    recorder = SampleRecorder()
    recorder.start()
    t = 0.0
    for i, name in enumerate(shape):
        if name not in SHAPES:
            typer.echo(f"❌ Unknown shape: {name} (choose from {', '.join(SHAPES)})", err=True)
            raise typer.Exit(1)
        stroke = synthetic_stroke(name, start=t, jitter=jitter, seed=i)
        for sample in stroke:
            recorder.record_sample(POINTER, sample)
        recorder.record_end(POINTER, stroke[-1].timestamp + 1.0)
        t = stroke[-1].timestamp + gap
    recorder.stop()
    recorder.save(output)
    typer.echo(f"💾 Wrote {recorder.entry_count} entries ({recorder.duration:.0f} ms) to {output}")


@app.command()
def replay(
    trace: str = typer.Argument(..., help="Path to a recorded trace"),
    gestures: str = typer.Option(..., "--gestures", "-g", help="Gesture file (YAML)"),
    config: Optional[str] = typer.Option(None, "--config", help="Engine config (YAML)"),
    frame_ms: float = typer.Option(1000.0 / 60.0, help="Simulated tick interval"),
):
    """Replay a trace through an engine and print every fired gesture."""
    path = Path(trace)
    if not path.exists():
        typer.echo(f"❌ Trace not found: {trace}", err=True)
        raise typer.Exit(1)

    try:
        engine_config = EngineConfig.from_yaml(config) if config else EngineConfig()
        player = SamplePlayer.load(path)
        engine = GestureEngine(config=engine_config)
        engine.load_gestures(gestures)
    except (ConfigurationError, OSError, ValueError) as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"▶️  Replaying {path.name} ({player.entry_count} entries, {player.duration:.0f} ms)")
    fired = player.replay_into(engine, frame_ms=frame_ms)
    for event in fired:
        typer.echo(f"   🎯 {event.name} [{event.type}] t={event.timestamp:.0f}ms confidence={event.confidence:.2f}")

    typer.echo(f"\n✅ Replay complete. {len(fired)} gestures fired.")
    for name, count in engine.get_metrics()["triggered_counts"].items():
        typer.echo(f"   {name:20s} {count}")


@app.command()
def benchmark(
    ticks: int = typer.Option(1000, help="Number of ticks"),
    registrations: int = typer.Option(4, help="Registrations per pattern type"),
    prometheus: bool = typer.Option(False, help="Print Prometheus metrics afterwards"),
):
    """Measure tick latency with synthetic strokes and a mix of patterns."""
    typer.echo(f"⚡ Running benchmark: {ticks} ticks, {registrations} registration(s) per type")

    engine = GestureEngine()
    for i in range(registrations):
        engine.register(f"circle_{i}").pattern("circle")
        engine.register(f"swipe_{i}").pattern("swipe")
        engine.register(f"line_{i}").pattern("line")
        engine.register(f"zigzag_{i}").pattern("zigzag")
        engine.register(f"combo_{i}").pattern("sequence", steps=["circle", "swipe"])

    frame_ms = 1000.0 / 60.0
    strokes = [synthetic_stroke(s, jitter=2.0, seed=i) for i, s in enumerate(SHAPES)]
    engine.start(now=0.0)

    times = []
    fired = 0
    now = 0.0
    for i in range(ticks):
        stroke = strokes[(i // 16) % len(strokes)]
        s = stroke[i % 16]
        now += frame_ms
        engine.feed(POINTER, Sample(s.x, s.y, now))
        if i % 16 == 15:
            engine.end_channel(POINTER, timestamp=now)

        t0 = time.perf_counter()
        fired += len(engine.tick(now))
        times.append(time.perf_counter() - t0)

    avg_ms = sum(times) / len(times) * 1000
    p95_ms = sorted(times)[int(len(times) * 0.95)] * 1000
    tps = 1000 / avg_ms if avg_ms > 0 else 0

    typer.echo("\n📊 Results:")
    typer.echo(f"   Average tick:  {avg_ms:.3f} ms")
    typer.echo(f"   P95 tick:      {p95_ms:.3f} ms")
    typer.echo(f"   Throughput:    {tps:.0f} ticks/s")
    typer.echo(f"   Gestures fired: {fired}")

    typer.echo("\n📈 Stage breakdown:")
    for name, stats in engine.profiler.summary().items():
        typer.echo(f"   {name:12s} avg={stats['avg_ms']:.3f}ms  p95={stats['p95_ms']:.3f}ms  calls={stats['calls']}")
    slowest = engine.profiler.slowest()
    if slowest:
        typer.echo(f"   Slowest stage: {slowest}")

    if prometheus:
        typer.echo("")
        typer.echo(engine.diagnostics.render_prometheus())


@app.command("check-config")
def check_config(
    path: str = typer.Argument(..., help="Engine config or gesture file (YAML)"),
):
    """Validate a file without running anything."""
    file = Path(path)
    if not file.exists():
        typer.echo(f"❌ File not found: {path}", err=True)
        raise typer.Exit(1)

    try:
        with open(file) as f:
            data = yaml.safe_load(f) or {}
        if isinstance(data, dict) and "gestures" in data:
            specs = load_gesture_specs(file)
            # Registering builds every detector, which validates its parameters
            GestureEngine().load_gestures(file)
            typer.echo(f"✅ {len(specs)} gesture(s) valid:")
            for spec in specs:
                cooldown = "default" if spec.cooldown is None else f"{spec.cooldown:g} ms"
                typer.echo(f"   {spec.name:20s} {spec.pattern:10s} cooldown={cooldown}")
        else:
            config = EngineConfig.from_dict(data)
            typer.echo("✅ Engine config valid:")
            for key, value in config.to_dict().items():
                typer.echo(f"   {key:24s} {value}")
    except (ConfigurationError, yaml.YAMLError) as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)


def main():
    app()


if __name__ == "__main__":
    main()
