#!/usr/bin/env python3

from __future__ import annotations

import argparse
import base64
import json
import math
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, TextIO, Tuple

import numpy as np
from PIL import Image, ImageDraw

from bake_catalog import CatalogIndex, write_json_atomic
from bake_options import (
    PROGRESS_PREFIX,
    TOP_MARGIN,
    WALL_THICKNESS,
    add_bake_arguments,
    resolve_bake_options,
)
from sand_world import DEFAULT_GRAVITY, SandWorld


PROJECT_ROOT = Path(__file__).resolve().parents[1]
BAKES_DIR = PROJECT_ROOT / "bakes"

FORMAT_VERSION = 1
QUANTIZATION_FACTOR = 32
ENCODE_MARGIN = 5.0
UINT16_MAX = 65535

INTERNAL_RATE_HZ = 240
DRAIN_CAP_SECONDS = 20
JIGGLE_BAND = 20.0
JIGGLE_ACCEL = 250.0
JIGGLE_BOOST = 3.0
JIGGLE_BOOST_FROM = 0.85

CAP_PAD = 20.0
PLACEMENT_SHRINK = 0.75
PLACEMENT_SPAN = 0.85

PROGRESS_EVERY = 10
POSTER_WIDTH = 360
POSTER_BACKGROUND = (16, 18, 24)
POSTER_WALL = (120, 130, 150)
POSTER_SAND = (226, 190, 120)

Segment = Tuple[Tuple[float, float], Tuple[float, float]]


def log(message: str) -> None:
    print(f"[bake] {message}", flush=True)


def format_number(value: float) -> str:
    return f"{float(value):g}"


# ---------------------------------------------------------------------------
# Shape model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ShapeParameters:
    """Hourglass silhouette; fully determines walls and the grain envelope."""

    neck: float
    bulb: float
    half_height: float
    blend: str = "power"
    power: float = 2.0
    cubic_c1: float = 0.15
    cubic_c2: float = 0.85
    tilt: float = 0.0
    wall_step: float = 8.0

    @classmethod
    def from_options(cls, options: Mapping[str, object]) -> "ShapeParameters":
        return cls(
            neck=float(options["neck"]),
            bulb=float(options["bulb"]),
            half_height=float(options["half_height"]),
            blend=str(options["shape"]),
            power=float(options["power"]),
            cubic_c1=float(options["cubic_c1"]),
            cubic_c2=float(options["cubic_c2"]),
            tilt=float(options["tilt"]),
            wall_step=float(options["wall_step"]),
        )

    def blend_at(self, t: float) -> float:
        t = min(1.0, max(0.0, t))
        if self.blend == "cubic":
            u = 1.0 - t
            return 3.0 * u * u * t * self.cubic_c1 + 3.0 * u * t * t * self.cubic_c2 + t * t * t
        return t ** self.power

    def width_at(self, y: float) -> float:
        """Chamber half-width at height ``y``; symmetric about the neck plane."""
        t = abs(float(y)) / self.half_height
        return self.neck + (self.bulb - self.neck) * self.blend_at(t)

    def gravity(self, magnitude: float = DEFAULT_GRAVITY) -> Tuple[float, float]:
        angle = math.radians(self.tilt)
        return (magnitude * math.sin(angle), magnitude * math.cos(angle))

    def to_meta(self) -> Dict[str, object]:
        return {
            "neck": self.neck,
            "bulb": self.bulb,
            "halfHeight": self.half_height,
            "shape": {"blend": self.blend, "power": self.power, "c1": self.cubic_c1, "c2": self.cubic_c2},
            "tilt": self.tilt,
            "wallStep": self.wall_step,
        }


# ---------------------------------------------------------------------------
# Scene builder
# ---------------------------------------------------------------------------

def build_walls(shape: ShapeParameters) -> List[Segment]:
    # Sloped segments per slat; axis-aligned ledges would act as false shelves.
    H = shape.half_height
    slats = max(1, int(math.ceil(2.0 * H / shape.wall_step - 1e-9)))
    ys = [-H + k * shape.wall_step for k in range(slats)] + [H]

    segments: List[Segment] = []
    for y0, y1 in zip(ys[:-1], ys[1:]):
        w0 = shape.width_at(y0)
        w1 = shape.width_at(y1)
        segments.append(((-w0, y0), (-w1, y1)))
        segments.append(((w0, y0), (w1, y1)))

    cap = shape.bulb + CAP_PAD
    segments.append(((-cap, -H), (cap, -H)))
    segments.append(((-cap, H), (cap, H)))
    return segments


def place_grains(
    shape: ShapeParameters,
    count: int,
    grain_radius: float,
    rng: np.random.Generator,
) -> np.ndarray:
    H = shape.half_height
    top = -H + max(TOP_MARGIN, grain_radius + WALL_THICKNESS / 2)
    bottom = min(-H + TOP_MARGIN + PLACEMENT_SPAN * H, -grain_radius)
    bottom = max(bottom, top)

    ys = rng.uniform(top, bottom, size=count)
    xs = np.empty(count, dtype=np.float64)
    spread = rng.uniform(-1.0, 1.0, size=count)
    for index, y in enumerate(ys):
        free = shape.width_at(y) - grain_radius - WALL_THICKNESS / 2
        xs[index] = spread[index] * max(free, 0.0) * PLACEMENT_SHRINK
    return np.column_stack([xs, ys])


@dataclass
class Scene:
    shape: ShapeParameters
    grain_radius: float
    grains: np.ndarray
    walls: List[Segment] = field(default_factory=list)


def build_scene(
    world: SandWorld,
    shape: ShapeParameters,
    count: int,
    grain_radius: float,
    rng: np.random.Generator,
) -> Scene:
    walls = build_walls(shape)
    for start, end in walls:
        world.add_static_segment(start, end, thickness=WALL_THICKNESS)
    handles = world.add_grains(place_grains(shape, count, grain_radius, rng), grain_radius)
    return Scene(shape=shape, grain_radius=grain_radius, grains=handles, walls=walls)


# ---------------------------------------------------------------------------
# Bake loop
# ---------------------------------------------------------------------------

class BakePhase(Enum):
    RUNNING = "running"
    DRAINING = "draining"
    DONE = "done"


@dataclass
class BakeStats:
    frames: int
    target_frames: int
    drain_frames: int
    residual_grains: int
    ticks: int


def target_frame_count(duration: float, fps: float) -> int:
    # Round first so 2.0 * 10 never turns into 21 frames.
    return max(1, int(math.ceil(round(duration * fps, 6))))


class BakeLoop:
    """Steps the world at a fixed internal rate and samples at ``fps``.

    RUNNING until ``target_frames`` samples exist, then DRAINING while any
    grain is still above the neck, bounded by ``fps * drain_seconds`` extra
    samples, then DONE.
    """

    def __init__(
        self,
        world: SandWorld,
        grains: np.ndarray,
        *,
        fps: int,
        duration: float,
        rng: np.random.Generator,
        internal_rate: int = INTERNAL_RATE_HZ,
        drain_seconds: int = DRAIN_CAP_SECONDS,
        neck_y: float = 0.0,
    ) -> None:
        self.world = world
        self.grains = np.asarray(grains, dtype=np.intp)
        self.rng = rng
        self.dt = 1.0 / internal_rate
        self.cadence = max(1, int(round(internal_rate / fps)))
        self.target_frames = target_frame_count(duration, fps)
        self.drain_cap = int(fps * drain_seconds)
        self.neck_y = neck_y

        self.phase = BakePhase.RUNNING
        self.frames = 0
        self.drain_frames = 0
        self.ticks = 0

    def jiggle_scale(self) -> float:
        if self.phase is BakePhase.DRAINING or self.frames >= JIGGLE_BOOST_FROM * self.target_frames:
            return JIGGLE_BOOST
        return 1.0

    def residual(self) -> int:
        return int(np.count_nonzero(self.world.positions[self.grains, 1] < self.neck_y))

    def tick(self) -> None:
        ys = self.world.positions[self.grains, 1]
        near = self.grains[np.abs(ys - self.neck_y) < JIGGLE_BAND]
        if near.size:
            fx = (self.rng.random(near.size) - 0.5) * 2.0 * JIGGLE_ACCEL * self.jiggle_scale()
            self.world.apply_force(near, np.column_stack([fx, np.zeros(near.size)]))
        self.world.step(self.dt)
        self.ticks += 1

    def advance(self, on_frame: Callable[[np.ndarray], None]) -> BakePhase:
        if self.phase is BakePhase.DONE:
            return self.phase

        for _ in range(self.cadence):
            self.tick()
        on_frame(self.world.positions[self.grains].copy())
        self.frames += 1
        if self.phase is BakePhase.DRAINING:
            self.drain_frames += 1

        if self.phase is BakePhase.RUNNING and self.frames >= self.target_frames:
            self.phase = BakePhase.DRAINING
        if self.phase is BakePhase.DRAINING:
            if self.residual() == 0 or self.drain_frames >= self.drain_cap:
                self.phase = BakePhase.DONE
        return self.phase

    def run(
        self,
        on_frame: Callable[[np.ndarray], None],
        on_progress: Optional[Callable[[int, int, BakePhase], None]] = None,
    ) -> BakeStats:
        while self.phase is not BakePhase.DONE:
            phase = self.advance(on_frame)
            if on_progress is not None:
                on_progress(self.frames, self.target_frames, phase)
        return self.stats()

    def stats(self) -> BakeStats:
        return BakeStats(
            frames=self.frames,
            target_frames=self.target_frames,
            drain_frames=self.drain_frames,
            residual_grains=self.residual(),
            ticks=self.ticks,
        )


# ---------------------------------------------------------------------------
# Encoder
# ---------------------------------------------------------------------------

def encode_offset(shape: ShapeParameters) -> np.ndarray:
    return np.array([shape.bulb + ENCODE_MARGIN, shape.half_height + ENCODE_MARGIN], dtype=np.float64)


def quantize(positions: np.ndarray, offset: np.ndarray, factor: int = QUANTIZATION_FACTOR) -> np.ndarray:
    scaled = np.rint((np.asarray(positions, dtype=np.float64) + offset) * factor)
    scaled = np.nan_to_num(scaled, nan=0.0, posinf=UINT16_MAX, neginf=0.0)
    return np.clip(scaled, 0, UINT16_MAX).astype(np.uint16)


def retime(frame_count: int, duration: float) -> float:
    return frame_count / float(duration)


@dataclass
class BakeResult:
    metadata: Dict[str, object]
    packed: np.ndarray

    @property
    def frame_count(self) -> int:
        return int(self.metadata["frames"])

    @property
    def grain_count(self) -> int:
        return int(self.metadata["grains"])

    def to_document(self) -> Dict[str, object]:
        data = base64.b64encode(self.packed.astype("<u2").tobytes()).decode("ascii")
        return {"meta": self.metadata, "data": data}


class FrameEncoder:
    def __init__(self, shape: ShapeParameters, grain_count: int, factor: int = QUANTIZATION_FACTOR) -> None:
        self.shape = shape
        self.grain_count = int(grain_count)
        self.factor = int(factor)
        self.offset = encode_offset(shape)
        self._frames: List[np.ndarray] = []

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    def capture(self, positions: np.ndarray) -> None:
        frame = quantize(positions, self.offset, self.factor)
        if frame.shape != (self.grain_count, 2):
            raise ValueError(f"Expected {self.grain_count} grain positions, got shape {frame.shape}.")
        self._frames.append(frame)

    def finish(self, duration: float, **extra: object) -> BakeResult:
        frames = self.frame_count
        if frames:
            packed = np.stack(self._frames).astype("<u2").reshape(-1)
        else:
            packed = np.zeros(0, dtype="<u2")

        metadata: Dict[str, object] = {
            "formatVersion": FORMAT_VERSION,
            "fps": retime(frames, duration),
            "duration": float(duration),
            "grains": self.grain_count,
            "frames": frames,
            "quantizationFactor": self.factor,
            "offsetX": float(self.offset[0]),
            "offsetY": float(self.offset[1]),
            **self.shape.to_meta(),
        }
        metadata.update(extra)
        return BakeResult(metadata=metadata, packed=packed)


def decode_bake(document: Mapping[str, object]) -> Tuple[Dict[str, object], np.ndarray]:
    """Return ``(meta, coords)`` with coords shaped ``(frames, grains, 2)``."""
    meta = dict(document["meta"])
    raw = base64.b64decode(str(document["data"]))
    values = np.frombuffer(raw, dtype="<u2")
    frames = int(meta["frames"])
    grains = int(meta["grains"])
    if values.size != frames * grains * 2:
        raise ValueError(f"Bake buffer holds {values.size} values, expected {frames * grains * 2}.")
    offset = np.array([float(meta["offsetX"]), float(meta["offsetY"])])
    coords = values.reshape(frames, grains, 2).astype(np.float64) / float(meta["quantizationFactor"]) - offset
    return meta, coords


def bake_file_name(duration: float, neck: float) -> str:
    return f"hourglass_{format_number(duration)}s_neck{format_number(neck)}.json"


# ---------------------------------------------------------------------------
# Poster
# ---------------------------------------------------------------------------

def render_poster(
    shape: ShapeParameters,
    positions: np.ndarray,
    grain_radius: float,
    path: Path,
    width: int = POSTER_WIDTH,
) -> Path:
    """Draw one frame (chamber outline and grains) as a PNG still."""
    span_x = 2.0 * (shape.bulb + ENCODE_MARGIN)
    span_y = 2.0 * (shape.half_height + ENCODE_MARGIN)
    scale = width / span_x
    height = max(1, int(round(span_y * scale)))
    offset = encode_offset(shape)

    image = Image.new("RGB", (width, height), POSTER_BACKGROUND)
    draw = ImageDraw.Draw(image)

    def to_px(x: float, y: float) -> Tuple[float, float]:
        return ((x + offset[0]) * scale, (y + offset[1]) * scale)

    ys = np.linspace(-shape.half_height, shape.half_height, 96)
    for side in (-1.0, 1.0):
        outline = [to_px(side * shape.width_at(y), y) for y in ys]
        draw.line(outline, fill=POSTER_WALL, width=2)

    r_px = max(1.0, grain_radius * scale)
    for x, y in np.asarray(positions, dtype=np.float64):
        cx, cy = to_px(x, y)
        draw.ellipse((cx - r_px, cy - r_px, cx + r_px, cy + r_px), fill=POSTER_SAND)

    path.parent.mkdir(parents=True, exist_ok=True)
    image.save(path, format="PNG")
    return path


# ---------------------------------------------------------------------------
# Progress reporting
# ---------------------------------------------------------------------------

class ProgressReporter:
    def __init__(self, enabled: bool, stream: Optional[TextIO] = None, every: int = PROGRESS_EVERY) -> None:
        self.enabled = enabled
        self.stream = stream
        self.every = max(1, int(every))
        self._last_phase: Optional[BakePhase] = None

    def emit(self, event: str, **payload: object) -> None:
        if not self.enabled:
            return
        line = PROGRESS_PREFIX + json.dumps({"event": event, **payload})
        print(line, file=self.stream or sys.stdout, flush=True)

    def progress(self, frame: int, target: int, phase: BakePhase) -> None:
        changed = phase is not self._last_phase
        self._last_phase = phase
        if not (changed or frame % self.every == 0 or phase is BakePhase.DONE):
            return
        if self.enabled:
            self.emit("progress", frame=frame, target=target, phase=phase.value)
        elif changed or frame % (self.every * 6) == 0:
            log(f"frame {frame}/{target} ({phase.value})")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@dataclass
class BakeOutcome:
    path: Path
    poster: Path
    result: BakeResult
    stats: BakeStats
    entry: Dict[str, object]


def display_path(path: Path) -> str:
    resolved = path.resolve()
    try:
        return resolved.relative_to(Path.cwd().resolve()).as_posix()
    except ValueError:
        return resolved.as_posix()


def catalog_entry(result: BakeResult, file_name: str, poster_name: str) -> Dict[str, object]:
    meta = result.metadata
    return {
        "file": file_name,
        "label": f"{format_number(meta['duration'])}s, neck {format_number(meta['neck'])}",
        "duration": meta["duration"],
        "grains": meta["grains"],
        "frames": meta["frames"],
        "fps": meta["fps"],
        "neck": meta["neck"],
        "bulb": meta["bulb"],
        "halfHeight": meta["halfHeight"],
        "poster": poster_name,
        "createdAt": datetime.now(timezone.utc).isoformat(timespec="seconds"),
    }


def run_bake(
    options: Mapping[str, object],
    *,
    out_dir: Path = BAKES_DIR,
    reporter: Optional[ProgressReporter] = None,
) -> BakeOutcome:
    reporter = reporter or ProgressReporter(enabled=False)
    shape = ShapeParameters.from_options(options)
    duration = float(options["duration"])
    fps = int(options["fps"])
    grain_radius = float(options["grain_radius"])
    count = max(1, int(round(int(options["grains"]) * float(options["fill"]))))
    seed = options.get("seed")
    rng = np.random.default_rng(None if seed is None else int(seed))

    reporter.emit("meta", **dict(options), simulated=count)
    if grain_radius >= shape.neck:
        log("warning: the neck is narrower than one grain; the upper chamber may never drain.")

    started = time.time()
    world = SandWorld(gravity=shape.gravity())
    scene = build_scene(world, shape, count, grain_radius, rng)
    log(f"scene: {world.segment_count} wall pieces, {count} grains")

    encoder = FrameEncoder(shape, count)
    loop = BakeLoop(world, scene.grains, fps=fps, duration=duration, rng=rng)
    stats = loop.run(encoder.capture, reporter.progress)

    result = encoder.finish(
        duration,
        requestedFps=fps,
        targetFrames=stats.target_frames,
        drainFrames=stats.drain_frames,
        residualGrains=stats.residual_grains,
        grainRadius=grain_radius,
        seed=seed,
    )
    log(
        f"Baked {stats.frames} frames (target {stats.target_frames}, drain {stats.drain_frames}) "
        f"@{result.metadata['fps']:.3f}fps for {count} grains in {time.time() - started:.1f}s."
    )
    if stats.residual_grains:
        log(f"{stats.residual_grains} grains still above the neck after the drain cap.")

    file_name = bake_file_name(duration, shape.neck)
    path = Path(out_dir) / file_name
    write_json_atomic(path, result.to_document())
    poster = render_poster(shape, first_frame(result), grain_radius, path.with_suffix(".png"))
    entry = catalog_entry(result, file_name, poster.name)
    CatalogIndex.in_directory(Path(out_dir)).upsert(entry)
    log(f"Wrote {display_path(path)}")

    reporter.emit("done", file=display_path(path), frames=result.frame_count, fps=result.metadata["fps"])
    return BakeOutcome(path=path, poster=poster, result=result, stats=stats, entry=entry)


def first_frame(result: BakeResult) -> np.ndarray:
    grains = result.grain_count
    if result.frame_count == 0:
        return np.zeros((0, 2))
    first = result.packed[: grains * 2].reshape(grains, 2).astype(np.float64)
    offset = np.array([result.metadata["offsetX"], result.metadata["offsetY"]], dtype=np.float64)
    return first / float(result.metadata["quantizationFactor"]) - offset


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bake a falling-sand hourglass animation.")
    add_bake_arguments(parser)
    parser.add_argument("--out-dir", default=str(BAKES_DIR), help="Directory for bake files and the catalog.")
    parser.add_argument("--progress", action="store_true", help="Emit structured BAKE progress lines.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        options = resolve_bake_options(vars(args))
    except ValueError as exc:
        log(f"ERROR: {exc}")
        return 2

    run_bake(options, out_dir=Path(args.out_dir), reporter=ProgressReporter(enabled=bool(args.progress)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
