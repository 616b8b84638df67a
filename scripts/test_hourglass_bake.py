#!/usr/bin/env python3

from __future__ import annotations

import base64
import importlib.util
import json
import sys
import tempfile
import threading
import unittest
from pathlib import Path

import numpy as np

SCRIPTS_DIR = Path(__file__).resolve().parent


def load_module(name: str):
    if name in sys.modules:
        return sys.modules[name]
    if str(SCRIPTS_DIR) not in sys.path:
        sys.path.insert(0, str(SCRIPTS_DIR))
    module_path = SCRIPTS_DIR / f"{name}.py"
    spec = importlib.util.spec_from_file_location(name, module_path)
    if spec is None or spec.loader is None:
        raise RuntimeError(f"Failed to load {name} module for tests.")
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)
    return module


BAKE = load_module("hourglass_bake")
OPTIONS = load_module("bake_options")
CATALOG = load_module("bake_catalog")


def make_shape(**overrides) -> object:
    values = dict(neck=16.0, bulb=205.0, half_height=330.0)
    values.update(overrides)
    return BAKE.ShapeParameters(**values)


class StillWorld:
    """Stands in for the sand world: grains stay where they are put."""

    def __init__(self, ys) -> None:
        self.positions = np.column_stack([np.zeros(len(ys)), np.asarray(ys, dtype=np.float64)])
        self.forces = []
        self.steps = 0

    def apply_force(self, handles, forces) -> None:
        self.forces.append((np.asarray(handles).copy(), np.asarray(forces).copy()))

    def step(self, dt: float) -> None:
        self.steps += 1


class SinkingWorld(StillWorld):
    def __init__(self, ys, speed: float) -> None:
        super().__init__(ys)
        self.speed = speed

    def step(self, dt: float) -> None:
        super().step(dt)
        self.positions[:, 1] += self.speed * dt


class ShapeModelTests(unittest.TestCase):
    def test_width_hits_neck_and_bulb_for_every_blend(self) -> None:
        for shape in (
            make_shape(),
            make_shape(blend="power", power=0.5),
            make_shape(blend="cubic", cubic_c1=0.0, cubic_c2=1.0),
            make_shape(blend="cubic", cubic_c1=0.3, cubic_c2=0.3),
        ):
            self.assertAlmostEqual(shape.width_at(0.0), shape.neck)
            self.assertAlmostEqual(shape.width_at(shape.half_height), shape.bulb)
            self.assertAlmostEqual(shape.width_at(-shape.half_height), shape.bulb)

    def test_width_is_monotonic_in_distance_from_neck(self) -> None:
        for shape in (make_shape(power=3.0), make_shape(blend="cubic", cubic_c1=0.15, cubic_c2=0.85)):
            ys = np.linspace(0.0, shape.half_height, 400)
            widths = [shape.width_at(y) for y in ys]
            self.assertTrue(all(b > a for a, b in zip(widths, widths[1:])))
            mirrored = [shape.width_at(-y) for y in ys]
            self.assertEqual(widths, mirrored)

    def test_width_clamps_outside_the_chamber(self) -> None:
        shape = make_shape()
        self.assertAlmostEqual(shape.width_at(10 * shape.half_height), shape.bulb)

    def test_tilt_rotates_gravity(self) -> None:
        gx, gy = make_shape(tilt=0.0).gravity(100.0)
        self.assertAlmostEqual(gx, 0.0)
        self.assertAlmostEqual(gy, 100.0)
        gx, _ = make_shape(tilt=5.0).gravity(100.0)
        self.assertGreater(gx, 0.0)


class SceneBuilderTests(unittest.TestCase):
    def test_walls_are_sloped_slats_plus_two_caps(self) -> None:
        shape = make_shape(half_height=100.0, wall_step=8.0)
        walls = BAKE.build_walls(shape)
        slats = int(np.ceil(200.0 / 8.0))
        self.assertEqual(len(walls), 2 * slats + 2)

        horizontal = [seg for seg in walls if seg[0][1] == seg[1][1]]
        self.assertEqual(len(horizontal), 2)
        self.assertEqual({seg[0][1] for seg in horizontal}, {-100.0, 100.0})

        for (x0, y0), (x1, y1) in walls[:-2]:
            self.assertAlmostEqual(abs(x0), shape.width_at(y0))
            self.assertAlmostEqual(abs(x1), shape.width_at(y1))
        self.assertEqual(max(seg[1][1] for seg in walls[:-2]), 100.0)

    def test_grains_start_inside_the_upper_chamber(self) -> None:
        rng = np.random.default_rng(11)
        for shape in (make_shape(), make_shape(neck=4.0, bulb=40.0, half_height=60.0, blend="cubic")):
            xy = BAKE.place_grains(shape, 500, 2.6, rng)
            self.assertEqual(xy.shape, (500, 2))
            for x, y in xy:
                self.assertLess(y, 0.0)
                self.assertGreater(y, -shape.half_height)
                self.assertLessEqual(abs(x), shape.width_at(y))

    def test_large_grains_still_start_inside_the_chamber(self) -> None:
        rng = np.random.default_rng(4)
        for values in (
            {"half_height": 40, "grain_radius": 10, "bulb": 100, "neck": 20},
            {"half_height": 20, "grain_radius": 2.6, "bulb": 30, "neck": 5},
            {"half_height": 60, "grain_radius": 25, "bulb": 120, "neck": 30, "shape": "cubic"},
        ):
            options = OPTIONS.resolve_bake_options(values)
            shape = BAKE.ShapeParameters.from_options(options)
            radius = float(options["grain_radius"])
            xy = BAKE.place_grains(shape, 200, radius, rng)
            self.assertTrue(np.all(xy[:, 1] < 0.0), values)
            self.assertTrue(np.all(xy[:, 1] > -shape.half_height), values)
            for x, y in xy:
                self.assertLessEqual(abs(x), shape.width_at(y))

    def test_build_scene_inserts_walls_and_grains(self) -> None:
        world = load_module("sand_world").SandWorld()
        shape = make_shape(half_height=80.0, bulb=60.0)
        scene = BAKE.build_scene(world, shape, 30, 2.0, np.random.default_rng(1))
        self.assertEqual(world.grain_count, 30)
        self.assertEqual(list(scene.grains), list(range(30)))
        self.assertGreaterEqual(world.segment_count, len(scene.walls))


class BakeLoopTests(unittest.TestCase):
    def test_target_frame_count_rounds_before_ceiling(self) -> None:
        self.assertEqual(BAKE.target_frame_count(2.0, 10), 20)
        self.assertEqual(BAKE.target_frame_count(0.5, 3), 2)

    def test_drain_stops_at_the_cap_when_grains_never_fall(self) -> None:
        world = StillWorld([-50.0, -60.0, -70.0])
        loop = BAKE.BakeLoop(world, np.arange(3), fps=5, duration=1.0, rng=np.random.default_rng(0), internal_rate=20)
        phases = []
        stats = loop.run(lambda frame: None, lambda frame, target, phase: phases.append(phase))

        self.assertEqual(loop.cadence, 4)
        self.assertEqual(stats.target_frames, 5)
        self.assertEqual(stats.drain_frames, 5 * 20)
        self.assertEqual(stats.frames, 5 + 5 * 20)
        self.assertEqual(stats.residual_grains, 3)
        self.assertEqual(world.steps, stats.frames * loop.cadence)
        self.assertIs(phases[-1], BAKE.BakePhase.DONE)
        self.assertIn(BAKE.BakePhase.DRAINING, phases)

    def test_no_drain_when_the_upper_chamber_is_already_empty(self) -> None:
        world = StillWorld([40.0, 50.0])
        loop = BAKE.BakeLoop(world, np.arange(2), fps=10, duration=2.0, rng=np.random.default_rng(0))
        frames = []
        stats = loop.run(frames.append)
        self.assertEqual(stats.frames, 20)
        self.assertEqual(stats.drain_frames, 0)
        self.assertEqual(len(frames), 20)
        self.assertEqual(frames[0].shape, (2, 2))
        self.assertIs(loop.phase, BAKE.BakePhase.DONE)

    def test_drain_ends_once_the_last_grain_passes_the_neck(self) -> None:
        # 10 units/s from y=-3: crosses the neck after 0.3 s, i.e. during draining.
        world = SinkingWorld([-3.0], speed=10.0)
        loop = BAKE.BakeLoop(world, np.arange(1), fps=10, duration=0.1, rng=np.random.default_rng(0))
        stats = loop.run(lambda frame: None)
        self.assertEqual(stats.target_frames, 1)
        self.assertEqual(stats.residual_grains, 0)
        self.assertGreater(stats.drain_frames, 0)
        self.assertLess(stats.drain_frames, 10 * 20)
        self.assertEqual(stats.frames, stats.target_frames + stats.drain_frames)

    def test_jiggle_only_touches_grains_near_the_neck_and_grows_late(self) -> None:
        world = StillWorld([0.0, 5.0, -200.0])
        loop = BAKE.BakeLoop(world, np.arange(3), fps=10, duration=1.0, rng=np.random.default_rng(3))
        loop.tick()
        handles, forces = world.forces[-1]
        self.assertEqual(sorted(handles.tolist()), [0, 1])
        self.assertTrue(np.all(forces[:, 1] == 0.0))
        self.assertTrue(np.all(np.abs(forces[:, 0]) <= BAKE.JIGGLE_ACCEL))

        self.assertEqual(loop.jiggle_scale(), 1.0)
        loop.frames = int(np.ceil(BAKE.JIGGLE_BOOST_FROM * loop.target_frames))
        self.assertEqual(loop.jiggle_scale(), BAKE.JIGGLE_BOOST)


class EncoderTests(unittest.TestCase):
    def test_quantize_clamps_to_uint16_range(self) -> None:
        offset = np.array([210.0, 335.0])
        raw = np.array([[1e12, -1e12], [np.inf, -np.inf], [np.nan, 0.0], [-210.0, -335.0]])
        q = BAKE.quantize(raw, offset, 32)
        self.assertEqual(q.dtype, np.uint16)
        self.assertTrue(np.all(q >= 0))
        self.assertTrue(np.all(q <= 65535))
        self.assertEqual(q[0].tolist(), [65535, 0])
        self.assertEqual(q[3].tolist(), [0, 0])

    def test_finish_packs_frames_and_retimes(self) -> None:
        shape = make_shape()
        encoder = BAKE.FrameEncoder(shape, grain_count=4)
        rng = np.random.default_rng(5)
        for _ in range(23):
            encoder.capture(rng.uniform(-100, 100, size=(4, 2)))
        result = encoder.finish(2.0, requestedFps=10)

        self.assertEqual(result.frame_count, 23)
        self.assertEqual(len(result.packed), 23 * 4 * 2)
        self.assertAlmostEqual(result.metadata["fps"] * 2.0, 23)
        self.assertEqual(result.metadata["quantizationFactor"], BAKE.QUANTIZATION_FACTOR)
        self.assertEqual(result.metadata["requestedFps"], 10)

    def test_capture_rejects_wrong_grain_count(self) -> None:
        encoder = BAKE.FrameEncoder(make_shape(), grain_count=3)
        with self.assertRaises(ValueError):
            encoder.capture(np.zeros((2, 2)))

    def test_document_decodes_to_world_coordinates(self) -> None:
        shape = make_shape()
        encoder = BAKE.FrameEncoder(shape, grain_count=2)
        frame = np.array([[-12.5, -300.0], [100.0, 250.25]])
        encoder.capture(frame)
        document = json.loads(json.dumps(encoder.finish(1.0).to_document()))

        raw = np.frombuffer(base64.b64decode(document["data"]), dtype="<u2")
        self.assertEqual(raw.size, 1 * 2 * 2)
        meta, coords = BAKE.decode_bake(document)
        self.assertEqual(meta["frames"], 1)
        np.testing.assert_allclose(coords[0], frame, atol=1.0 / BAKE.QUANTIZATION_FACTOR)

    def test_bake_file_name_formats_numbers(self) -> None:
        self.assertEqual(BAKE.bake_file_name(60.0, 16.0), "hourglass_60s_neck16.json")
        self.assertEqual(BAKE.bake_file_name(2.5, 12.5), "hourglass_2.5s_neck12.5.json")


class CatalogTests(unittest.TestCase):
    def make_catalog(self) -> object:
        root = Path(tempfile.mkdtemp(prefix="hourglass_catalog_"))
        return CATALOG.CatalogIndex.in_directory(root)

    def test_missing_or_corrupt_catalog_reads_empty(self) -> None:
        catalog = self.make_catalog()
        self.assertEqual(catalog.load(), [])
        catalog.path.write_text("{not json", encoding="utf-8")
        self.assertEqual(catalog.load(), [])
        catalog.path.write_text('{"file": "x"}', encoding="utf-8")
        self.assertEqual(catalog.load(), [])

    def test_upsert_is_idempotent_and_sorted(self) -> None:
        catalog = self.make_catalog()
        entries = [
            {"file": "b.json", "duration": 60.0, "neck": 16.0},
            {"file": "a.json", "duration": 30.0, "neck": 20.0},
            {"file": "c.json", "duration": 30.0, "neck": 12.0},
        ]
        for entry in entries:
            catalog.upsert(entry)
        first = catalog.load()
        catalog.upsert(entries[0])
        second = catalog.load()

        self.assertEqual(first, second)
        self.assertEqual([item["file"] for item in second], ["c.json", "a.json", "b.json"])
        self.assertEqual(sum(1 for item in second if item["file"] == "b.json"), 1)

    def test_concurrent_upserts_keep_every_entry(self) -> None:
        catalog = self.make_catalog()
        errors = []

        def worker(index: int) -> None:
            # Each thread opens its own index handle, like separate bake workers.
            own = CATALOG.CatalogIndex(catalog.path)
            for n in range(50):
                try:
                    own.upsert({"file": f"w{index}_{n}.json", "duration": float(n), "neck": float(index)})
                except Exception as exc:
                    errors.append(repr(exc))

        threads = [threading.Thread(target=worker, args=(index,)) for index in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        entries = catalog.load()
        self.assertEqual(len(entries), 200)
        self.assertEqual(entries, sorted(entries, key=CATALOG.catalog_sort_key))
        leftovers = [p.name for p in catalog.path.parent.iterdir() if p.name.endswith(".tmp")]
        self.assertEqual(leftovers, [])

    def test_concurrent_writes_to_one_bake_file_never_fail(self) -> None:
        target = Path(tempfile.mkdtemp(prefix="hourglass_write_")) / "hourglass_2s_neck16.json"
        errors = []

        def writer(index: int) -> None:
            for n in range(50):
                try:
                    CATALOG.write_json_atomic(target, {"writer": index, "n": n})
                except Exception as exc:
                    errors.append(repr(exc))

        threads = [threading.Thread(target=writer, args=(index,)) for index in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        document = json.loads(target.read_text(encoding="utf-8"))
        self.assertIn(document["writer"], range(4))
        self.assertEqual([p.name for p in target.parent.iterdir()], [target.name])

    def test_upsert_replaces_entry_with_same_file(self) -> None:
        catalog = self.make_catalog()
        catalog.upsert({"file": "a.json", "duration": 30.0, "neck": 16.0, "grains": 10})
        catalog.upsert({"file": "a.json", "duration": 30.0, "neck": 16.0, "grains": 99})
        self.assertEqual(catalog.load(), [{"file": "a.json", "duration": 30.0, "neck": 16.0, "grains": 99}])


class BakeOptionTests(unittest.TestCase):
    def test_payload_is_sparse_and_accepts_aliases(self) -> None:
        options = OPTIONS.parse_bake_payload({"duration": "2", "fps": 10, "H": 200, "r": 2.0, "neck": "", "seed": None})
        self.assertEqual(options, {"duration": 2.0, "fps": 10, "half_height": 200.0, "grain_radius": 2.0})

    def test_payload_rejects_unknown_and_out_of_range_values(self) -> None:
        with self.assertRaises(ValueError):
            OPTIONS.parse_bake_payload({"warp": 9})
        with self.assertRaises(ValueError):
            OPTIONS.parse_bake_payload({"fps": 0})
        with self.assertRaises(ValueError):
            OPTIONS.parse_bake_payload({"duration": "nan"})
        with self.assertRaises(ValueError):
            OPTIONS.parse_bake_payload({"neck": 300, "bulb": 200})
        with self.assertRaises(ValueError):
            OPTIONS.parse_bake_payload({"shape": "cubic", "c1": 0.9, "c2": 0.1})

    def test_grains_that_cannot_fit_the_upper_chamber_are_rejected(self) -> None:
        for values in (
            {"half_height": 20, "grain_radius": 20, "bulb": 100, "neck": 10},
            {"half_height": 30, "grain_radius": 14, "bulb": 100, "neck": 10},
            {"half_height": 300, "grain_radius": 9, "bulb": 12, "neck": 5},
        ):
            with self.assertRaises(ValueError, msg=values):
                OPTIONS.resolve_bake_options(values)

    def test_options_round_trip_through_argv(self) -> None:
        options = {"duration": 2.0, "fps": 10, "half_height": 200.0, "shape": "cubic"}
        argv = OPTIONS.options_to_argv(options)
        self.assertEqual(argv, ["--duration", "2.0", "--fps", "10", "--half-height", "200.0", "--shape", "cubic"])

        args = BAKE.build_parser().parse_args(argv)
        resolved = OPTIONS.resolve_bake_options(vars(args))
        self.assertEqual(resolved["duration"], 2.0)
        self.assertEqual(resolved["half_height"], 200.0)
        self.assertEqual(resolved["shape"], "cubic")
        self.assertEqual(resolved["grains"], OPTIONS.BAKE_OPTIONS["grains"].default)
        self.assertIsNone(resolved["seed"])


class RunBakeTests(unittest.TestCase):
    def test_small_bake_writes_file_poster_and_catalog(self) -> None:
        out_dir = Path(tempfile.mkdtemp(prefix="hourglass_bake_"))
        options = OPTIONS.resolve_bake_options(
            {"duration": 0.5, "fps": 4, "grains": 20, "neck": 10, "half_height": 60, "bulb": 40, "grain_radius": 2, "seed": 3}
        )
        outcome = BAKE.run_bake(options, out_dir=out_dir)

        self.assertTrue(outcome.path.exists())
        self.assertTrue(outcome.poster.exists())
        document = json.loads(outcome.path.read_text(encoding="utf-8"))
        meta, coords = BAKE.decode_bake(document)

        self.assertEqual(outcome.path.name, "hourglass_0.5s_neck10.json")
        self.assertEqual(meta["grains"], 20)
        self.assertGreaterEqual(meta["frames"], 2)
        self.assertLessEqual(meta["drainFrames"], 4 * BAKE.DRAIN_CAP_SECONDS)
        self.assertAlmostEqual(meta["fps"] * 0.5, meta["frames"])
        self.assertEqual(coords.shape, (meta["frames"], 20, 2))

        catalog = CATALOG.CatalogIndex.in_directory(out_dir).load()
        self.assertEqual([item["file"] for item in catalog], [outcome.path.name])
        self.assertEqual(catalog[0]["poster"], outcome.poster.name)

    def test_main_rejects_invalid_options(self) -> None:
        self.assertEqual(BAKE.main(["--neck", "300", "--bulb", "200"]), 2)


if __name__ == "__main__":
    unittest.main()
