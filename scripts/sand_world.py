"""
sand_world.py
=============

A small 2-D soft-sphere world for baking sand.  It provides the physics
capability the baker needs and nothing more:

- static walls built from line segments (long segments are split into short
  pieces so that neighbour lookups stay local),
- dynamic circular grains, every grain carrying unit mass,
- ``step(dt)`` advancing the world with symplectic Euler sub-steps,
- ``apply_force`` for one-step external forces (used for anti-jam jiggle).

Screen coordinates are used throughout: ``+y`` points down, so gravity is a
positive ``y`` acceleration and "above" means a smaller ``y``.

Contact model (grain-grain and grain-wall):

    F_n = max(0, k_n * overlap - c_n * v_n)          along the contact normal
    F_t = -c_t * v_t,  |F_t| <= mu * F_n             tangential (Coulomb cap)

Pairs are found with ``scipy.spatial.cKDTree.query_pairs``; wall candidates
come from a k-nearest query over segment midpoints.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
from scipy.spatial import cKDTree


DEFAULT_GRAVITY = 1200.0
MAX_SEGMENT_LENGTH = 12.0
WALL_CANDIDATES = 6


class SandWorld:
    def __init__(
        self,
        gravity: Sequence[float] = (0.0, DEFAULT_GRAVITY),
        *,
        stiffness: float = 1.0e5,
        damping: float = 300.0,
        friction: float = 0.3,
        tangential_damping: float = 150.0,
        max_speed: float = 1500.0,
        substeps: int = 2,
        max_segment_length: float = MAX_SEGMENT_LENGTH,
    ) -> None:
        self.gravity = np.asarray(gravity, dtype=np.float64).reshape(2)
        self.stiffness = float(stiffness)
        self.damping = float(damping)
        self.friction = float(friction)
        self.tangential_damping = float(tangential_damping)
        self.max_speed = float(max_speed)
        self.substeps = max(1, int(substeps))
        self.max_segment_length = float(max_segment_length)

        self.positions = np.zeros((0, 2), dtype=np.float64)
        self.velocities = np.zeros((0, 2), dtype=np.float64)
        self.radii = np.zeros(0, dtype=np.float64)
        self._external = np.zeros((0, 2), dtype=np.float64)

        self._seg_a = np.zeros((0, 2), dtype=np.float64)
        self._seg_b = np.zeros((0, 2), dtype=np.float64)
        self._seg_half = np.zeros(0, dtype=np.float64)
        self._wall_tree: Optional[cKDTree] = None
        self._wall_reach = 0.0

        self.time = 0.0

    @property
    def grain_count(self) -> int:
        return int(self.positions.shape[0])

    @property
    def segment_count(self) -> int:
        return int(self._seg_a.shape[0])

    def add_static_segment(self, start: Sequence[float], end: Sequence[float], thickness: float = 8.0) -> int:
        """Add a static wall segment; returns how many pieces it was split into."""
        a = np.asarray(start, dtype=np.float64).reshape(2)
        b = np.asarray(end, dtype=np.float64).reshape(2)
        length = float(np.hypot(*(b - a)))
        pieces = max(1, int(np.ceil(length / self.max_segment_length)))
        ts = np.linspace(0.0, 1.0, pieces + 1)[:, None]
        points = a + ts * (b - a)

        self._seg_a = np.vstack([self._seg_a, points[:-1]])
        self._seg_b = np.vstack([self._seg_b, points[1:]])
        self._seg_half = np.concatenate([self._seg_half, np.full(pieces, 0.5 * float(thickness))])
        self._wall_tree = None
        return pieces

    def add_grains(self, xy: np.ndarray, radius: float) -> np.ndarray:
        """Add grains at ``xy`` (shape ``(n, 2)``); returns their handles."""
        xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
        start = self.grain_count
        self.positions = np.vstack([self.positions, xy])
        self.velocities = np.vstack([self.velocities, np.zeros_like(xy)])
        self.radii = np.concatenate([self.radii, np.full(len(xy), float(radius))])
        self._external = np.vstack([self._external, np.zeros_like(xy)])
        return np.arange(start, start + len(xy))

    def apply_force(self, handles: np.ndarray, forces: np.ndarray) -> None:
        """Accumulate forces that act during the next ``step`` only."""
        handles = np.asarray(handles, dtype=np.intp).reshape(-1)
        if handles.size == 0:
            return
        np.add.at(self._external, handles, np.asarray(forces, dtype=np.float64).reshape(-1, 2))

    def count_above(self, y: float) -> int:
        return int(np.count_nonzero(self.positions[:, 1] < y))

    def step(self, dt: float) -> None:
        if self.grain_count == 0:
            self.time += dt
            return

        sub_dt = dt / self.substeps
        wall_idx = self._wall_candidates(dt)
        for _ in range(self.substeps):
            acc = self._contact_accelerations(wall_idx)
            acc += self.gravity
            acc += self._external

            self.velocities += acc * sub_dt
            speed = np.hypot(self.velocities[:, 0], self.velocities[:, 1])
            fast = speed > self.max_speed
            if np.any(fast):
                self.velocities[fast] *= (self.max_speed / speed[fast])[:, None]
            self.positions += self.velocities * sub_dt

        self._external[:] = 0.0
        self.time += dt

    def _wall_candidates(self, dt: float) -> Optional[np.ndarray]:
        m = self.segment_count
        if m == 0:
            return None
        if self._wall_tree is None:
            self._wall_tree = cKDTree(0.5 * (self._seg_a + self._seg_b))
            half_lengths = 0.5 * np.hypot(*(self._seg_b - self._seg_a).T)
            self._wall_reach = float(half_lengths.max() + self._seg_half.max())

        k = min(WALL_CANDIDATES, m)
        bound = self._wall_reach + float(self.radii.max()) + self.max_speed * dt
        _, idx = self._wall_tree.query(self.positions, k=k, distance_upper_bound=bound)
        # Missing neighbours come back as index ``m``.
        return np.asarray(idx).reshape(self.grain_count, k)

    def _contact_force(self, normal: np.ndarray, overlap: np.ndarray, rel_vel: np.ndarray) -> np.ndarray:
        vn = np.sum(rel_vel * normal, axis=1)
        fn = np.maximum(self.stiffness * overlap - self.damping * vn, 0.0)

        tangent_vel = rel_vel - vn[:, None] * normal
        ft = self.tangential_damping * tangent_vel
        ft_mag = np.hypot(ft[:, 0], ft[:, 1])
        limit = self.friction * fn
        scale = np.where(ft_mag > limit, limit / np.maximum(ft_mag, 1e-12), 1.0)
        return fn[:, None] * normal - ft * scale[:, None]

    def _contact_accelerations(self, wall_idx: Optional[np.ndarray]) -> np.ndarray:
        pos = self.positions
        vel = self.velocities
        radii = self.radii
        acc = np.zeros_like(pos)

        if self.grain_count > 1:
            tree = cKDTree(pos)
            pairs = tree.query_pairs(2.0 * float(radii.max()), output_type="ndarray")
            if len(pairs):
                i, j = pairs[:, 0], pairs[:, 1]
                delta = pos[j] - pos[i]
                dist = np.hypot(delta[:, 0], delta[:, 1])
                overlap = radii[i] + radii[j] - dist
                touching = (overlap > 0.0) & (dist > 1e-9)
                if np.any(touching):
                    i, j = i[touching], j[touching]
                    normal = delta[touching] / dist[touching][:, None]
                    force = self._contact_force(normal, overlap[touching], vel[j] - vel[i])
                    np.add.at(acc, i, -force)
                    np.add.at(acc, j, force)

        if wall_idx is not None:
            rows, cols = np.nonzero(wall_idx < self.segment_count)
            if rows.size:
                seg = wall_idx[rows, cols]
                a = self._seg_a[seg]
                ab = self._seg_b[seg] - a
                p = pos[rows]
                t = np.sum((p - a) * ab, axis=1) / np.maximum(np.sum(ab * ab, axis=1), 1e-12)
                closest = a + np.clip(t, 0.0, 1.0)[:, None] * ab
                delta = p - closest
                dist = np.hypot(delta[:, 0], delta[:, 1])
                overlap = radii[rows] + self._seg_half[seg] - dist
                touching = (overlap > 0.0) & (dist > 1e-9)
                if np.any(touching):
                    rows = rows[touching]
                    normal = delta[touching] / dist[touching][:, None]
                    force = self._contact_force(normal, overlap[touching], vel[rows])
                    np.add.at(acc, rows, force)

        return acc
