import numpy as np
import logging
import threading
from itertools import product
from typing import Dict, Tuple, Optional, Any
from dataclasses import dataclass
from scipy.ndimage import distance_transform_edt

_CORNER_OFFSETS = np.array(list(product((0, 1), repeat=3)), dtype=np.int64)


@dataclass
class BufferInfo:

    size: int
    resolution: float
    radius: float
    offset: Tuple[int, int, int]
    center: Tuple[int, int, int]
    world_bounds: Tuple[Tuple[float, float], Tuple[float, float], Tuple[float, float]]
    occupied_cells: int
    observed_cells: int
    generation: int


@dataclass
class InsertionResult:

    num_points: int
    num_inserted: int
    num_outside: int
    generation: int


class DistanceRingBuffer:
    """
    Vehicle-centred voxel ring buffer holding occupancy and a truncated
    Euclidean distance field.

    Storage is a fixed (N, N, N) arena with N = 2**pow. Storage index i holds
    the world voxel index congruent to i modulo N inside
    [offset, offset + N). Moving the volume only clears the voxel plane that
    leaves it; nothing is reallocated.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.pow = int(config.get("pow", 6))
        self.size = 1 << self.pow
        self.resolution = float(config.get("resolution", 0.1))
        self.radius = float(config.get("radius", 1.0))
        self.carve_free_space = bool(config.get("carve_free_space", True))
        self.ray_chunk_size = int(config.get("ray_chunk_size", 2048))

        if self.resolution <= 0 or self.radius <= 0:
            raise ValueError("resolution and radius must be positive")

        shape = (self.size, self.size, self.size)
        self.occupied = np.zeros(shape, dtype=bool)
        self.observed = np.zeros(shape, dtype=bool)
        self.distance = np.full(shape, self.radius, dtype=np.float32)
        self.generation = np.zeros(shape, dtype=np.int32)

        self.offset = np.zeros(3, dtype=np.int64)
        self.generation_counter = 0
        self.initialized = False

        self.lock = threading.RLock()
        self._distance_dirty = False

        self.logger.info(
            f"Distance ring buffer initialized: {self.size}^3 voxels, "
            f"resolution {self.resolution}m, radius {self.radius}m"
        )
        self.logger.info(f"Free-space carving: {self.carve_free_space}")

    # Indexing

    @property
    def center(self) -> np.ndarray:
        return self.offset + self.size // 2

    def world_to_index(self, points: np.ndarray) -> np.ndarray:

        return np.floor(np.asarray(points, dtype=float) / self.resolution).astype(np.int64)

    def index_to_world(self, indices: np.ndarray) -> np.ndarray:

        return (np.asarray(indices, dtype=float) + 0.5) * self.resolution

    def wrapped_index(self, indices: np.ndarray) -> np.ndarray:

        return np.mod(indices, self.size)

    def in_volume(self, indices: np.ndarray) -> np.ndarray:

        indices = np.asarray(indices)
        return np.all((indices >= self.offset) & (indices < self.offset + self.size), axis=-1)

    def _storage(self, indices: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        w = self.wrapped_index(indices)
        return w[..., 0], w[..., 1], w[..., 2]

    # Volume motion

    def initialize(self, origin: np.ndarray):
        """Anchor an empty volume so that its centre voxel contains `origin`."""
        with self.lock:
            self.offset = self.world_to_index(origin).reshape(3) - self.size // 2
            self.clear()
            self.initialized = True
            self.logger.info(f"Volume anchored at origin {np.round(origin, 3)}, center {self.center}")

    def clear(self):

        with self.lock:
            self.occupied.fill(False)
            self.observed.fill(False)
            self.generation.fill(0)
            self.distance.fill(self.radius)
            self._distance_dirty = False

    def reset(self):
        """Forget everything, including the anchoring of the volume."""
        with self.lock:
            self.clear()
            self.offset = np.zeros(3, dtype=np.int64)
            self.generation_counter = 0
            self.initialized = False

    def _clear_plane(self, axis: int, world_index: int):
        sl = [slice(None)] * 3
        sl[axis] = int(world_index % self.size)
        sl = tuple(sl)

        self.occupied[sl] = False
        self.observed[sl] = False
        self.generation[sl] = 0
        self.distance[sl] = self.radius

    def move_volume(self, direction: np.ndarray):
        """Move the volume one voxel along every axis with a non-zero component."""
        direction = np.sign(np.asarray(direction, dtype=np.int64)).reshape(3)

        with self.lock:
            for axis in range(3):
                if direction[axis] > 0:
                    # Lowest plane leaves; its storage becomes the new highest plane
                    self._clear_plane(axis, self.offset[axis])
                    self.offset[axis] += 1
                elif direction[axis] < 0:
                    self.offset[axis] -= 1
                    self._clear_plane(axis, self.offset[axis])

            if direction.any():
                self._distance_dirty = True

    def shift(self, delta: np.ndarray) -> int:
        """
        Shift the volume centre by `delta` voxels in unit steps.

        Args:
            delta: integer voxel offset between the target and the current centre

        Returns:
            Number of unit steps applied
        """
        remaining = np.asarray(delta, dtype=np.int64).reshape(3).copy()
        steps = 0

        with self.lock:
            while remaining.any():
                direction = np.sign(remaining)
                self.move_volume(direction)
                remaining -= direction
                steps += 1

        if steps:
            self.logger.debug(f"Volume shifted by {np.asarray(delta).tolist()} in {steps} steps")

        return steps

    def recenter(self, origin: np.ndarray) -> int:
        """Shift the volume so its centre voxel contains `origin`; anchors on first use."""
        with self.lock:
            if not self.initialized:
                self.initialize(origin)
                return 0

            delta = self.world_to_index(origin).reshape(3) - self.center
            return self.shift(delta)

    # Insertion

    def insert_point_cloud(self, points: np.ndarray, origin: np.ndarray) -> InsertionResult:
        """
        Insert world-frame points observed from `origin`.

        Rays are carved free first and endpoints marked occupied afterwards,
        so inserting the same cloud twice leaves the same occupancy as once.
        """
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        origin = np.asarray(origin, dtype=float).reshape(3)

        with self.lock:
            self.generation_counter += 1
            stamp = self.generation_counter

            if self.carve_free_space and len(points):
                self._carve_rays(points, origin, stamp)

            indices = self.world_to_index(points)
            inside = self.in_volume(indices)
            storage = self._storage(indices[inside])

            self.occupied[storage] = True
            self.observed[storage] = True
            self.generation[storage] = stamp
            self._distance_dirty = True

        num_inserted = int(inside.sum())
        result = InsertionResult(
            num_points=len(points),
            num_inserted=num_inserted,
            num_outside=len(points) - num_inserted,
            generation=stamp,
        )
        self.logger.debug(
            f"Inserted {result.num_inserted}/{result.num_points} points "
            f"({result.num_outside} outside volume)"
        )
        return result

    def _carve_rays(self, points: np.ndarray, origin: np.ndarray, stamp: int):
        vectors = points - origin
        lengths = np.linalg.norm(vectors, axis=1)
        keep = lengths > 1e-9
        vectors, lengths = vectors[keep], lengths[keep]
        if not len(lengths):
            return

        directions = vectors / lengths[:, None]

        # From inside the volume no ray can stay inside longer than the diagonal
        if self.in_volume(self.world_to_index(origin)):
            lengths = np.minimum(lengths, np.sqrt(3.0) * self.size * self.resolution)

        step = 0.5 * self.resolution

        for start in range(0, len(lengths), self.ray_chunk_size):
            chunk_dirs = directions[start : start + self.ray_chunk_size]
            chunk_lengths = lengths[start : start + self.ray_chunk_size]

            num_steps = int(np.ceil(chunk_lengths.max() / step))
            distances = np.arange(num_steps) * step
            before_end = distances[None, :] < chunk_lengths[:, None]

            samples = origin + chunk_dirs[:, None, :] * distances[None, :, None]
            samples = samples[before_end]

            indices = self.world_to_index(samples)
            storage = self._storage(indices[self.in_volume(indices)])

            self.occupied[storage] = False
            self.observed[storage] = True
            self.generation[storage] = stamp

    # Distance field

    def _update_distance(self):
        if not self._distance_dirty:
            return

        roll = tuple(int(-o % self.size) for o in self.offset)
        unroll = tuple(int(o % self.size) for o in self.offset)

        # World-ordered view so the transform never wraps across the seam
        occupied = np.roll(self.occupied, roll, axis=(0, 1, 2))

        if occupied.any():
            distance = distance_transform_edt(~occupied, sampling=self.resolution)
            near = np.roll(distance <= self.radius, unroll, axis=(0, 1, 2))
            self.observed |= near
            np.minimum(distance, self.radius, out=distance)
            self.distance = np.roll(distance, unroll, axis=(0, 1, 2)).astype(np.float32)
        else:
            self.distance.fill(self.radius)

        self._distance_dirty = False

    def query_distance(self, point: np.ndarray) -> Tuple[float, bool]:
        """
        Nearest-obstacle distance at the voxel containing `point`.

        Returns:
            (distance, is_valid); NaN and False outside the volume or where
            nothing has been observed
        """
        index = self.world_to_index(point).reshape(3)

        with self.lock:
            if not self.in_volume(index):
                return float("nan"), False

            self._update_distance()
            storage = self._storage(index)

            if not self.observed[storage]:
                return float("nan"), False

            return float(self.distance[storage]), True

    def query_distances_with_gradient(
        self, points: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Trilinearly interpolated distance and its gradient for (P, 3) points.

        A point is valid only if all eight surrounding voxel centres are in
        the volume and observed.
        """
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        num = len(points)

        scaled = points / self.resolution - 0.5
        base = np.floor(scaled).astype(np.int64)
        frac = scaled - base

        corners = base[:, None, :] + _CORNER_OFFSETS[None, :, :]  # (P, 8, 3)

        distances = np.full(num, np.nan)
        gradients = np.zeros((num, 3))

        with self.lock:
            inside = np.all(self.in_volume(corners), axis=1)
            if not inside.any():
                return distances, gradients, np.zeros(num, dtype=bool)

            self._update_distance()

            storage = self._storage(corners[inside])
            observed = np.all(self.observed[storage], axis=1)
            corner_values = self.distance[storage].astype(float)

        valid = np.zeros(num, dtype=bool)
        valid[inside] = observed

        f = frac[inside]
        is_high = _CORNER_OFFSETS[None, :, :] == 1
        weights = np.where(is_high, f[:, None, :], 1.0 - f[:, None, :])  # (Q, 8, 3)

        values = np.sum(corner_values * np.prod(weights, axis=2), axis=1)

        grads = np.zeros((len(f), 3))
        for axis in range(3):
            sign = np.where(_CORNER_OFFSETS[:, axis] == 1, 1.0, -1.0)
            others = np.prod(np.delete(weights, axis, axis=2), axis=2)
            grads[:, axis] = np.sum(sign * others * corner_values, axis=1) / self.resolution

        distances[inside] = np.where(observed, values, np.nan)
        gradients[inside] = np.where(observed[:, None], grads, 0.0)

        return distances, gradients, valid

    def query_distance_with_gradient(self, point: np.ndarray) -> Tuple[float, np.ndarray, bool]:

        distances, gradients, valid = self.query_distances_with_gradient(point)
        return float(distances[0]), gradients[0], bool(valid[0])

    # Inspection

    def is_occupied(self, point: np.ndarray) -> bool:

        index = self.world_to_index(point).reshape(3)
        with self.lock:
            if not self.in_volume(index):
                return False
            return bool(self.occupied[self._storage(index)])

    def occupied_points(self) -> np.ndarray:
        """World coordinates of occupied voxel centres."""
        with self.lock:
            storage = np.argwhere(self.occupied)
            world = self.offset + np.mod(storage - self.offset, self.size)
        return self.index_to_world(world)

    def num_occupied(self) -> int:

        with self.lock:
            return int(self.occupied.sum())

    def get_info(self) -> BufferInfo:

        with self.lock:
            low = self.offset * self.resolution
            high = (self.offset + self.size) * self.resolution
            return BufferInfo(
                size=self.size,
                resolution=self.resolution,
                radius=self.radius,
                offset=tuple(int(v) for v in self.offset),
                center=tuple(int(v) for v in self.center),
                world_bounds=tuple((float(lo), float(hi)) for lo, hi in zip(low, high)),
                occupied_cells=int(self.occupied.sum()),
                observed_cells=int(self.observed.sum()),
                generation=self.generation_counter,
            )

    def export_state(self) -> Dict[str, Any]:

        with self.lock:
            self._update_distance()
            return {
                "occupied": self.occupied.copy(),
                "observed": self.observed.copy(),
                "distance": self.distance.copy(),
                "offset": self.offset.copy(),
            }
