"""
Uniform B-Spline
Fixed-order uniform B-spline in 3D evaluated through its basis matrix.
"""

import numpy as np
import logging
from math import comb, factorial
from typing import Optional, Sequence

from local_replanner.errors import InvalidConfigurationError


def basis_matrix(order: int) -> np.ndarray:
    """
    Matrix M of a uniform B-spline with `order` control points per span.

    Row i holds the coefficients of u**i, column j the control point j of
    the span, so that p(u) = [1, u, ..., u**(order-1)] @ M @ C.
    """
    k = order
    M = np.zeros((k, k))
    for i in range(k):
        for j in range(k):
            total = 0.0
            for s in range(j, k):
                total += (-1) ** (s - j) * comb(k, s - j) * (k - s - 1) ** (k - 1 - i)
            M[i, j] = comb(k - 1, i) * total / factorial(k - 1)
    return M


def _power_rows(u: np.ndarray, order: int, derivative: int) -> np.ndarray:
    u = np.atleast_1d(np.asarray(u, dtype=float))
    rows = np.zeros((len(u), order))
    for i in range(derivative, order):
        rows[:, i] = factorial(i) / factorial(i - derivative) * u ** (i - derivative)
    return rows


class UniformBSpline3D:
    """
    Uniform B-spline trajectory.

    Segment j covers [t0 + j*dt, t0 + (j+1)*dt) and is shaped by control
    points j .. j+order-1. Times outside the domain are clamped to its ends.
    """

    def __init__(
        self,
        control_points: np.ndarray,
        dt: float,
        order: int = 6,
        t0: float = 0.0,
    ):
        self.logger = logging.getLogger(__name__)

        control_points = np.array(control_points, dtype=float)
        if control_points.ndim != 2 or control_points.shape[1] != 3:
            raise InvalidConfigurationError(
                f"Control points must be an (n, 3) array, got shape {control_points.shape}"
            )
        if order < 2:
            raise InvalidConfigurationError(f"B-spline order must be >= 2, got {order}")
        if len(control_points) < order:
            raise InvalidConfigurationError(
                f"Order {order} needs at least {order} control points, got {len(control_points)}"
            )
        if not dt > 0:
            raise InvalidConfigurationError(f"Knot spacing must be positive, got {dt}")

        self._control_points = control_points
        self.dt = float(dt)
        self.order = int(order)
        self.t0 = float(t0)
        self.M = basis_matrix(self.order)

    @classmethod
    def from_polynomial(
        cls,
        trajectory,
        dt: float,
        order: int = 6,
        t0: float = 0.0,
        samples_per_segment: int = 20,
    ) -> "UniformBSpline3D":
        """
        Least-squares fit of a polynomial trajectory.

        The fitted control points are followed by order-1 copies of the
        final waypoint so the spline comes to rest exactly on the goal.
        """
        if not dt > 0:
            raise InvalidConfigurationError(f"Knot spacing must be positive, got {dt}")

        num_segments = max(1, int(np.ceil(trajectory.duration / dt - 1e-9)))
        num_fit = num_segments + order - 1

        times = np.linspace(0.0, num_segments * dt, num_segments * samples_per_segment + 1)
        targets = trajectory.sample(times)

        M = basis_matrix(order)
        segments = np.minimum((times / dt).astype(int), num_segments - 1)
        u = np.clip(times / dt - segments, 0.0, 1.0)
        weights = _power_rows(u, order, 0) @ M

        design = np.zeros((len(times), num_fit))
        for row, (segment, w) in enumerate(zip(segments, weights)):
            design[row, segment : segment + order] = w

        fitted, _, _, _ = np.linalg.lstsq(design, targets, rcond=None)

        goal = np.asarray(trajectory.waypoints[-1], dtype=float)
        padding = np.tile(goal, (order - 1, 1))

        return cls(np.vstack([fitted, padding]), dt, order=order, t0=t0)

    # Geometry

    @property
    def control_points(self) -> np.ndarray:
        return self._control_points.copy()

    @property
    def num_control_points(self) -> int:
        return len(self._control_points)

    @property
    def num_segments(self) -> int:
        return len(self._control_points) - self.order + 1

    @property
    def duration(self) -> float:
        return self.num_segments * self.dt

    @property
    def end_time(self) -> float:
        return self.t0 + self.duration

    def set_control_point(self, index: int, point: Sequence[float]):
        """Overwrite one control point. Window bookkeeping is the optimizer's job."""
        self._control_points[index] = np.asarray(point, dtype=float).reshape(3)

    def copy(self) -> "UniformBSpline3D":

        return UniformBSpline3D(self._control_points, self.dt, order=self.order, t0=self.t0)

    # Evaluation

    def segment_of(self, t: float) -> int:
        """Index of the knot span containing `t`, clamped to the domain."""
        segment = int(np.floor((t - self.t0) / self.dt))
        return min(max(segment, 0), self.num_segments - 1)

    def basis_weights(self, u: float, derivative: int = 0) -> np.ndarray:
        """Weights of the order control points of a span at normalized time u in [0, 1]."""
        return (_power_rows([u], self.order, derivative) @ self.M)[0]

    def _locate(self, times: np.ndarray):
        s = (np.asarray(times, dtype=float) - self.t0) / self.dt
        segments = np.clip(np.floor(s).astype(int), 0, self.num_segments - 1)
        u = np.clip(s - segments, 0.0, 1.0)
        return segments, u

    def sample(self, times: Sequence[float], derivative: int = 0) -> np.ndarray:
        """Evaluate the `derivative`-th time derivative at each time, shape (len(times), 3)."""
        times = np.atleast_1d(np.asarray(times, dtype=float))
        segments, u = self._locate(times)

        weights = _power_rows(u, self.order, derivative) @ self.M
        span = segments[:, None] + np.arange(self.order)[None, :]
        values = np.einsum("sk,skd->sd", weights, self._control_points[span])

        return values / self.dt ** derivative

    def evaluate(self, t: float, derivative: int = 0) -> np.ndarray:

        return self.sample([t], derivative)[0]

    def velocity_control_points(self) -> np.ndarray:
        """Control points of the derivative spline; their norms bound the speed."""
        return np.diff(self._control_points, axis=0) / self.dt

    def acceleration_control_points(self) -> np.ndarray:

        c = self._control_points
        return (c[2:] - 2.0 * c[1:-1] + c[:-2]) / self.dt ** 2
