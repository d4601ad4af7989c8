"""
Polynomial Trajectory Generator
Minimum-derivative piecewise polynomials through waypoints, time-scaled to
kinodynamic limits.
"""

import numpy as np
import logging
import time
from math import factorial
from typing import List, Tuple, Optional, Dict, Any, Sequence
from dataclasses import dataclass
from scipy import linalg

from local_replanner.errors import InvalidConfigurationError
from local_replanner.planning.limits import KinodynamicLimits


def derivative_row(tau: float, derivative: int, degree: int) -> np.ndarray:
    """Row vector r such that r @ c is the `derivative`-th tau-derivative of sum(c_n tau^n)."""
    row = np.zeros(degree + 1)
    for n in range(derivative, degree + 1):
        power = n - derivative
        row[n] = factorial(n) / factorial(power) * (tau ** power if power else 1.0)
    return row


def derivative_matrix(taus: np.ndarray, derivative: int, degree: int) -> np.ndarray:
    """Stacked derivative rows for an array of tau values, shape (len(taus), degree + 1)."""
    taus = np.asarray(taus, dtype=float)
    rows = np.zeros((len(taus), degree + 1))
    for n in range(derivative, degree + 1):
        power = n - derivative
        rows[:, n] = factorial(n) / factorial(power) * taus ** power
    return rows


def cost_matrix(derivative: int, degree: int) -> np.ndarray:
    """Gram matrix of the integral over [0, 1] of the squared `derivative`-th derivative."""
    Q = np.zeros((degree + 1, degree + 1))
    for n in range(derivative, degree + 1):
        for m in range(derivative, degree + 1):
            a_n = factorial(n) / factorial(n - derivative)
            a_m = factorial(m) / factorial(m - derivative)
            Q[n, m] = a_n * a_m / (n + m - 2 * derivative + 1)
    return Q


@dataclass(frozen=True)
class PolynomialTrajectory:
    """
    Immutable piecewise polynomial in normalized segment time.

    Segment i spans durations[i] seconds; coefficients[i, axis] are the
    coefficients of tau^0 .. tau^degree with tau in [0, 1].
    """

    waypoints: np.ndarray
    coefficients: np.ndarray
    durations: np.ndarray

    def __post_init__(self):
        for array in (self.waypoints, self.coefficients, self.durations):
            array.setflags(write=False)

    @property
    def degree(self) -> int:
        return self.coefficients.shape[2] - 1

    @property
    def num_segments(self) -> int:
        return len(self.durations)

    @property
    def duration(self) -> float:
        return float(np.sum(self.durations))

    @property
    def segment_start_times(self) -> np.ndarray:
        return np.concatenate(([0.0], np.cumsum(self.durations)[:-1]))

    def sample(self, times: Sequence[float], derivative: int = 0) -> np.ndarray:
        """Evaluate the `derivative`-th time derivative at each time; times are clamped to the domain."""
        times = np.clip(np.atleast_1d(np.asarray(times, dtype=float)), 0.0, self.duration)
        starts = self.segment_start_times

        segments = np.clip(
            np.searchsorted(starts, times, side="right") - 1, 0, self.num_segments - 1
        )
        seg_durations = self.durations[segments]
        taus = np.clip((times - starts[segments]) / seg_durations, 0.0, 1.0)

        rows = derivative_matrix(taus, derivative, self.degree)
        values = np.einsum("sn,san->sa", rows, self.coefficients[segments])
        return values / seg_durations[:, None] ** derivative

    def evaluate(self, t: float, derivative: int = 0) -> np.ndarray:

        return self.sample([t], derivative)[0]

    def peak_velocity(self, samples_per_segment: int = 200) -> float:

        return self._peak_norm(1, samples_per_segment)

    def peak_acceleration(self, samples_per_segment: int = 200) -> float:

        return self._peak_norm(2, samples_per_segment)

    def _peak_norm(self, derivative: int, samples_per_segment: int) -> float:
        taus = np.linspace(0.0, 1.0, samples_per_segment)
        rows = derivative_matrix(taus, derivative, self.degree)
        peak = 0.0
        for coeffs, T in zip(self.coefficients, self.durations):
            values = rows @ coeffs.T / T ** derivative
            peak = max(peak, float(np.max(np.linalg.norm(values, axis=1))))
        return peak


class PolynomialTrajectoryGenerator:
    """
    Builds minimum-snap (by default) piecewise polynomials through waypoints.

    Each axis solves the equality-constrained quadratic program through its
    KKT system in normalized segment time, then all segment durations are
    stretched or compressed until the sampled peak velocity and acceleration
    sit at the limits.
    """

    def __init__(self, limits: KinodynamicLimits, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.limits = limits.validate()

        self.degree = int(config.get("degree", 10))
        self.cost_derivative = int(config.get("cost_derivative", 4))
        self.boundary_derivatives = int(config.get("boundary_derivatives", 4))
        self.continuity_derivatives = int(config.get("continuity_derivatives", 6))
        self.samples_per_segment = int(config.get("samples_per_segment", 200))
        self.time_scaling_iterations = int(config.get("time_scaling_iterations", 10))
        self.limit_tolerance = float(config.get("limit_tolerance", 0.01))
        self.min_segment_duration = float(config.get("min_segment_duration", 1.0))
        # Fraction of the limits the trajectory is timed to; the rest is left for detours
        self.limit_scale = float(config.get("limit_scale", 1.0))

        if not 0.0 < self.limit_scale <= 1.0:
            raise InvalidConfigurationError(f"limit_scale must be in (0, 1], got {self.limit_scale}")

        self.target_velocity = self.limits.max_velocity * self.limit_scale
        self.target_acceleration = self.limits.max_acceleration * self.limit_scale

        if 2 * (self.boundary_derivatives + 1) > self.degree + 1:
            raise InvalidConfigurationError(
                f"Degree {self.degree} cannot satisfy {self.boundary_derivatives} boundary derivatives"
            )

        self._cost_matrix = cost_matrix(self.cost_derivative, self.degree)

        self.logger.info(
            f"Polynomial generator initialized: degree {self.degree}, "
            f"minimizing derivative {self.cost_derivative}"
        )
        self.logger.info(
            f"Limits - Velocity: {self.limits.max_velocity}m/s, "
            f"Acceleration: {self.limits.max_acceleration}m/s², timed to {self.limit_scale:.0%}"
        )

    def compute_trajectory(
        self,
        waypoints: Sequence[Sequence[float]],
        start_velocity: Optional[Sequence[float]] = None,
        start_acceleration: Optional[Sequence[float]] = None,
    ) -> PolynomialTrajectory:
        """
        Compute a time-scaled polynomial trajectory through `waypoints`.

        Args:
            waypoints: ordered 3D positions, start first and goal last
            start_velocity: optional initial velocity (defaults to rest)
            start_acceleration: optional initial acceleration (defaults to rest)

        Returns:
            Immutable polynomial trajectory

        Raises:
            InvalidConfigurationError: fewer than two waypoints or malformed points
        """
        generation_start = time.time()

        points = self._validate_waypoints(waypoints)
        v0 = self._clip_boundary(start_velocity, self.target_velocity, "start velocity")
        a0 = self._clip_boundary(
            start_acceleration, self.target_acceleration, "start acceleration"
        )

        points = self._collapse_duplicates(points)
        if len(points) == 1:
            trajectory = self._stationary_trajectory(points[0])
            self.logger.info("Start and goal coincide; stationary trajectory generated")
            return trajectory

        lengths = np.linalg.norm(np.diff(points, axis=0), axis=1)
        durations = np.maximum(lengths / self.target_velocity, 1e-3)

        coefficients, durations = self._scale_durations(points, durations, v0, a0)

        trajectory = PolynomialTrajectory(
            waypoints=points.copy(), coefficients=coefficients, durations=durations
        )

        self.logger.info(
            f"Trajectory computed in {time.time() - generation_start:.3f}s: "
            f"{trajectory.num_segments} segments, duration {trajectory.duration:.2f}s"
        )
        return trajectory

    def _validate_waypoints(self, waypoints: Sequence[Sequence[float]]) -> np.ndarray:
        try:
            points = np.asarray(waypoints, dtype=float)
        except (TypeError, ValueError) as e:
            raise InvalidConfigurationError(f"Waypoints are not numeric: {e}") from e

        if points.ndim != 2 or points.shape[1] != 3:
            raise InvalidConfigurationError(
                f"Waypoints must be an (N, 3) array, got shape {points.shape}"
            )
        if len(points) < 2:
            raise InvalidConfigurationError(
                f"At least two waypoints are required, got {len(points)}"
            )
        if not np.all(np.isfinite(points)):
            raise InvalidConfigurationError("Waypoints must be finite")

        return points

    def _clip_boundary(
        self, value: Optional[Sequence[float]], limit: float, name: str
    ) -> np.ndarray:
        if value is None:
            return np.zeros(3)

        vector = np.asarray(value, dtype=float).reshape(3)
        magnitude = np.linalg.norm(vector)
        if magnitude > limit:
            self.logger.warning(f"Clipping {name} {magnitude:.3f} to limit {limit:.3f}")
            vector = vector * (limit / magnitude)
        return vector

    def _collapse_duplicates(self, points: np.ndarray) -> np.ndarray:
        keep = [0]
        for i in range(1, len(points)):
            if np.linalg.norm(points[i] - points[keep[-1]]) > 1e-9:
                keep.append(i)
        return points[keep]

    def _stationary_trajectory(self, point: np.ndarray) -> PolynomialTrajectory:
        coefficients = np.zeros((1, 3, self.degree + 1))
        coefficients[0, :, 0] = point
        return PolynomialTrajectory(
            waypoints=np.vstack([point, point]),
            coefficients=coefficients,
            durations=np.array([self.min_segment_duration]),
        )

    def _scale_durations(
        self, points: np.ndarray, durations: np.ndarray, v0: np.ndarray, a0: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Rescale all durations until the sampled peaks meet the limits."""
        tolerance = self.limit_tolerance
        scale = 1.0

        for iteration in range(self.time_scaling_iterations):
            coefficients = self._solve(points, durations, v0, a0)
            scale = self._limit_scale(coefficients, durations)

            if scale == 0.0 or abs(scale - 1.0) <= tolerance:
                return coefficients, durations

            durations = durations * scale
            self.logger.debug(f"Time scaling iteration {iteration}: factor {scale:.4f}")

        # Not settled within budget: only stretch from here on
        coefficients = self._solve(points, durations, v0, a0)
        scale = self._limit_scale(coefficients, durations)
        for _ in range(self.time_scaling_iterations):
            if scale <= 1.0 + tolerance:
                break
            durations = durations * scale * (1.0 + tolerance)
            coefficients = self._solve(points, durations, v0, a0)
            scale = self._limit_scale(coefficients, durations)

        self.logger.warning(
            f"Time scaling did not settle in {self.time_scaling_iterations} iterations; "
            f"final factor {scale:.4f}"
        )
        return coefficients, durations

    def _limit_scale(self, coefficients: np.ndarray, durations: np.ndarray) -> float:
        trial = PolynomialTrajectory(
            waypoints=np.zeros((len(durations) + 1, 3)),
            coefficients=coefficients.copy(),
            durations=durations.copy(),
        )
        v_peak = trial.peak_velocity(self.samples_per_segment)
        a_peak = trial.peak_acceleration(self.samples_per_segment)

        return max(
            v_peak / self.target_velocity,
            np.sqrt(a_peak / self.target_acceleration),
        )

    def _solve(
        self, points: np.ndarray, durations: np.ndarray, v0: np.ndarray, a0: np.ndarray
    ) -> np.ndarray:
        """Solve the per-axis KKT system; returns coefficients of shape (M, 3, degree + 1)."""
        num_segments = len(durations)
        n_coeffs = self.degree + 1
        n_vars = num_segments * n_coeffs

        # Cost scaled by a common factor, which leaves the minimizer unchanged
        reference = float(np.mean(durations))
        H = np.zeros((n_vars, n_vars))
        for i, T in enumerate(durations):
            block = slice(i * n_coeffs, (i + 1) * n_coeffs)
            H[block, block] = (T / reference) ** (1 - 2 * self.cost_derivative) * self._cost_matrix

        rows: List[np.ndarray] = []
        rhs: List[np.ndarray] = []

        def add_row(segment_rows: Dict[int, np.ndarray], value: np.ndarray):
            row = np.zeros(n_vars)
            for segment, r in segment_rows.items():
                row[segment * n_coeffs : (segment + 1) * n_coeffs] += r
            rows.append(row)
            rhs.append(value)

        zero = np.zeros(3)

        for i in range(num_segments):
            add_row({i: derivative_row(0.0, 0, self.degree)}, points[i])
            add_row({i: derivative_row(1.0, 0, self.degree)}, points[i + 1])

        start_values = {1: v0, 2: a0}
        T_first = durations[0]
        for k in range(1, self.boundary_derivatives + 1):
            # Boundary derivatives in tau units: d^k/dtau^k = T^k d^k/dt^k
            add_row(
                {0: derivative_row(0.0, k, self.degree)},
                start_values.get(k, zero) * T_first ** k,
            )
            add_row({num_segments - 1: derivative_row(1.0, k, self.degree)}, zero)

        for i in range(num_segments - 1):
            ratio = durations[i] / durations[i + 1]
            for k in range(1, self.continuity_derivatives + 1):
                add_row(
                    {
                        i: derivative_row(1.0, k, self.degree),
                        i + 1: -(ratio ** k) * derivative_row(0.0, k, self.degree),
                    },
                    zero,
                )

        A = np.vstack(rows)
        b = np.vstack(rhs)
        n_constraints = len(rows)

        kkt = np.zeros((n_vars + n_constraints, n_vars + n_constraints))
        kkt[:n_vars, :n_vars] = 2.0 * H
        kkt[:n_vars, n_vars:] = A.T
        kkt[n_vars:, :n_vars] = A

        kkt_rhs = np.zeros((n_vars + n_constraints, 3))
        kkt_rhs[n_vars:] = b

        try:
            solution = linalg.solve(kkt, kkt_rhs)
        except linalg.LinAlgError:
            self.logger.warning("Singular KKT system, falling back to least squares")
            solution = linalg.lstsq(kkt, kkt_rhs)[0]

        coefficients = solution[:n_vars].T.reshape(3, num_segments, n_coeffs)
        return np.ascontiguousarray(coefficients.transpose(1, 0, 2))
