"""
B-Spline Optimizer
Sliding-window clearance optimization of a uniform B-spline against a live
distance field, subject to velocity and acceleration limits.
"""

import numpy as np
import logging
import threading
import time
from typing import List, Dict, Optional, Any
from dataclasses import dataclass
from enum import Enum

from local_replanner.errors import InvalidConfigurationError, FrozenControlPointError
from local_replanner.planning.limits import KinodynamicLimits
from local_replanner.planning.uniform_bspline import UniformBSpline3D, _power_rows

UNKNOWN_POLICIES = ("conservative", "optimistic")


class ControlPointState(Enum):
    FROZEN = "frozen"
    ACTIVE = "active"
    PENDING = "pending"


@dataclass
class OptimizationResult:
    """Outcome of one optimization cycle, describing the state that was kept."""

    converged: bool
    iterations: int
    corrective_steps: int
    max_violation: float
    total_violation: float
    num_unknown: int
    num_samples: int = 0
    rejected_steps: int = 0
    known_max_violation: float = 0.0
    optimization_time: float = 0.0


@dataclass
class _WindowEvaluation:
    positions: np.ndarray  # (num_segments, samples, 3)
    tangents: np.ndarray
    distances: np.ndarray
    gradients: np.ndarray
    known: np.ndarray
    violations: np.ndarray
    first_segment: int

    @property
    def max_violation(self) -> float:
        return float(self.violations.max()) if self.violations.size else 0.0

    @property
    def known_max_violation(self) -> float:
        """Largest violation among samples the map has actually observed."""
        known = self.violations[self.known]
        return float(known.max()) if known.size else 0.0

    @property
    def total_violation(self) -> float:
        return float(self.violations.sum())

    @property
    def num_unknown(self) -> int:
        return int((~self.known).sum())

    @property
    def key(self):
        return (self.max_violation, self.total_violation)


class BSplineOptimizer:
    """
    Moves the active control points of a B-spline away from obstacles.

    Control points before the window are FROZEN (they shape trajectory that
    has already been emitted), the next `num_opt_points` are ACTIVE, the rest
    PENDING. The window only ever slides forward.
    """

    def __init__(
        self,
        spline: UniformBSpline3D,
        limits: KinodynamicLimits,
        distance_field,
        config: Optional[Dict[str, Any]] = None,
    ):
        config = config or {}
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.spline = spline
        self.limits = limits.validate()
        self.distance_field = distance_field

        self.num_opt_points = int(config.get("num_opt_points", 7))
        self.distance_threshold = float(config.get("distance_threshold", 0.3))
        self.unknown_distance_policy = config.get("unknown_distance_policy", "conservative")
        self.max_iterations = int(config.get("max_iterations", 20))
        self.convergence_tolerance = float(config.get("convergence_tolerance", 0.01))
        self.samples_per_segment = int(config.get("samples_per_segment", 5))
        self.step_gain = float(config.get("step_gain", 1.0))
        self.max_step = float(config.get("max_step", 0.1))
        self.max_backtracks = int(config.get("max_backtracks", 5))
        self.limit_tolerance = float(config.get("limit_tolerance", 0.01))
        self.clearance_margin = float(config.get("clearance_margin", 0.05))
        self.lateral_corrections = bool(config.get("lateral_corrections", True))
        self.fix_goal = bool(config.get("fix_goal", True))

        if self.unknown_distance_policy not in UNKNOWN_POLICIES:
            raise InvalidConfigurationError(
                f"unknown_distance_policy must be one of {UNKNOWN_POLICIES}, "
                f"got {self.unknown_distance_policy!r}"
            )
        if self.num_opt_points < 1 or self.samples_per_segment < 1:
            raise InvalidConfigurationError("num_opt_points and samples_per_segment must be >= 1")
        if self.distance_threshold <= 0:
            raise InvalidConfigurationError("distance_threshold must be positive")
        if self.clearance_margin < 0:
            raise InvalidConfigurationError("clearance_margin must be non-negative")

        # Sample weights shared by every span
        u = np.linspace(0.0, 1.0, self.samples_per_segment)
        self._sample_weights = _power_rows(u, spline.order, 0) @ spline.M
        self._tangent_weights = _power_rows(u, spline.order, 1) @ spline.M

        self.lock = threading.RLock()
        self.first_active = 0
        self.advance(spline.t0)

        # Statistics
        self.optimization_count = 0
        self.total_corrective_steps = 0
        self.non_converged_count = 0
        self.last_result: Optional[OptimizationResult] = None

        self.logger.info(
            f"B-spline optimizer initialized: {spline.num_control_points} control points, "
            f"window {self.num_opt_points}, threshold {self.distance_threshold}m"
        )
        self.logger.info(f"Unknown distance policy: {self.unknown_distance_policy}")

    # Window bookkeeping

    @property
    def num_optimizable(self) -> int:
        """Control points that may ever become active; the goal padding stays put."""
        n = self.spline.num_control_points
        return n - (self.spline.order - 1) if self.fix_goal else n

    def advance(self, t_emitted: float):
        """Slide the window past the span containing `t_emitted`."""
        with self.lock:
            candidate = self.spline.segment_of(t_emitted) + self.spline.order
            if candidate > self.first_active:
                self.first_active = candidate
                self.logger.debug(f"Optimization window advanced to {self.first_active}")

    def control_point_state(self, index: int) -> ControlPointState:

        if index < self.first_active:
            return ControlPointState.FROZEN
        if index < min(self.first_active + self.num_opt_points, self.num_optimizable):
            return ControlPointState.ACTIVE
        return ControlPointState.PENDING

    def active_indices(self) -> List[int]:

        end = min(self.first_active + self.num_opt_points, self.num_optimizable)
        return list(range(self.first_active, max(end, self.first_active)))

    def _write_control_point(self, index: int, point: np.ndarray):
        if index < self.first_active:
            raise FrozenControlPointError(
                f"Control point {index} is frozen (window starts at {self.first_active})"
            )
        self.spline.set_control_point(index, point)

    # Readers

    def snapshot(self) -> UniformBSpline3D:

        with self.lock:
            return self.spline.copy()

    def evaluate(self, t: float, derivative: int = 0) -> np.ndarray:

        with self.lock:
            return self.spline.evaluate(t, derivative)

    # Optimization

    def optimize(self) -> OptimizationResult:
        """
        Run one bounded optimization cycle over the active window.

        Once an observed sample is closer than `distance_threshold`, every
        sample closer than `distance_threshold + clearance_margin` pushes the
        active points sideways, one point at a time, each push halved until
        the velocity and acceleration limits hold. A point whose push cannot
        be made feasible is left where it is for this iteration; the others
        still move.

        Returns the best state seen (lowest max violation, then lowest total
        violation; later states win ties). Non-convergence is reported in the
        result, never raised.
        """
        start_time = time.time()

        with self.lock:
            active = self.active_indices()
            if not active:
                result = OptimizationResult(
                    converged=True, iterations=0, corrective_steps=0,
                    max_violation=0.0, total_violation=0.0, num_unknown=0,
                )
                self._record(result)
                return result

            evaluation = self._evaluate_window(active)
            best_key = evaluation.key
            best_points = self.spline.control_points[active]
            best_evaluation = evaluation

            # Clear windows are left alone; a triggered cycle overshoots by the margin
            target = self.distance_threshold
            if evaluation.known_max_violation > 0.0:
                target += self.clearance_margin

            iterations = 0
            corrective_steps = 0
            rejected_steps = 0

            while iterations < self.max_iterations:
                corrections = self._corrections(evaluation, active, target)
                if not corrections:
                    # Clear of every known obstacle, or only unknown space left
                    break

                iterations += 1
                moved, rejected = self._apply_step(corrections)
                rejected_steps += rejected
                if not moved:
                    break
                corrective_steps += 1

                evaluation = self._evaluate_window(active)
                if evaluation.key <= best_key:
                    best_key = evaluation.key
                    best_points = self.spline.control_points[active]
                    best_evaluation = evaluation

            if best_evaluation is not evaluation:
                for index, point in zip(active, best_points):
                    self._write_control_point(index, point)

            result = OptimizationResult(
                converged=best_evaluation.max_violation <= self.convergence_tolerance,
                iterations=iterations,
                corrective_steps=corrective_steps,
                max_violation=best_evaluation.max_violation,
                total_violation=best_evaluation.total_violation,
                num_unknown=best_evaluation.num_unknown,
                num_samples=int(best_evaluation.violations.size),
                rejected_steps=rejected_steps,
                known_max_violation=best_evaluation.known_max_violation,
                optimization_time=time.time() - start_time,
            )

        self._record(result)
        return result

    def _record(self, result: OptimizationResult):
        self.optimization_count += 1
        self.total_corrective_steps += result.corrective_steps
        self.last_result = result

        if result.converged:
            self.logger.debug(
                f"Optimization converged after {result.iterations} iterations "
                f"({result.corrective_steps} steps)"
            )
            return

        self.non_converged_count += 1
        if result.known_max_violation > self.convergence_tolerance:
            self.logger.warning(
                f"Optimization did not converge: max violation {result.known_max_violation:.3f}m "
                f"in observed space, {result.rejected_steps} pushes blocked by limits"
            )
        else:
            self.logger.debug(
                f"Optimization waiting on map coverage: {result.num_unknown} unknown samples"
            )

    def _segment_range(self, active: List[int]):
        window_segment = self.first_active - self.spline.order
        first = max(window_segment, 0)
        last = min(active[-1], self.spline.num_segments - 1)
        return first, last

    def _evaluate_window(self, active: List[int]) -> _WindowEvaluation:
        first, last = self._segment_range(active)
        order = self.spline.order
        points = self.spline.control_points

        segments = np.arange(first, last + 1)
        spans = points[segments[:, None] + np.arange(order)[None, :]]  # (S, k, 3)
        positions = np.einsum("mk,skd->smd", self._sample_weights, spans)
        tangents = np.einsum("mk,skd->smd", self._tangent_weights, spans)

        flat = positions.reshape(-1, 3)
        distances, gradients, known = self.distance_field.query_distances_with_gradient(flat)

        violations = np.zeros(len(flat))
        violations[known] = np.maximum(self.distance_threshold - distances[known], 0.0)
        if self.unknown_distance_policy == "conservative":
            violations[~known] = self.distance_threshold

        shape = positions.shape[:2]
        return _WindowEvaluation(
            positions=positions,
            tangents=tangents,
            distances=distances.reshape(shape),
            gradients=gradients.reshape(shape + (3,)),
            known=known.reshape(shape),
            violations=violations.reshape(shape),
            first_segment=first,
        )

    def _push_directions(self, evaluation: _WindowEvaluation, pushing: np.ndarray) -> np.ndarray:
        """Unit push per sample: the distance gradient, minus its along-track part."""
        gradient_norm = np.linalg.norm(evaluation.gradients, axis=2)
        normals = np.zeros_like(evaluation.gradients)
        normals[pushing] = evaluation.gradients[pushing] / gradient_norm[pushing][:, None]
        if not self.lateral_corrections:
            return normals

        # Along-track motion only retimes the path
        speed = np.linalg.norm(evaluation.tangents, axis=2)
        moving = pushing & (speed > 1e-6)
        along = np.zeros_like(normals)
        along[moving] = evaluation.tangents[moving] / speed[moving][:, None]
        lateral = normals - np.sum(normals * along, axis=2, keepdims=True) * along
        lateral_norm = np.linalg.norm(lateral, axis=2)

        # Head-on samples keep the raw gradient; their neighbours steer sideways
        sideways = moving & (lateral_norm > 1e-3)
        normals[sideways] = lateral[sideways] / lateral_norm[sideways][:, None]
        return normals

    def _corrections(
        self, evaluation: _WindowEvaluation, active: List[int], target: float
    ) -> Dict[int, np.ndarray]:
        """Per active control point, the basis-weighted mean push out of violating samples."""
        order = self.spline.order
        num_segments = evaluation.positions.shape[0]

        gradient_norm = np.linalg.norm(evaluation.gradients, axis=2)
        pushing = evaluation.known & (evaluation.distances < target) & (gradient_norm > 1e-9)
        if not pushing.any():
            return {}

        normals = self._push_directions(evaluation, pushing)
        deficit = np.where(pushing, target - evaluation.distances, 0.0)
        push = deficit[:, :, None] * normals

        corrections = {}
        for index in active:
            weighted_sum = np.zeros(3)
            weight_total = 0.0

            for segment in range(index - order + 1, index + 1):
                row = segment - evaluation.first_segment
                if row < 0 or row >= num_segments:
                    continue
                weights = self._sample_weights[:, index - segment] * pushing[row]
                weighted_sum += weights @ push[row]
                weight_total += weights.sum()

            if weight_total <= 1e-12:
                continue

            delta = self.step_gain * weighted_sum / weight_total
            norm = np.linalg.norm(delta)
            if norm > self.max_step:
                delta *= self.max_step / norm
            if norm >= self.convergence_tolerance:
                corrections[index] = delta

        return corrections

    def _apply_step(self, corrections: Dict[int, np.ndarray]):
        """
        Move each corrected point in turn, halving its push until the limits
        hold. Returns (points moved, points whose push was rejected).
        """
        moved = 0
        rejected = 0

        for index in sorted(corrections):
            current = self.spline.control_points
            candidate = current.copy()
            scale = 1.0

            for _ in range(self.max_backtracks + 1):
                candidate[index] = current[index] + scale * corrections[index]
                if self._limits_respected(current, candidate, index):
                    self._write_control_point(index, candidate[index])
                    moved += 1
                    break
                scale *= 0.5
            else:
                rejected += 1
                self.logger.debug(f"Push on control point {index} rejected: limits violated")

        return moved, rejected

    def _limits_respected(self, before: np.ndarray, after: np.ndarray, index: int) -> bool:
        """Check the derivative control points that depend on point `index`."""
        dt = self.spline.dt
        tolerance = 1.0 + self.limit_tolerance
        window = slice(max(index - 2, 0), min(index + 3, len(before)))
        before = before[window]
        after = after[window]

        v_before = np.linalg.norm(np.diff(before, axis=0), axis=1) / dt
        v_after = np.linalg.norm(np.diff(after, axis=0), axis=1) / dt
        if np.any(v_after > np.maximum(self.limits.max_velocity * tolerance, v_before)):
            return False

        a_before = np.linalg.norm(np.diff(before, n=2, axis=0), axis=1) / dt ** 2
        a_after = np.linalg.norm(np.diff(after, n=2, axis=0), axis=1) / dt ** 2
        if np.any(a_after > np.maximum(self.limits.max_acceleration * tolerance, a_before)):
            return False

        return True

    def get_statistics(self) -> Dict[str, Any]:

        with self.lock:
            return {
                "num_control_points": self.spline.num_control_points,
                "first_active": self.first_active,
                "active_indices": self.active_indices(),
                "optimization_count": self.optimization_count,
                "total_corrective_steps": self.total_corrective_steps,
                "non_converged_count": self.non_converged_count,
                "last_max_violation": (
                    self.last_result.max_violation if self.last_result else None
                ),
            }
