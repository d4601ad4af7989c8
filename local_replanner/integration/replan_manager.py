"""
Replan Manager
Ties depth perception, the distance ring buffer, trajectory generation and
B-spline optimization together, and samples setpoints from the result.
"""

import numpy as np
import logging
import time
import threading
from typing import Dict, List, Optional, Any, Sequence, Union
from dataclasses import dataclass

from local_replanner.errors import InvalidConfigurationError, TransformLookupError
from local_replanner.mapping.distance_ring_buffer import DistanceRingBuffer
from local_replanner.perception.coordinate_transforms import (
    CoordinateTransforms,
    IDENTITY_QUATERNION,
    quaternion_from_yaw,
    yaw_from_quaternion,
)
from local_replanner.perception.depth_projector import DepthFrame, DepthProjector, PoseLookup
from local_replanner.planning.bspline_optimizer import BSplineOptimizer, OptimizationResult
from local_replanner.planning.limits import KinodynamicLimits
from local_replanner.planning.polynomial_trajectory import (
    PolynomialTrajectory,
    PolynomialTrajectoryGenerator,
)
from local_replanner.planning.uniform_bspline import UniformBSpline3D
from local_replanner.utils.config_loader import DEFAULT_CONFIG, ReplannerConfig, merge_configs
from local_replanner.utils.logger import log_exceptions


@dataclass
class Setpoint:
    """Position/velocity/orientation target for the downstream vehicle controller."""

    position: np.ndarray
    velocity: np.ndarray
    acceleration: np.ndarray
    orientation: np.ndarray  # (x, y, z, w)
    yaw: float
    timestamp: float
    trajectory_time: float


class ReplanManager:
    """
    Online local replanner.

    Depth frames update the ring buffer and trigger an optimization cycle;
    goal changes rebuild the trajectory from the latest vehicle position;
    `tick` samples the optimized spline for the controller.
    """

    def __init__(
        self,
        config: Optional[Union[ReplannerConfig, Dict[str, Any]]] = None,
        pose_lookup: Optional[PoseLookup] = None,
    ):
        if isinstance(config, ReplannerConfig):
            config = config.to_dict()
        self.config = merge_configs(DEFAULT_CONFIG, config or {})
        self.logger = logging.getLogger(__name__)

        camera_config = self.config["camera"]
        trajectory_config = self.config["trajectory"]
        control_config = self.config["control"]

        self.projector = DepthProjector(camera_config)
        self.transforms = CoordinateTransforms(camera_config)
        self.buffer = DistanceRingBuffer(self.config["mapping"])
        self.limits = KinodynamicLimits.from_config(self.config["limits"]).validate()
        self.generator = PolynomialTrajectoryGenerator(self.limits, trajectory_config)

        self.spline_dt = float(trajectory_config.get("spline_dt", 0.5))
        self.spline_order = int(trajectory_config.get("spline_order", 6))
        self.optimizer_config = self.config["optimizer"]

        self.lookahead_time = float(control_config.get("lookahead_time", 0.05))
        self.optimize_on_depth = bool(control_config.get("optimize_on_depth", True))
        self.yaw_mode = control_config.get("yaw_mode", "hold")
        self.min_yaw_speed = float(control_config.get("min_yaw_speed", 0.05))

        if self.yaw_mode not in ("hold", "velocity"):
            raise InvalidConfigurationError(f"Unknown yaw_mode: {self.yaw_mode!r}")

        self.pose_lookup = pose_lookup or self._camera_pose_from_vehicle

        # Vehicle state
        self.pose_lock = threading.Lock()
        self.vehicle_position: Optional[np.ndarray] = None
        self.vehicle_orientation = np.array(IDENTITY_QUATERNION)

        # Trajectory state
        self.trajectory_lock = threading.RLock()
        self.polynomial: Optional[PolynomialTrajectory] = None
        self.optimizer: Optional[BSplineOptimizer] = None
        self.goal: Optional[np.ndarray] = None
        self._last_yaw = 0.0

        self.stats_lock = threading.Lock()
        self.statistics = {
            "frames_processed": 0,
            "frames_dropped": 0,
            "points_inserted": 0,
            "volume_shifts": 0,
            "goals_accepted": 0,
            "goals_rejected": 0,
            "optimizations": 0,
            "setpoints": 0,
        }

        self.logger.info("Replan Manager initialized")
        self.logger.info(
            f"Spline dt: {self.spline_dt}s, order {self.spline_order}; yaw mode: {self.yaw_mode}"
        )

    # Inputs

    def update_vehicle_pose(
        self, position: Sequence[float], orientation: Sequence[float] = IDENTITY_QUATERNION
    ):
        """Record the latest vehicle pose (world frame, (x, y, z, w) quaternion)."""
        with self.pose_lock:
            self.vehicle_position = np.asarray(position, dtype=float).reshape(3).copy()
            self.vehicle_orientation = np.asarray(orientation, dtype=float).reshape(4).copy()

    def _camera_pose_from_vehicle(self, timestamp: float) -> Optional[np.ndarray]:
        with self.pose_lock:
            if self.vehicle_position is None:
                return None
            return self.transforms.camera_pose_from_vehicle(
                self.vehicle_position, self.vehicle_orientation
            )

    def set_goal(
        self,
        goal: Sequence[float],
        waypoints: Optional[List[Sequence[float]]] = None,
        now: Optional[float] = None,
    ) -> bool:
        """
        Replan from the current vehicle position to a new goal.

        The previous trajectory is discarded in every case, so an invalid
        goal leaves the manager without a trajectory.

        Returns:
            True if a new trajectory is active
        """
        now = time.time() if now is None else now

        with self.pose_lock:
            start = None if self.vehicle_position is None else self.vehicle_position.copy()
            start_yaw = yaw_from_quaternion(self.vehicle_orientation)

        with self.trajectory_lock:
            self.polynomial = None
            self.optimizer = None
            self.goal = None

            if start is None:
                self.logger.warning("Goal ignored: vehicle position unknown")
                self._count("goals_rejected")
                return False

            try:
                points = [start] + list(waypoints or []) + [goal]
                polynomial = self.generator.compute_trajectory(points)
                spline = UniformBSpline3D.from_polynomial(
                    polynomial, self.spline_dt, order=self.spline_order, t0=now
                )
                optimizer = BSplineOptimizer(
                    spline, self.limits, self.buffer, self.optimizer_config
                )
            except InvalidConfigurationError as e:
                self.logger.error(f"Goal rejected: {e}")
                self._count("goals_rejected")
                return False

            self.polynomial = polynomial
            self.optimizer = optimizer
            self.goal = np.asarray(polynomial.waypoints[-1]).copy()
            self._last_yaw = start_yaw
            self._count("goals_accepted")

        self.logger.info(
            f"New goal {np.round(self.goal, 3).tolist()}: {polynomial.duration:.2f}s, "
            f"{spline.num_control_points} control points"
        )
        return True

    @log_exceptions("integration")
    def process_depth_frame(self, frame: DepthFrame) -> bool:
        """
        Insert one depth frame into the ring buffer.

        A frame whose camera pose cannot be resolved, or whose image is
        malformed, is dropped without touching the buffer.

        Returns:
            True if the frame was inserted
        """
        try:
            cloud = self.projector.project_frame(frame, self.pose_lookup)
        except (TransformLookupError, ValueError) as e:
            self.logger.warning(f"Dropping depth frame: {e}")
            self._count("frames_dropped")
            return False

        with self.buffer.lock:
            shifts = self.buffer.recenter(cloud.origin)
            insertion = self.buffer.insert_point_cloud(cloud.points, cloud.origin)

        with self.stats_lock:
            self.statistics["frames_processed"] += 1
            self.statistics["points_inserted"] += insertion.num_inserted
            self.statistics["volume_shifts"] += shifts

        self.logger.debug(
            f"Frame {frame.timestamp:.3f}: {insertion.num_inserted} points, {shifts} shifts"
        )

        if self.optimize_on_depth:
            self.optimize()

        return True

    # Trajectory

    @log_exceptions("integration")
    def optimize(self, now: Optional[float] = None) -> Optional[OptimizationResult]:
        """One optimization cycle of the active window; None without a trajectory."""
        with self.trajectory_lock:
            if self.optimizer is None:
                return None

            if now is not None:
                self.optimizer.advance(now)
            result = self.optimizer.optimize()

        self._count("optimizations")
        return result

    def tick(self, now: Optional[float] = None) -> Optional[Setpoint]:
        """Sample the trajectory at now + lookahead and freeze what has been emitted."""
        now = time.time() if now is None else now
        t = now + self.lookahead_time

        with self.trajectory_lock:
            if self.optimizer is None:
                return None

            self.optimizer.advance(t)
            with self.optimizer.lock:
                spline = self.optimizer.spline
                position = spline.evaluate(t)
                velocity = spline.evaluate(t, 1)
                acceleration = spline.evaluate(t, 2)
                trajectory_time = min(max(t - spline.t0, 0.0), spline.duration)

            yaw, orientation = self._orientation_for(velocity)

        self._count("setpoints")

        return Setpoint(
            position=position,
            velocity=velocity,
            acceleration=acceleration,
            orientation=orientation,
            yaw=yaw,
            timestamp=now,
            trajectory_time=trajectory_time,
        )

    def _orientation_for(self, velocity: np.ndarray):
        if self.yaw_mode == "velocity":
            if np.linalg.norm(velocity[:2]) > self.min_yaw_speed:
                self._last_yaw = float(np.arctan2(velocity[1], velocity[0]))
            return self._last_yaw, quaternion_from_yaw(self._last_yaw)

        with self.pose_lock:
            orientation = self.vehicle_orientation.copy()
        return yaw_from_quaternion(orientation), orientation

    def has_trajectory(self) -> bool:

        with self.trajectory_lock:
            return self.optimizer is not None

    def get_spline(self) -> Optional[UniformBSpline3D]:
        """Consistent copy of the current spline for inspection or plotting."""
        with self.trajectory_lock:
            return self.optimizer.snapshot() if self.optimizer is not None else None

    def _count(self, key: str, amount: int = 1):
        with self.stats_lock:
            self.statistics[key] += amount

    def get_statistics(self) -> Dict[str, Any]:

        with self.stats_lock:
            stats = dict(self.statistics)
        stats["buffer"] = self.buffer.get_info()

        with self.trajectory_lock:
            stats["has_trajectory"] = self.optimizer is not None
            if self.optimizer is not None:
                stats["optimizer"] = self.optimizer.get_statistics()
                stats["trajectory_duration"] = self.polynomial.duration

        return stats

    def reset(self):
        """Drop the trajectory, the goal and all mapped space."""
        with self.trajectory_lock:
            self.polynomial = None
            self.optimizer = None
            self.goal = None

        self.buffer.reset()
        with self.stats_lock:
            for key in self.statistics:
                self.statistics[key] = 0

        self.logger.info("Replan Manager reset")
