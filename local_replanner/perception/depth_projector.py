"""
Depth Projector
Back-projects depth images into world-frame point clouds for map insertion.
"""

import numpy as np
import logging
import time
from typing import Dict, Optional, Any, Callable
from dataclasses import dataclass, field

from local_replanner.errors import TransformLookupError
from local_replanner.perception.coordinate_transforms import transform_points

# Returns the 4x4 world-from-camera transform at the given timestamp.
PoseLookup = Callable[[float], Optional[np.ndarray]]


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole intrinsics of the depth camera (pixels)."""

    fx: float = 457.815979003906
    fy: float = 457.815979003906
    cx: float = 249.322647094727
    cy: float = 179.5

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "CameraIntrinsics":
        defaults = cls()
        return cls(
            fx=float(config.get("fx", defaults.fx)),
            fy=float(config.get("fy", defaults.fy)),
            cx=float(config.get("cx", defaults.cx)),
            cy=float(config.get("cy", defaults.cy)),
        )


@dataclass
class DepthFrame:

    depth: np.ndarray
    timestamp: float = field(default_factory=time.time)


@dataclass
class ProjectedCloud:
    """World-frame points of one depth frame plus the camera centre."""

    points: np.ndarray
    origin: np.ndarray
    num_sampled: int = 0
    num_rejected: int = 0

    def __len__(self) -> int:
        return len(self.points)


class DepthProjector:
    """
    Converts depth images into world-frame point clouds.

    Only every `stride`-th row and column is used. Non-positive, non-finite
    and (optionally) too-distant samples are skipped.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.intrinsics = CameraIntrinsics.from_config(config)
        self.depth_scale = float(config.get("depth_scale", 1.0 / 5000.0))
        self.stride = int(config.get("stride", 4))
        self.max_depth = config.get("max_depth")

        if self.stride < 1:
            raise ValueError(f"stride must be >= 1, got {self.stride}")
        if self.depth_scale <= 0:
            raise ValueError(f"depth_scale must be positive, got {self.depth_scale}")

        self._pixel_cache: Dict[tuple, tuple] = {}

        self.logger.info("Depth Projector initialized")
        self.logger.info(
            f"Intrinsics fx={self.intrinsics.fx:.2f}, fy={self.intrinsics.fy:.2f}, "
            f"cx={self.intrinsics.cx:.2f}, cy={self.intrinsics.cy:.2f}; stride {self.stride}"
        )

    def _pixel_grid(self, height: int, width: int):
        """Strided pixel coordinates and their normalized rays, cached per image size."""
        key = (height, width)
        if key not in self._pixel_cache:
            us = np.arange(0, width, self.stride)
            vs = np.arange(0, height, self.stride)
            uu, vv = np.meshgrid(us, vs)
            ray_x = (uu - self.intrinsics.cx) / self.intrinsics.fx
            ray_y = (vv - self.intrinsics.cy) / self.intrinsics.fy
            self._pixel_cache[key] = (vv, uu, ray_x, ray_y)
        return self._pixel_cache[key]

    def project(self, depth_image: np.ndarray, T_world_camera: np.ndarray) -> ProjectedCloud:
        """
        Back-project a depth image into the world frame.

        Args:
            depth_image: (H, W) raw depth samples, metres = raw * depth_scale
            T_world_camera: 4x4 camera pose in the world frame

        Returns:
            Projected cloud with world points and the camera origin
        """
        depth_image = np.asarray(depth_image)
        if depth_image.ndim != 2:
            raise ValueError(f"Depth image must be 2D, got shape {depth_image.shape}")

        T_world_camera = np.asarray(T_world_camera, dtype=float)
        origin = T_world_camera[:3, 3].copy()

        height, width = depth_image.shape
        vv, uu, ray_x, ray_y = self._pixel_grid(height, width)

        depth = depth_image[vv, uu].astype(np.float64) * self.depth_scale

        valid = np.isfinite(depth) & (depth > 0)
        if self.max_depth is not None:
            valid &= depth <= float(self.max_depth)

        d = depth[valid]
        camera_points = np.stack([d * ray_x[valid], d * ray_y[valid], d], axis=1)
        world_points = transform_points(T_world_camera, camera_points)

        num_sampled = int(depth.size)
        num_rejected = num_sampled - int(valid.sum())
        if num_rejected:
            self.logger.debug(f"Skipped {num_rejected}/{num_sampled} invalid depth samples")

        return ProjectedCloud(
            points=world_points,
            origin=origin,
            num_sampled=num_sampled,
            num_rejected=num_rejected,
        )

    def project_frame(self, frame: DepthFrame, pose_lookup: PoseLookup) -> ProjectedCloud:
        """
        Resolve the camera pose at the frame timestamp and project the frame.

        Raises:
            TransformLookupError: pose at the frame timestamp is unavailable
        """
        T_world_camera = pose_lookup(frame.timestamp)
        if T_world_camera is None:
            raise TransformLookupError(f"No camera pose for timestamp {frame.timestamp:.3f}")

        return self.project(frame.depth, T_world_camera)
