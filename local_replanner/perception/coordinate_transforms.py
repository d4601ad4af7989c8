import numpy as np
from typing import Tuple, Dict, Optional, Any, Sequence
from scipy.spatial.transform import Rotation as R
import logging

# Quaternions are (x, y, z, w), the scipy convention.
IDENTITY_QUATERNION = (0.0, 0.0, 0.0, 1.0)


def build_transform_matrix(rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:

    T = np.eye(4)
    T[:3, :3] = rotation
    T[:3, 3] = translation
    return T


def pose_to_matrix(
    position: Sequence[float], orientation: Sequence[float] = IDENTITY_QUATERNION
) -> np.ndarray:
    """Homogeneous 4x4 transform from a position and an (x, y, z, w) quaternion."""
    rotation = R.from_quat(np.asarray(orientation, dtype=float))
    return build_transform_matrix(rotation.as_matrix(), np.asarray(position, dtype=float))


def matrix_to_pose(T: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:

    T = np.asarray(T, dtype=float)
    return T[:3, 3].copy(), R.from_matrix(T[:3, :3]).as_quat()


def transform_points(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply a 4x4 transform to an (N, 3) array of points."""
    points = np.asarray(points, dtype=float).reshape(-1, 3)
    return points @ T[:3, :3].T + T[:3, 3]


def yaw_from_quaternion(quat: Sequence[float]) -> float:

    return float(R.from_quat(np.asarray(quat, dtype=float)).as_euler("xyz")[2])


def quaternion_from_yaw(yaw: float) -> np.ndarray:

    return R.from_euler("z", yaw).as_quat()


class CoordinateTransforms:
    """
    Fixed body-to-camera extrinsics.
    Turns a vehicle pose into the camera pose used for depth projection.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.logger = logging.getLogger(__name__)

        self.camera_to_body_translation = np.array(
            config.get("camera_offset", [0.0, 0.0, 0.0]), dtype=float
        )
        # Optical frame (z forward, x right, y down) expressed in the body frame
        self.camera_to_body_rotation = R.from_euler(
            "xyz", config.get("camera_rotation", [0.0, 0.0, 0.0])
        )

        self.T_body_camera = build_transform_matrix(
            self.camera_to_body_rotation.as_matrix(), self.camera_to_body_translation
        )
        self.T_camera_body = np.linalg.inv(self.T_body_camera)

        self.logger.info("Coordinate transforms initialized")
        self.logger.info(f"Camera offset: {self.camera_to_body_translation}")

    def camera_to_world(self, T_world_body: np.ndarray) -> np.ndarray:

        return np.asarray(T_world_body, dtype=float) @ self.T_body_camera

    def camera_pose_from_vehicle(
        self, position: Sequence[float], orientation: Sequence[float]
    ) -> np.ndarray:

        return self.camera_to_world(pose_to_matrix(position, orientation))

    def camera_to_body(self, camera_pos: np.ndarray) -> np.ndarray:

        return transform_points(self.T_body_camera, camera_pos)[0]

    def body_to_camera(self, body_pos: np.ndarray) -> np.ndarray:

        return transform_points(self.T_camera_body, body_pos)[0]
