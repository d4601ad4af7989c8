from local_replanner.perception.depth_projector import (
    CameraIntrinsics,
    DepthFrame,
    DepthProjector,
    ProjectedCloud,
)
from local_replanner.perception.coordinate_transforms import (
    CoordinateTransforms,
    pose_to_matrix,
    quaternion_from_yaw,
    yaw_from_quaternion,
)

__all__ = [
    "CameraIntrinsics",
    "DepthFrame",
    "DepthProjector",
    "ProjectedCloud",
    "CoordinateTransforms",
    "pose_to_matrix",
    "quaternion_from_yaw",
    "yaw_from_quaternion",
]
