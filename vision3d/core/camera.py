"""
Camera model and intrinsics estimation
"""
import numpy as np
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class CameraIntrinsics:
    """
    Pinhole intrinsics, no distortion

    K - intrinsic matrix (3x3):
        [fx  0  cx]
        [0  fy  cy]
        [0   0   1]
    """
    fx: float
    fy: float
    cx: float
    cy: float

    @property
    def matrix(self) -> np.ndarray:
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0]
        ], dtype=np.float64)

    @property
    def K(self) -> np.ndarray:
        return self.matrix

    def project(self, points_cam: np.ndarray) -> np.ndarray:
        """
        Project 3D points to 2D image coordinates

        Args:
            points_cam: Nx3 array of 3D points in camera frame

        Returns:
            Nx2 array of 2D pixel coordinates
        """
        points_cam = np.atleast_2d(points_cam)

        # Perspective division
        points_2d = points_cam[:, :2] / points_cam[:, 2:3]

        u = self.fx * points_2d[:, 0] + self.cx
        v = self.fy * points_2d[:, 1] + self.cy

        return np.column_stack([u, v])


def estimate_intrinsics(width: int, height: int,
                        focal_factor: float = 1.2) -> CameraIntrinsics:
    """
    Approximate calibration from image dimensions

    No EXIF focal length is assumed; the focal length is taken as a fixed
    multiple of the image width and the principal point as the image centre.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image size: {width}x{height}")

    focal = focal_factor * width
    return CameraIntrinsics(fx=focal, fy=focal, cx=width / 2.0, cy=height / 2.0)


@dataclass
class CameraPose:
    """
    Camera pose in world coordinates

    R - rotation matrix (3x3): world to camera
    t - translation vector (3,): world to camera

    Transform: X_camera = R @ X_world + t
    """
    R: np.ndarray
    t: np.ndarray
    intrinsics: Optional[CameraIntrinsics] = None
    valid: bool = True
    reprojection_error: float = 0.0

    def __post_init__(self):
        self.R = np.asarray(self.R, dtype=np.float64).reshape(3, 3)
        self.t = np.asarray(self.t, dtype=np.float64).ravel()

    @property
    def center(self) -> np.ndarray:
        """Camera center in world coordinates: C = -R^T @ t"""
        return -self.R.T @ self.t

    @property
    def position(self) -> np.ndarray:
        return self.center

    @property
    def extrinsic_matrix(self) -> np.ndarray:
        """3x4 matrix [R|t]"""
        return np.hstack([self.R, self.t.reshape(3, 1)])

    def projection_matrix(self) -> np.ndarray:
        """3x4 projection matrix P = K @ [R|t]"""
        if self.intrinsics is None:
            raise ValueError("Projection matrix needs intrinsics")
        return self.intrinsics.matrix @ self.extrinsic_matrix

    def transform_points(self, points_world: np.ndarray) -> np.ndarray:
        """Transform points from world to camera frame"""
        points_world = np.atleast_2d(points_world)
        return (self.R @ points_world.T).T + self.t

    def depth_of(self, points_world: np.ndarray) -> np.ndarray:
        """Z coordinate of points in this camera's frame"""
        return self.transform_points(points_world)[:, 2]

    def project(self, points_world: np.ndarray) -> np.ndarray:
        """Project world points to pixels"""
        if self.intrinsics is None:
            raise ValueError("Projection needs intrinsics")
        return self.intrinsics.project(self.transform_points(points_world))

    @staticmethod
    def identity(intrinsics: Optional[CameraIntrinsics] = None) -> 'CameraPose':
        """Create identity pose (camera at origin)"""
        return CameraPose(R=np.eye(3), t=np.zeros(3), intrinsics=intrinsics)
