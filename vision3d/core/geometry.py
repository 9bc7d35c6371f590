"""
Geometric primitives for 3D reconstruction

Contains:
- Triangulation (DLT method)
- Homogeneous to Euclidean conversion
- Cheirality and reprojection checks
"""
import numpy as np
from typing import Tuple

from .camera import CameraPose
from .errors import DegenerateTriangulation


# Smallest homogeneous weight (of a unit-norm 4-vector) treated as finite
HOMOGENEOUS_EPS = 1e-9


def triangulate_dlt(P1: np.ndarray, P2: np.ndarray,
                    points1: np.ndarray, points2: np.ndarray) -> np.ndarray:
    """
    Linear triangulation of point pairs from two projection matrices

    Each correspondence gives A X = 0 with
        A = [x1 * P1[2] - P1[0],
             y1 * P1[2] - P1[1],
             x2 * P2[2] - P2[0],
             y2 * P2[2] - P2[1]]
    solved by SVD (right singular vector of the smallest singular value).

    Args:
        P1, P2: 3x4 projection matrices
        points1, points2: Nx2 pixel coordinates

    Returns:
        4xN homogeneous points
    """
    points1 = np.asarray(points1, dtype=np.float64).reshape(-1, 2)
    points2 = np.asarray(points2, dtype=np.float64).reshape(-1, 2)

    if len(points1) == 0:
        return np.zeros((4, 0))

    x1, y1 = points1[:, 0:1], points1[:, 1:2]
    x2, y2 = points2[:, 0:1], points2[:, 1:2]

    A = np.stack([
        x1 * P1[2] - P1[0],
        y1 * P1[2] - P1[1],
        x2 * P2[2] - P2[0],
        y2 * P2[2] - P2[1],
    ], axis=1)                                  # (N, 4, 4)

    _, _, Vt = np.linalg.svd(A)
    X = Vt[:, -1, :]                            # (N, 4)

    return X.T


def dehomogenize(point_h: np.ndarray, eps: float = HOMOGENEOUS_EPS) -> np.ndarray:
    """
    Convert one homogeneous 4-vector to a 3D point

    Raises:
        DegenerateTriangulation: the weight is numerically zero
            (point at or near infinity)
    """
    point_h = np.asarray(point_h, dtype=np.float64).ravel()
    norm = np.linalg.norm(point_h)

    if not np.isfinite(norm) or norm == 0:
        raise DegenerateTriangulation("homogeneous point is zero or not finite")

    point_h = point_h / norm
    w = point_h[3]

    if abs(w) < eps:
        raise DegenerateTriangulation(f"homogeneous weight {w:.3g} is degenerate")

    return point_h[:3] / w


def point_depths(pose1: CameraPose, pose2: CameraPose,
                 point: np.ndarray) -> Tuple[float, float]:
    """Depth of a world point in both camera frames"""
    z1 = pose1.depth_of(point.reshape(1, 3))[0]
    z2 = pose2.depth_of(point.reshape(1, 3))[0]
    return float(z1), float(z2)


def passes_cheirality(pose1: CameraPose, pose2: CameraPose,
                      point: np.ndarray) -> bool:
    """Point lies in front of both cameras"""
    z1, z2 = point_depths(pose1, pose2, point)
    return z1 > 0 and z2 > 0


def two_view_reprojection_error(pose1: CameraPose,
                                pose2: CameraPose,
                                point: np.ndarray,
                                observed1: np.ndarray,
                                observed2: np.ndarray) -> Tuple[float, float]:
    """
    Pixel distance between each observation and the point's reprojection

    Returns:
        (error in image 1, error in image 2)
    """
    proj1 = pose1.project(point.reshape(1, 3))[0]
    proj2 = pose2.project(point.reshape(1, 3))[0]

    err1 = float(np.linalg.norm(proj1 - observed1))
    err2 = float(np.linalg.norm(proj2 - observed2))

    return err1, err2


def compute_reprojection_error(pose: CameraPose,
                               points_3d: np.ndarray,
                               points_2d: np.ndarray) -> np.ndarray:
    """
    Compute reprojection error for points

    Returns:
        Per-point reprojection errors (in pixels)
    """
    points_proj = pose.project(points_3d)
    return np.linalg.norm(points_proj - points_2d, axis=1)
