"""
Two-view reconstruction

1. Essential matrix from the seed pair (RANSAC)
2. Relative pose by cheirality voting
3. Triangulation of the pose inliers
4. Per-point validation (depth and reprojection error)
"""
import logging
import numpy as np
from collections import Counter
from typing import Callable, List, Optional, Sequence, Tuple

from .backend import FeatureBackend
from .camera import CameraIntrinsics, CameraPose
from .errors import (
    DegenerateTriangulation,
    EssentialMatrixEstimationFailure,
    PoseRecoveryInlierShortfall,
    ReconstructionError,
)
from .geometry import (
    compute_reprojection_error,
    dehomogenize,
    passes_cheirality,
    two_view_reprojection_error,
)
from .types import Correspondence, ImageFeatureSet, PipelineStage, Point3D, ReconstructionResult


logger = logging.getLogger(__name__)


StageCallback = Callable[[PipelineStage], None]


def _validate_essential(E: Optional[np.ndarray]) -> np.ndarray:
    """First 3x3 block of a usable essential matrix"""
    if E is None:
        raise EssentialMatrixEstimationFailure("essential matrix estimation returned nothing")

    E = np.asarray(E, dtype=np.float64)
    if E.ndim != 2 or E.shape[0] < 3 or E.shape[1] != 3:
        raise EssentialMatrixEstimationFailure(f"essential matrix has shape {E.shape}")

    E = E[:3]

    if not np.all(np.isfinite(E)):
        raise EssentialMatrixEstimationFailure("essential matrix is not finite")

    if np.allclose(E, 0.0):
        raise EssentialMatrixEstimationFailure("essential matrix is zero")

    return E


class TwoViewReconstructor:
    """
    Sparse reconstruction from one image pair

    Camera 1 sits at the origin with identity rotation; camera 2 carries the
    recovered relative pose. Translation is known up to scale only.
    """

    def __init__(self, backend: FeatureBackend,
                 ransac_confidence: float = 0.999,
                 ransac_threshold: float = 1.0,
                 ransac_max_iterations: int = 2000,
                 min_inliers: int = 50,
                 max_reprojection_error: float = 2.0,
                 random_seed: Optional[int] = 0):
        self.backend = backend
        self.ransac_confidence = ransac_confidence
        self.ransac_threshold = ransac_threshold
        self.ransac_max_iterations = ransac_max_iterations
        self.min_inliers = min_inliers
        self.max_reprojection_error = max_reprojection_error
        self.random_seed = random_seed

    def estimate_pose(self, points1: np.ndarray, points2: np.ndarray,
                      K: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Relative pose of camera 2

        Returns:
            R (3x3), t (3,), boolean inlier mask (N,)

        Raises:
            EssentialMatrixEstimationFailure
            PoseRecoveryInlierShortfall
        """
        E, mask = self.backend.find_essential_matrix(
            points1, points2, K,
            prob=self.ransac_confidence,
            threshold=self.ransac_threshold,
            max_iterations=self.ransac_max_iterations,
            seed=self.random_seed
        )
        E = _validate_essential(E)

        ransac_inliers = int(np.count_nonzero(mask)) if mask is not None else len(points1)
        logger.debug("Essential matrix: %d/%d RANSAC inliers", ransac_inliers, len(points1))

        R, t, pose_mask = self.backend.recover_pose(E, points1, points2, K, mask)

        inliers = np.asarray(pose_mask).ravel() > 0
        n_inliers = int(np.count_nonzero(inliers))

        if n_inliers < self.min_inliers:
            raise PoseRecoveryInlierShortfall(n_inliers, self.min_inliers)

        return np.asarray(R, dtype=np.float64), np.asarray(t, dtype=np.float64).ravel(), inliers

    def triangulate(self, pose1: CameraPose, pose2: CameraPose,
                    points1: np.ndarray, points2: np.ndarray,
                    colors: np.ndarray) -> Tuple[List[Point3D], Counter, np.ndarray]:
        """
        Triangulate and validate point pairs

        Returns:
            accepted points, rejection counts per reason, and the input
            indices of the accepted points
        """
        points_h = self.backend.triangulate(
            pose1.projection_matrix(), pose2.projection_matrix(), points1, points2
        )

        accepted: List[Point3D] = []
        kept = []
        dropped: Counter = Counter()

        for i in range(points_h.shape[1]):
            try:
                X = dehomogenize(points_h[:, i])
            except DegenerateTriangulation:
                dropped['degenerate'] += 1
                continue

            if not np.all(np.isfinite(X)):
                dropped['degenerate'] += 1
                continue

            # Cheirality check
            if not passes_cheirality(pose1, pose2, X):
                dropped['behind_camera'] += 1
                continue

            err1, err2 = two_view_reprojection_error(pose1, pose2, X, points1[i], points2[i])
            error = 0.5 * (err1 + err2)

            if not error < self.max_reprojection_error:
                dropped['reprojection'] += 1
                continue

            accepted.append(Point3D(
                position=X,
                color=np.asarray(colors[i], dtype=np.uint8),
                confidence=float(np.clip(1.0 - error / self.max_reprojection_error, 0.0, 1.0)),
                reprojection_error=error
            ))
            kept.append(i)

        return accepted, dropped, np.array(kept, dtype=int)

    def reconstruct(self, features1: ImageFeatureSet,
                    features2: ImageFeatureSet,
                    matches: Sequence[Correspondence],
                    intrinsics: CameraIntrinsics,
                    on_stage: Optional[StageCallback] = None) -> ReconstructionResult:
        """
        Reconstruct the scene seen by one image pair

        Args:
            features1, features2: feature sets of the pair
            matches: correspondences oriented from features1 to features2
            intrinsics: shared camera intrinsics
            on_stage: called when pose estimation and triangulation start

        Returns:
            ReconstructionResult; stage errors become failure results
        """
        pair = (features1.image_index, features2.image_index)

        try:
            return self._reconstruct(features1, features2, matches, intrinsics, on_stage)
        except ReconstructionError as e:
            logger.warning("Two-view reconstruction of pair %d-%d failed: %s", pair[0], pair[1], e)
            return ReconstructionResult.failure(str(e), type(e).__name__, pair)

    def _reconstruct(self, features1, features2, matches, intrinsics, on_stage):
        if on_stage is not None:
            on_stage(PipelineStage.POSE_ESTIMATING)

        idx1 = np.array([m.idx1 for m in matches], dtype=int)
        idx2 = np.array([m.idx2 for m in matches], dtype=int)

        points1 = features1.points[idx1].reshape(-1, 2)
        points2 = features2.points[idx2].reshape(-1, 2)

        R, t, inliers = self.estimate_pose(points1, points2, intrinsics.matrix)
        n_inliers = int(inliers.sum())

        pose1 = CameraPose.identity(intrinsics)
        pose2 = CameraPose(R=R, t=t, intrinsics=intrinsics)

        logger.info("Recovered relative pose with %d inliers, camera 2 at %s",
                    n_inliers, np.round(pose2.position, 3))

        if on_stage is not None:
            on_stage(PipelineStage.TRIANGULATING)

        observed1, observed2 = points1[inliers], points2[inliers]
        points, dropped, kept = self.triangulate(
            pose1, pose2, observed1, observed2, features1.colors[idx1[inliers]]
        )

        # A camera with no surviving point carries no usable pose
        positions = np.array([p.position for p in points]).reshape(-1, 3)
        for pose, observed in ((pose1, observed1), (pose2, observed2)):
            pose.valid = len(points) > 0
            if pose.valid:
                errors = compute_reprojection_error(pose, positions, observed[kept])
                pose.reprojection_error = float(errors.mean())

        logger.info("Triangulated %d/%d inliers (dropped: %s)",
                    len(points), n_inliers, dict(dropped) or "none")

        return ReconstructionResult(
            success=True,
            points=points,
            cameras=[pose1, pose2],
            image_pair=(features1.image_index, features2.image_index),
            num_inliers=n_inliers,
            dropped=dict(dropped)
        )
