"""
From-scratch feature detection and two-view estimation

NumPy/SciPy implementation used by the heuristic backend when OpenCV's
feature modules are not wanted:
- Multi-octave Harris corners with intensity-centroid orientation
- Rotated, mean-normalised patch descriptors (64-dim float)
- Normalised 8-point essential matrix inside RANSAC (Sampson error)
- Homography RANSAC and decomposition for planar scenes
- Essential matrix decomposition with cheirality voting
"""
import logging
import numpy as np
from scipy import ndimage
from typing import List, Optional, Tuple

from .geometry import triangulate_dlt


logger = logging.getLogger(__name__)


HARRIS_K = 0.04
HARRIS_SIGMA = 1.5
HARRIS_RELATIVE_THRESHOLD = 0.01
NMS_SIZE = 7
ORIENTATION_RADIUS = 8
DESCRIPTOR_GRID = 8
DESCRIPTOR_SPACING = 1.5
BORDER = ORIENTATION_RADIUS + 2
MIN_OCTAVE_SIZE = 4 * BORDER

# Homography inliers, relative to essential matrix inliers, that mark a planar scene
PLANAR_INLIER_RATIO = 0.8


def harris_response(image: np.ndarray) -> np.ndarray:
    """Harris corner response R = det(M) - k * trace(M)^2"""
    ix = ndimage.sobel(image, axis=1)
    iy = ndimage.sobel(image, axis=0)

    sxx = ndimage.gaussian_filter(ix * ix, HARRIS_SIGMA)
    syy = ndimage.gaussian_filter(iy * iy, HARRIS_SIGMA)
    sxy = ndimage.gaussian_filter(ix * iy, HARRIS_SIGMA)

    det = sxx * syy - sxy * sxy
    trace = sxx + syy

    return det - HARRIS_K * trace * trace


def _circle_offsets(radius: int) -> Tuple[np.ndarray, np.ndarray]:
    dy, dx = np.mgrid[-radius:radius + 1, -radius:radius + 1]
    inside = dx * dx + dy * dy <= radius * radius
    return dx[inside], dy[inside]


def keypoint_orientations(image: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    """
    Intensity-centroid orientation in radians

    The angle points from the keypoint towards the centroid of the
    mean-subtracted patch intensities.
    """
    dx, dy = _circle_offsets(ORIENTATION_RADIUS)

    patches = image[ys[:, None] + dy[None, :], xs[:, None] + dx[None, :]]
    patches = patches - patches.mean(axis=1, keepdims=True)

    m10 = np.sum(patches * dx[None, :], axis=1)
    m01 = np.sum(patches * dy[None, :], axis=1)

    return np.arctan2(m01, m10)


def describe_patches(image: np.ndarray, xs: np.ndarray, ys: np.ndarray,
                     angles: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Sample an oriented grid around each keypoint

    Returns:
        descriptors: (N, 64) float32, zero mean and unit norm
        valid: (N,) bool, False for flat patches
    """
    half = (DESCRIPTOR_GRID - 1) / 2.0
    grid = (np.arange(DESCRIPTOR_GRID) - half) * DESCRIPTOR_SPACING
    gv, gu = np.meshgrid(grid, grid, indexing='ij')
    gu = gu.ravel()
    gv = gv.ravel()

    cos_a = np.cos(angles)[:, None]
    sin_a = np.sin(angles)[:, None]

    sample_x = xs[:, None] + cos_a * gu[None, :] - sin_a * gv[None, :]
    sample_y = ys[:, None] + sin_a * gu[None, :] + cos_a * gv[None, :]

    values = ndimage.map_coordinates(
        image, [sample_y.ravel(), sample_x.ravel()], order=1, mode='nearest'
    ).reshape(len(xs), -1)

    values = values - values.mean(axis=1, keepdims=True)
    norms = np.linalg.norm(values, axis=1)
    valid = norms > 1e-6

    descriptors = np.zeros_like(values, dtype=np.float32)
    descriptors[valid] = values[valid] / norms[valid, None]

    return descriptors, valid


def detect_features(gray: np.ndarray,
                    mask: Optional[np.ndarray] = None,
                    max_features: int = 1000,
                    n_octaves: int = 4) -> Tuple[np.ndarray, np.ndarray, np.ndarray,
                                                 np.ndarray, np.ndarray]:
    """
    Detect and describe multi-octave Harris corners

    Args:
        gray: HxW uint8 or float image
        mask: optional HxW mask, nonzero where detection is allowed
        max_features: keep at most this many strongest corners

    Returns:
        points: (N, 2) pixel coordinates in the input image
        responses: (N,) Harris responses
        angles: (N,) orientations in degrees [0, 360)
        octaves: (N,) octave index
        descriptors: (N, 64) float32
    """
    image = gray.astype(np.float32)
    if gray.dtype == np.uint8:
        image /= 255.0

    allowed = mask > 0 if mask is not None else None

    all_points: List[np.ndarray] = []
    all_responses: List[np.ndarray] = []
    all_angles: List[np.ndarray] = []
    all_octaves: List[np.ndarray] = []
    all_descriptors: List[np.ndarray] = []

    for octave in range(n_octaves):
        h, w = image.shape
        if min(h, w) < MIN_OCTAVE_SIZE:
            break

        response = harris_response(image)
        peak = response.max()

        if peak > 0:
            is_peak = ndimage.maximum_filter(response, size=NMS_SIZE) == response
            is_peak &= response > HARRIS_RELATIVE_THRESHOLD * peak
            is_peak[:BORDER, :] = False
            is_peak[-BORDER:, :] = False
            is_peak[:, :BORDER] = False
            is_peak[:, -BORDER:] = False

            if allowed is not None:
                is_peak &= allowed

            ys, xs = np.nonzero(is_peak)

            if len(xs) > 0:
                angles = keypoint_orientations(image, xs, ys)
                smoothed = ndimage.gaussian_filter(image, 1.0)
                descriptors, valid = describe_patches(smoothed, xs, ys, angles)

                scale = float(2 ** octave)
                all_points.append(np.column_stack([xs[valid], ys[valid]]) * scale)
                all_responses.append(response[ys[valid], xs[valid]])
                all_angles.append(np.degrees(angles[valid]) % 360.0)
                all_octaves.append(np.full(int(valid.sum()), octave))
                all_descriptors.append(descriptors[valid])

        # Next octave: blur then decimate
        image = ndimage.gaussian_filter(image, 1.0)[::2, ::2]
        if allowed is not None:
            allowed = allowed[::2, ::2]

    if not all_points:
        return (np.zeros((0, 2)), np.zeros(0), np.zeros(0),
                np.zeros(0, dtype=int), np.zeros((0, DESCRIPTOR_GRID ** 2), dtype=np.float32))

    points = np.vstack(all_points).astype(np.float64)
    responses = np.concatenate(all_responses)
    angles = np.concatenate(all_angles)
    octaves = np.concatenate(all_octaves)
    descriptors = np.vstack(all_descriptors)

    # Strongest first; stable sort keeps detection order among ties
    order = np.argsort(-responses, kind='stable')[:max_features]

    return points[order], responses[order], angles[order], octaves[order], descriptors[order]


def _normalize_points(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Hartley normalisation: zero centroid, mean distance sqrt(2)"""
    centroid = points.mean(axis=0)
    centered = points - centroid
    mean_dist = np.mean(np.linalg.norm(centered, axis=1))
    scale = np.sqrt(2) / mean_dist if mean_dist > 0 else 1.0

    T = np.array([
        [scale, 0, -scale * centroid[0]],
        [0, scale, -scale * centroid[1]],
        [0, 0, 1]
    ])

    return centered * scale, T


def project_to_essential(E: np.ndarray) -> np.ndarray:
    """Closest matrix with two equal singular values and one zero"""
    U, S, Vt = np.linalg.svd(E)
    s = (S[0] + S[1]) / 2.0
    E = U @ np.diag([s, s, 0.0]) @ Vt

    norm = np.linalg.norm(E)
    return E / norm if norm > 0 else E


def eight_point_essential(x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    """
    Essential matrix from >= 8 calibrated correspondences

    Solves x2^T E x1 = 0 in least squares on normalised coordinates.
    """
    n1, T1 = _normalize_points(x1)
    n2, T2 = _normalize_points(x2)

    A = np.column_stack([
        n2[:, 0] * n1[:, 0], n2[:, 0] * n1[:, 1], n2[:, 0],
        n2[:, 1] * n1[:, 0], n2[:, 1] * n1[:, 1], n2[:, 1],
        n1[:, 0], n1[:, 1], np.ones(len(n1))
    ])

    _, _, Vt = np.linalg.svd(A)
    E = Vt[-1].reshape(3, 3)
    E = T2.T @ E @ T1

    return project_to_essential(E)


def sampson_distance(F: np.ndarray, points1: np.ndarray, points2: np.ndarray) -> np.ndarray:
    """Squared Sampson distance of pixel correspondences to F"""
    x1 = np.column_stack([points1, np.ones(len(points1))])
    x2 = np.column_stack([points2, np.ones(len(points2))])

    Fx1 = x1 @ F.T
    Ftx2 = x2 @ F

    numerator = np.sum(x2 * Fx1, axis=1) ** 2
    denominator = Fx1[:, 0] ** 2 + Fx1[:, 1] ** 2 + Ftx2[:, 0] ** 2 + Ftx2[:, 1] ** 2

    return numerator / np.maximum(denominator, 1e-12)


def ransac_iterations(inlier_ratio: float, sample_size: int, prob: float,
                      max_iterations: int) -> int:
    """Samples needed to draw one outlier-free sample with confidence prob"""
    prob = min(max(prob, 0.0), 1.0 - 1e-12)
    outlier_prob = max(1.0 - inlier_ratio ** sample_size, 1e-12)
    if outlier_prob >= 1.0:
        return max_iterations

    needed = np.log(1.0 - prob) / np.log(outlier_prob)
    return min(max_iterations, int(np.ceil(needed)))


def _ransac_eight_point(points1, points2, K_inv, prob, threshold_sq, max_iterations, rng):
    """Best 8-point essential matrix and its boolean inlier mask"""
    n = len(points1)
    x1 = (np.column_stack([points1, np.ones(n)]) @ K_inv.T)[:, :2]
    x2 = (np.column_stack([points2, np.ones(n)]) @ K_inv.T)[:, :2]

    def inliers_of(E):
        F = K_inv.T @ E @ K_inv
        return sampson_distance(F, points1, points2) < threshold_sq

    best_E = None
    best_inliers = None
    best_count = 0

    n_iterations = max_iterations
    iteration = 0

    while iteration < n_iterations:
        iteration += 1
        sample = rng.choice(n, 8, replace=False)

        E = eight_point_essential(x1[sample], x2[sample])
        if not np.all(np.isfinite(E)):
            continue

        inliers = inliers_of(E)
        count = int(inliers.sum())

        if count > best_count:
            best_E, best_inliers, best_count = E, inliers, count
            n_iterations = ransac_iterations(count / n, 8, prob, max_iterations)

    if best_E is None:
        return None, None

    # Refit on the consensus set
    refined = eight_point_essential(x1[best_inliers], x2[best_inliers])
    if np.all(np.isfinite(refined)):
        refined_inliers = inliers_of(refined)
        if refined_inliers.sum() >= best_count:
            best_E, best_inliers = refined, refined_inliers

    return best_E, best_inliers


def dlt_homography(points1: np.ndarray, points2: np.ndarray) -> np.ndarray:
    """
    Homography x2 ~ H x1 from >= 4 correspondences

    Normalised DLT; the result has unit Frobenius norm.
    """
    n1, T1 = _normalize_points(points1)
    n2, T2 = _normalize_points(points2)

    A = np.zeros((2 * len(n1), 9))
    A[0::2, 0:2] = -n1
    A[0::2, 2] = -1.0
    A[0::2, 6:8] = n1 * n2[:, 0:1]
    A[0::2, 8] = n2[:, 0]
    A[1::2, 3:5] = -n1
    A[1::2, 5] = -1.0
    A[1::2, 6:8] = n1 * n2[:, 1:2]
    A[1::2, 8] = n2[:, 1]

    _, _, Vt = np.linalg.svd(A)
    H = np.linalg.inv(T2) @ Vt[-1].reshape(3, 3) @ T1

    return H / np.linalg.norm(H)


def _apply_homography(H: np.ndarray, points: np.ndarray) -> np.ndarray:
    mapped = np.column_stack([points, np.ones(len(points))]) @ H.T
    w = mapped[:, 2:3]
    return mapped[:, :2] / np.where(np.abs(w) > 1e-12, w, 1e-12)


def transfer_error(H: np.ndarray, points1: np.ndarray, points2: np.ndarray) -> np.ndarray:
    """Squared symmetric transfer error of pixel correspondences under H"""
    forward = np.sum((_apply_homography(H, points1) - points2) ** 2, axis=1)
    backward = np.sum((_apply_homography(np.linalg.inv(H), points2) - points1) ** 2, axis=1)
    return forward + backward


def _usable_homography(H: np.ndarray) -> bool:
    return bool(np.all(np.isfinite(H))) and abs(np.linalg.det(H)) > 1e-12


def ransac_homography(points1: np.ndarray, points2: np.ndarray,
                      prob: float = 0.999, threshold: float = 1.0,
                      max_iterations: int = 2000,
                      rng: Optional[np.random.Generator] = None
                      ) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
    """
    RANSAC homography between pixel correspondences

    A correspondence is an inlier when its symmetric transfer error is
    below 2 * threshold^2.

    Returns:
        H: 3x3 homography or None
        inliers: (N,) boolean mask or None
    """
    n = len(points1)
    if n < 4:
        return None, None

    if rng is None:
        rng = np.random.default_rng()

    limit = 2.0 * threshold * threshold

    best_H = None
    best_inliers = None
    best_count = 0

    n_iterations = max_iterations
    iteration = 0

    while iteration < n_iterations:
        iteration += 1
        sample = rng.choice(n, 4, replace=False)

        H = dlt_homography(points1[sample], points2[sample])
        if not _usable_homography(H):
            continue

        inliers = transfer_error(H, points1, points2) < limit
        count = int(inliers.sum())

        if count > best_count:
            best_H, best_inliers, best_count = H, inliers, count
            n_iterations = ransac_iterations(count / n, 4, prob, max_iterations)

    if best_H is None or best_count < 4:
        return None, None

    refined = dlt_homography(points1[best_inliers], points2[best_inliers])
    if _usable_homography(refined):
        refined_inliers = transfer_error(refined, points1, points2) < limit
        if refined_inliers.sum() >= best_count:
            best_H, best_inliers = refined, refined_inliers

    return best_H, best_inliers


def _nearest_rotation(M: np.ndarray) -> np.ndarray:
    U, _, Vt = np.linalg.svd(M)
    R = U @ Vt
    if np.linalg.det(R) < 0:
        R = U @ np.diag([1.0, 1.0, -1.0]) @ Vt
    return R


def decompose_homography(H: np.ndarray) -> List[Tuple[np.ndarray, np.ndarray, np.ndarray]]:
    """
    The four (R, t, n) solutions of a calibrated homography

    H must be scaled to unit second singular value, so that
        H = R + t n^T
    for the plane n^T X = d seen by camera 1 (unit n, t = T / d).
    Returns an empty list for a pure rotation, where t and n are undefined.
    """
    _, S, Vt = np.linalg.svd(H)
    s1, s3 = S[0] ** 2, S[2] ** 2

    if s1 - s3 < 1e-9:
        return []

    v1, v2, v3 = Vt
    a = np.sqrt(max(1.0 - s3, 0.0))
    b = np.sqrt(max(s1 - 1.0, 0.0))
    c = np.sqrt(s1 - s3)

    solutions = []
    for u in ((a * v1 + b * v3) / c, (a * v1 - b * v3) / c):
        # v2 and u keep their length under H; map them onto their images
        U = np.column_stack([v2, u, np.cross(v2, u)])
        Hv2, Hu = H @ v2, H @ u
        W = np.column_stack([Hv2, Hu, np.cross(Hv2, Hu)])

        R = _nearest_rotation(W @ U.T)
        normal = np.cross(v2, u)
        t = (H - R) @ normal

        solutions.append((R, t, normal))
        solutions.append((R, -t, -normal))

    return solutions


def skew(v: np.ndarray) -> np.ndarray:
    """Cross-product matrix [v]x"""
    return np.array([
        [0, -v[2], v[1]],
        [v[2], 0, -v[0]],
        [-v[1], v[0], 0]
    ], dtype=np.float64)


def essential_from_homography(H: np.ndarray, points1: np.ndarray, points2: np.ndarray,
                              K: np.ndarray) -> Optional[np.ndarray]:
    """
    Essential matrix [t]x R of a planar scene

    The homography solutions are filtered by the number of points lying in
    front of camera 1. Two solutions usually remain; the one whose plane
    faces camera 1 most directly is kept.

    Args:
        H: pixel homography x2 ~ H x1
        points1, points2: Nx2 pixel coordinates of homography inliers
        K: 3x3 intrinsics shared by both views

    Returns:
        unit-norm essential matrix, or None for a pure rotation
    """
    K_inv = np.linalg.inv(K)
    H = K_inv @ H @ K

    S = np.linalg.svd(H, compute_uv=False)
    if S[1] <= 1e-12:
        return None
    H = H / S[1]

    n = len(points1)
    x1 = np.column_stack([points1, np.ones(n)]) @ K_inv.T
    x2 = np.column_stack([points2, np.ones(n)]) @ K_inv.T

    # Sign giving positive depth ratios between the views
    if np.sum(x2 * (x1 @ H.T)) < 0:
        H = -H

    best_key = None
    best = None
    for R, t, normal in decompose_homography(H):
        in_front = int(np.count_nonzero(x1 @ normal > 0))
        key = (in_front, normal[2])
        if best_key is None or key > best_key:
            best_key, best = key, (R, t)

    if best is None:
        return None

    R, t = best
    norm = np.linalg.norm(t)
    if norm < 1e-12:
        return None

    E = skew(t / norm) @ R
    return E / np.linalg.norm(E)


def ransac_essential(points1: np.ndarray, points2: np.ndarray, K: np.ndarray,
                     prob: float = 0.999, threshold: float = 1.0,
                     max_iterations: int = 2000,
                     rng: Optional[np.random.Generator] = None
                     ) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
    """
    RANSAC essential matrix estimation

    The 8-point solution is degenerate when all points lie on one plane, so
    a homography is fitted too. When it explains at least PLANAR_INLIER_RATIO
    of the essential matrix inliers, the pose comes from the homography.

    Args:
        points1, points2: Nx2 pixel coordinates
        K: 3x3 intrinsics shared by both views
        prob: desired confidence
        threshold: inlier threshold in pixels (Sampson distance)

    Returns:
        E: 3x3 essential matrix or None
        mask: (N, 1) uint8 inlier mask or None
    """
    n = len(points1)
    if n < 8:
        return None, None

    if rng is None:
        rng = np.random.default_rng()

    K_inv = np.linalg.inv(K)
    threshold_sq = threshold * threshold

    E, inliers = _ransac_eight_point(points1, points2, K_inv, prob, threshold_sq,
                                     max_iterations, rng)
    H, planar = ransac_homography(points1, points2, prob, threshold, max_iterations, rng)

    e_count = 0 if inliers is None else int(inliers.sum())
    if H is not None and planar.sum() >= max(8, PLANAR_INLIER_RATIO * e_count):
        planar_E = essential_from_homography(H, points1[planar], points2[planar], K)
        if planar_E is not None:
            logger.debug("Planar scene: %d homography vs %d essential inliers",
                         int(planar.sum()), e_count)
            F = K_inv.T @ planar_E @ K_inv
            E, inliers = planar_E, sampson_distance(F, points1, points2) < threshold_sq

    if E is None or inliers.sum() < 8:
        return None, None

    return E, inliers.astype(np.uint8).reshape(-1, 1)


def decompose_essential(E: np.ndarray) -> List[Tuple[np.ndarray, np.ndarray]]:
    """
    All four (R, t) candidates of an essential matrix

    SVD: E = U S V^T
        R1 = U W V^T,   R2 = U W^T V^T,   t = +/- u3
    """
    U, _, Vt = np.linalg.svd(E)

    if np.linalg.det(U) < 0:
        U = -U
    if np.linalg.det(Vt) < 0:
        Vt = -Vt

    W = np.array([
        [0, -1, 0],
        [1, 0, 0],
        [0, 0, 1]
    ], dtype=np.float64)

    R1 = U @ W @ Vt
    R2 = U @ W.T @ Vt
    t = U[:, 2]

    return [(R1, t), (R1, -t), (R2, t), (R2, -t)]


def recover_pose(E: np.ndarray, points1: np.ndarray, points2: np.ndarray,
                 K: np.ndarray, mask: Optional[np.ndarray] = None
                 ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Pick the (R, t) candidate that puts most points in front of both cameras

    Returns:
        R: 3x3 rotation
        t: 3x1 unit translation
        mask: (N, 1) uint8, nonzero for input inliers passing cheirality
    """
    n = len(points1)
    inliers = mask.ravel() > 0 if mask is not None else np.ones(n, dtype=bool)

    P1 = K @ np.hstack([np.eye(3), np.zeros((3, 1))])

    best = None
    best_count = -1

    for R, t in decompose_essential(E):
        P2 = K @ np.hstack([R, t.reshape(3, 1)])
        X = triangulate_dlt(P1, P2, points1, points2)

        w = X[3]
        finite = np.abs(w) > 1e-12
        X3 = X[:3] / np.where(finite, w, 1.0)

        z1 = X3[2]
        z2 = (R @ X3 + t.reshape(3, 1))[2]

        in_front = finite & (z1 > 0) & (z2 > 0) & inliers
        count = int(in_front.sum())

        if count > best_count:
            best = (R, t, in_front)
            best_count = count

    R, t, in_front = best
    return R, t.reshape(3, 1), in_front.astype(np.uint8).reshape(-1, 1)
