"""
Synthetic scenes shared by the tests

Random points in a box in front of a small rig of cameras looking down +Z,
with one random unit descriptor per scene point.
"""
from contextlib import contextmanager

import numpy as np

from vision3d.core.backend import HeuristicBackend
from vision3d.core.camera import CameraPose, estimate_intrinsics
from vision3d.core.types import Correspondence, FeaturePoint, ImageFeatureSet


IMAGE_SIZE = (640, 480)


def rotation_y(degrees):
    a = np.radians(degrees)
    return np.array([
        [np.cos(a), 0.0, np.sin(a)],
        [0.0, 1.0, 0.0],
        [-np.sin(a), 0.0, np.cos(a)]
    ])


def make_points(n_points=120, seed=0):
    rng = np.random.default_rng(seed)
    return np.column_stack([
        rng.uniform(-1.5, 1.5, n_points),
        rng.uniform(-1.0, 1.0, n_points),
        rng.uniform(4.0, 8.0, n_points)
    ])


def make_plane_points(n_side=11, depth=6.0):
    """Regular grid on the plane z = depth"""
    xs, ys = np.meshgrid(np.linspace(-1.5, 1.5, n_side), np.linspace(-1.0, 1.0, n_side))
    return np.column_stack([xs.ravel(), ys.ravel(), np.full(n_side * n_side, depth)])


def make_cameras():
    """Three cameras one unit apart along X, turned towards the scene"""
    intrinsics = estimate_intrinsics(*IMAGE_SIZE)

    poses = [CameraPose.identity(intrinsics)]
    for center, angle in [((1.0, 0.0, 0.0), 8.0), ((-1.0, 0.0, 0.0), -8.0)]:
        R = rotation_y(angle)
        t = -R @ np.array(center)
        poses.append(CameraPose(R=R, t=t, intrinsics=intrinsics))

    return intrinsics, poses


def make_descriptors(n_points, dim=64, seed=1):
    rng = np.random.default_rng(seed)
    descriptors = rng.normal(size=(n_points, dim))
    descriptors /= np.linalg.norm(descriptors, axis=1, keepdims=True)
    return descriptors.astype(np.float32)


def make_feature_set(image_index, pixels, descriptors, order=None):
    """Feature set from projected pixels; order permutes keypoint storage"""
    if order is None:
        order = np.arange(len(pixels))

    keypoints = [
        FeaturePoint(x=float(x), y=float(y), response=1.0)
        for x, y in pixels[order]
    ]

    return ImageFeatureSet(
        image_index=image_index,
        keypoints=keypoints,
        descriptors=descriptors[order],
        colors=np.full((len(order), 3), 128, dtype=np.uint8),
        image_size=IMAGE_SIZE
    )


def identity_matches(image1_index, image2_index, n):
    return [
        Correspondence(image1_index=image1_index, image2_index=image2_index,
                       idx1=i, idx2=i, distance=0.0, second_distance=1.0, confidence=1.0)
        for i in range(n)
    ]


def gray_image(value):
    """Uniform RGB image whose gray level identifies the view"""
    return np.full((IMAGE_SIZE[1], IMAGE_SIZE[0], 3), value, dtype=np.uint8)


class _TableDetector:
    def __init__(self, table, max_features):
        self.table = table
        self.max_features = max_features

    def detect(self, gray, mask=None):
        keypoints, descriptors = self.table.get(int(gray[0, 0]), ([], np.zeros((0, 64), np.float32)))
        return keypoints[:self.max_features], descriptors[:self.max_features]


class SyntheticBackend(HeuristicBackend):
    """
    Heuristic backend whose detector returns precomputed projections

    Each view is a uniform image; its gray level selects the feature table entry.
    """

    name = "synthetic"

    def __init__(self, n_points=120, seed=0):
        super().__init__()
        points = make_points(n_points, seed)
        descriptors = make_descriptors(n_points, seed=seed + 1)
        self.intrinsics, self.poses = make_cameras()

        self.gray_levels = [60, 120, 180]
        self.table = {}
        for level, pose in zip(self.gray_levels, self.poses):
            pixels = pose.project(points)
            keypoints = [FeaturePoint(x=float(x), y=float(y), response=1.0) for x, y in pixels]
            self.table[level] = (keypoints, descriptors)

    @contextmanager
    def detector(self, max_features):
        self._require_ready()
        yield _TableDetector(self.table, max_features)

    def images(self):
        return [gray_image(level) for level in self.gray_levels]


class DegenerateEssentialBackend(SyntheticBackend):
    """Essential matrix estimation always returns the zero matrix"""

    name = "degenerate"

    def find_essential_matrix(self, points1, points2, K, prob, threshold,
                              max_iterations, seed):
        return np.zeros((3, 3)), np.ones((len(points1), 1), dtype=np.uint8)


class BehindCameraBackend(SyntheticBackend):
    """Triangulation mirrors every point through camera 1's centre"""

    name = "behind"

    def triangulate(self, P1, P2, points1, points2):
        points_h = super().triangulate(P1, P2, points1, points2)
        points_h[:3] *= -1
        return points_h
