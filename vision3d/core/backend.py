"""
Feature and geometry backends

One interface, two implementations:
- RobustBackend: OpenCV SIFT/ORB, brute-force kNN, RANSAC five-point
  essential matrix, recoverPose and triangulatePoints
- HeuristicBackend: NumPy/SciPy implementation (see heuristic.py)

OpenCV handles (cv.KeyPoint, cv.DMatch, detector and matcher objects) never
leave this module; callers get FeaturePoint lists, descriptor arrays and
KnnResult tuples.
"""
import logging
import numpy as np
import cv2 as cv
from abc import ABC, abstractmethod
from contextlib import contextmanager
from scipy.spatial import cKDTree
from typing import Dict, Iterator, List, NamedTuple, Optional, Tuple, Type, Union

from . import heuristic
from .errors import EssentialMatrixEstimationFailure
from .geometry import triangulate_dlt
from .types import FeaturePoint


logger = logging.getLogger(__name__)


class KnnResult(NamedTuple):
    """Two nearest neighbours for each query descriptor"""
    indices: np.ndarray      # (N, 2) int, -1 where no neighbour exists
    distances: np.ndarray    # (N, 2) float, inf where no neighbour exists

    @staticmethod
    def empty(n_queries: int = 0) -> 'KnnResult':
        return KnnResult(
            indices=np.full((n_queries, 2), -1, dtype=np.int64),
            distances=np.full((n_queries, 2), np.inf)
        )


class FeatureBackend(ABC):
    """
    Capability interface used by the reconstruction stages

    Call initialize() once before use; resolve_backend() does this.
    """

    name = "base"

    def __init__(self, descriptor: str = "sift"):
        self.descriptor = descriptor.lower()
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    def initialize(self) -> 'FeatureBackend':
        """One-time initialisation barrier"""
        if not self._ready:
            self._initialize()
            self._ready = True
            logger.debug("Backend %s ready (descriptor=%s)", self.name, self.descriptor)
        return self

    def _require_ready(self):
        if not self._ready:
            raise RuntimeError(f"Backend '{self.name}' used before initialize()")

    @property
    @abstractmethod
    def descriptor_kind(self) -> str:
        """'binary' (Hamming) or 'float' (Euclidean)"""

    @property
    @abstractmethod
    def default_distance_cutoff(self) -> float:
        """Absolute nearest-neighbour distance above which matches are rejected"""

    @abstractmethod
    def _initialize(self):
        pass

    @abstractmethod
    def detector(self, max_features: int):
        """Context manager yielding an object with detect(gray, mask)"""

    @abstractmethod
    def matcher(self):
        """Context manager yielding a knn(query, train) callable"""

    @abstractmethod
    def find_essential_matrix(self, points1: np.ndarray, points2: np.ndarray,
                              K: np.ndarray, prob: float, threshold: float,
                              max_iterations: int, seed: Optional[int]
                              ) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
        """Robust essential matrix; (None, None) on failure"""

    @abstractmethod
    def recover_pose(self, E: np.ndarray, points1: np.ndarray, points2: np.ndarray,
                     K: np.ndarray, mask: Optional[np.ndarray]
                     ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """(R, t, inlier mask) chosen by cheirality"""

    def triangulate(self, P1: np.ndarray, P2: np.ndarray,
                    points1: np.ndarray, points2: np.ndarray) -> np.ndarray:
        """4xN homogeneous points (DLT)"""
        return triangulate_dlt(P1, P2, points1, points2)


class _OpenCVDetector:
    """Owns one OpenCV feature detector for the duration of a with-block"""

    def __init__(self, handle, max_features: int, packed_octave: bool,
                 descriptor_dtype=np.float32):
        self._handle = handle
        self.max_features = max_features
        self.packed_octave = packed_octave
        self.descriptor_dtype = descriptor_dtype

    def detect(self, gray: np.ndarray,
               mask: Optional[np.ndarray] = None) -> Tuple[List[FeaturePoint], np.ndarray]:
        if self._handle is None:
            raise RuntimeError("Detector already released")

        keypoints, descriptors = self._handle.detectAndCompute(gray, mask)

        if descriptors is None or len(keypoints) == 0:
            return [], np.zeros((0, self._handle.descriptorSize()),
                                dtype=self.descriptor_dtype)

        # Strongest first, capped
        order = sorted(range(len(keypoints)), key=lambda i: -keypoints[i].response)
        order = order[:self.max_features]

        points = [self._wrap(keypoints[i]) for i in order]
        return points, descriptors[order]

    def _wrap(self, kp) -> FeaturePoint:
        octave = kp.octave
        if self.packed_octave:
            # SIFT packs layer and scale into the octave field
            octave = octave & 0xFF
            if octave >= 128:
                octave -= 256

        return FeaturePoint(
            x=float(kp.pt[0]),
            y=float(kp.pt[1]),
            response=float(kp.response),
            angle=float(kp.angle) if kp.angle >= 0 else None,
            octave=int(octave)
        )

    def release(self):
        self._handle = None


class RobustBackend(FeatureBackend):
    """
    OpenCV backend

    SIFT (128-dim float, L2) by default, ORB (256-bit binary, Hamming) on request.
    """

    name = "robust"

    DISTANCE_CUTOFFS = {
        "sift": 300.0,
        "orb": 64.0,
    }

    @property
    def descriptor_kind(self) -> str:
        return "binary" if self.descriptor == "orb" else "float"

    @property
    def default_distance_cutoff(self) -> float:
        return self.DISTANCE_CUTOFFS[self.descriptor]

    def _initialize(self):
        if self.descriptor not in self.DISTANCE_CUTOFFS:
            raise ValueError(f"Unsupported descriptor: {self.descriptor}")

        if self.descriptor == "sift" and not hasattr(cv, "SIFT_create"):
            raise RuntimeError(
                "OpenCV build has no SIFT; install opencv-python>=4.4 "
                "or use descriptor='orb'"
            )

    def _create_detector(self, max_features: int):
        if self.descriptor == "orb":
            return cv.ORB_create(nfeatures=max_features)

        return cv.SIFT_create(
            nfeatures=max_features,
            contrastThreshold=0.03,
            edgeThreshold=15,
            sigma=1.6
        )

    @contextmanager
    def detector(self, max_features: int) -> Iterator[_OpenCVDetector]:
        self._require_ready()
        detector = _OpenCVDetector(
            self._create_detector(max_features),
            max_features,
            packed_octave=self.descriptor == "sift",
            descriptor_dtype=np.uint8 if self.descriptor_kind == "binary" else np.float32
        )
        try:
            yield detector
        finally:
            detector.release()

    @contextmanager
    def matcher(self):
        self._require_ready()
        norm = cv.NORM_HAMMING if self.descriptor_kind == "binary" else cv.NORM_L2
        handle = cv.BFMatcher(norm, crossCheck=False)

        def knn(query: np.ndarray, train: np.ndarray) -> KnnResult:
            result = KnnResult.empty(len(query))
            if len(query) == 0 or len(train) == 0:
                return result

            if self.descriptor_kind == "float":
                query = query.astype(np.float32)
                train = train.astype(np.float32)

            try:
                raw_matches = handle.knnMatch(query, train, k=2)
            except cv.error as e:
                logger.debug("knnMatch failed: %s", e)
                return result

            for match_pair in raw_matches:
                for rank, m in enumerate(match_pair[:2]):
                    result.indices[m.queryIdx, rank] = m.trainIdx
                    result.distances[m.queryIdx, rank] = m.distance

            return result

        try:
            yield knn
        finally:
            handle.clear()

    def find_essential_matrix(self, points1, points2, K, prob, threshold,
                              max_iterations, seed):
        if len(points1) < 5:
            return None, None

        if seed is not None:
            cv.setRNGSeed(int(seed))

        pts1 = np.ascontiguousarray(points1, dtype=np.float64)
        pts2 = np.ascontiguousarray(points2, dtype=np.float64)

        try:
            E, mask = cv.findEssentialMat(
                pts1, pts2, K,
                method=cv.RANSAC,
                prob=prob,
                threshold=threshold,
                maxIters=max_iterations
            )
        except cv.error as e:
            logger.debug("findEssentialMat failed: %s", e)
            return None, None

        if E is None or mask is None:
            return None, None

        # Several solutions may be stacked vertically
        if E.shape[0] > 3:
            E = E[:3]

        return E, mask

    def recover_pose(self, E, points1, points2, K, mask):
        pts1 = np.ascontiguousarray(points1, dtype=np.float64)
        pts2 = np.ascontiguousarray(points2, dtype=np.float64)
        mask = None if mask is None else mask.copy()

        try:
            _, R, t, pose_mask = cv.recoverPose(E, pts1, pts2, K, mask=mask)
        except cv.error as e:
            raise EssentialMatrixEstimationFailure(f"recoverPose failed: {e}") from e

        return R, t, pose_mask

    def triangulate(self, P1, P2, points1, points2):
        if len(points1) == 0:
            return np.zeros((4, 0))

        pts1 = np.asarray(points1, dtype=np.float64).T
        pts2 = np.asarray(points2, dtype=np.float64).T

        try:
            return cv.triangulatePoints(P1, P2, pts1, pts2)
        except cv.error as e:
            logger.debug("triangulatePoints failed, using DLT: %s", e)
            return triangulate_dlt(P1, P2, points1, points2)


class _HarrisDetector:
    """Adapter exposing heuristic.detect_features as a detector object"""

    def __init__(self, max_features: int):
        self.max_features = max_features

    def detect(self, gray: np.ndarray,
               mask: Optional[np.ndarray] = None) -> Tuple[List[FeaturePoint], np.ndarray]:
        points, responses, angles, octaves, descriptors = heuristic.detect_features(
            gray, mask, max_features=self.max_features
        )

        keypoints = [
            FeaturePoint(x=float(p[0]), y=float(p[1]), response=float(r),
                         angle=float(a), octave=int(o))
            for p, r, a, o in zip(points, responses, angles, octaves)
        ]

        return keypoints, descriptors


class HeuristicBackend(FeatureBackend):
    """
    Pure NumPy/SciPy backend

    Float patch descriptors matched with a k-d tree; essential matrix from a
    seeded 8-point RANSAC, or from a homography when the scene is planar.
    """

    name = "heuristic"

    @property
    def descriptor_kind(self) -> str:
        return "float"

    @property
    def default_distance_cutoff(self) -> float:
        # Descriptors are unit vectors, distances lie in [0, 2]
        return 0.8

    def _initialize(self):
        if self.descriptor != "sift":
            logger.info("Heuristic backend ignores descriptor=%s, using patch descriptors",
                        self.descriptor)

    @contextmanager
    def detector(self, max_features: int) -> Iterator[_HarrisDetector]:
        self._require_ready()
        yield _HarrisDetector(max_features)

    @contextmanager
    def matcher(self):
        self._require_ready()

        def knn(query: np.ndarray, train: np.ndarray) -> KnnResult:
            result = KnnResult.empty(len(query))
            if len(query) == 0 or len(train) == 0:
                return result

            tree = cKDTree(np.asarray(train, dtype=np.float64))
            distances, indices = tree.query(np.asarray(query, dtype=np.float64), k=2)

            missing = ~np.isfinite(distances)
            indices = np.where(missing, -1, indices)

            return KnnResult(indices=indices.astype(np.int64), distances=distances)

        yield knn

    def find_essential_matrix(self, points1, points2, K, prob, threshold,
                              max_iterations, seed):
        rng = np.random.default_rng(seed)
        return heuristic.ransac_essential(
            np.asarray(points1, dtype=np.float64),
            np.asarray(points2, dtype=np.float64),
            K, prob=prob, threshold=threshold,
            max_iterations=max_iterations, rng=rng
        )

    def recover_pose(self, E, points1, points2, K, mask):
        return heuristic.recover_pose(E, points1, points2, K, mask)


BACKENDS: Dict[str, Type[FeatureBackend]] = {
    RobustBackend.name: RobustBackend,
    HeuristicBackend.name: HeuristicBackend,
}


def resolve_backend(backend: Union[str, FeatureBackend] = "robust",
                    descriptor: str = "sift") -> FeatureBackend:
    """
    Look up a backend by name (or accept an instance) and initialise it

    Raises:
        ValueError: unknown backend name
    """
    if isinstance(backend, FeatureBackend):
        return backend.initialize()

    try:
        backend_cls = BACKENDS[backend.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown backend '{backend}', expected one of {sorted(BACKENDS)}"
        ) from None

    return backend_cls(descriptor=descriptor).initialize()
