"""
Feature detection and matching

Detection is delegated to the backend (SIFT/ORB or Harris patches).
Custom implementation of ratio test matching with symmetric check.
"""
import logging
import numpy as np
import cv2 as cv
from typing import Iterable, List, Optional, Sequence, Tuple

from .backend import FeatureBackend, KnnResult
from .errors import ImageDecodeFailure
from .images import ProcessedImage
from .types import Correspondence, ImageFeatureSet


logger = logging.getLogger(__name__)


class FeatureExtractor:
    """
    Per-image feature extractor

    Images larger than max_image_dimension are downscaled before detection.
    Transparent pixels of RGBA inputs are masked out so that features come
    from the foreground object only.
    """

    def __init__(self, backend: FeatureBackend,
                 max_features: int = 1000,
                 max_image_dimension: int = 1600,
                 use_alpha_mask: bool = True,
                 equalize: bool = True):
        """
        Args:
            backend: initialised feature backend
            max_features: maximum number of keypoints kept per image
            max_image_dimension: longest side after downscaling (0 disables)
            use_alpha_mask: restrict detection to opaque pixels
            equalize: apply CLAHE before detection
        """
        self.backend = backend
        self.max_features = max_features
        self.max_image_dimension = max_image_dimension
        self.use_alpha_mask = use_alpha_mask
        self.equalize = equalize

    def _downscale(self, image: np.ndarray) -> Tuple[np.ndarray, float]:
        h, w = image.shape[:2]
        longest = max(h, w)

        if not self.max_image_dimension or longest <= self.max_image_dimension:
            return image, 1.0

        scale = self.max_image_dimension / float(longest)
        new_w = max(1, int(round(w * scale)))
        new_h = max(1, int(round(h * scale)))

        return cv.resize(image, (new_w, new_h), interpolation=cv.INTER_AREA), scale

    def _split_channels(self, image: np.ndarray) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """BGR image and optional detection mask"""
        if image.ndim == 2:
            return cv.cvtColor(image, cv.COLOR_GRAY2BGR), None

        if image.shape[2] == 4:
            bgr = image[:, :, :3]
            alpha = image[:, :, 3]

            mask = None
            if self.use_alpha_mask and np.any(alpha == 0):
                mask = np.where(alpha > 0, 255, 0).astype(np.uint8)

            return np.ascontiguousarray(bgr), mask

        return image, None

    @staticmethod
    def _sample_colors(bgr: np.ndarray, points: np.ndarray) -> np.ndarray:
        """RGB colour at each keypoint (nearest pixel, clamped to the image)"""
        if len(points) == 0:
            return np.zeros((0, 3), dtype=np.uint8)

        h, w = bgr.shape[:2]
        xs = np.clip(np.round(points[:, 0]).astype(int), 0, w - 1)
        ys = np.clip(np.round(points[:, 1]).astype(int), 0, h - 1)

        return bgr[ys, xs][:, ::-1].astype(np.uint8)

    def extract(self, image: np.ndarray, image_index: int,
                source_name: str = "") -> ImageFeatureSet:
        """
        Extract features from a decoded image

        Args:
            image: BGR, BGRA or grayscale uint8 image
            image_index: position of the image in the input list

        Returns:
            ImageFeatureSet in working-resolution coordinates
        """
        image, scale = self._downscale(image)
        bgr, mask = self._split_channels(image)

        gray = cv.cvtColor(bgr, cv.COLOR_BGR2GRAY)

        # CLAHE for better contrast on evenly lit objects
        if self.equalize:
            clahe = cv.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
            gray = clahe.apply(gray)

        with self.backend.detector(self.max_features) as detector:
            keypoints, descriptors = detector.detect(gray, mask)

        features = ImageFeatureSet(
            image_index=image_index,
            keypoints=keypoints,
            descriptors=descriptors,
            colors=np.zeros((0, 3), dtype=np.uint8),
            image_size=(bgr.shape[1], bgr.shape[0]),
            source_name=source_name,
            scale=scale
        )
        features.colors = self._sample_colors(bgr, features.points)

        logger.debug("Image %d (%s): %d keypoints at %dx%d",
                     image_index, source_name or "-", len(features),
                     features.image_size[0], features.image_size[1])
        return features

    def extract_image(self, image: ProcessedImage, image_index: int) -> ImageFeatureSet:
        """
        Decode and extract

        Raises:
            ImageDecodeFailure: the image could not be decoded
        """
        name = image.name or f"image {image_index}"
        if not image.success:
            logger.info("%s: background removal reported failure, using it as-is", name)

        pixels = image.decode()
        return self.extract(pixels, image_index, source_name=name)

    def extract_all(self, images: Sequence[ProcessedImage]) -> List[ImageFeatureSet]:
        """Extract features from every decodable image, skipping the rest"""
        features = []

        for i, image in enumerate(images):
            try:
                features.append(self.extract_image(image, i))
            except ImageDecodeFailure as e:
                logger.warning("Skipping image: %s", e)

        return features


class FeatureMatcher:
    """
    Feature matcher with Lowe's ratio test

    A match A->B is accepted when the nearest neighbour is clearly closer than
    the second one, closer than an absolute cutoff, and (symmetric mode)
    matching B->A leads back to the same feature.
    """

    def __init__(self, backend: FeatureBackend,
                 ratio_threshold: float = 0.75,
                 max_distance: Optional[float] = None,
                 symmetric: bool = True,
                 min_symmetric_matches: int = 20,
                 max_matches: int = 200):
        """
        Args:
            backend: initialised feature backend
            ratio_threshold: Lowe's ratio test threshold
            max_distance: absolute descriptor distance cutoff
                (None uses the backend default)
            symmetric: keep only mutual matches when enough of them exist
            min_symmetric_matches: mutual matches needed to replace
                the one-directional set
            max_matches: per-pair cap after sorting by distance
        """
        self.backend = backend
        self.ratio_threshold = ratio_threshold
        self.max_distance = (max_distance if max_distance is not None
                             else backend.default_distance_cutoff)
        self.symmetric = symmetric
        self.min_symmetric_matches = min_symmetric_matches
        self.max_matches = max_matches

    @staticmethod
    def image_pairs(n_images: int) -> List[Tuple[int, int]]:
        """All unordered pairs (i, j) with i < j, in a fixed order"""
        return [(i, j) for i in range(n_images) for j in range(i + 1, n_images)]

    def _filter(self, knn: KnnResult, n_train: int) -> dict:
        """query index -> (train index, nearest, second nearest)"""
        accepted = {}

        for query_idx in range(len(knn.indices)):
            train_idx = int(knn.indices[query_idx, 0])
            if train_idx < 0 or train_idx >= n_train or knn.indices[query_idx, 1] < 0:
                continue

            nearest, second = knn.distances[query_idx]
            if not (np.isfinite(nearest) and np.isfinite(second)):
                continue

            if nearest < self.ratio_threshold * second and nearest < self.max_distance:
                accepted[query_idx] = (train_idx, float(nearest), float(second))

        return accepted

    def _confidence(self, distance: float) -> float:
        if self.max_distance <= 0:
            return 0.0
        return float(np.clip(1.0 - distance / self.max_distance, 0.0, 1.0))

    def match(self, features1: ImageFeatureSet,
              features2: ImageFeatureSet) -> List[Correspondence]:
        """
        Match features between two images

        Returns:
            Correspondences sorted by distance (ascending), capped per pair
        """
        if len(features1) < 2 or len(features2) < 2:
            return []

        desc1 = features1.descriptors
        desc2 = features2.descriptors

        with self.backend.matcher() as knn:
            forward = self._filter(knn(desc1, desc2), len(features2))

            if self.symmetric and forward:
                backward = self._filter(knn(desc2, desc1), len(features1))
            else:
                backward = {}

        selected = forward
        if self.symmetric:
            mutual = {
                q: m for q, m in forward.items()
                if q == backward.get(m[0], (None,))[0]
            }
            if len(mutual) >= self.min_symmetric_matches:
                selected = mutual

        matches = [
            Correspondence(
                image1_index=features1.image_index,
                image2_index=features2.image_index,
                idx1=q,
                idx2=train_idx,
                distance=nearest,
                second_distance=second,
                confidence=self._confidence(nearest)
            )
            for q, (train_idx, nearest, second) in selected.items()
        ]

        matches.sort(key=lambda m: (m.distance, m.idx1))
        return matches[:self.max_matches]

    @staticmethod
    def merge(per_pair: Iterable[List[Correspondence]],
              max_total: Optional[int] = None) -> List[Correspondence]:
        """Concatenate per-pair results in pair order, optionally capped"""
        merged: List[Correspondence] = []

        for matches in per_pair:
            if max_total is not None and len(merged) + len(matches) > max_total:
                merged.extend(matches[:max_total - len(merged)])
                logger.warning("Correspondence cap of %d reached, ignoring remaining pairs",
                               max_total)
                break
            merged.extend(matches)

        return merged

    def match_all_pairs(self, feature_sets: Sequence[ImageFeatureSet],
                        max_total: Optional[int] = None) -> List[Correspondence]:
        """Match every unordered pair of feature sets"""
        per_pair = []

        for i, j in self.image_pairs(len(feature_sets)):
            matches = self.match(feature_sets[i], feature_sets[j])
            logger.debug("Matched images %d-%d: %d matches",
                         feature_sets[i].image_index, feature_sets[j].image_index, len(matches))
            per_pair.append(matches)

        return self.merge(per_pair, max_total)
