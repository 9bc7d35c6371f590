"""
Pipeline configuration
"""
from dataclasses import dataclass, replace, asdict
from typing import Optional


@dataclass(frozen=True)
class PipelineConfig:
    """Thresholds and switches for one reconstruction run"""

    # Backend
    backend: str = "robust"                 # "robust" (OpenCV) or "heuristic"
    descriptor: str = "sift"                # "sift" (float) or "orb" (binary)

    # Feature extraction
    max_features: int = 1000
    max_image_dimension: int = 1600
    use_alpha_mask: bool = True

    # Matching
    ratio_threshold: float = 0.75
    max_descriptor_distance: Optional[float] = None   # None: backend default
    symmetric_matching: bool = True
    min_symmetric_matches: int = 20
    max_matches_per_pair: int = 200
    max_total_correspondences: int = 20000

    # Pair selection
    min_pair_matches: int = 50

    # Intrinsics
    focal_factor: float = 1.2

    # Two-view geometry
    ransac_confidence: float = 0.999
    ransac_threshold: float = 1.0
    ransac_max_iterations: int = 2000
    min_pose_inliers: int = 50
    max_reprojection_error: float = 2.0

    # Execution
    min_images: int = 2
    recommended_images: int = 3
    max_images: Optional[int] = None
    num_workers: int = 4
    random_seed: Optional[int] = 0

    @classmethod
    def fast(cls, **overrides) -> 'PipelineConfig':
        """Reduced resolution and feature count for quick previews"""
        base = cls(max_features=500, max_image_dimension=800)
        return replace(base, **overrides)

    def replace(self, **overrides) -> 'PipelineConfig':
        return replace(self, **overrides)

    def to_dict(self) -> dict:
        return asdict(self)
