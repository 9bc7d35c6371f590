"""
Value objects shared by the reconstruction stages
"""
import numpy as np
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .camera import CameraPose


@dataclass(frozen=True)
class FeaturePoint:
    """Keypoint detected in one image"""
    x: float
    y: float
    response: float
    angle: Optional[float] = None   # degrees
    octave: Optional[int] = None

    @property
    def pt(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclass
class ImageFeatureSet:
    """Features extracted from one image"""
    image_index: int
    keypoints: List[FeaturePoint]
    descriptors: np.ndarray                 # (N, D) uint8 or float32
    colors: np.ndarray                      # (N, 3) RGB samples
    image_size: Tuple[int, int]             # (width, height) of working image
    source_name: str = ""
    scale: float = 1.0                      # working / original resolution

    @property
    def points(self) -> np.ndarray:
        """Nx2 array of keypoint coordinates"""
        if not self.keypoints:
            return np.zeros((0, 2), dtype=np.float64)
        return np.array([kp.pt for kp in self.keypoints], dtype=np.float64)

    def __len__(self):
        return len(self.keypoints)


@dataclass(frozen=True)
class Correspondence:
    """Match between a keypoint in image 1 and one in image 2"""
    image1_index: int
    image2_index: int
    idx1: int                   # keypoint index in image 1
    idx2: int                   # keypoint index in image 2
    distance: float
    second_distance: float
    confidence: float

    @property
    def pair_key(self) -> Tuple[int, int]:
        a, b = self.image1_index, self.image2_index
        return (a, b) if a < b else (b, a)


@dataclass
class Point3D:
    """Triangulated scene point"""
    position: np.ndarray        # (3,)
    color: np.ndarray           # (3,) RGB uint8
    confidence: float
    reprojection_error: float
    num_views: int = 2


@dataclass
class ReconstructionResult:
    """Outcome of the two-view geometric stage"""
    success: bool
    points: List[Point3D] = field(default_factory=list)
    cameras: List[CameraPose] = field(default_factory=list)
    failure_reason: Optional[str] = None
    error_kind: Optional[str] = None
    image_pair: Optional[Tuple[int, int]] = None
    num_inliers: int = 0
    dropped: Dict[str, int] = field(default_factory=dict)

    @property
    def num_points(self) -> int:
        return len(self.points)

    @staticmethod
    def failure(reason: str, error_kind: Optional[str] = None,
                image_pair: Optional[Tuple[int, int]] = None) -> 'ReconstructionResult':
        return ReconstructionResult(
            success=False,
            failure_reason=reason,
            error_kind=error_kind,
            image_pair=image_pair
        )


class PipelineStage(Enum):
    """Stages visited by one reconstruction run"""
    IDLE = "idle"
    EXTRACTING = "extracting"
    MATCHING = "matching"
    PAIR_SELECTING = "pair_selecting"
    POSE_ESTIMATING = "pose_estimating"
    TRIANGULATING = "triangulating"
    ASSEMBLING = "assembling"
    SUCCEEDED = "succeeded"
    FALLEN_BACK = "fallen_back"
