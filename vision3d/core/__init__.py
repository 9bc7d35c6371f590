"""
Core 3D Reconstruction Module
Two-view Structure from Motion from background-removed images
"""

from .assembly import FallbackModelGenerator, Generated3DModel, PointCloudAssembler
from .backend import FeatureBackend, HeuristicBackend, RobustBackend, resolve_backend
from .camera import CameraIntrinsics, CameraPose, estimate_intrinsics
from .config import PipelineConfig
from .errors import (
    DegenerateTriangulation,
    EmptyReconstruction,
    EssentialMatrixEstimationFailure,
    ImageDecodeFailure,
    InsufficientFeatureMatches,
    InsufficientImages,
    PoseRecoveryInlierShortfall,
    ReconstructionError,
)
from .features import FeatureExtractor, FeatureMatcher
from .geometry import triangulate_dlt, compute_reprojection_error
from .images import ProcessedImage, decode_image
from .pairs import PairSelector
from .sfm_pipeline import SfMPipeline
from .two_view import TwoViewReconstructor
from .types import (
    Correspondence,
    FeaturePoint,
    ImageFeatureSet,
    PipelineStage,
    Point3D,
    ReconstructionResult,
)

__all__ = [
    'SfMPipeline',
    'PipelineConfig',
    'PipelineStage',
    'ProcessedImage',
    'decode_image',
    'Generated3DModel',
    'PointCloudAssembler',
    'FallbackModelGenerator',
    'FeatureBackend',
    'RobustBackend',
    'HeuristicBackend',
    'resolve_backend',
    'CameraIntrinsics',
    'CameraPose',
    'estimate_intrinsics',
    'FeatureExtractor',
    'FeatureMatcher',
    'PairSelector',
    'TwoViewReconstructor',
    'triangulate_dlt',
    'compute_reprojection_error',
    'FeaturePoint',
    'ImageFeatureSet',
    'Correspondence',
    'Point3D',
    'ReconstructionResult',
    'ReconstructionError',
    'ImageDecodeFailure',
    'InsufficientImages',
    'InsufficientFeatureMatches',
    'EssentialMatrixEstimationFailure',
    'PoseRecoveryInlierShortfall',
    'DegenerateTriangulation',
    'EmptyReconstruction',
]
