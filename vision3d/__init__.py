"""
3D Reconstruction Project

Modules:
- core: sparse two-view reconstruction (features, matching, pose, triangulation)
- run_reconstruction: command-line entry point
"""

from .core import (
    SfMPipeline,
    PipelineConfig,
    ProcessedImage,
    Generated3DModel,
    CameraIntrinsics,
    CameraPose,
    ReconstructionError
)

__version__ = '0.1.0'

__all__ = [
    'SfMPipeline',
    'PipelineConfig',
    'ProcessedImage',
    'Generated3DModel',
    'CameraIntrinsics',
    'CameraPose',
    'ReconstructionError'
]
