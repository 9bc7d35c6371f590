"""
Model assembly

Turns a two-view reconstruction into flat vertex/colour buffers ready for
rendering, or produces the placeholder cube when reconstruction failed.
"""
import logging
import numpy as np
from dataclasses import dataclass, field
from typing import Dict, Optional

from .types import ReconstructionResult
from .utils import compute_scene_bounds


logger = logging.getLogger(__name__)


@dataclass
class Generated3DModel:
    """
    Renderable model

    vertices: flat float32 buffer, stride 3 (x, y, z)
    colors: flat float32 buffer in [0, 1], stride 3 (r, g, b)
    faces: flat uint32 triangle index buffer, empty for point clouds
    """
    vertices: np.ndarray
    colors: np.ndarray
    faces: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.uint32))
    source_image_count: int = 0
    bounds: Dict[str, np.ndarray] = field(default_factory=dict)
    is_fallback: bool = False
    failure_reason: Optional[str] = None
    reconstruction: Optional[ReconstructionResult] = None

    @property
    def vertex_count(self) -> int:
        return len(self.vertices) // 3

    @property
    def face_count(self) -> int:
        return len(self.faces) // 3

    @property
    def is_point_cloud(self) -> bool:
        return self.face_count == 0

    @property
    def is_empty(self) -> bool:
        return self.vertex_count == 0

    def vertex_array(self) -> np.ndarray:
        """Nx3 view of the vertex buffer"""
        return self.vertices.reshape(-1, 3)

    def color_array(self) -> np.ndarray:
        """Nx3 view of the colour buffer"""
        return self.colors.reshape(-1, 3)


class PointCloudAssembler:
    """Flatten accepted points into a point-cloud model"""

    def assemble(self, result: ReconstructionResult,
                 source_image_count: int) -> Generated3DModel:
        if not result.points:
            return Generated3DModel(
                vertices=np.zeros(0, dtype=np.float32),
                colors=np.zeros(0, dtype=np.float32),
                source_image_count=source_image_count,
                bounds=compute_scene_bounds(np.zeros((0, 3))),
                reconstruction=result
            )

        positions = np.array([p.position for p in result.points], dtype=np.float64)
        colors = np.array([p.color for p in result.points], dtype=np.float64) / 255.0

        model = Generated3DModel(
            vertices=positions.astype(np.float32).ravel(),
            colors=np.clip(colors, 0.0, 1.0).astype(np.float32).ravel(),
            source_image_count=source_image_count,
            bounds=compute_scene_bounds(positions),
            reconstruction=result
        )

        logger.info("Assembled point cloud with %d vertices (radius %.3f)",
                    model.vertex_count, float(model.bounds['radius']))
        return model


class FallbackModelGenerator:
    """
    Placeholder model used when reconstruction fails

    Unit cube centred on the origin, uniform grey, 12 triangles.
    """

    GREY = 0.6

    CUBE_VERTICES = np.array([
        [-0.5, -0.5, -0.5],
        [0.5, -0.5, -0.5],
        [0.5, 0.5, -0.5],
        [-0.5, 0.5, -0.5],
        [-0.5, -0.5, 0.5],
        [0.5, -0.5, 0.5],
        [0.5, 0.5, 0.5],
        [-0.5, 0.5, 0.5],
    ], dtype=np.float32)

    # Counter-clockwise seen from outside
    CUBE_FACES = np.array([
        [0, 2, 1], [0, 3, 2],      # back (-z)
        [4, 5, 6], [4, 6, 7],      # front (+z)
        [0, 1, 5], [0, 5, 4],      # bottom (-y)
        [3, 7, 6], [3, 6, 2],      # top (+y)
        [0, 4, 7], [0, 7, 3],      # left (-x)
        [1, 2, 6], [1, 6, 5],      # right (+x)
    ], dtype=np.uint32)

    def generate(self, source_image_count: int = 0,
                 reason: Optional[str] = None,
                 reconstruction: Optional[ReconstructionResult] = None) -> Generated3DModel:
        vertices = self.CUBE_VERTICES.copy()
        colors = np.full(vertices.shape, self.GREY, dtype=np.float32)

        return Generated3DModel(
            vertices=vertices.ravel(),
            colors=colors.ravel(),
            faces=self.CUBE_FACES.ravel().copy(),
            source_image_count=source_image_count,
            bounds=compute_scene_bounds(vertices.astype(np.float64)),
            is_fallback=True,
            failure_reason=reason,
            reconstruction=reconstruction
        )
