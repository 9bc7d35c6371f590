"""
Utility functions for 3D reconstruction
"""
import logging
import sys
import numpy as np
from pathlib import Path
from typing import List, Optional, Sequence, Union


logger = logging.getLogger(__name__)


LOG_FORMAT = '[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s'
LOG_DATE_FORMAT = '%H:%M:%S'

IMAGE_EXTENSIONS = ('*.jpg', '*.jpeg', '*.png', '*.JPG', '*.JPEG', '*.PNG')


def setup_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    """
    Configure console logging for the vision3d package

    Library modules only create loggers; applications call this once.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    package_logger = logging.getLogger('vision3d')
    package_logger.setLevel(level)

    if not any(getattr(h, '_vision3d', False) for h in package_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        handler._vision3d = True
        package_logger.addHandler(handler)

    for handler in package_logger.handlers:
        handler.setLevel(level)

    return package_logger


def list_images(image_dir: Union[str, Path], max_images: Optional[int] = None) -> List[Path]:
    """Image files of a directory, sorted by name"""
    image_dir = Path(image_dir)

    paths = set()
    for pattern in IMAGE_EXTENSIONS:
        paths.update(image_dir.glob(pattern))

    image_paths = sorted(paths)

    if max_images:
        image_paths = image_paths[:max_images]

    return image_paths


def _write_ply(output_path: Union[str, Path], vertices: np.ndarray, colors: np.ndarray,
               faces: Optional[np.ndarray] = None):
    """ASCII PLY with per-vertex RGB and optional triangle faces"""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    vertices = np.asarray(vertices).reshape(-1, 3)
    colors = np.clip(np.asarray(colors).reshape(-1, 3), 0, 255).astype(int)
    faces = np.zeros((0, 3), dtype=int) if faces is None else np.asarray(faces).reshape(-1, 3)

    header = [
        "ply",
        "format ascii 1.0",
        f"element vertex {len(vertices)}",
        *(f"property float {axis}" for axis in "xyz"),
        *(f"property uchar {channel}" for channel in ("red", "green", "blue")),
    ]
    if len(faces):
        header += [f"element face {len(faces)}", "property list uchar int vertex_indices"]
    header.append("end_header")

    with open(output_path, 'w') as f:
        f.write("\n".join(header) + "\n")

        for (x, y, z), (r, g, b) in zip(vertices, colors):
            f.write(f"{x:.6f} {y:.6f} {z:.6f} {r} {g} {b}\n")
        for a, b, c in faces:
            f.write(f"3 {a} {b} {c}\n")

    return output_path


def save_ply(points: np.ndarray, colors: np.ndarray, output_path: Union[str, Path]):
    """
    Save point cloud to PLY format

    Args:
        points: Nx3 array of 3D coordinates
        colors: Nx3 array of RGB colors (0-255)
        output_path: path to save PLY file
    """
    output_path = _write_ply(output_path, points, colors)
    logger.info("Saved %d points to %s", len(points), output_path)


def save_mesh_ply(vertices: np.ndarray, colors: np.ndarray, faces: np.ndarray,
                  output_path: Union[str, Path]):
    """Save a triangle mesh (Nx3 vertices, Nx3 RGB 0-255, Mx3 faces) to PLY"""
    output_path = _write_ply(output_path, vertices, colors, faces)
    logger.info("Saved mesh with %d vertices, %d faces to %s",
                len(np.asarray(vertices).reshape(-1, 3)), len(np.asarray(faces).reshape(-1, 3)),
                output_path)


def save_cameras_ply(poses: Sequence, output_path: Union[str, Path], scale: float = 0.5):
    """
    Save camera positions as PLY for visualization

    Args:
        poses: sequence of CameraPose
        output_path: path to save PLY
        scale: length of the viewing direction marker
    """
    points = []
    colors = []

    for pose in poses:
        center = pose.center

        # Camera center (red)
        points.append(center)
        colors.append([255, 0, 0])

        # Viewing direction (green), camera looks along +Z
        forward = pose.R[2, :]
        points.append(center + forward * scale)
        colors.append([0, 255, 0])

    save_ply(np.array(points).reshape(-1, 3), np.array(colors, dtype=np.uint8), output_path)


def compute_scene_bounds(points: np.ndarray) -> dict:
    """Compute bounding box and statistics of point cloud"""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)

    if len(points) == 0:
        return {'min': np.zeros(3), 'max': np.zeros(3), 'center': np.zeros(3),
                'size': 0.0, 'radius': 0.0}

    min_pt = points.min(axis=0)
    max_pt = points.max(axis=0)
    center = (min_pt + max_pt) / 2
    size = float(np.linalg.norm(max_pt - min_pt))
    radius = float(np.linalg.norm(points - center, axis=1).max())

    return {
        'min': min_pt,
        'max': max_pt,
        'center': center,
        'size': size,
        'radius': radius
    }
