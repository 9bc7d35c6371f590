"""
Main entry point for 3D reconstruction

Usage:
    python -m vision3d.run_reconstruction <image_dir> [options]

Examples:
    python -m vision3d.run_reconstruction data/mug --output mug.ply       # SIFT
    python -m vision3d.run_reconstruction data/mug --descriptor orb       # ORB
    python -m vision3d.run_reconstruction data/mug --backend heuristic    # NumPy/SciPy only
    python -m vision3d.run_reconstruction data/mug --fast                 # Quick test
"""
import argparse
import logging
import sys
import time
from pathlib import Path

from .core import PipelineConfig, SfMPipeline
from .core.backend import BACKENDS
from .core.utils import save_cameras_ply, save_mesh_ply, save_ply, setup_logging


def main(argv=None):
    parser = argparse.ArgumentParser(description='Sparse 3D reconstruction from images')
    parser.add_argument('image_dir', help='Directory with (background-removed) images')
    parser.add_argument('--backend', choices=sorted(BACKENDS), default='robust',
                        help='Feature/geometry backend (default: robust)')
    parser.add_argument('--descriptor', choices=['sift', 'orb'], default='sift',
                        help='Descriptor for the robust backend (default: sift)')
    parser.add_argument('--fast', action='store_true',
                        help='Fast mode: reduced resolution and feature count')
    parser.add_argument('--max-images', type=int, default=None,
                        help='Maximum number of images to process')
    parser.add_argument('--seed', type=int, default=0,
                        help='Random seed for robust estimation')
    parser.add_argument('--output', type=str, default=None,
                        help='Output PLY file')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Debug logging')

    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    image_dir = Path(args.image_dir)
    if not image_dir.is_dir():
        print(f"ERROR: Image directory not found: {image_dir}")
        return 1

    overrides = dict(
        backend=args.backend,
        descriptor=args.descriptor,
        max_images=args.max_images,
        random_seed=args.seed
    )
    config = PipelineConfig.fast(**overrides) if args.fast else PipelineConfig(**overrides)

    # Print configuration
    print("=" * 60)
    print("3D RECONSTRUCTION")
    print("=" * 60)
    print(f"Images: {image_dir}")
    print(f"Output: {args.output or '-'}")

    mode_parts = []
    if args.fast:
        mode_parts.append("FAST")
    if args.backend == 'robust':
        mode_parts.append(f"OpenCV {args.descriptor.upper()}")
    else:
        mode_parts.append("Harris patches")
    mode_parts.append(f"seed {args.seed}")
    print(f"Mode: {' + '.join(mode_parts)}")
    print()

    images = SfMPipeline.load_images(image_dir, args.max_images)
    if not images:
        print(f"ERROR: No images found in {image_dir}")
        return 1

    t0 = time.time()
    pipeline = SfMPipeline(config)
    model = pipeline.reconstruct(images)

    # Summary
    print("\n" + "=" * 60)
    print("FALLBACK MODEL" if model.is_fallback else "RECONSTRUCTION COMPLETE")
    print("=" * 60)
    print(f"  Images: {model.source_image_count} ({len(pipeline.features)} usable)")
    print(f"  Stages: {' -> '.join(s.value for s in pipeline.stage_history)}")

    result = model.reconstruction
    if model.is_fallback:
        print(f"  Reason: {model.failure_reason}")
    else:
        pair = result.image_pair
        print(f"  Seed pair: ({pair[0]}, {pair[1]})")
        print(f"  Pose inliers: {result.num_inliers}")
        print(f"  3D points: {model.vertex_count:,}")
        if result.dropped:
            print(f"  Rejected: {result.dropped}")
        errors = ", ".join(f"{c.reprojection_error:.2f}" for c in result.cameras)
        print(f"  Mean reprojection error per camera: {errors} px")
    print(f"  Time: {time.time() - t0:.1f}s")

    if args.output:
        output = Path(args.output)
        colors = model.color_array() * 255.0

        if model.is_point_cloud:
            save_ply(model.vertex_array(), colors, output)
            save_cameras_ply(result.cameras, output.with_name(output.stem + '_cameras.ply'))
        else:
            save_mesh_ply(model.vertex_array(), colors, model.faces.reshape(-1, 3), output)

        print(f"\nResults saved to: {output}")

    return 0 if not model.is_fallback else 2


if __name__ == '__main__':
    sys.exit(main())
