"""
End-to-end pipeline tests: success path, fallbacks and state machine
"""

import asyncio
import sys
import numpy as np
from pathlib import Path
import unittest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from vision3d.core.assembly import FallbackModelGenerator, PointCloudAssembler
from vision3d.core.config import PipelineConfig
from vision3d.core.images import ProcessedImage
from vision3d.core.sfm_pipeline import SfMPipeline
from vision3d.core.types import PipelineStage, Point3D, ReconstructionResult
from tests.synthetic import (
    BehindCameraBackend,
    DegenerateEssentialBackend,
    SyntheticBackend,
    gray_image,
)


SUCCESS_STAGES = [
    PipelineStage.EXTRACTING,
    PipelineStage.MATCHING,
    PipelineStage.PAIR_SELECTING,
    PipelineStage.POSE_ESTIMATING,
    PipelineStage.TRIANGULATING,
    PipelineStage.ASSEMBLING,
    PipelineStage.SUCCEEDED,
]


def synthetic_pipeline(backend, **kwargs):
    pipeline = SfMPipeline(PipelineConfig(num_workers=2), backend=backend, **kwargs)
    # Views are identified by their exact gray level
    pipeline.extractor.equalize = False
    return pipeline


def as_inputs(images):
    return [ProcessedImage(data=image, name=f"view_{i}.png") for i, image in enumerate(images)]


class TestSyntheticReconstruction(unittest.TestCase):
    """Three views of a synthetic scene"""

    def setUp(self):
        self.backend = SyntheticBackend()
        self.images = as_inputs(self.backend.images())

    def test_point_cloud(self):
        pipeline = synthetic_pipeline(self.backend)
        model = pipeline.reconstruct(self.images)

        self.assertFalse(model.is_fallback)
        self.assertTrue(model.is_point_cloud)
        self.assertGreaterEqual(model.vertex_count, 100)
        self.assertEqual(model.vertices.dtype, np.float32)
        self.assertEqual(model.colors.dtype, np.float32)
        self.assertEqual(len(model.vertices), len(model.colors))
        self.assertEqual(model.source_image_count, 3)
        self.assertTrue(np.all((model.colors >= 0) & (model.colors <= 1)))
        self.assertIsNone(model.failure_reason)

    def test_stage_history(self):
        pipeline = synthetic_pipeline(self.backend)
        pipeline.reconstruct(self.images)

        self.assertEqual(pipeline.stage_history, SUCCESS_STAGES)
        self.assertEqual(pipeline.stage, PipelineStage.SUCCEEDED)

    def test_seed_pair_tie_goes_to_first_pair(self):
        pipeline = synthetic_pipeline(self.backend)
        model = pipeline.reconstruct(self.images)

        # Every pair sees all points; (0, 1) comes first
        self.assertEqual(model.reconstruction.image_pair, (0, 1))

    def test_intrinsics_from_first_image(self):
        pipeline = synthetic_pipeline(self.backend)
        pipeline.reconstruct(self.images)

        self.assertAlmostEqual(pipeline.intrinsics.fx, 1.2 * 640)
        self.assertAlmostEqual(pipeline.intrinsics.cx, 320)
        self.assertAlmostEqual(pipeline.intrinsics.cy, 240)

    def test_idempotent(self):
        pipeline = synthetic_pipeline(self.backend)
        first = pipeline.reconstruct(self.images)
        second = pipeline.reconstruct(self.images)
        third = synthetic_pipeline(SyntheticBackend()).reconstruct(self.images)

        np.testing.assert_array_equal(first.vertices, second.vertices)
        np.testing.assert_array_equal(first.vertices, third.vertices)
        np.testing.assert_array_equal(first.colors, third.colors)

    def test_progress_callback(self):
        events = []
        pipeline = synthetic_pipeline(self.backend,
                                      progress_callback=lambda s, f: events.append((s, f)))
        pipeline.reconstruct(self.images)

        self.assertEqual([s for s, _ in events], SUCCESS_STAGES)
        fractions = [f for _, f in events]
        self.assertEqual(fractions, sorted(fractions))
        self.assertEqual(fractions[-1], 1.0)

    def test_failing_progress_callback_is_ignored(self):
        def callback(stage, fraction):
            raise RuntimeError("ui went away")

        model = synthetic_pipeline(self.backend, progress_callback=callback).reconstruct(self.images)

        self.assertFalse(model.is_fallback)

    def test_generate_model_coroutine(self):
        pipeline = synthetic_pipeline(self.backend)
        model = asyncio.run(pipeline.generate_model(self.images))

        self.assertFalse(model.is_fallback)

    def test_max_images(self):
        pipeline = SfMPipeline(PipelineConfig(max_images=2), backend=self.backend)
        pipeline.extractor.equalize = False
        model = pipeline.reconstruct(self.images)

        self.assertEqual(model.source_image_count, 2)
        self.assertEqual(len(pipeline.features), 2)


class TestFallback(unittest.TestCase):
    """Every failure yields the unit cube"""

    def assertFallbackCube(self, model):
        self.assertTrue(model.is_fallback)
        self.assertEqual(model.vertex_count, 8)
        self.assertEqual(model.face_count, 12)
        self.assertEqual(model.faces.dtype, np.uint32)
        self.assertTrue(np.all(model.faces < 8))
        np.testing.assert_allclose(model.vertex_array().mean(axis=0), 0.0, atol=1e-7)
        np.testing.assert_allclose(np.abs(model.vertex_array()), 0.5)

    def test_blank_images(self):
        images = as_inputs([gray_image(128)] * 3)
        pipeline = SfMPipeline()
        model = pipeline.reconstruct(images)

        self.assertFallbackCube(model)
        self.assertIn("insufficient matches", model.failure_reason)
        self.assertEqual(model.reconstruction.error_kind, "InsufficientFeatureMatches")
        self.assertEqual(pipeline.stage_history[-2:],
                         [PipelineStage.PAIR_SELECTING, PipelineStage.FALLEN_BACK])

    def test_single_image(self):
        pipeline = SfMPipeline()
        model = pipeline.reconstruct(as_inputs([gray_image(128)]))

        self.assertFallbackCube(model)
        self.assertEqual(model.source_image_count, 1)
        self.assertEqual(model.reconstruction.error_kind, "InsufficientImages")
        self.assertEqual(pipeline.stage_history,
                         [PipelineStage.EXTRACTING, PipelineStage.FALLEN_BACK])

    def test_no_images(self):
        model = SfMPipeline().reconstruct([])

        self.assertFallbackCube(model)
        self.assertEqual(model.source_image_count, 0)

    def test_undecodable_images_are_skipped(self):
        backend = SyntheticBackend()
        images = [ProcessedImage(data=b"\x00\x01garbage", name="broken.png")]
        images += as_inputs(backend.images()[:2])

        pipeline = synthetic_pipeline(backend)
        model = pipeline.reconstruct(images)

        self.assertEqual([f.image_index for f in pipeline.features], [1, 2])
        self.assertEqual(model.source_image_count, 3)
        self.assertFalse(model.is_fallback)
        self.assertEqual(model.reconstruction.image_pair, (1, 2))

    def test_all_images_undecodable(self):
        images = [ProcessedImage(data=b"junk", name=f"{i}.png") for i in range(3)]
        model = SfMPipeline().reconstruct(images)

        self.assertFallbackCube(model)
        self.assertEqual(model.reconstruction.error_kind, "InsufficientImages")

    def test_degenerate_essential_matrix(self):
        backend = DegenerateEssentialBackend()
        pipeline = synthetic_pipeline(backend)
        model = pipeline.reconstruct(as_inputs(backend.images()))

        self.assertFallbackCube(model)
        self.assertEqual(model.reconstruction.error_kind, "EssentialMatrixEstimationFailure")
        self.assertEqual(pipeline.stage_history[-2:],
                         [PipelineStage.POSE_ESTIMATING, PipelineStage.FALLEN_BACK])

    def test_no_point_survives_validation(self):
        backend = BehindCameraBackend()
        pipeline = synthetic_pipeline(backend)
        model = pipeline.reconstruct(as_inputs(backend.images()))

        self.assertFallbackCube(model)
        self.assertEqual(model.reconstruction.error_kind, "EmptyReconstruction")
        self.assertEqual(model.reconstruction.points, [])
        self.assertGreater(model.reconstruction.dropped["behind_camera"], 0)
        self.assertFalse(any(camera.valid for camera in model.reconstruction.cameras))
        self.assertEqual(pipeline.stage_history[-2:],
                         [PipelineStage.ASSEMBLING, PipelineStage.FALLEN_BACK])

    def test_pose_inlier_shortfall(self):
        backend = SyntheticBackend(n_points=40)
        config = PipelineConfig(min_pair_matches=20, num_workers=1)
        pipeline = SfMPipeline(config, backend=backend)
        pipeline.extractor.equalize = False

        model = pipeline.reconstruct(as_inputs(backend.images()))

        self.assertFallbackCube(model)
        self.assertEqual(model.reconstruction.error_kind, "PoseRecoveryInlierShortfall")


class TestAssembly(unittest.TestCase):

    def test_flat_buffers(self):
        result = ReconstructionResult(success=True, points=[
            Point3D(position=np.array([0.0, 1.0, 2.0]), color=np.array([255, 0, 0], np.uint8),
                    confidence=1.0, reprojection_error=0.0),
            Point3D(position=np.array([2.0, 1.0, 0.0]), color=np.array([0, 0, 255], np.uint8),
                    confidence=0.5, reprojection_error=1.0),
        ])

        model = PointCloudAssembler().assemble(result, source_image_count=4)

        np.testing.assert_allclose(model.vertices, [0, 1, 2, 2, 1, 0])
        np.testing.assert_allclose(model.colors, [1, 0, 0, 0, 0, 1])
        self.assertEqual(model.face_count, 0)
        np.testing.assert_allclose(model.bounds['center'], [1, 1, 1])
        self.assertAlmostEqual(model.bounds['radius'], np.sqrt(2))

    def test_empty_result(self):
        model = PointCloudAssembler().assemble(ReconstructionResult(success=True), 2)

        self.assertTrue(model.is_empty)
        self.assertFalse(model.is_fallback)

    def test_fallback_is_deterministic(self):
        a = FallbackModelGenerator().generate(3, "reason")
        b = FallbackModelGenerator().generate(3, "reason")

        np.testing.assert_array_equal(a.vertices, b.vertices)
        np.testing.assert_array_equal(a.faces, b.faces)
        np.testing.assert_allclose(a.colors, FallbackModelGenerator.GREY)
        self.assertEqual(a.failure_reason, "reason")


if __name__ == '__main__':
    unittest.main()
