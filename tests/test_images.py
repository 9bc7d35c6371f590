"""
Image intake and configuration tests
"""

import base64
import sys
import tempfile
import cv2
import numpy as np
from pathlib import Path
import unittest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from vision3d.core.backend import HeuristicBackend, RobustBackend, resolve_backend
from vision3d.core.config import PipelineConfig
from vision3d.core.errors import ImageDecodeFailure
from vision3d.core.images import ProcessedImage, decode_image
from vision3d.core.utils import list_images, save_ply


class TestDecodeImage(unittest.TestCase):

    def setUp(self):
        self.bgr = np.zeros((20, 30, 3), dtype=np.uint8)
        self.bgr[:, :, 2] = 200     # red in BGR order

    def test_png_bytes(self):
        ok, png = cv2.imencode('.png', self.bgr)
        self.assertTrue(ok)

        image = decode_image(png.tobytes(), "a.png")

        self.assertEqual(image.shape, (20, 30, 3))
        np.testing.assert_array_equal(image, self.bgr)

    def test_data_url(self):
        ok, png = cv2.imencode('.png', self.bgr)
        url = "data:image/png;base64," + base64.b64encode(png.tobytes()).decode('ascii')

        image = ProcessedImage(data=url, name="inline").decode()

        np.testing.assert_array_equal(image, self.bgr)

    def test_data_url_without_base64(self):
        with self.assertRaises(ImageDecodeFailure):
            decode_image("data:image/png,abc", "inline")

    def test_rgba_png_keeps_alpha(self):
        bgra = np.dstack([self.bgr, np.zeros((20, 30), dtype=np.uint8)])
        bgra[5:15, 5:25, 3] = 255
        ok, png = cv2.imencode('.png', bgra)

        image = decode_image(png.tobytes())

        self.assertEqual(image.shape, (20, 30, 4))
        self.assertEqual(image[0, 0, 3], 0)
        self.assertEqual(image[10, 10, 3], 255)

    def test_rgb_array_converted_to_bgr(self):
        rgb = np.zeros((4, 4, 3), dtype=np.uint8)
        rgb[:, :, 0] = 255

        image = decode_image(rgb)

        self.assertEqual(image[0, 0, 2], 255)
        self.assertEqual(image[0, 0, 0], 0)

    def test_float_array_scaled(self):
        image = decode_image(np.full((4, 4), 0.5, dtype=np.float32))

        self.assertEqual(image.dtype, np.uint8)
        self.assertEqual(image[0, 0], 127)

    def test_path(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "image.png"
            cv2.imwrite(str(path), self.bgr)

            np.testing.assert_array_equal(decode_image(path), self.bgr)
            self.assertEqual(list_images(tmp), [path])

    def test_failures(self):
        for data in [b"", b"not an image", "/does/not/exist.png",
                     np.zeros((0, 0, 3), dtype=np.uint8), np.zeros((4, 4, 2), dtype=np.uint8), 42]:
            with self.assertRaises(ImageDecodeFailure):
                decode_image(data, "bad")

    def test_failure_is_not_fatal(self):
        self.assertFalse(ImageDecodeFailure("x").fatal)


class TestConfigAndBackends(unittest.TestCase):

    def test_defaults(self):
        config = PipelineConfig()

        self.assertEqual(config.ratio_threshold, 0.75)
        self.assertEqual(config.min_pair_matches, 50)
        self.assertEqual(config.min_pose_inliers, 50)
        self.assertEqual(config.max_reprojection_error, 2.0)
        self.assertEqual(config.max_matches_per_pair, 200)

    def test_fast_preset(self):
        config = PipelineConfig.fast(random_seed=5)

        self.assertEqual(config.max_features, 500)
        self.assertEqual(config.max_image_dimension, 800)
        self.assertEqual(config.random_seed, 5)

    def test_replace_keeps_original(self):
        config = PipelineConfig()
        changed = config.replace(backend="heuristic")

        self.assertEqual(config.backend, "robust")
        self.assertEqual(changed.backend, "heuristic")
        self.assertEqual(changed.to_dict()['backend'], "heuristic")

    def test_resolve_backend(self):
        robust = resolve_backend("robust", "orb")
        self.assertIsInstance(robust, RobustBackend)
        self.assertTrue(robust.ready)
        self.assertEqual(robust.descriptor_kind, "binary")

        self.assertIsInstance(resolve_backend("Heuristic"), HeuristicBackend)

        with self.assertRaises(ValueError):
            resolve_backend("unknown")

    def test_backend_used_before_initialize(self):
        backend = HeuristicBackend()

        with self.assertRaises(RuntimeError):
            with backend.matcher():
                pass

    def test_save_ply(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "out" / "cloud.ply"
            save_ply(np.zeros((2, 3)), np.array([[255, 0, 0], [0, 255, 0]]), path)

            lines = path.read_text().splitlines()
            self.assertIn("element vertex 2", lines)
            self.assertEqual(lines[-1], "0.000000 0.000000 0.000000 0 255 0")


class TestCommandLine(unittest.TestCase):

    def test_blank_images_write_fallback_mesh(self):
        from vision3d.run_reconstruction import main
        from vision3d.core.sfm_pipeline import SfMPipeline

        with tempfile.TemporaryDirectory() as tmp:
            for i in range(3):
                cv2.imwrite(str(Path(tmp) / f"{i:02d}.png"), np.full((60, 80, 3), 128, np.uint8))

            self.assertEqual([p.name for p in SfMPipeline.load_images(tmp, max_images=2)],
                             ["00.png", "01.png"])

            output = Path(tmp) / "model.ply"
            code = main([tmp, "--fast", "--output", str(output)])

            self.assertEqual(code, 2)
            text = output.read_text()
            self.assertIn("element vertex 8", text)
            self.assertIn("element face 12", text)

    def test_missing_directory(self):
        from vision3d.run_reconstruction import main

        self.assertEqual(main(["/does/not/exist"]), 1)


if __name__ == '__main__':
    unittest.main()
