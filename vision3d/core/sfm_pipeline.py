"""
Structure from Motion Pipeline

Two-view SfM:
1. Extract features from every image
2. Match all image pairs
3. Select the best seed pair
4. Recover relative pose and triangulate
5. Assemble a point cloud, or fall back to a placeholder model
"""
import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from .assembly import FallbackModelGenerator, Generated3DModel, PointCloudAssembler
from .backend import FeatureBackend, resolve_backend
from .camera import CameraIntrinsics, estimate_intrinsics
from .config import PipelineConfig
from .errors import (
    EmptyReconstruction,
    ImageDecodeFailure,
    InsufficientImages,
    ReconstructionError,
)
from .features import FeatureExtractor, FeatureMatcher
from .images import ProcessedImage
from .pairs import PairSelector
from .two_view import TwoViewReconstructor
from .types import Correspondence, ImageFeatureSet, PipelineStage, ReconstructionResult
from .utils import list_images


logger = logging.getLogger(__name__)


ProgressCallback = Callable[[PipelineStage, float], None]


# Fraction of the run completed when a stage starts
STAGE_PROGRESS = {
    PipelineStage.IDLE: 0.0,
    PipelineStage.EXTRACTING: 0.0,
    PipelineStage.MATCHING: 0.3,
    PipelineStage.PAIR_SELECTING: 0.6,
    PipelineStage.POSE_ESTIMATING: 0.65,
    PipelineStage.TRIANGULATING: 0.8,
    PipelineStage.ASSEMBLING: 0.9,
    PipelineStage.SUCCEEDED: 1.0,
    PipelineStage.FALLEN_BACK: 1.0,
}


class SfMPipeline:
    """
    Two-view Structure from Motion pipeline

    Never raises to its caller: every failure yields the fallback model,
    with the reason recorded on the model and on self.result.
    """

    def __init__(self, config: Optional[PipelineConfig] = None,
                 backend: Union[str, FeatureBackend, None] = None,
                 progress_callback: Optional[ProgressCallback] = None):
        """
        Args:
            config: thresholds and switches (defaults if omitted)
            backend: backend name or instance, overrides config.backend
            progress_callback: called with (stage, fraction) on each transition

        Raises:
            ValueError: unknown backend name
        """
        self.config = config or PipelineConfig()
        self.progress_callback = progress_callback

        self.backend = resolve_backend(
            backend if backend is not None else self.config.backend,
            self.config.descriptor
        )

        cfg = self.config
        self.extractor = FeatureExtractor(
            self.backend,
            max_features=cfg.max_features,
            max_image_dimension=cfg.max_image_dimension,
            use_alpha_mask=cfg.use_alpha_mask
        )
        self.matcher = FeatureMatcher(
            self.backend,
            ratio_threshold=cfg.ratio_threshold,
            max_distance=cfg.max_descriptor_distance,
            symmetric=cfg.symmetric_matching,
            min_symmetric_matches=cfg.min_symmetric_matches,
            max_matches=cfg.max_matches_per_pair
        )
        self.pair_selector = PairSelector(min_matches=cfg.min_pair_matches)
        self.reconstructor = TwoViewReconstructor(
            self.backend,
            ransac_confidence=cfg.ransac_confidence,
            ransac_threshold=cfg.ransac_threshold,
            ransac_max_iterations=cfg.ransac_max_iterations,
            min_inliers=cfg.min_pose_inliers,
            max_reprojection_error=cfg.max_reprojection_error,
            random_seed=cfg.random_seed
        )
        self.assembler = PointCloudAssembler()
        self.fallback = FallbackModelGenerator()

        # State of the last run
        self.stage = PipelineStage.IDLE
        self.stage_history: List[PipelineStage] = []
        self.last_error: Optional[ReconstructionError] = None     # raised by the last run
        self.features: List[ImageFeatureSet] = []
        self.correspondences: List[Correspondence] = []
        self.intrinsics: Optional[CameraIntrinsics] = None
        self.result: Optional[ReconstructionResult] = None

        logger.debug("Pipeline configured: %s", cfg.to_dict())

    @staticmethod
    def load_images(image_dir: Union[str, Path],
                    max_images: Optional[int] = None) -> List[ProcessedImage]:
        """Wrap the image files of a directory as ProcessedImage inputs"""
        return [
            ProcessedImage(data=path, name=path.name)
            for path in list_images(image_dir, max_images)
        ]

    def _reset(self):
        self.stage = PipelineStage.IDLE
        self.stage_history = []
        self.last_error = None
        self.features = []
        self.correspondences = []
        self.intrinsics = None
        self.result = None

    def _enter(self, stage: PipelineStage, fraction: Optional[float] = None):
        self.stage = stage
        self.stage_history.append(stage)
        logger.debug("Stage: %s", stage.value)

        if self.progress_callback is not None:
            if fraction is None:
                fraction = STAGE_PROGRESS[stage]
            try:
                self.progress_callback(stage, fraction)
            except Exception:
                logger.exception("Progress callback failed at stage %s", stage.value)

    def _extract_one(self, image: ProcessedImage, index: int) -> Optional[ImageFeatureSet]:
        try:
            return self.extractor.extract_image(image, index)
        except ImageDecodeFailure as e:
            logger.warning("Skipping image %d: %s", index, e)
            return None

    async def _extract_features(self, loop, executor,
                                images: Sequence[ProcessedImage]) -> List[ImageFeatureSet]:
        tasks = [
            loop.run_in_executor(executor, self._extract_one, image, i)
            for i, image in enumerate(images)
        ]
        results = await asyncio.gather(*tasks)
        return [features for features in results if features is not None]

    async def _match_features(self, loop, executor,
                              feature_sets: Sequence[ImageFeatureSet]) -> List[Correspondence]:
        pairs = self.matcher.image_pairs(len(feature_sets))
        tasks = [
            loop.run_in_executor(executor, self.matcher.match,
                                 feature_sets[i], feature_sets[j])
            for i, j in pairs
        ]
        per_pair = await asyncio.gather(*tasks)

        for (i, j), matches in zip(pairs, per_pair):
            logger.debug("Pair %d-%d: %d matches",
                         feature_sets[i].image_index, feature_sets[j].image_index, len(matches))

        return self.matcher.merge(per_pair, self.config.max_total_correspondences)

    async def generate_model(self, images: Sequence[ProcessedImage]) -> Generated3DModel:
        """
        Reconstruct a model from background-removed images

        Args:
            images: input images, order defines image indices

        Returns:
            Point cloud model, or the fallback cube if reconstruction failed
        """
        t0 = time.time()
        self._reset()

        images = list(images)
        cfg = self.config

        if cfg.max_images and len(images) > cfg.max_images:
            logger.warning("Using the first %d of %d images", cfg.max_images, len(images))
            images = images[:cfg.max_images]

        source_count = len(images)

        try:
            loop = asyncio.get_running_loop()

            with ThreadPoolExecutor(max_workers=max(1, cfg.num_workers)) as executor:
                self._enter(PipelineStage.EXTRACTING)
                self.features = await self._extract_features(loop, executor, images)

                if len(self.features) < cfg.min_images:
                    raise InsufficientImages(len(self.features), cfg.min_images)

                if len(self.features) < cfg.recommended_images:
                    logger.warning("Only %d usable images; %d or more give more reliable results",
                                   len(self.features), cfg.recommended_images)

                logger.info("Extracted features from %d/%d images: %s",
                            len(self.features), source_count,
                            [len(f) for f in self.features])

                first = self.features[0]
                self.intrinsics = estimate_intrinsics(
                    first.image_size[0], first.image_size[1], cfg.focal_factor
                )

                self._enter(PipelineStage.MATCHING)
                self.correspondences = await self._match_features(loop, executor, self.features)

            logger.info("Matched %d image pairs: %d correspondences",
                        len(self.matcher.image_pairs(len(self.features))),
                        len(self.correspondences))

            self._enter(PipelineStage.PAIR_SELECTING)
            (i, j), matches = self.pair_selector.select(self.correspondences)

            by_index: Dict[int, ImageFeatureSet] = {f.image_index: f for f in self.features}
            self.result = self.reconstructor.reconstruct(
                by_index[i], by_index[j], matches, self.intrinsics, on_stage=self._enter
            )

            if not self.result.success:
                return self._fall_back(source_count, self.result.failure_reason,
                                       error_kind=self.result.error_kind)

            self._enter(PipelineStage.ASSEMBLING)
            model = self.assembler.assemble(self.result, source_count)

            if model.is_empty:
                raise EmptyReconstruction()

        except ReconstructionError as e:
            self.last_error = e
            return self._fall_back(source_count, str(e), error_kind=type(e).__name__)
        except Exception as e:
            logger.exception("Unexpected error during reconstruction")
            return self._fall_back(source_count, f"unexpected error: {e}",
                                   error_kind=type(e).__name__)

        self._enter(PipelineStage.SUCCEEDED)
        logger.info("Reconstruction succeeded: %d points from pair %d-%d in %.1fs",
                    model.vertex_count, i, j, time.time() - t0)
        return model

    def _fall_back(self, source_count: int, reason: Optional[str],
                   error_kind: Optional[str] = None) -> Generated3DModel:
        logger.warning("Reconstruction failed (%s): %s; using fallback model",
                       error_kind or "unknown", reason)

        if self.result is None:
            self.result = ReconstructionResult.failure(reason, error_kind)
        elif self.result.success:
            self.result.success = False
            self.result.failure_reason = reason
            self.result.error_kind = error_kind

        self._enter(PipelineStage.FALLEN_BACK)
        return self.fallback.generate(source_count, reason, reconstruction=self.result)

    def reconstruct(self, images: Sequence[ProcessedImage]) -> Generated3DModel:
        """
        Synchronous wrapper around generate_model()

        Must not be called from a running event loop; await generate_model() there.
        """
        return asyncio.run(self.generate_model(images))
