"""
Reconstruction failure taxonomy

Per-image and per-point errors are absorbed where they occur. Stage errors
abort the geometric reconstruction and are turned into the fallback model by
the pipeline.
"""


class ReconstructionError(Exception):
    """Base class for every reconstruction failure"""

    #: Whether the failure aborts the geometric stage
    fatal = True


class ImageDecodeFailure(ReconstructionError):
    """An input image could not be decoded; the image is skipped"""
    fatal = False

    def __init__(self, name: str, reason: str = "could not decode image"):
        self.name = name
        super().__init__(f"{name}: {reason}")


class InsufficientImages(ReconstructionError):
    """Fewer than two usable images survived decoding"""

    def __init__(self, count: int, required: int = 2):
        self.count = count
        self.required = required
        super().__init__(
            f"insufficient images for reconstruction: {count} usable, {required} required"
        )


class InsufficientFeatureMatches(ReconstructionError):
    """No image pair has enough correspondences to seed reconstruction"""

    def __init__(self, best_count: int = 0, required: int = 0):
        self.best_count = best_count
        self.required = required
        super().__init__(
            f"insufficient matches for reconstruction "
            f"(best pair: {best_count}, required: {required})"
        )


class EssentialMatrixEstimationFailure(ReconstructionError):
    """Robust essential matrix estimation returned a degenerate result"""


class PoseRecoveryInlierShortfall(ReconstructionError):
    """Pose recovery kept too few inliers"""

    def __init__(self, inliers: int, required: int):
        self.inliers = inliers
        self.required = required
        super().__init__(
            f"pose recovery kept {inliers} inliers, {required} required"
        )


class DegenerateTriangulation(ReconstructionError):
    """Homogeneous weight of a triangulated point is numerically zero"""
    fatal = False


class EmptyReconstruction(ReconstructionError):
    """No triangulated point survived validation"""

    def __init__(self, message: str = "no 3D points survived validation"):
        super().__init__(message)
