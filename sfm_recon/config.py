"""
Option structs for every pipeline stage.

All configuration is passed explicitly through these dataclasses; nothing in
the package reads global state.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class SiftOptions:
    """Parameters of the SIFT-style extractor."""

    # Number of DoG samples per octave (S). Each octave holds S+3 blurred
    # images and S+2 difference-of-Gaussian images.
    num_samples_per_octave: int = 3
    # -1 adds a 2x upsampled octave; 0 starts at the input resolution.
    min_octave: int = 0
    max_octave: int = 4
    # Negative means 0.02 / num_samples_per_octave.
    contrast_threshold: float = -1.0
    # Lowe's r; keypoints with tr(H)^2 / det(H) > (r+1)^2 / r are edges.
    edge_ratio_threshold: float = 10.0
    base_blur_sigma: float = 1.6
    # Blur already present in the input image.
    inherent_blur_sigma: float = 0.5
    verbose_output: bool = False
    debug_output: bool = False

    def __post_init__(self) -> None:
        if self.num_samples_per_octave < 1:
            raise ValueError("num_samples_per_octave must be >= 1")
        if self.min_octave < -1 or self.min_octave > self.max_octave:
            raise ValueError(
                f"Invalid octave range [{self.min_octave}, {self.max_octave}]"
            )
        if self.edge_ratio_threshold <= 0:
            raise ValueError("edge_ratio_threshold must be positive")
        if self.inherent_blur_sigma >= self.base_blur_sigma:
            raise ValueError("inherent_blur_sigma must be below base_blur_sigma")

    @property
    def effective_contrast_threshold(self) -> float:
        if self.contrast_threshold < 0.0:
            return 0.02 / float(self.num_samples_per_octave)
        return self.contrast_threshold


@dataclass
class SurfOptions:
    """Parameters of the SURF-style extractor."""

    # Threshold on the interpolated Hessian response (8-bit intensity units).
    contrast_threshold: float = 500.0
    # Skip orientation assignment and use orientation 0.
    upright_descriptor: bool = False
    verbose_output: bool = False
    debug_output: bool = False

    def __post_init__(self) -> None:
        if self.contrast_threshold < 0:
            raise ValueError("contrast_threshold must be non-negative")


@dataclass
class MatchingOptions:
    """Parameters of the mutual nearest-neighbour matcher."""

    descriptor_length: int = 128
    # Ratio of nearest to second-nearest distance; 0.8 for SIFT, 0.7 for SURF.
    lowe_ratio_threshold: float = 0.8
    # Absolute limit on the nearest-neighbour distance.
    distance_threshold: float = math.inf
    # Rows of the first set processed per distance block.
    block_size: int = 1024
    verbose_output: bool = False

    def __post_init__(self) -> None:
        if self.descriptor_length < 1:
            raise ValueError("descriptor_length must be positive")
        if not 0.0 < self.lowe_ratio_threshold <= 1.0:
            raise ValueError("lowe_ratio_threshold must be in (0, 1]")
        if self.distance_threshold <= 0:
            raise ValueError("distance_threshold must be positive")
        if self.block_size < 1:
            raise ValueError("block_size must be positive")


@dataclass
class RansacFundamentalOptions:
    """Parameters of the two-view (8-point) RANSAC."""

    max_iterations: int = 1000
    # Lower the iteration cap to what the best inlier ratio so far needs
    # (99% chance of one all-inlier sample).
    adaptive_iterations: bool = False
    # Pixel threshold; a correspondence is an inlier when its Sampson
    # distance is below threshold^2.
    threshold: float = 3.0
    # Seed for the sample generator, None draws fresh entropy.
    seed: Optional[int] = None
    verbose_output: bool = False

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.threshold <= 0:
            raise ValueError("threshold must be positive")


@dataclass
class RansacPoseOptions:
    """Parameters of the 6-point absolute pose RANSAC."""

    max_iterations: int = 1000
    # Lower the iteration cap to what the best inlier ratio so far needs
    # (99% chance of one all-inlier sample).
    adaptive_iterations: bool = False
    # Reprojection error threshold in pixels.
    threshold: float = 4.0
    # Nonlinear reprojection refinement over the final inliers.
    refine: bool = True
    # Take the focal length from the resection (principal point stays known)
    # instead of the supplied calibration.
    estimate_focal_length: bool = False
    seed: Optional[int] = None
    verbose_output: bool = False

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.threshold <= 0:
            raise ValueError("threshold must be positive")


@dataclass
class RansacHomographyOptions:
    """Parameters of the 4-point homography RANSAC."""

    max_iterations: int = 1000
    # Lower the iteration cap to what the best inlier ratio so far needs
    # (99% chance of one all-inlier sample).
    adaptive_iterations: bool = False
    # Symmetric transfer error threshold in pixels.
    threshold: float = 3.0
    seed: Optional[int] = None
    verbose_output: bool = False

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.threshold <= 0:
            raise ValueError("threshold must be positive")


@dataclass
class BundlerOptions:
    """Top-level parameters of the incremental reconstruction."""

    # "sift" or "surf".
    feature_type: str = "sift"
    sift_options: SiftOptions = field(default_factory=SiftOptions)
    surf_options: SurfOptions = field(default_factory=SurfOptions)
    # None picks the matching defaults for the feature type.
    matching_options: Optional[MatchingOptions] = None
    fundamental_options: RansacFundamentalOptions = field(
        default_factory=RansacFundamentalOptions
    )
    pose_options: RansacPoseOptions = field(default_factory=RansacPoseOptions)
    homography_options: RansacHomographyOptions = field(
        default_factory=RansacHomographyOptions
    )
    # Images are halved until width * height fits.
    max_image_pixels: int = 6000000
    # Pairs with fewer matches are not used for geometry.
    min_feature_matches: int = 24
    min_pose_correspondences: int = 6
    # Newly triangulated points above this error (pixels) are dropped.
    max_reprojection_error: float = 8.0
    # Worker threads for extraction and matching, None uses the CPU count.
    max_workers: Optional[int] = None
    # Free descriptor buffers of posed views once nothing matches against them.
    discard_descriptors: bool = False
    verbose_output: bool = False

    def __post_init__(self) -> None:
        if self.feature_type not in ("sift", "surf"):
            raise ValueError(f"Unknown feature type: {self.feature_type!r}")
        if self.max_image_pixels < 1:
            raise ValueError("max_image_pixels must be positive")
        if self.min_pose_correspondences < 6:
            raise ValueError("min_pose_correspondences must be >= 6")
        if self.min_feature_matches < 1:
            raise ValueError("min_feature_matches must be positive")
        if self.max_reprojection_error <= 0:
            raise ValueError("max_reprojection_error must be positive")
        if self.matching_options is None:
            if self.feature_type == "sift":
                self.matching_options = MatchingOptions(
                    descriptor_length=128, lowe_ratio_threshold=0.8
                )
            else:
                self.matching_options = MatchingOptions(
                    descriptor_length=64, lowe_ratio_threshold=0.7
                )


__all__ = [
    "SiftOptions",
    "SurfOptions",
    "MatchingOptions",
    "RansacFundamentalOptions",
    "RansacPoseOptions",
    "RansacHomographyOptions",
    "BundlerOptions",
]
