"""
Keypoint detection and descriptor extraction.
"""

from __future__ import annotations

from typing import List, Optional, Tuple, Union

import numpy as np

from sfm_recon.config import SiftOptions, SurfOptions
from sfm_recon.features.scale_space import Descriptor, FeatureExtractor
from sfm_recon.features.sift import Sift
from sfm_recon.features.surf import Surf


def create_extractor(
    kind: str = "sift",
    options: Optional[Union[SiftOptions, SurfOptions]] = None,
) -> FeatureExtractor:
    """
    Create a feature extractor by name.

    Args:
        kind: "sift" or "surf".
        options: Matching option struct, or None for the defaults.
    """
    if kind == "sift":
        if options is not None and not isinstance(options, SiftOptions):
            raise ValueError("SIFT extractor needs SiftOptions")
        return Sift(options)
    if kind == "surf":
        if options is not None and not isinstance(options, SurfOptions):
            raise ValueError("SURF extractor needs SurfOptions")
        return Surf(options)
    raise ValueError(f"Unknown feature type: {kind!r}")


def descriptors_to_arrays(
    descriptors: List[Descriptor],
    descriptor_length: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Stack descriptors into (positions, vectors) arrays.

    Returns:
        Tuple of (positions, vectors) where:
        - positions: (N, 2) float32 array of (x, y).
        - vectors: (N, D) float32 array of unit feature vectors.
    """
    if len(descriptors) == 0:
        return (
            np.zeros((0, 2), dtype=np.float32),
            np.zeros((0, descriptor_length), dtype=np.float32),
        )
    positions = np.array([[d.x, d.y] for d in descriptors], dtype=np.float32)
    vectors = np.stack([d.data for d in descriptors]).astype(np.float32)
    return positions, vectors


def detect_keypoints(
    image: np.ndarray,
    use_sift: bool = True,
    options: Optional[Union[SiftOptions, SurfOptions]] = None,
) -> Tuple[List[Descriptor], np.ndarray]:
    """
    Detect keypoints and compute descriptors in an image.

    Args:
        image: Input image (H, W, 3) or (H, W), dtype=uint8 or float in [0, 1].
        use_sift: If True, use the SIFT extractor; otherwise SURF.
        options: Options for the chosen extractor.

    Returns:
        Tuple of (keypoints, descriptors) where:
        - keypoints: List of Descriptor records (position, scale, orientation).
        - descriptors: Array of feature vectors (N, 128) for SIFT, (N, 64) for SURF.

    Raises:
        InvalidImageError: If the image has not 1 or 3 channels.
    """
    extractor = create_extractor("sift" if use_sift else "surf", options)
    keypoints = extractor.extract(image)
    _, descriptors = descriptors_to_arrays(keypoints, extractor.descriptor_length)
    return keypoints, descriptors


__all__ = ["create_extractor", "descriptors_to_arrays", "detect_keypoints"]
