"""
Types and helpers shared by the SIFT- and SURF-style extractors.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
from scipy import ndimage

from sfm_recon.errors import SingularMatrixError


@dataclass(frozen=True)
class Keypoint:
    """Scale-space location in octave pixel units."""

    octave: int
    # Intra-octave scale sample, sub-sample accurate after localization.
    sample: float
    x: float
    y: float


@dataclass
class Descriptor:
    """Oriented feature in input image coordinates with its unit feature vector."""

    x: float
    y: float
    scale: float
    # Radians in [0, 2*pi).
    orientation: float
    data: np.ndarray


class FeatureExtractor(abc.ABC):
    """Common interface of the SIFT- and SURF-style extractors."""

    name: str = ""
    descriptor_length: int = 0

    @abc.abstractmethod
    def extract(self, image: np.ndarray) -> List[Descriptor]:
        """
        Detect keypoints and compute their descriptors.

        Raises:
            InvalidImageError: If the image channel count is not 1 or 3.
        """


# 3x3x3 neighborhood without its center.
_NEIGHBORHOOD = np.ones((3, 3, 3), dtype=bool)
_NEIGHBORHOOD[1, 1, 1] = False


def find_scale_space_extrema(
    below: np.ndarray,
    center: np.ndarray,
    above: np.ndarray,
) -> np.ndarray:
    """
    Find strict local extrema of the middle image of a 3-deep stack.

    A pixel is returned if it is strictly greater (or strictly smaller) than
    all 26 neighbors in the 3x3x3 neighborhood. The 1-pixel image border is
    never reported.

    Returns:
        (N, 2) int array of (x, y) positions.
    """
    h, w = center.shape
    if h < 3 or w < 3:
        return np.zeros((0, 2), dtype=int)

    stack = np.stack([below, center, above]).astype(np.float32, copy=False)
    # Only layer 1 is read, for which the footprint never leaves the stack.
    upper = ndimage.maximum_filter(stack, footprint=_NEIGHBORHOOD, mode="nearest")[1]
    lower = ndimage.minimum_filter(stack, footprint=_NEIGHBORHOOD, mode="nearest")[1]

    mask = (stack[1] > upper) | (stack[1] < lower)
    mask[0, :] = False
    mask[-1, :] = False
    mask[:, 0] = False
    mask[:, -1] = False

    ys, xs = np.nonzero(mask)
    return np.column_stack([xs, ys]).astype(int)


def taylor_terms(cube: np.ndarray):
    """
    Gradient and Hessian of a 3x3x3 (scale, y, x) neighborhood at its center
    by central differences.

    Returns:
        Tuple of (gradient (3,), hessian (3, 3)) ordered (x, y, scale).
    """
    c = np.asarray(cube, dtype=np.float64)
    center = c[1, 1, 1]

    dx = 0.5 * (c[1, 1, 2] - c[1, 1, 0])
    dy = 0.5 * (c[1, 2, 1] - c[1, 0, 1])
    ds = 0.5 * (c[2, 1, 1] - c[0, 1, 1])

    dxx = c[1, 1, 2] + c[1, 1, 0] - 2.0 * center
    dyy = c[1, 2, 1] + c[1, 0, 1] - 2.0 * center
    dss = c[2, 1, 1] + c[0, 1, 1] - 2.0 * center

    dxy = 0.25 * (c[1, 2, 2] + c[1, 0, 0] - c[1, 2, 0] - c[1, 0, 2])
    dxs = 0.25 * (c[2, 1, 2] + c[0, 1, 0] - c[2, 1, 0] - c[0, 1, 2])
    dys = 0.25 * (c[2, 2, 1] + c[0, 0, 1] - c[2, 0, 1] - c[0, 2, 1])

    gradient = np.array([dx, dy, ds])
    hessian = np.array(
        [
            [dxx, dxy, dxs],
            [dxy, dyy, dys],
            [dxs, dys, dss],
        ]
    )
    return gradient, hessian


def solve_offset(
    gradient: np.ndarray,
    hessian: np.ndarray,
    det_epsilon: float,
) -> np.ndarray:
    """
    Offset -H^-1 g to the extremum of the quadratic fit.

    Raises:
        SingularMatrixError: If |det(H)| is below det_epsilon.
    """
    det = float(np.linalg.det(hessian))
    if abs(det) < det_epsilon:
        raise SingularMatrixError(f"Hessian determinant {det:.3e} too small")
    return -np.linalg.solve(hessian, gradient)


def normalize_descriptor(vector: np.ndarray, clip: float = 0.2) -> Optional[np.ndarray]:
    """
    Normalize to unit length while bounding every component by `clip`.

    The vector is normalized, components above the bound are clipped and the
    rest is rescaled such that the result has unit length again with the
    clipped components still at the bound (the usual normalize / clip /
    renormalize, solved exactly). Signs are kept.

    Returns:
        float32 unit vector, or None for zero vectors and vectors with too few
        non-zero components to reach unit length under the bound.
    """
    vec = np.asarray(vector, dtype=np.float64).ravel()
    norm = float(np.linalg.norm(vec))
    if not np.isfinite(norm) or norm <= 0.0:
        return None

    mag = np.abs(vec) / norm
    if mag.max() <= clip:
        return (vec / norm).astype(np.float32)

    sorted_mag = np.sort(mag)[::-1]
    # tail[k]: energy of everything except the k largest components.
    tail = np.cumsum((sorted_mag ** 2)[::-1])[::-1]
    budget = 1.0 - np.arange(len(vec)) * clip * clip
    valid = (budget > 0.0) & (tail > 0.0)
    scale = np.zeros_like(tail)
    scale[valid] = np.sqrt(budget[valid] / tail[valid])
    fits = valid & (sorted_mag * scale <= clip)
    if not np.any(fits):
        return None

    k = int(np.argmax(fits))
    out = np.minimum(mag * scale[k], clip) * np.sign(vec)
    return out.astype(np.float32)


__all__ = [
    "Keypoint",
    "Descriptor",
    "FeatureExtractor",
    "find_scale_space_extrema",
    "taylor_terms",
    "solve_offset",
    "normalize_descriptor",
]
