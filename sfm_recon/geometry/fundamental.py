"""
Fundamental matrix estimation using normalized 8-point algorithm and RANSAC.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from sfm_recon.config import RansacFundamentalOptions
from sfm_recon.errors import InsufficientCorrespondencesError, SingularMatrixError
from sfm_recon.geometry.ransac import (
    StopCallback,
    adaptive_iteration_limit,
    draw_sample,
    make_rng,
    should_stop_now,
)

# Relative size of the second-smallest singular value below which the
# linear system has no unique solution.
DEGENERACY_THRESHOLD = 1e-10


def normalize_points(pts: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Normalize 2D points by centering and scaling (Hartley normalization).

    The centroid is moved to the origin and the mean distance to the origin
    becomes sqrt(2).

    Args:
        pts: Array of points (N, 2).

    Returns:
        Tuple of (normalized_pts, T) where:
        - normalized_pts: Normalized points (N, 2).
        - T: Transformation matrix (3x3) that normalizes pts.
    """
    pts = np.asarray(pts, dtype=np.float64)
    mean = np.mean(pts, axis=0)
    centered = pts - mean
    mean_dist = np.mean(np.linalg.norm(centered, axis=1))
    scale = np.sqrt(2.0) / mean_dist if mean_dist > 0 else 1.0

    T = np.array(
        [
            [scale, 0, -scale * mean[0]],
            [0, scale, -scale * mean[1]],
            [0, 0, 1],
        ],
        dtype=np.float64,
    )

    normalized_pts = centered * scale
    return normalized_pts, T


def _epipolar_system(pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """Rows [x2x1, x2y1, x2, y2x1, y2y1, y2, x1, y1, 1] of x2^T F x1 = 0."""
    x1, y1 = pts1[:, 0], pts1[:, 1]
    x2, y2 = pts2[:, 0], pts2[:, 1]
    ones = np.ones_like(x1)
    return np.column_stack([x2 * x1, x2 * y1, x2, y2 * x1, y2 * y1, y2, x1, y1, ones])


def fundamental_8_point(pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """
    Linear least-squares fundamental matrix from >= 8 correspondences,
    without normalization or rank enforcement.

    Raises:
        SingularMatrixError: If the system has no unique solution.
    """
    A = _epipolar_system(pts1, pts2)
    _, S, Vt = np.linalg.svd(A)
    if S[0] <= 0 or S[7] <= DEGENERACY_THRESHOLD * S[0]:
        raise SingularMatrixError("Degenerate 8-point configuration")
    return Vt[-1].reshape(3, 3)


def enforce_fundamental_constraints(F: np.ndarray) -> np.ndarray:
    """
    Enforce rank-2 constraint on fundamental matrix using SVD.

    Args:
        F: Fundamental matrix (3x3).

    Returns:
        Rank-2 constrained fundamental matrix (3x3).
    """
    U, S, Vt = np.linalg.svd(F)
    # Zero out smallest singular value
    S[2] = 0
    return U @ np.diag(S) @ Vt


def enforce_essential_constraints(E: np.ndarray) -> np.ndarray:
    """Project onto the essential manifold: singular values (s, s, 0)."""
    U, S, Vt = np.linalg.svd(E)
    avg = (S[0] + S[1]) / 2.0
    return U @ np.diag([avg, avg, 0.0]) @ Vt


def estimate_fundamental_matrix(
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> np.ndarray:
    """
    Estimate fundamental matrix using normalized 8-point algorithm.

    Args:
        pts1: Points in first image (N, 2).
        pts2: Points in second image (N, 2).

    Returns:
        Fundamental matrix F (3x3), rank 2, unit Frobenius norm.

    Raises:
        InsufficientCorrespondencesError: If fewer than 8 correspondences are provided.
        SingularMatrixError: If the correspondences are degenerate.
    """
    if len(pts1) < 8:
        raise InsufficientCorrespondencesError(8, len(pts1))

    pts1_norm, T1 = normalize_points(pts1)
    pts2_norm, T2 = normalize_points(pts2)

    F = fundamental_8_point(pts1_norm, pts2_norm)
    F = enforce_fundamental_constraints(F)

    # Denormalize: F = T2^T @ F @ T1
    F = T2.T @ F @ T1
    return F / np.linalg.norm(F)


def sampson_distance(F: np.ndarray, pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """
    First-order geometric error of x2^T F x1 = 0, in squared pixels.

    Returns:
        (N,) array of Sampson distances.
    """
    ones = np.ones((len(pts1), 1))
    x1 = np.hstack([pts1, ones])
    x2 = np.hstack([pts2, ones])
    Fx1 = x1 @ F.T
    Ftx2 = x2 @ F
    numerator = np.sum(x2 * Fx1, axis=1) ** 2
    denominator = Fx1[:, 0] ** 2 + Fx1[:, 1] ** 2 + Ftx2[:, 0] ** 2 + Ftx2[:, 1] ** 2
    with np.errstate(divide="ignore", invalid="ignore"):
        dist = numerator / denominator
    return np.where(denominator > 0, dist, np.inf)


@dataclass
class RansacFundamentalResult:
    """Winning hypothesis of the two-view RANSAC."""

    F: np.ndarray
    # Indices of the inlier correspondences.
    inliers: np.ndarray
    num_iterations: int = 0
    # Best-so-far inlier count after each iteration.
    history: List[int] = field(default_factory=list)


def fundamental_matrix_ransac(
    pts1: np.ndarray,
    pts2: np.ndarray,
    options: Optional[RansacFundamentalOptions] = None,
    should_stop: StopCallback = None,
) -> RansacFundamentalResult:
    """
    Estimate fundamental matrix using RANSAC.

    Every iteration solves the 8-point problem on a random minimal sample
    (normalized for conditioning), enforces rank 2 and counts correspondences
    whose Sampson distance is below threshold^2. A hypothesis replaces the
    current best only with strictly more inliers. The final matrix is
    re-estimated from all inliers of the best hypothesis.

    Args:
        pts1: Points in first image (N, 2).
        pts2: Points in second image (N, 2).
        options: RANSAC options.
        should_stop: Checked between iterations; ends the loop early.

    Raises:
        InsufficientCorrespondencesError: If fewer than 8 correspondences are given.
        SingularMatrixError: If every sample was degenerate.
    """
    options = options if options is not None else RansacFundamentalOptions()
    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)
    if len(pts1) != len(pts2):
        raise ValueError("Point sets must have the same length")
    if len(pts1) < 8:
        raise InsufficientCorrespondencesError(8, len(pts1))

    rng = make_rng(options.seed)
    threshold_sq = options.threshold ** 2
    best_inliers = np.zeros(0, dtype=int)
    history: List[int] = []
    num_singular = 0
    num_iterations = 0
    max_iterations = options.max_iterations

    while num_iterations < max_iterations:
        if should_stop_now(should_stop):
            break
        num_iterations += 1

        sample = draw_sample(rng, len(pts1), 8)
        try:
            F = estimate_fundamental_matrix(pts1[sample], pts2[sample])
        except SingularMatrixError:
            num_singular += 1
            history.append(len(best_inliers))
            continue

        inliers = np.nonzero(sampson_distance(F, pts1, pts2) < threshold_sq)[0]
        if len(inliers) > len(best_inliers):
            best_inliers = inliers
            if options.adaptive_iterations:
                max_iterations = adaptive_iteration_limit(
                    options.max_iterations, len(best_inliers), len(pts1), 8
                )
        history.append(len(best_inliers))

    if num_iterations > 0 and num_singular == num_iterations:
        raise SingularMatrixError("All 8-point samples were degenerate")

    if len(best_inliers) < 8:
        raise InsufficientCorrespondencesError(8, len(best_inliers), "RANSAC inliers")
    F = estimate_fundamental_matrix(pts1[best_inliers], pts2[best_inliers])

    if options.verbose_output:
        print(
            f"[ransac] F: {len(best_inliers)} of {len(pts1)} inliers "
            f"after {num_iterations} iterations ({num_singular} degenerate samples)"
        )

    return RansacFundamentalResult(
        F=F,
        inliers=best_inliers,
        num_iterations=num_iterations,
        history=history,
    )


__all__ = [
    "normalize_points",
    "fundamental_8_point",
    "enforce_fundamental_constraints",
    "enforce_essential_constraints",
    "estimate_fundamental_matrix",
    "sampson_distance",
    "RansacFundamentalResult",
    "fundamental_matrix_ransac",
]
