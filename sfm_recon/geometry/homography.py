"""
Homography estimation (4-point DLT) and RANSAC, used to reject image pairs
related by a pure rotation or a planar scene when choosing the initial pair.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from sfm_recon.config import RansacHomographyOptions
from sfm_recon.errors import InsufficientCorrespondencesError, SingularMatrixError
from sfm_recon.geometry.fundamental import normalize_points
from sfm_recon.geometry.ransac import (
    StopCallback,
    adaptive_iteration_limit,
    draw_sample,
    make_rng,
    should_stop_now,
)

DEGENERACY_THRESHOLD = 1e-10


def homography_dlt(pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """
    Homography H with x2 ~ H x1 from >= 4 correspondences (normalized DLT).

    Raises:
        InsufficientCorrespondencesError: Fewer than 4 correspondences.
        SingularMatrixError: Degenerate configuration (e.g. 3 collinear points).
    """
    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)
    if len(pts1) < 4:
        raise InsufficientCorrespondencesError(4, len(pts1))

    p1, T1 = normalize_points(pts1)
    p2, T2 = normalize_points(pts2)

    n = len(p1)
    x1 = np.hstack([p1, np.ones((n, 1))])
    zeros = np.zeros((n, 3))
    u = p2[:, 0:1]
    v = p2[:, 1:2]

    A = np.zeros((2 * n, 9))
    A[0::2] = np.hstack([zeros, -x1, v * x1])
    A[1::2] = np.hstack([x1, zeros, -u * x1])

    _, S, Vt = np.linalg.svd(A)
    if S[0] <= 0 or S[7] <= DEGENERACY_THRESHOLD * S[0]:
        raise SingularMatrixError("Degenerate homography configuration")

    H = np.linalg.inv(T2) @ Vt[-1].reshape(3, 3) @ T1
    if H[2, 2] != 0.0:
        H = H / H[2, 2]
    return H


def _transfer(H: np.ndarray, pts: np.ndarray) -> np.ndarray:
    ph = np.hstack([pts, np.ones((len(pts), 1))]) @ H.T
    with np.errstate(divide="ignore", invalid="ignore"):
        return ph[:, :2] / ph[:, 2:3]


def symmetric_transfer_error(H: np.ndarray, pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """
    Squared symmetric transfer error |x2 - H x1|^2 + |x1 - H^-1 x2|^2.

    Returns:
        (N,) array in squared pixels, inf where a transfer is undefined.
    """
    try:
        H_inv = np.linalg.inv(H)
    except np.linalg.LinAlgError:
        return np.full(len(pts1), np.inf)
    err = np.sum((pts2 - _transfer(H, pts1)) ** 2, axis=1) + np.sum(
        (pts1 - _transfer(H_inv, pts2)) ** 2, axis=1
    )
    return np.where(np.isfinite(err), err, np.inf)


@dataclass
class RansacHomographyResult:
    H: np.ndarray
    inliers: np.ndarray
    num_iterations: int = 0
    history: List[int] = field(default_factory=list)


def homography_ransac(
    pts1: np.ndarray,
    pts2: np.ndarray,
    options: Optional[RansacHomographyOptions] = None,
    should_stop: StopCallback = None,
) -> RansacHomographyResult:
    """
    Estimate a homography with RANSAC; inliers have a symmetric transfer
    error below threshold^2.

    Raises:
        InsufficientCorrespondencesError: Fewer than 4 correspondences.
        SingularMatrixError: Every sample was degenerate.
    """
    options = options if options is not None else RansacHomographyOptions()
    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)
    if len(pts1) < 4:
        raise InsufficientCorrespondencesError(4, len(pts1))

    rng = make_rng(options.seed)
    threshold_sq = options.threshold ** 2
    best_H = np.eye(3)
    best_inliers = np.zeros(0, dtype=int)
    history: List[int] = []
    num_singular = 0
    num_iterations = 0
    max_iterations = options.max_iterations

    while num_iterations < max_iterations:
        if should_stop_now(should_stop):
            break
        num_iterations += 1

        sample = draw_sample(rng, len(pts1), 4)
        try:
            H = homography_dlt(pts1[sample], pts2[sample])
        except SingularMatrixError:
            num_singular += 1
            history.append(len(best_inliers))
            continue

        inliers = np.nonzero(symmetric_transfer_error(H, pts1, pts2) < threshold_sq)[0]
        if len(inliers) > len(best_inliers):
            best_H = H
            best_inliers = inliers
            if options.adaptive_iterations:
                max_iterations = adaptive_iteration_limit(
                    options.max_iterations, len(best_inliers), len(pts1), 4
                )
        history.append(len(best_inliers))

    if num_iterations > 0 and num_singular == num_iterations:
        raise SingularMatrixError("All homography samples were degenerate")

    if options.verbose_output:
        print(
            f"[ransac] H: {len(best_inliers)} of {len(pts1)} inliers "
            f"after {num_iterations} iterations"
        )

    return RansacHomographyResult(
        H=best_H,
        inliers=best_inliers,
        num_iterations=num_iterations,
        history=history,
    )


__all__ = [
    "homography_dlt",
    "symmetric_transfer_error",
    "RansacHomographyResult",
    "homography_ransac",
]
