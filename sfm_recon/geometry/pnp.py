"""
Perspective-n-Point (PnP) pose estimation.

Minimal samples are solved with the 6-point DLT resection; the winning
hypothesis is re-solved over all inliers, decomposed into K [R | t] and
refined by minimizing the reprojection error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
from scipy.linalg import rq

from sfm_recon.config import RansacPoseOptions
from sfm_recon.errors import (
    InsufficientCorrespondencesError,
    NoValidPoseError,
    SingularMatrixError,
)
from sfm_recon.geometry.fundamental import normalize_points
from sfm_recon.geometry.pose_refinement import refine_pose
from sfm_recon.geometry.ransac import (
    StopCallback,
    adaptive_iteration_limit,
    draw_sample,
    make_rng,
    should_stop_now,
)
from sfm_recon.sfm_inc.data_structures import CameraPose

MIN_CORRESPONDENCES = 6
DEGENERACY_THRESHOLD = 1e-10


def _normalize_points_3d(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Center 3D points and scale to mean distance sqrt(3); returns (points, U)."""
    mean = points.mean(axis=0)
    centered = points - mean
    mean_dist = np.mean(np.linalg.norm(centered, axis=1))
    scale = np.sqrt(3.0) / mean_dist if mean_dist > 0 else 1.0
    U = np.eye(4)
    U[:3, :3] *= scale
    U[:3, 3] = -scale * mean
    return centered * scale, U


def pose_from_2d_3d_correspondences(
    points_2d: np.ndarray,
    points_3d: np.ndarray,
) -> np.ndarray:
    """
    Linear resection (DLT) of the 3x4 projection matrix from >= 6 points.

    Raises:
        SingularMatrixError: If the points do not determine P uniquely
            (e.g. coplanar or repeated points).
    """
    points_2d = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
    points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    if len(points_2d) < MIN_CORRESPONDENCES:
        raise InsufficientCorrespondencesError(MIN_CORRESPONDENCES, len(points_2d))

    x_norm, T = normalize_points(points_2d)
    X_norm, U = _normalize_points_3d(points_3d)

    n = len(x_norm)
    Xh = np.hstack([X_norm, np.ones((n, 1))])
    x = x_norm[:, 0:1]
    y = x_norm[:, 1:2]
    zeros = np.zeros((n, 4))

    A = np.zeros((2 * n, 12))
    A[0::2] = np.hstack([zeros, -Xh, y * Xh])
    A[1::2] = np.hstack([Xh, zeros, -x * Xh])

    _, S, Vt = np.linalg.svd(A)
    if S[0] <= 0 or S[10] <= DEGENERACY_THRESHOLD * S[0]:
        raise SingularMatrixError("Degenerate resection configuration")

    P_norm = Vt[-1].reshape(3, 4)
    return np.linalg.inv(T) @ P_norm @ U


def pose_from_p_matrix(P: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Decompose P = K [R | t] with an RQ decomposition.

    K has a positive diagonal and K[2, 2] = 1, R is a proper rotation.

    Returns:
        Tuple of (K, R, t).
    """
    M = P[:, :3]
    Kr, Q = rq(M)
    signs = np.sign(np.diag(Kr))
    signs[signs == 0] = 1.0
    D = np.diag(signs)
    Kr = Kr @ D
    Q = D @ Q
    if np.linalg.det(Q) < 0.0:
        Q = -Q
        Kr = -Kr

    t = np.linalg.solve(Kr, P[:, 3])
    K = Kr / Kr[2, 2]
    return K, Q, t


def pose_from_p_and_known_k(
    P: np.ndarray,
    K_known: np.ndarray,
    estimate_focal_length: bool = False,
) -> CameraPose:
    """
    Camera pose from a projection matrix and (approximately) known intrinsics.

    R and t come from the decomposition of P. With `estimate_focal_length`
    the decomposed K is constrained to a valid calibration: known principal
    point, equal focal lengths (their average), no skew. Otherwise the known
    K is used unchanged.
    """
    K_est, R, t = pose_from_p_matrix(P)
    if not estimate_focal_length:
        return CameraPose(K=K_known, R=R, t=t)

    K = np.array(K_known, dtype=np.float64)
    focal = 0.5 * (K_est[0, 0] + K_est[1, 1])
    K[0, 0] = focal
    K[1, 1] = focal
    K[0, 1] = 0.0
    return CameraPose(K=K, R=R, t=t)


def _reprojection_errors_sq(P: np.ndarray, points_3d: np.ndarray, points_2d: np.ndarray) -> np.ndarray:
    Xh = np.hstack([points_3d, np.ones((len(points_3d), 1))])
    proj = Xh @ P.T
    with np.errstate(divide="ignore", invalid="ignore"):
        uv = proj[:, :2] / proj[:, 2:3]
    err = np.sum((uv - points_2d) ** 2, axis=1)
    return np.where(np.isfinite(err), err, np.inf)


@dataclass
class RansacPoseResult:
    """Winning absolute pose and its inliers."""

    pose: CameraPose
    inliers: np.ndarray
    num_iterations: int = 0
    # Best-so-far inlier count after each iteration.
    history: List[int] = field(default_factory=list)


def estimate_camera_pose_pnp(
    K: np.ndarray,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    options: Optional[RansacPoseOptions] = None,
    should_stop: StopCallback = None,
) -> RansacPoseResult:
    """
    Estimate camera pose from 3D-2D correspondences using PnP RANSAC.

    Args:
        K: Intrinsic camera matrix (3x3).
        points_3d: 3D points in world coordinates (N, 3).
        points_2d: Corresponding 2D points in image coordinates (N, 2).
        options: RANSAC options.
        should_stop: Checked between iterations; ends the loop early.

    Returns:
        RansacPoseResult with the pose and the indices of the inliers
        (reprojection error below threshold, in front of the camera).

    Raises:
        InsufficientCorrespondencesError: Fewer than 6 correspondences.
        SingularMatrixError: Every sample was degenerate.
        NoValidPoseError: Fewer than 6 inliers survive.
    """
    options = options if options is not None else RansacPoseOptions()
    points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    points_2d = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
    if len(points_3d) != len(points_2d):
        raise ValueError("Point sets must have the same length")
    if len(points_3d) < MIN_CORRESPONDENCES:
        raise InsufficientCorrespondencesError(MIN_CORRESPONDENCES, len(points_3d))

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

        sample = draw_sample(rng, len(points_3d), MIN_CORRESPONDENCES)
        try:
            P = pose_from_2d_3d_correspondences(points_2d[sample], points_3d[sample])
        except SingularMatrixError:
            num_singular += 1
            history.append(len(best_inliers))
            continue

        errors = _reprojection_errors_sq(P, points_3d, points_2d)
        inliers = np.nonzero(errors < threshold_sq)[0]
        if len(inliers) > len(best_inliers):
            best_inliers = inliers
            if options.adaptive_iterations:
                max_iterations = adaptive_iteration_limit(
                    options.max_iterations,
                    len(best_inliers),
                    len(points_3d),
                    MIN_CORRESPONDENCES,
                )
        history.append(len(best_inliers))

    if num_iterations > 0 and num_singular == num_iterations:
        raise SingularMatrixError("All resection samples were degenerate")
    if len(best_inliers) < MIN_CORRESPONDENCES:
        raise NoValidPoseError(
            f"Only {len(best_inliers)} pose inliers, need {MIN_CORRESPONDENCES}"
        )

    P = pose_from_2d_3d_correspondences(points_2d[best_inliers], points_3d[best_inliers])
    pose = pose_from_p_and_known_k(P, K, options.estimate_focal_length)

    in_front = best_inliers[pose.depth(points_3d[best_inliers]) > 0.0]
    if len(in_front) < MIN_CORRESPONDENCES:
        raise NoValidPoseError("Resected camera sees too few inliers in front of it")

    if options.refine:
        pose = refine_pose(
            pose,
            points_3d[in_front],
            points_2d[in_front],
            f_scale=options.threshold,
            verbose=options.verbose_output,
        )

    errors = np.sum((pose.project(points_3d) - points_2d) ** 2, axis=1)
    final = np.nonzero((errors < threshold_sq) & (pose.depth(points_3d) > 0.0))[0]
    if len(final) < MIN_CORRESPONDENCES:
        raise NoValidPoseError(
            f"Only {len(final)} inliers after refinement, need {MIN_CORRESPONDENCES}"
        )

    if options.verbose_output:
        C = pose.center
        print(
            f"[ransac] Pose: {len(final)} of {len(points_3d)} inliers after "
            f"{num_iterations} iterations, center {C.ravel()}"
        )

    return RansacPoseResult(
        pose=pose,
        inliers=final,
        num_iterations=num_iterations,
        history=history,
    )


__all__ = [
    "pose_from_2d_3d_correspondences",
    "pose_from_p_matrix",
    "pose_from_p_and_known_k",
    "RansacPoseResult",
    "estimate_camera_pose_pnp",
]
