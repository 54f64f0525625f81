"""
Essential matrix computation and camera pose extraction.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from sfm_recon.config import RansacFundamentalOptions
from sfm_recon.errors import NoValidPoseError
from sfm_recon.geometry.fundamental import fundamental_matrix_ransac, sampson_distance
from sfm_recon.geometry.ransac import StopCallback
from sfm_recon.geometry.triangulation import is_consistent_pose, triangulate_match
from sfm_recon.sfm_inc.data_structures import CameraPose

W = np.array(
    [
        [0.0, -1.0, 0.0],
        [1.0, 0.0, 0.0],
        [0.0, 0.0, 1.0],
    ]
)


def compute_essential_matrix(
    F: np.ndarray,
    K1: np.ndarray,
    K2: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Compute essential matrix from fundamental matrix and camera intrinsics.

    Args:
        F: Fundamental matrix (3x3) with x2^T F x1 = 0.
        K1: Intrinsics of the first camera (3x3).
        K2: Intrinsics of the second camera, defaults to K1.

    Returns:
        Essential matrix E (3x3), where E = K2^T @ F @ K1.
    """
    K2 = K1 if K2 is None else K2
    return K2.T @ F @ K1


def pose_from_essential(E: np.ndarray) -> List[Tuple[np.ndarray, np.ndarray]]:
    """
    Factor an essential matrix into its four (R, t) hypotheses.

    The translation has unit length. Exactly one hypothesis places
    triangulated points in front of both cameras.
    """
    U, _, Vt = np.linalg.svd(E)
    if np.linalg.det(U) < 0.0:
        U[:, 2] *= -1.0
    if np.linalg.det(Vt) < 0.0:
        Vt[2, :] *= -1.0

    R1 = U @ W @ Vt
    R2 = U @ W.T @ Vt
    t = U[:, 2]
    return [(R1, t.copy()), (R1, -t), (R2, t.copy()), (R2, -t)]


def extract_RT_essential_matrix(
    E: np.ndarray,
    K1: np.ndarray,
    K2: np.ndarray,
    x1: np.ndarray,
    x2: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Select the physically valid pose of the second camera.

    The first camera is K1 [I | 0]. The sample correspondence (x1, x2) is
    triangulated under each hypothesis; the first one with the point in
    front of both cameras wins.

    Returns:
        Tuple of (R, t): rotation (3x3) and unit translation (3,) of camera 2.

    Raises:
        NoValidPoseError: If no hypothesis passes the cheirality test.
    """
    pose1 = CameraPose(K=K1)
    for R, t in pose_from_essential(E):
        pose2 = CameraPose(K=K2, R=R, t=t)
        X = triangulate_match(pose1, pose2, x1, x2)
        if is_consistent_pose(pose1, pose2, X):
            return R, t
    raise NoValidPoseError("No essential matrix hypothesis passes the cheirality test")


@dataclass
class RelativePoseResult:
    """Two-view geometry: canonical first camera and the recovered second camera."""

    pose1: CameraPose
    pose2: CameraPose
    F: np.ndarray
    E: np.ndarray
    # Indices of the fundamental matrix inliers.
    inliers: np.ndarray


def estimate_relative_pose(
    pts1: np.ndarray,
    pts2: np.ndarray,
    K1: np.ndarray,
    K2: np.ndarray,
    options: Optional[RansacFundamentalOptions] = None,
    should_stop: StopCallback = None,
) -> RelativePoseResult:
    """
    Relative pose of two views from pixel correspondences.

    RANSAC fundamental matrix, conversion to the essential matrix, four-way
    decomposition and cheirality test on the inlier with the smallest
    Sampson error.

    Raises:
        InsufficientCorrespondencesError: Fewer than 8 correspondences.
        SingularMatrixError: Every RANSAC sample was degenerate.
        NoValidPoseError: No hypothesis passes the cheirality test.
    """
    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)

    ransac = fundamental_matrix_ransac(pts1, pts2, options, should_stop=should_stop)
    inliers = ransac.inliers
    E = compute_essential_matrix(ransac.F, K1, K2)

    errors = sampson_distance(ransac.F, pts1[inliers], pts2[inliers])
    sample = inliers[int(np.argmin(errors))]
    R, t = extract_RT_essential_matrix(E, K1, K2, pts1[sample], pts2[sample])

    return RelativePoseResult(
        pose1=CameraPose(K=K1),
        pose2=CameraPose(K=K2, R=R, t=t),
        F=ransac.F,
        E=E,
        inliers=inliers,
    )


__all__ = [
    "compute_essential_matrix",
    "pose_from_essential",
    "extract_RT_essential_matrix",
    "RelativePoseResult",
    "estimate_relative_pose",
]
