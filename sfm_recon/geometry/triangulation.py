"""
Linear triangulation of 3D points from two or more calibrated views.
"""

from __future__ import annotations

from typing import Sequence, Tuple

import cv2
import numpy as np

from sfm_recon.sfm_inc.data_structures import CameraPose


def triangulate_match(
    pose1: CameraPose,
    pose2: CameraPose,
    x1: np.ndarray,
    x2: np.ndarray,
) -> np.ndarray:
    """
    Triangulate one correspondence by solving the two projection constraints
    (4x4 linear system, smallest right singular vector).

    Args:
        pose1, pose2: Camera poses.
        x1, x2: Pixel positions (2,) in the first and second view.

    Returns:
        3D point (3,) in world coordinates. The point may lie behind a camera;
        use `is_consistent_pose` to check.
    """
    return triangulate_track(np.array([x1, x2], dtype=np.float64), [pose1, pose2])


def triangulate_track(
    positions: np.ndarray,
    poses: Sequence[CameraPose],
) -> np.ndarray:
    """
    Triangulate one point observed in N >= 2 views (2N x 4 linear system).

    Args:
        positions: (N, 2) pixel positions.
        poses: N camera poses, aligned with `positions`.

    Returns:
        3D point (3,) in world coordinates.
    """
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
    if len(positions) != len(poses) or len(poses) < 2:
        raise ValueError("Need at least two positions with one pose each")

    A = np.zeros((2 * len(poses), 4))
    for i, (pos, pose) in enumerate(zip(positions, poses)):
        P = pose.P
        A[2 * i] = pos[0] * P[2] - P[0]
        A[2 * i + 1] = pos[1] * P[2] - P[1]

    _, _, Vt = np.linalg.svd(A)
    X = Vt[-1]
    if X[3] == 0.0:
        # Point at infinity; return a far point along its direction.
        return X[:3] * 1e12
    return X[:3] / X[3]


def is_consistent_pose(
    pose1: CameraPose,
    pose2: CameraPose,
    point_3d: np.ndarray,
) -> bool:
    """Cheirality test: the point lies in front of both cameras."""
    return bool(pose1.depth(point_3d)[0] > 0.0 and pose2.depth(point_3d)[0] > 0.0)


def triangulate_matched_key_pts_to_3D_pts(
    pose1: CameraPose,
    pose2: CameraPose,
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Triangulate 3D points from matched 2D correspondences in two views.

    Args:
        pose1: Pose of the first camera.
        pose2: Pose of the second camera.
        pts1: Points in first image (N, 2).
        pts2: Points in second image (N, 2).

    Returns:
        Tuple of (points_3d, reprojection_errors) where:
        - points_3d: Triangulated 3D points (N, 3) in world coordinates.
        - reprojection_errors: Per-point reprojection errors (N,) (max over both views).
    """
    if len(pts1) == 0:
        return np.array([]).reshape(0, 3), np.array([])

    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)

    # OpenCV expects points as (2, N)
    points_4d = cv2.triangulatePoints(pose1.P, pose2.P, pts1.T, pts2.T)

    w = points_4d[3]
    w = np.where(np.abs(w) < 1e-12, 1e-12, w)
    points_3d = (points_4d[:3] / w).T

    errors = np.maximum(
        compute_reprojection_errors(pose1, points_3d, pts1),
        compute_reprojection_errors(pose2, points_3d, pts2),
    )
    return points_3d, errors


def compute_reprojection_errors(
    pose: CameraPose,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
) -> np.ndarray:
    """
    Reprojection error of 3D points in one camera.

    Args:
        pose: Camera pose.
        points_3d: 3D points (N, 3).
        points_2d: Observed 2D points (N, 2).

    Returns:
        Array of pixel errors (N,).
    """
    if len(points_3d) == 0:
        return np.array([])

    rvec, _ = cv2.Rodrigues(pose.R)
    projected, _ = cv2.projectPoints(
        np.asarray(points_3d, dtype=np.float64).reshape(-1, 1, 3),
        rvec,
        pose.t.reshape(3, 1),
        pose.K,
        None,
    )
    projected = projected.reshape(-1, 2)
    return np.linalg.norm(np.asarray(points_2d).reshape(-1, 2) - projected, axis=1)


__all__ = [
    "triangulate_match",
    "triangulate_track",
    "is_consistent_pose",
    "triangulate_matched_key_pts_to_3D_pts",
    "compute_reprojection_errors",
]
