"""
Nonlinear refinement of a single camera pose against fixed 3D points.
"""

from __future__ import annotations

import cv2
import numpy as np
from scipy.optimize import least_squares

from sfm_recon.sfm_inc.data_structures import CameraPose


def pack_pose(pose: CameraPose) -> np.ndarray:
    """Pack a pose into [rvec (3), t (3)]."""
    rvec, _ = cv2.Rodrigues(pose.R)
    return np.concatenate([rvec.ravel(), pose.t.ravel()]).astype(np.float64)


def unpack_pose(params: np.ndarray, K: np.ndarray) -> CameraPose:
    """Inverse of `pack_pose` for intrinsics K."""
    R, _ = cv2.Rodrigues(params[:3].reshape(3, 1))
    return CameraPose(K=K, R=R, t=params[3:6])


def reprojection_residuals(
    params: np.ndarray,
    K: np.ndarray,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
) -> np.ndarray:
    """
    Compute reprojection residuals of all points.

    Returns:
        1D array of residuals (2 per point: [du, dv]).
    """
    projected, _ = cv2.projectPoints(
        points_3d.reshape(-1, 1, 3),
        params[:3].reshape(3, 1),
        params[3:6].reshape(3, 1),
        K,
        None,
    )
    return (projected.reshape(-1, 2) - points_2d).ravel()


def refine_pose(
    pose: CameraPose,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    max_nfev: int = 50,
    f_scale: float = 1.0,
    verbose: bool = False,
) -> CameraPose:
    """
    Minimize the reprojection error over rotation and translation with K fixed.

    Args:
        pose: Initial pose.
        points_3d: 3D points (N, 3).
        points_2d: Observed pixel positions (N, 2).
        max_nfev: Maximum number of function evaluations.
        f_scale: Inlier scale of the robust loss, in pixels.

    Returns:
        Refined pose; the initial pose if there are fewer than 3 points.
    """
    points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    points_2d = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
    if len(points_3d) < 3:
        return pose

    params = pack_pose(pose)
    result = least_squares(
        reprojection_residuals,
        params,
        args=(pose.K, points_3d, points_2d),
        method="trf",
        loss="soft_l1",
        f_scale=f_scale,
        max_nfev=max_nfev,
    )

    if verbose:
        print(
            f"[pose] Refined pose over {len(points_3d)} points: "
            f"status={result.status}, nfev={result.nfev}, cost={result.cost:.3e}"
        )

    return unpack_pose(result.x, pose.K)


__all__ = ["pack_pose", "unpack_pose", "reprojection_residuals", "refine_pose"]
