import numpy as np
import pytest

from conftest import WIDTH, HEIGHT, two_view_problem
from sfm_recon.config import RansacPoseOptions
from sfm_recon.errors import (
    InsufficientCorrespondencesError,
    NoValidPoseError,
    SingularMatrixError,
)
from sfm_recon.geometry.pnp import (
    estimate_camera_pose_pnp,
    pose_from_2d_3d_correspondences,
    pose_from_p_and_known_k,
    pose_from_p_matrix,
)
from sfm_recon.geometry.pose_refinement import pack_pose, refine_pose, unpack_pose
from sfm_recon.sfm_inc.data_structures import CameraPose


def test_dlt_reproduces_exact_projections():
    _, _, _, points, _, pts2 = two_view_problem(num_points=20)
    P = pose_from_2d_3d_correspondences(pts2, points)

    Xh = np.hstack([points, np.ones((len(points), 1))])
    proj = Xh @ P.T
    np.testing.assert_allclose(proj[:, :2] / proj[:, 2:3], pts2, atol=1e-6)


def test_decomposition_handles_negative_scale():
    _, _, pose2, _, _, _ = two_view_problem()
    K, R, t = pose_from_p_matrix(-2.5 * pose2.P)

    np.testing.assert_allclose(K, pose2.K, atol=1e-8)
    np.testing.assert_allclose(R, pose2.R, atol=1e-10)
    np.testing.assert_allclose(t, pose2.t, atol=1e-10)
    assert np.linalg.det(R) == pytest.approx(1.0)


def test_focal_length_estimation_from_projection_matrix():
    _, _, pose2, _, _, _ = two_view_problem()
    K_true = pose2.K.copy()
    K_true[0, 0] = K_true[1, 1] = 1.1 * pose2.K[0, 0]
    P = CameraPose(K=K_true, R=pose2.R, t=pose2.t).P

    fixed = pose_from_p_and_known_k(P, pose2.K)
    assert fixed.focal_length == pytest.approx(pose2.K[0, 0])

    estimated = pose_from_p_and_known_k(P, pose2.K, estimate_focal_length=True)
    assert estimated.focal_length == pytest.approx(K_true[0, 0])
    assert estimated.K[0, 1] == 0.0
    np.testing.assert_allclose(estimated.K[:2, 2], pose2.K[:2, 2])


def test_pnp_ransac_with_outliers():
    rng = np.random.default_rng(1)
    K, _, pose2, points, _, pts2 = two_view_problem(num_points=120, noise=0.3, seed=1)
    outliers = rng.choice(len(points), size=24, replace=False)
    pts2 = pts2.copy()
    pts2[outliers] = rng.uniform([0, 0], [WIDTH, HEIGHT], size=(24, 2))

    result = estimate_camera_pose_pnp(K, points, pts2, RansacPoseOptions(seed=0))

    np.testing.assert_allclose(result.pose.R, pose2.R, atol=1e-2)
    np.testing.assert_allclose(result.pose.center, pose2.center, atol=0.05)
    assert len(result.inliers) >= 90
    assert len(set(result.inliers.tolist()) & set(outliers.tolist())) <= 2
    assert len(result.history) == result.num_iterations


def test_pnp_needs_six_points():
    K, _, _, points, _, pts2 = two_view_problem(num_points=5)
    with pytest.raises(InsufficientCorrespondencesError) as info:
        estimate_camera_pose_pnp(K, points, pts2)
    assert info.value.required == 6


def test_coplanar_points_are_degenerate():
    points = np.array(
        [[x, y, 5.0] for x in (-1.0, 0.0, 1.0) for y in (-1.0, 1.0)], dtype=np.float64
    )
    pose = CameraPose(K=np.diag([640.0, 640.0, 1.0]))
    with pytest.raises(SingularMatrixError):
        pose_from_2d_3d_correspondences(pose.project(points), points)


def test_stop_request_gives_no_pose():
    K, _, _, points, _, pts2 = two_view_problem(num_points=30)
    with pytest.raises(NoValidPoseError):
        estimate_camera_pose_pnp(K, points, pts2, should_stop=lambda: True)


def test_refine_pose_reduces_reprojection_error():
    _, _, pose2, points, _, pts2 = two_view_problem(num_points=50)
    params = pack_pose(pose2)
    perturbed = unpack_pose(params + np.array([0.01, -0.01, 0.005, 0.02, -0.01, 0.03]), pose2.K)

    refined = refine_pose(perturbed, points, pts2)

    before = np.linalg.norm(perturbed.project(points) - pts2, axis=1).mean()
    after = np.linalg.norm(refined.project(points) - pts2, axis=1).mean()
    assert after < 1e-2 < before
    np.testing.assert_allclose(unpack_pose(params, pose2.K).R, pose2.R, atol=1e-12)


def test_adaptive_ransac_stops_early_on_exact_projections():
    K, _, pose2, points, _, pts2 = two_view_problem(num_points=60)
    options = RansacPoseOptions(max_iterations=1000, adaptive_iterations=True, seed=0)

    result = estimate_camera_pose_pnp(K, points, pts2, options)

    assert len(result.inliers) == 60
    assert result.num_iterations < 10
    np.testing.assert_allclose(result.pose.center, pose2.center, atol=1e-6)
