import numpy as np
import pytest

from conftest import two_view_problem
from sfm_recon.geometry.triangulation import (
    compute_reprojection_errors,
    is_consistent_pose,
    triangulate_match,
    triangulate_matched_key_pts_to_3D_pts,
    triangulate_track,
)
from sfm_recon.sfm_inc.data_structures import CameraPose


def test_triangulate_exact_matches():
    _, pose1, pose2, points, pts1, pts2 = two_view_problem(num_points=25)

    points_3d, errors = triangulate_matched_key_pts_to_3D_pts(pose1, pose2, pts1, pts2)

    np.testing.assert_allclose(points_3d, points, atol=1e-6)
    assert errors.shape == (25,)
    assert np.all(errors < 1e-6)


def test_reprojection_error_is_max_over_both_views():
    _, pose1, pose2, points, pts1, pts2 = two_view_problem(num_points=5)
    shifted = pts2.copy()
    shifted[0] += [3.0, 4.0]

    points_3d, errors = triangulate_matched_key_pts_to_3D_pts(pose1, pose2, pts1, shifted)

    assert errors[0] > 1.0
    e1 = compute_reprojection_errors(pose1, points_3d, pts1)
    e2 = compute_reprojection_errors(pose2, points_3d, shifted)
    np.testing.assert_allclose(errors, np.maximum(e1, e2))


def test_triangulate_empty():
    _, pose1, pose2, _, _, _ = two_view_problem(num_points=1)
    points_3d, errors = triangulate_matched_key_pts_to_3D_pts(
        pose1, pose2, np.zeros((0, 2)), np.zeros((0, 2))
    )
    assert points_3d.shape == (0, 3)
    assert errors.shape == (0,)


def test_triangulate_single_match_and_track():
    _, pose1, pose2, points, pts1, pts2 = two_view_problem(num_points=3)
    X = triangulate_match(pose1, pose2, pts1[1], pts2[1])
    np.testing.assert_allclose(X, points[1], atol=1e-6)

    pose3 = CameraPose(K=pose1.K, t=np.array([-0.5, 0.0, 0.0]))
    positions = np.array([pts1[2], pts2[2], pose3.project(points[2])[0]])
    X = triangulate_track(positions, [pose1, pose2, pose3])
    np.testing.assert_allclose(X, points[2], atol=1e-6)

    with pytest.raises(ValueError):
        triangulate_track(positions[:1], [pose1])


def test_cheirality_check():
    _, pose1, pose2, points, _, _ = two_view_problem(num_points=1)
    assert is_consistent_pose(pose1, pose2, points[0])
    assert not is_consistent_pose(pose1, pose2, -points[0])
