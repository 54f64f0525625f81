import numpy as np
import pytest

from conftest import WIDTH, HEIGHT, two_view_problem
from sfm_recon.config import RansacFundamentalOptions
from sfm_recon.errors import InsufficientCorrespondencesError, SingularMatrixError
from sfm_recon.geometry.fundamental import (
    enforce_fundamental_constraints,
    estimate_fundamental_matrix,
    fundamental_matrix_ransac,
    normalize_points,
    sampson_distance,
)
from sfm_recon.geometry.ransac import adaptive_iteration_limit, compute_ransac_iterations


def skew(v):
    return np.array([[0.0, -v[2], v[1]], [v[2], 0.0, -v[0]], [-v[1], v[0], 0.0]])


def ground_truth_fundamental(K, pose2):
    K_inv = np.linalg.inv(K)
    return K_inv.T @ skew(pose2.t) @ pose2.R @ K_inv


def normalized(F, reference):
    """Unit Frobenius norm with the sign fixed by the largest reference entry."""
    idx = np.unravel_index(np.argmax(np.abs(reference)), reference.shape)
    F = F / np.linalg.norm(F)
    return F * np.sign(F[idx])


def test_normalize_points():
    pts = np.array([[0.0, 0.0], [4.0, 0.0], [4.0, 2.0], [0.0, 2.0]])
    normalized_pts, T = normalize_points(pts)

    np.testing.assert_allclose(normalized_pts.mean(axis=0), 0.0, atol=1e-12)
    assert np.mean(np.linalg.norm(normalized_pts, axis=1)) == pytest.approx(np.sqrt(2.0))
    homogeneous = np.hstack([pts, np.ones((4, 1))]) @ T.T
    np.testing.assert_allclose(homogeneous[:, :2], normalized_pts)


def test_eight_point_on_exact_correspondences():
    K, _, pose2, _, pts1, pts2 = two_view_problem(num_points=30)
    F = estimate_fundamental_matrix(pts1, pts2)
    expected = ground_truth_fundamental(K, pose2)

    np.testing.assert_allclose(normalized(F, expected), normalized(expected, expected), atol=1e-6)
    assert np.all(sampson_distance(F, pts1, pts2) < 1e-8)


def test_ransac_recovers_fundamental_matrix_with_outliers():
    rng = np.random.default_rng(3)
    K, _, pose2, _, pts1, pts2 = two_view_problem(num_points=160, noise=0.1, seed=3)
    outliers_1 = rng.uniform([0, 0], [WIDTH, HEIGHT], size=(40, 2))
    outliers_2 = rng.uniform([0, 0], [WIDTH, HEIGHT], size=(40, 2))
    all_1 = np.vstack([pts1, outliers_1])
    all_2 = np.vstack([pts2, outliers_2])
    order = rng.permutation(len(all_1))

    options = RansacFundamentalOptions(max_iterations=1000, threshold=1.0, seed=5)
    result = fundamental_matrix_ransac(all_1[order], all_2[order], options)

    expected = ground_truth_fundamental(K, pose2)
    np.testing.assert_allclose(
        normalized(result.F, expected), normalized(expected, expected), atol=1e-2
    )
    true_inliers = set(np.nonzero(order < 160)[0])
    found = set(result.inliers.tolist())
    assert len(found & true_inliers) >= 0.75 * 160
    assert np.linalg.matrix_rank(result.F, tol=1e-9) == 2

    assert result.num_iterations == options.max_iterations
    assert len(result.history) == result.num_iterations
    assert all(a <= b for a, b in zip(result.history, result.history[1:]))
    assert result.history[-1] == len(result.inliers)


def test_ransac_is_reproducible_with_seed():
    _, _, _, _, pts1, pts2 = two_view_problem(num_points=50, noise=0.2, seed=4)
    options = RansacFundamentalOptions(max_iterations=50, seed=11)
    first = fundamental_matrix_ransac(pts1, pts2, options)
    second = fundamental_matrix_ransac(pts1, pts2, options)
    np.testing.assert_array_equal(first.inliers, second.inliers)
    np.testing.assert_allclose(first.F, second.F)


def test_enforce_rank_two():
    F = np.arange(9, dtype=np.float64).reshape(3, 3) + np.eye(3)
    F2 = enforce_fundamental_constraints(F)
    assert np.linalg.matrix_rank(F2, tol=1e-9) == 2
    s = np.linalg.svd(F, compute_uv=False)
    s2 = np.linalg.svd(F2, compute_uv=False)
    np.testing.assert_allclose(s2[:2], s[:2])


def test_too_few_correspondences():
    pts = np.random.default_rng(0).uniform(size=(7, 2))
    with pytest.raises(InsufficientCorrespondencesError):
        estimate_fundamental_matrix(pts, pts)
    with pytest.raises(InsufficientCorrespondencesError) as info:
        fundamental_matrix_ransac(pts, pts)
    assert info.value.required == 8
    assert info.value.got == 7


def test_identical_points_are_degenerate():
    pts = np.tile([[100.0, 50.0]], (12, 1))
    with pytest.raises(SingularMatrixError):
        fundamental_matrix_ransac(pts, pts, RansacFundamentalOptions(max_iterations=5))


def test_mismatched_lengths():
    with pytest.raises(ValueError):
        fundamental_matrix_ransac(np.zeros((9, 2)), np.zeros((8, 2)))


def test_stop_request_leaves_no_hypothesis():
    _, _, _, _, pts1, pts2 = two_view_problem(num_points=40)
    with pytest.raises(InsufficientCorrespondencesError):
        fundamental_matrix_ransac(pts1, pts2, should_stop=lambda: True)


def test_ransac_iteration_count():
    expected = int(np.ceil(np.log(0.01) / np.log(1.0 - 0.5 ** 8)))
    assert compute_ransac_iterations(0.5, 8) == expected
    assert compute_ransac_iterations(1.0, 8) == 1
    assert compute_ransac_iterations(0.9, 6) < compute_ransac_iterations(0.5, 6)
    with pytest.raises(ValueError):
        compute_ransac_iterations(0.0, 8)
    with pytest.raises(ValueError):
        compute_ransac_iterations(0.5, 8, desired_success_rate=1.0)


def test_adaptive_iteration_limit():
    assert adaptive_iteration_limit(1000, 90, 100, 8) == compute_ransac_iterations(0.9, 8)
    # Never above the configured cap.
    assert adaptive_iteration_limit(1000, 50, 100, 8) == 1000
    assert adaptive_iteration_limit(1000, 0, 100, 8) == 1000


def test_adaptive_ransac_stops_early_on_clean_data():
    _, _, _, _, pts1, pts2 = two_view_problem(num_points=100)
    options = RansacFundamentalOptions(max_iterations=1000, adaptive_iterations=True, seed=0)

    result = fundamental_matrix_ransac(pts1, pts2, options)

    assert len(result.inliers) == 100
    assert result.num_iterations < 10
    assert len(result.history) == result.num_iterations
