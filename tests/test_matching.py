import numpy as np
import pytest

from sfm_recon.config import MatchingOptions
from sfm_recon.features.matching import (
    count_consistent_matches,
    correspondences_from_matches,
    match_keypoints,
    oneway_match,
    twoway_match,
)


def unit(v):
    v = np.asarray(v, dtype=np.float32)
    return v / np.linalg.norm(v, axis=-1, keepdims=True)


def test_single_descriptor_mutual_match():
    options = MatchingOptions(descriptor_length=4, lowe_ratio_threshold=0.8)
    set_a = np.array([[1.0, 0.0, 0.0, 0.0]])
    set_b = np.array([[0.99, 0.0, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0]])

    result = match_keypoints(set_a, set_b, options)

    np.testing.assert_array_equal(result.matches_1_2, [0])
    np.testing.assert_array_equal(result.matches_2_1, [0, -1])
    assert count_consistent_matches(result) == 1


def test_ratio_test_rejects_ambiguous_neighbors():
    options = MatchingOptions(descriptor_length=2, lowe_ratio_threshold=0.8)
    query = np.array([[0.0, 0.0]])
    candidates = np.array([[1.0, 0.0], [0.0, 1.05]])
    np.testing.assert_array_equal(oneway_match(options, query, candidates), [-1])

    candidates = np.array([[1.0, 0.0], [0.0, 2.0]])
    np.testing.assert_array_equal(oneway_match(options, query, candidates), [0])


def test_distance_threshold():
    options = MatchingOptions(descriptor_length=2, distance_threshold=0.5)
    query = np.array([[0.0, 0.0], [5.0, 5.0]])
    candidates = np.array([[0.1, 0.0]])
    np.testing.assert_array_equal(oneway_match(options, query, candidates), [0, -1])


def test_mutual_matches_agree_with_brute_force():
    rng = np.random.default_rng(7)
    base = unit(rng.normal(size=(60, 32)))
    set_1 = base[:50]
    set_2 = unit(base[10:] + rng.normal(scale=0.05, size=(50, 32)))
    options = MatchingOptions(descriptor_length=32, block_size=16)

    result = match_keypoints(set_1, set_2, options)
    raw = twoway_match(options, set_1, set_2)

    dist = ((set_1[:, None, :] - set_2[None, :, :]) ** 2).sum(axis=2)
    for i, j in enumerate(result.matches_1_2):
        if j < 0:
            continue
        assert j == np.argmin(dist[i])
        assert i == np.argmin(dist[:, j])
        assert result.matches_2_1[j] == i
        assert raw.matches_1_2[i] == j
    # The shared descriptors are found again.
    assert count_consistent_matches(result) >= 35
    for i in range(10, 50):
        if result.matches_1_2[i] >= 0:
            assert result.matches_1_2[i] == i - 10


def test_correspondences_from_matches():
    options = MatchingOptions(descriptor_length=3)
    set_1 = unit([[1, 0, 0], [0, 1, 0], [0, 0, 1]])
    set_2 = unit([[0, 0, 1], [1, 0, 0]])
    result = match_keypoints(set_1, set_2, options)

    positions_1 = np.array([[1.0, 1.0], [2.0, 2.0], [3.0, 3.0]])
    positions_2 = np.array([[30.0, 30.0], [10.0, 10.0]])
    pts1, pts2, pairs = correspondences_from_matches(positions_1, positions_2, result)

    np.testing.assert_array_equal(pairs, [[0, 1], [2, 0]])
    np.testing.assert_array_equal(pts1, [[1.0, 1.0], [3.0, 3.0]])
    np.testing.assert_array_equal(pts2, [[10.0, 10.0], [30.0, 30.0]])


def test_empty_sets_have_no_matches():
    options = MatchingOptions(descriptor_length=8)
    result = match_keypoints(np.zeros((0, 8)), unit(np.ones((3, 8))), options)
    assert result.matches_1_2.shape == (0,)
    np.testing.assert_array_equal(result.matches_2_1, [-1, -1, -1])
    assert count_consistent_matches(result) == 0


def test_descriptor_length_mismatch_raises():
    options = MatchingOptions(descriptor_length=8)
    with pytest.raises(ValueError):
        match_keypoints(np.ones((2, 4)), np.ones((2, 4)), options)


def test_invalid_options():
    with pytest.raises(ValueError):
        MatchingOptions(lowe_ratio_threshold=0.0)
    with pytest.raises(ValueError):
        MatchingOptions(descriptor_length=0)
