"""
Exhaustive descriptor matching with Lowe's ratio test and a mutual
(two-way) consistency check.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.spatial.distance import cdist

from sfm_recon.config import MatchingOptions


@dataclass
class MatchingResult:
    """
    Match indices in both directions; -1 marks "no match".

    matches_1_2[i] is the index in set 2 matched to item i of set 1, and
    matches_2_1 the reverse.
    """

    matches_1_2: np.ndarray
    matches_2_1: np.ndarray


def _check_sets(options: MatchingOptions, set_1: np.ndarray, set_2: np.ndarray) -> None:
    for name, values in (("set_1", set_1), ("set_2", set_2)):
        if values.ndim != 2:
            raise ValueError(f"{name} must be a 2D array, got shape {values.shape}")
        if len(values) > 0 and values.shape[1] != options.descriptor_length:
            raise ValueError(
                f"{name} has descriptor length {values.shape[1]}, "
                f"expected {options.descriptor_length}"
            )


def oneway_match(
    options: MatchingOptions,
    set_1: np.ndarray,
    set_2: np.ndarray,
) -> np.ndarray:
    """
    Match every descriptor of set 1 to its nearest neighbor in set 2.

    A match is kept only if the nearest distance is below the distance
    threshold and the nearest / second-nearest distance ratio is below the
    Lowe ratio (compared on squared distances). With a single candidate the
    second-nearest distance is infinite.

    Returns:
        (N1,) int array of indices into set 2, -1 where rejected.
    """
    set_1 = np.asarray(set_1, dtype=np.float32)
    set_2 = np.asarray(set_2, dtype=np.float32)
    _check_sets(options, set_1, set_2)

    result = -np.ones(len(set_1), dtype=int)
    if len(set_1) == 0 or len(set_2) == 0:
        return result

    ratio_sq = options.lowe_ratio_threshold ** 2
    dist_sq_threshold = options.distance_threshold ** 2

    for start in range(0, len(set_1), options.block_size):
        block = set_1[start:start + options.block_size]
        dist = cdist(block, set_2, "sqeuclidean")
        rows = np.arange(len(block))

        if dist.shape[1] == 1:
            nearest = np.zeros(len(block), dtype=int)
            dist_1 = dist[:, 0]
            dist_2 = np.full(len(block), np.inf)
        else:
            two = np.argpartition(dist, 1, axis=1)[:, :2]
            nearest = two[:, 0]
            dist_1 = dist[rows, two[:, 0]]
            dist_2 = dist[rows, two[:, 1]]

        accept = (dist_1 <= dist_sq_threshold) & ~(dist_1 > ratio_sq * dist_2)
        result[start:start + len(block)] = np.where(accept, nearest, -1)

    return result


def twoway_match(
    options: MatchingOptions,
    set_1: np.ndarray,
    set_2: np.ndarray,
) -> MatchingResult:
    """One-way matching in both directions, without consistency checks."""
    return MatchingResult(
        matches_1_2=oneway_match(options, set_1, set_2),
        matches_2_1=oneway_match(options, set_2, set_1),
    )


def remove_inconsistent_matches(result: MatchingResult) -> None:
    """Clear every match that is not confirmed by the opposite direction (in place)."""
    m12 = result.matches_1_2
    m21 = result.matches_2_1

    idx_1 = np.nonzero(m12 >= 0)[0]
    bad_1 = idx_1[m21[m12[idx_1]] != idx_1]
    idx_2 = np.nonzero(m21 >= 0)[0]
    bad_2 = idx_2[m12[m21[idx_2]] != idx_2]

    m12[bad_1] = -1
    m21[bad_2] = -1


def count_consistent_matches(result: MatchingResult) -> int:
    """Number of mutual matches."""
    m12 = result.matches_1_2
    m21 = result.matches_2_1
    idx_1 = np.nonzero(m12 >= 0)[0]
    return int(np.sum(m21[m12[idx_1]] == idx_1))


def match_keypoints(
    descriptors1: np.ndarray,
    descriptors2: np.ndarray,
    options: Optional[MatchingOptions] = None,
) -> MatchingResult:
    """
    Match two descriptor sets keeping only mutual nearest neighbors.

    Args:
        descriptors1: Descriptors from first image (N1, D).
        descriptors2: Descriptors from second image (N2, D).
        options: Matching options; defaults derive the descriptor length
                 from the input.

    Returns:
        MatchingResult whose non-negative entries are mutually consistent.
    """
    descriptors1 = np.asarray(descriptors1, dtype=np.float32)
    descriptors2 = np.asarray(descriptors2, dtype=np.float32)
    if options is None:
        length = descriptors1.shape[1] if descriptors1.ndim == 2 else 128
        options = MatchingOptions(descriptor_length=max(1, length))

    result = twoway_match(options, descriptors1, descriptors2)
    remove_inconsistent_matches(result)

    if options.verbose_output:
        print(
            f"[match] {len(descriptors1)} x {len(descriptors2)} descriptors: "
            f"{count_consistent_matches(result)} mutual matches"
        )
    return result


def correspondences_from_matches(
    positions1: np.ndarray,
    positions2: np.ndarray,
    result: MatchingResult,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Turn a consistent matching result into correspondences.

    Returns:
        Tuple of (pts1, pts2, pairs) where:
        - pts1: Array of matched points from first image (N, 2).
        - pts2: Array of matched points from second image (N, 2).
        - pairs: (N, 2) int array of (index in set 1, index in set 2).
    """
    idx_1 = np.nonzero(result.matches_1_2 >= 0)[0]
    idx_2 = result.matches_1_2[idx_1]
    pairs = np.column_stack([idx_1, idx_2]).astype(int).reshape(-1, 2)
    pts1 = np.asarray(positions1, dtype=np.float64)[idx_1].reshape(-1, 2)
    pts2 = np.asarray(positions2, dtype=np.float64)[idx_2].reshape(-1, 2)
    return pts1, pts2, pairs


__all__ = [
    "MatchingResult",
    "oneway_match",
    "twoway_match",
    "remove_inconsistent_matches",
    "count_consistent_matches",
    "match_keypoints",
    "correspondences_from_matches",
]
