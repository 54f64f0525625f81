"""
Selection strategies for the initial image pair and the next view to add.

Strategies only read bundler state; they must return ids that are still in
`bundler.remaining`, which the bundler checks.
"""

from __future__ import annotations

import abc
import itertools
from typing import TYPE_CHECKING, List

from sfm_recon.errors import NoValidPoseError, SingularMatrixError
from sfm_recon.geometry.homography import homography_ransac
from sfm_recon.sfm_inc.data_structures import ImagePair, ViewportState

if TYPE_CHECKING:
    from sfm_recon.sfm_inc.incremental_sfm import Bundler


class InitialPairSelector(abc.ABC):
    @abc.abstractmethod
    def select_pair(self, bundler: "Bundler") -> ImagePair:
        """Return two distinct ids from `bundler.remaining`."""


class NextViewSelector(abc.ABC):
    @abc.abstractmethod
    def select_view(self, bundler: "Bundler") -> int:
        """Return one id from `bundler.remaining`."""


class LowestPairSelector(InitialPairSelector):
    """The two smallest remaining ids."""

    def select_pair(self, bundler: "Bundler") -> ImagePair:
        remaining = sorted(bundler.remaining)
        if len(remaining) < 2:
            raise NoValidPoseError("Need at least two views for an initial pair")
        return remaining[0], remaining[1]


class HomographyPairSelector(InitialPairSelector):
    """
    Pick the best-matched pair that is not explained by a homography.

    All remaining pairs whose images extract are matched and visited in
    order of decreasing match count. A pair whose homography inlier
    fraction is at least `max_homography_inlier_ratio` is rejected: the
    views are related by a pure rotation or show a planar scene, so the
    relative pose is poorly constrained.
    """

    def __init__(self, max_homography_inlier_ratio: float = 0.6) -> None:
        if not 0.0 < max_homography_inlier_ratio <= 1.0:
            raise ValueError("max_homography_inlier_ratio must be in (0, 1]")
        self.max_homography_inlier_ratio = max_homography_inlier_ratio

    def select_pair(self, bundler: "Bundler") -> ImagePair:
        remaining = sorted(bundler.remaining)
        # Views with a rejected image stay in remaining and are skipped later.
        failed = bundler.compute_features(remaining, skip_invalid=True)
        remaining = [view_id for view_id in remaining if view_id not in failed]

        pairs = list(itertools.combinations(remaining, 2))
        matchings = bundler.match_pairs(pairs)
        matchings.sort(key=lambda m: (-m.num_matches, m.view_1_id, m.view_2_id))

        min_matches = max(bundler.options.min_feature_matches, 8)
        for matching in matchings:
            if matching.num_matches < min_matches:
                break
            if bundler.cancelled:
                break

            pts1 = bundler.viewports[matching.view_1_id].positions[matching.matches[:, 0]]
            pts2 = bundler.viewports[matching.view_2_id].positions[matching.matches[:, 1]]
            try:
                result = homography_ransac(
                    pts1,
                    pts2,
                    bundler.options.homography_options,
                    should_stop=bundler.should_stop,
                )
            except SingularMatrixError:
                continue

            ratio = len(result.inliers) / float(matching.num_matches)
            bundler.log(
                f"Pair ({matching.view_1_id}, {matching.view_2_id}): "
                f"{matching.num_matches} matches, homography inlier ratio {ratio:.2f}"
            )
            if ratio < self.max_homography_inlier_ratio:
                return matching.view_1_id, matching.view_2_id

        raise NoValidPoseError("No image pair qualifies as initial pair")


class LowestViewSelector(NextViewSelector):
    """The smallest remaining id."""

    def select_view(self, bundler: "Bundler") -> int:
        return min(bundler.remaining)


class NearestPosedViewSelector(NextViewSelector):
    """
    The remaining id closest in index to a posed view, for ordered image
    sequences; ties go to the smaller id.
    """

    def select_view(self, bundler: "Bundler") -> int:
        posed: List[int] = [
            vp.id for vp in bundler.viewports if vp.state == ViewportState.POSED
        ]
        if not posed:
            return min(bundler.remaining)
        return min(
            bundler.remaining,
            key=lambda view_id: (min(abs(view_id - p) for p in posed), view_id),
        )


__all__ = [
    "InitialPairSelector",
    "NextViewSelector",
    "LowestPairSelector",
    "HomographyPairSelector",
    "LowestViewSelector",
    "NearestPosedViewSelector",
]
