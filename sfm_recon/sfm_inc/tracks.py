"""
Track fusion: merging pairwise feature correspondences into multi-view
tracks.

The builder owns the track list and the per-viewport track-id arrays
(`Viewport.track_ids`). All mutation happens through its methods and must
run single-threaded.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np

from sfm_recon.errors import TrackConflictError
from sfm_recon.sfm_inc.data_structures import (
    FeatureReference,
    PairwiseMatching,
    Track,
    Viewport,
)


class TrackBuilder:
    """
    Creates, extends and unifies tracks over a list of viewports.

    Viewports are indexed by their id, i.e. `viewports[i].id == i`.
    """

    def __init__(self, viewports: List[Viewport], verbose: bool = False) -> None:
        self.viewports = viewports
        self.tracks: List[Track] = []
        self.verbose = verbose
        self.num_unifications = 0
        # Tracks deleted because two of their features came from one view.
        self.num_conflicts = 0

    def _log(self, msg: str) -> None:
        if self.verbose:
            print(f"[tracks] {msg}")

    def reset(self) -> None:
        """Drop all tracks and mark every feature unassigned."""
        self.tracks = []
        for viewport in self.viewports:
            viewport.reset_tracks()

    def track_id_of(self, ref: FeatureReference) -> int:
        return int(self.viewports[ref.view_id].track_ids[ref.feature_id])

    def _assign(self, ref: FeatureReference, track_id: int) -> None:
        self.viewports[ref.view_id].track_ids[ref.feature_id] = track_id

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def new_track(
        self,
        refs: Sequence[FeatureReference],
        pos: Optional[np.ndarray] = None,
    ) -> int:
        """Create a track from unassigned features and return its id."""
        track_id = len(self.tracks)
        track = Track(features=list(refs))
        if pos is not None:
            track.pos = np.asarray(pos, dtype=np.float64).reshape(3)
        self.tracks.append(track)
        for ref in refs:
            self._assign(ref, track_id)
        return track_id

    def extend_track(self, track_id: int, ref: FeatureReference) -> None:
        """Append an unassigned feature to a track."""
        self.tracks[track_id].features.append(ref)
        self._assign(ref, track_id)

    def unify_tracks(self, track_a: int, track_b: int) -> int:
        """
        Merge two tracks and return the id of the surviving one.

        The track with more references survives; on equal size the lower id
        survives. The absorbed track is left empty and removed by
        `remove_invalid_tracks`.
        """
        size_a = len(self.tracks[track_a].features)
        size_b = len(self.tracks[track_b].features)
        if size_b > size_a or (size_b == size_a and track_b < track_a):
            track_a, track_b = track_b, track_a

        survivor = self.tracks[track_a]
        absorbed = self.tracks[track_b]
        for ref in absorbed.features:
            self._assign(ref, track_a)
        survivor.features.extend(absorbed.features)
        absorbed.features = []
        self.num_unifications += 1
        return track_a

    def add_correspondence(self, ref_1: FeatureReference, ref_2: FeatureReference) -> int:
        """
        Register one correspondence and return the track id both features
        belong to afterwards.
        """
        track_1 = self.track_id_of(ref_1)
        track_2 = self.track_id_of(ref_2)

        if track_1 < 0 and track_2 < 0:
            return self.new_track([ref_1, ref_2])
        if track_1 < 0:
            self.extend_track(track_2, ref_1)
            return track_2
        if track_2 < 0:
            self.extend_track(track_1, ref_2)
            return track_1
        if track_1 == track_2:
            return track_1
        return self.unify_tracks(track_1, track_2)

    # ------------------------------------------------------------------
    # Fusion and validation
    # ------------------------------------------------------------------

    def fuse(self, pairwise_matching: PairwiseMatching) -> List[Track]:
        """
        Build tracks from all pairwise matchings.

        Every viewport's track ids are reset first. Invalid tracks are
        removed afterwards and colors computed for the survivors.
        """
        self.reset()
        num_correspondences = 0
        for tvm in pairwise_matching:
            for f1, f2 in tvm.matches:
                self.add_correspondence(
                    FeatureReference(tvm.view_1_id, int(f1)),
                    FeatureReference(tvm.view_2_id, int(f2)),
                )
                num_correspondences += 1

        num_raw = len(self.tracks)
        self.remove_invalid_tracks()
        self.compute_colors()
        self._log(
            f"{num_correspondences} correspondences -> {num_raw} tracks, "
            f"{self.num_unifications} unifications, {len(self.tracks)} valid"
        )
        return self.tracks

    def filter_tracks(self, keep: np.ndarray) -> None:
        """
        Keep only the tracks selected by the boolean mask; ids are densified
        and the viewports' back-references remapped (-1 for removed tracks).
        """
        keep = np.asarray(keep, dtype=bool)
        if len(keep) != len(self.tracks):
            raise ValueError("Mask length does not match number of tracks")

        mapping = -np.ones(len(self.tracks) + 1, dtype=int)
        mapping[np.nonzero(keep)[0]] = np.arange(int(keep.sum()))
        self.tracks = [track for track, k in zip(self.tracks, keep) if k]

        for viewport in self.viewports:
            ids = viewport.track_ids
            if ids.size == 0:
                continue
            # Index -1 maps through the extra last entry to -1.
            viewport.track_ids = mapping[ids]

    def remove_invalid_tracks(self) -> int:
        """
        Remove tracks with fewer than two references or with two references
        in the same view. Returns the number of removed tracks.
        """
        keep = np.array([track.is_valid() for track in self.tracks], dtype=bool)
        conflicts = sum(
            1 for track, k in zip(self.tracks, keep) if not k and len(track.features) >= 2
        )
        if conflicts > 0:
            self.num_conflicts += conflicts
            self._log(
                f"{TrackConflictError.__name__}: deleted {conflicts} tracks "
                "observed twice in one view"
            )
        removed = int(len(keep) - keep.sum())
        if removed > 0:
            self.filter_tracks(keep)
        return removed

    def compute_colors(self, track_ids: Optional[Sequence[int]] = None) -> None:
        """Set each track's color to the rounded mean of its feature colors."""
        if track_ids is None:
            track_ids = range(len(self.tracks))
        for track_id in track_ids:
            track = self.tracks[track_id]
            colors = [
                self.viewports[ref.view_id].colors[ref.feature_id]
                for ref in track.features
                if self.viewports[ref.view_id].colors.shape[0] > ref.feature_id
            ]
            if colors:
                mean = np.mean(np.asarray(colors, dtype=np.float64), axis=0)
                track.color = np.clip(np.round(mean), 0, 255).astype(np.uint8)


def compute_tracks(
    pairwise_matching: PairwiseMatching,
    viewports: List[Viewport],
    verbose: bool = False,
) -> List[Track]:
    """Fuse pairwise matchings into tracks, updating the viewports' track ids."""
    return TrackBuilder(viewports, verbose=verbose).fuse(pairwise_matching)


__all__ = ["TrackBuilder", "compute_tracks"]
