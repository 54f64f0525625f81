"""
Incremental Structure-from-Motion pipeline.

The `Bundler` drives the reconstruction: it poses an initial image pair from
its relative geometry, then adds the remaining views one at a time by
resolving their feature matches to existing tracks and estimating an
absolute pose. Extraction and matching run on a thread pool; every update of
tracks and track ids happens on the calling thread.
"""

from __future__ import annotations

import itertools
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

import numpy as np

from sfm_recon.config import BundlerOptions
from sfm_recon.errors import (
    InsufficientCorrespondencesError,
    InvalidImageError,
    NoValidPoseError,
    SingularMatrixError,
)
from sfm_recon.features.image_ops import (
    downscale_to_max_pixels,
    ensure_channels,
    sample_colors,
)
from sfm_recon.features.keypoints import create_extractor, descriptors_to_arrays
from sfm_recon.features.matching import correspondences_from_matches, match_keypoints
from sfm_recon.features.scale_space import FeatureExtractor
from sfm_recon.geometry.essential import estimate_relative_pose
from sfm_recon.geometry.fundamental import fundamental_matrix_ransac
from sfm_recon.geometry.pnp import estimate_camera_pose_pnp
from sfm_recon.geometry.ransac import StopCallback
from sfm_recon.geometry.triangulation import (
    triangulate_matched_key_pts_to_3D_pts,
    triangulate_track,
)
from sfm_recon.sfm_inc.data_structures import (
    Bundle,
    FeatureReference,
    ImagePair,
    Observation,
    PairwiseMatching,
    TwoViewMatching,
    Viewport,
    ViewportState,
)
from sfm_recon.sfm_inc.selection import (
    InitialPairSelector,
    LowestPairSelector,
    LowestViewSelector,
    NextViewSelector,
)
from sfm_recon.sfm_inc.tracks import TrackBuilder

ExtractorFactory = Callable[[], FeatureExtractor]

# Errors that make the bundler skip a view instead of aborting.
RECOVERABLE_ERRORS = (
    InsufficientCorrespondencesError,
    InvalidImageError,
    NoValidPoseError,
    SingularMatrixError,
)


def match_viewports(
    viewport_1: Viewport,
    viewport_2: Viewport,
    options: BundlerOptions,
) -> TwoViewMatching:
    """
    Mutual nearest-neighbour matching of two extracted viewports.

    Raises:
        ValueError: If either viewport has no descriptors.
    """
    if viewport_1.descriptors is None or viewport_2.descriptors is None:
        raise ValueError(
            f"Viewports {viewport_1.id} and {viewport_2.id} must both have descriptors"
        )
    result = match_keypoints(
        viewport_1.descriptors, viewport_2.descriptors, options.matching_options
    )
    _, _, pairs = correspondences_from_matches(
        viewport_1.positions, viewport_2.positions, result
    )
    return TwoViewMatching(view_1_id=viewport_1.id, view_2_id=viewport_2.id, matches=pairs)


def filter_matching_epipolar(
    matching: TwoViewMatching,
    viewports: Sequence[Viewport],
    options: BundlerOptions,
    should_stop: StopCallback = None,
) -> Optional[TwoViewMatching]:
    """
    Keep only the fundamental-matrix RANSAC inliers of a matching.

    Returns:
        The filtered matching, or None if the pair has too few matches or
        the estimation fails.
    """
    if matching.num_matches < options.min_feature_matches:
        return None
    pts1 = viewports[matching.view_1_id].positions[matching.matches[:, 0]]
    pts2 = viewports[matching.view_2_id].positions[matching.matches[:, 1]]
    try:
        ransac = fundamental_matrix_ransac(
            pts1, pts2, options.fundamental_options, should_stop=should_stop
        )
    except (InsufficientCorrespondencesError, SingularMatrixError):
        return None
    return TwoViewMatching(
        view_1_id=matching.view_1_id,
        view_2_id=matching.view_2_id,
        matches=matching.matches[ransac.inliers],
    )


def match_all_pairs(
    viewports: Sequence[Viewport],
    options: Optional[BundlerOptions] = None,
    should_stop: StopCallback = None,
) -> PairwiseMatching:
    """
    Exhaustively match every pair of extracted viewports.

    Pairs run on a thread pool; each matching is reduced to its fundamental
    matrix inliers. Pairs with fewer than `min_feature_matches` matches or
    a failed estimation are dropped.

    Returns:
        Matchings ordered by (view_1_id, view_2_id).
    """
    options = options if options is not None else BundlerOptions()
    extracted = [vp for vp in viewports if vp.descriptors is not None]
    pairs = list(itertools.combinations(extracted, 2))

    def _match(pair: Tuple[Viewport, Viewport]) -> Optional[TwoViewMatching]:
        matching = match_viewports(pair[0], pair[1], options)
        return filter_matching_epipolar(matching, viewports, options, should_stop)

    with ThreadPoolExecutor(max_workers=options.max_workers) as executor:
        results = list(executor.map(_match, pairs))

    matchings = [m for m in results if m is not None]
    if options.verbose_output:
        print(f"[match] {len(matchings)} of {len(pairs)} pairs kept after epipolar filtering")
    return matchings


class Bundler:
    """
    Incremental reconstruction over a fixed set of images.

    Args:
        images: Input images, (H, W) or (H, W, 3), uint8 or float in [0, 1].
        focal_lengths: Focal length per image normalized by the larger image
            dimension, a single value for all images, or None for 1.0.
        options: Pipeline options.
        init_pair_selector: Strategy for the initial pair.
        next_view_selector: Strategy for the next view.
        extractor_factory: Creates one feature extractor per extraction;
            defaults to the extractor named by `options.feature_type`.
        cancel_event: When set, the reconstruction stops at the next RANSAC
            or bundler iteration and returns what it has.
    """

    def __init__(
        self,
        images: Sequence[np.ndarray],
        focal_lengths: Optional[Union[float, Sequence[float]]] = None,
        options: Optional[BundlerOptions] = None,
        init_pair_selector: Optional[InitialPairSelector] = None,
        next_view_selector: Optional[NextViewSelector] = None,
        extractor_factory: Optional[ExtractorFactory] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.options = options if options is not None else BundlerOptions()

        if focal_lengths is None:
            focal_lengths = [1.0] * len(images)
        elif np.isscalar(focal_lengths):
            focal_lengths = [float(focal_lengths)] * len(images)
        if len(focal_lengths) != len(images):
            raise ValueError("Need one focal length per image")

        self.viewports: List[Viewport] = [
            Viewport(id=i, image=image, focal_length=float(f) if f and f > 0 else 1.0)
            for i, (image, f) in enumerate(zip(images, focal_lengths))
        ]
        self.remaining: Set[int] = set(range(len(self.viewports)))
        # Views in the order they were selected.
        self.visit_order: List[int] = []
        # Selected views that could not be posed.
        self.skipped_views: List[int] = []

        self.init_pair_selector = init_pair_selector or LowestPairSelector()
        self.next_view_selector = next_view_selector or LowestViewSelector()
        self.extractor_factory = extractor_factory or self._default_extractor
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self.track_builder = TrackBuilder(self.viewports, verbose=self.options.verbose_output)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _default_extractor(self) -> FeatureExtractor:
        if self.options.feature_type == "sift":
            return create_extractor("sift", self.options.sift_options)
        return create_extractor("surf", self.options.surf_options)

    def log(self, msg: str) -> None:
        if self.options.verbose_output:
            print(f"[sfm] {msg}")

    @property
    def tracks(self):
        return self.track_builder.tracks

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def should_stop(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def posed_view_ids(self) -> List[int]:
        return [vp.id for vp in self.viewports if vp.state == ViewportState.POSED]

    def _release(self, viewport: Viewport) -> None:
        if self.options.discard_descriptors:
            viewport.descriptors = None
            viewport.image = None

    # ------------------------------------------------------------------
    # Extraction and matching
    # ------------------------------------------------------------------

    def _extract(self, viewport: Viewport):
        if viewport.image is None:
            raise InvalidImageError(f"Viewport {viewport.id} has no image")
        ensure_channels(viewport.image)
        image = downscale_to_max_pixels(viewport.image, self.options.max_image_pixels)
        extractor = self.extractor_factory()
        descriptors = extractor.extract(image)
        positions, vectors = descriptors_to_arrays(descriptors, extractor.descriptor_length)
        colors = sample_colors(image, positions)
        height, width = image.shape[:2]
        return width, height, positions, vectors, colors

    def compute_features(
        self,
        view_ids: Sequence[int],
        skip_invalid: bool = False,
    ) -> List[int]:
        """
        Extract features for the given views that have none yet.

        Extraction runs on a thread pool; results are attached to the
        viewports on the calling thread. Views whose image is rejected stay
        NOT_EXTRACTED.

        Args:
            view_ids: Views to extract.
            skip_invalid: Log rejected images and carry on with the other
                views instead of raising.

        Returns:
            Ids of the views whose image was rejected.

        Raises:
            InvalidImageError: If an image is rejected and `skip_invalid` is
                false. The views that did extract keep their features.
        """
        todo = [
            self.viewports[i]
            for i in view_ids
            if self.viewports[i].state == ViewportState.NOT_EXTRACTED
        ]
        if not todo:
            return []

        with ThreadPoolExecutor(max_workers=self.options.max_workers) as executor:
            futures = [executor.submit(self._extract, viewport) for viewport in todo]

        failed: List[int] = []
        first_error: Optional[InvalidImageError] = None
        for viewport, future in zip(todo, futures):
            try:
                width, height, positions, vectors, colors = future.result()
            except InvalidImageError as e:
                self.log(f"View {viewport.id}: cannot extract features: {e}")
                failed.append(viewport.id)
                if first_error is None:
                    first_error = e
                continue
            viewport.width = int(width)
            viewport.height = int(height)
            viewport.positions = positions
            viewport.descriptors = vectors
            viewport.colors = colors
            viewport.reset_tracks()
            viewport.state = ViewportState.EXTRACTED
            self.log(f"View {viewport.id}: {viewport.num_features} features ({width}x{height})")

        if first_error is not None and not skip_invalid:
            raise first_error
        return failed

    def match_views(self, view_1_id: int, view_2_id: int) -> TwoViewMatching:
        return match_viewports(
            self.viewports[view_1_id], self.viewports[view_2_id], self.options
        )

    def match_pairs(self, pairs: Sequence[ImagePair]) -> List[TwoViewMatching]:
        """Match several view pairs on the thread pool, in input order."""
        with ThreadPoolExecutor(max_workers=self.options.max_workers) as executor:
            return list(executor.map(lambda pair: self.match_views(*pair), pairs))

    # ------------------------------------------------------------------
    # Triangulation
    # ------------------------------------------------------------------

    def _triangulate(
        self,
        view_1_id: int,
        view_2_id: int,
        pairs: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Triangulate feature pairs between two posed views.

        Returns:
            Tuple of (points_3d, keep) where keep marks points in front of
            both cameras with reprojection error below the limit.
        """
        vp1 = self.viewports[view_1_id]
        vp2 = self.viewports[view_2_id]
        pts1 = vp1.positions[pairs[:, 0]]
        pts2 = vp2.positions[pairs[:, 1]]
        points_3d, errors = triangulate_matched_key_pts_to_3D_pts(vp1.pose, vp2.pose, pts1, pts2)
        if len(points_3d) == 0:
            return points_3d, np.zeros(0, dtype=bool)
        keep = (
            np.all(np.isfinite(points_3d), axis=1)
            & (vp1.pose.depth(points_3d) > 0.0)
            & (vp2.pose.depth(points_3d) > 0.0)
            & (errors < self.options.max_reprojection_error)
        )
        return points_3d, keep

    def _track_fits_view(self, track_id: int, view_id: int, feature_id: int) -> bool:
        viewport = self.viewports[view_id]
        pos = self.tracks[track_id].pos.reshape(1, 3)
        if viewport.pose.depth(pos)[0] <= 0.0:
            return False
        error = np.linalg.norm(viewport.pose.project(pos)[0] - viewport.positions[feature_id])
        return bool(error < self.options.max_reprojection_error)

    # ------------------------------------------------------------------
    # Initial pair
    # ------------------------------------------------------------------

    def initialize(self) -> ImagePair:
        """
        Pose the initial pair and triangulate the first tracks.

        Raises:
            ValueError: If the selector returns an invalid pair.
            InsufficientCorrespondencesError, SingularMatrixError,
            NoValidPoseError: If the pair cannot be posed.
        """
        view_1_id, view_2_id = self.init_pair_selector.select_pair(self)
        if view_1_id == view_2_id:
            raise ValueError(f"Initial pair must have distinct views, got {view_1_id}")
        if view_1_id not in self.remaining or view_2_id not in self.remaining:
            raise ValueError(f"Initial pair ({view_1_id}, {view_2_id}) is not in remaining")
        self.log(f"Initial pair: views {view_1_id} and {view_2_id}")

        self.compute_features([view_1_id, view_2_id])
        vp1 = self.viewports[view_1_id]
        vp2 = self.viewports[view_2_id]

        matching = self.match_views(view_1_id, view_2_id)
        if matching.num_matches < self.options.min_feature_matches:
            raise InsufficientCorrespondencesError(
                self.options.min_feature_matches, matching.num_matches, "feature matches"
            )

        relative = estimate_relative_pose(
            vp1.positions[matching.matches[:, 0]],
            vp2.positions[matching.matches[:, 1]],
            vp1.intrinsics(),
            vp2.intrinsics(),
            self.options.fundamental_options,
            should_stop=self.should_stop,
        )
        vp1.pose = relative.pose1
        vp2.pose = relative.pose2
        self.log(
            f"Relative pose: {len(relative.inliers)} of {matching.num_matches} "
            "matches are inliers"
        )

        inlier_matching = TwoViewMatching(
            view_1_id, view_2_id, matching.matches[relative.inliers]
        )
        tracks = self.track_builder.fuse([inlier_matching])

        # Every inlier match forms its own two-view track; recover the pairs
        # from the tracks so points and tracks stay aligned.
        pairs = np.array(
            [[t.features[0].feature_id, t.features[1].feature_id] for t in tracks],
            dtype=int,
        ).reshape(-1, 2)
        points_3d, keep = self._triangulate(view_1_id, view_2_id, pairs)
        for track, pos in zip(tracks, points_3d):
            track.pos = pos
        self.track_builder.filter_tracks(keep)

        if len(self.tracks) == 0:
            vp1.pose = None
            vp2.pose = None
            raise NoValidPoseError("No point of the initial pair survives triangulation")

        for viewport in (vp1, vp2):
            viewport.state = ViewportState.POSED
            self.remaining.discard(viewport.id)
            self.visit_order.append(viewport.id)
        self.log(f"Initial pair triangulated {len(self.tracks)} tracks")
        return view_1_id, view_2_id

    # ------------------------------------------------------------------
    # Next view
    # ------------------------------------------------------------------

    def resolve_2d_3d(
        self,
        view_id: int,
        matchings: Sequence[TwoViewMatching],
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Resolve matches of a new view against posed views to existing tracks.

        A feature of the new view that maps to two different tracks, and a
        track reached from two different features, are both discarded.

        Returns:
            Tuple of (feature_ids, track_ids), aligned int arrays.
        """
        feature_to_track: Dict[int, int] = {}
        ambiguous: Set[int] = set()
        for matching in matchings:
            posed = self.viewports[matching.view_1_id]
            for posed_feature, new_feature in matching.matches:
                track_id = int(posed.track_ids[posed_feature])
                if track_id < 0:
                    continue
                previous = feature_to_track.setdefault(int(new_feature), track_id)
                if previous != track_id:
                    ambiguous.add(int(new_feature))

        for feature_id in ambiguous:
            del feature_to_track[feature_id]

        track_counts: Dict[int, int] = {}
        for track_id in feature_to_track.values():
            track_counts[track_id] = track_counts.get(track_id, 0) + 1

        resolved = sorted(
            (f, t) for f, t in feature_to_track.items() if track_counts[t] == 1
        )
        num_conflicts = len(ambiguous) + len(feature_to_track) - len(resolved)
        if num_conflicts > 0:
            self.log(f"View {view_id}: discarded {num_conflicts} conflicting 2D-3D matches")

        features = np.array([f for f, _ in resolved], dtype=int)
        track_ids = np.array([t for _, t in resolved], dtype=int)
        return features, track_ids

    def add_next_view(self, view_id: int) -> int:
        """
        Pose one view against the current reconstruction and grow the tracks.

        Returns:
            Number of pose inliers.

        Raises:
            InsufficientCorrespondencesError, SingularMatrixError,
            NoValidPoseError: If the view cannot be posed; nothing is changed.
        """
        self.compute_features([view_id])
        viewport = self.viewports[view_id]

        posed = [p for p in self.posed_view_ids() if self.viewports[p].descriptors is not None]
        matchings = self.match_pairs([(p, view_id) for p in posed])

        features, track_ids = self.resolve_2d_3d(view_id, matchings)
        if len(features) < self.options.min_pose_correspondences:
            raise InsufficientCorrespondencesError(
                self.options.min_pose_correspondences, len(features), "2D-3D correspondences"
            )

        points_3d = np.array([self.tracks[t].pos for t in track_ids]).reshape(-1, 3)
        points_2d = viewport.positions[features]
        result = estimate_camera_pose_pnp(
            viewport.intrinsics(),
            points_3d,
            points_2d,
            self.options.pose_options,
            should_stop=self.should_stop,
        )

        viewport.pose = result.pose
        viewport.state = ViewportState.POSED
        touched: Set[int] = set()
        for idx in result.inliers:
            self.track_builder.extend_track(
                int(track_ids[idx]), FeatureReference(view_id, int(features[idx]))
            )
            touched.add(int(track_ids[idx]))

        num_extended, first_new = self._grow_tracks(view_id, matchings, touched)
        num_refined = self._retriangulate(sorted(touched))
        self.track_builder.compute_colors(
            sorted(touched) + list(range(first_new, len(self.tracks)))
        )
        self.log(
            f"View {view_id}: {len(result.inliers)} of {len(features)} pose inliers, "
            f"{num_extended} track extensions, "
            f"{num_refined} tracks re-triangulated, "
            f"{len(self.tracks) - first_new} new tracks"
        )
        return len(result.inliers)

    def _grow_tracks(
        self,
        view_id: int,
        matchings: Sequence[TwoViewMatching],
        touched: Set[int],
    ) -> Tuple[int, int]:
        """
        Extend tracks into posed views and triangulate new tracks from
        matches that belong to no track yet.

        Returns:
            Tuple of (number of extensions, id of the first new track).
        """
        viewport = self.viewports[view_id]
        first_new = len(self.tracks)
        num_extended = 0

        for matching in matchings:
            posed = self.viewports[matching.view_1_id]
            candidates = []
            for posed_feature, new_feature in matching.matches:
                posed_track = int(posed.track_ids[posed_feature])
                new_track = int(viewport.track_ids[new_feature])
                if posed_track < 0 and new_track >= 0:
                    track = self.tracks[new_track]
                    if not track.has_view(posed.id) and self._track_fits_view(
                        new_track, posed.id, int(posed_feature)
                    ):
                        self.track_builder.extend_track(
                            new_track, FeatureReference(posed.id, int(posed_feature))
                        )
                        touched.add(new_track)
                        num_extended += 1
                elif posed_track < 0 and new_track < 0:
                    candidates.append((int(posed_feature), int(new_feature)))

            if not candidates:
                continue
            pairs = np.array(candidates, dtype=int)
            points_3d, keep = self._triangulate(posed.id, view_id, pairs)
            for (posed_feature, new_feature), pos, ok in zip(candidates, points_3d, keep):
                if ok:
                    self.track_builder.new_track(
                        [
                            FeatureReference(posed.id, posed_feature),
                            FeatureReference(view_id, new_feature),
                        ],
                        pos=pos,
                    )

        return num_extended, first_new

    def _retriangulate(self, track_ids: Sequence[int]) -> int:
        """
        Re-triangulate tracks from all their posed observations.

        The new position is kept only if it lies in front of every observing
        camera and reprojects within `max_reprojection_error` in each.

        Returns:
            Number of tracks that moved.
        """
        num_refined = 0
        for track_id in track_ids:
            track = self.tracks[track_id]
            refs = [
                ref for ref in track.features
                if self.viewports[ref.view_id].state == ViewportState.POSED
            ]
            if len(refs) < 3:
                continue
            poses = [self.viewports[ref.view_id].pose for ref in refs]
            positions = np.array(
                [self.viewports[ref.view_id].positions[ref.feature_id] for ref in refs]
            )
            pos = triangulate_track(positions, poses)
            if not np.all(np.isfinite(pos)):
                continue
            point = pos.reshape(1, 3)
            fits = all(
                pose.depth(point)[0] > 0.0
                and np.linalg.norm(pose.project(point)[0] - uv)
                < self.options.max_reprojection_error
                for pose, uv in zip(poses, positions)
            )
            if fits:
                track.pos = pos
                num_refined += 1
        return num_refined

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _select_next_view(self) -> int:
        view_id = self.next_view_selector.select_view(self)
        if view_id not in self.remaining:
            raise ValueError(f"Next view {view_id} is not in remaining")
        return view_id

    def run(self) -> Bundle:
        """
        Reconstruct until every view has been visited or the run is cancelled.

        Each selected view leaves `remaining` whether or not it can be posed;
        views that fail are listed in `skipped_views`. A view whose pose
        estimation is cut short by cancellation goes back to `remaining`
        instead.

        Returns:
            The reconstruction as a Bundle.

        Raises:
            Errors of the initial pair, which are fatal unless the run was
            cancelled meanwhile.
        """
        if self.cancelled:
            return self.create_bundle()
        if not self.posed_view_ids():
            try:
                self.initialize()
            except RECOVERABLE_ERRORS as e:
                if not self.cancelled:
                    raise
                self.log(f"Cancelled during the initial pair: {type(e).__name__}: {e}")
                return self.create_bundle()

        while self.remaining and not self.cancelled:
            view_id = self._select_next_view()
            self.remaining.discard(view_id)
            self.visit_order.append(view_id)
            try:
                self.add_next_view(view_id)
            except RECOVERABLE_ERRORS as e:
                if self.cancelled:
                    self.log(f"View {view_id} interrupted, back to remaining")
                    self.remaining.add(view_id)
                    self.visit_order.pop()
                    break
                self.log(f"Skipping view {view_id}: {type(e).__name__}: {e}")
                self.skipped_views.append(view_id)
                self._release(self.viewports[view_id])

        if self.cancelled:
            self.log(f"Cancelled with {len(self.remaining)} views remaining")
        else:
            for viewport in self.viewports:
                self._release(viewport)

        bundle = self.create_bundle()
        self.log(
            f"Done: {bundle.num_valid_cameras} of {len(self.viewports)} views posed, "
            f"{len(bundle.tracks)} tracks, {self.track_builder.num_conflicts} track conflicts"
        )
        return bundle

    def create_bundle(self) -> Bundle:
        """Snapshot of the posed cameras, the tracks and their observations."""
        cameras = [
            vp.pose if vp.state == ViewportState.POSED else None for vp in self.viewports
        ]
        observations: List[Observation] = []
        for track_id, track in enumerate(self.tracks):
            for ref in track.features:
                uv = self.viewports[ref.view_id].positions[ref.feature_id]
                observations.append(
                    Observation(
                        view_id=ref.view_id,
                        feature_id=ref.feature_id,
                        track_id=track_id,
                        uv=np.asarray(uv, dtype=np.float64),
                    )
                )
        return Bundle(cameras=cameras, tracks=list(self.tracks), observations=observations)


def run_sfm_from_images(
    images: Sequence[np.ndarray],
    focal_lengths: Optional[Union[float, Sequence[float]]] = None,
    options: Optional[BundlerOptions] = None,
    init_pair_selector: Optional[InitialPairSelector] = None,
    next_view_selector: Optional[NextViewSelector] = None,
) -> Tuple[Bundle, List[Viewport]]:
    """
    Run incremental SfM on a set of images.

    Returns:
        Tuple of (bundle, viewports); the viewports carry the feature
        positions the bundle's observations refer to.
    """
    bundler = Bundler(
        images,
        focal_lengths=focal_lengths,
        options=options,
        init_pair_selector=init_pair_selector,
        next_view_selector=next_view_selector,
    )
    return bundler.run(), bundler.viewports


__all__ = [
    "ExtractorFactory",
    "RECOVERABLE_ERRORS",
    "match_viewports",
    "filter_matching_epipolar",
    "match_all_pairs",
    "Bundler",
    "run_sfm_from_images",
]
