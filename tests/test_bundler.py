import threading
from types import SimpleNamespace

import numpy as np
import pytest

from conftest import HEIGHT, WIDTH, SyntheticScene, seeded_options
from sfm_recon.errors import InvalidImageError, NoValidPoseError
from sfm_recon.geometry.triangulation import triangulate_track
from sfm_recon.sfm_inc.data_structures import Viewport, ViewportState
from sfm_recon.sfm_inc.incremental_sfm import match_all_pairs
from sfm_recon.sfm_inc.selection import (
    HomographyPairSelector,
    InitialPairSelector,
    LowestPairSelector,
    LowestViewSelector,
    NearestPosedViewSelector,
    NextViewSelector,
)
from sfm_recon.sfm_inc.tracks import compute_tracks


def _camera_distance_ratios(cameras):
    centers = [cam.center for cam in cameras]
    base = np.linalg.norm(centers[1] - centers[0])
    return [np.linalg.norm(c - centers[0]) / base for c in centers]


def test_bundler_poses_every_view(scene, make_bundler):
    bundler = make_bundler(scene)
    bundle = bundler.run()

    assert bundler.remaining == set()
    assert sorted(bundler.visit_order) == list(range(scene.num_views))
    assert bundler.skipped_views == []
    assert bundle.num_valid_cameras == scene.num_views
    assert all(vp.state == ViewportState.POSED for vp in bundler.viewports)
    assert len(bundle.tracks) > 100


def test_bundler_recovers_camera_layout(scene, make_bundler):
    bundle = make_bundler(scene).run()

    # Reconstruction is defined up to a similarity; compare distance ratios.
    expected = _camera_distance_ratios(scene.poses)
    actual = _camera_distance_ratios(bundle.cameras)
    np.testing.assert_allclose(actual, expected, rtol=0.05, atol=1e-9)


def test_bundle_tracks_are_consistent(scene, make_bundler):
    bundler = make_bundler(scene)
    bundle = bundler.run()

    for track_id, track in enumerate(bundle.tracks):
        views = track.view_ids()
        assert len(views) >= 2
        assert len(set(views)) == len(views)
        # All references of a track observe the same scene point.
        point_ids = {
            int(scene.point_ids[ref.view_id][ref.feature_id]) for ref in track.features
        }
        assert len(point_ids) == 1
        for ref in track.features:
            assert bundler.viewports[ref.view_id].track_ids[ref.feature_id] == track_id

    for obs in bundle.observations:
        camera = bundle.cameras[obs.view_id]
        projected = camera.project(bundle.tracks[obs.track_id].pos)[0]
        assert np.linalg.norm(projected - obs.uv) < bundler.options.max_reprojection_error


def test_bundler_nearest_view_selector(scene, make_bundler):
    bundler = make_bundler(scene, next_view_selector=NearestPosedViewSelector())
    bundle = bundler.run()

    assert bundler.visit_order == [0, 1, 2, 3, 4]
    assert bundle.num_valid_cameras == scene.num_views


def test_bundler_homography_pair_selector(scene, make_bundler):
    bundler = make_bundler(scene, init_pair_selector=HomographyPairSelector())
    bundle = bundler.run()

    first, second = bundler.visit_order[:2]
    assert first != second
    assert bundler.remaining == set()
    assert bundle.num_valid_cameras == scene.num_views


def test_homography_pair_selector_rejects_planar_scene(make_bundler):
    planar = SyntheticScene(planar=True)
    bundler = make_bundler(planar, init_pair_selector=HomographyPairSelector())
    with pytest.raises(NoValidPoseError):
        bundler.run()


def test_cancel_before_run_returns_empty_bundle(scene, make_bundler):
    event = threading.Event()
    event.set()
    bundler = make_bundler(scene, cancel_event=event)
    bundle = bundler.run()

    assert bundle.num_valid_cameras == 0
    assert bundler.remaining == set(range(scene.num_views))


def test_cancel_during_run_keeps_partial_bundle(scene, make_bundler):
    class CancellingSelector(NextViewSelector):
        def select_view(self, bundler):
            bundler.cancel()
            return min(bundler.remaining)

    bundler = make_bundler(scene, next_view_selector=CancellingSelector())
    bundle = bundler.run()

    # The RANSAC of view 2 stops immediately; the view is not counted as
    # visited and can be picked up again.
    assert bundler.visit_order == [0, 1]
    assert bundler.skipped_views == []
    assert bundler.remaining == {2, 3, 4}
    assert bundle.num_valid_cameras == 2
    assert bundler.viewports[2].state == ViewportState.EXTRACTED


def test_cancel_during_initial_pair_returns_empty_bundle(scene, make_bundler):
    class CancellingPairSelector(InitialPairSelector):
        def select_pair(self, bundler):
            bundler.cancel()
            return 0, 1

    bundler = make_bundler(scene, init_pair_selector=CancellingPairSelector())
    bundle = bundler.run()

    assert bundle.num_valid_cameras == 0
    assert bundler.remaining == set(range(scene.num_views))
    assert bundler.visit_order == []
    assert bundler.skipped_views == []


def test_cancel_during_homography_pair_search_returns_empty_bundle(scene, make_bundler):
    class CancellingHomographySelector(HomographyPairSelector):
        def select_pair(self, bundler):
            bundler.cancel()
            return super().select_pair(bundler)

    bundler = make_bundler(scene, init_pair_selector=CancellingHomographySelector())
    bundle = bundler.run()

    assert bundle.num_valid_cameras == 0
    assert bundler.remaining == set(range(scene.num_views))


def test_invalid_initial_pair_choice_raises(scene, make_bundler):
    class SameViewTwice(InitialPairSelector):
        def select_pair(self, bundler):
            return 0, 0

    with pytest.raises(ValueError):
        make_bundler(scene, init_pair_selector=SameViewTwice()).run()


def test_invalid_next_view_choice_raises(scene, make_bundler):
    class AlwaysZero(NextViewSelector):
        def select_view(self, bundler):
            return 0

    with pytest.raises(ValueError):
        make_bundler(scene, next_view_selector=AlwaysZero()).run()


def test_discard_descriptors_frees_buffers(scene, make_bundler):
    bundler = make_bundler(scene, options=seeded_options(discard_descriptors=True))
    bundle = bundler.run()

    assert bundle.num_valid_cameras == scene.num_views
    assert all(vp.descriptors is None and vp.image is None for vp in bundler.viewports)
    # Feature positions stay available for the observations.
    assert all(vp.num_features > 0 for vp in bundler.viewports)


def test_match_all_pairs_and_compute_tracks(scene, make_bundler):
    bundler = make_bundler(scene)
    bundler.compute_features(range(scene.num_views))
    matchings = match_all_pairs(bundler.viewports, bundler.options)

    assert len(matchings) == scene.num_views * (scene.num_views - 1) // 2
    tracks = compute_tracks(matchings, bundler.viewports)
    assert len(tracks) > 0
    for track in tracks:
        views = track.view_ids()
        assert len(views) >= 2
        assert len(set(views)) == len(views)
        point_ids = {
            int(scene.point_ids[ref.view_id][ref.feature_id]) for ref in track.features
        }
        assert len(point_ids) == 1


def test_lowest_selectors():
    bundler = SimpleNamespace(remaining={4, 2, 7})
    assert LowestPairSelector().select_pair(bundler) == (2, 4)
    assert LowestViewSelector().select_view(bundler) == 2


def test_lowest_pair_selector_needs_two_views():
    with pytest.raises(NoValidPoseError):
        LowestPairSelector().select_pair(SimpleNamespace(remaining={3}))


def test_nearest_posed_view_selector():
    viewports = [Viewport(id=i) for i in range(8)]
    viewports[5].state = ViewportState.POSED
    viewports[6].state = ViewportState.POSED
    bundler = SimpleNamespace(remaining={0, 1, 3, 7}, viewports=viewports)
    assert NearestPosedViewSelector().select_view(bundler) == 7

    bundler.remaining = {0, 3}
    assert NearestPosedViewSelector().select_view(bundler) == 3


def test_bundler_needs_one_focal_length_per_image(scene):
    from sfm_recon.sfm_inc.incremental_sfm import Bundler

    with pytest.raises(ValueError):
        Bundler(scene.images(), focal_lengths=[1.0, 1.0])


def _images_with_rgba_view(scene, view_id):
    images = scene.images()
    images[view_id] = np.full((HEIGHT, WIDTH, 4), view_id, dtype=np.uint8)
    return images


def test_unreadable_view_is_skipped(scene, make_bundler):
    bundler = make_bundler(
        scene,
        images=_images_with_rgba_view(scene, 3),
        next_view_selector=NearestPosedViewSelector(),
    )
    bundle = bundler.run()

    assert bundler.skipped_views == [3]
    assert bundler.remaining == set()
    assert bundle.num_valid_cameras == scene.num_views - 1
    assert bundle.cameras[3] is None
    assert bundler.viewports[3].state == ViewportState.NOT_EXTRACTED


def test_homography_pair_selector_ignores_unreadable_view(scene, make_bundler):
    bundler = make_bundler(
        scene,
        images=_images_with_rgba_view(scene, 3),
        init_pair_selector=HomographyPairSelector(),
    )
    bundle = bundler.run()

    assert 3 not in bundler.visit_order[:2]
    assert bundler.skipped_views == [3]
    assert bundle.num_valid_cameras == scene.num_views - 1


def test_compute_features_keeps_views_that_extract(scene, make_bundler):
    bundler = make_bundler(scene, images=_images_with_rgba_view(scene, 1))

    with pytest.raises(InvalidImageError):
        bundler.compute_features([0, 1, 2])
    assert [vp.state for vp in bundler.viewports[:3]] == [
        ViewportState.EXTRACTED,
        ViewportState.NOT_EXTRACTED,
        ViewportState.EXTRACTED,
    ]

    assert bundler.compute_features([1, 3], skip_invalid=True) == [1]
    assert bundler.viewports[3].state == ViewportState.EXTRACTED


def test_extended_tracks_are_retriangulated_from_all_views(scene, make_bundler):
    bundler = make_bundler(scene)
    bundler.run()

    track_id = next(i for i, t in enumerate(bundler.tracks) if len(t.features) >= 3)
    track = bundler.tracks[track_id]
    poses = [bundler.viewports[ref.view_id].pose for ref in track.features]
    positions = np.array(
        [bundler.viewports[ref.view_id].positions[ref.feature_id] for ref in track.features]
    )
    expected = triangulate_track(positions, poses)

    track.pos = track.pos + 1e-3
    assert bundler._retriangulate([track_id]) == 1
    np.testing.assert_allclose(track.pos, expected)

    # An observation far off the others makes the solution unusable.
    moved = track.pos.copy()
    ref = track.features[0]
    bundler.viewports[ref.view_id].positions[ref.feature_id] += [0.0, 200.0]
    assert bundler._retriangulate([track_id]) == 0
    np.testing.assert_array_equal(track.pos, moved)
