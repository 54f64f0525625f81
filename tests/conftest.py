"""
Shared fixtures: a synthetic multi-view scene and a feature extractor that
reports the exact (noisy) projections of its points.
"""

from __future__ import annotations

from typing import List

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from sfm_recon.config import (
    BundlerOptions,
    RansacFundamentalOptions,
    RansacHomographyOptions,
    RansacPoseOptions,
)
from sfm_recon.features.scale_space import Descriptor, FeatureExtractor
from sfm_recon.sfm_inc.data_structures import CameraPose, intrinsics_matrix
from sfm_recon.sfm_inc.incremental_sfm import Bundler

WIDTH = 640
HEIGHT = 480


class SyntheticScene:
    """Random points in front of cameras translating along x."""

    def __init__(
        self,
        num_views: int = 5,
        num_points: int = 300,
        planar: bool = False,
        noise: float = 0.2,
        seed: int = 0,
    ) -> None:
        rng = np.random.default_rng(seed)
        points = rng.uniform([-1.5, -1.0, 4.0], [1.5, 1.0, 6.0], size=(num_points, 3))
        if planar:
            points[:, 2] = 5.0
        self.points = points
        self.K = intrinsics_matrix(1.0, WIDTH, HEIGHT)

        self.poses: List[CameraPose] = []
        for i in range(num_views):
            R = Rotation.from_euler("y", 2.0 * i, degrees=True).as_matrix()
            center = np.array([0.3 * i, 0.05 * i, 0.0])
            self.poses.append(CameraPose(K=self.K, R=R, t=-R @ center))

        data = rng.normal(size=(num_points, 128))
        self.descriptor_data = (data / np.linalg.norm(data, axis=1, keepdims=True)).astype(
            np.float32
        )

        # Per view: point ids in feature order and their noisy pixel positions.
        self.point_ids: List[np.ndarray] = []
        self.positions: List[np.ndarray] = []
        for pose in self.poses:
            uv = pose.project(points) + rng.normal(scale=noise, size=(num_points, 2))
            visible = (
                (pose.depth(points) > 0.0)
                & (uv[:, 0] >= 0.0)
                & (uv[:, 0] < WIDTH)
                & (uv[:, 1] >= 0.0)
                & (uv[:, 1] < HEIGHT)
            )
            ids = np.nonzero(visible)[0]
            rng.shuffle(ids)
            self.point_ids.append(ids)
            self.positions.append(uv[ids])

    @property
    def num_views(self) -> int:
        return len(self.poses)

    def images(self) -> List[np.ndarray]:
        """Flat images whose pixel value is the view id."""
        return [np.full((HEIGHT, WIDTH, 3), i, dtype=np.uint8) for i in range(self.num_views)]

    def extractor_factory(self):
        return lambda: FakeExtractor(self)


class FakeExtractor(FeatureExtractor):
    """Returns the scene's projections for the view encoded in the image."""

    name = "fake"
    descriptor_length = 128

    def __init__(self, scene: SyntheticScene) -> None:
        self.scene = scene

    def extract(self, image: np.ndarray) -> List[Descriptor]:
        view_id = int(np.asarray(image)[0, 0, 0])
        return [
            Descriptor(
                x=float(u),
                y=float(v),
                scale=2.0,
                orientation=0.0,
                data=self.scene.descriptor_data[point_id],
            )
            for point_id, (u, v) in zip(
                self.scene.point_ids[view_id], self.scene.positions[view_id]
            )
        ]


def two_view_problem(num_points: int = 100, noise: float = 0.0, seed: int = 0):
    """
    Two cameras and noisy projections of random points in front of both.

    Returns:
        Tuple of (K, pose1, pose2, points_3d, pts1, pts2); pose1 is K [I | 0].
    """
    rng = np.random.default_rng(seed)
    K = intrinsics_matrix(1.0, WIDTH, HEIGHT)
    R = Rotation.from_euler("xyz", [2.0, -6.0, 1.0], degrees=True).as_matrix()
    center = np.array([0.8, 0.1, 0.05])
    pose1 = CameraPose(K=K)
    pose2 = CameraPose(K=K, R=R, t=-R @ center)

    points = rng.uniform([-1.5, -1.0, 4.0], [1.5, 1.0, 8.0], size=(num_points, 3))
    pts1 = pose1.project(points) + rng.normal(scale=noise, size=(num_points, 2))
    pts2 = pose2.project(points) + rng.normal(scale=noise, size=(num_points, 2))
    return K, pose1, pose2, points, pts1, pts2


def seeded_options(**kwargs) -> BundlerOptions:
    kwargs.setdefault("max_workers", 2)
    return BundlerOptions(
        fundamental_options=RansacFundamentalOptions(seed=1),
        pose_options=RansacPoseOptions(seed=2),
        homography_options=RansacHomographyOptions(seed=3),
        **kwargs,
    )


@pytest.fixture
def scene() -> SyntheticScene:
    return SyntheticScene()


@pytest.fixture
def make_bundler():
    def _make(scene: SyntheticScene, **kwargs) -> Bundler:
        options = kwargs.pop("options", None) or seeded_options()
        images = kwargs.pop("images", None) or scene.images()
        return Bundler(
            images,
            focal_lengths=1.0,
            options=options,
            extractor_factory=scene.extractor_factory(),
            **kwargs,
        )

    return _make
