"""
Shared core data structures for the SfM pipeline.

These dataclasses are intentionally simple containers used across:
- feature extraction and matching (viewports)
- track fusion and incremental SfM (tracks, matchings)
- scene export (bundle, observations)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np


class ViewportState(enum.Enum):
    """Progress of a viewport through the incremental pipeline."""

    NOT_EXTRACTED = "not_extracted"
    EXTRACTED = "extracted"
    POSED = "posed"


def intrinsics_matrix(focal_length: float, width: int, height: int) -> np.ndarray:
    """
    Build the calibration matrix for a normalized focal length.

    The focal length is given relative to the larger image dimension and the
    principal point is the image center.
    """
    flen = float(focal_length) * float(max(width, height))
    return np.array(
        [
            [flen, 0.0, width / 2.0],
            [0.0, flen, height / 2.0],
            [0.0, 0.0, 1.0],
        ],
        dtype=np.float64,
    )


@dataclass
class CameraPose:
    """Calibrated camera: world-to-camera rotation/translation and intrinsics."""

    # Intrinsic matrix (3x3).
    K: np.ndarray
    # Rotation (3x3) and translation (3,) from world to camera coordinates.
    R: np.ndarray = field(default_factory=lambda: np.eye(3))
    t: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        self.K = np.asarray(self.K, dtype=np.float64).reshape(3, 3)
        self.R = np.asarray(self.R, dtype=np.float64).reshape(3, 3)
        self.t = np.asarray(self.t, dtype=np.float64).reshape(3)

    @property
    def P(self) -> np.ndarray:
        """Projection matrix K [R | t] (3x4)."""
        return self.K @ np.hstack([self.R, self.t.reshape(3, 1)])

    @property
    def center(self) -> np.ndarray:
        """Camera center in world coordinates."""
        return -self.R.T @ self.t

    @property
    def focal_length(self) -> float:
        return float(self.K[0, 0])

    def depth(self, points_3d: np.ndarray) -> np.ndarray:
        """Depth (camera z) of world points (N, 3)."""
        points_3d = np.atleast_2d(points_3d)
        return points_3d @ self.R[2] + self.t[2]

    def project(self, points_3d: np.ndarray) -> np.ndarray:
        """Project world points (N, 3) to pixel coordinates (N, 2)."""
        points_3d = np.atleast_2d(points_3d)
        cam = points_3d @ self.R.T + self.t
        img = cam @ self.K.T
        return img[:, :2] / img[:, 2:3]


@dataclass(frozen=True)
class FeatureReference:
    """Reference to feature `feature_id` of viewport `view_id`."""

    view_id: int
    feature_id: int


@dataclass
class Track:
    """A candidate 3D point and the 2D features (one per view) observing it."""

    # 3D location (X, Y, Z) in world coordinates.
    pos: np.ndarray = field(default_factory=lambda: np.zeros(3))
    # RGB color (3,) uint8, the mean of the observing feature colors.
    color: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.uint8))
    features: List[FeatureReference] = field(default_factory=list)

    def view_ids(self) -> List[int]:
        return [ref.view_id for ref in self.features]

    def has_view(self, view_id: int) -> bool:
        return any(ref.view_id == view_id for ref in self.features)

    def is_valid(self) -> bool:
        """At least two references, all from distinct views."""
        views = self.view_ids()
        return len(views) >= 2 and len(set(views)) == len(views)


@dataclass
class Viewport:
    """
    One input image with its features, track back-references and pose.

    Feature arrays are aligned by row index:
    - positions: (N, 2) float32 pixel coordinates (x, y)
    - colors: (N, 3) uint8 RGB sampled at the positions
    - descriptors: (N, D) float32 unit vectors, None once discarded
    - track_ids: (N,) int, -1 for features not belonging to any track
    """

    id: int
    image: Optional[np.ndarray] = None
    # Focal length normalized by the larger image dimension.
    focal_length: float = 1.0
    # Size of the image the features were computed on.
    width: int = 0
    height: int = 0
    positions: np.ndarray = field(
        default_factory=lambda: np.zeros((0, 2), dtype=np.float32)
    )
    colors: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.uint8))
    descriptors: Optional[np.ndarray] = None
    track_ids: np.ndarray = field(default_factory=lambda: np.zeros((0,), dtype=int))
    pose: Optional[CameraPose] = None
    state: ViewportState = ViewportState.NOT_EXTRACTED

    @property
    def num_features(self) -> int:
        return int(self.positions.shape[0])

    def intrinsics(self) -> np.ndarray:
        """Calibration matrix for the feature image size."""
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Viewport {self.id} has no image size")
        return intrinsics_matrix(self.focal_length, self.width, self.height)

    def reset_tracks(self) -> None:
        self.track_ids = -np.ones(self.num_features, dtype=int)


@dataclass
class TwoViewMatching:
    """Feature correspondences between two views."""

    view_1_id: int
    view_2_id: int
    # (N, 2) int array of (feature in view 1, feature in view 2).
    matches: np.ndarray = field(default_factory=lambda: np.zeros((0, 2), dtype=int))

    @property
    def num_matches(self) -> int:
        return int(len(self.matches))


PairwiseMatching = List[TwoViewMatching]


@dataclass
class Observation:
    """
    A 2D observation of a track in a particular view.

    `uv` is (2,) numpy array in pixel coordinates.
    """

    view_id: int
    feature_id: int
    track_id: int
    uv: np.ndarray


@dataclass
class Bundle:
    """
    Output of the reconstruction: one optional pose per viewport and the
    tracks with their observations.
    """

    cameras: List[Optional[CameraPose]] = field(default_factory=list)
    tracks: List[Track] = field(default_factory=list)
    observations: List[Observation] = field(default_factory=list)

    @property
    def num_valid_cameras(self) -> int:
        return sum(1 for cam in self.cameras if cam is not None)


ImagePair = Tuple[int, int]


__all__ = [
    "ViewportState",
    "intrinsics_matrix",
    "CameraPose",
    "FeatureReference",
    "Track",
    "Viewport",
    "TwoViewMatching",
    "PairwiseMatching",
    "Observation",
    "Bundle",
    "ImagePair",
]
