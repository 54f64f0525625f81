"""
Scene I/O utilities for saving and loading reconstructions, plus camera
frustum geometry for external viewers.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from sfm_recon.sfm_inc.data_structures import (
    Bundle,
    CameraPose,
    FeatureReference,
    Observation,
    Track,
    Viewport,
)


def save_bundle_npz(
    output_path: str,
    bundle: Bundle,
    viewports: Optional[Sequence[Viewport]] = None,
) -> None:
    """
    Serialize a Bundle to a .npz file.

    Args:
        output_path: Path where the scene data will be saved (.npz file).
        bundle: Reconstruction with cameras, tracks and observations.
        viewports: Optional viewports; their feature image sizes are stored
                   as `image_sizes` (width, height).
    """
    # Extract camera poses; unposed cameras are stored as zeros
    n_cameras = len(bundle.cameras)
    camera_posed = np.zeros(n_cameras, dtype=bool)
    camera_Ks = np.zeros((n_cameras, 3, 3))
    camera_Rs = np.zeros((n_cameras, 3, 3))
    camera_ts = np.zeros((n_cameras, 3))

    for i, cam in enumerate(bundle.cameras):
        if cam is None:
            continue
        camera_posed[i] = True
        camera_Ks[i] = cam.K
        camera_Rs[i] = cam.R
        camera_ts[i] = cam.t.flatten()

    # Extract 3D points
    n_points = len(bundle.tracks)
    points_xyz = np.zeros((n_points, 3))
    points_colors = np.zeros((n_points, 3), dtype=np.uint8)

    for i, track in enumerate(bundle.tracks):
        points_xyz[i] = track.pos
        points_colors[i] = track.color

    # Extract observations
    n_observations = len(bundle.observations)
    obs_view_ids = np.zeros(n_observations, dtype=int)
    obs_feature_ids = np.zeros(n_observations, dtype=int)
    obs_track_ids = np.zeros(n_observations, dtype=int)
    obs_uvs = np.zeros((n_observations, 2))

    for i, obs in enumerate(bundle.observations):
        obs_view_ids[i] = obs.view_id
        obs_feature_ids[i] = obs.feature_id
        obs_track_ids[i] = obs.track_id
        obs_uvs[i] = obs.uv

    image_sizes = np.zeros((n_cameras, 2), dtype=int)
    if viewports is not None:
        for vp in viewports:
            if vp.id < n_cameras:
                image_sizes[vp.id] = (vp.width, vp.height)

    np.savez(
        output_path,
        camera_posed=camera_posed,
        camera_Ks=camera_Ks,
        camera_Rs=camera_Rs,
        camera_ts=camera_ts,
        image_sizes=image_sizes,
        points_xyz=points_xyz,
        points_colors=points_colors,
        obs_view_ids=obs_view_ids,
        obs_feature_ids=obs_feature_ids,
        obs_track_ids=obs_track_ids,
        obs_uvs=obs_uvs,
    )


def load_bundle_npz(input_path: str) -> Bundle:
    """
    Load a Bundle written by `save_bundle_npz`.

    Track feature references are rebuilt from the observations.
    """
    data = np.load(input_path)

    cameras = []
    for posed, K, R, t in zip(
        data["camera_posed"], data["camera_Ks"], data["camera_Rs"], data["camera_ts"]
    ):
        cameras.append(CameraPose(K=K, R=R, t=t) if posed else None)

    tracks = [
        Track(pos=np.array(xyz, dtype=np.float64), color=np.array(color, dtype=np.uint8))
        for xyz, color in zip(data["points_xyz"], data["points_colors"])
    ]

    observations = []
    for view_id, feature_id, track_id, uv in zip(
        data["obs_view_ids"], data["obs_feature_ids"], data["obs_track_ids"], data["obs_uvs"]
    ):
        observations.append(
            Observation(
                view_id=int(view_id),
                feature_id=int(feature_id),
                track_id=int(track_id),
                uv=np.array(uv, dtype=np.float64),
            )
        )
        tracks[int(track_id)].features.append(FeatureReference(int(view_id), int(feature_id)))

    return Bundle(cameras=cameras, tracks=tracks, observations=observations)


def camera_frustum(
    pose: CameraPose,
    width: int,
    height: int,
    scale: float = 1.0,
) -> np.ndarray:
    """
    Frustum of a camera for drawing.

    Args:
        pose: Camera pose.
        width, height: Image size in pixels.
        scale: Depth of the image plane corners in world units.

    Returns:
        (5, 3) array: the camera center followed by the image corners
        (top-left, top-right, bottom-right, bottom-left) in world coordinates.
    """
    corners = np.array(
        [[0.0, 0.0, 1.0], [width, 0.0, 1.0], [width, height, 1.0], [0.0, height, 1.0]]
    )
    rays = corners @ np.linalg.inv(pose.K).T
    points_cam = scale * rays / rays[:, 2:3]
    points_world = (points_cam - pose.t) @ pose.R
    return np.vstack([pose.center.reshape(1, 3), points_world])


__all__ = ["save_bundle_npz", "load_bundle_npz", "camera_frustum"]
