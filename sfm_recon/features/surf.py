"""
SURF-style keypoint detection and descriptor extraction.

Detection approximates the determinant of the Hessian with box filters over a
summed-area table at four octaves of four filter sizes. Orientation and the
64-element descriptor are computed from Haar wavelet responses, also via the
summed-area table.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional

import cv2
import numpy as np

from sfm_recon.config import SurfOptions
from sfm_recon.errors import SingularMatrixError
from sfm_recon.features.image_ops import desaturate_lightness, ensure_channels, to_byte
from sfm_recon.features.scale_space import (
    Descriptor,
    FeatureExtractor,
    Keypoint,
    find_scale_space_extrema,
    normalize_descriptor,
    solve_offset,
    taylor_terms,
)

# Filter sizes per octave, in thirds of the kernel side length.
KERNEL_SIZES = (
    (3, 5, 7, 9),  # 9 15 21 27
    (5, 9, 13, 17),  # 15 27 39 51
    (9, 17, 25, 33),  # 27 51 75 99
    (17, 33, 49, 65),  # 51 99 147 195
)
# Balances the box filter approximation against real Gaussian derivatives.
DXY_WEIGHT = 0.912
HESSIAN_DET_EPSILON = 1e-5

# Orientation search.
ORI_RADIUS = 6
ORI_WINDOW = np.pi / 3.0
ORI_WINDOW_STEP = 0.15

# Descriptor: 4x4 sub-regions of 5x5 samples.
DESC_REGIONS = 4
DESC_SAMPLES = 5


@dataclass
class SurfOctave:
    """Hessian response maps of one octave, one per filter size."""

    index: int
    step: int
    responses: List[np.ndarray] = field(default_factory=list)


class Surf(FeatureExtractor):
    """SURF-style extractor with identical output contract to `Sift`."""

    name = "surf"
    descriptor_length = DESC_REGIONS * DESC_REGIONS * 4

    def __init__(self, options: Optional[SurfOptions] = None) -> None:
        self.options = options if options is not None else SurfOptions()
        self.sat: Optional[np.ndarray] = None
        self.width = 0
        self.height = 0
        self.octaves: List[SurfOctave] = []
        self.keypoints: List[Keypoint] = []
        self.descriptors: List[Descriptor] = []

    def _log(self, msg: str) -> None:
        if self.options.verbose_output:
            print(f"[surf] {msg}")

    def set_image(self, image: np.ndarray) -> None:
        """Desaturate to an 8-bit lightness image and build its summed-area table."""
        image = ensure_channels(image)
        gray = desaturate_lightness(to_byte(image))
        self.height, self.width = gray.shape
        # (h+1, w+1) table with a zero first row and column.
        self.sat = cv2.integral(np.ascontiguousarray(gray), sdepth=cv2.CV_64F)

    def extract(self, image: np.ndarray) -> List[Descriptor]:
        self.set_image(image)
        self.process()
        return self.descriptors

    def process(self) -> None:
        if self.sat is None:
            raise ValueError("No image set")

        self.create_octaves()

        candidates = []
        for octave in self.octaves:
            for s in (1, 2):
                positions = find_scale_space_extrema(
                    octave.responses[s - 1], octave.responses[s], octave.responses[s + 1]
                )
                for x, y in positions:
                    candidates.append(
                        Keypoint(octave=octave.index, sample=float(s), x=float(x), y=float(y))
                    )

        num_singular = 0
        self.keypoints = []
        for kp in candidates:
            try:
                refined = self.localize(kp)
            except SingularMatrixError:
                num_singular += 1
                continue
            if refined is not None:
                self.keypoints.append(refined)
        self._log(
            f"Localized {len(self.keypoints)} of {len(candidates)} candidates "
            f"({num_singular} singular)"
        )

        self.descriptors = []
        for kp in self.keypoints:
            scale = self.keypoint_scale(kp)
            if self.options.upright_descriptor:
                orientation = 0.0
            else:
                orientation = self.orientation_assignment(kp.x, kp.y, scale)
            data = self.descriptor_computation(kp.x, kp.y, scale, orientation)
            if data is None:
                continue
            self.descriptors.append(
                Descriptor(x=kp.x, y=kp.y, scale=scale, orientation=orientation, data=data)
            )
        self._log(f"Generated {len(self.descriptors)} descriptors")

        if not self.options.debug_output:
            self.octaves = []

    # ------------------------------------------------------------------
    # Summed-area table access
    # ------------------------------------------------------------------

    def box_sum(self, x0, y0, x1, y1) -> np.ndarray:
        """
        Sum of pixels in the inclusive rectangle [x0, x1] x [y0, y1].

        Coordinates may be arrays. The rectangle is clipped to the image; an
        empty intersection sums to zero.
        """
        x0 = np.asarray(x0)
        y0 = np.asarray(y0)
        x1 = np.asarray(x1)
        y1 = np.asarray(y1)
        w, h = self.width, self.height
        empty = (x1 < 0) | (x0 > w - 1) | (y1 < 0) | (y0 > h - 1) | (x0 > x1) | (y0 > y1)
        x0c = np.clip(x0, 0, w - 1)
        x1c = np.clip(x1, 0, w - 1)
        y0c = np.clip(y0, 0, h - 1)
        y1c = np.clip(y1, 0, h - 1)
        sat = self.sat
        total = sat[y1c + 1, x1c + 1] - sat[y0c, x1c + 1] - sat[y1c + 1, x0c] + sat[y0c, x0c]
        return np.where(empty, 0.0, total)

    def filter_dxx(self, fs: int, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        fs2 = fs // 2
        y0, y1 = y - fs + 1, y + fs - 1
        left = x - fs - fs2
        return (
            self.box_sum(left, y0, left + fs - 1, y1)
            - 2.0 * self.box_sum(left + fs, y0, left + 2 * fs - 1, y1)
            + self.box_sum(left + 2 * fs, y0, left + 3 * fs - 1, y1)
        )

    def filter_dyy(self, fs: int, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        fs2 = fs // 2
        x0, x1 = x - fs + 1, x + fs - 1
        top = y - fs - fs2
        return (
            self.box_sum(x0, top, x1, top + fs - 1)
            - 2.0 * self.box_sum(x0, top + fs, x1, top + 2 * fs - 1)
            + self.box_sum(x0, top + 2 * fs, x1, top + 3 * fs - 1)
        )

    def filter_dxy(self, fs: int, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        return (
            self.box_sum(x - fs, y - fs, x - 1, y - 1)
            - self.box_sum(x + 1, y - fs, x + fs, y - 1)
            - self.box_sum(x - fs, y + 1, x - 1, y + fs)
            + self.box_sum(x + 1, y + 1, x + fs, y + fs)
        )

    def haar_x(self, x: np.ndarray, y: np.ndarray, size: int) -> np.ndarray:
        """Right half minus left half of a size x size square centered at (x, y)."""
        half = max(1, size // 2)
        return self.box_sum(x, y - half, x + half - 1, y + half - 1) - self.box_sum(
            x - half, y - half, x - 1, y + half - 1
        )

    def haar_y(self, x: np.ndarray, y: np.ndarray, size: int) -> np.ndarray:
        """Bottom half minus top half of a size x size square centered at (x, y)."""
        half = max(1, size // 2)
        return self.box_sum(x - half, y, x + half - 1, y + half - 1) - self.box_sum(
            x - half, y - half, x + half - 1, y - 1
        )

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def create_octaves(self) -> None:
        self.octaves = []
        for o, sizes in enumerate(KERNEL_SIZES):
            octave = SurfOctave(index=o, step=2 ** o)
            for fs in sizes:
                octave.responses.append(self.create_response_map(fs, octave.step))
            self.octaves.append(octave)

    def create_response_map(self, fs: int, step: int) -> np.ndarray:
        """
        Hessian response det(H) = Dxx * Dyy - w * Dxy^2 on a grid of spacing
        `step`; zero where the filter would leave the image.
        """
        xs = np.arange(0, self.width, step)
        ys = np.arange(0, self.height, step)
        response = np.zeros((len(ys), len(xs)), dtype=np.float64)

        border = fs + fs // 2 + 1
        valid_x = (xs >= border) & (xs + border < self.width)
        valid_y = (ys >= border) & (ys + border < self.height)
        if not valid_x.any() or not valid_y.any():
            return response

        X, Y = np.meshgrid(xs[valid_x], ys[valid_y])
        inv_karea = 1.0 / (fs * fs * 9.0)
        dxx = self.filter_dxx(fs, X, Y) * inv_karea
        dyy = self.filter_dyy(fs, X, Y) * inv_karea
        dxy = self.filter_dxy(fs, X, Y) * inv_karea
        response[np.ix_(valid_y, valid_x)] = dxx * dyy - DXY_WEIGHT * dxy * dxy
        return response

    def localize(self, kp: Keypoint) -> Optional[Keypoint]:
        """
        Single-step quadratic refinement; returns the keypoint in input image
        pixels, or None if rejected.

        Raises:
            SingularMatrixError: If the Hessian cannot be inverted.
        """
        octave = self.octaves[kp.octave]
        s = int(kp.sample)
        ix, iy = int(kp.x), int(kp.y)
        cube = np.stack(
            [r[iy - 1:iy + 2, ix - 1:ix + 2] for r in octave.responses[s - 1:s + 2]]
        )
        gradient, hessian = taylor_terms(cube)
        offset = solve_offset(gradient, hessian, HESSIAN_DET_EPSILON)
        if np.any(np.abs(offset) > 1.0):
            return None

        x = (kp.x + offset[0]) * octave.step
        y = (kp.y + offset[1]) * octave.step
        if x < 0.0 or x + 1.0 > self.width or y < 0.0 or y + 1.0 > self.height:
            return None

        value = cube[1, 1, 1] + 0.5 * float(gradient @ offset)
        if abs(value) < self.options.contrast_threshold:
            return None

        return Keypoint(
            octave=kp.octave, sample=float(kp.sample + offset[2]), x=float(x), y=float(y)
        )

    @staticmethod
    def keypoint_scale(kp: Keypoint) -> float:
        """Gaussian scale 1.2 * L / 9 for the interpolated filter side length L."""
        sizes = KERNEL_SIZES[kp.octave]
        fs = sizes[0] + kp.sample * (sizes[1] - sizes[0])
        return 1.2 * 3.0 * fs / 9.0

    # ------------------------------------------------------------------
    # Orientation and descriptor
    # ------------------------------------------------------------------

    def orientation_assignment(self, x: float, y: float, scale: float) -> float:
        """
        Dominant orientation from Haar responses in a circle of radius 6s.

        A 60 degree window slides around the circle; the orientation of the
        largest summed response vector wins.
        """
        r = ORI_RADIUS
        j, i = np.mgrid[-r:r + 1, -r:r + 1]
        inside = i * i + j * j < r * r
        i = i[inside]
        j = j[inside]

        px = np.round(x + i * scale).astype(int)
        py = np.round(y + j * scale).astype(int)
        size = max(2, int(round(4.0 * scale)))
        sigma = 2.0 * scale
        weight = np.exp(-((i * scale) ** 2 + (j * scale) ** 2) / (2.0 * sigma * sigma))
        dx = weight * self.haar_x(px, py, size)
        dy = weight * self.haar_y(px, py, size)
        angles = np.mod(np.arctan2(dy, dx), 2.0 * np.pi)

        starts = np.arange(0.0, 2.0 * np.pi, ORI_WINDOW_STEP)
        in_window = np.mod(angles[np.newaxis, :] - starts[:, np.newaxis], 2.0 * np.pi) < ORI_WINDOW
        sum_x = in_window @ dx
        sum_y = in_window @ dy
        best = int(np.argmax(sum_x * sum_x + sum_y * sum_y))
        if sum_x[best] == 0.0 and sum_y[best] == 0.0:
            return 0.0
        return float(np.mod(math.atan2(sum_y[best], sum_x[best]), 2.0 * np.pi))

    def descriptor_computation(
        self,
        x: float,
        y: float,
        scale: float,
        orientation: float,
    ) -> Optional[np.ndarray]:
        """
        64-element descriptor from a 20s window rotated to `orientation`.

        Each of the 4x4 sub-regions contributes (sum dx, sum dy, sum |dx|,
        sum |dy|) of Gaussian-weighted Haar responses in the keypoint frame.
        """
        n = DESC_REGIONS * DESC_SAMPLES
        cos_o = math.cos(orientation)
        sin_o = math.sin(orientation)

        grid = (np.arange(n) - n / 2.0 + 0.5) * scale
        v, u = np.meshgrid(grid, grid, indexing="ij")
        px = np.round(x + cos_o * u - sin_o * v).astype(int)
        py = np.round(y + sin_o * u + cos_o * v).astype(int)

        size = max(2, 2 * int(round(scale)))
        hx = self.haar_x(px, py, size)
        hy = self.haar_y(px, py, size)
        sigma = 3.3 * scale
        weight = np.exp(-(u * u + v * v) / (2.0 * sigma * sigma))
        rx = weight * (cos_o * hx + sin_o * hy)
        ry = weight * (-sin_o * hx + cos_o * hy)

        shape = (DESC_REGIONS, DESC_SAMPLES, DESC_REGIONS, DESC_SAMPLES)
        rx = rx.reshape(shape)
        ry = ry.reshape(shape)
        features = np.stack(
            [
                rx.sum(axis=(1, 3)),
                ry.sum(axis=(1, 3)),
                np.abs(rx).sum(axis=(1, 3)),
                np.abs(ry).sum(axis=(1, 3)),
            ],
            axis=-1,
        )
        return normalize_descriptor(features.ravel(), clip=0.2)


__all__ = ["Surf", "SurfOctave", "KERNEL_SIZES"]
