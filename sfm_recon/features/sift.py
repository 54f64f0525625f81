"""
SIFT-style keypoint detection and descriptor extraction.

Pipeline per image:
1. Scale space: octaves of S+3 Gaussian-blurred images and S+2 DoG images.
2. Strict 26-neighbor extrema of the DoG stack.
3. Sub-pixel localization with a quadratic fit, contrast and edge rejection.
4. Orientation histogram (36 bins) per keypoint, one descriptor per peak.
5. 4x4x8 gradient histogram descriptor, normalized with a 0.2 clip.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from sfm_recon.config import SiftOptions
from sfm_recon.errors import SingularMatrixError
from sfm_recon.features.image_ops import (
    blur_gaussian,
    desaturate_average,
    ensure_channels,
    rescale_double_size,
    rescale_half_size_gaussian,
    to_float,
)
from sfm_recon.features.scale_space import (
    Descriptor,
    FeatureExtractor,
    Keypoint,
    find_scale_space_extrema,
    normalize_descriptor,
    solve_offset,
    taylor_terms,
)

# Orientation histogram.
ORI_BINS = 36
ORI_WINDOW_FACTOR = 1.5
ORI_PEAK_RATIO = 0.8
ORI_SMOOTH_PASSES = 6

# Descriptor layout: PXB x PXB spatial bins with OHB orientation bins each.
PXB = 4
OHB = 8

LOCALIZATION_ITERATIONS = 5
HESSIAN_DET_EPSILON = 1e-15


@dataclass
class Octave:
    """Blurred images, DoGs and gradient images of one octave."""

    index: int
    img: List[np.ndarray] = field(default_factory=list)
    dog: List[np.ndarray] = field(default_factory=list)
    grad: List[np.ndarray] = field(default_factory=list)
    ori: List[np.ndarray] = field(default_factory=list)


def gradient_images(image: np.ndarray):
    """
    Gradient magnitude and orientation in [0, 2*pi) by central differences.

    The 1-pixel border has zero gradient.
    """
    dx = np.zeros_like(image)
    dy = np.zeros_like(image)
    dx[1:-1, 1:-1] = 0.5 * (image[1:-1, 2:] - image[1:-1, :-2])
    dy[1:-1, 1:-1] = 0.5 * (image[2:, 1:-1] - image[:-2, 1:-1])
    magnitude = np.hypot(dx, dy)
    orientation = np.arctan2(dy, dx)
    orientation[orientation < 0.0] += 2.0 * np.pi
    return magnitude, orientation


class Sift(FeatureExtractor):
    """
    SIFT-style extractor.

    `extract` keeps the intermediate results on the instance (`octaves`,
    `keypoints`, `descriptors`) for inspection.
    """

    name = "sift"
    descriptor_length = PXB * PXB * OHB

    def __init__(self, options: Optional[SiftOptions] = None) -> None:
        self.options = options if options is not None else SiftOptions()
        self.orig: Optional[np.ndarray] = None
        self.octaves: List[Octave] = []
        self.keypoints: List[Keypoint] = []
        self.descriptors: List[Descriptor] = []

    def _log(self, msg: str) -> None:
        if self.options.verbose_output:
            print(f"[sift] {msg}")

    def set_image(self, image: np.ndarray) -> None:
        """Convert the input to a single-channel float image in [0, 1]."""
        image = ensure_channels(image)
        self.orig = np.ascontiguousarray(desaturate_average(to_float(image)))

    def extract(self, image: np.ndarray) -> List[Descriptor]:
        self.set_image(image)
        self.process()
        return self.descriptors

    def process(self) -> None:
        if self.orig is None:
            raise ValueError("No image set")

        self._log(
            f"Creating {self.options.max_octave - self.options.min_octave + 1} "
            f"octaves ({self.options.min_octave} to {self.options.max_octave})..."
        )
        self.create_octaves()

        self.keypoints = []
        for octave in self.octaves:
            self.keypoints.extend(self.extrema_detection(octave))
        num_candidates = len(self.keypoints)

        self.keypoint_localization()
        self._log(
            f"Localized {len(self.keypoints)} of {num_candidates} keypoint candidates"
        )

        for octave in self.octaves:
            for img in octave.img:
                mag, ori = gradient_images(img)
                octave.grad.append(mag)
                octave.ori.append(ori)

        self.descriptors = []
        for kp in self.keypoints:
            octave = self._octave(kp.octave)
            for orientation in self.orientation_assignment(kp, octave):
                data = self.descriptor_assignment(kp, orientation, octave)
                if data is None:
                    continue
                self.descriptors.append(self._make_descriptor(kp, orientation, data))

        self._log(
            f"Generated {len(self.descriptors)} descriptors "
            f"from {len(self.keypoints)} keypoints"
        )
        # Pyramid images are large; keep only what the descriptors need.
        if not self.options.debug_output:
            self.octaves = []

    # ------------------------------------------------------------------
    # Scale space
    # ------------------------------------------------------------------

    def create_octaves(self) -> None:
        opts = self.options
        self.octaves = []

        if opts.min_octave < 0:
            upsampled = rescale_double_size(self.orig)
            self.add_octave(
                upsampled,
                opts.inherent_blur_sigma * 2.0,
                opts.base_blur_sigma,
                index=-1,
            )

        img = self.orig
        for _ in range(max(0, opts.min_octave)):
            img = rescale_half_size_gaussian(img)

        img_sigma = opts.inherent_blur_sigma
        for index in range(max(0, opts.min_octave), opts.max_octave + 1):
            if min(img.shape) < 3:
                self._log(f"Octave {index} too small, stopping")
                break
            self.add_octave(img, img_sigma, opts.base_blur_sigma, index=index)
            img = rescale_half_size_gaussian(img)
            img_sigma = opts.base_blur_sigma

    def add_octave(
        self,
        image: np.ndarray,
        has_sigma: float,
        target_sigma: float,
        index: int,
    ) -> Octave:
        """
        Append an octave whose first image is `image` blurred to target_sigma.

        Each further image is blurred by the factor k = 2^(1/S) relative to
        the previous one, and each DoG is the difference of neighbors.
        """
        S = self.options.num_samples_per_octave
        k = 2.0 ** (1.0 / S)

        base = image
        if target_sigma > has_sigma:
            base = blur_gaussian(image, math.sqrt(target_sigma ** 2 - has_sigma ** 2))

        octave = Octave(index=index)
        octave.img.append(base.astype(np.float32))

        sigma = target_sigma
        for _ in range(1, S + 3):
            sigma_k = sigma * k
            blur = math.sqrt(sigma_k ** 2 - sigma ** 2)
            img = blur_gaussian(octave.img[-1], blur)
            octave.dog.append(img - octave.img[-1])
            octave.img.append(img)
            sigma = sigma_k

        self.octaves.append(octave)
        return octave

    def _octave(self, index: int) -> Octave:
        return self.octaves[index - self.octaves[0].index]

    # ------------------------------------------------------------------
    # Detection and localization
    # ------------------------------------------------------------------

    def extrema_detection(self, octave: Octave) -> List[Keypoint]:
        keypoints = []
        for s in range(len(octave.dog) - 2):
            positions = find_scale_space_extrema(
                octave.dog[s], octave.dog[s + 1], octave.dog[s + 2]
            )
            for x, y in positions:
                keypoints.append(
                    Keypoint(octave=octave.index, sample=float(s), x=float(x), y=float(y))
                )
        return keypoints

    def keypoint_localization(self) -> None:
        num_singular = 0
        localized = []
        for kp in self.keypoints:
            try:
                refined = self.localize(kp)
            except SingularMatrixError:
                num_singular += 1
                continue
            if refined is not None:
                localized.append(refined)

        if num_singular > 0:
            self._log(f"Warning: {num_singular} singular Hessians")
        self.keypoints = localized

    def localize(self, kp: Keypoint) -> Optional[Keypoint]:
        """
        Refine a candidate to sub-pixel / sub-sample accuracy.

        Returns None if the keypoint is rejected.

        Raises:
            SingularMatrixError: If the Hessian cannot be inverted.
        """
        opts = self.options
        S = opts.num_samples_per_octave
        octave = self._octave(kp.octave)

        ix = int(kp.x + 0.5)
        iy = int(kp.y + 0.5)
        s = int(kp.sample + 0.5)
        d0, d1, d2 = octave.dog[s], octave.dog[s + 1], octave.dog[s + 2]
        h, w = d1.shape

        for _ in range(LOCALIZATION_ITERATIONS):
            cube = np.stack(
                [d[iy - 1:iy + 2, ix - 1:ix + 2] for d in (d0, d1, d2)]
            )
            gradient, hessian = taylor_terms(cube)
            offset = solve_offset(gradient, hessian, HESSIAN_DET_EPSILON)

            dx = int(offset[0] > 0.6 and ix < w - 2) - int(offset[0] < -0.6 and ix > 1)
            dy = int(offset[1] > 0.6 and iy < h - 2) - int(offset[1] < -0.6 and iy > 1)
            if dx == 0 and dy == 0:
                break
            ix += dx
            iy += dy
        else:
            # Still moving after the last iteration: evaluate where we stopped.
            ix -= dx
            iy -= dy

        fx, fy, fs = offset
        value = float(d1[iy, ix]) + 0.5 * float(gradient @ offset)

        if abs(value) < opts.effective_contrast_threshold:
            return None

        dxx, dyy, dxy = hessian[0, 0], hessian[1, 1], hessian[0, 1]
        trace = dxx + dyy
        det = dxx * dyy - dxy * dxy
        edge_threshold = (opts.edge_ratio_threshold + 1.0) ** 2 / opts.edge_ratio_threshold
        if det <= 0.0 or trace * trace / det > edge_threshold:
            return None

        if abs(fx) > 1.5 or abs(fy) > 1.5 or abs(fs) > 1.0:
            return None

        x = ix + fx
        y = iy + fy
        sample = kp.sample + fs
        if sample < -1.0 or sample > float(S):
            return None
        if x < 0.0 or x > w - 1 or y < 0.0 or y > h - 1:
            return None

        return Keypoint(octave=kp.octave, sample=float(sample), x=float(x), y=float(y))

    # ------------------------------------------------------------------
    # Orientation and descriptor
    # ------------------------------------------------------------------

    def keypoint_relative_scale(self, kp: Keypoint) -> float:
        S = self.options.num_samples_per_octave
        return self.options.base_blur_sigma * 2.0 ** ((kp.sample + 1.0) / S)

    def keypoint_absolute_scale(self, kp: Keypoint) -> float:
        S = self.options.num_samples_per_octave
        return self.options.base_blur_sigma * 2.0 ** (kp.octave + (kp.sample + 1.0) / S)

    def orientation_assignment(self, kp: Keypoint, octave: Octave) -> List[float]:
        """Dominant gradient orientations around the keypoint."""
        ix = int(kp.x + 0.5)
        iy = int(kp.y + 0.5)
        s = int(round(kp.sample))
        grad = octave.grad[s + 1]
        ori = octave.ori[s + 1]
        h, w = grad.shape

        sigma = self.keypoint_relative_scale(kp) * ORI_WINDOW_FACTOR
        win = int(sigma * 3.0)
        if ix < win or ix + win >= w or iy < win or iy + win >= h:
            return []

        dy, dx = np.mgrid[-win:win + 1, -win:win + 1]
        dist = (dx * dx + dy * dy).astype(np.float64)
        inside = dist <= win * win + 0.5

        mag = grad[iy - win:iy + win + 1, ix - win:ix + win + 1][inside]
        angle = ori[iy - win:iy + win + 1, ix - win:ix + win + 1][inside]
        weight = np.exp(-dist[inside] / (2.0 * sigma * sigma))

        bins = (ORI_BINS * angle / (2.0 * np.pi)).astype(int)
        bins = np.clip(bins, 0, ORI_BINS - 1)
        hist = np.bincount(bins, weights=mag * weight, minlength=ORI_BINS)

        for _ in range(ORI_SMOOTH_PASSES):
            hist = (np.roll(hist, 1) + hist + np.roll(hist, -1)) / 3.0

        max_h = hist.max()
        orientations = []
        for i in range(ORI_BINS):
            h0 = hist[(i + ORI_BINS - 1) % ORI_BINS]
            h1 = hist[i]
            h2 = hist[(i + 1) % ORI_BINS]
            if h1 <= max_h * ORI_PEAK_RATIO or h1 <= h0 or h1 <= h2:
                continue
            # Vertex of the parabola through the three bins.
            x = -0.5 * (h2 - h0) / (h0 - 2.0 * h1 + h2)
            o = 2.0 * np.pi * (x + i + 0.5) / ORI_BINS
            orientations.append(float(o % (2.0 * np.pi)))
        return orientations

    def descriptor_assignment(
        self,
        kp: Keypoint,
        orientation: float,
        octave: Octave,
    ) -> Optional[np.ndarray]:
        """
        4x4x8 histogram of gradients in a window rotated to `orientation`.

        Returns None if the window leaves the image or the vector degenerates.
        """
        ix = int(kp.x + 0.5)
        iy = int(kp.y + 0.5)
        s = int(round(kp.sample))
        grad = octave.grad[s + 1]
        ori = octave.ori[s + 1]
        h, w = grad.shape

        sin_o = math.sin(orientation)
        cos_o = math.cos(orientation)
        binsize = 3.0 * self.keypoint_relative_scale(kp)
        win = int(math.sqrt(2.0) * binsize * (PXB + 1) * 0.5)
        if ix < win or ix + win >= w or iy < win or iy + win >= h:
            return None

        dy, dx = np.mgrid[-win:win + 1, -win:win + 1]
        win_x = dx - (kp.x - ix)
        win_y = dy - (kp.y - iy)
        mag = grad[iy - win:iy + win + 1, ix - win:ix + win + 1]
        theta = ori[iy - win:iy + win + 1, ix - win:ix + win + 1] - orientation
        theta = np.where(theta < 0.0, theta + 2.0 * np.pi, theta)

        bin_offset = PXB / 2.0 - 0.5
        binx = (cos_o * win_x + sin_o * win_y) / binsize + bin_offset
        biny = (-sin_o * win_x + cos_o * win_y) / binsize + bin_offset
        bint = theta * OHB / (2.0 * np.pi) - 0.5

        gauss_sigma = 0.5 * PXB
        gauss = np.exp(
            -((binx - bin_offset) ** 2 + (biny - bin_offset) ** 2)
            / (2.0 * gauss_sigma * gauss_sigma)
        )
        contrib = (mag * gauss).ravel()
        binx = binx.ravel()
        biny = biny.ravel()
        bint = bint.ravel()

        keep = (binx > -1.0) & (binx < PXB) & (biny > -1.0) & (biny < PXB)
        binx, biny, bint, contrib = binx[keep], biny[keep], bint[keep], contrib[keep]

        bx0 = np.floor(binx).astype(int)
        by0 = np.floor(biny).astype(int)
        bt0 = np.floor(bint).astype(int)
        wx = binx - bx0
        wy = biny - by0
        wt = bint - bt0

        hist = np.zeros(PXB * PXB * OHB, dtype=np.float64)
        for cy in (0, 1):
            by = by0 + cy
            weight_y = wy if cy else 1.0 - wy
            for cx in (0, 1):
                bx = bx0 + cx
                weight_x = wx if cx else 1.0 - wx
                valid = (bx >= 0) & (bx < PXB) & (by >= 0) & (by < PXB)
                for ct in (0, 1):
                    bt = (bt0 + ct) % OHB
                    weight_t = wt if ct else 1.0 - wt
                    weight = contrib * weight_x * weight_y * weight_t
                    index = bt + bx * OHB + by * OHB * PXB
                    np.add.at(hist, index[valid], weight[valid])

        return normalize_descriptor(hist, clip=0.2)

    def _make_descriptor(
        self,
        kp: Keypoint,
        orientation: float,
        data: np.ndarray,
    ) -> Descriptor:
        # Octave pixel centers map back to input image pixel centers.
        factor = 2.0 ** kp.octave
        return Descriptor(
            x=factor * (kp.x + 0.5) - 0.5,
            y=factor * (kp.y + 0.5) - 0.5,
            scale=self.keypoint_absolute_scale(kp),
            orientation=orientation,
            data=data,
        )


__all__ = ["Sift", "Octave", "gradient_images"]
