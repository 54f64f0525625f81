"""
Image helpers shared by the feature extractors: channel checks, conversion
to float, desaturation, pyramid resampling and color sampling.
"""

from __future__ import annotations

import cv2
import numpy as np

from sfm_recon.errors import InvalidImageError


def ensure_channels(image: np.ndarray) -> np.ndarray:
    """
    Return the image as (H, W, C) with C in {1, 3}.

    Raises:
        InvalidImageError: If the image is not 2D or has another channel count.
    """
    image = np.asarray(image)
    if image.ndim == 2:
        image = image[:, :, np.newaxis]
    if image.ndim != 3 or image.shape[2] not in (1, 3):
        raise InvalidImageError(
            f"Expected a 1- or 3-channel image, got shape {image.shape}"
        )
    if image.shape[0] == 0 or image.shape[1] == 0:
        raise InvalidImageError("Image is empty")
    return image


def to_float(image: np.ndarray) -> np.ndarray:
    """Convert an (H, W, C) image to float32; 8-bit input is scaled to [0, 1]."""
    if image.dtype == np.uint8:
        return image.astype(np.float32) / 255.0
    return image.astype(np.float32)


def to_byte(image: np.ndarray) -> np.ndarray:
    """Convert an (H, W, C) image to uint8; float input is assumed in [0, 1]."""
    if image.dtype == np.uint8:
        return image
    return np.clip(np.round(image * 255.0), 0, 255).astype(np.uint8)


def desaturate_average(image: np.ndarray) -> np.ndarray:
    """Single-channel (H, W) image as the mean of the channels."""
    if image.shape[2] == 1:
        return image[:, :, 0]
    return image.mean(axis=2).astype(image.dtype)


def desaturate_lightness(image: np.ndarray) -> np.ndarray:
    """Single-channel (H, W) image as (max + min) / 2 of the channels."""
    if image.shape[2] == 1:
        return image[:, :, 0]
    work = image.astype(np.float32)
    light = 0.5 * (work.max(axis=2) + work.min(axis=2))
    if image.dtype == np.uint8:
        return np.round(light).astype(np.uint8)
    return light.astype(image.dtype)


def blur_gaussian(image: np.ndarray, sigma: float) -> np.ndarray:
    """Gaussian blur with clamped borders; sigma <= 0 returns a copy."""
    if sigma <= 0.0:
        return image.copy()
    return cv2.GaussianBlur(
        image, (0, 0), sigmaX=float(sigma), sigmaY=float(sigma),
        borderType=cv2.BORDER_REPLICATE,
    )


def rescale_half_size_gaussian(image: np.ndarray, sigma: float = 0.866025) -> np.ndarray:
    """
    Halve the image size after a Gaussian anti-aliasing filter.

    The output has size ((w + 1) / 2, (h + 1) / 2). The default sigma takes an
    image with blur 0.5 to blur 1.0 before subsampling.
    """
    return np.ascontiguousarray(blur_gaussian(image, sigma)[::2, ::2])


def rescale_double_size(image: np.ndarray) -> np.ndarray:
    """Double the image size with bilinear interpolation."""
    h, w = image.shape[:2]
    return cv2.resize(image, (2 * w, 2 * h), interpolation=cv2.INTER_LINEAR)


def downscale_to_max_pixels(image: np.ndarray, max_pixels: int) -> np.ndarray:
    """Halve the image until width * height <= max_pixels."""
    while image.shape[0] * image.shape[1] > max_pixels:
        image = rescale_half_size_gaussian(image)
    return image


def sample_colors(image: np.ndarray, positions: np.ndarray) -> np.ndarray:
    """
    Bilinearly sample RGB colors at (x, y) pixel positions.

    Args:
        image: (H, W, C) image, C in {1, 3}, uint8 or float in [0, 1].
        positions: (N, 2) array of (x, y).

    Returns:
        (N, 3) uint8 colors; gray images are replicated to three channels.
    """
    positions = np.asarray(positions, dtype=np.float32).reshape(-1, 2)
    if len(positions) == 0:
        return np.zeros((0, 3), dtype=np.uint8)

    image = ensure_channels(image)
    src = to_byte(image).astype(np.float32)
    map_x = positions[:, 0].reshape(-1, 1)
    map_y = positions[:, 1].reshape(-1, 1)
    sampled = cv2.remap(
        src, map_x, map_y, cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE
    )
    sampled = sampled.reshape(len(positions), -1)
    if sampled.shape[1] == 1:
        sampled = np.repeat(sampled, 3, axis=1)
    return np.clip(np.round(sampled), 0, 255).astype(np.uint8)


__all__ = [
    "ensure_channels",
    "to_float",
    "to_byte",
    "desaturate_average",
    "desaturate_lightness",
    "blur_gaussian",
    "rescale_half_size_gaussian",
    "rescale_double_size",
    "downscale_to_max_pixels",
    "sample_colors",
]
