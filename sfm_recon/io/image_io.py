"""
Image I/O utilities for loading input photographs.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import numpy as np

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff")


def list_image_files(image_dir: str) -> List[Path]:
    """Image files in a directory, sorted by name."""
    directory = Path(image_dir)
    if not directory.is_dir():
        raise ValueError(f"Not a directory: {image_dir}")
    return sorted(
        p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS
    )


def load_image(image_path: str) -> np.ndarray:
    """
    Load an image file.

    Returns:
        Image as numpy array (H, W, 3), dtype=uint8, RGB format.
    """
    image = cv2.imread(str(image_path), cv2.IMREAD_COLOR)
    if image is None:
        raise ValueError(f"Could not read image file: {image_path}")
    # Convert BGR to RGB
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB).astype(np.uint8)


def load_images_from_dir(
    image_dir: str,
    max_images: Optional[int] = None,
) -> Tuple[List[np.ndarray], List[Path]]:
    """
    Load all images of a directory in name order.

    Args:
        image_dir: Directory containing the images.
        max_images: Maximum number of images to load (None = no limit).

    Returns:
        Tuple of (images, paths).
    """
    paths = list_image_files(image_dir)
    if max_images is not None:
        paths = paths[:max_images]
    return [load_image(str(p)) for p in paths], paths


__all__ = ["IMAGE_EXTENSIONS", "list_image_files", "load_image", "load_images_from_dir"]
