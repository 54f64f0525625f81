import numpy as np
import pytest

from sfm_recon.config import SiftOptions, SurfOptions
from sfm_recon.errors import InvalidImageError
from sfm_recon.features.image_ops import (
    downscale_to_max_pixels,
    ensure_channels,
    rescale_double_size,
    sample_colors,
)
from sfm_recon.features.keypoints import create_extractor, descriptors_to_arrays, detect_keypoints
from sfm_recon.features.sift import Sift
from sfm_recon.features.surf import Surf


def blob_image(size=160, low=0.2, high=0.9):
    """Gray image with a 3x3 grid of Gaussian blobs of two sizes."""
    yy, xx = np.mgrid[0:size, 0:size].astype(np.float64)
    img = np.full((size, size), low)
    centers = (50.0, 80.0, 110.0)
    for i, cy in enumerate(centers):
        for j, cx in enumerate(centers):
            sigma = 2.5 if (i + j) % 2 == 0 else 3.5
            img += (high - low) * np.exp(-((xx - cx) ** 2 + (yy - cy) ** 2) / (2.0 * sigma ** 2))
    return np.clip(img, 0.0, 1.0)


def check_descriptors(descriptors, length, width, height):
    assert len(descriptors) > 0
    for d in descriptors:
        assert d.data.shape == (length,)
        assert np.linalg.norm(d.data) == pytest.approx(1.0, abs=1e-5)
        assert np.max(np.abs(d.data)) <= 0.2 + 1e-6
        assert 0.0 <= d.orientation < 2.0 * np.pi
        assert d.scale > 0.0
        assert -1.0 <= d.x <= width
        assert -1.0 <= d.y <= height


def test_sift_descriptors_are_normalized():
    img = blob_image()
    descriptors = Sift().extract(img)
    check_descriptors(descriptors, 128, img.shape[1], img.shape[0])


def test_sift_accepts_color_uint8_images():
    gray = (blob_image() * 255).astype(np.uint8)
    rgb = np.repeat(gray[:, :, np.newaxis], 3, axis=2)
    descriptors = Sift().extract(rgb)
    check_descriptors(descriptors, 128, rgb.shape[1], rgb.shape[0])
    assert len(Sift().extract(gray)) > 0


def test_sift_keeps_octaves_in_debug_mode():
    sift = Sift(SiftOptions(debug_output=True, max_octave=2))
    sift.extract(blob_image())
    assert [o.index for o in sift.octaves] == [0, 1, 2]
    octave = sift.octaves[0]
    S = sift.options.num_samples_per_octave
    assert len(octave.img) == S + 3
    assert len(octave.dog) == S + 2

    upsampled = Sift(SiftOptions(debug_output=True, min_octave=-1, max_octave=0))
    upsampled.extract(blob_image())
    assert upsampled.octaves[0].index == -1
    assert upsampled.octaves[0].img[0].shape == (320, 320)


def test_surf_descriptors_are_normalized():
    img = (blob_image(low=0.1, high=1.0) * 255).astype(np.uint8)
    descriptors = Surf().extract(img)
    check_descriptors(descriptors, 64, img.shape[1], img.shape[0])


def test_upright_surf_has_zero_orientation():
    img = (blob_image(low=0.1, high=1.0) * 255).astype(np.uint8)
    descriptors = Surf(SurfOptions(upright_descriptor=True)).extract(img)
    assert len(descriptors) > 0
    assert all(d.orientation == 0.0 for d in descriptors)


@pytest.mark.parametrize("extractor", [Sift(), Surf()])
def test_constant_image_has_no_features(extractor):
    assert extractor.extract(np.full((96, 96), 0.5)) == []


@pytest.mark.parametrize("extractor", [Sift(), Surf()])
@pytest.mark.parametrize("shape", [(32, 32, 2), (32, 32, 4), (2, 32, 32, 3)])
def test_invalid_channel_count_raises(extractor, shape):
    with pytest.raises(InvalidImageError):
        extractor.extract(np.zeros(shape))


def test_detect_keypoints_returns_arrays():
    keypoints, descriptors = detect_keypoints(blob_image(), use_sift=True)
    assert descriptors.shape == (len(keypoints), 128)
    assert descriptors.dtype == np.float32

    _, surf_descriptors = detect_keypoints(blob_image(), use_sift=False)
    assert surf_descriptors.shape[1] == 64


def test_descriptors_to_arrays_empty():
    positions, vectors = descriptors_to_arrays([], 64)
    assert positions.shape == (0, 2)
    assert vectors.shape == (0, 64)


def test_create_extractor_validates_arguments():
    assert create_extractor("surf").name == "surf"
    with pytest.raises(ValueError):
        create_extractor("orb")
    with pytest.raises(ValueError):
        create_extractor("sift", SurfOptions())


def test_ensure_channels():
    assert ensure_channels(np.zeros((4, 5))).shape == (4, 5, 1)
    assert ensure_channels(np.zeros((4, 5, 3))).shape == (4, 5, 3)
    with pytest.raises(InvalidImageError):
        ensure_channels(np.zeros((0, 5)))


def test_downscale_to_max_pixels():
    img = np.zeros((400, 600, 3), dtype=np.uint8)
    assert downscale_to_max_pixels(img, 600 * 400).shape == (400, 600, 3)
    assert downscale_to_max_pixels(img, 100000).shape == (200, 300, 3)
    assert rescale_double_size(img).shape == (800, 1200, 3)


def test_sample_colors_is_bilinear():
    img = np.zeros((4, 4, 3), dtype=np.uint8)
    img[1, 1] = (100, 0, 0)
    img[1, 2] = (200, 0, 0)
    colors = sample_colors(img, np.array([[1.0, 1.0], [1.5, 1.0]]))
    np.testing.assert_array_equal(colors, [[100, 0, 0], [150, 0, 0]])

    gray = np.full((4, 4), 0.5, dtype=np.float32)
    np.testing.assert_array_equal(sample_colors(gray, np.array([[2.0, 2.0]])), [[128, 128, 128]])
