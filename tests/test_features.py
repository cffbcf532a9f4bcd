"""Tests for feature vector extraction."""

import time

import numpy as np
import pytest

from style_search.errors import DecodeError
from style_search.features import (
    BLOCK_SLICE, EDGE_SLICE, FEATURE_DIM, GLOBAL_SLICE, HUE_SLICE,
    RGB_SLICE, SAT_SLICE, VAL_SLICE,
    extract_features, extract_features_from_source, rgb_to_hsv,
)
from style_search.preprocessing import load_image, resample


class TestExtractFeatures:
    """Tests for the 114-dimension feature vector."""

    def test_output_shape(self, red_square_image):
        vec = extract_features(red_square_image)
        assert vec.shape == (FEATURE_DIM,)
        assert FEATURE_DIM == 114

    def test_output_dtype(self, red_square_image):
        vec = extract_features(red_square_image)
        assert vec.dtype == np.float32

    def test_vector_is_read_only(self, red_square_image):
        vec = extract_features(red_square_image)
        with pytest.raises(ValueError):
            vec[0] = 1.0

    def test_layout_is_contiguous(self):
        slices = [RGB_SLICE, HUE_SLICE, SAT_SLICE, VAL_SLICE,
                  BLOCK_SLICE, GLOBAL_SLICE, EDGE_SLICE]
        assert slices[0].start == 0
        for prev, nxt in zip(slices, slices[1:]):
            assert prev.stop == nxt.start
        assert EDGE_SLICE.stop == FEATURE_DIM

    def test_histograms_sum_to_one(self, noise_image):
        vec = extract_features(noise_image)
        for start in (0, 10, 20):
            assert vec[start:start + 10].sum() == pytest.approx(1.0, abs=1e-5)
        for hist in (HUE_SLICE, SAT_SLICE, VAL_SLICE):
            assert vec[hist].sum() == pytest.approx(1.0, abs=1e-5)

    def test_solid_red_histograms(self, red_square_image):
        vec = extract_features(red_square_image)
        assert vec[9] == pytest.approx(1.0)    # R = 255 → last bin
        assert vec[10] == pytest.approx(1.0)   # G = 0 → first bin
        assert vec[20] == pytest.approx(1.0)   # B = 0 → first bin
        assert vec[HUE_SLICE][0] == pytest.approx(1.0)
        assert vec[SAT_SLICE][9] == pytest.approx(1.0)
        assert vec[VAL_SLICE][9] == pytest.approx(1.0)

    def test_solid_blue_hue_bin(self, blue_square_image):
        vec = extract_features(blue_square_image)
        # 240° falls in the 13th 20° bin
        assert vec[HUE_SLICE][12] == pytest.approx(1.0)

    def test_solid_block_features(self, red_square_image):
        vec = extract_features(red_square_image)
        blocks = vec[BLOCK_SLICE].reshape(9, 4)
        for block in blocks:
            assert block == pytest.approx([1.0, 0.0, 0.0, 0.0])

    def test_global_statistics(self, red_square_image):
        vec = extract_features(red_square_image)
        brightness, spread, m_r, m_g, m_b = vec[GLOBAL_SLICE]
        assert brightness == pytest.approx(85 / 255, abs=1e-5)
        assert spread == pytest.approx(0.0)
        assert (m_r, m_g, m_b) == pytest.approx((0.0, 0.0, 0.0))

    def test_solid_image_has_no_edges(self, red_square_image):
        vec = extract_features(red_square_image)
        assert np.allclose(vec[EDGE_SLICE], 0)

    def test_vertical_edge_direction(self, vertical_edge_image):
        vec = extract_features(vertical_edge_image)
        strength, horizontal, diagonal, vertical, anti_diagonal = vec[EDGE_SLICE]
        assert strength > 0
        # Horizontal gradient only → all magnitude in the first bin
        assert horizontal == pytest.approx(strength)
        assert diagonal == vertical == anti_diagonal == 0

    def test_horizontal_edge_direction(self, vertical_edge_image):
        rotated = np.ascontiguousarray(np.transpose(vertical_edge_image, (1, 0, 2)))
        vec = extract_features(rotated)
        strength, _, _, vertical, _ = vec[EDGE_SLICE]
        assert vertical == pytest.approx(strength)

    def test_deterministic(self, noise_image):
        assert np.array_equal(extract_features(noise_image), extract_features(noise_image))

    def test_no_nan_or_inf(self, noise_image):
        vec = extract_features(noise_image)
        assert not np.any(np.isnan(vec))
        assert not np.any(np.isinf(vec))

    def test_non_negative(self, checkerboard_image):
        assert np.all(extract_features(checkerboard_image) >= 0)

    def test_handles_grayscale_input(self):
        gray = np.ones((100, 60), dtype=np.uint8) * 128
        vec = extract_features(gray)
        assert vec.shape == (FEATURE_DIM,)

    def test_handles_float_input(self, red_square_image):
        as_float = red_square_image.astype(np.float32) / 255.0
        assert np.array_equal(extract_features(as_float), extract_features(red_square_image))

    def test_different_images_different_vectors(self, red_square_image, blue_square_image):
        distance = np.linalg.norm(extract_features(red_square_image)
                                  - extract_features(blue_square_image))
        assert distance > 0.1


class TestRgbToHsv:

    def test_primary_hues(self):
        pixels = np.array([[255, 0, 0], [0, 255, 0], [0, 0, 255]], dtype=np.float64)
        hue, sat, val = rgb_to_hsv(pixels)
        assert hue == pytest.approx([0.0, 120.0, 240.0])
        assert sat == pytest.approx([1.0, 1.0, 1.0])
        assert val == pytest.approx([1.0, 1.0, 1.0])

    def test_magenta_wraps_to_300(self):
        hue, _, _ = rgb_to_hsv(np.array([[255, 0, 255]], dtype=np.float64))
        assert hue[0] == pytest.approx(300.0)

    def test_gray_and_black(self):
        hue, sat, val = rgb_to_hsv(np.array([[128, 128, 128], [0, 0, 0]], dtype=np.float64))
        assert hue == pytest.approx([0.0, 0.0])
        assert sat == pytest.approx([0.0, 0.0])
        assert val[1] == 0.0


class TestLoading:
    """Tests for image loading and resampling."""

    def test_resample_to_analysis_size(self, noise_image):
        assert resample(noise_image).shape == (48, 48, 3)

    def test_file_round_trip(self, image_files, red_square_image):
        assert np.array_equal(load_image(image_files["red"]), red_square_image)

    def test_file_and_array_give_same_vector(self, image_files, red_square_image):
        assert np.array_equal(extract_features_from_source(image_files["red"]),
                              extract_features(red_square_image))

    def test_encoded_bytes(self, image_files, red_square_image):
        with open(image_files["red"], "rb") as f:
            data = f.read()
        assert np.array_equal(load_image(data), red_square_image)

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(DecodeError, match="file not found"):
            load_image(str(tmp_path / "missing.png"))

    def test_corrupt_bytes_raise(self):
        with pytest.raises(DecodeError):
            load_image(b"definitely not an image")

    def test_empty_array_raises(self):
        with pytest.raises(DecodeError):
            load_image(np.zeros((0, 0, 3), dtype=np.uint8))

    def test_unsupported_source_raises(self):
        with pytest.raises(DecodeError):
            load_image(12345)

    def test_two_channel_array_raises(self):
        with pytest.raises(DecodeError, match="channel count"):
            load_image(np.zeros((48, 48, 2), dtype=np.uint8))

    def test_five_channel_array_raises(self):
        with pytest.raises(DecodeError, match="channel count"):
            load_image(np.zeros((48, 48, 5), dtype=np.uint8))

    def test_negative_floats_clip_to_black(self):
        image = load_image(np.full((8, 8, 3), -0.5, dtype=np.float32))
        assert image.dtype == np.uint8
        assert np.all(image == 0)

    def test_out_of_range_floats_clip(self):
        image = np.full((8, 8, 3), 300.0, dtype=np.float64)
        image[0, 0] = -40.0
        loaded = load_image(image)
        assert loaded[0, 0].tolist() == [0, 0, 0]
        assert loaded[1, 1].tolist() == [255, 255, 255]


class TestRemoteLoading:
    """Tests for loading images over HTTP."""

    def test_fetch_png(self, image_server, red_square_image):
        assert np.array_equal(load_image(f"{image_server}/red.png"), red_square_image)

    def test_remote_and_array_give_same_vector(self, image_server, red_square_image):
        assert np.array_equal(extract_features_from_source(f"{image_server}/red.png"),
                              extract_features(red_square_image))

    def test_not_found_raises(self, image_server):
        with pytest.raises(DecodeError, match="404"):
            load_image(f"{image_server}/missing.png")

    def test_connection_refused_raises(self):
        with pytest.raises(DecodeError):
            load_image("http://127.0.0.1:9/red.png", timeout=1.0)

    def test_slow_body_times_out_within_limit(self, image_server):
        start = time.monotonic()
        with pytest.raises(DecodeError, match="timed out"):
            load_image(f"{image_server}/slow.png", timeout=1.0)
        assert time.monotonic() - start < 3.0
