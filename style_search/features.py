"""
Colour, layout and edge feature extraction.

Turns a raster image into a fixed 114-dimensional feature vector. The
image is first resampled to 48x48 so that every vector describes the same
number of pixels, then five feature groups are concatenated:

    [0:30]    — R, G, B histograms, 10 bins each
    [30:68]   — hue (18 bins of 20°), saturation (10) and value (10) histograms
    [68:104]  — 3×3 spatial blocks: mean R, G, B and texture per block
    [104:109] — brightness, colour spread and per-channel second moments
    [109:114] — edge strength and 4 edge-direction bins

All values are non-negative. Histograms sum to one; the remaining groups
are scaled by 255 so that they sit roughly in [0, 1]. Extraction is
deterministic: identical pixels always produce identical vectors.
"""

import logging

import cv2
import numpy as np

from .preprocessing import DECODE_TIMEOUT, RESAMPLE_SIZE, ImageSource, load_image, resample

logger = logging.getLogger(__name__)

RGB_BINS = 10
RGB_BIN_WIDTH = 25.6
HUE_BINS = 18
HUE_BIN_DEGREES = 20.0
SAT_BINS = 10
VAL_BINS = 10
GRID = 3
BLOCK_VALUES = 4
GLOBAL_DIM = 5
EDGE_DIRECTIONS = 4

# Feature layout, shared with the scorer's weight table.
RGB_SLICE = slice(0, 3 * RGB_BINS)
HUE_SLICE = slice(RGB_SLICE.stop, RGB_SLICE.stop + HUE_BINS)
SAT_SLICE = slice(HUE_SLICE.stop, HUE_SLICE.stop + SAT_BINS)
VAL_SLICE = slice(SAT_SLICE.stop, SAT_SLICE.stop + VAL_BINS)
BLOCK_SLICE = slice(VAL_SLICE.stop, VAL_SLICE.stop + GRID * GRID * BLOCK_VALUES)
GLOBAL_SLICE = slice(BLOCK_SLICE.stop, BLOCK_SLICE.stop + GLOBAL_DIM)
EDGE_SLICE = slice(GLOBAL_SLICE.stop, GLOBAL_SLICE.stop + 1 + EDGE_DIRECTIONS)

FEATURE_DIM = EDGE_SLICE.stop  # 114


def _binned_histogram(bins: np.ndarray, n_bins: int, total: int) -> np.ndarray:
    counts = np.bincount(np.clip(bins, 0, n_bins - 1).ravel(), minlength=n_bins)
    return counts.astype(np.float64) / total


def _rgb_histograms(pixels: np.ndarray) -> np.ndarray:
    """Three 10-bin channel histograms, each summing to one."""
    total = pixels.shape[0]
    bins = np.floor(pixels / RGB_BIN_WIDTH).astype(np.int64)
    return np.concatenate([
        _binned_histogram(bins[:, c], RGB_BINS, total) for c in range(3)
    ])


def rgb_to_hsv(pixels: np.ndarray):
    """
    Convert (N, 3) RGB values in 0-255 to hue (degrees), saturation and value.

    Hue is 0 for achromatic pixels; saturation is 0 when the pixel is black.
    """
    rgb = pixels / 255.0
    r, g, b = rgb[:, 0], rgb[:, 1], rgb[:, 2]
    c_max = rgb.max(axis=1)
    c_min = rgb.min(axis=1)
    delta = c_max - c_min

    chromatic = delta > 0
    safe_delta = np.where(chromatic, delta, 1.0)

    r_max = chromatic & (c_max == r)
    g_max = chromatic & ~r_max & (c_max == g)
    b_max = chromatic & ~r_max & ~g_max

    hue = np.zeros_like(c_max)
    hue[r_max] = 60.0 * (((g - b) / safe_delta) % 6)[r_max]
    hue[g_max] = 60.0 * ((b - r) / safe_delta + 2)[g_max]
    hue[b_max] = 60.0 * ((r - g) / safe_delta + 4)[b_max]
    hue[hue < 0] += 360.0

    saturation = np.where(c_max > 0, delta / np.where(c_max > 0, c_max, 1.0), 0.0)
    return hue, saturation, c_max


def _hsv_histograms(pixels: np.ndarray) -> np.ndarray:
    """Hue (18 bins), saturation (10) and value (10) histograms."""
    total = pixels.shape[0]
    hue, saturation, value = rgb_to_hsv(pixels)
    return np.concatenate([
        _binned_histogram(np.floor(hue / HUE_BIN_DEGREES).astype(np.int64), HUE_BINS, total),
        _binned_histogram(np.floor(saturation * SAT_BINS).astype(np.int64), SAT_BINS, total),
        _binned_histogram(np.floor(value * VAL_BINS).astype(np.int64), VAL_BINS, total),
    ])


def _block_features(image: np.ndarray) -> np.ndarray:
    """
    Mean colour and texture for each cell of a 3×3 grid, row-major.

    Texture is the square root of the mean per-channel variance inside
    the block, a cheap proxy for how busy the region is.
    """
    h, w = image.shape[:2]
    step_y, step_x = h // GRID, w // GRID
    values = []
    for by in range(GRID):
        for bx in range(GRID):
            block = image[by * step_y:(by + 1) * step_y,
                          bx * step_x:(bx + 1) * step_x].reshape(-1, 3)
            mean_rgb = block.mean(axis=0) / 255.0
            texture = np.sqrt(block.var(axis=0).mean()) / 255.0
            values.extend([mean_rgb[0], mean_rgb[1], mean_rgb[2], texture])
    return np.array(values, dtype=np.float64)


def _global_statistics(pixels: np.ndarray) -> np.ndarray:
    brightness = pixels.mean(axis=1)
    channel_moments = np.sqrt(pixels.var(axis=0)) / 255.0
    return np.array([
        brightness.mean() / 255.0,
        np.sqrt(brightness.var()) / 255.0,
        channel_moments[0],
        channel_moments[1],
        channel_moments[2],
    ], dtype=np.float64)


def _edge_features(image: np.ndarray) -> np.ndarray:
    """
    Edge strength and a 4-bin orientation histogram from Sobel gradients.

    Gradients are taken on the luma image at interior pixels only. Angles
    are folded into [0°, 180°) and split into horizontal, diagonal,
    vertical and anti-diagonal bins of 45° each; every bin accumulates
    gradient magnitude rather than a pixel count.
    """
    luma = image[:, :, 0] * 0.299 + image[:, :, 1] * 0.587 + image[:, :, 2] * 0.114

    gx = cv2.Sobel(luma, cv2.CV_64F, 1, 0, ksize=3)[1:-1, 1:-1]
    gy = cv2.Sobel(luma, cv2.CV_64F, 0, 1, ksize=3)[1:-1, 1:-1]

    magnitude = np.hypot(gx, gy).ravel()
    angles = np.degrees(np.arctan2(gy, gx)).ravel() % 180.0
    bins = np.clip(np.floor(angles / (180.0 / EDGE_DIRECTIONS)).astype(np.int64),
                   0, EDGE_DIRECTIONS - 1)

    scale = magnitude.size * 255.0
    directions = np.bincount(bins, weights=magnitude, minlength=EDGE_DIRECTIONS)
    return np.concatenate([[magnitude.sum() / scale], directions / scale])


def extract_features(image_np: np.ndarray) -> np.ndarray:
    """
    Extract the 114-dimensional feature vector of an image.

    Args:
        image_np: Decoded image (RGB uint8 preferred; grayscale, RGBA and
            float images are normalized first).

    Returns:
        Read-only float32 vector of length FEATURE_DIM.
    """
    image = resample(image_np, RESAMPLE_SIZE).astype(np.float64)
    pixels = image.reshape(-1, 3)

    vector = np.concatenate([
        _rgb_histograms(pixels),
        _hsv_histograms(pixels),
        _block_features(image),
        _global_statistics(pixels),
        _edge_features(image),
    ]).astype(np.float32)

    if vector.shape[0] != FEATURE_DIM:
        raise RuntimeError(f"Feature layout produced {vector.shape[0]} values, expected {FEATURE_DIM}")

    vector.setflags(write=False)
    return vector


def extract_features_from_source(source: ImageSource,
                                 timeout: float = DECODE_TIMEOUT) -> np.ndarray:
    """Load an image from a path, URL, bytes or array and extract its features."""
    image = load_image(source, timeout=timeout)
    logger.debug(f"Extracting features from {image.shape[1]}x{image.shape[0]} image")
    return extract_features(image)
