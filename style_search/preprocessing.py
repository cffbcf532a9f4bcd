"""
Image loading and normalization for feature extraction.

Every image entering the pipeline goes through `load_image` (which turns a
path, URL, byte string or array into an RGB uint8 array) and `resample`
(which brings it to the fixed analysis resolution). Decode failures of any
kind surface as `DecodeError`; nothing here retries.
"""

import os
import time
import logging
from typing import Union

import cv2
import numpy as np
import requests
import urllib3

from .errors import DecodeError

logger = logging.getLogger(__name__)

# Upper bound for fetching and decoding a single image, in seconds.
DECODE_TIMEOUT = float(os.environ.get("IMAGE_DECODE_TIMEOUT", "5.0"))

# Square analysis resolution used by the feature extractor.
RESAMPLE_SIZE = 48

ImageSource = Union[str, bytes, np.ndarray]


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is 3-channel uint8 RGB."""
    if image_np.dtype != np.uint8:
        if image_np.size and image_np.max() <= 1.0:
            image_np = (np.clip(image_np, 0.0, 1.0) * 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)

    if image_np.ndim == 2:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGB)
    elif image_np.ndim == 3 and image_np.shape[2] == 4:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_RGBA2RGB)
    elif image_np.ndim == 3 and image_np.shape[2] == 1:
        image_np = cv2.cvtColor(image_np[:, :, 0], cv2.COLOR_GRAY2RGB)

    return image_np


def resample(image_np: np.ndarray, size: int = RESAMPLE_SIZE) -> np.ndarray:
    """Resize an RGB image to a size x size square (aspect ratio is not kept)."""
    image_np = normalize_image(image_np)
    h, w = image_np.shape[:2]
    if (h, w) == (size, size):
        return image_np
    return cv2.resize(image_np, (size, size), interpolation=cv2.INTER_AREA)


def _decode_bytes(data: bytes, source: str) -> np.ndarray:
    buffer = np.frombuffer(data, dtype=np.uint8)
    if buffer.size == 0:
        raise DecodeError(source, "empty image data")
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None:
        raise DecodeError(source, "unsupported or corrupt image data")
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def _fetch(url: str, timeout: float, chunk_size: int = 65536) -> bytes:
    """
    Download an image, failing once `timeout` seconds have passed in total.

    The requests timeout only bounds the connect and each socket read, so
    the body is read as it arrives and checked against an overall deadline.
    """
    deadline = time.monotonic() + timeout
    chunks = []
    try:
        with requests.get(url, timeout=timeout, stream=True) as response:
            response.raise_for_status()
            while True:
                chunk = response.raw.read1(chunk_size, decode_content=True)
                if not chunk:
                    break
                chunks.append(chunk)
                if time.monotonic() > deadline:
                    raise DecodeError(url, f"timed out after {timeout}s")
    except (requests.Timeout, urllib3.exceptions.TimeoutError) as e:
        raise DecodeError(url, f"timed out after {timeout}s") from e
    except (requests.RequestException, urllib3.exceptions.HTTPError) as e:
        raise DecodeError(url, str(e)) from e
    return b"".join(chunks)


def load_image(source: ImageSource, timeout: float = DECODE_TIMEOUT) -> np.ndarray:
    """
    Load an image from any supported source as an RGB uint8 array.

    Args:
        source: Local file path, http(s) URL, encoded image bytes, or an
            already decoded array (RGB, grayscale or RGBA).
        timeout: Seconds allowed for fetching a remote image.

    Returns:
        RGB uint8 array of shape (H, W, 3).

    Raises:
        DecodeError: If the source cannot be read or decoded.
    """
    if isinstance(source, np.ndarray):
        if source.ndim not in (2, 3) or source.size == 0:
            raise DecodeError("<array>", f"invalid array shape {source.shape}")
        if source.ndim == 3 and source.shape[2] not in (1, 3, 4):
            raise DecodeError("<array>", f"unsupported channel count {source.shape[2]}")
        return normalize_image(source)

    if isinstance(source, (bytes, bytearray)):
        return _decode_bytes(bytes(source), "<bytes>")

    if not isinstance(source, str) or not source:
        raise DecodeError(repr(source), "unsupported image source")

    if source.startswith(("http://", "https://")):
        logger.debug(f"Fetching remote image: {source}")
        return _decode_bytes(_fetch(source, timeout), source)

    if not os.path.exists(source):
        raise DecodeError(source, "file not found")

    try:
        with open(source, "rb") as f:
            data = f.read()
    except OSError as e:
        raise DecodeError(source, str(e)) from e

    return _decode_bytes(data, source)
