"""
Similarity scoring between feature vectors.

The score is a weighted cosine similarity blended with two consistency
terms (spatial blocks and hue bins) and an average-difference term, then
reshaped by a fixed sequence of non-linear adjustments:

    raw       = 0.4·cosine + 0.25·blocks + 0.25·hue + 0.1·(1 − avg_diff)
    score     = raw ^ 0.7
    score    *= stepped penalty on the largest single-dimension difference
    score    *= suppression for already-low scores
    score    *= 0.9

The constants are empirically tuned and downstream thresholds depend on the
resulting distribution, so they are fixed here rather than configurable.
Identical vectors short-circuit to 1.0.
"""

import logging
from typing import Callable, Iterable, List, Optional

import numpy as np

from .errors import DimensionMismatchError
from .features import (
    BLOCK_SLICE, BLOCK_VALUES, FEATURE_DIM, GRID,
    HUE_BINS, HUE_SLICE, RGB_BINS, SAT_BINS, VAL_BINS,
)

logger = logging.getLogger(__name__)

RGB_WEIGHT = 1.2
HUE_WEIGHT = 2.0
SAT_WEIGHT = 1.8
VAL_WEIGHT = 1.5
BLOCK_WEIGHT = 2.2
GLOBAL_WEIGHTS = (1.8, 2.0, 1.5, 1.5, 1.5)
EDGE_WEIGHTS = (2.2, 1.8, 1.8, 1.8, 1.8)

WEIGHT_TABLE = np.concatenate([
    np.full(3 * RGB_BINS, RGB_WEIGHT),
    np.full(HUE_BINS, HUE_WEIGHT),
    np.full(SAT_BINS, SAT_WEIGHT),
    np.full(VAL_BINS, VAL_WEIGHT),
    np.full(GRID * GRID * BLOCK_VALUES, BLOCK_WEIGHT),
    np.array(GLOBAL_WEIGHTS),
    np.array(EDGE_WEIGHTS),
])

# Raw similarity blend
COSINE_SHARE = 0.4
BLOCK_SHARE = 0.25
HUE_SHARE = 0.25
DIFFERENCE_SHARE = 0.1

COMPRESSION_EXPONENT = 0.7

BLOCK_COLOR_SHARE = 0.7
BLOCK_TEXTURE_SHARE = 0.3
BLOCK_DECAY = 5.0
HUE_DECAY = 8.0

# (max difference above, multiplier), checked in order
MAX_DIFFERENCE_PENALTIES = ((0.8, 0.3), (0.6, 0.5), (0.4, 0.7), (0.3, 0.85))
# (score below, multiplier), checked in order
LOW_SCORE_SUPPRESSION = ((0.2, 0.5), (0.4, 0.8))
GLOBAL_DAMPING = 0.9


def feature_weights(length: int) -> np.ndarray:
    """Per-dimension weights for a vector of `length`; extra dimensions get 1.0."""
    if length <= WEIGHT_TABLE.shape[0]:
        return WEIGHT_TABLE[:length]
    return np.concatenate([WEIGHT_TABLE, np.ones(length - WEIGHT_TABLE.shape[0])])


def _as_pair(vector_a, vector_b):
    a = np.asarray(vector_a, dtype=np.float64).ravel()
    b = np.asarray(vector_b, dtype=np.float64).ravel()
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(a.shape[0], b.shape[0])
    if a.shape[0] < FEATURE_DIM:
        raise DimensionMismatchError(a.shape[0], FEATURE_DIM)
    return a, b


def weighted_cosine_similarity(vector_a, vector_b) -> float:
    """
    Cosine similarity of the two vectors after per-dimension weighting.

    Raises:
        DimensionMismatchError: If the vectors differ in length.
    """
    a = np.asarray(vector_a, dtype=np.float64).ravel()
    b = np.asarray(vector_b, dtype=np.float64).ravel()
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(a.shape[0], b.shape[0])

    weights = feature_weights(a.shape[0])
    wa, wb = a * weights, b * weights
    norm_a = np.linalg.norm(wa)
    norm_b = np.linalg.norm(wb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(wa, wb) / (norm_a * norm_b))


def block_consistency(vector_a, vector_b) -> float:
    """
    Average agreement of the 3×3 spatial blocks, in (0, 1].

    Each block's distance is 0.7 × the Euclidean RGB distance plus
    0.3 × the texture difference, mapped through exp(−5d).
    """
    a, b = _as_pair(vector_a, vector_b)
    blocks_a = a[BLOCK_SLICE].reshape(GRID * GRID, BLOCK_VALUES)
    blocks_b = b[BLOCK_SLICE].reshape(GRID * GRID, BLOCK_VALUES)

    color_distance = np.linalg.norm(blocks_a[:, :3] - blocks_b[:, :3], axis=1)
    texture_distance = np.abs(blocks_a[:, 3] - blocks_b[:, 3])
    distance = BLOCK_COLOR_SHARE * color_distance + BLOCK_TEXTURE_SHARE * texture_distance
    return float(np.mean(np.exp(-distance * BLOCK_DECAY)))


def hue_consistency(vector_a, vector_b) -> float:
    """Average of exp(−8·|Δ|) over the 18 hue bins, in (0, 1]."""
    a, b = _as_pair(vector_a, vector_b)
    return float(np.mean(np.exp(-np.abs(a[HUE_SLICE] - b[HUE_SLICE]) * HUE_DECAY)))


def _max_difference_penalty(max_difference: float) -> float:
    for limit, multiplier in MAX_DIFFERENCE_PENALTIES:
        if max_difference > limit:
            return multiplier
    return 1.0


def _low_score_suppression(similarity: float) -> float:
    for limit, multiplier in LOW_SCORE_SUPPRESSION:
        if similarity < limit:
            return multiplier
    return 1.0


def score(vector_a, vector_b) -> float:
    """
    Compare two feature vectors and return a similarity in [0, 1].

    Vectors of different lengths are logged and scored 0.0 so a batch loop
    never aborts on a single bad pair.

    Args:
        vector_a: Feature vector from extract_features().
        vector_b: Feature vector from extract_features().

    Returns:
        Similarity score; 1.0 only for identical vectors.
    """
    try:
        a, b = _as_pair(vector_a, vector_b)
    except DimensionMismatchError as e:
        logger.warning(f"Similarity fallback to 0: {e}")
        return 0.0

    if np.array_equal(a, b):
        return 1.0

    weights = feature_weights(a.shape[0])
    difference = np.abs(a - b)
    avg_difference = float(np.mean(difference * weights))
    max_difference = float(np.max(difference))

    cosine = weighted_cosine_similarity(a, b)
    blocks = block_consistency(a, b)
    hues = hue_consistency(a, b)

    raw = (COSINE_SHARE * cosine
           + BLOCK_SHARE * blocks
           + HUE_SHARE * hues
           + DIFFERENCE_SHARE * (1.0 - avg_difference))
    raw = min(max(raw, 0.0), 1.0)

    similarity = raw ** COMPRESSION_EXPONENT
    similarity *= _max_difference_penalty(max_difference)
    similarity *= _low_score_suppression(similarity)
    similarity *= GLOBAL_DAMPING

    return float(min(max(similarity, 0.0), 1.0))


def _ranking_score(result) -> float:
    return result.ranking_score


def filter_by_threshold(results: Iterable,
                        threshold: float,
                        key: Optional[Callable] = None) -> list:
    """Keep results whose ranking score is at least `threshold` (0-1)."""
    key = key or _ranking_score
    return [r for r in results if key(r) >= threshold]


def rank_results(results: Iterable, key: Optional[Callable] = None) -> List:
    """
    Sort results by ranking score, highest first.

    The sort is stable, so ties keep their candidate order and repeated
    searches return the same ordering.
    """
    key = key or _ranking_score
    return sorted(results, key=lambda r: -key(r))
