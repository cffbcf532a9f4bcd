"""
Sequential batch matching of a query image against candidate images.

The query is extracted once; candidates are then processed one at a time
so that progress callbacks report true completion counts. A candidate
that cannot be decoded scores 0 and the batch continues. Only a failure
on the query itself aborts the batch, since nothing can be scored
without it.
"""

import time
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import numpy as np

from .cache import FeatureCache
from .errors import SearchCancelled
from .features import extract_features_from_source
from .preprocessing import DECODE_TIMEOUT, ImageSource
from .scoring import score

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class Candidate:
    """An image to compare against the query; `image_url` may be a path or URL."""
    id: str
    image_url: ImageSource


@dataclass
class SimilarityResult:
    id: str
    image_url: ImageSource
    similarity: float

    @property
    def ranking_score(self) -> float:
        return self.similarity


class BatchMatcher:
    """
    Scores a query image against a list of candidates.

    Args:
        cache: Optional FeatureCache consulted before extracting features.
        timeout: Per-image load timeout in seconds.
    """

    def __init__(self,
                 cache: Optional[FeatureCache] = None,
                 timeout: float = DECODE_TIMEOUT):
        self.cache = cache
        self.timeout = timeout

    def features_for(self, image_id: Optional[str], source: ImageSource) -> np.ndarray:
        """
        Return the feature vector of an image, using the cache when possible.

        Images without an id are never cached.

        Raises:
            DecodeError: If the image cannot be loaded.
        """
        use_cache = self.cache is not None and image_id is not None
        if use_cache:
            cached = self.cache.get(image_id)
            if cached is not None:
                return cached

        vector = extract_features_from_source(source, timeout=self.timeout)

        if use_cache:
            source_url = source if isinstance(source, str) else ""
            self.cache.put(image_id, source_url, vector)
        return vector

    def match(self,
              query: ImageSource,
              candidates: Sequence[Candidate],
              on_progress: Optional[ProgressCallback] = None,
              cancel_event=None,
              query_id: Optional[str] = None) -> List[SimilarityResult]:
        """
        Score every candidate against the query.

        Args:
            query: Query image (path, URL, bytes or array).
            candidates: Images to compare, processed in order.
            on_progress: Called as on_progress(done, total) after each candidate.
            cancel_event: Optional object with is_set() (e.g. threading.Event),
                checked before each candidate.
            query_id: Cache id for the query; None disables caching it.

        Returns:
            One SimilarityResult per candidate, in candidate order.

        Raises:
            DecodeError: If the query image cannot be loaded.
            SearchCancelled: If cancel_event is set mid-batch.
        """
        start = time.perf_counter()
        query_vector = self.features_for(query_id, query)

        total = len(candidates)
        results = []
        failures = 0

        for done, candidate in enumerate(candidates, start=1):
            if cancel_event is not None and cancel_event.is_set():
                raise SearchCancelled(done - 1, total)

            try:
                vector = self.features_for(candidate.id, candidate.image_url)
                similarity = score(query_vector, vector)
            except Exception as e:
                logger.warning(f"Scoring candidate {candidate.id} failed: {e}")
                similarity = 0.0
                failures += 1

            results.append(SimilarityResult(candidate.id, candidate.image_url, similarity))

            if on_progress is not None:
                on_progress(done, total)

        logger.info(
            f"Batch match complete: {total} candidates, {failures} failures, "
            f"{time.perf_counter() - start:.2f}s"
        )
        return results

    def compare(self,
                source_a: ImageSource,
                source_b: ImageSource,
                id_a: Optional[str] = None,
                id_b: Optional[str] = None) -> float:
        """Similarity of two images; 0.0 if either cannot be loaded."""
        try:
            return score(self.features_for(id_a, source_a),
                         self.features_for(id_b, source_b))
        except Exception as e:
            logger.error(f"Image comparison failed: {e}")
            return 0.0
