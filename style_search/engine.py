"""
Visual similarity search engine.

Orchestrates the two-stage search pipeline:
    1. Feature extraction and scoring of every candidate against the query
    2. Optional tag re-ranking, blending clothing-tag overlap into the score

Results are filtered by a similarity threshold and sorted highest first.
If the query's tags cannot be obtained, the search still completes using
visual similarity alone.
"""

import os
import logging
from typing import List, Mapping, Optional, Sequence

from .cache import FeatureCache
from .errors import SearchCancelled
from .index_builder import CorpusIndex
from .matcher import BatchMatcher, Candidate, ProgressCallback, SimilarityResult
from .preprocessing import DECODE_TIMEOUT, ImageSource
from .scoring import filter_by_threshold, rank_results, score
from .tags import ClothingTags, Tagger, TagsLike, as_tags, is_all_unrecognized, rerank

logger = logging.getLogger(__name__)

# Minimum ranking score (0-1) for a result to be returned
DEFAULT_THRESHOLD = float(os.environ.get("SEARCH_THRESHOLD", "0.05"))

# Candidates taken from a corpus index before full re-scoring
SHORTLIST_SIZE = int(os.environ.get("SHORTLIST_SIZE", "200"))


def _check_threshold(threshold: float) -> None:
    if not 0.0 <= threshold <= 1.0:
        raise ValueError(f"Similarity threshold must be within [0, 1], got {threshold}")


class SearchEngine:
    """
    Image similarity search with optional tag re-ranking.

    Args:
        cache: Optional FeatureCache shared across searches.
        tagger: Optional callable returning a tag mapping for an image;
            used to tag the query when no query tags are supplied.
        timeout: Per-image load timeout in seconds.
    """

    def __init__(self,
                 cache: Optional[FeatureCache] = None,
                 tagger: Optional[Tagger] = None,
                 timeout: float = DECODE_TIMEOUT):
        self.matcher = BatchMatcher(cache=cache, timeout=timeout)
        self.tagger = tagger

    def query_tags_for(self, query: ImageSource) -> Optional[ClothingTags]:
        """Ask the tagger for the query's tags; None if unavailable or unusable."""
        if self.tagger is None:
            return None
        try:
            tags = as_tags(self.tagger(query))
        except Exception as e:
            logger.warning(f"Query tagging failed, ranking by image similarity only: {e}")
            return None
        if is_all_unrecognized(tags):
            logger.warning("Query tags all unrecognized, ranking by image similarity only")
            return None
        return tags

    def _resolve_query_tags(self, query, use_tags, query_tags, candidate_tags):
        if not use_tags:
            return None
        if candidate_tags and query_tags is None:
            return self.query_tags_for(query)
        return query_tags

    def _finalize(self,
                  results: List[SimilarityResult],
                  threshold: float,
                  query_tags: Optional[TagsLike],
                  candidate_tags: Optional[Mapping[str, TagsLike]]) -> list:
        if query_tags is not None and candidate_tags:
            results = rerank(results, query_tags, candidate_tags)
        return rank_results(filter_by_threshold(results, threshold))

    def search(self,
               query: ImageSource,
               candidates: Sequence[Candidate],
               threshold: float = DEFAULT_THRESHOLD,
               use_tags: bool = True,
               query_tags: Optional[TagsLike] = None,
               candidate_tags: Optional[Mapping[str, TagsLike]] = None,
               on_progress: Optional[ProgressCallback] = None,
               cancel_event=None,
               query_id: Optional[str] = None) -> list:
        """
        Find candidates visually similar to the query.

        Pipeline:
            1. Resolve query tags (if tag re-ranking applies)
            2. Score each candidate → SimilarityResult
            3. Blend in tag similarity → CombinedResult
            4. Threshold on the ranking score → sort descending

        Args:
            query: Query image (path, URL, bytes or array).
            candidates: Images to search.
            threshold: Minimum ranking score, 0-1.
            use_tags: Enable tag re-ranking when tags are available.
            query_tags: Tags of the query; obtained from the tagger if omitted.
            candidate_tags: Tags per candidate id.
            on_progress: Called as on_progress(done, total) per candidate.
            cancel_event: Optional object with is_set(), checked per candidate.
            query_id: Cache id for the query image.

        Returns:
            SimilarityResult list (or CombinedResult list when re-ranked),
            highest ranking score first.

        Raises:
            DecodeError: If the query image cannot be loaded.
            SearchCancelled: If cancel_event is set mid-search.
            ValueError: If threshold is outside [0, 1].
        """
        _check_threshold(threshold)

        query_tags = self._resolve_query_tags(query, use_tags, query_tags, candidate_tags)

        results = self.matcher.match(query, candidates, on_progress=on_progress,
                                     cancel_event=cancel_event, query_id=query_id)
        ranked = self._finalize(results, threshold, query_tags, candidate_tags)

        logger.info(
            f"Search complete: {len(candidates)} candidates → {len(ranked)} results"
            f"{' (tag re-ranked)' if query_tags is not None and candidate_tags else ''}"
        )
        return ranked

    def search_index(self,
                     query: ImageSource,
                     index: CorpusIndex,
                     threshold: float = DEFAULT_THRESHOLD,
                     top_k: int = 20,
                     shortlist: int = SHORTLIST_SIZE,
                     use_tags: bool = True,
                     query_tags: Optional[TagsLike] = None,
                     candidate_tags: Optional[Mapping[str, TagsLike]] = None,
                     on_progress: Optional[ProgressCallback] = None,
                     cancel_event=None) -> list:
        """
        Search a prebuilt corpus index.

        The index shortlists candidates by weighted cosine similarity; the
        shortlist is then re-scored with the full metric. Result ids are the
        indexed filenames. Query tags are resolved as in search(), so
        candidate_tags keyed by filename enable tag re-ranking.

        Raises:
            DecodeError: If the query image cannot be loaded.
            SearchCancelled: If cancel_event is set mid-search.
            ValueError: If threshold is outside [0, 1].
        """
        _check_threshold(threshold)
        query_tags = self._resolve_query_tags(query, use_tags, query_tags, candidate_tags)
        query_vector = self.matcher.features_for(None, query)

        try:
            shortlisted = index.shortlist(query_vector, shortlist)
        except ValueError as e:
            logger.error(f"Corpus index search failed: {e}")
            return []

        results = []
        total = len(shortlisted)
        for done, (position, _) in enumerate(shortlisted, start=1):
            if cancel_event is not None and cancel_event.is_set():
                raise SearchCancelled(done - 1, total)
            similarity = score(query_vector, index.vectors[position])
            results.append(SimilarityResult(index.filenames[position],
                                            index.path_for(position), similarity))
            if on_progress is not None:
                on_progress(done, total)

        ranked = self._finalize(results, threshold, query_tags, candidate_tags)[:top_k]
        logger.info(f"Index search complete: {total} shortlisted → {len(ranked)} results")
        return ranked
