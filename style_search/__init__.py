"""
style_search — Visual similarity search for clothing images.

Scores a query image against candidate images with a 114-dimension
colour/layout/edge feature vector and a weighted, non-linearly adjusted
similarity metric, optionally re-ranked by clothing-tag overlap.

Modules:
    engine          Main SearchEngine class
    features        Feature vector extraction
    scoring         Vector similarity scoring and ranking
    matcher         Sequential batch matching with progress reporting
    cache           Expiring, capacity-bounded feature cache
    tags            Clothing tag similarity and re-ranking
    preprocessing   Image loading and resampling
    index_builder   Corpus feature index construction
    errors          Exception types
"""

from .cache import FeatureCache, FileStorage, MemoryStorage
from .engine import SearchEngine
from .errors import CacheWriteError, DecodeError, DimensionMismatchError, SearchCancelled
from .features import FEATURE_DIM, extract_features
from .matcher import BatchMatcher, Candidate, SimilarityResult
from .scoring import score
from .tags import ClothingTags, CombinedResult, tag_similarity

__version__ = "1.0.0"
