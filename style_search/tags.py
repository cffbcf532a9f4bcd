"""
Clothing tag overlap scoring and tag-aware re-ranking.

Tags come from an external tagging service as a fixed set of 13 clothing
attributes. Two tag sets are compared attribute by attribute; only
attributes recognized in both sets count. Important attributes (style,
colour, collar, sleeve) carry more weight than the rest.

The combined ranking score blends the visual similarity with the tag
score: 0.6 × similarity + 0.4 × tag_similarity / 100.
"""

import logging
from dataclasses import dataclass, fields
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

from .matcher import SimilarityResult

logger = logging.getLogger(__name__)

UNRECOGNIZED = "unrecognized"
# Values the tagging service uses when it could not recognize an attribute
UNRECOGNIZED_VALUES = frozenset({"", UNRECOGNIZED, "未识别", "null", "undefined", "none"})

VECTOR_SHARE = 0.6
TAG_SHARE = 0.4

EXACT_MATCH = 1.0
SUBSTRING_MATCH = 0.6
COLOR_FAMILY_MATCH = 0.4

# Either spelling of a colour marks both values as the same family
COLOR_FAMILIES = (
    ("black", "黑"),
    ("white", "白"),
    ("red", "红"),
    ("blue", "蓝"),
)


@dataclass(frozen=True)
class ClothingTags:
    style_name: str = UNRECOGNIZED
    color: str = UNRECOGNIZED
    tone: str = UNRECOGNIZED
    collar: str = UNRECOGNIZED
    sleeve: str = UNRECOGNIZED
    fit: str = UNRECOGNIZED
    length: str = UNRECOGNIZED
    fabric: str = UNRECOGNIZED
    pattern: str = UNRECOGNIZED
    craft: str = UNRECOGNIZED
    occasion: str = UNRECOGNIZED
    season: str = UNRECOGNIZED
    style: str = UNRECOGNIZED

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Optional[str]]) -> "ClothingTags":
        """
        Build tags from a tagging service response.

        Keys may be the field names above or the service's own labels
        (see SERVICE_LABELS). Unknown keys are ignored; missing or null
        values become UNRECOGNIZED.
        """
        values = {}
        for key, value in mapping.items():
            name = key if key in TAG_FIELDS else SERVICE_LABELS.get(key)
            if name is None:
                logger.debug(f"Ignoring unknown tag key: {key}")
                continue
            values[name] = UNRECOGNIZED if value is None else str(value)
        return cls(**values)

    def as_dict(self) -> Dict[str, str]:
        return {name: getattr(self, name) for name in TAG_FIELDS}


TAG_FIELDS = tuple(f.name for f in fields(ClothingTags))

# Field labels returned by the tagging workflow
SERVICE_LABELS = {
    "样式名称": "style_name",
    "颜色": "color",
    "色调": "tone",
    "领": "collar",
    "袖": "sleeve",
    "版型": "fit",
    "长度": "length",
    "面料": "fabric",
    "图案": "pattern",
    "工艺": "craft",
    "场合": "occasion",
    "季节": "season",
    "风格": "style",
}

# Attribute importance; attributes not listed weigh DEFAULT_TAG_WEIGHT
TAG_WEIGHTS = {
    "style_name": 3.0,
    "style": 3.0,
    "color": 2.0,
    "collar": 2.0,
    "sleeve": 2.0,
    "fabric": 1.0,
    "occasion": 1.0,
}
DEFAULT_TAG_WEIGHT = 1.0

TagsLike = Union[ClothingTags, Mapping[str, Optional[str]]]
Tagger = Callable[..., Mapping[str, Optional[str]]]


def as_tags(tags: TagsLike) -> ClothingTags:
    if isinstance(tags, ClothingTags):
        return tags
    return ClothingTags.from_mapping(tags)


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def is_recognized(value: Optional[str]) -> bool:
    return _normalize(value) not in UNRECOGNIZED_VALUES


def is_all_unrecognized(tags: TagsLike) -> bool:
    """True when the tagging service recognized none of the attributes."""
    return not any(is_recognized(v) for v in as_tags(tags).as_dict().values())


def _same_color_family(value_a: str, value_b: str) -> bool:
    for markers in COLOR_FAMILIES:
        if any(m in value_a for m in markers) and any(m in value_b for m in markers):
            return True
    return False


def _match_fraction(value_a: str, value_b: str) -> float:
    if value_a == value_b:
        return EXACT_MATCH
    if value_a in value_b or value_b in value_a:
        return SUBSTRING_MATCH
    if _same_color_family(value_a, value_b):
        return COLOR_FAMILY_MATCH
    return 0.0


def tag_similarity(tags_a: TagsLike, tags_b: TagsLike) -> float:
    """
    Weighted attribute overlap of two tag sets, from 0 to 100.

    For every attribute recognized in both sets its weight is added to the
    total, and the matched share of it (exact 1.0, substring 0.6, same
    colour family 0.4) to the score. Returns 0 when no attribute is
    comparable.
    """
    values_a = as_tags(tags_a).as_dict()
    values_b = as_tags(tags_b).as_dict()

    match_score = 0.0
    total_weight = 0.0
    for name in TAG_FIELDS:
        value_a = _normalize(values_a[name])
        value_b = _normalize(values_b[name])
        if value_a in UNRECOGNIZED_VALUES or value_b in UNRECOGNIZED_VALUES:
            continue

        weight = TAG_WEIGHTS.get(name, DEFAULT_TAG_WEIGHT)
        total_weight += weight
        match_score += weight * _match_fraction(value_a, value_b)

    if total_weight == 0:
        return 0.0
    return match_score / total_weight * 100.0


def combined_score(vector_similarity: float, tag_score: float) -> float:
    """Blend a 0-1 visual similarity with a 0-100 tag similarity."""
    return VECTOR_SHARE * vector_similarity + TAG_SHARE * (tag_score / 100.0)


@dataclass
class CombinedResult(SimilarityResult):
    tag_similarity: float = 0.0

    @property
    def combined_score(self) -> float:
        return combined_score(self.similarity, self.tag_similarity)

    @property
    def ranking_score(self) -> float:
        return self.combined_score


def rerank(results: Sequence[SimilarityResult],
           query_tags: TagsLike,
           candidate_tags: Mapping[str, TagsLike]) -> List[CombinedResult]:
    """
    Attach tag similarity to each result.

    Candidates without tags get a tag similarity of 0. Order is preserved;
    sort with scoring.rank_results().
    """
    query = as_tags(query_tags)
    combined = []
    for result in results:
        tags = candidate_tags.get(result.id)
        tag_score = tag_similarity(query, tags) if tags is not None else 0.0
        combined.append(CombinedResult(result.id, result.image_url,
                                       result.similarity, tag_score))
    return combined
