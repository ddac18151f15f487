"""
Chunk quality scoring.

``calculate_chunk_quality`` is what ingestion stores as ``quality_score``;
the retrieval side only reads that score back to filter and re-rank.
Chunks indexed before quality scoring existed have no score and are always
kept.
"""

import re
from dataclasses import replace
from typing import List, Optional, Sequence

from gruenerator_retrieval.query.filters import FilterDict, merge_filters
from gruenerator_retrieval.query.intent import GERMAN_STOPWORDS, generate_search_filters
from gruenerator_retrieval.query.stores import VectorStoreClient
from gruenerator_retrieval.query.types import QueryIntent, SearchCandidate
from gruenerator_retrieval.shared.config import QualityConfig, QualityWeights
from gruenerator_retrieval.shared.observability import get_logger
from gruenerator_retrieval.shared.observability.metrics import retrieval_quality_filtered_total

logger = get_logger(__name__)

NEUTRAL_QUALITY = 0.5

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_WORD_RE = re.compile(r"[\wäöüßÄÖÜ]+", re.UNICODE)
_LIST_LINE_RE = re.compile(r"^\s*([-*•]|\d+[.)])\s+")
_HEADING_LINE_RE = re.compile(r"^\s*(#{1,6}\s+\S|[^\n.!?]{3,80}:\s*$)")
_TERMINAL_CHARS = ('.', '!', '?', ':', '"', '»', '“', ')')


def filter_by_quality(
    results: Sequence[SearchCandidate], min_quality: float
) -> List[SearchCandidate]:
    """Drop candidates whose quality score is present and below ``min_quality``."""
    kept = [
        r
        for r in results
        if r.payload.quality_score is None or r.payload.quality_score >= min_quality
    ]
    removed = len(results) - len(kept)
    if removed:
        retrieval_quality_filtered_total.inc(removed)
        logger.debug("Quality filter removed candidates", removed=removed, min_quality=min_quality)
    return kept


def quality_multiplier(quality_score: Optional[float], boost_factor: float) -> float:
    quality = NEUTRAL_QUALITY if quality_score is None else quality_score
    return 1.0 + (quality - NEUTRAL_QUALITY) * (boost_factor - 1.0)


def apply_quality_boost(
    results: Sequence[SearchCandidate], boost_factor: float
) -> List[SearchCandidate]:
    """
    Rescale scores by chunk quality and re-sort.

    Quality above 0.5 amplifies, below 0.5 dampens, exactly 0.5 (or a
    missing score) leaves the score unchanged.
    """
    boosted = [
        replace(r, score=r.score * quality_multiplier(r.payload.quality_score, boost_factor))
        for r in results
    ]
    boosted.sort(key=lambda r: r.score, reverse=True)
    return boosted


# ============================================================================
# Indexing-time scoring
# ============================================================================


def _sentences(text: str) -> List[str]:
    return [s for s in _SENTENCE_SPLIT_RE.split(text.strip()) if s.strip()]


def score_readability(text: str) -> float:
    """Sentence length near 15-25 words plus lexical variety."""
    words = _WORD_RE.findall(text)
    sentences = _sentences(text)
    if not words or not sentences:
        return 0.0

    avg_len = len(words) / len(sentences)
    if avg_len < 15:
        length_score = avg_len / 15
    elif avg_len <= 25:
        length_score = 1.0
    else:
        length_score = max(0.0, 1.0 - (avg_len - 25) / 25)

    variety = len({w.lower() for w in words}) / len(words)
    return 0.7 * length_score + 0.3 * variety


def score_completeness(text: str) -> float:
    """Terminal punctuation and capitalized sentence starts."""
    stripped = text.strip()
    sentences = _sentences(stripped)
    if not sentences:
        return 0.0
    terminal = 0.5 if stripped.endswith(_TERMINAL_CHARS) else 0.0
    capitalized = sum(1 for s in sentences if s.lstrip()[:1].isupper() or s.lstrip()[:1].isdigit())
    return terminal + 0.5 * capitalized / len(sentences)


def score_structure(text: str) -> float:
    lines = text.splitlines()
    score = 0.4
    if any(_HEADING_LINE_RE.match(line) for line in lines):
        score += 0.2
    if any(_LIST_LINE_RE.match(line) for line in lines):
        score += 0.2
    if "\n\n" in text.strip():
        score += 0.2
    return min(1.0, score)


def score_density(text: str) -> float:
    """Inverse stop-word ratio; keyword soup and filler both score low."""
    words = [w.lower() for w in _WORD_RE.findall(text)]
    if not words:
        return 0.0

    ratio = sum(1 for w in words if w in GERMAN_STOPWORDS) / len(words)
    if ratio < 0.1:
        score = 0.5 + ratio * 5  # 0.5 .. 1.0
    elif ratio <= 0.5:
        score = 1.0
    else:
        score = max(0.0, 1.0 - (ratio - 0.5) * 2.5)

    if len(words) < 20:
        score *= len(words) / 20
    return score


def calculate_chunk_quality(text: Optional[str], weights: Optional[QualityWeights] = None) -> float:
    """Weighted sum of readability, completeness, structure and density, in [0, 1]."""
    if not text or not text.strip():
        return 0.0
    w = weights or QualityWeights()
    total = (
        w.readability * score_readability(text)
        + w.completeness * score_completeness(text)
        + w.structure * score_structure(text)
        + w.density * score_density(text)
    )
    return min(1.0, max(0.0, total))


# ============================================================================
# Quality-aware store search
# ============================================================================


async def search_with_quality(
    store: VectorStoreClient,
    collection: str,
    vector: Sequence[float],
    filter: Optional[FilterDict] = None,
    limit: int = 10,
    score_threshold: Optional[float] = None,
    config: Optional[QualityConfig] = None,
) -> List[SearchCandidate]:
    """Vector search, then quality filter and boost, re-sorted and truncated."""
    cfg = (config or QualityConfig()).retrieval
    points = await store.search(
        collection, vector, filter=filter, limit=limit, score_threshold=score_threshold
    )
    results = [SearchCandidate.from_vector_point(p, collection=collection) for p in points]
    if cfg.enable_quality_filter:
        results = filter_by_quality(results, cfg.min_retrieval_quality)
    return apply_quality_boost(results, cfg.quality_boost_factor)[:limit]


async def search_with_intent(
    store: VectorStoreClient,
    collection: str,
    vector: Sequence[float],
    intent: Optional[QueryIntent],
    base_filter: Optional[FilterDict] = None,
    limit: int = 10,
    config: Optional[QualityConfig] = None,
) -> List[SearchCandidate]:
    """``search_with_quality`` with the intent's advisory clauses merged into the filter."""
    merged = merge_filters(base_filter, generate_search_filters(intent))
    return await search_with_quality(
        store, collection, vector, filter=merged, limit=limit, config=config
    )
