"""
Hybrid fusion of vector and lexical result lists.

Two fusion modes:

* Reciprocal Rank Fusion: ``score = sum(1 / (k + rank_i))`` over the lists a
  chunk appears in (1-based ranks), then a confidence multiplier by
  provenance. Uses rank position only, so it is robust to the two lists
  having unrelated score scales.
* Weighted combination: normalized weights times each list's raw score,
  summed for chunks found by both searches.

RRF assumes both lists carry signal. When the lexical side is empty, tiny,
or only token-level fallback hits, ``determine_fusion_strategy`` switches to
a vector-heavy weighted blend instead.
"""

import math
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence

from gruenerator_retrieval.query.types import PointId, Provenance, SearchCandidate
from gruenerator_retrieval.shared.config import HybridConfig
from gruenerator_retrieval.shared.observability import get_logger
from gruenerator_retrieval.shared.observability.metrics import (
    retrieval_quality_gate_dropped_total,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class FusionStrategy:
    use_rrf: bool
    vector_weight: float
    text_weight: float
    reason: str
    auto_switched_from_rrf: bool = False

    @property
    def method(self) -> str:
        return "rrf" if self.use_rrf else "weighted"


def has_real_text_matches(text_results: Sequence) -> bool:
    """True if any lexical hit is genuine (not a token-level fallback)."""
    return any(
        r.match_type is not None and r.match_type.is_genuine for r in text_results
    )


def determine_fusion_strategy(
    text_results: Sequence,
    prefer_rrf: bool = True,
    config: Optional[HybridConfig] = None,
) -> FusionStrategy:
    """
    Choose between RRF and weighted fusion based on the lexical evidence.

    With RRF preferred, fall back to the configured vector-heavy weights
    when text results are empty, all token fallback, or fewer than
    ``min_text_results_for_rrf``. Without RRF, use the fallback weights when
    there is no genuine lexical hit and the balanced weights otherwise.
    """
    cfg = config or HybridConfig()
    count = len(text_results)
    genuine = has_real_text_matches(text_results)

    if prefer_rrf:
        if count == 0:
            reason = "no_text_results"
        elif not genuine:
            reason = "token_fallback_only"
        elif count < cfg.min_text_results_for_rrf:
            reason = "too_few_text_results"
        else:
            return FusionStrategy(
                use_rrf=True,
                vector_weight=cfg.balanced_vector_weight,
                text_weight=cfg.balanced_text_weight,
                reason="rrf",
            )
        logger.debug(
            "Switching from RRF to weighted fusion",
            reason=reason,
            text_results=count,
        )
        return FusionStrategy(
            use_rrf=False,
            vector_weight=cfg.fallback_vector_weight,
            text_weight=cfg.fallback_text_weight,
            reason=reason,
            auto_switched_from_rrf=True,
        )

    if count == 0 or not genuine:
        return FusionStrategy(
            use_rrf=False,
            vector_weight=cfg.fallback_vector_weight,
            text_weight=cfg.fallback_text_weight,
            reason="weighted_no_text_matches",
        )
    return FusionStrategy(
        use_rrf=False,
        vector_weight=cfg.balanced_vector_weight,
        text_weight=cfg.balanced_text_weight,
        reason="weighted_balanced",
    )


def _first_ranks(results: Sequence[SearchCandidate]) -> Dict[PointId, int]:
    """Map id -> best (first) 1-based rank; later duplicates are ignored."""
    ranks: Dict[PointId, int] = {}
    for rank, result in enumerate(results, start=1):
        ranks.setdefault(result.id, rank)
    return ranks


def _first_by_id(results: Sequence[SearchCandidate]) -> Dict[PointId, SearchCandidate]:
    out: Dict[PointId, SearchCandidate] = {}
    for result in results:
        out.setdefault(result.id, result)
    return out


def _sort_and_truncate(results: List[SearchCandidate], limit: int) -> List[SearchCandidate]:
    # sorted() is stable, so ties keep insertion order (vector list first)
    ordered = sorted(results, key=lambda r: r.score, reverse=True)
    return ordered[: max(0, limit)]


def apply_reciprocal_rank_fusion(
    vector_results: Sequence[SearchCandidate],
    text_results: Sequence[SearchCandidate],
    limit: int,
    k: Optional[int] = None,
    config: Optional[HybridConfig] = None,
) -> List[SearchCandidate]:
    """
    Fuse two ranked lists with Reciprocal Rank Fusion.

    Args:
        vector_results: Vector hits, best first
        text_results: Lexical hits, best first
        limit: Maximum number of fused results
        k: RRF constant; defaults to ``config.rrf_k``
        config: Hybrid tunables (confidence boost/penalty)

    Returns:
        Fused candidates sorted by final score. Dual hits are tagged HYBRID
        and multiplied by ``confidence_boost``; vector-only hits get
        ``confidence_penalty``; both only when confidence weighting is on.
        Text-only hits keep confidence 1.0.

    Raises:
        ValueError: If k is not positive
    """
    cfg = config or HybridConfig()
    k = cfg.rrf_k if k is None else k
    if k <= 0:
        raise ValueError(f"RRF constant k must be positive, got {k}")

    weighting = cfg.enable_confidence_weighting
    vector_ranks = _first_ranks(vector_results)
    text_ranks = _first_ranks(text_results)
    vector_by_id = _first_by_id(vector_results)
    text_by_id = _first_by_id(text_results)

    fused: List[SearchCandidate] = []
    for point_id, vector_hit in vector_by_id.items():
        raw = 1.0 / (k + vector_ranks[point_id])
        text_hit = text_by_id.get(point_id)
        if text_hit is None:
            confidence = cfg.confidence_penalty if weighting else 1.0
            fused.append(
                replace(
                    vector_hit,
                    score=raw * confidence,
                    provenance=Provenance.VECTOR,
                    confidence=confidence,
                    raw_rrf_score=raw,
                )
            )
            continue
        raw += 1.0 / (k + text_ranks[point_id])
        confidence = cfg.confidence_boost if weighting else 1.0
        fused.append(
            replace(
                vector_hit,
                score=raw * confidence,
                provenance=Provenance.HYBRID,
                original_text_score=text_hit.original_text_score,
                match_type=text_hit.match_type,
                confidence=confidence,
                raw_rrf_score=raw,
            )
        )

    for point_id, text_hit in text_by_id.items():
        if point_id in vector_by_id:
            continue
        raw = 1.0 / (k + text_ranks[point_id])
        fused.append(
            replace(
                text_hit,
                score=raw,
                provenance=Provenance.TEXT,
                confidence=1.0,
                raw_rrf_score=raw,
            )
        )

    return _sort_and_truncate(fused, limit)


def _finite_or_zero(value: Optional[float]) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return value


def apply_weighted_combination(
    vector_results: Sequence[SearchCandidate],
    text_results: Sequence[SearchCandidate],
    vector_weight: float,
    text_weight: float,
    limit: int,
) -> List[SearchCandidate]:
    """
    Linear blend of raw scores with weights normalized to sum to 1.

    Non-positive weight totals fall back to equal weights. Chunks found by
    both searches sum their two weighted scores and are tagged HYBRID.
    """
    total = vector_weight + text_weight
    if not math.isfinite(total) or total <= 0:
        logger.warning(
            "Non-positive fusion weights, using equal weights",
            vector_weight=vector_weight,
            text_weight=text_weight,
        )
        norm_vector, norm_text = 0.5, 0.5
    else:
        norm_vector, norm_text = vector_weight / total, text_weight / total

    vector_by_id = _first_by_id(vector_results)
    text_by_id = _first_by_id(text_results)

    fused: List[SearchCandidate] = []
    for point_id, vector_hit in vector_by_id.items():
        vector_part = _finite_or_zero(vector_hit.original_vector_score) * norm_vector
        text_hit = text_by_id.get(point_id)
        if text_hit is None:
            fused.append(
                replace(vector_hit, score=vector_part, provenance=Provenance.VECTOR, confidence=1.0)
            )
            continue
        text_part = _finite_or_zero(text_hit.original_text_score) * norm_text
        fused.append(
            replace(
                vector_hit,
                score=vector_part + text_part,
                provenance=Provenance.HYBRID,
                original_text_score=text_hit.original_text_score,
                match_type=text_hit.match_type,
                confidence=1.0,
            )
        )

    for point_id, text_hit in text_by_id.items():
        if point_id in vector_by_id:
            continue
        text_part = _finite_or_zero(text_hit.original_text_score) * norm_text
        fused.append(replace(text_hit, score=text_part, provenance=Provenance.TEXT, confidence=1.0))

    return _sort_and_truncate(fused, limit)


def apply_quality_gate(
    results: Sequence[SearchCandidate],
    has_text_matches: bool,
    config: Optional[HybridConfig] = None,
) -> List[SearchCandidate]:
    """
    Drop fused results below ``min_final_score``.

    Without lexical corroboration, vector-only results must also clear the
    stricter ``min_vector_only_final_score``. Disabled gate or empty input
    passes through unchanged.
    """
    cfg = config or HybridConfig()
    if not cfg.enable_quality_gate or not results:
        return list(results)

    kept: List[SearchCandidate] = []
    for result in results:
        if result.score < cfg.min_final_score:
            continue
        if (
            result.provenance is Provenance.VECTOR
            and not has_text_matches
            and result.score < cfg.min_vector_only_final_score
        ):
            continue
        kept.append(result)

    dropped = len(results) - len(kept)
    if dropped:
        retrieval_quality_gate_dropped_total.inc(dropped)
    logger.debug(
        "Quality gate applied",
        kept=len(kept),
        total=len(results),
        has_text_matches=has_text_matches,
    )
    return kept


def calculate_dynamic_threshold(
    base_threshold: float,
    has_text_matches: bool,
    config: Optional[HybridConfig] = None,
) -> float:
    """Raise the vector similarity floor, more so when nothing corroborates lexically."""
    cfg = config or HybridConfig()
    if not cfg.enable_dynamic_thresholds:
        return base_threshold
    if has_text_matches:
        return max(base_threshold, cfg.min_vector_with_text_threshold)
    return max(base_threshold, cfg.min_vector_only_threshold)
