"""
Unit tests for hybrid fusion: RRF, weighted combination, strategy selection,
quality gate and dynamic thresholds.
"""

import math

import pytest

from gruenerator_retrieval.query.fusion import (
    apply_quality_gate,
    apply_reciprocal_rank_fusion,
    apply_weighted_combination,
    calculate_dynamic_threshold,
    determine_fusion_strategy,
    has_real_text_matches,
)
from gruenerator_retrieval.query.types import (
    ChunkPayload,
    Provenance,
    SearchCandidate,
    StoredPoint,
    TextHit,
    TextMatchType,
)
from gruenerator_retrieval.shared.config import HybridConfig


def _vec(pid, score, **payload) -> SearchCandidate:
    return SearchCandidate.from_vector_point(
        StoredPoint(id=pid, payload=ChunkPayload(**payload), score=score)
    )


def _txt(pid, score, match_type=TextMatchType.EXACT, **payload) -> SearchCandidate:
    return SearchCandidate.from_text_hit(
        TextHit(id=pid, score=score, match_type=match_type, payload=ChunkPayload(**payload))
    )


def _ids(results):
    return [r.id for r in results]


# ============================================================================
# Reciprocal Rank Fusion
# ============================================================================


def test_rrf_dual_hit_ranks_first_with_provenance_tags():
    vector = [_vec("A", 0.9), _vec("B", 0.8)]
    text = [_txt("B", 5.0), _txt("C", 3.0)]

    fused = apply_reciprocal_rank_fusion(vector, text, limit=10, k=60, config=HybridConfig())

    assert _ids(fused) == ["B", "C", "A"]
    by_id = {r.id: r for r in fused}
    assert by_id["B"].provenance is Provenance.HYBRID
    assert by_id["A"].provenance is Provenance.VECTOR
    assert by_id["C"].provenance is Provenance.TEXT


def test_rrf_scores_follow_rank_formula():
    cfg = HybridConfig()
    fused = apply_reciprocal_rank_fusion(
        [_vec("A", 0.9), _vec("B", 0.8)], [_txt("B", 5.0), _txt("C", 3.0)], limit=10, k=60, config=cfg
    )
    by_id = {r.id: r for r in fused}

    assert math.isclose(by_id["A"].score, cfg.confidence_penalty * (1 / 61))
    assert math.isclose(by_id["B"].score, cfg.confidence_boost * (1 / 62 + 1 / 61))
    assert math.isclose(by_id["C"].score, 1 / 62)
    assert math.isclose(by_id["B"].raw_rrf_score, 1 / 62 + 1 / 61)


def test_rrf_first_in_both_lists_gets_boosted_sum():
    cfg = HybridConfig()
    fused = apply_reciprocal_rank_fusion([_vec("X", 0.7)], [_txt("X", 1.0)], limit=5, config=cfg)

    assert len(fused) == 1
    assert math.isclose(fused[0].score, cfg.confidence_boost * (1 / 61 + 1 / 61))


def test_rrf_keeps_vector_payload_and_text_metadata_for_dual_hits():
    fused = apply_reciprocal_rank_fusion(
        [_vec("X", 0.7, chunk_text="vector side")],
        [_txt("X", 0.4, TextMatchType.VARIANT, chunk_text="text side")],
        limit=5,
    )

    hit = fused[0]
    assert hit.payload.chunk_text == "vector side"
    assert hit.original_vector_score == 0.7
    assert hit.original_text_score == 0.4
    assert hit.match_type is TextMatchType.VARIANT


def test_rrf_without_confidence_weighting_uses_plain_sums():
    cfg = HybridConfig(enable_confidence_weighting=False)
    fused = apply_reciprocal_rank_fusion([_vec("A", 0.9)], [_txt("A", 1.0), _txt("B", 1.0)], limit=5, config=cfg)
    by_id = {r.id: r for r in fused}

    assert math.isclose(by_id["A"].score, 2 / 61)
    assert by_id["A"].confidence == 1.0
    assert math.isclose(by_id["B"].score, 1 / 62)


def test_rrf_is_deterministic_on_ties():
    cfg = HybridConfig(enable_confidence_weighting=False)
    vector = [_vec("A", 0.9), _vec("B", 0.8)]
    text = [_txt("C", 2.0), _txt("D", 1.0)]

    first = apply_reciprocal_rank_fusion(vector, text, limit=10, config=cfg)
    second = apply_reciprocal_rank_fusion(vector, text, limit=10, config=cfg)

    # A/C and B/D tie; vector-list items come first
    assert _ids(first) == ["A", "C", "B", "D"]
    assert _ids(first) == _ids(second)


def test_rrf_truncates_to_limit():
    vector = [_vec(f"v{i}", 0.9 - i * 0.01) for i in range(10)]
    fused = apply_reciprocal_rank_fusion(vector, [], limit=3)
    assert _ids(fused) == ["v0", "v1", "v2"]


def test_rrf_duplicate_ids_keep_best_rank():
    fused = apply_reciprocal_rank_fusion(
        [_vec("A", 0.9), _vec("B", 0.8), _vec("A", 0.5)],
        [],
        limit=10,
        config=HybridConfig(enable_confidence_weighting=False),
    )
    assert _ids(fused) == ["A", "B"]
    assert math.isclose(fused[0].score, 1 / 61)


def test_rrf_rejects_non_positive_k():
    with pytest.raises(ValueError):
        apply_reciprocal_rank_fusion([_vec("A", 0.9)], [], limit=5, k=0)


def test_rrf_empty_inputs_return_empty():
    assert apply_reciprocal_rank_fusion([], [], limit=5) == []


# ============================================================================
# Weighted combination
# ============================================================================


def test_weighted_combination_sums_dual_hits():
    fused = apply_weighted_combination(
        [_vec("A", 0.8)], [_txt("A", 0.4), _txt("C", 0.6)], 0.85, 0.15, limit=10
    )
    by_id = {r.id: r for r in fused}

    assert _ids(fused) == ["A", "C"]
    assert math.isclose(by_id["A"].score, 0.8 * 0.85 + 0.4 * 0.15)
    assert by_id["A"].provenance is Provenance.HYBRID
    assert math.isclose(by_id["C"].score, 0.6 * 0.15)
    assert by_id["C"].provenance is Provenance.TEXT


def test_weighted_combination_normalizes_weights():
    fused = apply_weighted_combination([_vec("A", 1.0)], [_txt("B", 1.0)], 3.0, 1.0, limit=10)
    by_id = {r.id: r for r in fused}

    assert math.isclose(by_id["A"].score, 0.75)
    assert math.isclose(by_id["B"].score, 0.25)


def test_weighted_combination_zero_weights_fall_back_to_equal():
    fused = apply_weighted_combination([_vec("A", 0.8)], [_txt("B", 0.6)], 0.0, 0.0, limit=10)
    by_id = {r.id: r for r in fused}

    assert math.isclose(by_id["A"].score, 0.4)
    assert math.isclose(by_id["B"].score, 0.3)


def test_weighted_combination_truncates():
    vector = [_vec(f"v{i}", 1.0 - i * 0.1) for i in range(5)]
    assert len(apply_weighted_combination(vector, [], 0.5, 0.5, limit=2)) == 2


# ============================================================================
# Strategy selection
# ============================================================================


def test_strategy_without_text_results_falls_back_to_weighted():
    strategy = determine_fusion_strategy([], prefer_rrf=True, config=HybridConfig())

    assert strategy.use_rrf is False
    assert strategy.vector_weight == 0.85
    assert strategy.text_weight == 0.15
    assert strategy.auto_switched_from_rrf is True
    assert strategy.reason == "no_text_results"


def test_strategy_token_fallback_only_avoids_rrf():
    text = [_txt(i, 0.5, TextMatchType.TOKEN_FALLBACK) for i in range(5)]
    strategy = determine_fusion_strategy(text, prefer_rrf=True)

    assert strategy.use_rrf is False
    assert strategy.reason == "token_fallback_only"
    assert not has_real_text_matches(text)


def test_strategy_too_few_text_results_avoids_rrf():
    strategy = determine_fusion_strategy([_txt("a", 1.0), _txt("b", 0.9)], prefer_rrf=True)

    assert strategy.use_rrf is False
    assert strategy.reason == "too_few_text_results"


def test_strategy_uses_rrf_with_enough_genuine_matches():
    text = [_txt("a", 1.0), _txt("b", 0.9, TextMatchType.VARIANT), _txt("c", 0.8)]
    strategy = determine_fusion_strategy(text, prefer_rrf=True)

    assert strategy.use_rrf is True
    assert strategy.method == "rrf"
    assert strategy.auto_switched_from_rrf is False


def test_strategy_weighted_mode_picks_weights_by_text_evidence():
    genuine = determine_fusion_strategy([_txt("a", 1.0)], prefer_rrf=False)
    fallback = determine_fusion_strategy(
        [_txt("a", 1.0, TextMatchType.TOKEN_FALLBACK)], prefer_rrf=False
    )

    assert (genuine.vector_weight, genuine.text_weight) == (0.5, 0.5)
    assert (fallback.vector_weight, fallback.text_weight) == (0.85, 0.15)
    assert not genuine.auto_switched_from_rrf


# ============================================================================
# Quality gate
# ============================================================================


def _scored(pid, score, provenance):
    return SearchCandidate(id=pid, score=score, payload=ChunkPayload(), provenance=provenance)


def test_quality_gate_drops_below_min_final_score():
    results = [_scored("a", 0.02, Provenance.HYBRID), _scored("b", 0.005, Provenance.TEXT)]
    kept = apply_quality_gate(results, has_text_matches=True, config=HybridConfig())
    assert _ids(kept) == ["a"]


def test_quality_gate_is_stricter_for_uncorroborated_vector_results():
    results = [
        _scored("v", 0.009, Provenance.VECTOR),
        _scored("t", 0.009, Provenance.TEXT),
    ]

    assert _ids(apply_quality_gate(results, has_text_matches=False)) == ["t"]
    assert _ids(apply_quality_gate(results, has_text_matches=True)) == ["v", "t"]


def test_quality_gate_disabled_or_empty_passes_through():
    results = [_scored("a", 0.0001, Provenance.VECTOR)]
    cfg = HybridConfig(enable_quality_gate=False)

    assert _ids(apply_quality_gate(results, False, cfg)) == ["a"]
    assert apply_quality_gate([], False) == []


# ============================================================================
# Dynamic threshold
# ============================================================================


def test_dynamic_threshold_raises_floor_without_text_matches():
    cfg = HybridConfig()
    assert calculate_dynamic_threshold(0.3, True, cfg) == 0.35
    assert calculate_dynamic_threshold(0.3, False, cfg) == 0.55


def test_dynamic_threshold_never_below_base():
    cfg = HybridConfig()
    assert calculate_dynamic_threshold(0.7, False, cfg) == 0.7
    assert calculate_dynamic_threshold(0.7, True, cfg) == 0.7


def test_dynamic_threshold_ordering():
    cfg = HybridConfig(min_vector_only_threshold=0.6, min_vector_with_text_threshold=0.4)
    assert calculate_dynamic_threshold(0.3, True, cfg) <= calculate_dynamic_threshold(0.3, False, cfg)


def test_dynamic_threshold_disabled_returns_base():
    cfg = HybridConfig(enable_dynamic_thresholds=False)
    assert calculate_dynamic_threshold(0.3, False, cfg) == 0.3
