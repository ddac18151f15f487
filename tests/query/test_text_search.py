"""Query normalization and the scroll-based lexical search adapter."""

import asyncio

import pytest

from gruenerator_retrieval.query.stores import QdrantTextSearch, calculate_text_search_score
from gruenerator_retrieval.query.text import (
    fold_umlauts,
    generate_query_variants,
    normalize_query,
    tokenize_query,
)
from gruenerator_retrieval.query.types import TextMatchType
from tests.fakes import FakeVectorStore


# ============================================================================
# Normalization
# ============================================================================


def test_fold_umlauts():
    assert fold_umlauts("Grüne Straße in Österreich") == "gruene strasse in oesterreich"


def test_normalize_and_tokenize():
    assert normalize_query("  Klima-Schutz, jetzt!  ") == "klima-schutz jetzt"
    assert tokenize_query("Was ist   Bürgerenergie?") == ["was", "ist", "bürgerenergie"]
    assert tokenize_query("") == []


def test_query_variants_are_ordered_and_unique():
    assert generate_query_variants("Wärme-Wende") == [
        "wärme-wende",
        "waerme-wende",
        "wärme wende",
        "wärmewende",
    ]
    assert generate_query_variants("klima") == ["klima"]
    assert generate_query_variants("   ") == []


# ============================================================================
# Scoring
# ============================================================================


def test_text_score_formula():
    text = "Klimaschutz hier, Klimaschutz dort und noch mehr Klimaschutz."
    assert calculate_text_search_score("Klimaschutz", text, 0) == pytest.approx(0.3)
    assert calculate_text_search_score("Klimaschutz", text, 2) == pytest.approx(0.24)


def test_text_score_bounds():
    assert calculate_text_search_score("klima", None, 0) == 0.1
    assert calculate_text_search_score("", "klima", 0) == 0.1
    # short terms are damped by length
    assert calculate_text_search_score("klima", "klima klima", 0) == pytest.approx(0.1)
    assert calculate_text_search_score("klimaschutz", "klimaschutz " * 20, 0) == pytest.approx(0.8)


# ============================================================================
# QdrantTextSearch
# ============================================================================

POINTS = [
    {"id": 1, "chunk_text": "Die Wärmewende ist zentral für den Klimaschutz", "landesverband": "HH"},
    {"id": 2, "chunk_text": "Waermewende in der Stadt", "landesverband": "HH"},
    {"id": 3, "chunk_text": "Ausbau der Windkraft im Norden", "landesverband": "HH"},
    {"id": 4, "chunk_text": "Wärmewende in Bayern", "landesverband": "BY"},
]


def _search(query, limit=10, flt=None):
    store = FakeVectorStore({"docs": POINTS})
    hits = asyncio.run(QdrantTextSearch(store).search("docs", query, filter=flt, limit=limit))
    return store, hits


def test_variant_search_merges_and_tags_exact():
    flt = {"must": [{"key": "landesverband", "match": {"value": "HH"}}]}
    store, hits = _search("Wärmewende", flt=flt)

    assert [h.id for h in hits] == [1, 2]
    assert {h.match_type for h in hits} == {TextMatchType.EXACT}

    sent = [call["filter"] for call in store.scroll_calls]
    assert sent[0]["must"] == [
        {"key": "landesverband", "match": {"value": "HH"}},
        {"key": "chunk_text", "match": {"text": "wärmewende"}},
    ]
    assert sent[1]["must"][-1] == {"key": "chunk_text", "match": {"text": "waermewende"}}
    # ceil(10 / 2 variants) + 5
    assert [call["limit"] for call in store.scroll_calls] == [10, 10]


def test_variant_only_hits_are_tagged_variant():
    _, hits = _search("Wärme-Wende")
    assert [h.id for h in hits] == [1, 4]
    assert {h.match_type for h in hits} == {TextMatchType.VARIANT}

    _, hits = _search("Waermewende")
    assert [h.id for h in hits] == [2]
    assert hits[0].match_type is TextMatchType.EXACT


def test_hyphenated_single_token_has_no_fallback():
    store, hits = _search("Stadt-Werke")
    assert hits == []
    assert len(store.scroll_calls) == 3


def test_token_fallback_when_no_variant_matches():
    store, hits = _search("Ausbau Solarenergie Norden")

    assert [h.id for h in hits] == [3]
    assert hits[0].match_type is TextMatchType.TOKEN_FALLBACK
    # one variant scroll, then one per token
    assert len(store.scroll_calls) == 1 + 3


def test_single_token_query_has_no_fallback():
    store, hits = _search("Solarenergie")
    assert hits == []
    assert len(store.scroll_calls) == 1


def test_text_search_truncates_to_limit():
    _, hits = _search("wende", limit=1)
    assert len(hits) == 1


def test_text_search_propagates_store_errors():
    store = FakeVectorStore({"docs": POINTS}, fail_on={"scroll"})
    with pytest.raises(RuntimeError):
        asyncio.run(QdrantTextSearch(store).search("docs", "Wärmewende"))
