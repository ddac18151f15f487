import math

import pytest
from pydantic import ValidationError

from gruenerator_retrieval.query.collections import (
    SYSTEM_COLLECTIONS,
    apply_default_filter,
    build_subcategory_filter,
    get_default_collection_ids,
    get_system_collection,
    is_system_collection_id,
    resolve_store_collection,
    restrict_to_filterable,
)
from gruenerator_retrieval.query.types import ChunkPayload, ContentType, Provenance, SearchCandidate


# ============================================================================
# Registry
# ============================================================================


def test_registry_resolves_physical_collections():
    assert is_system_collection_id("grundsatz-system")
    assert not is_system_collection_id("grundsatz_documents")
    assert resolve_store_collection("grundsatz-system") == "grundsatz_documents"
    assert resolve_store_collection("hamburg-system") == "landesverbaende_documents"
    assert resolve_store_collection("my_custom_collection") == "my_custom_collection"
    assert get_system_collection("nope") is None


def test_regional_views_share_one_store_collection():
    regional = [c for c in SYSTEM_COLLECTIONS.values() if c.default_filter is not None]

    assert {c.store_collection for c in regional} == {"landesverbaende_documents"}
    assert {c.id for c in regional} == {
        "hamburg-system",
        "schleswig-holstein-system",
        "thueringen-system",
        "bayern-system",
    }


def test_defaults_are_all_registered_ids_in_order():
    ids = get_default_collection_ids()
    assert ids[0] == "grundsatz-system"
    assert len(ids) == len(SYSTEM_COLLECTIONS) == 12
    assert all(SYSTEM_COLLECTIONS[i].recall_limit == 60 for i in ids)


def test_collections_are_immutable():
    with pytest.raises(ValidationError):
        SYSTEM_COLLECTIONS["grundsatz-system"].recall_limit = 10


# ============================================================================
# Filters
# ============================================================================


def test_default_filter_single_value_and_any():
    assert apply_default_filter("hamburg-system") == {
        "must": [{"key": "landesverband", "match": {"value": "HH"}}]
    }
    assert apply_default_filter("thueringen-system") == {
        "must": [{"key": "landesverband", "match": {"any": ["TH", "TH-F"]}}]
    }


def test_default_filter_appends_to_existing():
    existing = {
        "must": [{"key": "title", "match": {"value": "X"}}],
        "should": [{"key": "lang", "match": {"value": "de"}}],
    }
    merged = apply_default_filter("bayern-system", existing)

    assert merged["must"] == [
        {"key": "title", "match": {"value": "X"}},
        {"key": "landesverband", "match": {"value": "BY"}},
    ]
    assert merged["should"] == existing["should"]
    assert apply_default_filter("grundsatz-system", existing) == existing
    assert apply_default_filter("grundsatz-system") == {}


def test_subcategory_filter():
    flt = build_subcategory_filter(
        {
            "content_type": "dossier",
            "primary_category": ["Klima", "Energie"],
            "region": ["Europa"],
            "unknown": "ignored",
            "date_from": "2023-01-01",
            "date_to": "2024-12-31",
        }
    )

    assert flt == {
        "must": [
            {"key": "primary_category", "match": {"any": ["Klima", "Energie"]}},
            {"key": "content_type", "match": {"value": "dossier"}},
            {"key": "region", "match": {"value": "Europa"}},
            {"key": "published_at", "range": {"gte": "2023-01-01", "lte": "2024-12-31"}},
        ]
    }
    assert build_subcategory_filter({}) == {}
    assert build_subcategory_filter(None) == {}


# ============================================================================
# Payload and candidate records
# ============================================================================


def test_payload_coerces_legacy_values():
    payload = ChunkPayload.from_raw(
        {
            "document_id": 42,
            "chunk_index": "3",
            "chunk_text": None,
            "quality_score": "0.7",
            "content_type": "Paragraph",
            "unrelated": True,
        }
    )

    assert payload.document_id == "42"
    assert payload.chunk_index == 3
    assert payload.chunk_text == ""
    assert payload.quality_score == 0.7
    assert payload.content_type is ContentType.PARAGRAPH


@pytest.mark.parametrize(
    "raw",
    [
        {"chunk_index": -1, "quality_score": 1.5},
        {"chunk_index": "drei", "quality_score": "hoch"},
        {"chunk_index": True, "quality_score": float("nan"), "content_type": "video"},
        {"document_id": ""},
    ],
)
def test_payload_degrades_malformed_values_to_none(raw):
    payload = ChunkPayload.from_raw(raw)

    assert payload.document_id is None
    assert payload.chunk_index is None
    assert payload.quality_score is None
    assert payload.content_type is None


def test_candidate_rejects_non_finite_scores():
    with pytest.raises(ValueError):
        SearchCandidate(id=1, score=math.nan, payload=ChunkPayload(), provenance=Provenance.VECTOR)
    with pytest.raises(ValueError):
        SearchCandidate(id=1, score=math.inf, payload=ChunkPayload(), provenance=Provenance.VECTOR)


def test_chunk_key_falls_back_to_collection_and_id():
    located = SearchCandidate(
        id=1,
        score=0.5,
        payload=ChunkPayload(document_id="d", chunk_index=2),
        provenance=Provenance.VECTOR,
        collection="c",
    )
    loose = SearchCandidate(
        id=1, score=0.5, payload=ChunkPayload(document_id="d"), provenance=Provenance.VECTOR, collection="c"
    )

    assert located.chunk_key == ("d", 2)
    assert loose.chunk_key == ("c", 1)


def test_subcategory_keys_are_restricted_to_filterable_fields():
    requested = {
        "primary_category": "Klimaschutz",
        "content_type": "dossier",
        "region": "Europa",
        "date_from": "2024-01-01",
    }

    assert restrict_to_filterable("grundsatz-system", requested) == {
        "primary_category": "Klimaschutz",
        "date_from": "2024-01-01",
    }
    assert restrict_to_filterable("hamburg-system", requested) == {
        "primary_category": "Klimaschutz",
        "content_type": "dossier",
        "date_from": "2024-01-01",
    }
    assert restrict_to_filterable("boell-stiftung-system", requested) == requested
    assert restrict_to_filterable("satzungen-system", requested) == {"date_from": "2024-01-01"}
    # unknown collections declare nothing, so nothing is dropped
    assert restrict_to_filterable("docs", requested) == requested
    assert restrict_to_filterable("grundsatz-system", None) == {}
