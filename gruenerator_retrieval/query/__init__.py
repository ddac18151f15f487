# Query package: intent, filters, fusion, quality, context and the search engine
from .hybrid_search import (
    CollectionSearchMetadata,
    HybridSearchEngine,
    InvalidQueryError,
    SearchRequest,
    SearchResponse,
)
from .types import ChunkPayload, DocumentScope, Provenance, QueryIntent, SearchCandidate

__all__ = [
    "HybridSearchEngine",
    "SearchRequest",
    "SearchResponse",
    "CollectionSearchMetadata",
    "InvalidQueryError",
    "SearchCandidate",
    "ChunkPayload",
    "Provenance",
    "QueryIntent",
    "DocumentScope",
]
