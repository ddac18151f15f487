"""
Store-facing interfaces and their Qdrant implementations.

The engine only depends on the three protocols below. ``QdrantVectorStore``
and ``QdrantTextSearch`` are the production implementations; tests plug in
in-memory doubles. Payloads are validated here, once, into ``ChunkPayload``.
"""

import asyncio
import math
import re
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from qdrant_client import AsyncQdrantClient

from gruenerator_retrieval.query.filters import (
    FilterDict,
    FilterSpec,
    MatchType,
    build_filter,
    merge_filters,
    to_qdrant_filter,
)
from gruenerator_retrieval.query.text import generate_query_variants, normalize_query, tokenize_query
from gruenerator_retrieval.query.types import ChunkPayload, PointId, StoredPoint, TextHit, TextMatchType
from gruenerator_retrieval.shared.observability import get_logger
from gruenerator_retrieval.shared.observability.metrics import (
    retrieval_store_errors_total,
    retrieval_store_operation_latency_ms,
)

logger = get_logger(__name__)

TEXT_FIELD = "chunk_text"
MIN_FALLBACK_TOKEN_LENGTH = 4


@runtime_checkable
class VectorStoreClient(Protocol):
    """Dense vector search plus filtered point listing."""

    async def search(
        self,
        collection: str,
        vector: Sequence[float],
        filter: Optional[FilterDict] = None,
        limit: int = 10,
        score_threshold: Optional[float] = None,
    ) -> List[StoredPoint]:
        """Ranked nearest neighbours, best first."""
        ...

    async def scroll(
        self,
        collection: str,
        filter: Optional[FilterDict] = None,
        limit: int = 100,
    ) -> List[StoredPoint]:
        """Points matching ``filter`` in no particular order, without vectors."""
        ...

    async def retrieve(self, collection: str, ids: Sequence[PointId]) -> List[StoredPoint]:
        ...


@runtime_checkable
class TextSearchClient(Protocol):
    async def search(
        self,
        collection: str,
        query: str,
        filter: Optional[FilterDict] = None,
        limit: int = 10,
    ) -> List[TextHit]:
        """Ranked lexical hits, best first, each tagged with its match type."""
        ...


@runtime_checkable
class QueryEmbedder(Protocol):
    async def embed_query(self, text: str) -> List[float]:
        ...


class QdrantVectorStore:
    """VectorStoreClient backed by an ``AsyncQdrantClient``."""

    def __init__(self, client: AsyncQdrantClient, *, vector_name: Optional[str] = None):
        self.client = client
        self.vector_name = vector_name

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "QdrantVectorStore":
        client = AsyncQdrantClient(
            url=settings.qdrant_url,
            api_key=settings.qdrant_api_key,
            timeout=settings.qdrant_timeout,
        )
        return cls(client, **kwargs)

    def _observe(self, operation: str, start_time: float) -> None:
        latency_ms = (time.time() - start_time) * 1000
        retrieval_store_operation_latency_ms.labels(operation=operation).observe(latency_ms)

    def _failed(self, operation: str, collection: str, exc: Exception) -> None:
        retrieval_store_errors_total.labels(operation=operation).inc()
        logger.error(
            "Qdrant operation failed",
            operation=operation,
            collection=collection,
            error=str(exc),
        )

    async def search(
        self,
        collection: str,
        vector: Sequence[float],
        filter: Optional[FilterDict] = None,
        limit: int = 10,
        score_threshold: Optional[float] = None,
    ) -> List[StoredPoint]:
        query_kwargs: Dict[str, Any] = {
            "collection_name": collection,
            "query": list(vector),
            "query_filter": to_qdrant_filter(filter),
            "limit": limit,
            "with_payload": True,
        }
        if score_threshold is not None:
            query_kwargs["score_threshold"] = score_threshold
        if self.vector_name:
            query_kwargs["using"] = self.vector_name

        start_time = time.time()
        try:
            response = await self.client.query_points(**query_kwargs)
        except Exception as exc:
            self._failed("search", collection, exc)
            raise
        self._observe("search", start_time)

        return [
            StoredPoint(id=hit.id, payload=ChunkPayload.from_raw(hit.payload), score=hit.score)
            for hit in response.points
        ]

    async def scroll(
        self,
        collection: str,
        filter: Optional[FilterDict] = None,
        limit: int = 100,
    ) -> List[StoredPoint]:
        start_time = time.time()
        try:
            points, _next_offset = await self.client.scroll(
                collection_name=collection,
                scroll_filter=to_qdrant_filter(filter),
                limit=limit,
                with_payload=True,
                with_vectors=False,
            )
        except Exception as exc:
            self._failed("scroll", collection, exc)
            raise
        self._observe("scroll", start_time)
        return [StoredPoint(id=p.id, payload=ChunkPayload.from_raw(p.payload)) for p in points]

    async def retrieve(self, collection: str, ids: Sequence[PointId]) -> List[StoredPoint]:
        start_time = time.time()
        try:
            records = await self.client.retrieve(
                collection_name=collection,
                ids=list(ids),
                with_payload=True,
                with_vectors=False,
            )
        except Exception as exc:
            self._failed("retrieve", collection, exc)
            raise
        self._observe("retrieve", start_time)
        return [StoredPoint(id=r.id, payload=ChunkPayload.from_raw(r.payload)) for r in records]


def calculate_text_search_score(term: str, text: Optional[str], position: int) -> float:
    """
    Heuristic lexical score from term frequency, result position and term length.

    ``min(occurrences * 0.1, 0.8) * max(0.1, 1 - position * 0.1) * min(1, len(term) / 10)``
    clamped to [0.1, 1.0]. Missing text or term scores 0.1.
    """
    if not text or not term:
        return 0.1
    occurrences = len(re.findall(re.escape(term.lower()), text.lower()))
    score = min(occurrences * 0.1, 0.8)
    score *= max(0.1, 1 - position * 0.1)
    score *= min(1.0, len(term) / 10)
    return min(1.0, max(0.1, score))


class QdrantTextSearch:
    """
    TextSearchClient over a vector store's filtered scroll.

    Each query variant is scrolled with a full-text ``match.text`` condition
    on ``chunk_text``. When no variant hits, tokens of four or more
    characters are tried one by one and tagged ``token_fallback``.
    Store errors propagate.
    """

    def __init__(self, store: VectorStoreClient, *, text_field: str = TEXT_FIELD):
        self.store = store
        self.text_field = text_field

    def _text_filter(self, base: Optional[FilterDict], text: str) -> FilterDict:
        return merge_filters(
            base,
            build_filter([FilterSpec(field=self.text_field, value=text, match_type=MatchType.TEXT)]),
        )

    async def _scroll_each(
        self, collection: str, terms: Sequence[str], base: Optional[FilterDict], per_term_limit: int
    ) -> List[List[StoredPoint]]:
        return list(
            await asyncio.gather(
                *(
                    self.store.scroll(collection, filter=self._text_filter(base, term), limit=per_term_limit)
                    for term in terms
                )
            )
        )

    @staticmethod
    def _unique(batches: Sequence[Sequence[StoredPoint]]) -> List[StoredPoint]:
        seen: Dict[PointId, StoredPoint] = {}
        for batch in batches:
            for point in batch:
                seen.setdefault(point.id, point)
        return list(seen.values())

    async def search(
        self,
        collection: str,
        query: str,
        filter: Optional[FilterDict] = None,
        limit: int = 10,
    ) -> List[TextHit]:
        variants = generate_query_variants(query)
        if not variants or limit <= 0:
            return []

        per_variant = math.ceil(limit / len(variants)) + 5
        batches = await self._scroll_each(collection, variants, filter, per_variant)
        points = self._unique(batches)

        exact_term = query.strip().lower()
        exact_hit = any(
            batch for variant, batch in zip(variants, batches) if variant == exact_term
        )
        match_type = TextMatchType.EXACT if exact_hit else TextMatchType.VARIANT

        if not points:
            tokens = [
                tok
                for tok in tokenize_query(normalize_query(query))
                if len(tok) >= MIN_FALLBACK_TOKEN_LENGTH
            ]
            if len(tokens) > 1:
                logger.debug("Text search token fallback", tokens=tokens)
                per_token = math.ceil(limit / len(tokens)) + 3
                points = self._unique(await self._scroll_each(collection, tokens, filter, per_token))
                match_type = TextMatchType.TOKEN_FALLBACK

        hits = [
            TextHit(
                id=point.id,
                score=calculate_text_search_score(query, point.payload.chunk_text, position),
                match_type=match_type,
                payload=point.payload,
            )
            for position, point in enumerate(points)
        ]
        hits.sort(key=lambda h: h.score, reverse=True)
        logger.debug(
            "Text search finished",
            collection=collection,
            hits=len(hits),
            variants=len(variants),
            match_type=match_type.value if hits else None,
        )
        return hits[:limit]
