"""
Hybrid search engine.

Turns a natural-language query into a ranked, provenance-tagged set of
chunks:

    detect intent + document scope
      -> per-collection store filter
      -> vector search || text search          (concurrent, first failure cancels the other)
      -> dynamic vector threshold
      -> RRF or weighted fusion
      -> quality filter + boost -> quality gate
      -> merge collections -> optional context expansion

The engine holds no per-request state; configuration overrides produce a
fresh config object per call.
"""

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Sequence, Tuple

from gruenerator_retrieval.query.collections import (
    apply_default_filter,
    build_subcategory_filter,
    get_default_collection_ids,
    get_system_collection,
    resolve_store_collection,
    restrict_to_filterable,
)
from gruenerator_retrieval.query.context import expand_results_with_context
from gruenerator_retrieval.query.filters import (
    FilterDict,
    FilterSpec,
    build_filter,
    merge_filters,
)
from gruenerator_retrieval.query.fusion import (
    apply_quality_gate,
    apply_reciprocal_rank_fusion,
    apply_weighted_combination,
    calculate_dynamic_threshold,
    determine_fusion_strategy,
    has_real_text_matches,
)
from gruenerator_retrieval.query.intent import (
    detect_document_scope,
    detect_intent,
    generate_search_filters,
)
from gruenerator_retrieval.query.quality import apply_quality_boost, filter_by_quality
from gruenerator_retrieval.query.stores import (
    QdrantTextSearch,
    QueryEmbedder,
    TextSearchClient,
    VectorStoreClient,
)
from gruenerator_retrieval.query.types import (
    DocumentScope,
    IntentType,
    Language,
    QueryIntent,
    SearchCandidate,
)
from gruenerator_retrieval.shared.config import RetrievalConfig, get_config
from gruenerator_retrieval.shared.observability import correlation_scope, get_logger
from gruenerator_retrieval.shared.observability.metrics import (
    retrieval_fusion_fallback_total,
    retrieval_search_duration_seconds,
    retrieval_searches_total,
)

logger = get_logger(__name__)


class InvalidQueryError(ValueError):
    """Raised for a blank query or an unusable limit."""


@dataclass(frozen=True)
class SearchRequest:
    query: str
    collections: Optional[Tuple[str, ...]] = None
    limit: Optional[int] = None
    threshold: Optional[float] = None
    config_overrides: Optional[Mapping[str, Any]] = None
    recall_limit: Optional[int] = None
    prefer_rrf: Optional[bool] = None
    expand_context: Optional[bool] = None
    subcategory_filters: Optional[Mapping[str, Any]] = None
    correlation_id: Optional[str] = None  # fresh UUID per search when unset


@dataclass(frozen=True)
class CollectionSearchMetadata:
    collection: str
    store_collection: str
    vector_results: int
    text_results: int
    fusion_method: str
    vector_weight: float
    text_weight: float
    dynamic_threshold: float
    quality_gate_applied: bool
    auto_switched_from_rrf: bool
    has_real_text_matches: bool
    text_match_types: Tuple[str, ...] = ()
    returned: int = 0


@dataclass
class SearchResponse:
    results: List[SearchCandidate]
    intent: QueryIntent
    scope: DocumentScope
    collections: Tuple[str, ...]
    metadata: Dict[str, CollectionSearchMetadata] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    took_ms: float = 0.0


def _js_round(value: float) -> int:
    return int(math.floor(value + 0.5))


async def _gather_or_cancel(*aws: Awaitable[Any]) -> List[Any]:
    """
    Like ``asyncio.gather`` but the first failure cancels the siblings.

    The siblings are awaited before the error is re-raised, so no store call
    outlives the search that started it.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class HybridSearchEngine:
    """Hybrid vector + lexical retrieval over one or more collections."""

    def __init__(
        self,
        vector_store: VectorStoreClient,
        embedder: QueryEmbedder,
        text_search: Optional[TextSearchClient] = None,
        config: Optional[RetrievalConfig] = None,
        default_collections: Optional[Sequence[str]] = None,
    ):
        self.vector_store = vector_store
        self.embedder = embedder
        self.text_search = text_search or QdrantTextSearch(vector_store)
        self.config = config or get_config()
        self.default_collections = tuple(default_collections or get_default_collection_ids())

    async def search(self, query: str, **options) -> SearchResponse:
        """Convenience wrapper: ``search(query, limit=5, collections=[...])``."""
        collections = options.pop("collections", None)
        if collections is not None:
            collections = tuple(collections)
        return await self.execute(SearchRequest(query=query, collections=collections, **options))

    async def execute(self, request: SearchRequest) -> SearchResponse:
        if not isinstance(request.query, str) or not request.query.strip():
            raise InvalidQueryError("query must be a non-empty string")
        with correlation_scope(request.correlation_id) as correlation_id:
            return await self._execute(request, request.query.strip(), correlation_id)

    async def _execute(
        self, request: SearchRequest, query: str, correlation_id: str
    ) -> SearchResponse:
        start_time = time.time()

        cfg = self.config.with_overrides(request.config_overrides)
        limit = self._resolve_limit(request.limit, cfg)
        threshold = (
            cfg.search.default_threshold if request.threshold is None else request.threshold
        )
        prefer_rrf = cfg.search.prefer_rrf if request.prefer_rrf is None else request.prefer_rrf

        intent, scope = self._analyze(query, cfg)
        collections = self._effective_collections(request.collections, scope)

        vector = await self.embedder.embed_query(query)

        searches = await _gather_or_cancel(
            *(
                self._search_collection(
                    collection_id,
                    query,
                    vector,
                    intent=intent,
                    scope=scope,
                    request=request,
                    cfg=cfg,
                    limit=limit,
                    threshold=threshold,
                    prefer_rrf=prefer_rrf,
                )
                for collection_id in collections
            )
        )

        metadata = {meta.collection: meta for _, meta in searches}
        results = self._merge_collections([r for results, _ in searches for r in results], limit)

        expand = cfg.context.enabled if request.expand_context is None else request.expand_context
        if expand and results:
            results = await expand_results_with_context(
                self.vector_store,
                None,
                results,
                window=cfg.context.window,
                max_chunks=cfg.context.max_chunks,
                top_n=cfg.context.top_n,
            )

        duration = time.time() - start_time
        retrieval_search_duration_seconds.observe(duration)
        logger.info(
            "Hybrid search completed",
            collections=list(collections),
            intent=intent.type.value,
            language=intent.language.value,
            scope_phrase=scope.detected_phrase,
            results=len(results),
            took_ms=round(duration * 1000, 2),
        )
        return SearchResponse(
            results=results,
            intent=intent,
            scope=scope,
            collections=collections,
            metadata=metadata,
            correlation_id=correlation_id,
            took_ms=duration * 1000,
        )

    # ------------------------------------------------------------------
    # Request analysis
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_limit(limit: Optional[int], cfg: RetrievalConfig) -> int:
        if limit is None:
            return cfg.search.default_limit
        if limit < 1:
            raise InvalidQueryError(f"limit must be positive, got {limit}")
        return min(limit, cfg.search.max_limit)

    def _analyze(self, query: str, cfg: RetrievalConfig) -> Tuple[QueryIntent, DocumentScope]:
        if not cfg.intent.enabled:
            return (
                QueryIntent(type=IntentType.GENERAL, language=Language.UNKNOWN, confidence=0.0),
                DocumentScope(collections=self.default_collections),
            )
        intent = detect_intent(query, german_patterns=cfg.intent.german_patterns)
        scope = detect_document_scope(query, self.default_collections)
        return intent, scope

    @staticmethod
    def _effective_collections(
        requested: Optional[Sequence[str]], scope: DocumentScope
    ) -> Tuple[str, ...]:
        """Requested collections narrowed by the detected scope; caller wins on conflict."""
        if not requested:
            return tuple(scope.collections)
        requested = tuple(dict.fromkeys(requested))
        if not scope.narrowed:
            return requested
        narrowed = tuple(c for c in requested if c in scope.collections)
        if narrowed:
            return narrowed
        logger.info(
            "Detected scope does not overlap requested collections, keeping requested",
            requested=list(requested),
            scope=list(scope.collections),
            phrase=scope.detected_phrase,
        )
        return requested

    def _collection_filter(
        self,
        collection_id: str,
        scope: DocumentScope,
        intent: QueryIntent,
        request: SearchRequest,
        cfg: RetrievalConfig,
    ) -> FilterDict:
        subcategories = dict(scope.subcategory_filters)
        subcategories.update(request.subcategory_filters or {})
        subcategories = restrict_to_filterable(collection_id, subcategories)

        title_filter: FilterDict = {}
        if scope.document_title_filter and collection_id in scope.collections:
            title_filter = build_filter(
                [FilterSpec(field="title", value=scope.document_title_filter)]
            )

        hints: FilterDict = {}
        if cfg.intent.apply_store_hints:
            hints = generate_search_filters(intent)

        return apply_default_filter(
            collection_id,
            merge_filters(build_subcategory_filter(subcategories), title_filter, hints),
        )

    # ------------------------------------------------------------------
    # Per-collection pipeline
    # ------------------------------------------------------------------

    async def _search_collection(
        self,
        collection_id: str,
        query: str,
        vector: Sequence[float],
        *,
        intent: QueryIntent,
        scope: DocumentScope,
        request: SearchRequest,
        cfg: RetrievalConfig,
        limit: int,
        threshold: float,
        prefer_rrf: bool,
    ) -> Tuple[List[SearchCandidate], CollectionSearchMetadata]:
        store_collection = resolve_store_collection(collection_id)
        flt = self._collection_filter(collection_id, scope, intent, request, cfg)
        # Advisory should-clauses must not narrow lexical recall
        text_filter = {bucket: c for bucket, c in flt.items() if bucket != "should"}

        recall_limit = request.recall_limit
        if recall_limit is None:
            system_collection = get_system_collection(collection_id)
            recall_limit = system_collection.recall_limit if system_collection else None
        base_recall = recall_limit or limit * cfg.search.recall_multiplier
        text_recall = max(limit, base_recall)
        vector_recall = max(limit, _js_round(base_recall * cfg.search.vector_recall_factor))

        vector_points, text_hits = await _gather_or_cancel(
            self.vector_store.search(
                store_collection,
                vector,
                filter=flt,
                limit=vector_recall,
                score_threshold=threshold,
            ),
            self.text_search.search(store_collection, query, filter=text_filter, limit=text_recall),
        )

        text_results = [SearchCandidate.from_text_hit(h, collection=collection_id) for h in text_hits]
        has_text_matches = bool(text_results)
        dynamic_threshold = calculate_dynamic_threshold(threshold, has_text_matches, cfg.hybrid)
        vector_results = [
            c
            for c in (
                SearchCandidate.from_vector_point(p, collection=collection_id)
                for p in vector_points
            )
            if c.original_vector_score >= dynamic_threshold
        ]

        strategy = determine_fusion_strategy(text_results, prefer_rrf, cfg.hybrid)
        if strategy.auto_switched_from_rrf:
            retrieval_fusion_fallback_total.labels(reason=strategy.reason).inc()

        if strategy.use_rrf:
            fused = apply_reciprocal_rank_fusion(
                vector_results, text_results, limit, cfg.hybrid.rrf_k, cfg.hybrid
            )
        else:
            fused = apply_weighted_combination(
                vector_results,
                text_results,
                strategy.vector_weight,
                strategy.text_weight,
                limit,
            )

        retrieval_cfg = cfg.quality.retrieval
        if retrieval_cfg.enable_quality_filter:
            fused = filter_by_quality(fused, retrieval_cfg.min_retrieval_quality)
        fused = apply_quality_boost(fused, retrieval_cfg.quality_boost_factor)
        fused = apply_quality_gate(fused, has_text_matches, cfg.hybrid)[:limit]

        retrieval_searches_total.labels(fusion_method=strategy.method).inc()

        match_types = tuple(
            dict.fromkeys(r.match_type.value for r in text_results if r.match_type is not None)
        )
        metadata = CollectionSearchMetadata(
            collection=collection_id,
            store_collection=store_collection,
            vector_results=len(vector_results),
            text_results=len(text_results),
            fusion_method=strategy.method,
            vector_weight=strategy.vector_weight,
            text_weight=strategy.text_weight,
            dynamic_threshold=dynamic_threshold,
            quality_gate_applied=cfg.hybrid.enable_quality_gate,
            auto_switched_from_rrf=strategy.auto_switched_from_rrf,
            has_real_text_matches=has_real_text_matches(text_results),
            text_match_types=match_types,
            returned=len(fused),
        )
        logger.debug(
            "Collection search finished",
            collection=collection_id,
            vector_results=metadata.vector_results,
            text_results=metadata.text_results,
            fusion_method=metadata.fusion_method,
            dynamic_threshold=dynamic_threshold,
            returned=metadata.returned,
        )
        return fused, metadata

    @staticmethod
    def _merge_collections(results: Sequence[SearchCandidate], limit: int) -> List[SearchCandidate]:
        unique: Dict[Tuple[Optional[str], Any], SearchCandidate] = {}
        for result in results:
            unique.setdefault((result.collection, result.id), result)
        ordered = sorted(unique.values(), key=lambda r: r.score, reverse=True)
        return ordered[:limit]
