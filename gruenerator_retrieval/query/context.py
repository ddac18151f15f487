"""
Neighbouring-chunk context expansion.

A retrieved chunk often lacks the sentence before or after it that an
answer needs. These helpers fetch the chunks around a hit from the same
document (``chunk_index`` within ``window``) and splice them into the
result list. Expansion is best effort: any store failure degrades to the
original candidate alone.
"""

import asyncio
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from gruenerator_retrieval.query.collections import resolve_store_collection
from gruenerator_retrieval.query.filters import Bucket, FilterSpec, MatchType, build_filter
from gruenerator_retrieval.query.stores import VectorStoreClient
from gruenerator_retrieval.query.types import ChunkContext, SearchCandidate, StoredPoint
from gruenerator_retrieval.shared.observability import get_logger
from gruenerator_retrieval.shared.observability.metrics import retrieval_context_expansion_total

logger = get_logger(__name__)

ChunkKey = Tuple[object, object]


def _expandable(candidate: SearchCandidate) -> bool:
    return candidate.document_id is not None and candidate.chunk_index is not None


def _window_spec(center: SearchCandidate, window: int, bucket: Bucket) -> FilterSpec:
    index = center.chunk_index
    return FilterSpec(
        field="chunk_index",
        value={"gte": max(0, index - window), "lte": index + window},
        match_type=MatchType.RANGE,
        bucket=bucket,
    )


def _document_filter(document_id: str, centers: Sequence[SearchCandidate], window: int):
    specs = [FilterSpec(field="document_id", value=document_id)]
    if len(centers) == 1:
        specs.append(_window_spec(centers[0], window, Bucket.MUST))
    else:
        # One lookup per document: the union of every center's window
        specs.extend(_window_spec(c, window, Bucket.SHOULD) for c in centers)
    return build_filter(specs)


def _context_candidate(point: StoredPoint, center: SearchCandidate) -> SearchCandidate:
    return SearchCandidate(
        id=point.id,
        score=0.0,
        payload=point.payload,
        provenance=center.provenance,
        collection=center.collection,
        is_context=True,
    )


def _assemble(
    center: SearchCandidate,
    points: Iterable[StoredPoint],
    window: int,
    ranked: Dict[ChunkKey, SearchCandidate],
) -> ChunkContext:
    """Neighbours of ``center`` in chunk_index order; ranked hits keep their own record."""
    low, high = center.chunk_index - window, center.chunk_index + window
    by_index: Dict[int, SearchCandidate] = {center.chunk_index: center}
    for point in points:
        index = point.payload.chunk_index
        if index is None or not low <= index <= high or index in by_index:
            continue
        if point.payload.document_id != center.document_id:
            continue
        key = (point.payload.document_id, index)
        by_index[index] = ranked.get(key) or _context_candidate(point, center)
    return ChunkContext(center=center, context=[by_index[i] for i in sorted(by_index)])


async def _fetch_document_contexts(
    store: VectorStoreClient,
    collection: str,
    document_id: str,
    centers: Sequence[SearchCandidate],
    window: int,
    max_chunks: int,
    ranked: Dict[ChunkKey, SearchCandidate],
) -> List[ChunkContext]:
    try:
        points = await store.scroll(
            collection,
            filter=_document_filter(document_id, centers, window),
            limit=max_chunks * len(centers),
        )
    except Exception as exc:
        retrieval_context_expansion_total.labels(status="error").inc()
        logger.warning(
            "Context expansion failed, keeping original chunks",
            collection=collection,
            document_id=document_id,
            error=str(exc),
        )
        return [ChunkContext(center=c, context=[c]) for c in centers]

    retrieval_context_expansion_total.labels(status="success").inc()
    return [_assemble(c, points, window, ranked) for c in centers]


async def get_chunk_with_context(
    store: VectorStoreClient,
    collection: str,
    point: SearchCandidate,
    window: int = 1,
    max_chunks: int = 10,
) -> ChunkContext:
    """
    Fetch ``point`` and the chunks within ``window`` positions of it.

    The context is sorted by ``chunk_index`` and always contains ``point``
    itself. A point without ``document_id`` or ``chunk_index`` cannot be
    expanded and yields a one-element context.
    """
    if not _expandable(point):
        retrieval_context_expansion_total.labels(status="skipped").inc()
        logger.warning(
            "Cannot expand chunk without document position",
            collection=collection,
            point_id=str(point.id),
        )
        return ChunkContext(center=point, context=[point])

    contexts = await _fetch_document_contexts(
        store, collection, point.document_id, [point], window, max_chunks, {point.chunk_key: point}
    )
    return contexts[0]


def dedupe_by_chunk_key(candidates: Iterable[SearchCandidate]) -> List[SearchCandidate]:
    """First occurrence of each (document_id, chunk_index) wins; order is kept."""
    first: Dict[ChunkKey, SearchCandidate] = {}
    for candidate in candidates:
        first.setdefault(candidate.chunk_key, candidate)
    return list(first.values())


async def expand_results_with_context(
    store: VectorStoreClient,
    collection: Optional[str],
    results: Sequence[SearchCandidate],
    window: int = 1,
    max_chunks: int = 10,
    top_n: Optional[int] = None,
) -> List[SearchCandidate]:
    """
    Replace each of the first ``top_n`` results with its neighbourhood.

    One store lookup is issued per distinct document, concurrently. With
    ``collection=None`` each result is looked up in the store collection
    its own ``collection`` id resolves to, so merged multi-collection
    results can be expanded in one pass. The flattened output never repeats
    a chunk: when neighbourhoods overlap, the first occurrence is kept.
    Results past ``top_n`` follow unexpanded.
    """
    if not results:
        return []
    cut = len(results) if top_n is None else max(0, top_n)
    head, tail = list(results[:cut]), list(results[cut:])

    ranked = {r.chunk_key: r for r in reversed(results)}
    centers_by_doc: Dict[Tuple[str, str], List[SearchCandidate]] = {}
    for result in head:
        store_collection = collection
        if store_collection is None and result.collection is not None:
            store_collection = resolve_store_collection(result.collection)
        if store_collection is None or not _expandable(result):
            continue
        centers_by_doc.setdefault((store_collection, result.document_id), []).append(result)

    fetched = await asyncio.gather(
        *(
            _fetch_document_contexts(store, coll, doc_id, centers, window, max_chunks, ranked)
            for (coll, doc_id), centers in centers_by_doc.items()
        )
    )
    context_by_center: Dict[ChunkKey, ChunkContext] = {
        ctx.center.chunk_key: ctx for batch in fetched for ctx in batch
    }

    expanded: List[SearchCandidate] = []
    for result in head:
        ctx = context_by_center.get(result.chunk_key)
        expanded.extend(ctx.context if ctx else [result])
    expanded.extend(tail)
    return dedupe_by_chunk_key(expanded)


def merge_context_text(context: Union[ChunkContext, Sequence[SearchCandidate]]) -> str:
    """Join chunk texts in chunk_index order, separated by a blank line."""
    chunks = context.context if isinstance(context, ChunkContext) else list(context)
    ordered = sorted(
        chunks,
        key=lambda c: c.chunk_index if c.chunk_index is not None else -1,
    )
    return "\n\n".join(c.payload.chunk_text for c in ordered if c.payload.chunk_text)
