import asyncio
from types import SimpleNamespace

import pytest
from qdrant_client.models import Filter

from gruenerator_retrieval.query.stores import (
    QdrantTextSearch,
    QdrantVectorStore,
    QueryEmbedder,
    TextSearchClient,
    VectorStoreClient,
)
from tests.fakes import FakeEmbedder, FakeTextSearch, FakeVectorStore


class DummyAsyncClient:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def query_points(self, **kwargs):
        self.calls.append(("query_points", kwargs))
        if self.fail:
            raise ConnectionError("qdrant down")
        return SimpleNamespace(
            points=[
                SimpleNamespace(id="p1", score=0.91, payload={"document_id": 7, "chunk_index": "2", "extra": 1}),
                SimpleNamespace(id="p2", score=0.5, payload=None),
            ]
        )

    async def scroll(self, **kwargs):
        self.calls.append(("scroll", kwargs))
        if self.fail:
            raise ConnectionError("qdrant down")
        return [SimpleNamespace(id=3, payload={"chunk_text": "Text"})], None

    async def retrieve(self, **kwargs):
        self.calls.append(("retrieve", kwargs))
        return [SimpleNamespace(id=i, payload={}) for i in kwargs["ids"]]


def test_doubles_satisfy_protocols():
    assert isinstance(FakeVectorStore(), VectorStoreClient)
    assert isinstance(FakeTextSearch(), TextSearchClient)
    assert isinstance(FakeEmbedder(), QueryEmbedder)
    assert isinstance(QdrantVectorStore(DummyAsyncClient()), VectorStoreClient)
    assert isinstance(QdrantTextSearch(FakeVectorStore()), TextSearchClient)


def test_search_passes_query_points_arguments():
    client = DummyAsyncClient()
    store = QdrantVectorStore(client, vector_name="dense")

    points = asyncio.run(
        store.search(
            "grundsatz_documents",
            [0.1, 0.2],
            filter={"must": [{"key": "landesverband", "match": {"value": "HH"}}]},
            limit=30,
            score_threshold=0.3,
        )
    )

    name, kwargs = client.calls[0]
    assert name == "query_points"
    assert kwargs["collection_name"] == "grundsatz_documents"
    assert kwargs["limit"] == 30
    assert kwargs["score_threshold"] == 0.3
    assert kwargs["using"] == "dense"
    assert isinstance(kwargs["query_filter"], Filter)

    assert [p.id for p in points] == ["p1", "p2"]
    assert points[0].score == 0.91
    assert points[0].payload.document_id == "7"
    assert points[0].payload.chunk_index == 2
    assert points[1].payload.chunk_text == ""


def test_search_omits_optional_arguments():
    client = DummyAsyncClient()
    asyncio.run(QdrantVectorStore(client).search("docs", [0.1]))

    _, kwargs = client.calls[0]
    assert kwargs["query_filter"] is None
    assert "score_threshold" not in kwargs
    assert "using" not in kwargs


def test_scroll_and_retrieve_return_points_without_scores():
    client = DummyAsyncClient()
    store = QdrantVectorStore(client)

    scrolled = asyncio.run(store.scroll("docs", limit=5))
    retrieved = asyncio.run(store.retrieve("docs", [1, 2]))

    assert [(p.id, p.score) for p in scrolled] == [(3, None)]
    assert scrolled[0].payload.chunk_text == "Text"
    assert client.calls[0][1]["with_vectors"] is False
    assert [p.id for p in retrieved] == [1, 2]


@pytest.mark.parametrize("operation", ["search", "scroll"])
def test_store_errors_propagate(operation):
    store = QdrantVectorStore(DummyAsyncClient(fail=True))
    call = store.search("docs", [0.1]) if operation == "search" else store.scroll("docs")

    with pytest.raises(ConnectionError):
        asyncio.run(call)
