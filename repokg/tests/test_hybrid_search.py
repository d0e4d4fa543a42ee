import asyncio
import pytest
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import List

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from repokg.embedding.embedding_service import EmbeddingService, OllamaEmbeddingProvider, OpenAIEmbeddingProvider
from repokg.graph.graph_store import StoreError, StoreErrorKind
from repokg.search.hybrid_search import HybridSearchService, fuse_results, graph_terms, position_bonus
from repokg.search.vector_index import (
    InMemoryVectorIndex,
    Neo4jVectorIndex,
    VectorHit,
    create_vector_index,
)
from repokg.types import GraphNode, StoreQueryResult

KEYWORDS = ("logger", "user", "test")


class KeywordEmbeddingProvider:
    """Deterministic provider: one dimension per keyword occurrence."""

    def __init__(self):
        self.batches: List[int] = []

    async def embed_text(self, text: str) -> List[float]:
        lowered = text.lower()
        return [float(lowered.count(keyword)) for keyword in KEYWORDS]

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        self.batches.append(len(texts))
        return [await self.embed_text(text) for text in texts]

    def get_dimension(self) -> int:
        return len(KEYWORDS)


class FailingEmbeddingProvider(KeywordEmbeddingProvider):
    async def embed_text(self, text: str) -> List[float]:
        raise ConnectionError("embedding service unreachable")


def node(node_id: str, name: str, node_type: str = "Function") -> GraphNode:
    return GraphNode(id=node_id, type=node_type, name=name)


class TestFusion:
    """Test score fusion of vector and graph results."""

    def test_position_bonus(self):
        assert position_bonus(0, 4) == 1.0
        assert position_bonus(2, 4) == 0.5
        assert position_bonus(0, 0) == 0.0

    def test_fuse_results(self):
        """Vector, graph and shared hits are scored by their source."""
        a, b, c = node("a", "alpha"), node("b", "beta"), node("c", "gamma")

        results = fuse_results([VectorHit(a, 0.9), VectorHit(b, 0.5)], [b, c])

        assert [(r.node.id, r.source, r.score) for r in results] == [
            ("a", "vector", 0.93),
            ("b", "hybrid", 0.7),
            ("c", "graph", 0.4),
        ]
        assert results[1].vector_score == 0.5
        assert results[1].graph_rank == 0

    def test_top_k(self):
        nodes = [node(f"n{i}", f"name{i}") for i in range(5)]

        assert len(fuse_results([], nodes, top_k=3)) == 3

    def test_graph_terms(self):
        assert graph_terms("Find the createLogger helper in core.log") == [
            "find", "the", "createlogger", "helper", "core.log"
        ]
        assert graph_terms("a b") == []
        assert len(graph_terms("one two three four five six seven")) == 5


class TestVectorIndex:
    """Test the vector index backends."""

    def test_in_memory_cosine(self):
        index = InMemoryVectorIndex()
        index.upsert([node("a", "a"), node("b", "b"), node("z", "z")], [[1, 0], [1, 1], [0, 0]])

        hits = index.search([1, 0], top_k=2)

        assert [hit.node.id for hit in hits] == ["a", "b"]
        assert hits[0].score == pytest.approx(1.0)
        assert hits[1].score == pytest.approx(0.7071, abs=1e-4)
        assert index.status() == {"backend": "memory", "available": True, "count": 3}

    def test_in_memory_upsert_replaces(self):
        index = InMemoryVectorIndex()
        index.upsert([node("a", "a")], [[1, 0]])
        index.upsert([node("a", "renamed")], [[0, 1]])

        hits = index.search([0, 1])

        assert len(hits) == 1
        assert hits[0].node.name == "renamed"

    def test_empty_index(self):
        assert InMemoryVectorIndex().search([1.0, 0.0]) == []

    def test_neo4j_search(self, store_factory):
        """Neo4j hits are rebuilt from the returned node maps."""
        store = store_factory(result=StoreQueryResult(records=[
            {"node": {"id": "function:a", "type": "Function", "name": "a"}, "score": 0.91},
            {"node": None, "score": 0.5},
        ]))
        index = Neo4jVectorIndex(store, dimension=3)

        hits = index.search([0.1, 0.2, 0.3], top_k=4)

        assert [(hit.node.id, hit.score) for hit in hits] == [("function:a", 0.91)]
        assert store.calls[0]["params"]["k"] == 4
        assert store.calls[0]["params"]["index"] == "graph_node_embeddings"

    def test_factory(self, fake_store):
        assert isinstance(create_vector_index("memory"), InMemoryVectorIndex)
        assert isinstance(create_vector_index("neo4j", store=fake_store), Neo4jVectorIndex)
        with pytest.raises(ValueError):
            create_vector_index("neo4j")
        with pytest.raises(ValueError):
            create_vector_index("bogus")


class TestEmbeddingService:
    """Test node embedding."""

    def test_node_text(self, sample_nodes):
        text = EmbeddingService.node_text(sample_nodes[2])

        assert text.splitlines() == [
            "Function createLogger",
            "def createLogger(name: str) -> logging.Logger",
            "packages/core/core_lib/log.py",
        ]

    def test_embed_nodes_in_batches(self, sample_nodes):
        provider = KeywordEmbeddingProvider()
        service = EmbeddingService(provider=provider)

        embeddings = asyncio.run(service.embed_nodes(sample_nodes[:3], batch_size=2))

        assert provider.batches == [2, 1]
        assert len(embeddings) == 3
        assert service.get_dimension() == 3

    def test_openai_provider_chunks_and_orders(self):
        """Requests are chunked and vectors are returned in input order."""
        requests_made = []

        def create(**kwargs):
            requests_made.append(kwargs)
            items = [SimpleNamespace(index=i, embedding=[float(len(text))])
                     for i, text in enumerate(kwargs["input"])]
            return SimpleNamespace(data=list(reversed(items)))

        client = SimpleNamespace(embeddings=SimpleNamespace(create=create))
        provider = OpenAIEmbeddingProvider(api_key="unused", model="text-embedding-3-small", dimension=8,
                                           max_batch_size=2, client=client)

        vectors = asyncio.run(provider.embed_texts(["a", "bb", "ccc"]))

        assert vectors == [[1.0], [2.0], [3.0]]
        assert [len(call["input"]) for call in requests_made] == [2, 1]
        assert requests_made[0]["dimensions"] == 8

    def test_ollama_provider_batch_endpoint(self):
        calls = []

        class FakeResponse:
            def __init__(self, payload):
                self.payload = payload

            def raise_for_status(self):
                pass

            def json(self):
                return self.payload

        class FakeSession:
            def post(self, url, json=None, timeout=None):
                calls.append((url, json))
                return FakeResponse({"embeddings": [[0.5, 0.5] for _ in json["input"]]})

        provider = OllamaEmbeddingProvider(host="http://ollama:11434/", dimension=2)
        provider.session = FakeSession()

        vectors = asyncio.run(provider.embed_texts(["x", "y"]))

        assert vectors == [[0.5, 0.5], [0.5, 0.5]]
        assert calls[0] == ("http://ollama:11434/api/embed", {"model": "nomic-embed-text", "input": ["x", "y"]})
        assert asyncio.run(provider.embed_texts([])) == []


class TestHybridSearchService:
    """Test concurrent hybrid search and its fallbacks."""

    def setup_method(self):
        self.logger_node = node("function:createLogger", "createLogger")
        self.user_node = node("class:UserService", "UserService", "Class")
        self.index = InMemoryVectorIndex()
        self.index.upsert([self.logger_node, self.user_node], [[1, 0, 0], [0, 1, 0]])

    def graph_store(self, store_factory, nodes=None, errors=None):
        return store_factory(result=StoreQueryResult(nodes=list(nodes or [])), errors=errors)

    def test_hybrid(self, store_factory):
        """A node found by both paths gets the hybrid bonus."""
        store = self.graph_store(store_factory, [self.logger_node])
        service = HybridSearchService(store, self.index, EmbeddingService(provider=KeywordEmbeddingProvider()))

        result = asyncio.run(service.search("logger"))

        assert result.strategy == "hybrid"
        assert result.vector_count == 2
        assert result.graph_count == 1
        top = result.fused_results[0]
        assert top.node.id == "function:createLogger"
        assert top.source == "hybrid"
        assert top.score == 1.2
        assert store.calls[0]["params"]["terms"] == ["logger"]

    def test_vector_failure_falls_back_to_graph(self, store_factory):
        """A failing embedding provider degrades to graph only."""
        store = self.graph_store(store_factory, [self.logger_node])
        service = HybridSearchService(store, self.index, EmbeddingService(provider=FailingEmbeddingProvider()))

        result = asyncio.run(service.search("logger"))

        assert result.strategy == "graph_only"
        assert [r.source for r in result.fused_results] == ["graph"]

    def test_without_vector_backend(self, store_factory):
        service = HybridSearchService(self.graph_store(store_factory, [self.user_node]))

        result = asyncio.run(service.search("user service"))

        assert service.vector_enabled is False
        assert result.strategy == "graph_only"
        assert result.fused_results[0].node.id == "class:UserService"

    def test_empty_graph_is_vector_only(self, store_factory):
        service = HybridSearchService(self.graph_store(store_factory), self.index,
                                      EmbeddingService(provider=KeywordEmbeddingProvider()))

        result = asyncio.run(service.search("user"))

        assert result.strategy == "vector_only"
        assert result.fused_results[0].node.id == "class:UserService"

    def test_graph_error_is_not_fatal(self, store_factory):
        store = self.graph_store(store_factory, errors=[StoreError(StoreErrorKind.CONNECTION, "down")])
        service = HybridSearchService(store, self.index, EmbeddingService(provider=KeywordEmbeddingProvider()))

        result = asyncio.run(service.search("user"))

        assert result.strategy == "vector_only"
        assert result.graph_count == 0

    def test_node_type_filter(self, store_factory):
        store = self.graph_store(store_factory)
        service = HybridSearchService(store, self.index, EmbeddingService(provider=KeywordEmbeddingProvider()))

        result = asyncio.run(service.search("user", node_type="Function"))

        assert all(r.node.type == "Function" for r in result.fused_results)
        assert store.calls[0]["params"]["node_type"] == "Function"

    def test_index_nodes(self, store_factory, sample_nodes):
        """Indexing embeds nodes and reports the index size."""
        index = InMemoryVectorIndex()
        service = HybridSearchService(self.graph_store(store_factory), index,
                                      EmbeddingService(provider=KeywordEmbeddingProvider()))

        count = asyncio.run(service.index_nodes(sample_nodes, batch_size=4))
        status = service.get_index_status()

        assert count == len(sample_nodes)
        assert status["count"] == len(sample_nodes)
        assert status["embedding_enabled"] is True

    def test_index_requires_vector_backend(self, fake_store, sample_nodes):
        service = HybridSearchService(fake_store)

        with pytest.raises(ValueError):
            asyncio.run(service.index_nodes(sample_nodes))
        assert service.get_index_status() == {"backend": None, "available": False}
