"""
Hybrid vector and graph retrieval.

Both paths run concurrently for the same query. A vector path that is missing,
failing or empty degrades the run to ``graph_only``; an empty graph path gives
``vector_only``. Fused scores:

* vector hit: ``0.7 * similarity + 0.3 * position_bonus``
* graph-only hit: ``0.3 + 0.2 * position_bonus``
* found by both: ``+ HYBRID_BONUS`` and marked ``hybrid``

where ``position_bonus = 1 - rank / len(path_results)``.
"""

import asyncio
import re
import time
from typing import List, Dict, Any, Optional

from ..graph.graph_store import NODE_LABEL, StoreError
from ..query.ranking import rank_nodes
from ..types import GraphNode, HybridSearchResult, SearchResult
from ..utils.logger import app_logger
from .vector_index import VectorHit, VectorIndex

VECTOR_WEIGHT = 0.7
VECTOR_POSITION_WEIGHT = 0.3
GRAPH_BASE_SCORE = 0.3
GRAPH_POSITION_WEIGHT = 0.2
HYBRID_BONUS = 0.2
MAX_GRAPH_TERMS = 5


def graph_terms(query: str) -> List[str]:
    """Lowercase words longer than two characters, first five."""
    words = re.findall(r"[\w@./-]+", (query or "").lower())
    terms = []
    for word in words:
        word = word.strip("./-")
        if len(word) > 2 and word not in terms:
            terms.append(word)
    return terms[:MAX_GRAPH_TERMS]


def position_bonus(rank: int, total: int) -> float:
    return 1.0 - rank / total if total else 0.0


def fuse_results(vector_hits: List[VectorHit], graph_nodes: List[GraphNode], top_k: int = 10) -> List[SearchResult]:
    """Combine both result lists into one ranking."""
    fused: Dict[str, SearchResult] = {}
    order: Dict[str, int] = {}

    for rank, hit in enumerate(vector_hits):
        if hit.node.id in fused:
            continue
        fused[hit.node.id] = SearchResult(
            node=hit.node,
            score=VECTOR_WEIGHT * hit.score + VECTOR_POSITION_WEIGHT * position_bonus(rank, len(vector_hits)),
            source="vector",
            vector_score=hit.score,
        )
        order[hit.node.id] = len(order)

    for rank, node in enumerate(graph_nodes):
        existing = fused.get(node.id)
        if existing is not None:
            if existing.source == "vector":
                existing.score += HYBRID_BONUS
                existing.source = "hybrid"
                existing.graph_rank = rank
            continue
        fused[node.id] = SearchResult(
            node=node,
            score=GRAPH_BASE_SCORE + GRAPH_POSITION_WEIGHT * position_bonus(rank, len(graph_nodes)),
            source="graph",
            graph_rank=rank,
        )
        order[node.id] = len(order)

    results = sorted(fused.values(), key=lambda r: (-r.score, order[r.node.id]))
    for result in results:
        result.score = round(result.score, 4)
    return results[:top_k]


class HybridSearchService:
    """Vector similarity plus graph pattern search with graceful degradation."""

    def __init__(self, store, vector_index: Optional[VectorIndex] = None, embedding_service=None,
                 top_k: int = 10):
        self.logger = app_logger.bind(component="hybrid_search")
        self.store = store
        self.vector_index = vector_index
        self.embedding_service = embedding_service
        self.top_k = top_k

    @property
    def vector_enabled(self) -> bool:
        return self.vector_index is not None and self.embedding_service is not None

    async def search(self, query: str, top_k: Optional[int] = None,
                     node_type: Optional[str] = None) -> HybridSearchResult:
        """Run both paths concurrently and fuse them."""
        start = time.time()
        top_k = top_k or self.top_k
        loop = asyncio.get_running_loop()

        vector_hits, graph_nodes = await asyncio.gather(
            self._vector_search(query, top_k),
            loop.run_in_executor(None, self._graph_search, query, top_k, node_type),
        )
        if node_type:
            vector_hits = [hit for hit in vector_hits if hit.node.type == node_type]

        if not vector_hits:
            strategy = "graph_only"
        elif not graph_nodes:
            strategy = "vector_only"
        else:
            strategy = "hybrid"

        result = HybridSearchResult(
            query=query,
            strategy=strategy,
            fused_results=fuse_results(vector_hits, graph_nodes, top_k),
            vector_count=len(vector_hits),
            graph_count=len(graph_nodes),
            execution_time_ms=int((time.time() - start) * 1000),
        )
        self.logger.info(
            f"Hybrid search '{query}': {strategy}, {len(vector_hits)} vector / "
            f"{len(graph_nodes)} graph hits -> {len(result.fused_results)} results"
        )
        return result

    async def _vector_search(self, query: str, top_k: int) -> List[VectorHit]:
        if not self.vector_enabled:
            return []
        try:
            embedding = await self.embedding_service.embed_query(query)
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self.vector_index.search, embedding, top_k)
        except Exception as e:
            self.logger.warning(f"Vector search failed, falling back to graph only: {e}")
            return []

    def _graph_search(self, query: str, top_k: int, node_type: Optional[str] = None) -> List[GraphNode]:
        terms = graph_terms(query)
        if not terms:
            return []
        cypher = (
            f"MATCH (n:{NODE_LABEL}) "
            "WHERE ($node_type IS NULL OR n.type = $node_type) AND any(term IN $terms WHERE "
            "toLower(n.name) CONTAINS term OR toLower(coalesce(n.description, '')) CONTAINS term "
            "OR toLower(coalesce(n.title, '')) CONTAINS term) "
            "RETURN n ORDER BY CASE WHEN any(term IN $terms WHERE toLower(n.name) = term) THEN 0 "
            "ELSE 1 END, n.name "
            f"LIMIT {int(top_k)}"
        )
        try:
            result = self.store.query(cypher, {"terms": terms, "node_type": node_type})
        except StoreError as e:
            self.logger.error(f"Graph search failed: {e}")
            return []
        return rank_nodes(result.nodes, terms, "unknown")

    async def index_nodes(self, nodes: List[GraphNode], batch_size: int = 64) -> int:
        """Embed nodes and write them to the vector index."""
        if not self.vector_enabled:
            raise ValueError("Vector search is not configured")
        embeddings = await self.embedding_service.embed_nodes(nodes, batch_size=batch_size)
        loop = asyncio.get_running_loop()
        count = await loop.run_in_executor(None, self.vector_index.upsert, nodes, embeddings)
        self.logger.info(f"Indexed {count} node embeddings")
        return count

    def get_index_status(self) -> Dict[str, Any]:
        """Describe the vector index, if any."""
        if self.vector_index is None:
            return {"backend": None, "available": False}
        try:
            status = self.vector_index.status()
        except Exception as e:
            self.logger.warning(f"Could not read vector index status: {e}")
            return {"backend": type(self.vector_index).__name__, "available": False, "error": str(e)}
        status["embedding_enabled"] = self.embedding_service is not None
        return status
