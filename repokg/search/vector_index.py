from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Dict, Any, Optional

import numpy as np

from ..graph.graph_store import NODE_LABEL, safe_label
from ..types import GraphNode
from ..utils.logger import app_logger


@dataclass
class VectorHit:
    """A node returned by a vector similarity search."""
    node: GraphNode
    score: float


class VectorIndex(ABC):
    """Similarity index over node embeddings."""

    @abstractmethod
    def upsert(self, nodes: List[GraphNode], embeddings: List[List[float]]) -> int:
        """Store embeddings for nodes, replacing existing ones."""

    @abstractmethod
    def search(self, embedding: List[float], top_k: int = 10) -> List[VectorHit]:
        """Most similar nodes, best first."""

    @abstractmethod
    def status(self) -> Dict[str, Any]:
        """Backend name, availability and size."""


class InMemoryVectorIndex(VectorIndex):
    """Cosine similarity over a numpy matrix."""

    def __init__(self):
        self.logger = app_logger.bind(component="memory_vector_index")
        self._nodes: Dict[str, GraphNode] = {}
        self._vectors: Dict[str, np.ndarray] = {}

    def upsert(self, nodes: List[GraphNode], embeddings: List[List[float]]) -> int:
        for node, embedding in zip(nodes, embeddings):
            self._nodes[node.id] = node
            self._vectors[node.id] = np.asarray(embedding, dtype=float)
        return min(len(nodes), len(embeddings))

    def search(self, embedding: List[float], top_k: int = 10) -> List[VectorHit]:
        if not self._vectors:
            return []
        ids = list(self._vectors)
        matrix = np.vstack([self._vectors[node_id] for node_id in ids])
        query = np.asarray(embedding, dtype=float)

        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        similarities = matrix @ query / norms

        top_indices = np.argsort(-similarities, kind="stable")[:top_k]
        return [VectorHit(node=self._nodes[ids[i]], score=float(similarities[i])) for i in top_indices]

    def status(self) -> Dict[str, Any]:
        return {"backend": "memory", "available": True, "count": len(self._vectors)}


class Neo4jVectorIndex(VectorIndex):
    """Native Neo4j vector index over an ``embedding`` node property."""

    def __init__(self, store, index_name: str = "graph_node_embeddings", dimension: int = 1536,
                 similarity: str = "cosine"):
        self.logger = app_logger.bind(component="neo4j_vector_index")
        self.store = store
        self.index_name = safe_label(index_name)
        self.dimension = int(dimension)
        self.similarity = similarity

    def ensure_index(self):
        """Create the vector index if it is missing."""
        self.store.query(
            f"CREATE VECTOR INDEX {self.index_name} IF NOT EXISTS "
            f"FOR (n:{NODE_LABEL}) ON (n.embedding) "
            "OPTIONS {indexConfig: {`vector.dimensions`: $dimension, "
            "`vector.similarity_function`: $similarity}}",
            {"dimension": self.dimension, "similarity": self.similarity},
        )
        self.logger.info(f"Ensured vector index {self.index_name} ({self.dimension} dims)")

    def upsert(self, nodes: List[GraphNode], embeddings: List[List[float]]) -> int:
        rows = [
            {"id": node.id, "embedding": [float(x) for x in embedding]}
            for node, embedding in zip(nodes, embeddings)
        ]
        if not rows:
            return 0
        self.ensure_index()
        result = self.store.query(
            "UNWIND $rows AS row "
            f"MATCH (n:{NODE_LABEL} {{id: row.id}}) "
            "CALL db.create.setNodeVectorProperty(n, 'embedding', row.embedding) "
            "RETURN count(n) AS updated",
            {"rows": rows},
        )
        return int(result.records[0]["updated"]) if result.records else 0

    def search(self, embedding: List[float], top_k: int = 10) -> List[VectorHit]:
        result = self.store.query(
            "CALL db.index.vector.queryNodes($index, $k, $embedding) YIELD node, score "
            "RETURN node, score ORDER BY score DESC",
            {"index": self.index_name, "k": int(top_k), "embedding": [float(x) for x in embedding]},
        )
        hits = []
        for record in result.records:
            node = record.get("node")
            if isinstance(node, dict) and node.get("id"):
                hits.append(VectorHit(node=GraphNode.from_dict(node), score=float(record.get("score", 0.0))))
        return hits

    def status(self) -> Dict[str, Any]:
        result = self.store.query(
            "SHOW VECTOR INDEXES YIELD name, state, populationPercent "
            "WHERE name = $index RETURN name, state, populationPercent",
            {"index": self.index_name},
        )
        if not result.records:
            return {"backend": "neo4j", "available": False, "index": self.index_name}
        record = result.records[0]
        return {
            "backend": "neo4j",
            "available": record.get("state") == "ONLINE",
            "index": self.index_name,
            "state": record.get("state"),
            "population_percent": record.get("populationPercent"),
        }


def create_vector_index(backend: str, store=None, dimension: int = 1536,
                        index_name: Optional[str] = None) -> VectorIndex:
    """Build the configured vector index backend."""
    if backend == "memory":
        return InMemoryVectorIndex()
    if backend == "neo4j":
        if store is None:
            raise ValueError("The neo4j vector backend needs a graph store")
        return Neo4jVectorIndex(store, index_name=index_name or "graph_node_embeddings", dimension=dimension)
    if backend == "milvus":
        from .milvus_index import MilvusVectorIndex
        return MilvusVectorIndex(collection_name=index_name, dimension=dimension)
    raise ValueError(f"Unsupported vector backend: {backend}")
