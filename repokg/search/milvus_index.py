from typing import List, Dict, Any, Optional
import json

from pymilvus import (
    connections,
    utility,
    FieldSchema,
    CollectionSchema,
    DataType,
    Collection,
)

from ..config import settings
from ..types import GraphNode
from ..utils.logger import app_logger
from .vector_index import VectorHit, VectorIndex


class MilvusVectorIndex(VectorIndex):
    """Milvus collection of node embeddings."""

    def __init__(self, collection_name: Optional[str] = None, dimension: Optional[int] = None,
                 host: Optional[str] = None, port: Optional[int] = None, alias: str = "default"):
        self.logger = app_logger.bind(component="milvus_vector_index")
        self.collection_name = collection_name or settings.milvus_collection_name
        self.dimension = dimension or settings.embedding_dimension
        self.host = host or settings.milvus_host
        self.port = port or settings.milvus_port
        self.alias = alias
        self.collection: Optional[Collection] = None

        self._connect()
        self._ensure_collection()

    def _connect(self):
        """Connect to Milvus server."""
        try:
            connections.connect(self.alias, host=self.host, port=self.port)
            self.logger.info(f"Connected to Milvus at {self.host}:{self.port}")
        except Exception as e:
            self.logger.error(f"Failed to connect to Milvus: {e}")
            raise

    def _ensure_collection(self):
        """Ensure collection exists with proper schema."""
        if utility.has_collection(self.collection_name, using=self.alias):
            self.collection = Collection(self.collection_name, using=self.alias)
            self.logger.info(f"Using existing collection: {self.collection_name}")
        else:
            self._create_collection()

    def _create_collection(self):
        """Create collection with proper schema."""
        fields = [
            FieldSchema(name="id", dtype=DataType.VARCHAR, max_length=256, is_primary=True),
            FieldSchema(name="type", dtype=DataType.VARCHAR, max_length=64),
            FieldSchema(name="name", dtype=DataType.VARCHAR, max_length=512),
            FieldSchema(name="node", dtype=DataType.JSON),
            FieldSchema(name="embedding", dtype=DataType.FLOAT_VECTOR, dim=self.dimension),
        ]
        schema = CollectionSchema(fields=fields, description="Code graph node embeddings")
        self.collection = Collection(self.collection_name, schema, using=self.alias)
        self.collection.create_index(
            "embedding",
            {"metric_type": "COSINE", "index_type": "IVF_FLAT", "params": {"nlist": 1024}},
        )
        self.logger.info(f"Created collection: {self.collection_name}")

    def upsert(self, nodes: List[GraphNode], embeddings: List[List[float]]) -> int:
        """Insert or replace node embeddings."""
        pairs = list(zip(nodes, embeddings))
        if not pairs:
            return 0
        data = [
            [node.id for node, _ in pairs],
            [node.type for node, _ in pairs],
            [node.name[:512] for node, _ in pairs],
            [json.loads(json.dumps(node.to_dict(), default=str)) for node, _ in pairs],
            [list(map(float, embedding)) for _, embedding in pairs],
        ]
        self.collection.upsert(data)
        self.collection.flush()
        self.logger.info(f"Upserted {len(pairs)} node embeddings into {self.collection_name}")
        return len(pairs)

    def search(self, embedding: List[float], top_k: int = 10) -> List[VectorHit]:
        """Search for similar nodes using cosine similarity."""
        self.collection.load()
        results = self.collection.search(
            data=[list(map(float, embedding))],
            anns_field="embedding",
            param={"metric_type": "COSINE", "params": {"nprobe": 10}},
            limit=top_k,
            output_fields=["node"],
        )
        hits = []
        for result in results:
            for hit in result:
                node_data = hit.entity.get("node")
                if node_data:
                    hits.append(VectorHit(node=GraphNode.from_dict(node_data), score=float(hit.score)))
        return hits

    def status(self) -> Dict[str, Any]:
        """Get collection statistics."""
        return {
            "backend": "milvus",
            "available": self.collection is not None,
            "collection": self.collection_name,
            "count": self.collection.num_entities if self.collection is not None else 0,
        }

    def drop(self):
        """Drop the entire collection."""
        if utility.has_collection(self.collection_name, using=self.alias):
            utility.drop_collection(self.collection_name, using=self.alias)
            self.logger.info(f"Dropped collection: {self.collection_name}")
        self.collection = None

    def close(self):
        """Close connection to Milvus."""
        connections.disconnect(self.alias)
        self.logger.info("Disconnected from Milvus")
