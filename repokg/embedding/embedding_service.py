import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional

import requests
from openai import OpenAI

from ..config import settings
from ..types import GraphNode
from ..utils.logger import app_logger

NODE_TEXT_FIELDS = ("title", "description", "signature", "docstring", "qualified_name", "file_path")
MAX_NODE_TEXT_LENGTH = 2000


class EmbeddingProvider(ABC):
    """Turns batches of text into vectors of a fixed dimension."""

    dimension: int

    @abstractmethod
    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """One vector per text, in input order."""

    async def embed_text(self, text: str) -> List[float]:
        return (await self.embed_texts([text]))[0]

    def get_dimension(self) -> int:
        return self.dimension


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Local embeddings through the Ollama ``/api/embed`` batch endpoint."""

    def __init__(self, host: str = "http://localhost:11434", model: str = "nomic-embed-text",
                 dimension: int = 768, timeout: float = 30.0):
        self.logger = app_logger.bind(component="ollama_embedding")
        self.url = f"{host.rstrip('/')}/api/embed"
        self.model = model
        self.dimension = dimension
        self.timeout = timeout
        self.session = requests.Session()

    def _post(self, texts: List[str]) -> List[List[float]]:
        response = self.session.post(self.url, json={"model": self.model, "input": texts}, timeout=self.timeout)
        response.raise_for_status()
        vectors = response.json()["embeddings"]
        if len(vectors) != len(texts):
            raise ValueError(f"Ollama returned {len(vectors)} embeddings for {len(texts)} inputs")
        return vectors

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            return await asyncio.get_running_loop().run_in_executor(None, self._post, texts)
        except (requests.RequestException, KeyError, ValueError) as e:
            self.logger.error(f"Ollama embedding request for {len(texts)} texts failed: {e}")
            raise


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings through the OpenAI API, split into request-sized chunks."""

    def __init__(self, api_key: str, model: str = "text-embedding-ada-002", dimension: int = 1536,
                 max_batch_size: int = 512, client: Optional[OpenAI] = None):
        self.logger = app_logger.bind(component="openai_embedding")
        self.client = client or OpenAI(api_key=api_key)
        self.model = model
        self.dimension = dimension
        self.max_batch_size = max_batch_size

    def _create(self, chunk: List[str]) -> List[List[float]]:
        kwargs = {"model": self.model, "input": chunk}
        # Only the text-embedding-3 family accepts a reduced output size
        if self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.dimension
        response = self.client.embeddings.create(**kwargs)
        return [item.embedding for item in sorted(response.data, key=lambda item: item.index)]

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        loop = asyncio.get_running_loop()
        vectors: List[List[float]] = []
        for start in range(0, len(texts), self.max_batch_size):
            chunk = texts[start:start + self.max_batch_size]
            try:
                vectors.extend(await loop.run_in_executor(None, self._create, chunk))
            except Exception as e:
                self.logger.error(f"OpenAI embedding request ({self.model}, {len(chunk)} texts) failed: {e}")
                raise
        return vectors


def create_embedding_provider() -> EmbeddingProvider:
    """Provider selected by ``settings.embedding_provider``."""
    if settings.embedding_provider == "ollama":
        return OllamaEmbeddingProvider(host=settings.ollama_host, model=settings.ollama_model)
    if settings.embedding_provider == "openai":
        if not settings.openai_api_key:
            raise ValueError("An OpenAI API key is needed for openai embeddings")
        return OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            dimension=settings.embedding_dimension,
        )
    raise ValueError(f"Unknown embedding provider '{settings.embedding_provider}'")


class EmbeddingService:
    """Embeds graph nodes and search queries."""

    def __init__(self, provider: Optional[EmbeddingProvider] = None):
        self.logger = app_logger.bind(component="embedding_service")
        self.provider = provider or create_embedding_provider()
        self.dimension = self.provider.get_dimension()

    @staticmethod
    def node_text(node: GraphNode) -> str:
        """Text that represents a node for embedding: type, name and descriptive fields."""
        parts = [f"{node.type} {node.name}"]
        for key in NODE_TEXT_FIELDS:
            value = node.properties.get(key)
            if isinstance(value, str) and value and value != node.name:
                parts.append(value)
        return "\n".join(parts)[:MAX_NODE_TEXT_LENGTH]

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        return await self.provider.embed_texts(texts)

    async def embed_query(self, query: str) -> List[float]:
        return await self.provider.embed_text(query)

    async def embed_nodes(self, nodes: List[GraphNode], batch_size: Optional[int] = 64) -> List[List[float]]:
        """Embed nodes in batches, preserving order."""
        texts = [self.node_text(node) for node in nodes]
        embeddings: List[List[float]] = []
        step = batch_size or len(texts) or 1
        for start in range(0, len(texts), step):
            embeddings.extend(await self.embed_texts(texts[start:start + step]))
        self.logger.info(f"Embedded {len(embeddings)} nodes")
        return embeddings

    def get_dimension(self) -> int:
        return self.dimension
