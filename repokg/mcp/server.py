import json
from pathlib import Path
from typing import Optional

from fastmcp import FastMCP

from ..config import settings
from ..embedding.embedding_service import EmbeddingService
from ..extractors.pipeline import ExtractionPipeline
from ..graph.graph_store import GraphStoreService, StoreError
from ..graph.json_graph_store import JsonGraphStore
from ..query.engine import QueryEngineError, QueryOptions, create_query_engine
from ..search.hybrid_search import HybridSearchService
from ..search.vector_index import create_vector_index
from ..utils.logger import app_logger


class GraphKnowledgeMCP:
    """MCP server exposing extraction, questions and search over the code graph."""

    def __init__(self, store: Optional[GraphStoreService] = None):
        self.logger = app_logger.bind(component="mcp_server")
        self.mcp = FastMCP("Repository Knowledge Graph")
        self.store = store
        self._engine = None
        self._hybrid = None
        self._register_tools()

    def _get_store(self) -> GraphStoreService:
        if self.store is None:
            self.store = GraphStoreService(settings.store_config())
        if not self.store.connected:
            self.store.connect()
        return self.store

    def _get_engine(self):
        if self._engine is None:
            self._engine = create_query_engine(self._get_store())
        return self._engine

    def _get_hybrid(self) -> HybridSearchService:
        if self._hybrid is None:
            store = self._get_store()
            vector_index = None
            embedding_service = None
            try:
                embedding_service = EmbeddingService()
                vector_index = create_vector_index(
                    settings.vector_backend,
                    store=store,
                    dimension=embedding_service.get_dimension(),
                    index_name=settings.vector_index_name,
                )
            except Exception as e:
                self.logger.warning(f"Vector search unavailable, using graph search only: {e}")
            self._hybrid = HybridSearchService(store, vector_index, embedding_service)
        return self._hybrid

    def _register_tools(self):
        """Register all MCP tools."""

        @self.mcp.tool()
        async def extract_repository(working_dir: str = ".", extractors: str = "all",
                                     output: str = "graph-db", output_dir: str = "graph-output",
                                     clear: bool = False) -> str:
            """Extract a repository into the knowledge graph.

            Args:
                working_dir: Repository root to scan
                extractors: Comma separated subset of package, schema, document, function, import, or all
                output: graph-db to import into Neo4j, json to write nodes.json and relationships.json
                output_dir: Directory for json output
                clear: Wipe the target before importing

            Returns:
                Extraction report as JSON
            """
            try:
                report = ExtractionPipeline(Path(working_dir), extractors=extractors).run()
                target = self._get_store() if output == "graph-db" else JsonGraphStore(output_dir)
                if clear:
                    target.clear_database()
                imported = target.import_data(report.result.nodes, report.result.relationships)
                summary = report.to_dict()
                summary["imported"] = imported
                summary["output"] = output
                return json.dumps(summary, indent=2)
            except (StoreError, ValueError, OSError) as e:
                self.logger.error(f"Error extracting repository: {e}")
                return f"Error extracting repository: {e}"

        @self.mcp.tool()
        async def ask_graph(question: str, limit: int = 20, depth: int = 1) -> str:
            """Ask a natural-language question about the code graph.

            Args:
                question: e.g. "find function createLogger" or "path between UserService and Database"
                limit: Maximum number of nodes returned
                depth: Traversal depth for relationship questions (capped at 5)

            Returns:
                Intent, confidence, explanation, suggestions and ranked nodes as JSON
            """
            try:
                result = self._get_engine().query(question, QueryOptions(limit=limit, depth=depth))
                return json.dumps(result.to_dict(), indent=2, default=str)
            except (QueryEngineError, StoreError) as e:
                self.logger.error(f"Error answering question: {e}")
                return f"Error answering question: {e}"

        @self.mcp.tool()
        async def hybrid_search(query: str, top_k: int = 10, node_type: str = "") -> str:
            """Search nodes by vector similarity and graph pattern matching.

            Args:
                query: Free text search query
                top_k: Number of results to return
                node_type: Optional node type filter, e.g. Function

            Returns:
                Strategy used and fused results as JSON
            """
            try:
                result = await self._get_hybrid().search(query, top_k=top_k, node_type=node_type or None)
                return json.dumps(result.to_dict(), indent=2, default=str)
            except StoreError as e:
                self.logger.error(f"Error searching: {e}")
                return f"Error searching: {e}"

        @self.mcp.tool()
        async def graph_stats() -> str:
            """Get node and relationship counts of the code graph.

            Returns:
                Counts overall and by type as JSON
            """
            try:
                return json.dumps(self._get_store().get_stats(), indent=2)
            except StoreError as e:
                self.logger.error(f"Error getting graph stats: {e}")
                return f"Error getting graph stats: {e}"

    def get_server(self) -> FastMCP:
        """Get the FastMCP server instance."""
        return self.mcp

    def close(self):
        if self._engine is not None:
            self._engine.close()
        if self.store is not None:
            self.store.disconnect()
