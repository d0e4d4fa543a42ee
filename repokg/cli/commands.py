import asyncio
import json
import sys
from typing import Optional

from ..config import settings
from ..embedding.embedding_service import EmbeddingService
from ..extractors.pipeline import ExtractionPipeline, PipelineReport
from ..graph.graph_store import GraphStoreService, NODE_LABEL
from ..graph.json_graph_store import JsonGraphStore
from ..graph.query_service import GraphQueryService
from ..mcp.server import GraphKnowledgeMCP
from ..query.engine import QueryOptions, create_query_engine
from ..search.hybrid_search import HybridSearchService
from ..search.vector_index import create_vector_index
from ..utils.logger import app_logger
from .formatters import format_nodes, format_stats, format_table

logger = app_logger.bind(component="cli")


def _print(text: str):
    sys.stdout.write(text.rstrip("\n") + "\n")


def open_store(store: Optional[GraphStoreService] = None) -> GraphStoreService:
    store = store or GraphStoreService(settings.store_config())
    if not store.connected:
        store.connect()
    return store


def format_report(report: PipelineReport) -> str:
    """Console summary of an extraction run."""
    lines = [
        f"Extracted {len(report.result.nodes)} nodes and {len(report.result.relationships)} "
        f"relationships in {report.duration_ms}ms",
        "",
        format_table(
            ["EXTRACTOR", "NODES", "RELATIONSHIPS"],
            [[name, counts["nodes"], counts["relationships"]] for name, counts in report.extractor_counts.items()],
        ),
    ]
    if report.correlation_stats:
        lines.append("")
        lines.append(f"Correlations: {report.correlation_stats.get('total_correlations', 0)}")
        for pattern, count in sorted(report.correlation_stats.get("by_pattern", {}).items()):
            lines.append(f"  {pattern}: {count}")
    for name, error in report.failures.items():
        lines.append(f"FAILED {name}: {error}")
    return "\n".join(lines)


def run_extract(args, store: Optional[GraphStoreService] = None) -> int:
    """Run the extractors and send the graph to the console, JSON files or Neo4j."""
    pipeline = ExtractionPipeline(args.working_dir, extractors=args.extractors)
    report = pipeline.run()
    nodes, relationships = report.result.nodes, report.result.relationships

    if args.output == "console":
        _print(format_report(report))
        return 0

    if args.output == "json":
        target = JsonGraphStore(args.file or "graph-output")
    else:
        target = open_store(store)

    try:
        if args.clear:
            target.clear_database()
        imported = target.import_data(nodes, relationships)
        _print(format_report(report))
        _print(f"\nImported {imported['nodes']} nodes and {imported['relationships']} relationships "
               f"into {args.output}")
    finally:
        if isinstance(target, GraphStoreService) and store is None:
            target.disconnect()
    return 0


def run_query(args, store: Optional[GraphStoreService] = None) -> int:
    """Structured node, relationship, path and stats lookups."""
    if args.type != "stats" and not args.search:
        raise ValueError(f"--search is required for '{args.type}' queries")

    graph = open_store(store)
    try:
        service = GraphQueryService(graph)
        if args.type == "stats":
            _print(format_stats(service.get_stats(), "json" if args.format == "json" else "table"))
            return 0

        if args.type == "node":
            result = service.find_nodes(args.search, node_type=args.node_type, limit=args.limit)
        elif args.type == "relations":
            result = service.find_relationships(
                args.search, depth=args.depth, direction=args.direction,
                node_type=args.node_type, limit=args.limit,
            )
        else:
            terms = args.search.split()
            if len(terms) != 2:
                raise ValueError("Path queries take two space separated terms: --search 'nodeA nodeB'")
            result = service.find_paths(terms[0], terms[1], limit=args.limit, node_type=args.node_type)

        _print(format_nodes(result.nodes, result.relationships, args.format))
    finally:
        if store is None:
            graph.disconnect()
    return 0


def run_ask(args, store: Optional[GraphStoreService] = None) -> int:
    """Answer a natural-language question."""
    graph = open_store(store)
    engine = create_query_engine(graph)
    try:
        options = QueryOptions(limit=args.limit, depth=args.depth, direction=args.direction,
                               node_type=args.node_type)
        result = engine.query(args.question, options)
    finally:
        engine.close()
        if store is None:
            graph.disconnect()

    if args.format == "json":
        _print(json.dumps(result.to_dict(), indent=2, default=str))
        return 0

    _print(f"Intent: {result.intent} (confidence {result.confidence:.2f})")
    _print(result.explanation)
    if result.nodes:
        _print("")
        _print(format_nodes(result.nodes, result.relationships, args.format))
    for suggestion in result.suggestions:
        _print(f"Hint: {suggestion}")
    return 0


def build_hybrid_search(store: GraphStoreService, use_vectors: bool = True) -> HybridSearchService:
    vector_index = None
    embedding_service = None
    if use_vectors:
        try:
            embedding_service = EmbeddingService()
            vector_index = create_vector_index(
                settings.vector_backend,
                store=store,
                dimension=embedding_service.get_dimension(),
                index_name=settings.vector_index_name,
            )
        except Exception as e:
            logger.warning(f"Vector search unavailable, using graph search only: {e}")
            embedding_service = None
            vector_index = None
    return HybridSearchService(store, vector_index, embedding_service)


def run_search(args, store: Optional[GraphStoreService] = None) -> int:
    """Hybrid vector and graph search."""
    graph = open_store(store)
    try:
        hybrid = build_hybrid_search(graph, use_vectors=not args.graph_only)
        if args.reindex:
            nodes = graph.query(f"MATCH (n:{NODE_LABEL}) RETURN n").nodes
            count = asyncio.run(hybrid.index_nodes(nodes))
            _print(f"Indexed {count} nodes")
        result = asyncio.run(hybrid.search(args.query, top_k=args.top_k, node_type=args.node_type))
    finally:
        if store is None:
            graph.disconnect()

    if args.format == "json":
        _print(json.dumps(result.to_dict(), indent=2, default=str))
        return 0

    _print(f"Strategy: {result.strategy} ({result.vector_count} vector, {result.graph_count} graph hits)")
    if not result.fused_results:
        _print("No results found.")
        return 0
    rows = [
        [f"{hit.score:.3f}", hit.source, hit.node.type, hit.node.name, hit.node.properties.get("file_path", "")]
        for hit in result.fused_results
    ]
    _print(format_table(["SCORE", "SOURCE", "TYPE", "NAME", "FILE"], rows))
    return 0


def run_serve(args) -> int:
    """Start the MCP server."""
    server = GraphKnowledgeMCP()
    logger.info(f"Starting MCP server with {args.transport} transport")
    try:
        if args.transport == "stdio":
            server.get_server().run(transport="stdio")
        else:
            server.get_server().run(transport="http", host=args.host, port=args.port)
    finally:
        server.close()
    return 0
