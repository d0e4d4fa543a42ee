#!/usr/bin/env python3
"""
Repository Knowledge Graph - command line entry point

Extracts packages, schemas, documents, functions and imports from a repository into
a property graph, and answers structured or natural-language questions about it.
"""

import argparse
import sys

from repokg.cli.commands import run_ask, run_extract, run_query, run_search, run_serve
from repokg.cli.formatters import FORMATS
from repokg.config import settings
from repokg.extractors.base import ExtractionError
from repokg.graph.graph_store import StoreError
from repokg.query.engine import QueryEngineError
from repokg.utils.logger import app_logger, setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Repository Knowledge Graph")
    parser.add_argument("--log-level", default=settings.log_level, help="Log level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    extract = subparsers.add_parser("extract", help="Extract a repository into the graph")
    extract.add_argument("--extractors", default="all",
                         help="Comma separated: package, schema, document, function, import, all")
    extract.add_argument("--output", choices=["graph-db", "json", "console"], default="console")
    extract.add_argument("--clear", action="store_true", help="Wipe the store before importing")
    extract.add_argument("--file", help="Output directory for nodes.json and relationships.json")
    extract.add_argument("--working-dir", default=".", help="Repository root to scan")
    extract.set_defaults(handler=run_extract)

    query = subparsers.add_parser("query", help="Structured graph lookups")
    query.add_argument("--type", choices=["node", "relations", "path", "stats"], default="stats")
    query.add_argument("--search", help="Name or id; two space separated terms for path queries")
    query.add_argument("--node-type", help="Filter by node type, e.g. Function")
    query.add_argument("--limit", type=int, default=10)
    query.add_argument("--depth", type=int, default=1)
    query.add_argument("--direction", choices=["in", "out", "both"], default="both")
    query.add_argument("--format", choices=FORMATS, default="table")
    query.set_defaults(handler=run_query)

    ask = subparsers.add_parser("ask", help="Ask a natural-language question")
    ask.add_argument("question")
    ask.add_argument("--node-type", help="Filter by node type")
    ask.add_argument("--limit", type=int, default=settings.query_limit)
    ask.add_argument("--depth", type=int, default=settings.query_depth)
    ask.add_argument("--direction", choices=["in", "out", "both"], default="both")
    ask.add_argument("--format", choices=FORMATS, default="table")
    ask.set_defaults(handler=run_ask)

    search = subparsers.add_parser("search", help="Hybrid vector and graph search")
    search.add_argument("query")
    search.add_argument("--top-k", type=int, default=10)
    search.add_argument("--node-type", help="Filter by node type")
    search.add_argument("--graph-only", action="store_true", help="Skip the vector path")
    search.add_argument("--reindex", action="store_true", help="Embed all nodes before searching")
    search.add_argument("--format", choices=["table", "json"], default="table")
    search.set_defaults(handler=run_search)

    serve = subparsers.add_parser("serve", help="Run the MCP server")
    serve.add_argument("--transport", choices=["stdio", "http"], default="stdio")
    serve.add_argument("--host", default="localhost", help="Host for HTTP transport")
    serve.add_argument("--port", type=int, default=8000, help="Port for HTTP transport")
    serve.set_defaults(handler=run_serve)

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.log_level != settings.log_level:
        setup_logging(args.log_level, settings.log_file)

    try:
        return args.handler(args)
    except ValueError as e:
        parser.error(str(e))
    except (StoreError, QueryEngineError, ExtractionError) as e:
        app_logger.error(f"{args.command} failed: {e}")
        return 1
    except KeyboardInterrupt:
        app_logger.info("Shutting down...")
        return 130


if __name__ == "__main__":
    sys.exit(main())
