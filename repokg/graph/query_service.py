from typing import Dict, Any, Optional

from ..types import StoreQueryResult
from ..utils.logger import app_logger
from .graph_store import NODE_LABEL, safe_label

MAX_DEPTH = 5
DIRECTION_PATTERNS = {
    "in": "<-[*1..{depth}]-",
    "out": "-[*1..{depth}]->",
    "both": "-[*1..{depth}]-",
}


def _term_filter(var: str, param: str) -> str:
    return (
        f"(toLower({var}.name) CONTAINS toLower(${param}) "
        f"OR toLower({var}.id) CONTAINS toLower(${param}))"
    )


def _term_order(var: str, param: str) -> str:
    """Exact name, exact id, name prefix, id prefix, then everything else."""
    return (
        f"CASE WHEN {var}.name = ${param} THEN 1 "
        f"WHEN {var}.id = ${param} THEN 2 "
        f"WHEN toLower({var}.name) STARTS WITH toLower(${param}) THEN 3 "
        f"WHEN toLower({var}.id) STARTS WITH toLower(${param}) THEN 4 "
        f"ELSE 5 END"
    )


class GraphQueryService:
    """Structured node, relationship and path lookups used by the query command."""

    def __init__(self, store):
        self.logger = app_logger.bind(component="graph_query_service")
        self.store = store

    def find_nodes(self, term: str, node_type: Optional[str] = None, limit: int = 10) -> StoreQueryResult:
        """Find nodes whose name or id contains the term."""
        cypher = (
            f"MATCH (n:{NODE_LABEL}) "
            f"WHERE ($node_type IS NULL OR n.type = $node_type) AND {_term_filter('n', 'term')} "
            f"RETURN n ORDER BY {_term_order('n', 'term')}, n.name "
            f"LIMIT {int(limit)}"
        )
        result = self.store.query(cypher, {"term": term, "node_type": node_type})
        self.logger.debug(f"find_nodes('{term}') returned {len(result.nodes)} nodes")
        return result

    def find_relationships(self, term: str, depth: int = 1, direction: str = "both",
                           relationship_type: Optional[str] = None, node_type: Optional[str] = None,
                           limit: int = 10) -> StoreQueryResult:
        """Traverse from the best matching node, optionally of ``node_type``, up to ``depth`` hops."""
        if direction not in DIRECTION_PATTERNS:
            raise ValueError(f"Invalid direction '{direction}', expected one of {sorted(DIRECTION_PATTERNS)}")
        depth = max(1, min(int(depth), MAX_DEPTH))
        if relationship_type:
            safe_label(relationship_type)
        pattern = DIRECTION_PATTERNS[direction].format(depth=depth)

        cypher = (
            f"MATCH (n:{NODE_LABEL}) "
            f"WHERE ($node_type IS NULL OR n.type = $node_type) AND {_term_filter('n', 'term')} "
            f"WITH n ORDER BY {_term_order('n', 'term')} LIMIT 1 "
            f"MATCH p = (n){pattern}(m:{NODE_LABEL}) "
            "WHERE $rel_type IS NULL OR all(rel IN relationships(p) WHERE type(rel) = $rel_type) "
            f"RETURN p LIMIT {int(limit)}"
        )
        return self.store.query(cypher, {"term": term, "rel_type": relationship_type, "node_type": node_type})

    def find_paths(self, start: str, end: str, max_length: int = 6, limit: int = 5,
                   node_type: Optional[str] = None) -> StoreQueryResult:
        """Shortest paths between the best matches for two terms, both ends restricted to ``node_type``."""
        max_length = max(1, int(max_length))
        cypher = (
            f"MATCH (a:{NODE_LABEL}) "
            f"WHERE ($node_type IS NULL OR a.type = $node_type) AND {_term_filter('a', 'start')} "
            f"WITH a ORDER BY {_term_order('a', 'start')} LIMIT 3 "
            f"MATCH (b:{NODE_LABEL}) "
            f"WHERE ($node_type IS NULL OR b.type = $node_type) AND {_term_filter('b', 'end')} AND a <> b "
            f"WITH a, b ORDER BY {_term_order('b', 'end')} LIMIT 9 "
            f"MATCH p = shortestPath((a)-[*1..{max_length}]-(b)) "
            "RETURN p, length(p) AS length, "
            "reduce(weight = 0.0, r IN relationships(p) | weight + coalesce(r.weight, 1.0)) AS weight "
            f"ORDER BY length, weight LIMIT {int(limit)}"
        )
        result = self.store.query(cypher, {"start": start, "end": end, "node_type": node_type})
        self.logger.debug(f"find_paths('{start}', '{end}') returned {len(result.records)} paths")
        return result

    def get_stats(self) -> Dict[str, Any]:
        return self.store.get_stats()
