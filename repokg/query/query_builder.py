import re
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from ..graph.graph_store import NODE_LABEL, safe_label

MAX_ENTITIES = 6
MAX_DEPTH = 5

QUOTED = re.compile(r"\"([^\"]+)\"|'([^']+)'|`([^`]+)`")
IDENTIFIER_PATTERNS = [
    re.compile(r"\b[a-z][a-z0-9]*(?:[A-Z][a-z0-9]*)+\b"),       # camelCase
    re.compile(r"\b[A-Z][a-z0-9]+(?:[A-Z][a-z0-9]*)+\b"),       # PascalCase
    re.compile(r"\b[A-Za-z][A-Za-z0-9]*(?:_[A-Za-z0-9]+)+\b"),  # snake_case
    re.compile(r"\b[\w-]+(?:\.[\w-]+)+\b"),                     # dotted names and files
]
WORD = re.compile(r"[A-Za-z@][\w@/-]*")

STOPWORDS = {
    "the", "and", "for", "are", "was", "were", "with", "that", "this", "these", "those",
    "from", "into", "what", "which", "where", "who", "whom", "how", "why", "when", "does",
    "did", "can", "could", "would", "should", "will", "there", "their", "them", "they",
    "all", "any", "some", "each", "every", "has", "have", "had", "not", "but", "about",
    "show", "find", "list", "get", "give", "tell", "search", "look", "display", "me",
    "function", "functions", "method", "methods", "class", "classes", "interface",
    "interfaces", "type", "types", "model", "models", "schema", "schemas", "node", "nodes",
    "relation", "relations", "relationship", "relationships", "related", "path", "paths",
    "between", "connect", "connects", "connected", "calls", "call", "called", "uses",
    "used", "depends", "depend", "dependencies", "dependents", "imports", "import",
    "imported", "references", "stats", "statistics", "count", "many", "number",
    "overview", "summary", "defined", "declared", "named", "graph", "code",
    "repository", "repo", "project", "please", "its", "our", "your",
}

INTENT_NODE_TYPES: Dict[str, List[str]] = {
    "find_function": ["Function", "Method", "API"],
    "find_class": ["Class", "Interface", "Type", "SchemaEntity"],
}

DIRECTION_PATTERNS = {
    "in": "<-[*1..{depth}]-",
    "out": "-[*1..{depth}]->",
    "both": "-[*1..{depth}]-",
}


def extract_entities(text: str, max_entities: int = MAX_ENTITIES) -> List[str]:
    """Candidate identifiers: quoted strings, then code-like tokens, then significant words."""
    text = text or ""
    candidates: List[str] = []

    for match in QUOTED.finditer(text):
        candidates.append(next(group for group in match.groups() if group is not None).strip())
    remainder = QUOTED.sub(" ", text)

    positioned = []
    for pattern in IDENTIFIER_PATTERNS:
        positioned.extend((m.start(), m.group(0)) for m in pattern.finditer(remainder))
    candidates.extend(token for _, token in sorted(positioned))

    for match in WORD.finditer(remainder):
        word = match.group(0).strip("-/")
        if len(word) > 2 and word.lower() not in STOPWORDS:
            candidates.append(word)

    entities: List[str] = []
    seen = set()
    for candidate in candidates:
        key = candidate.lower()
        if candidate and key not in seen:
            seen.add(key)
            entities.append(candidate)
        if len(entities) >= max_entities:
            break
    return entities


@dataclass
class BuiltQuery:
    """A parameterized Cypher query ready for the graph store."""
    intent: str
    cypher: Optional[str]
    params: Dict[str, Any] = field(default_factory=dict)
    limit: int = 20
    depth: int = 1
    entities: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)


class CypherQueryBuilder:
    """Maps (intent, entities, options) to a bounded, parameterized Cypher query."""

    def __init__(self, max_depth: int = MAX_DEPTH):
        self.max_depth = max_depth

    def build(self, intent: str, entities: List[str], limit: int = 20, depth: int = 1,
              direction: str = "both", node_type: Optional[str] = None) -> BuiltQuery:
        limit = max(1, int(limit))
        depth = max(1, min(int(depth), self.max_depth))
        entities = list(entities[:MAX_ENTITIES])
        if direction not in DIRECTION_PATTERNS:
            direction = "both"
        if node_type:
            safe_label(node_type)

        notes: List[str] = []
        if intent == "find_path" and len(entities) < 2:
            notes.append("A path query needs two names, e.g. 'path between A and B'")
            intent = "find_relations" if entities else "unknown"
        if intent == "find_relations" and not entities:
            notes.append("Name the node whose relationships you want to see")
            intent = "unknown"

        built = BuiltQuery(intent=intent, cypher=None, limit=limit, depth=depth,
                           entities=entities, notes=notes)

        if intent == "stats":
            built.cypher = (
                f"MATCH (n:{NODE_LABEL}) RETURN n.type AS type, count(*) AS count "
                f"ORDER BY count DESC, type LIMIT {limit}"
            )
        elif intent in INTENT_NODE_TYPES:
            types = [node_type] if node_type else INTENT_NODE_TYPES[intent]
            built.cypher, built.params = self._node_search(entities, types, limit)
        elif intent == "find_relations":
            built.cypher, built.params = self._relations(entities, depth, direction, node_type, limit)
        elif intent == "find_path":
            built.cypher, built.params = self._path(entities, limit)
        elif entities:
            types = [node_type] if node_type else None
            built.cypher, built.params = self._node_search(entities, types, limit)
        return built

    @staticmethod
    def _node_search(entities: List[str], types: Optional[List[str]], limit: int):
        conditions = []
        params: Dict[str, Any] = {}
        if types:
            conditions.append("n.type IN $types")
            params["types"] = types
        if entities:
            conditions.append("any(term IN $terms WHERE toLower(n.name) CONTAINS toLower(term))")
            params["terms"] = entities
        where = f"WHERE {' AND '.join(conditions)} " if conditions else ""
        order = "n.name"
        if entities:
            order = (
                "CASE WHEN any(term IN $terms WHERE toLower(n.name) = toLower(term)) THEN 0 "
                "WHEN any(term IN $terms WHERE toLower(n.name) STARTS WITH toLower(term)) THEN 1 "
                "ELSE 2 END, n.name"
            )
        cypher = f"MATCH (n:{NODE_LABEL}) {where}RETURN n ORDER BY {order} LIMIT {limit}"
        return cypher, params

    @staticmethod
    def _relations(entities: List[str], depth: int, direction: str, node_type: Optional[str], limit: int):
        params: Dict[str, Any] = {"terms": entities, "node_type": node_type}
        pattern = DIRECTION_PATTERNS[direction].format(depth=depth)
        cypher = (
            f"MATCH (n:{NODE_LABEL}) "
            "WHERE ($node_type IS NULL OR n.type = $node_type) "
            "AND any(term IN $terms WHERE toLower(n.name) CONTAINS toLower(term)) "
            "WITH n ORDER BY CASE WHEN any(term IN $terms WHERE toLower(n.name) = toLower(term)) "
            "THEN 0 ELSE 1 END, n.name LIMIT 5 "
            f"MATCH p = (n){pattern}(m:{NODE_LABEL}) "
            f"RETURN p LIMIT {limit}"
        )
        return cypher, params

    @staticmethod
    def _path(entities: List[str], limit: int):
        params = {"source": entities[0], "target": entities[1]}
        cypher = (
            f"MATCH (a:{NODE_LABEL}) WHERE toLower(a.name) CONTAINS toLower($source) "
            "WITH a ORDER BY CASE WHEN toLower(a.name) = toLower($source) THEN 0 ELSE 1 END LIMIT 3 "
            f"MATCH (b:{NODE_LABEL}) WHERE toLower(b.name) CONTAINS toLower($target) AND a <> b "
            "WITH a, b ORDER BY CASE WHEN toLower(b.name) = toLower($target) THEN 0 ELSE 1 END LIMIT 9 "
            f"MATCH p = shortestPath((a)-[*1..{MAX_DEPTH + 1}]-(b)) "
            f"RETURN p ORDER BY length(p) LIMIT {limit}"
        )
        return cypher, params
