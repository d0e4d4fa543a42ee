"""
Cross-source correlation analysis.

Each pattern is a ``(matcher, relation type, confidence)`` rule evaluated over node
pairs. Typed patterns only look at the node types they name, so a pattern's bucket
is the product of its source and target types; name similarity buckets nodes by a
normalized name prefix. Inside a bucket every pair is tested.
"""

import re
from collections import defaultdict
from dataclasses import dataclass
from itertools import combinations
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Any

from ..identity import relationship_id
from ..types import ExtractionResult, GraphNode, GraphRelationship, NodeType, RelationType
from ..utils.logger import app_logger

API_TYPES = (NodeType.API.value, NodeType.FUNCTION.value, NodeType.METHOD.value)
DOCUMENTED_API_TYPES = (NodeType.API.value, NodeType.FUNCTION.value, NodeType.CLASS.value,
                        NodeType.INTERFACE.value)
CONTAINED_API_TYPES = (NodeType.API.value, NodeType.FUNCTION.value, NodeType.CLASS.value,
                       NodeType.INTERFACE.value, NodeType.TYPE.value)

# Structural nodes whose names repeat symbol names by construction
SIMILARITY_EXCLUDED_TYPES = {
    NodeType.FILE.value, NodeType.IMPORT.value, NodeType.EXPORT.value, NodeType.SCHEMA_FIELD.value,
}
MIN_SIMILARITY_NAME_LENGTH = 4
SIMILARITY_BUCKET_PREFIX = 3


@dataclass(frozen=True)
class CorrelationPattern:
    """A heuristic rule inferring a relationship between two nodes."""
    name: str
    relation_type: RelationType
    confidence: float
    matcher: Callable[[GraphNode, GraphNode], bool]
    source_types: Optional[Tuple[str, ...]] = None
    target_types: Optional[Tuple[str, ...]] = None
    description: str = ""


def normalize_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", (name or "").lower())


def name_similarity(first: str, second: str) -> float:
    """Containment scores 0.9, otherwise one minus the positional mismatch ratio."""
    a, b = normalize_name(first), normalize_name(second)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if a in b or b in a:
        return 0.9
    longest = max(len(a), len(b))
    mismatches = sum(1 for x, y in zip(a, b) if x != y) + abs(len(a) - len(b))
    return 1.0 - mismatches / longest


def _contains_word(text: Optional[str], word: str) -> bool:
    if not text or not word:
        return False
    return re.search(rf"(?<![A-Za-z0-9_]){re.escape(word)}(?![A-Za-z0-9_])", text, re.IGNORECASE) is not None


def _doc_describes_package(doc: GraphNode, package: GraphNode) -> bool:
    file_path = doc.properties.get("file_path") or ""
    package_path = (package.properties.get("path") or "").strip("/")
    if not package_path or package_path == ".":
        return False
    return f"/{package_path}/" in f"/{file_path}"


def _api_uses_schema(api: GraphNode, schema: GraphNode) -> bool:
    return _contains_word(api.properties.get("signature"), schema.name)


def _schema_maps_table(schema: GraphNode, table: GraphNode) -> bool:
    table_name = schema.properties.get("table_name")
    return bool(table_name) and table_name == table.name


def _doc_documents_api(doc: GraphNode, api: GraphNode) -> bool:
    if len(api.name) < MIN_SIMILARITY_NAME_LENGTH:
        return False
    return _contains_word(doc.properties.get("title"), api.name)


def _package_defines_schema(package: GraphNode, schema: GraphNode) -> bool:
    return bool(schema.metadata.get("package")) and schema.metadata.get("package") == package.name


def _file_contains_api(file_node: GraphNode, api: GraphNode) -> bool:
    file_path = file_node.properties.get("file_path")
    return bool(file_path) and file_path == api.properties.get("file_path")


def _concept_implemented_in_package(package: GraphNode, concept: GraphNode) -> bool:
    return (
        _contains_word(package.name, concept.name)
        or _contains_word(package.properties.get("description"), concept.name)
    )


DEFAULT_PATTERNS: List[CorrelationPattern] = [
    CorrelationPattern(
        name="doc_describes_package",
        relation_type=RelationType.DOCUMENTS,
        confidence=0.9,
        matcher=_doc_describes_package,
        source_types=(NodeType.DOCUMENT.value,),
        target_types=(NodeType.PACKAGE.value,),
        description="document lives inside the package directory",
    ),
    CorrelationPattern(
        name="api_uses_schema",
        relation_type=RelationType.USES_TYPE,
        confidence=0.8,
        matcher=_api_uses_schema,
        source_types=API_TYPES,
        target_types=(NodeType.SCHEMA_ENTITY.value,),
        description="signature mentions the schema type",
    ),
    CorrelationPattern(
        name="schema_maps_table",
        relation_type=RelationType.REFERENCES,
        confidence=0.95,
        matcher=_schema_maps_table,
        source_types=(NodeType.SCHEMA_ENTITY.value,),
        target_types=(NodeType.DATABASE_TABLE.value,),
        description="schema declares the table name",
    ),
    CorrelationPattern(
        name="doc_documents_api",
        relation_type=RelationType.DOCUMENTS,
        confidence=0.7,
        matcher=_doc_documents_api,
        source_types=(NodeType.DOCUMENT.value,),
        target_types=DOCUMENTED_API_TYPES,
        description="document title names the API",
    ),
    CorrelationPattern(
        name="package_defines_schema",
        relation_type=RelationType.DEFINES,
        confidence=0.9,
        matcher=_package_defines_schema,
        source_types=(NodeType.PACKAGE.value,),
        target_types=(NodeType.SCHEMA_ENTITY.value,),
        description="schema source file belongs to the package",
    ),
    CorrelationPattern(
        name="file_contains_api",
        relation_type=RelationType.CONTAINS,
        confidence=0.95,
        matcher=_file_contains_api,
        source_types=(NodeType.FILE.value,),
        target_types=CONTAINED_API_TYPES,
        description="API is declared in the file",
    ),
    CorrelationPattern(
        name="concept_implemented_in_package",
        relation_type=RelationType.IMPLEMENTS,
        confidence=0.6,
        matcher=_concept_implemented_in_package,
        source_types=(NodeType.PACKAGE.value,),
        target_types=(NodeType.CONCEPT.value,),
        description="package name or description mentions the concept",
    ),
]


class CorrelationAnalyzer:
    """Infers relationships across source categories from a merged node set."""

    def __init__(self, patterns: Optional[List[CorrelationPattern]] = None,
                 similarity_threshold: float = 0.8, similarity_confidence: float = 0.5,
                 include_name_similarity: bool = True):
        self.logger = app_logger.bind(component="correlation_analyzer")
        self.patterns = list(DEFAULT_PATTERNS if patterns is None else patterns)
        self.similarity_threshold = similarity_threshold
        self.similarity_confidence = similarity_confidence
        self.include_name_similarity = include_name_similarity
        self.stats: Dict[str, Any] = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {"total_correlations": 0, "by_pattern": {}, "by_relation_type": {}}

    @staticmethod
    def merge_nodes(*node_lists: Iterable[GraphNode]) -> List[GraphNode]:
        """De-duplicate by id; the first node seen for an id wins."""
        merged: Dict[str, GraphNode] = {}
        for nodes in node_lists:
            for node in nodes:
                merged.setdefault(node.id, node)
        return list(merged.values())

    def analyze(self, nodes: Iterable[GraphNode],
                existing: Iterable[GraphRelationship] = ()) -> ExtractionResult:
        """Evaluate every pattern and return the inferred relationships."""
        merged = self.merge_nodes(nodes)
        by_type: Dict[str, List[GraphNode]] = defaultdict(list)
        for node in merged:
            by_type[node.type].append(node)

        self.stats = self._empty_stats()
        seen = {rel.id for rel in existing}
        relationships: List[GraphRelationship] = []

        for pattern in self.patterns:
            sources = self._candidates(by_type, pattern.source_types, merged)
            targets = self._candidates(by_type, pattern.target_types, merged)
            for source in sources:
                for target in targets:
                    if source.id == target.id or not pattern.matcher(source, target):
                        continue
                    self._add(relationships, seen, pattern.name, pattern.relation_type,
                              source, target, pattern.confidence, pattern.description)

        if self.include_name_similarity:
            self._name_similarity(merged, relationships, seen)

        self.logger.info(
            f"Inferred {self.stats['total_correlations']} correlations across {len(merged)} nodes"
        )
        return ExtractionResult(nodes=[], relationships=relationships)

    @staticmethod
    def _candidates(by_type: Dict[str, List[GraphNode]], types: Optional[Tuple[str, ...]],
                    merged: List[GraphNode]) -> List[GraphNode]:
        if types is None:
            return merged
        candidates = []
        for node_type in types:
            candidates.extend(by_type.get(node_type, []))
        return candidates

    def _name_similarity(self, nodes: List[GraphNode], relationships: List[GraphRelationship],
                         seen: set):
        buckets: Dict[str, List[GraphNode]] = defaultdict(list)
        for node in nodes:
            key = normalize_name(node.name)
            if node.type in SIMILARITY_EXCLUDED_TYPES or len(key) < MIN_SIMILARITY_NAME_LENGTH:
                continue
            buckets[key[:SIMILARITY_BUCKET_PREFIX]].append(node)

        for bucket in buckets.values():
            for first, second in combinations(sorted(bucket, key=lambda n: n.id), 2):
                if first.type == second.type:
                    continue
                score = name_similarity(first.name, second.name)
                if score > self.similarity_threshold:
                    self._add(relationships, seen, "name_similarity", RelationType.REFERENCES,
                              first, second, self.similarity_confidence,
                              "names are nearly identical", similarity=round(score, 3))

    def _add(self, relationships: List[GraphRelationship], seen: set, pattern_name: str,
             relation_type: RelationType, source: GraphNode, target: GraphNode,
             confidence: float, description: str, **extra: Any):
        rel_id = relationship_id(relation_type, source.id, target.id)
        if rel_id in seen:
            return
        seen.add(rel_id)
        properties = {"correlation_pattern": pattern_name, "description": description}
        properties.update(extra)
        relationships.append(GraphRelationship(
            id=rel_id,
            type=relation_type,
            source=source.id,
            target=target.id,
            properties=properties,
            metadata={"confidence": confidence, "inferred": True},
        ))
        self.stats["total_correlations"] += 1
        by_pattern = self.stats["by_pattern"]
        by_pattern[pattern_name] = by_pattern.get(pattern_name, 0) + 1
        by_relation = self.stats["by_relation_type"]
        by_relation[relation_type.value] = by_relation.get(relation_type.value, 0) + 1
