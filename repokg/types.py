from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field
from enum import Enum


class NodeType(str, Enum):
    """Node type enumeration."""
    PACKAGE = "Package"
    FILE = "File"
    DOCUMENT = "Document"
    CONCEPT = "Concept"
    API = "API"
    FUNCTION = "Function"
    METHOD = "Method"
    CLASS = "Class"
    INTERFACE = "Interface"
    TYPE = "Type"
    SCHEMA_ENTITY = "SchemaEntity"
    SCHEMA_FIELD = "SchemaField"
    DATABASE_TABLE = "DatabaseTable"
    IMPORT = "Import"
    EXPORT = "Export"
    EXTERNAL_MODULE = "ExternalModule"


class RelationType(str, Enum):
    """Relationship type enumeration."""
    CONTAINS = "CONTAINS"
    DEPENDS_ON = "DEPENDS_ON"
    DOCUMENTS = "DOCUMENTS"
    REFERENCES = "REFERENCES"
    IMPLEMENTS = "IMPLEMENTS"
    EXTENDS = "EXTENDS"
    USES_TYPE = "USES_TYPE"
    CALLS = "CALLS"
    IMPORTS = "IMPORTS"
    EXPORTS = "EXPORTS"
    DEFINES = "DEFINES"
    HAS_FIELD = "HAS_FIELD"


@dataclass
class SourceFile:
    """A file found while scanning the repository."""
    path: str
    absolute_path: str
    language: Optional[str] = None
    size: int = 0
    content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "path": self.path,
            "absolute_path": self.absolute_path,
            "language": self.language,
            "size": self.size,
        }


def _type_value(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


@dataclass
class GraphNode:
    """A typed entity in the code graph."""
    id: str
    type: str
    name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.type = _type_value(self.type)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "properties": self.properties,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphNode":
        """Build a node from its dictionary form."""
        return cls(
            id=data["id"],
            type=data.get("type", "Unknown"),
            name=data.get("name", ""),
            properties=dict(data.get("properties") or {}),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class GraphRelationship:
    """A typed, directed edge between two nodes."""
    id: str
    type: str
    source: str
    target: str
    properties: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.type = _type_value(self.type)

    @property
    def confidence(self) -> Optional[float]:
        return self.metadata.get("confidence")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "target": self.target,
            "properties": self.properties,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphRelationship":
        """Build a relationship from its dictionary form."""
        return cls(
            id=data["id"],
            type=data.get("type", "RELATED_TO"),
            source=data["source"],
            target=data["target"],
            properties=dict(data.get("properties") or {}),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ExtractionResult:
    """Nodes and relationships produced by one extraction step."""
    nodes: List[GraphNode] = field(default_factory=list)
    relationships: List[GraphRelationship] = field(default_factory=list)

    def extend(self, other: "ExtractionResult"):
        """Append another result without de-duplication."""
        self.nodes.extend(other.nodes)
        self.relationships.extend(other.relationships)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "relationships": [rel.to_dict() for rel in self.relationships],
        }


@dataclass
class StoreQueryResult:
    """Result of an ad-hoc query against the graph store."""
    nodes: List[GraphNode] = field(default_factory=list)
    relationships: List[GraphRelationship] = field(default_factory=list)
    records: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "relationships": [rel.to_dict() for rel in self.relationships],
            "records": self.records,
            "metadata": self.metadata,
        }


@dataclass
class QueryResult:
    """Answer to a natural-language question."""
    intent: str
    confidence: float
    query: str
    question: str = ""
    nodes: List[GraphNode] = field(default_factory=list)
    relationships: List[GraphRelationship] = field(default_factory=list)
    explanation: str = ""
    suggestions: List[str] = field(default_factory=list)
    execution_time_ms: int = 0
    entities: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "intent": self.intent,
            "confidence": self.confidence,
            "query": self.query,
            "question": self.question,
            "nodes": [node.to_dict() for node in self.nodes],
            "relationships": [rel.to_dict() for rel in self.relationships],
            "explanation": self.explanation,
            "suggestions": self.suggestions,
            "execution_time_ms": self.execution_time_ms,
            "entities": self.entities,
        }


@dataclass
class SearchResult:
    """A fused hybrid search hit."""
    node: GraphNode
    score: float
    source: str
    vector_score: Optional[float] = None
    graph_rank: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "node": self.node.to_dict(),
            "score": self.score,
            "source": self.source,
            "vector_score": self.vector_score,
            "graph_rank": self.graph_rank,
        }


@dataclass
class HybridSearchResult:
    """Outcome of a hybrid vector and graph search."""
    query: str
    strategy: str
    fused_results: List[SearchResult] = field(default_factory=list)
    vector_count: int = 0
    graph_count: int = 0
    execution_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "query": self.query,
            "strategy": self.strategy,
            "fused_results": [result.to_dict() for result in self.fused_results],
            "vector_count": self.vector_count,
            "graph_count": self.graph_count,
            "execution_time_ms": self.execution_time_ms,
        }
