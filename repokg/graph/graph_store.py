import json
import re
from enum import Enum
from typing import List, Dict, Any, Optional, Iterable

from neo4j import GraphDatabase
from neo4j.exceptions import (
    AuthError,
    ClientError,
    CypherSyntaxError,
    Neo4jError,
    ServiceUnavailable,
    SessionExpired,
    TransientError,
    DriverError,
)
from neo4j.graph import Node, Path, Relationship

from ..config import StoreConfig
from ..types import GraphNode, GraphRelationship, StoreQueryResult
from ..utils.logger import app_logger

NODE_LABEL = "GraphNode"
NODE_BATCH_SIZE = 500
RELATIONSHIP_BATCH_SIZE = 1000

_LABEL_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_RESERVED_KEYS = {"id", "type", "name", "properties", "metadata", "created_at", "updated_at",
                  "source", "target"}


class StoreErrorKind(str, Enum):
    CONNECTION = "connection"
    QUERY_SYNTAX = "query_syntax"
    TIMEOUT = "timeout"


class StoreError(Exception):
    """Typed error raised by the graph store."""

    def __init__(self, kind: StoreErrorKind, message: str):
        super().__init__(message)
        self.kind = kind

    @property
    def transient(self) -> bool:
        return self.kind == StoreErrorKind.CONNECTION

    def __str__(self) -> str:
        return f"[{self.kind.value}] {super().__str__()}"


def classify_error(error: Exception) -> StoreErrorKind:
    """Map a driver exception onto a store error kind."""
    if isinstance(error, (ServiceUnavailable, SessionExpired, AuthError)):
        return StoreErrorKind.CONNECTION
    if isinstance(error, (TransientError, TimeoutError)):
        return StoreErrorKind.TIMEOUT
    if isinstance(error, ClientError) and "TimedOut" in (getattr(error, "code", None) or ""):
        return StoreErrorKind.TIMEOUT
    if isinstance(error, (CypherSyntaxError, Neo4jError)):
        return StoreErrorKind.QUERY_SYNTAX
    if isinstance(error, (OSError, DriverError)):
        return StoreErrorKind.CONNECTION
    return StoreErrorKind.QUERY_SYNTAX


def safe_label(value: str) -> str:
    """Validate a label or relationship type before it is inlined into Cypher."""
    if not _LABEL_PATTERN.match(value or ""):
        raise ValueError(f"Invalid graph label: {value!r}")
    return value


def _is_primitive(value: Any) -> bool:
    if isinstance(value, (str, bool, int, float)):
        return True
    if isinstance(value, list) and value:
        return all(isinstance(item, str) for item in value)
    return False


def flatten_properties(properties: Dict[str, Any], metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Top-level primitive properties, so they can be matched and indexed."""
    flat = {}
    for source in (metadata, properties):
        for key, value in source.items():
            if key in _RESERVED_KEYS or not _LABEL_PATTERN.match(key):
                continue
            if value is not None and _is_primitive(value):
                flat[key] = value
    return flat


def _loads(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        try:
            loaded = json.loads(value)
        except ValueError:
            return {}
        return loaded if isinstance(loaded, dict) else {}
    return {}


def node_from_record(node: Node) -> GraphNode:
    """Rebuild a GraphNode from a stored neo4j node."""
    data = dict(node)
    node_type = data.get("type")
    if not node_type:
        labels = [label for label in node.labels if label != NODE_LABEL]
        node_type = labels[0] if labels else "Unknown"

    properties = _loads(data.get("properties"))
    if not properties:
        properties = {k: v for k, v in data.items() if k not in _RESERVED_KEYS}
    metadata = _loads(data.get("metadata"))
    for key in ("created_at", "updated_at"):
        if data.get(key) is not None:
            metadata[key] = str(data[key])

    return GraphNode(
        id=data.get("id") or node.element_id,
        type=node_type,
        name=data.get("name", ""),
        properties=properties,
        metadata=metadata,
    )


def relationship_from_record(rel: Relationship) -> GraphRelationship:
    """Rebuild a GraphRelationship from a stored neo4j relationship."""
    data = dict(rel)
    start = rel.start_node
    end = rel.end_node
    metadata = _loads(data.get("metadata"))
    for key in ("created_at", "updated_at"):
        if data.get(key) is not None:
            metadata[key] = str(data[key])
    return GraphRelationship(
        id=data.get("id") or rel.element_id,
        type=rel.type,
        source=(start.get("id") if start is not None else None) or "",
        target=(end.get("id") if end is not None else None) or "",
        properties=_loads(data.get("properties")),
        metadata=metadata,
    )


class GraphStoreService:
    """Neo4j-backed property graph with idempotent merge-on-id import."""

    def __init__(self, config: StoreConfig, driver=None):
        self.logger = app_logger.bind(component="graph_store")
        self.config = config
        self.driver = driver
        self._owns_driver = driver is None

    @property
    def connected(self) -> bool:
        return self.driver is not None

    def connect(self):
        """Open the pooled driver, verify it and ensure constraints."""
        if self.driver is None:
            try:
                self.driver = GraphDatabase.driver(
                    self.config.connection_uri,
                    auth=(self.config.username, self.config.password),
                    max_connection_pool_size=self.config.max_connection_pool_size,
                    connection_acquisition_timeout=self.config.connection_acquisition_timeout,
                    max_transaction_retry_time=self.config.max_transaction_retry_time,
                    max_connection_lifetime=self.config.max_connection_lifetime,
                )
                self.driver.verify_connectivity()
            except Exception as e:
                self.driver = None
                self.logger.error(f"Failed to connect to Neo4j at {self.config.connection_uri}: {e}")
                raise StoreError(classify_error(e), f"Cannot connect to {self.config.connection_uri}: {e}") from e
            self._owns_driver = True
            self.logger.info(f"Connected to Neo4j at {self.config.connection_uri}")
        self._ensure_constraints()

    def disconnect(self):
        """Close the driver."""
        if self.driver is not None and self._owns_driver:
            self.driver.close()
            self.logger.info("Disconnected from Neo4j")
        self.driver = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()

    def _session(self):
        if self.driver is None:
            raise StoreError(StoreErrorKind.CONNECTION, "Graph store is not connected")
        return self.driver.session(database=self.config.database)

    def _ensure_constraints(self):
        """Ensure necessary constraints and indexes exist."""
        statements = [
            f"CREATE CONSTRAINT node_id_unique IF NOT EXISTS FOR (n:{NODE_LABEL}) REQUIRE n.id IS UNIQUE",
            f"CREATE INDEX node_type_index IF NOT EXISTS FOR (n:{NODE_LABEL}) ON (n.type)",
            f"CREATE INDEX node_name_index IF NOT EXISTS FOR (n:{NODE_LABEL}) ON (n.name)",
        ]
        with self._session() as session:
            for statement in statements:
                try:
                    session.run(statement).consume()
                    self.logger.debug(f"Ensured schema: {statement}")
                except Neo4jError as e:
                    self.logger.warning(f"Failed to apply {statement}: {e}")

    def _run(self, work, *args):
        """Run a unit of work, translating driver errors into StoreError."""
        try:
            return work(*args)
        except StoreError:
            raise
        except (Neo4jError, DriverError, OSError, TimeoutError) as e:
            kind = classify_error(e)
            self.logger.error(f"Graph store {kind.value} error: {e}")
            raise StoreError(kind, str(e)) from e

    @staticmethod
    def _node_row(node: GraphNode) -> Dict[str, Any]:
        return {
            "id": node.id,
            "type": node.type,
            "name": node.name,
            "flat": flatten_properties(node.properties, node.metadata),
            "properties": json.dumps(node.properties, sort_keys=True, default=str),
            "metadata": json.dumps(node.metadata, sort_keys=True, default=str),
        }

    @staticmethod
    def _relationship_row(rel: GraphRelationship) -> Dict[str, Any]:
        return {
            "id": rel.id,
            "source": rel.source,
            "target": rel.target,
            "flat": flatten_properties(rel.properties, {}),
            "confidence": rel.confidence,
            "properties": json.dumps(rel.properties, sort_keys=True, default=str),
            "metadata": json.dumps(rel.metadata, sort_keys=True, default=str),
        }

    @staticmethod
    def _dedupe(items: Iterable) -> List:
        unique: Dict[str, Any] = {}
        for item in items:
            unique.setdefault(item.id, item)
        return list(unique.values())

    @staticmethod
    def _group(items: Iterable, key) -> Dict[str, List]:
        groups: Dict[str, List] = {}
        for item in items:
            groups.setdefault(key(item), []).append(item)
        return groups

    def import_data(self, nodes: List[GraphNode], relationships: List[GraphRelationship]) -> Dict[str, int]:
        """Upsert nodes and relationships, merging on id."""
        unique_nodes = self._dedupe(nodes)
        unique_rels = self._dedupe(relationships)

        def work():
            node_count = 0
            rel_count = 0
            with self._session() as session:
                for node_type, group in self._group(unique_nodes, lambda n: n.type).items():
                    cypher = (
                        "UNWIND $rows AS row "
                        f"MERGE (n:{NODE_LABEL} {{id: row.id}}) "
                        "ON CREATE SET n.created_at = datetime() "
                        "WITH n, row, n.created_at AS created "
                        # Replace the property map so fields dropped since the last import go away
                        "SET n = row.flat "
                        f"SET n:{safe_label(node_type)}, n.id = row.id, n.type = row.type, "
                        "n.name = row.name, n.properties = row.properties, "
                        "n.metadata = row.metadata, n.created_at = created, n.updated_at = datetime()"
                    )
                    for start in range(0, len(group), NODE_BATCH_SIZE):
                        rows = [self._node_row(node) for node in group[start:start + NODE_BATCH_SIZE]]
                        session.execute_write(lambda tx: tx.run(cypher, rows=rows).consume())
                        node_count += len(rows)
                        self.logger.debug(f"Imported {len(rows)} {node_type} nodes")

                for rel_type, group in self._group(unique_rels, lambda r: r.type).items():
                    cypher = (
                        "UNWIND $rows AS row "
                        f"MATCH (s:{NODE_LABEL} {{id: row.source}}) "
                        f"MATCH (t:{NODE_LABEL} {{id: row.target}}) "
                        f"MERGE (s)-[r:{safe_label(rel_type)} {{id: row.id}}]->(t) "
                        "ON CREATE SET r.created_at = datetime() "
                        "WITH r, row, r.created_at AS created "
                        "SET r = row.flat "
                        "SET r.id = row.id, r.confidence = row.confidence, "
                        "r.properties = row.properties, r.metadata = row.metadata, "
                        "r.created_at = created, r.updated_at = datetime() "
                        "RETURN count(r) AS merged"
                    )
                    for start in range(0, len(group), RELATIONSHIP_BATCH_SIZE):
                        rows = [self._relationship_row(rel) for rel in group[start:start + RELATIONSHIP_BATCH_SIZE]]
                        merged = session.execute_write(
                            lambda tx: tx.run(cypher, rows=rows).single()
                        )
                        rel_count += merged["merged"] if merged else 0
                        self.logger.debug(f"Imported {len(rows)} {rel_type} relationships")
            return node_count, rel_count

        node_count, rel_count = self._run(work)
        skipped = len(unique_rels) - rel_count
        if skipped:
            self.logger.warning(f"Skipped {skipped} relationships whose endpoints are missing")
        self.logger.info(f"Imported {node_count} nodes and {rel_count} relationships")
        return {"nodes": node_count, "relationships": rel_count}

    def query(self, cypher: str, params: Optional[Dict[str, Any]] = None) -> StoreQueryResult:
        """Run a parameterized Cypher query and collect nodes, relationships and records."""
        def work():
            with self._session() as session:
                result = session.run(cypher, params or {})
                records = list(result)
                summary = result.consume()
                return records, summary

        records, summary = self._run(work)
        nodes: Dict[str, GraphNode] = {}
        relationships: Dict[str, GraphRelationship] = {}
        rows = []
        for record in records:
            rows.append({key: self._convert(value, nodes, relationships) for key, value in record.items()})

        available_after = getattr(summary, "result_available_after", None)
        return StoreQueryResult(
            nodes=list(nodes.values()),
            relationships=list(relationships.values()),
            records=rows,
            metadata={"record_count": len(rows), "available_after_ms": available_after},
        )

    def _convert(self, value: Any, nodes: Dict[str, GraphNode],
                 relationships: Dict[str, GraphRelationship]) -> Any:
        if isinstance(value, Node):
            node = node_from_record(value)
            nodes.setdefault(node.id, node)
            return node.to_dict()
        if isinstance(value, Relationship):
            rel = relationship_from_record(value)
            relationships.setdefault(rel.id, rel)
            return rel.to_dict()
        if isinstance(value, Path):
            for node in value.nodes:
                self._convert(node, nodes, relationships)
            for rel in value.relationships:
                self._convert(rel, nodes, relationships)
            return {
                "nodes": [dict(node).get("id") for node in value.nodes],
                "relationships": [dict(rel).get("id") for rel in value.relationships],
            }
        if isinstance(value, list):
            return [self._convert(item, nodes, relationships) for item in value]
        if isinstance(value, dict):
            return {key: self._convert(item, nodes, relationships) for key, item in value.items()}
        if hasattr(value, "iso_format"):
            return value.iso_format()
        return value

    def find_node(self, node_id: str) -> Optional[GraphNode]:
        """Fetch one node by id."""
        result = self.query(f"MATCH (n:{NODE_LABEL} {{id: $id}}) RETURN n", {"id": node_id})
        return result.nodes[0] if result.nodes else None

    def get_stats(self) -> Dict[str, Any]:
        """Get node and relationship counts, overall and by type."""
        def work():
            with self._session() as session:
                node_types = {
                    record["type"]: record["count"]
                    for record in session.run(
                        f"MATCH (n:{NODE_LABEL}) RETURN n.type AS type, count(n) AS count"
                    )
                }
                rel_types = {
                    record["type"]: record["count"]
                    for record in session.run(
                        f"MATCH (:{NODE_LABEL})-[r]->(:{NODE_LABEL}) "
                        "RETURN type(r) AS type, count(r) AS count"
                    )
                }
            return node_types, rel_types

        node_types, rel_types = self._run(work)
        return {
            "node_count": sum(node_types.values()),
            "relationship_count": sum(rel_types.values()),
            "node_type_counts": dict(sorted(node_types.items(), key=lambda kv: str(kv[0]))),
            "relationship_type_counts": dict(sorted(rel_types.items())),
        }

    def clear_database(self):
        """Clear all data from the database."""
        def work():
            with self._session() as session:
                session.run("MATCH (n) DETACH DELETE n").consume()

        self._run(work)
        self.logger.warning("Cleared all data from the graph store")
