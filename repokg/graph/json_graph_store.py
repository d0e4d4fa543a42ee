import datetime
import json
from pathlib import Path
from typing import List, Dict, Any, Optional, Union

from ..types import GraphNode, GraphRelationship
from ..utils.logger import app_logger

NODES_FILE = "nodes.json"
RELATIONSHIPS_FILE = "relationships.json"


class JsonGraphStore:
    """JSON-based graph storage: one file of nodes, one of relationships."""

    def __init__(self, output_dir: Union[str, Path] = "graph-output"):
        self.logger = app_logger.bind(component="json_graph_store")
        self.output_dir = Path(output_dir)
        self.nodes: Dict[str, Dict[str, Any]] = {}
        self.relationships: Dict[str, Dict[str, Any]] = {}
        self._load_data()

    @property
    def nodes_path(self) -> Path:
        return self.output_dir / NODES_FILE

    @property
    def relationships_path(self) -> Path:
        return self.output_dir / RELATIONSHIPS_FILE

    def _load_data(self):
        """Load data from the JSON files, if present."""
        for path, target in ((self.nodes_path, self.nodes), (self.relationships_path, self.relationships)):
            if not path.exists():
                continue
            try:
                with open(path, "r", encoding="utf-8") as f:
                    items = json.load(f)
            except (OSError, ValueError) as e:
                self.logger.error(f"Error loading graph data from {path}: {e}")
                continue
            for item in items:
                if isinstance(item, dict) and item.get("id"):
                    target[item["id"]] = item
        if self.nodes or self.relationships:
            self.logger.info(
                f"Loaded {len(self.nodes)} nodes and {len(self.relationships)} relationships "
                f"from {self.output_dir}"
            )

    def _save_data(self):
        """Save data to the JSON files."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        for path, items in ((self.nodes_path, self.nodes), (self.relationships_path, self.relationships)):
            with open(path, "w", encoding="utf-8") as f:
                json.dump(list(items.values()), f, indent=2, ensure_ascii=False, default=str)
        self.logger.debug(f"Saved graph data to {self.output_dir}")

    @staticmethod
    def _merge(existing: Optional[Dict[str, Any]], incoming: Dict[str, Any], now: str) -> Dict[str, Any]:
        merged = dict(incoming)
        metadata = dict(incoming.get("metadata") or {})
        previous = (existing or {}).get("metadata") or {}
        metadata["created_at"] = previous.get("created_at") or metadata.get("created_at") or now
        metadata["updated_at"] = now
        merged["metadata"] = metadata
        return merged

    def import_data(self, nodes: List[GraphNode], relationships: List[GraphRelationship]) -> Dict[str, int]:
        """Merge nodes and relationships on id and write both files."""
        now = datetime.datetime.now().isoformat()
        for node in nodes:
            self.nodes[node.id] = self._merge(self.nodes.get(node.id), node.to_dict(), now)

        skipped = 0
        for rel in relationships:
            if rel.source not in self.nodes or rel.target not in self.nodes:
                skipped += 1
                continue
            self.relationships[rel.id] = self._merge(self.relationships.get(rel.id), rel.to_dict(), now)

        if skipped:
            self.logger.warning(f"Skipped {skipped} relationships whose endpoints are missing")
        self._save_data()
        self.logger.info(
            f"Wrote {len(self.nodes)} nodes and {len(self.relationships)} relationships to {self.output_dir}"
        )
        return {"nodes": len(nodes), "relationships": len(relationships) - skipped}

    def get_all_nodes(self) -> List[GraphNode]:
        return [GraphNode.from_dict(data) for data in self.nodes.values()]

    def get_all_relationships(self) -> List[GraphRelationship]:
        return [GraphRelationship.from_dict(data) for data in self.relationships.values()]

    def find_node(self, node_id: str) -> Optional[GraphNode]:
        data = self.nodes.get(node_id)
        return GraphNode.from_dict(data) if data else None

    def get_stats(self) -> Dict[str, Any]:
        """Get node and relationship counts, overall and by type."""
        node_types: Dict[str, int] = {}
        for data in self.nodes.values():
            node_types[data.get("type", "Unknown")] = node_types.get(data.get("type", "Unknown"), 0) + 1
        rel_types: Dict[str, int] = {}
        for data in self.relationships.values():
            rel_types[data.get("type", "UNKNOWN")] = rel_types.get(data.get("type", "UNKNOWN"), 0) + 1
        return {
            "node_count": len(self.nodes),
            "relationship_count": len(self.relationships),
            "node_type_counts": dict(sorted(node_types.items())),
            "relationship_type_counts": dict(sorted(rel_types.items())),
        }

    def clear_database(self):
        """Clear all data from the JSON files."""
        self.nodes = {}
        self.relationships = {}
        self._save_data()
        self.logger.warning(f"Cleared all graph data in {self.output_dir}")
