import json
from io import StringIO
from typing import List, Dict, Any, Optional

from rich import box
from rich.console import Console
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from ..types import GraphNode, GraphRelationship

FORMATS = ("table", "json", "tree")
RENDER_WIDTH = 200


def render(renderable) -> str:
    """Render a rich object to plain text without colors or trailing padding."""
    console = Console(file=StringIO(), width=RENDER_WIDTH, color_system=None,
                      highlight=False, soft_wrap=False)
    console.print(renderable)
    lines = [line.rstrip() for line in console.file.getvalue().splitlines()]
    while lines and not lines[0]:
        lines.pop(0)
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def format_table(headers: List[str], rows: List[List[Any]], max_width: int = 60) -> str:
    """Plain text table, long cells cut with an ellipsis."""
    table = Table(box=box.SIMPLE_HEAD, show_edge=False, pad_edge=False)
    for header in headers:
        table.add_column(header, max_width=max_width, no_wrap=True, overflow="ellipsis")
    for row in rows:
        # Text cells so names like "[CALLS]" are not read as markup
        table.add_row(*(Text("" if cell is None else str(cell)) for cell in row))
    return render(table)


def node_rows(nodes: List[GraphNode]) -> List[List[Any]]:
    rows = []
    for node in nodes:
        location = node.properties.get("file_path") or node.properties.get("path") or ""
        line = node.properties.get("line_number")
        if location and line:
            location = f"{location}:{line}"
        score = node.properties.get("relevance_score")
        rows.append([node.type, node.name, location, "" if score is None else f"{score:.3f}"])
    return rows


def format_nodes(nodes: List[GraphNode], relationships: Optional[List[GraphRelationship]] = None,
                 fmt: str = "table") -> str:
    """Render nodes (and relationships) as a table, JSON or a tree."""
    relationships = relationships or []
    if fmt == "json":
        return json.dumps(
            {
                "nodes": [node.to_dict() for node in nodes],
                "relationships": [rel.to_dict() for rel in relationships],
            },
            indent=2,
            default=str,
        )
    if fmt == "tree":
        return format_tree(nodes, relationships)

    if not nodes:
        return "No nodes found."
    output = format_table(["TYPE", "NAME", "LOCATION", "SCORE"], node_rows(nodes))
    if relationships:
        names = {node.id: node.name for node in nodes}
        rel_rows = [
            [names.get(rel.source, rel.source), rel.type, names.get(rel.target, rel.target),
             "" if rel.confidence is None else f"{rel.confidence:.2f}"]
            for rel in relationships
        ]
        output += "\n\n" + format_table(["SOURCE", "RELATION", "TARGET", "CONFIDENCE"], rel_rows)
    return output


def format_tree(nodes: List[GraphNode], relationships: List[GraphRelationship]) -> str:
    """Tree following relationships out of nodes that have no incoming edge."""
    if not nodes:
        return "No nodes found."
    by_id = {node.id: node for node in nodes}
    children: Dict[str, List[GraphRelationship]] = {}
    has_parent = set()
    for rel in relationships:
        if rel.source in by_id and rel.target in by_id:
            children.setdefault(rel.source, []).append(rel)
            has_parent.add(rel.target)

    tree = Tree("graph", hide_root=True)
    visited = set()

    def walk(parent: Tree, node: GraphNode, via: Optional[str]):
        label = f"[{via}] " if via else ""
        branch = parent.add(Text(f"{label}{node.type}: {node.name}"))
        if node.id in visited:
            return
        visited.add(node.id)
        for rel in children.get(node.id, []):
            walk(branch, by_id[rel.target], rel.type)

    roots = [node for node in nodes if node.id not in has_parent] or nodes[:1]
    for root in roots:
        walk(tree, root, None)
    for node in nodes:
        if node.id not in visited:
            walk(tree, node, None)
    return render(tree)


def format_stats(stats: Dict[str, Any], fmt: str = "table") -> str:
    """Render store statistics."""
    if fmt == "json":
        return json.dumps(stats, indent=2)
    output = [
        f"Nodes: {stats.get('node_count', 0)}",
        f"Relationships: {stats.get('relationship_count', 0)}",
    ]
    node_types = stats.get("node_type_counts") or {}
    if node_types:
        output.append("")
        output.append(format_table(["NODE TYPE", "COUNT"], [[k, v] for k, v in node_types.items()]))
    rel_types = stats.get("relationship_type_counts") or {}
    if rel_types:
        output.append("")
        output.append(format_table(["RELATIONSHIP TYPE", "COUNT"], [[k, v] for k, v in rel_types.items()]))
    return "\n".join(output)
