import math
from typing import List, Dict, Tuple

from ..types import GraphNode

TIER_SCORES = {3: 1.0, 2: 0.6, 1: 0.3, 0: 0.0}

# How well a node type answers each intent
INTENT_TYPE_WEIGHTS: Dict[str, Dict[str, float]] = {
    "find_function": {"Function": 2.0, "Method": 1.8, "API": 1.5},
    "find_class": {"Class": 2.0, "Interface": 1.8, "SchemaEntity": 1.6, "Type": 1.4},
    "find_relations": {"Package": 1.2, "File": 1.1, "Function": 1.1, "Class": 1.1},
    "find_path": {},
    "stats": {},
    "unknown": {},
}

TYPE_WEIGHT_FACTOR = 0.1
IMPORTANCE_WEIGHT = 0.2
USAGE_WEIGHT = 0.05
MAX_USAGE_BONUS = 0.2


def match_tier(name: str, entities: List[str]) -> int:
    """3 for an exact name match, 2 for a prefix, 1 for a substring, else 0."""
    name = (name or "").lower()
    best = 0
    for entity in entities:
        term = entity.lower()
        if not term:
            continue
        if name == term:
            return 3
        if name.startswith(term):
            best = max(best, 2)
        elif term in name:
            best = max(best, 1)
    return best


def _number(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def score_node(node: GraphNode, entities: List[str], intent: str) -> Tuple[float, int]:
    tier = match_tier(node.name, entities)
    score = TIER_SCORES[tier]
    score += INTENT_TYPE_WEIGHTS.get(intent, {}).get(node.type, 1.0) * TYPE_WEIGHT_FACTOR

    importance = max(0.0, min(1.0, _number(node.properties.get("importance"))))
    score += importance * IMPORTANCE_WEIGHT

    usage = max(0.0, _number(node.properties.get("usage_count")))
    score += min(MAX_USAGE_BONUS, USAGE_WEIGHT * math.log1p(usage))
    return round(score, 4), tier


def rank_nodes(nodes: List[GraphNode], entities: List[str], intent: str) -> List[GraphNode]:
    """Return copies of the nodes annotated with ``relevance_score``, best first.

    Ties fall back to match tier (exact, prefix, substring) and then to the order
    the nodes were returned in.
    """
    scored = []
    for index, node in enumerate(nodes):
        score, tier = score_node(node, entities, intent)
        annotated = GraphNode(
            id=node.id,
            type=node.type,
            name=node.name,
            properties={**node.properties, "relevance_score": score},
            metadata=dict(node.metadata),
        )
        scored.append((-score, -tier, index, annotated))
    scored.sort(key=lambda item: item[:3])
    return [item[3] for item in scored]
