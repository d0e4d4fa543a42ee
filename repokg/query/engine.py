"""
Natural-language question answering over the code graph.

``IntelligentQueryEngine.query`` classifies the question, extracts candidate
names, builds a bounded Cypher query, runs it through the graph store and ranks
what comes back. A failing store is an error; an unclear question is not, it
yields ``intent == "unknown"`` with suggestions.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..config import settings
from ..graph.graph_store import StoreError
from ..types import QueryResult, StoreQueryResult
from ..utils.logger import app_logger
from .cache import NoOpCache, TTLCache
from .intent import IntentClassifier, IntentResult, IntentStrategy, OpenAIIntentClassifier
from .query_builder import BuiltQuery, CypherQueryBuilder, extract_entities
from .ranking import rank_nodes

LOW_CONFIDENCE = 0.5
STORE_ATTEMPTS = 2

INTENT_LABELS = {
    "find_function": "function",
    "find_class": "class or schema",
    "find_relations": "related node",
    "find_path": "connecting path",
    "stats": "node type",
    "unknown": "node",
}


class QueryEngineError(Exception):
    """Raised when a question cannot be answered because the store failed."""


@dataclass
class QueryOptions:
    """Bounds applied to a generated query."""
    limit: int = 20
    depth: int = 1
    direction: str = "both"
    node_type: Optional[str] = None

    def cache_key(self) -> Tuple:
        return (self.limit, self.depth, self.direction, self.node_type)


class IntelligentQueryEngine:
    """Answers questions about the graph with ranked, explained results."""

    def __init__(self, store, classifier: Optional[IntentClassifier] = None,
                 ai_strategy: Optional[IntentStrategy] = None, ai_timeout: Optional[float] = None,
                 cache=None, builder: Optional[CypherQueryBuilder] = None):
        self.logger = app_logger.bind(component="query_engine")
        self.store = store
        self.classifier = classifier or IntentClassifier()
        self.ai_strategy = ai_strategy
        self.ai_timeout = settings.ai_classifier_timeout if ai_timeout is None else ai_timeout
        self.cache = cache if cache is not None else NoOpCache()
        self.builder = builder or CypherQueryBuilder(max_depth=settings.query_max_depth)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def _ai_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="intent-ai")
            return self._executor

    def classify(self, text: str) -> IntentResult:
        """Rule-based intent, with the AI strategy consulted only when the rules give up."""
        rule_result = self.classifier.classify(text)
        if rule_result.intent != "unknown" or self.ai_strategy is None:
            return rule_result

        cancel_event = threading.Event()
        future = self._ai_executor().submit(self.ai_strategy.classify, text, cancel_event)
        try:
            ai_result = future.result(timeout=self.ai_timeout)
        except FutureTimeoutError:
            cancel_event.set()
            future.cancel()
            self.logger.warning(f"AI intent classification timed out after {self.ai_timeout}s")
            return rule_result
        except Exception as e:
            self.logger.warning(f"AI intent classification failed: {e}")
            return rule_result

        if ai_result is None or ai_result.intent == "unknown":
            return rule_result
        self.logger.debug(f"AI classified '{text}' as {ai_result.intent} ({ai_result.confidence:.2f})")
        return ai_result

    def query(self, text: str, options: Optional[QueryOptions] = None) -> QueryResult:
        """Answer a natural-language question."""
        options = options or QueryOptions(limit=settings.query_limit, depth=settings.query_depth)
        cache_key = ((text or "").strip().lower(), options.cache_key())
        cached = self.cache.get(cache_key)
        if cached is not None:
            self.logger.debug(f"Cache hit for '{text}'")
            return cached

        start = time.time()
        intent = self.classify(text)
        entities = extract_entities(text)
        built = self.builder.build(
            intent.intent,
            entities,
            limit=options.limit,
            depth=options.depth,
            direction=options.direction,
            node_type=options.node_type,
        )
        confidence = intent.confidence if built.intent == intent.intent else min(intent.confidence, 0.5)

        store_result = StoreQueryResult()
        if built.cypher:
            store_result = self._execute(built)

        nodes = rank_nodes(store_result.nodes, built.entities, built.intent)
        # Path queries limit whole paths, every node on them is kept
        if built.intent != "find_path":
            nodes = nodes[:built.limit]
        node_ids = {node.id for node in nodes}
        relationships = [
            rel for rel in store_result.relationships
            if rel.source in node_ids and rel.target in node_ids
        ]

        result = QueryResult(
            intent=built.intent,
            confidence=round(confidence, 2),
            query=built.cypher or "",
            question=text,
            nodes=nodes,
            relationships=relationships,
            explanation=self._explain(built, nodes, store_result),
            suggestions=self._suggest(built, confidence, len(nodes)),
            execution_time_ms=int((time.time() - start) * 1000),
            entities=built.entities,
        )
        self.logger.info(
            f"'{text}' -> {result.intent} ({result.confidence:.2f}), "
            f"{len(nodes)} nodes in {result.execution_time_ms}ms"
        )
        self.cache.set(cache_key, result)
        return result

    def _execute(self, built: BuiltQuery) -> StoreQueryResult:
        """Run the query, retrying a transient store error once."""
        for attempt in range(1, STORE_ATTEMPTS + 1):
            try:
                return self.store.query(built.cypher, built.params)
            except StoreError as e:
                if e.transient and attempt < STORE_ATTEMPTS:
                    self.logger.warning(f"Transient store error, retrying: {e}")
                    continue
                self.logger.error(f"Query failed for intent {built.intent}: {e}")
                raise QueryEngineError(f"Graph query failed: {e}") from e
        raise QueryEngineError("Graph query failed")

    @staticmethod
    def _explain(built: BuiltQuery, nodes: List, store_result: StoreQueryResult) -> str:
        names = ", ".join(f"'{entity}'" for entity in built.entities)
        label = INTENT_LABELS.get(built.intent, "node")

        if built.intent == "stats":
            counts = [
                f"{record.get('type')}: {record.get('count')}"
                for record in store_result.records if record.get("type") is not None
            ]
            if not counts:
                return "The graph is empty."
            total = sum(record.get("count") or 0 for record in store_result.records)
            return f"The graph holds {total} nodes by type ({'; '.join(counts)})."

        if built.cypher is None:
            return "Could not identify what to look for in the question."
        if not nodes:
            return f"No {label} matched {names or 'the question'}."

        if built.intent == "find_path":
            return (
                f"Found {len(store_result.records)} path(s) between '{built.entities[0]}' and "
                f"'{built.entities[1]}' touching {len(nodes)} nodes."
            )
        if built.intent == "find_relations":
            return (
                f"Found {len(nodes)} nodes within {built.depth} hop(s) of {names}, "
                f"best match '{nodes[0].name}'."
            )
        return f"Found {len(nodes)} {label} result(s) for {names or 'the question'}, best match '{nodes[0].name}'."

    @staticmethod
    def _suggest(built: BuiltQuery, confidence: float, count: int) -> List[str]:
        suggestions = list(built.notes)
        if built.cypher is not None and built.intent != "stats":
            if count == 0:
                suggestions.append("Try a shorter or broader name, or check the spelling")
            elif count >= built.limit:
                suggestions.append(
                    f"Results were capped at {built.limit}; add a node type filter or quote an exact name"
                )
        if confidence < LOW_CONFIDENCE:
            suggestions.append(
                "Rephrase with a clear verb, e.g. \"find function createLogger\", "
                "\"what calls parseConfig\" or \"path between UserService and Database\""
            )
        return suggestions


def create_query_engine(store) -> IntelligentQueryEngine:
    """Engine wired from settings: TTL cache, and the OpenAI classifier when enabled."""
    ai_strategy = None
    if settings.ai_classifier_enabled:
        if settings.openai_api_key:
            ai_strategy = OpenAIIntentClassifier(
                model=settings.ai_classifier_model,
                api_key=settings.openai_api_key,
            )
        else:
            app_logger.bind(component="query_engine").warning(
                "AI intent classification is enabled but no OpenAI API key is set"
            )
    return IntelligentQueryEngine(
        store,
        ai_strategy=ai_strategy,
        cache=TTLCache(max_size=settings.query_cache_size, ttl=settings.query_cache_ttl),
    )
