import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, List, Optional, Union

from ..config import settings
from ..correlation.correlation_analyzer import CorrelationAnalyzer
from ..scanner.source_scanner import SourceScanner
from ..types import ExtractionResult, GraphNode, GraphRelationship
from ..utils.logger import app_logger
from .base import EXTRACTOR_REGISTRY, ExtractionError, resolve_extractor_names

# Importing the extractor modules registers them
from . import package_extractor  # noqa: F401
from . import schema_extractor  # noqa: F401
from . import document_extractor  # noqa: F401
from . import function_extractor  # noqa: F401
from . import import_extractor  # noqa: F401


@dataclass
class PipelineReport:
    """Outcome of one extraction run."""
    result: ExtractionResult
    extractor_counts: Dict[str, Dict[str, int]] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    correlation_stats: Dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "nodes": len(self.result.nodes),
            "relationships": len(self.result.relationships),
            "extractor_counts": self.extractor_counts,
            "failures": self.failures,
            "correlation_stats": self.correlation_stats,
            "duration_ms": self.duration_ms,
        }


def merge_results(results: List[ExtractionResult]) -> ExtractionResult:
    """Merge results in the given order, de-duplicating nodes and relationships by id."""
    nodes: Dict[str, GraphNode] = {}
    relationships: Dict[str, GraphRelationship] = {}
    for result in results:
        for node in result.nodes:
            nodes.setdefault(node.id, node)
        for rel in result.relationships:
            relationships.setdefault(rel.id, rel)
    return ExtractionResult(nodes=list(nodes.values()), relationships=list(relationships.values()))


class ExtractionPipeline:
    """Runs the selected extractors concurrently and correlates their output."""

    def __init__(self, working_dir: Union[str, Path], extractors: Union[str, List[str]] = "all",
                 max_workers: Optional[int] = None, correlate: bool = True,
                 analyzer: Optional[CorrelationAnalyzer] = None,
                 registry: Optional[Dict[str, type]] = None):
        self.working_dir = Path(working_dir).resolve()
        self.registry = EXTRACTOR_REGISTRY if registry is None else registry
        if registry is None:
            self.extractor_names = resolve_extractor_names(extractors)
        else:
            self.extractor_names = self._select(extractors)
        self.max_workers = max_workers or settings.extractor_workers
        self.correlate = correlate
        self.analyzer = analyzer or CorrelationAnalyzer()
        self.logger = app_logger.bind(component="extraction_pipeline")

    def _select(self, extractors: Union[str, List[str]]) -> List[str]:
        if isinstance(extractors, str):
            requested = [name.strip() for name in extractors.split(",") if name.strip()]
        else:
            requested = list(extractors)
        if not requested or "all" in requested:
            return list(self.registry)
        unknown = [name for name in requested if name not in self.registry]
        if unknown:
            raise ValueError(f"Unknown extractors: {', '.join(unknown)}")
        return requested

    def _run_one(self, name: str) -> ExtractionResult:
        scanner = SourceScanner(str(self.working_dir), ignored_dirs=settings.ignored_dirs_list)
        extractor = self.registry[name](self.working_dir, scanner=scanner)
        return extractor.extract()

    def run(self) -> PipelineReport:
        """Extract, merge and correlate."""
        start = time.time()
        self.logger.info(
            f"Running extractors [{', '.join(self.extractor_names)}] on {self.working_dir}"
        )

        results: Dict[str, ExtractionResult] = {}
        failures: Dict[str, str] = {}
        workers = max(1, min(self.max_workers, len(self.extractor_names)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self._run_one, name): name for name in self.extractor_names}
            for future in as_completed(futures):
                name = futures[future]
                try:
                    results[name] = future.result()
                except ExtractionError as e:
                    self.logger.error(f"Extractor '{name}' failed: {e}")
                    failures[name] = str(e)
                except Exception as e:
                    self.logger.error(f"Extractor '{name}' failed with {type(e).__name__}: {e}")
                    failures[name] = f"{type(e).__name__}: {e}"

        # Registry order, not completion order, decides which duplicate wins
        ordered = [results[name] for name in self.extractor_names if name in results]
        merged = merge_results(ordered)

        counts = {
            name: {"nodes": len(results[name].nodes), "relationships": len(results[name].relationships)}
            for name in self.extractor_names if name in results
        }

        correlation_stats: Dict[str, Any] = {}
        if self.correlate and merged.nodes:
            inferred = self.analyzer.analyze(merged.nodes, merged.relationships)
            merged = merge_results([merged, inferred])
            correlation_stats = dict(self.analyzer.stats)

        duration_ms = int((time.time() - start) * 1000)
        self.logger.info(
            f"Extraction finished: {len(merged.nodes)} nodes, {len(merged.relationships)} "
            f"relationships, {len(failures)} failed extractors in {duration_ms}ms"
        )
        return PipelineReport(
            result=merged,
            extractor_counts=counts,
            failures=failures,
            correlation_stats=correlation_stats,
            duration_ms=duration_ms,
        )
