from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, Union
from enum import Enum

from ..identity import file_id, relationship_id
from ..scanner.source_scanner import SourceScanner
from ..types import ExtractionResult, GraphNode, GraphRelationship
from ..utils.logger import app_logger

EXTRACTOR_REGISTRY: Dict[str, Type["BaseExtractor"]] = {}

EXTRACTOR_ORDER = ("package", "schema", "document", "function", "import")


class ExtractionError(Exception):
    """Raised when an extractor cannot read its sources."""


def register_extractor(name: str):
    """Class decorator registering an extractor under a category name."""
    def decorator(cls: Type["BaseExtractor"]) -> Type["BaseExtractor"]:
        cls.name = name
        EXTRACTOR_REGISTRY[name] = cls
        return cls
    return decorator


def available_extractors() -> List[str]:
    """Registered category names, in canonical order."""
    ordered = [name for name in EXTRACTOR_ORDER if name in EXTRACTOR_REGISTRY]
    ordered.extend(sorted(name for name in EXTRACTOR_REGISTRY if name not in EXTRACTOR_ORDER))
    return ordered


def get_extractor(name: str) -> Type["BaseExtractor"]:
    """Look up an extractor class by category name."""
    try:
        return EXTRACTOR_REGISTRY[name]
    except KeyError:
        raise ValueError(
            f"Unknown extractor '{name}'. Available: {', '.join(available_extractors())}"
        ) from None


def resolve_extractor_names(selection: Union[str, List[str]]) -> List[str]:
    """Expand a comma separated selection (``all`` included) into category names."""
    if isinstance(selection, str):
        requested = [part.strip().lower() for part in selection.split(",") if part.strip()]
    else:
        requested = [part.strip().lower() for part in selection]

    if not requested or "all" in requested:
        return available_extractors()

    names = []
    for name in requested:
        get_extractor(name)
        if name not in names:
            names.append(name)
    return names


class BaseExtractor(ABC):
    """Turns one category of source material into graph nodes and relationships.

    Subclasses implement ``extract_raw`` (filesystem scan) and ``transform``
    (deterministic mapping to nodes and relationships). ``extract`` chains them.
    """

    name: str = ""

    def __init__(self, working_dir: Union[str, Path], scanner: Optional[SourceScanner] = None):
        self.working_dir = Path(working_dir).resolve()
        self.scanner = scanner or SourceScanner(str(self.working_dir))
        self.logger = app_logger.bind(component=f"{self.name}_extractor")

    @abstractmethod
    def extract_raw(self) -> Any:
        """Scan the source tree for this category."""

    @abstractmethod
    def transform(self, raw: Any) -> ExtractionResult:
        """Map raw data to graph nodes and relationships."""

    def validate(self, raw: Any) -> bool:
        """Check raw data before transforming it."""
        return raw is not None

    def source_count(self, raw: Any) -> int:
        """Number of source items found."""
        try:
            return len(raw)
        except TypeError:
            return 0

    def extract(self) -> ExtractionResult:
        """Run the full extraction for this category."""
        if not self.working_dir.is_dir():
            raise ExtractionError(f"Working directory does not exist: {self.working_dir}")

        raw = self.extract_raw()
        if not self.validate(raw):
            self.logger.warning(f"No valid {self.name} sources found in {self.working_dir}")
            return ExtractionResult()

        result = self.transform(raw)
        self.logger.info(
            f"Extracted {len(result.nodes)} nodes and {len(result.relationships)} relationships "
            f"from {self.source_count(raw)} {self.name} sources"
        )
        return result

    def package_for(self, relative_path: str) -> Optional[str]:
        return self.scanner.package_for(relative_path)

    @staticmethod
    def relationship(rel_type: Union[str, Enum], source: str, target: str,
                     properties: Optional[Dict[str, Any]] = None,
                     confidence: Optional[float] = None) -> GraphRelationship:
        """Build a relationship with a deterministic id."""
        metadata = {}
        if confidence is not None:
            metadata["confidence"] = confidence
        return GraphRelationship(
            id=relationship_id(rel_type, source, target),
            type=rel_type,
            source=source,
            target=target,
            properties=properties or {},
            metadata=metadata,
        )

    def file_node(self, relative_path: str, language: Optional[str], size: int,
                  **properties: Any) -> GraphNode:
        """File node shared by several extractors; identical ids merge."""
        props = {
            "file_path": relative_path,
            "language": language,
            "size": size,
        }
        props.update(properties)
        metadata = {"source_file": relative_path}
        package = self.package_for(relative_path)
        if package:
            metadata["package"] = package
        return GraphNode(
            id=file_id(relative_path),
            type="File",
            name=Path(relative_path).name,
            properties=props,
            metadata=metadata,
        )
