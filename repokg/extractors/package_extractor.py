from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Dict, Tuple

from ..identity import package_id
from ..scanner.manifests import Manifest, normalize_package_name
from ..types import ExtractionResult, GraphNode, NodeType, RelationType
from .base import BaseExtractor, register_extractor

KEY_FILES = ("README.md", "CHANGELOG.md", "DESIGN.md", "package.json", "pyproject.toml",
             "src/index.ts", "src/index.js", "index.ts", "index.js", "__main__.py")

ENTRY_POINT_NAMES = {"index.ts", "index.js", "__init__.py", "__main__.py"}


@dataclass
class PackageSource:
    """A discovered package and the key files found in its directory."""
    manifest: Manifest
    key_files: List[Tuple[str, int, bool]] = field(default_factory=list)


@register_extractor("package")
class PackageExtractor(BaseExtractor):
    """Reads package manifests and their internal dependency graph."""

    def __init__(self, working_dir, scanner=None, max_depth: int = 3):
        super().__init__(working_dir, scanner)
        self.max_depth = max_depth

    def extract_raw(self) -> List[PackageSource]:
        sources = []
        seen = set()
        for manifest in self.scanner.find_manifests(self.max_depth):
            # pyproject.toml and package.json may both describe one directory
            if (manifest.path, manifest.name) in seen:
                continue
            seen.add((manifest.path, manifest.name))
            sources.append(PackageSource(manifest=manifest, key_files=self._key_files(manifest)))
        return sources

    def _key_files(self, manifest: Manifest) -> List[Tuple[str, int, bool]]:
        package_dir = self.working_dir / manifest.path
        candidates = list(KEY_FILES)
        if manifest.main:
            candidates.append(manifest.main)
        module_name = manifest.name.replace("-", "_").lstrip("@").replace("/", "_")
        candidates.extend([f"{module_name}/__init__.py", f"src/{module_name}/__init__.py"])

        key_files = []
        for candidate in candidates:
            path = package_dir / candidate
            if not path.is_file():
                continue
            relative = path.resolve().relative_to(self.working_dir).as_posix()
            if any(relative == existing[0] for existing in key_files):
                continue
            is_entry_point = path.name in ENTRY_POINT_NAMES or candidate == manifest.main
            key_files.append((relative, path.stat().st_size, is_entry_point))
        return key_files

    def validate(self, raw: List[PackageSource]) -> bool:
        return bool(raw)

    def transform(self, raw: List[PackageSource]) -> ExtractionResult:
        result = ExtractionResult()
        by_name: Dict[str, Manifest] = {
            source.manifest.normalized_name: source.manifest for source in raw
        }
        internal = {
            source.manifest.name: self._internal_dependencies(source.manifest, by_name)
            for source in raw
        }
        build_order = self._build_order(internal)

        for source in raw:
            manifest = source.manifest
            pkg_id = package_id(manifest.name)
            internal_names = {dep for dep, _ in internal[manifest.name]}
            result.nodes.append(GraphNode(
                id=pkg_id,
                type=NodeType.PACKAGE,
                name=manifest.name,
                properties={
                    "version": manifest.version,
                    "description": manifest.description,
                    "path": manifest.path,
                    "manifest_file": manifest.manifest_file,
                    "manifest_kind": manifest.kind,
                    "main": manifest.main,
                    "types": manifest.types,
                    "keywords": manifest.keywords,
                    "dependencies": manifest.dependencies,
                    "dev_dependencies": manifest.dev_dependencies,
                    "external_dependencies": [
                        dep for dep in manifest.dependencies
                        if by_name.get(normalize_package_name(dep)) is None
                    ],
                    "internal_dependencies": sorted(internal_names),
                    "build_order": build_order.index(manifest.name),
                },
                metadata={"source_file": manifest.manifest_file, "package": manifest.name},
            ))

            for dependency, is_dev in internal[manifest.name]:
                result.relationships.append(self.relationship(
                    RelationType.DEPENDS_ON,
                    pkg_id,
                    package_id(dependency),
                    properties={
                        "dependency_type": "package",
                        "is_internal": True,
                        "is_dev": is_dev,
                    },
                    confidence=1.0,
                ))

            for relative, size, is_entry_point in source.key_files:
                file_node = self.file_node(
                    relative,
                    language=None,
                    size=size,
                    file_type=Path(relative).suffix.lstrip(".") or "file",
                    is_key_file=True,
                )
                result.nodes.append(file_node)
                result.relationships.append(self.relationship(
                    RelationType.CONTAINS,
                    pkg_id,
                    file_node.id,
                    properties={"is_entry_point": is_entry_point},
                    confidence=1.0,
                ))

        return result

    @staticmethod
    def _internal_dependencies(manifest: Manifest, by_name: Dict[str, Manifest]) -> List[Tuple[str, bool]]:
        dependencies = []
        for names, is_dev in ((manifest.dependencies, False), (manifest.dev_dependencies, True)):
            for name in names:
                target = by_name.get(normalize_package_name(name))
                if target is None or target.name == manifest.name:
                    continue
                if any(existing == target.name for existing, _ in dependencies):
                    continue
                dependencies.append((target.name, is_dev))
        return dependencies

    def _build_order(self, internal: Dict[str, List[Tuple[str, bool]]]) -> List[str]:
        """Dependencies first; packages caught in a cycle are appended last."""
        remaining = {name: {dep for dep, _ in deps} for name, deps in internal.items()}
        order: List[str] = []

        while remaining:
            ready = sorted(name for name, deps in remaining.items() if not deps - set(order))
            if not ready:
                cyclic = sorted(remaining)
                self.logger.warning(f"Circular package dependencies detected: {', '.join(cyclic)}")
                order.extend(cyclic)
                break
            for name in ready:
                order.append(name)
                del remaining[name]

        return order
