import json
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Dict, Any, Optional

from ..utils.logger import app_logger

logger = app_logger.bind(component="manifests")

MANIFEST_FILES = ("pyproject.toml", "package.json")

_REQUIREMENT_NAME = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)")


@dataclass
class Manifest:
    """Package metadata read from pyproject.toml or package.json."""
    name: str
    path: str
    manifest_file: str
    kind: str
    version: str = "0.0.0"
    description: str = ""
    keywords: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    dev_dependencies: List[str] = field(default_factory=list)
    main: Optional[str] = None
    types: Optional[str] = None
    scripts: Dict[str, str] = field(default_factory=dict)

    @property
    def normalized_name(self) -> str:
        return normalize_package_name(self.name)


def normalize_package_name(name: str) -> str:
    """Normalize a distribution name for comparison."""
    if name.startswith("@"):
        return name.lower()
    return re.sub(r"[-_.]+", "-", name).lower()


def requirement_name(requirement: str) -> Optional[str]:
    """Extract the distribution name from a requirement string."""
    match = _REQUIREMENT_NAME.match(requirement)
    return match.group(1) if match else None


def read_manifest(path: Path, root: Path) -> Optional[Manifest]:
    """Read a manifest file; returns None when it declares no package."""
    try:
        if path.name == "pyproject.toml":
            with open(path, "rb") as f:
                data = tomllib.load(f)
            return _from_pyproject(data, path, root)
        if path.name == "package.json":
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return _from_package_json(data, path, root)
    except (OSError, ValueError) as e:
        logger.warning(f"Cannot parse manifest {path}: {e}")
    return None


def find_manifest(directory: Path, root: Path) -> Optional[Manifest]:
    """Nearest manifest at or above directory, without leaving root."""
    current = directory
    while True:
        for manifest_file in MANIFEST_FILES:
            candidate = current / manifest_file
            if candidate.is_file():
                manifest = read_manifest(candidate, root)
                if manifest is not None:
                    return manifest
        if current == root or root not in current.parents:
            return None
        current = current.parent


def _relative_dir(path: Path, root: Path) -> str:
    relative = path.parent.relative_to(root).as_posix()
    return relative or "."


def _from_pyproject(data: Dict[str, Any], path: Path, root: Path) -> Optional[Manifest]:
    project = data.get("project") or {}
    poetry = (data.get("tool") or {}).get("poetry") or {}
    name = project.get("name") or poetry.get("name")
    if not name:
        return None

    dependencies = [requirement_name(req) for req in project.get("dependencies", [])]
    dev_dependencies = []
    for requirements in (project.get("optional-dependencies") or {}).values():
        dev_dependencies.extend(requirement_name(req) for req in requirements)
    for requirements in (data.get("dependency-groups") or {}).values():
        dev_dependencies.extend(requirement_name(req) for req in requirements if isinstance(req, str))

    if poetry:
        dependencies.extend(dep for dep in (poetry.get("dependencies") or {}) if dep != "python")
        for group in (poetry.get("group") or {}).values():
            dev_dependencies.extend((group.get("dependencies") or {}).keys())

    return Manifest(
        name=name,
        path=_relative_dir(path, root),
        manifest_file=path.relative_to(root).as_posix(),
        kind="pyproject",
        version=str(project.get("version") or poetry.get("version") or "0.0.0"),
        description=project.get("description") or poetry.get("description") or "",
        keywords=list(project.get("keywords") or poetry.get("keywords") or []),
        dependencies=_unique(dependencies),
        dev_dependencies=_unique(dev_dependencies),
        scripts=dict(project.get("scripts") or poetry.get("scripts") or {}),
    )


def _from_package_json(data: Dict[str, Any], path: Path, root: Path) -> Optional[Manifest]:
    if not isinstance(data, dict) or not data.get("name"):
        return None
    name = data["name"]

    scripts = data.get("bin") if isinstance(data.get("bin"), dict) else {}
    return Manifest(
        name=name,
        path=_relative_dir(path, root),
        manifest_file=path.relative_to(root).as_posix(),
        kind="package.json",
        version=str(data.get("version") or "1.0.0"),
        description=data.get("description") or "",
        keywords=list(data.get("keywords") or []),
        dependencies=_unique(list((data.get("dependencies") or {}).keys())),
        dev_dependencies=_unique(list((data.get("devDependencies") or {}).keys())),
        main=data.get("main"),
        types=data.get("types") or data.get("typings"),
        scripts=scripts,
    )


def _unique(names: List[Optional[str]]) -> List[str]:
    seen = []
    for name in names:
        if name and name not in seen:
            seen.append(name)
    return seen
