"""
Deterministic identifiers for graph nodes and relationships.

Ids are pure functions of their inputs: the same logical entity maps to the same
id in every run and every process. A node id keeps a readable slug of its
qualifier but always ends with a digest of the full, unsanitized qualifier, so two
qualifiers that sanitize to the same slug still get different ids.
"""

import hashlib
import re
from enum import Enum
from typing import Union

_SLUG_PATTERN = re.compile(r"[^a-zA-Z0-9_-]+")
_SEPARATOR = "\x1f"
_SLUG_LENGTH = 48


def _digest(*parts: str, length: int) -> str:
    payload = _SEPARATOR.join(parts).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()[:length]


def _type_name(value: Union[str, Enum]) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def slugify(text: str) -> str:
    """Sanitize text into an id-safe slug."""
    slug = _SLUG_PATTERN.sub("_", text).strip("_")
    if len(slug) > _SLUG_LENGTH:
        slug = slug[-_SLUG_LENGTH:].lstrip("_")
    return slug or "_"


def node_id(node_type: Union[str, Enum], qualifier: str) -> str:
    """Build a node id from its type and qualifying key."""
    type_name = _type_name(node_type)
    return f"{type_name.lower()}:{slugify(qualifier)}:{_digest(type_name, qualifier, length=12)}"


def relationship_id(rel_type: Union[str, Enum], source_id: str, target_id: str) -> str:
    """Build a relationship id from its (type, source, target) triple."""
    type_name = _type_name(rel_type)
    return f"{type_name.lower()}:{_digest(type_name, source_id, target_id, length=16)}"


def package_id(name: str) -> str:
    return node_id("Package", name)


def file_id(path: str) -> str:
    return node_id("File", path)


def document_id(path: str) -> str:
    return node_id("Document", path)


def function_id(path: str, qualname: str) -> str:
    return node_id("Function", f"{path}::{qualname}")


def class_id(path: str, qualname: str, node_type: str = "Class") -> str:
    return node_id(node_type, f"{path}::{qualname}")


def schema_id(path: str, name: str) -> str:
    return node_id("SchemaEntity", f"{path}::{name}")


def schema_field_id(schema: str, field_name: str) -> str:
    return node_id("SchemaField", f"{schema}.{field_name}")


def table_id(name: str) -> str:
    return node_id("DatabaseTable", name)


def concept_id(name: str) -> str:
    return node_id("Concept", name.strip().lower())


def import_id(path: str, module: str, imported: str) -> str:
    return node_id("Import", f"{path}::{module}::{imported}")


def export_id(path: str, exported: str) -> str:
    return node_id("Export", f"{path}::{exported}")


def external_module_id(name: str) -> str:
    return node_id("ExternalModule", name)
