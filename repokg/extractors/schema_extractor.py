import ast
import re
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from ..identity import schema_id, schema_field_id, table_id
from ..types import ExtractionResult, GraphNode, NodeType, RelationType, SourceFile
from .base import BaseExtractor, register_extractor

PYDANTIC_BASES = {"BaseModel", "BaseSettings", "SQLModel", "RootModel"}
ORM_BASES = {"Base", "DeclarativeBase", "Model", "DeclarativeBaseNoMeta"}
FIELD_CALLS = {"Field", "field", "Column", "mapped_column", "Mapped"}
COLUMN_CALLS = {"Column", "mapped_column"}

ZOD_SCHEMA = re.compile(r"(?:export\s+)?const\s+(\w+)\s*=\s*z\.object\(\s*\{")
ZOD_FIELD = re.compile(r"^\s*['\"]?(\w+)['\"]?\s*:\s*z\.(\w+)\(([^)]*)\)((?:\s*\.\w+\([^)]*\))*)", re.MULTILINE)
ZOD_CHAIN = re.compile(r"\.(\w+)\(([^)]*)\)")


@dataclass
class SchemaField:
    name: str
    field_type: str
    required: bool = True
    default: Optional[str] = None
    validation: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SchemaDefinition:
    """A declarative data model found in source."""
    name: str
    file_path: str
    line_number: int
    kind: str
    language: str
    bases: List[str] = field(default_factory=list)
    fields: List[SchemaField] = field(default_factory=list)
    table_name: Optional[str] = None
    docstring: Optional[str] = None


def _base_name(node: ast.expr) -> str:
    if isinstance(node, ast.Subscript):
        node = node.value
    if isinstance(node, ast.Attribute):
        return node.attr
    if isinstance(node, ast.Name):
        return node.id
    return ast.unparse(node)


def _call_name(node: Optional[ast.expr]) -> Optional[str]:
    if isinstance(node, ast.Call):
        return _base_name(node.func)
    return None


def _literal(node: ast.expr) -> Any:
    try:
        return ast.literal_eval(node)
    except (ValueError, SyntaxError, TypeError):
        return ast.unparse(node)


@register_extractor("schema")
class SchemaExtractor(BaseExtractor):
    """Finds pydantic, dataclass, ORM and zod schema definitions."""

    def extract_raw(self) -> List[SchemaDefinition]:
        definitions: List[SchemaDefinition] = []
        files = self.scanner.scan(extensions={".py", ".ts", ".tsx", ".js"})
        for source_file in self.scanner.load_files_content(files):
            if source_file.language == "python":
                definitions.extend(self._parse_python(source_file))
            elif "z.object(" in source_file.content:
                definitions.extend(self._parse_zod(source_file))
        return definitions

    def _parse_python(self, source_file: SourceFile) -> List[SchemaDefinition]:
        try:
            tree = ast.parse(source_file.content, filename=source_file.path)
        except SyntaxError as e:
            self.logger.warning(f"Skipping {source_file.path}: {e}")
            return []

        classes = [node for node in ast.walk(tree) if isinstance(node, ast.ClassDef)]
        kinds: Dict[str, str] = {}
        for cls in classes:
            kind = self._schema_kind(cls)
            if kind:
                kinds[cls.name] = kind

        # Subclasses of schema classes in the same module are schemas too
        changed = True
        while changed:
            changed = False
            for cls in classes:
                if cls.name in kinds:
                    continue
                for base in cls.bases:
                    if _base_name(base) in kinds:
                        kinds[cls.name] = kinds[_base_name(base)]
                        changed = True
                        break

        definitions = []
        for cls in classes:
            if cls.name not in kinds:
                continue
            definition = SchemaDefinition(
                name=cls.name,
                file_path=source_file.path,
                line_number=cls.lineno,
                kind=kinds[cls.name],
                language="python",
                bases=[_base_name(base) for base in cls.bases],
                docstring=ast.get_docstring(cls),
            )
            self._collect_python_fields(cls, definition)
            definitions.append(definition)
        return definitions

    @staticmethod
    def _schema_kind(cls: ast.ClassDef) -> Optional[str]:
        bases = {_base_name(base) for base in cls.bases}
        decorators = {_base_name(d.func if isinstance(d, ast.Call) else d) for d in cls.decorator_list}
        has_table = any(
            isinstance(stmt, ast.Assign)
            and any(isinstance(t, ast.Name) and t.id == "__tablename__" for t in stmt.targets)
            for stmt in cls.body
        )

        if has_table or bases & ORM_BASES:
            return "orm"
        if bases & PYDANTIC_BASES:
            return "pydantic"
        if "dataclass" in decorators:
            return "dataclass"
        if "TypedDict" in bases:
            return "typeddict"
        return None

    @staticmethod
    def _collect_python_fields(cls: ast.ClassDef, definition: SchemaDefinition):
        for keyword in cls.keywords:
            if keyword.arg == "table" and _literal(keyword.value) is True:
                definition.table_name = cls.name.lower()

        for stmt in cls.body:
            if isinstance(stmt, ast.Assign) and len(stmt.targets) == 1 and isinstance(stmt.targets[0], ast.Name):
                name = stmt.targets[0].id
                if name == "__tablename__":
                    value = _literal(stmt.value)
                    definition.table_name = value if isinstance(value, str) else None
                elif _call_name(stmt.value) in COLUMN_CALLS:
                    call = stmt.value
                    column_type = ast.unparse(call.args[0]) if call.args else "Any"
                    validation = {kw.arg: _literal(kw.value) for kw in call.keywords if kw.arg}
                    definition.fields.append(SchemaField(
                        name=name,
                        field_type=column_type,
                        required=not validation.get("nullable", False),
                        validation=validation,
                    ))

            elif isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
                name = stmt.target.id
                annotation = ast.unparse(stmt.annotation)
                if name.startswith("__") or annotation.startswith(("ClassVar", "typing.ClassVar")):
                    continue

                required = stmt.value is None
                default = None
                validation: Dict[str, Any] = {}
                if stmt.value is not None:
                    if _call_name(stmt.value) in FIELD_CALLS:
                        call = stmt.value
                        validation = {kw.arg: _literal(kw.value) for kw in call.keywords if kw.arg}
                        positional_default = call.args[0] if call.args else None
                        if positional_default is not None and not (
                            isinstance(positional_default, ast.Constant)
                            and positional_default.value is Ellipsis
                        ) and _call_name(stmt.value) not in COLUMN_CALLS:
                            default = ast.unparse(positional_default)
                        elif "default" in validation:
                            default = str(validation.pop("default"))
                        elif "default_factory" in validation:
                            default = f"{validation.pop('default_factory')}()"
                        required = default is None and not validation.get("nullable", False)
                    else:
                        default = ast.unparse(stmt.value)
                        required = False

                definition.fields.append(SchemaField(
                    name=name,
                    field_type=annotation,
                    required=required,
                    default=default,
                    validation=validation,
                ))

    def _parse_zod(self, source_file: SourceFile) -> List[SchemaDefinition]:
        content = source_file.content
        definitions = []
        for match in ZOD_SCHEMA.finditer(content):
            body = self._brace_body(content, match.end() - 1)
            if body is None:
                continue
            name = match.group(1)
            definition = SchemaDefinition(
                name=name[:-len("Schema")] if name.endswith("Schema") and len(name) > 6 else name,
                file_path=source_file.path,
                line_number=content.count("\n", 0, match.start()) + 1,
                kind="zod",
                language=source_file.language or "typescript",
            )
            for field_match in ZOD_FIELD.finditer(body):
                chain = {method: args.strip() for method, args in ZOD_CHAIN.findall(field_match.group(4) or "")}
                definition.fields.append(SchemaField(
                    name=field_match.group(1),
                    field_type=field_match.group(2),
                    required="optional" not in chain and "nullish" not in chain,
                    default=chain.get("default"),
                    validation={k: v for k, v in chain.items() if k not in ("optional", "default")},
                ))
            definitions.append(definition)
        return definitions

    @staticmethod
    def _brace_body(content: str, open_index: int) -> Optional[str]:
        depth = 0
        for index in range(open_index, len(content)):
            char = content[index]
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return content[open_index + 1:index]
        return None

    def validate(self, raw: List[SchemaDefinition]) -> bool:
        return all(definition.name and definition.file_path for definition in raw)

    def transform(self, raw: List[SchemaDefinition]) -> ExtractionResult:
        result = ExtractionResult()
        ids_by_name: Dict[str, List[SchemaDefinition]] = {}
        for definition in raw:
            ids_by_name.setdefault(definition.name, []).append(definition)

        for definition in raw:
            entity_id = schema_id(definition.file_path, definition.name)
            metadata = {"source_file": definition.file_path}
            package = self.package_for(definition.file_path)
            if package:
                metadata["package"] = package

            result.nodes.append(GraphNode(
                id=entity_id,
                type=NodeType.SCHEMA_ENTITY,
                name=definition.name,
                properties={
                    "file_path": definition.file_path,
                    "line_number": definition.line_number,
                    "kind": definition.kind,
                    "language": definition.language,
                    "table_name": definition.table_name,
                    "bases": definition.bases,
                    "fields": [f.name for f in definition.fields],
                    "description": definition.docstring,
                },
                metadata=metadata,
            ))

            for schema_field in definition.fields:
                field_node_id = schema_field_id(entity_id, schema_field.name)
                result.nodes.append(GraphNode(
                    id=field_node_id,
                    type=NodeType.SCHEMA_FIELD,
                    name=schema_field.name,
                    properties={
                        "entity": definition.name,
                        "field_type": schema_field.field_type,
                        "required": schema_field.required,
                        "default": schema_field.default,
                        "validation": schema_field.validation,
                        "file_path": definition.file_path,
                    },
                    metadata=dict(metadata),
                ))
                result.relationships.append(self.relationship(
                    RelationType.HAS_FIELD, entity_id, field_node_id, confidence=1.0,
                ))

                for other_name, others in ids_by_name.items():
                    if other_name == definition.name:
                        continue
                    if re.search(rf"\b{re.escape(other_name)}\b", schema_field.field_type):
                        target = self._closest(others, definition.file_path)
                        result.relationships.append(self.relationship(
                            RelationType.USES_TYPE,
                            entity_id,
                            schema_id(target.file_path, target.name),
                            properties={"field": schema_field.name},
                            confidence=0.9,
                        ))

            for base in definition.bases:
                if base in ids_by_name and base != definition.name:
                    parent = self._closest(ids_by_name[base], definition.file_path)
                    result.relationships.append(self.relationship(
                        RelationType.EXTENDS,
                        entity_id,
                        schema_id(parent.file_path, parent.name),
                        confidence=1.0,
                    ))

            if definition.table_name:
                result.nodes.append(GraphNode(
                    id=table_id(definition.table_name),
                    type=NodeType.DATABASE_TABLE,
                    name=definition.table_name,
                    properties={"table_name": definition.table_name, "defined_in": definition.file_path},
                    metadata=dict(metadata),
                ))

        return result

    @staticmethod
    def _closest(candidates: List[SchemaDefinition], file_path: str) -> SchemaDefinition:
        for candidate in candidates:
            if candidate.file_path == file_path:
                return candidate
        return candidates[0]
