import ast
import posixpath
import re
import sys
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Set, Tuple

from ..identity import import_id, export_id, external_module_id, file_id
from ..scanner.source_scanner import SOURCE_EXTENSIONS
from ..types import ExtractionResult, GraphNode, NodeType, RelationType, SourceFile
from .base import BaseExtractor, register_extractor

JS_RESOLVE_SUFFIXES = ("", ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
                       "/index.ts", "/index.tsx", "/index.js", "/index.jsx")

JS_IMPORT_FROM = re.compile(r"^\s*import\s+(?:type\s+)?([\w$*{}\s,]+?)\s+from\s+['\"]([^'\"]+)['\"]", re.MULTILINE)
JS_IMPORT_BARE = re.compile(r"^\s*import\s+['\"]([^'\"]+)['\"]", re.MULTILINE)
JS_REQUIRE = re.compile(r"(?:(?:const|let|var)\s+([\w${},\s:]+?)\s*=\s*)?require\(\s*['\"]([^'\"]+)['\"]\s*\)")
JS_DYNAMIC = re.compile(r"(?<![\w$.])import\(\s*['\"]([^'\"]+)['\"]\s*\)")
JS_EXPORT_DECL = re.compile(
    r"^\s*export\s+(?:default\s+)?(?:declare\s+)?(?:async\s+)?"
    r"(?:function\*?|class|const|let|var|interface|type|enum|abstract\s+class)\s+(\w+)",
    re.MULTILINE,
)
JS_EXPORT_LIST = re.compile(r"^\s*export\s+(?:type\s+)?\{([^}]*)\}(?:\s*from\s*['\"]([^'\"]+)['\"])?", re.MULTILINE)
JS_EXPORT_STAR = re.compile(r"^\s*export\s+\*\s+(?:as\s+(\w+)\s+)?from\s*['\"]([^'\"]+)['\"]", re.MULTILINE)
JS_EXPORT_DEFAULT = re.compile(r"^\s*export\s+default\s+(?!function|class|async|abstract)", re.MULTILINE)

STDLIB_MODULES = set(sys.stdlib_module_names)

SOURCE_ROOTS = {"src", "lib", "python", "packages"}


@dataclass
class ImportStatement:
    module: str
    imported: str
    line_number: int
    kind: str
    alias: Optional[str] = None
    level: int = 0

    @property
    def is_dynamic(self) -> bool:
        return self.kind == "dynamic"


@dataclass
class ExportStatement:
    name: str
    line_number: int
    source: Optional[str] = None


@dataclass
class FileImports:
    file: SourceFile
    imports: List[ImportStatement] = field(default_factory=list)
    exports: List[ExportStatement] = field(default_factory=list)


def _line(content: str, index: int) -> int:
    return content.count("\n", 0, index) + 1


@register_extractor("import")
class ImportExtractor(BaseExtractor):
    """Resolves module-to-module import edges."""

    def extract_raw(self) -> List[FileImports]:
        files = self.scanner.scan(extensions=SOURCE_EXTENSIONS)
        parsed = []
        for source_file in self.scanner.load_files_content(files):
            if source_file.language == "python":
                parsed.append(self._parse_python(source_file))
            else:
                parsed.append(self._parse_javascript(source_file))
        return parsed

    def _parse_python(self, source_file: SourceFile) -> FileImports:
        file_imports = FileImports(file=source_file)
        try:
            tree = ast.parse(source_file.content, filename=source_file.path)
        except SyntaxError as e:
            self.logger.warning(f"Skipping {source_file.path}: {e}")
            return file_imports

        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    file_imports.imports.append(ImportStatement(
                        module=alias.name, imported=alias.name, alias=alias.asname,
                        line_number=node.lineno, kind="import",
                    ))
            elif isinstance(node, ast.ImportFrom):
                for alias in node.names:
                    file_imports.imports.append(ImportStatement(
                        module=node.module or "", imported=alias.name, alias=alias.asname,
                        line_number=node.lineno, kind="from", level=node.level,
                    ))
            elif isinstance(node, ast.Call) and node.args:
                func = node.func
                name = func.attr if isinstance(func, ast.Attribute) else getattr(func, "id", None)
                first = node.args[0]
                if name in ("import_module", "__import__") and isinstance(first, ast.Constant) \
                        and isinstance(first.value, str):
                    file_imports.imports.append(ImportStatement(
                        module=first.value, imported=first.value,
                        line_number=node.lineno, kind="dynamic",
                    ))

        for node in tree.body:
            if isinstance(node, (ast.Assign, ast.AugAssign)):
                targets = node.targets if isinstance(node, ast.Assign) else [node.target]
                if any(isinstance(t, ast.Name) and t.id == "__all__" for t in targets) \
                        and isinstance(node.value, (ast.List, ast.Tuple)):
                    for element in node.value.elts:
                        if isinstance(element, ast.Constant) and isinstance(element.value, str):
                            file_imports.exports.append(ExportStatement(element.value, node.lineno))

        file_imports.imports.sort(key=lambda s: (s.line_number, s.module, s.imported))
        return file_imports

    def _parse_javascript(self, source_file: SourceFile) -> FileImports:
        content = source_file.content
        file_imports = FileImports(file=source_file)

        for match in JS_IMPORT_FROM.finditer(content):
            line = _line(content, match.start())
            for imported, alias in self._js_import_names(match.group(1)):
                file_imports.imports.append(ImportStatement(
                    module=match.group(2), imported=imported, alias=alias,
                    line_number=line, kind="import",
                ))
        for match in JS_IMPORT_BARE.finditer(content):
            file_imports.imports.append(ImportStatement(
                module=match.group(1), imported="*", line_number=_line(content, match.start()),
                kind="side_effect",
            ))
        for match in JS_REQUIRE.finditer(content):
            binding = (match.group(1) or "").strip()
            names = self._js_import_names(binding.replace(":", " as ")) if binding else []
            for imported, alias in names or [("*", None)]:
                file_imports.imports.append(ImportStatement(
                    module=match.group(2), imported=imported, alias=alias,
                    line_number=_line(content, match.start()), kind="require",
                ))
        for match in JS_DYNAMIC.finditer(content):
            file_imports.imports.append(ImportStatement(
                module=match.group(1), imported="*", line_number=_line(content, match.start()),
                kind="dynamic",
            ))

        for match in JS_EXPORT_DECL.finditer(content):
            file_imports.exports.append(ExportStatement(match.group(1), _line(content, match.start())))
        for match in JS_EXPORT_LIST.finditer(content):
            for part in match.group(1).split(","):
                pieces = part.strip().split(" as ")
                if pieces[0].strip():
                    file_imports.exports.append(ExportStatement(
                        pieces[-1].strip(), _line(content, match.start()), source=match.group(2),
                    ))
        for match in JS_EXPORT_STAR.finditer(content):
            file_imports.exports.append(ExportStatement(
                match.group(1) or "*", _line(content, match.start()), source=match.group(2),
            ))
        for match in JS_EXPORT_DEFAULT.finditer(content):
            file_imports.exports.append(ExportStatement("default", _line(content, match.start())))

        file_imports.imports.sort(key=lambda s: (s.line_number, s.module, s.imported))
        file_imports.exports.sort(key=lambda e: (e.line_number, e.name))
        return file_imports

    @staticmethod
    def _js_import_names(clause: str) -> List[Tuple[str, Optional[str]]]:
        """Parse ``Default, { a, b as c }`` or ``* as ns`` into (imported, alias) pairs."""
        names: List[Tuple[str, Optional[str]]] = []
        clause = clause.strip()
        braced = re.search(r"\{([^}]*)\}", clause)
        outside = re.sub(r"\{[^}]*\}", "", clause)
        for part in outside.split(","):
            part = part.strip()
            if not part:
                continue
            if part.startswith("*"):
                alias = part.split(" as ")[-1].strip() if " as " in part else None
                names.append(("*", alias))
            else:
                names.append(("default", part))
        if braced:
            for part in braced.group(1).split(","):
                pieces = [p.strip() for p in part.strip().split(" as ")]
                if pieces[0]:
                    name = pieces[0].replace("type ", "").strip()
                    names.append((name, pieces[1] if len(pieces) > 1 else None))
        return names

    def source_count(self, raw: List[FileImports]) -> int:
        return sum(len(file_imports.imports) for file_imports in raw)

    def transform(self, raw: List[FileImports]) -> ExtractionResult:
        result = ExtractionResult()
        known_paths = {file_imports.file.path for file_imports in raw}
        python_modules = self._python_module_index(known_paths)
        external_nodes: Dict[str, GraphNode] = {}

        for file_imports in raw:
            source_file = file_imports.file
            path = source_file.path
            source_id = file_id(path)
            result.nodes.append(self.file_node(path, source_file.language, source_file.size))
            dependencies: Dict[str, Set[str]] = {}

            for statement in file_imports.imports:
                if source_file.language == "python":
                    resolved = self._resolve_python(path, statement, python_modules)
                else:
                    resolved = self._resolve_javascript(path, statement.module, known_paths)
                module_label = "." * statement.level + statement.module

                node_id = import_id(path, module_label, statement.imported)
                result.nodes.append(GraphNode(
                    id=node_id,
                    type=NodeType.IMPORT,
                    name=statement.imported if statement.imported != "*" else module_label,
                    properties={
                        "module": module_label,
                        "imported": statement.imported,
                        "alias": statement.alias,
                        "kind": statement.kind,
                        "is_dynamic": statement.is_dynamic,
                        "is_external": resolved is None,
                        "resolved_path": resolved,
                        "file_path": path,
                        "line_number": statement.line_number,
                    },
                    metadata={"source_file": path},
                ))
                result.relationships.append(self.relationship(
                    RelationType.IMPORTS, source_id, node_id,
                    properties={"kind": statement.kind}, confidence=1.0,
                ))

                if resolved is not None:
                    target = file_id(resolved)
                elif statement.level == 0 and statement.module:
                    external = self._external_name(statement.module, source_file.language)
                    target = external_module_id(external)
                    if target not in external_nodes:
                        external_nodes[target] = GraphNode(
                            id=target,
                            type=NodeType.EXTERNAL_MODULE,
                            name=external,
                            properties={
                                "module": external,
                                "language": source_file.language,
                                "is_stdlib": source_file.language == "python" and external in STDLIB_MODULES,
                                "is_node_builtin": external.startswith("node:"),
                            },
                            metadata={"source_file": path},
                        )
                else:
                    continue
                if target != source_id:
                    dependencies.setdefault(target, set()).add(statement.imported)

            for target, symbols in dependencies.items():
                internal = target not in external_nodes
                result.relationships.append(self.relationship(
                    RelationType.DEPENDS_ON,
                    source_id,
                    target,
                    properties={
                        "dependency_type": "import" if internal else "external",
                        "is_internal": internal,
                        "symbols": sorted(symbols),
                    },
                    confidence=1.0,
                ))

            for export in file_imports.exports:
                node_id = export_id(path, export.name)
                result.nodes.append(GraphNode(
                    id=node_id,
                    type=NodeType.EXPORT,
                    name=export.name,
                    properties={
                        "exported": export.name,
                        "re_export_from": export.source,
                        "file_path": path,
                        "line_number": export.line_number,
                    },
                    metadata={"source_file": path},
                ))
                result.relationships.append(self.relationship(
                    RelationType.EXPORTS, source_id, node_id, confidence=1.0,
                ))

        result.nodes.extend(external_nodes.values())
        return result

    @staticmethod
    def _python_module_index(paths: Set[str]) -> Dict[str, str]:
        """Map dotted module names to repository paths."""
        index: Dict[str, str] = {}
        for path in sorted(paths):
            if not path.endswith((".py", ".pyi")):
                continue
            module = path.rsplit(".", 1)[0].replace("/", ".")
            if module.endswith(".__init__"):
                module = module[: -len(".__init__")]
            parts = module.split(".")
            # Importable from the repository root and from source roots such as src/
            starts = [0] + [i + 1 for i, part in enumerate(parts[:-1]) if part in SOURCE_ROOTS]
            for start in starts:
                index.setdefault(".".join(parts[start:]), path)
        return index

    @staticmethod
    def _resolve_python(path: str, statement: ImportStatement, modules: Dict[str, str]) -> Optional[str]:
        if statement.level:
            package_parts = path.split("/")[:-1]
            if statement.level > 1:
                package_parts = package_parts[: -(statement.level - 1)] or []
            base = ".".join(package_parts)
            module = ".".join(part for part in (base, statement.module) if part)
            candidates = [f"{module}.{statement.imported}", module]
            for candidate in candidates:
                if candidate in modules and modules[candidate].startswith("/".join(package_parts)):
                    return modules[candidate]
            return None

        candidates = [statement.module]
        if statement.kind == "from":
            candidates.insert(0, f"{statement.module}.{statement.imported}")
        for candidate in candidates:
            if candidate in modules:
                return modules[candidate]
        return None

    @staticmethod
    def _resolve_javascript(path: str, module: str, known_paths: Set[str]) -> Optional[str]:
        if not module.startswith("."):
            return None
        base = posixpath.normpath(posixpath.join(posixpath.dirname(path), module))
        for suffix in JS_RESOLVE_SUFFIXES:
            candidate = base + suffix
            if candidate in known_paths:
                return candidate
        # TypeScript sources imported with a .js specifier
        if base.endswith(".js"):
            for suffix in (".ts", ".tsx"):
                if base[:-3] + suffix in known_paths:
                    return base[:-3] + suffix
        return None

    @staticmethod
    def _external_name(module: str, language: Optional[str]) -> str:
        if language == "python":
            return module.split(".")[0]
        parts = module.split("/")
        if module.startswith("@") and len(parts) > 1:
            return "/".join(parts[:2])
        return parts[0]
