import ast
import re
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Tuple

from ..identity import function_id, class_id
from ..scanner.source_scanner import SOURCE_EXTENSIONS
from ..types import ExtractionResult, GraphNode, NodeType, RelationType, SourceFile
from .base import BaseExtractor, register_extractor

MAX_SIGNATURE_LENGTH = 200

JS_FUNCTION = re.compile(
    r"^[ \t]*(export\s+)?(?:default\s+)?(async\s+)?function\s*\*?\s*(\w+)\s*(?:<[^>]*>)?\s*"
    r"\(([^)]*)\)\s*(?::\s*([^{]+?))?\s*\{",
    re.MULTILINE,
)
JS_ARROW = re.compile(
    r"^[ \t]*(export\s+)?(?:const|let|var)\s+(\w+)\s*(?::\s*[^=]+)?=\s*(async\s+)?"
    r"(?:\(([^)]*)\)|(\w+))\s*(?::\s*([^=]+?))?\s*=>",
    re.MULTILINE,
)
JS_CLASS = re.compile(
    r"^[ \t]*(export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(\w+)(?:\s*<[^>{]*>)?"
    r"(?:\s+extends\s+([\w.]+)(?:<[^>{]*>)?)?(?:\s+implements\s+([\w\s,.<>]+?))?\s*\{",
    re.MULTILINE,
)
JS_INTERFACE = re.compile(
    r"^[ \t]*(export\s+)?interface\s+(\w+)(?:\s*<[^>{]*>)?(?:\s+extends\s+([\w\s,.<>]+?))?\s*\{",
    re.MULTILINE,
)
JS_TYPE = re.compile(r"^[ \t]*(export\s+)?type\s+(\w+)(?:\s*<[^>=]*>)?\s*=", re.MULTILINE)
JS_METHOD = re.compile(
    r"^[ \t]+(?:(?:public|private|protected|static|readonly|override|abstract)\s+)*(async\s+)?"
    r"(\w+)\s*(?:<[^>]*>)?\s*\(([^)]*)\)\s*(?::\s*([^{;]+?))?\s*\{",
    re.MULTILINE,
)
JS_CALL = re.compile(r"(?<![\w$.])([A-Za-z_$][\w$]*)\s*\(|\.([A-Za-z_$][\w$]*)\s*\(")
JS_DOC = re.compile(r"/\*\*(.*?)\*/\s*$", re.DOTALL)
JS_KEYWORDS = {
    "if", "for", "while", "switch", "catch", "return", "function", "typeof", "new",
    "await", "super", "import", "require", "with", "else", "do",
}


@dataclass
class Symbol:
    """A function, method, class or type declaration in a source file."""
    name: str
    qualname: str
    node_type: str
    line_number: int
    end_line_number: int
    language: str
    signature: str = ""
    parameters: List[str] = field(default_factory=list)
    return_type: Optional[str] = None
    is_async: bool = False
    is_exported: bool = True
    docstring: Optional[str] = None
    calls: List[str] = field(default_factory=list)
    bases: List[str] = field(default_factory=list)
    implements: List[str] = field(default_factory=list)
    decorators: List[str] = field(default_factory=list)
    parent: Optional[str] = None


@dataclass
class FileSymbols:
    file: SourceFile
    symbols: List[Symbol] = field(default_factory=list)


def _truncate(text: str) -> str:
    text = " ".join(text.split())
    return text if len(text) <= MAX_SIGNATURE_LENGTH else text[:MAX_SIGNATURE_LENGTH - 3] + "..."


class _PythonSymbolVisitor(ast.NodeVisitor):
    """Collects symbols while tracking the enclosing class/function path."""

    def __init__(self):
        self.symbols: List[Symbol] = []
        self._stack: List[Tuple[str, str]] = []

    def _qualname(self, name: str) -> str:
        return ".".join([part for part, _ in self._stack] + [name])

    def visit_ClassDef(self, node: ast.ClassDef):
        bases = [ast.unparse(base) for base in node.bases]
        base_names = {base.split(".")[-1].split("[")[0] for base in bases}
        is_interface = bool(base_names & {"Protocol"})
        self.symbols.append(Symbol(
            name=node.name,
            qualname=self._qualname(node.name),
            node_type=NodeType.INTERFACE.value if is_interface else NodeType.CLASS.value,
            line_number=node.lineno,
            end_line_number=node.end_lineno or node.lineno,
            language="python",
            signature=_truncate(f"class {node.name}({', '.join(bases)})" if bases else f"class {node.name}"),
            is_exported=not node.name.startswith("_"),
            docstring=ast.get_docstring(node),
            bases=[base.split("[")[0] for base in bases],
            decorators=[ast.unparse(d) for d in node.decorator_list],
            parent=".".join(part for part, _ in self._stack) or None,
        ))
        self._stack.append((node.name, "class"))
        self.generic_visit(node)
        self._stack.pop()

    def visit_FunctionDef(self, node):
        self._visit_function(node, is_async=False)

    def visit_AsyncFunctionDef(self, node):
        self._visit_function(node, is_async=True)

    def _visit_function(self, node, is_async: bool):
        in_class = bool(self._stack) and self._stack[-1][1] == "class"
        args = node.args
        parameters = [a.arg for a in args.posonlyargs + args.args + args.kwonlyargs]
        if args.vararg:
            parameters.append(f"*{args.vararg.arg}")
        if args.kwarg:
            parameters.append(f"**{args.kwarg.arg}")
        if in_class and parameters and parameters[0] in ("self", "cls"):
            parameters = parameters[1:]

        return_type = ast.unparse(node.returns) if node.returns else None
        prefix = "async def" if is_async else "def"
        signature = f"{prefix} {node.name}({ast.unparse(args)})"
        if return_type:
            signature += f" -> {return_type}"

        calls = []
        for child in ast.walk(node):
            if isinstance(child, ast.Call):
                func = child.func
                if isinstance(func, ast.Name):
                    calls.append(func.id)
                elif isinstance(func, ast.Attribute):
                    calls.append(func.attr)

        self.symbols.append(Symbol(
            name=node.name,
            qualname=self._qualname(node.name),
            node_type=NodeType.METHOD.value if in_class else NodeType.FUNCTION.value,
            line_number=node.lineno,
            end_line_number=node.end_lineno or node.lineno,
            language="python",
            signature=_truncate(signature),
            parameters=parameters,
            return_type=return_type,
            is_async=is_async,
            is_exported=not node.name.startswith("_") or (node.name.startswith("__") and node.name.endswith("__")),
            docstring=ast.get_docstring(node),
            calls=sorted(set(calls)),
            decorators=[ast.unparse(d) for d in node.decorator_list],
            parent=".".join(part for part, _ in self._stack) or None,
        ))
        self._stack.append((node.name, "function"))
        self.generic_visit(node)
        self._stack.pop()


@register_extractor("function")
class FunctionExtractor(BaseExtractor):
    """Parses source files for functions, methods, classes and type declarations."""

    def extract_raw(self) -> List[FileSymbols]:
        files = self.scanner.scan(extensions=SOURCE_EXTENSIONS)
        parsed = []
        for source_file in self.scanner.load_files_content(files):
            if source_file.language == "python":
                symbols = self._parse_python(source_file)
            else:
                symbols = self._parse_javascript(source_file)
            parsed.append(FileSymbols(file=source_file, symbols=symbols))
        return parsed

    def _parse_python(self, source_file: SourceFile) -> List[Symbol]:
        try:
            tree = ast.parse(source_file.content, filename=source_file.path)
        except SyntaxError as e:
            self.logger.warning(f"Skipping {source_file.path}: {e}")
            return []
        visitor = _PythonSymbolVisitor()
        visitor.visit(tree)
        return visitor.symbols

    def _parse_javascript(self, source_file: SourceFile) -> List[Symbol]:
        content = source_file.content
        language = source_file.language or "javascript"
        symbols: List[Symbol] = []

        for match in JS_FUNCTION.finditer(content):
            body_start = match.end() - 1
            symbols.append(self._js_symbol(
                content, match.start(), body_start, language,
                name=match.group(3), node_type=NodeType.FUNCTION.value,
                params=match.group(4), return_type=match.group(5),
                is_async=bool(match.group(2)), is_exported=bool(match.group(1)),
            ))

        for match in JS_ARROW.finditer(content):
            body_start = content.find("{", match.end())
            newline = content.find("\n", match.end())
            if body_start == -1 or (newline != -1 and body_start > newline):
                body_start = None
            symbols.append(self._js_symbol(
                content, match.start(), body_start, language,
                name=match.group(2), node_type=NodeType.FUNCTION.value,
                params=match.group(4) if match.group(4) is not None else match.group(5),
                return_type=match.group(6),
                is_async=bool(match.group(3)), is_exported=bool(match.group(1)),
            ))

        for match in JS_CLASS.finditer(content):
            body_start = match.end() - 1
            implements = [
                name.strip().split("<")[0] for name in (match.group(4) or "").split(",") if name.strip()
            ]
            cls = self._js_symbol(
                content, match.start(), body_start, language,
                name=match.group(2), node_type=NodeType.CLASS.value,
                params=None, return_type=None, is_async=False, is_exported=bool(match.group(1)),
            )
            cls.signature = _truncate(match.group(0).rstrip("{").strip())
            cls.bases = [match.group(3)] if match.group(3) else []
            cls.implements = implements
            cls.calls = []
            symbols.append(cls)
            symbols.extend(self._js_methods(content, body_start, cls, language))

        for match in JS_INTERFACE.finditer(content):
            body_start = match.end() - 1
            iface = self._js_symbol(
                content, match.start(), body_start, language,
                name=match.group(2), node_type=NodeType.INTERFACE.value,
                params=None, return_type=None, is_async=False, is_exported=bool(match.group(1)),
            )
            iface.signature = _truncate(match.group(0).rstrip("{").strip())
            iface.bases = [n.strip().split("<")[0] for n in (match.group(3) or "").split(",") if n.strip()]
            iface.calls = []
            symbols.append(iface)

        for match in JS_TYPE.finditer(content):
            line = content.count("\n", 0, match.start()) + 1
            statement_end = content.find(";", match.end())
            end_line = content.count("\n", 0, statement_end) + 1 if statement_end != -1 else line
            symbols.append(Symbol(
                name=match.group(2),
                qualname=match.group(2),
                node_type=NodeType.TYPE.value,
                line_number=line,
                end_line_number=end_line,
                language=language,
                signature=_truncate(content[match.start():statement_end if statement_end != -1 else match.end()].strip()),
                is_exported=bool(match.group(1)),
                docstring=self._js_doc(content, match.start()),
            ))

        symbols.sort(key=lambda s: (s.line_number, s.qualname))
        return symbols

    def _js_symbol(self, content: str, start: int, body_start: Optional[int], language: str,
                   name: str, node_type: str, params: Optional[str], return_type: Optional[str],
                   is_async: bool, is_exported: bool) -> Symbol:
        line = content.count("\n", 0, start) + 1
        body = ""
        end_line = line
        if body_start is not None:
            body_end = self._matching_brace(content, body_start)
            body = content[body_start:body_end + 1]
            end_line = content.count("\n", 0, body_end) + 1
        header_end = body_start if body_start is not None else content.find("\n", start)
        return Symbol(
            name=name,
            qualname=name,
            node_type=node_type,
            line_number=line,
            end_line_number=end_line,
            language=language,
            signature=_truncate(content[start:header_end].strip()),
            parameters=self._js_parameters(params),
            return_type=return_type.strip() if return_type else None,
            is_async=is_async,
            is_exported=is_exported,
            docstring=self._js_doc(content, start),
            calls=self._js_calls(body),
        )

    def _js_methods(self, content: str, class_start: int, cls: Symbol, language: str) -> List[Symbol]:
        class_end = self._matching_brace(content, class_start)
        methods = []
        position = class_start + 1
        while True:
            match = JS_METHOD.search(content, position, class_end)
            if match is None:
                break
            body_start = match.end() - 1
            body_end = self._matching_brace(content, body_start)
            name = match.group(2)
            if name not in JS_KEYWORDS:
                method = self._js_symbol(
                    content, match.start(), body_start, language,
                    name=name, node_type=NodeType.METHOD.value,
                    params=match.group(3), return_type=match.group(4),
                    is_async=bool(match.group(1)), is_exported=cls.is_exported,
                )
                method.qualname = f"{cls.qualname}.{name}"
                method.parent = cls.qualname
                methods.append(method)
            position = body_end + 1
        return methods

    @staticmethod
    def _matching_brace(content: str, open_index: int) -> int:
        depth = 0
        for index in range(open_index, len(content)):
            if content[index] == "{":
                depth += 1
            elif content[index] == "}":
                depth -= 1
                if depth == 0:
                    return index
        return len(content) - 1

    @staticmethod
    def _js_parameters(params: Optional[str]) -> List[str]:
        if not params:
            return []
        names = []
        for part in params.split(","):
            name = part.strip().split(":")[0].split("=")[0].strip().lstrip(".")
            if name and re.match(r"^[\w$]+\??$", name):
                names.append(name.rstrip("?"))
        return names

    @staticmethod
    def _js_calls(body: str) -> List[str]:
        calls = set()
        for direct, member in JS_CALL.findall(body):
            name = direct or member
            if name and name not in JS_KEYWORDS:
                calls.add(name)
        return sorted(calls)

    @staticmethod
    def _js_doc(content: str, start: int) -> Optional[str]:
        match = JS_DOC.search(content[max(0, start - 2000):start])
        if not match:
            return None
        lines = [line.strip().lstrip("*").strip() for line in match.group(1).splitlines()]
        text = "\n".join(line for line in lines if line and not line.startswith("@"))
        return text or None

    def source_count(self, raw: List[FileSymbols]) -> int:
        return len(raw)

    def transform(self, raw: List[FileSymbols]) -> ExtractionResult:
        result = ExtractionResult()
        ids: Dict[Tuple[str, str], str] = {}
        by_name: Dict[str, List[Tuple[str, Symbol]]] = {}

        for file_symbols in raw:
            path = file_symbols.file.path
            for symbol in file_symbols.symbols:
                ids[(path, symbol.qualname)] = self._symbol_id(path, symbol)
                by_name.setdefault(symbol.name, []).append((path, symbol))

        # Resolve calls up front so callees know their usage counts
        call_edges: Dict[Tuple[str, str], str] = {}
        usage_counts: Dict[str, int] = {}
        for file_symbols in raw:
            path = file_symbols.file.path
            for symbol in file_symbols.symbols:
                symbol_id = ids[(path, symbol.qualname)]
                for callee in symbol.calls:
                    target = self._resolve(callee, path, by_name, callable_only=True)
                    if target is None:
                        continue
                    target_id = ids[(target[0], target[1].qualname)]
                    if target_id == symbol_id or (symbol_id, target_id) in call_edges:
                        continue
                    call_edges[(symbol_id, target_id)] = callee
                    usage_counts[target_id] = usage_counts.get(target_id, 0) + 1

        for file_symbols in raw:
            source_file = file_symbols.file
            path = source_file.path
            file_node = self.file_node(path, source_file.language, source_file.size)
            result.nodes.append(file_node)
            package = self.package_for(path)

            for symbol in file_symbols.symbols:
                symbol_id = ids[(path, symbol.qualname)]
                metadata = {"source_file": path}
                if package:
                    metadata["package"] = package
                result.nodes.append(GraphNode(
                    id=symbol_id,
                    type=symbol.node_type,
                    name=symbol.name,
                    properties={
                        "qualified_name": symbol.qualname,
                        "signature": symbol.signature,
                        "parameters": symbol.parameters,
                        "return_type": symbol.return_type,
                        "is_async": symbol.is_async,
                        "is_exported": symbol.is_exported,
                        "file_path": path,
                        "line_number": symbol.line_number,
                        "end_line_number": symbol.end_line_number,
                        "docstring": symbol.docstring,
                        "description": (symbol.docstring or "").split("\n\n")[0][:200] or None,
                        "calls": symbol.calls,
                        "decorators": symbol.decorators,
                        "language": symbol.language,
                        "usage_count": usage_counts.get(symbol_id, 0),
                    },
                    metadata=metadata,
                ))

                container = ids.get((path, symbol.parent)) if symbol.parent else None
                result.relationships.append(self.relationship(
                    RelationType.CONTAINS, container or file_node.id, symbol_id, confidence=1.0,
                ))

                for base in symbol.bases + symbol.implements:
                    target = self._resolve(base.split(".")[-1], path, by_name, callable_only=False)
                    if target is None or target[1] is symbol:
                        continue
                    target_symbol = target[1]
                    is_interface = base in symbol.implements or (
                        target_symbol.node_type == NodeType.INTERFACE.value
                        and symbol.node_type != NodeType.INTERFACE.value
                    )
                    result.relationships.append(self.relationship(
                        RelationType.IMPLEMENTS if is_interface else RelationType.EXTENDS,
                        symbol_id,
                        ids[(target[0], target_symbol.qualname)],
                        confidence=1.0,
                    ))

        for (source, target), callee in call_edges.items():
            result.relationships.append(self.relationship(
                RelationType.CALLS, source, target, properties={"callee": callee}, confidence=0.8,
            ))

        return result

    @staticmethod
    def _symbol_id(path: str, symbol: Symbol) -> str:
        if symbol.node_type in (NodeType.FUNCTION.value, NodeType.METHOD.value):
            return function_id(path, symbol.qualname)
        return class_id(path, symbol.qualname, symbol.node_type)

    @staticmethod
    def _resolve(name: str, path: str, by_name: Dict[str, List[Tuple[str, Symbol]]],
                 callable_only: bool) -> Optional[Tuple[str, Symbol]]:
        """Same-file declaration first, else a unique declaration elsewhere."""
        callable_types = (NodeType.FUNCTION.value, NodeType.METHOD.value, NodeType.CLASS.value)
        candidates = [
            (candidate_path, symbol) for candidate_path, symbol in by_name.get(name, [])
            if not callable_only or symbol.node_type in callable_types
        ]
        local = [candidate for candidate in candidates if candidate[0] == path]
        if local:
            return local[0]
        if len(candidates) == 1:
            return candidates[0]
        return None
