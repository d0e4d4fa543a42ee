import hashlib
import html
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple

import markdown

from ..config import settings
from ..identity import document_id, concept_id
from ..types import ExtractionResult, GraphNode, NodeType, RelationType, SourceFile
from .base import BaseExtractor, register_extractor

DOCUMENT_EXTENSIONS = {".md", ".markdown", ".txt", ".rst", ".adoc"}
MARKDOWN_EXTENSIONS = {".md", ".markdown"}

HEADING = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$", re.MULTILINE)
ADOC_TITLE = re.compile(r"^=\s+(.+)$", re.MULTILINE)
LINK = re.compile(r"\[([^\]]+)\]\(([^)\s]+)(?:\s+\"[^\"]*\")?\)")
CODE_BLOCK = re.compile(r"```([\w+-]*)[^\n]*\n(.*?)```", re.DOTALL)
CODE_TYPE_NAME = re.compile(r"(?:interface|class|type|enum)\s+([A-Z][a-zA-Z0-9]+)")


@dataclass
class ParsedDocument:
    """A documentation file and what was parsed out of it."""
    path: str
    file_type: str
    size: int
    title: str
    content_hash: str
    sections: List[Dict[str, Any]] = field(default_factory=list)
    links: List[Tuple[str, str]] = field(default_factory=list)
    code_languages: List[str] = field(default_factory=list)
    concepts: List[str] = field(default_factory=list)
    frontmatter: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    word_count: int = 0


@register_extractor("document")
class DocumentExtractor(BaseExtractor):
    """Walks documentation files and links them to each other and to concepts."""

    def __init__(self, working_dir, scanner=None, max_depth: Optional[int] = None):
        super().__init__(working_dir, scanner)
        self.max_depth = settings.document_max_depth if max_depth is None else max_depth

    def extract_raw(self) -> List[ParsedDocument]:
        files = self.scanner.scan(extensions=DOCUMENT_EXTENSIONS, max_depth=self.max_depth)
        return [self.parse_document(f) for f in self.scanner.load_files_content(files)]

    def parse_document(self, source_file: SourceFile) -> ParsedDocument:
        """Parse headings, links, code blocks and front matter of one document."""
        content = source_file.content or ""
        suffix = Path(source_file.path).suffix.lower()
        frontmatter: Dict[str, Any] = {}

        if suffix in MARKDOWN_EXTENSIONS:
            md = markdown.Markdown(extensions=["meta", "toc", "fenced_code"])
            md.convert(content)
            sections = self._flatten_toc(md.toc_tokens)
            frontmatter = {
                key: values[0] if len(values) == 1 else values
                for key, values in getattr(md, "Meta", {}).items()
            }
        else:
            sections = [
                {"level": len(match.group(1)), "title": match.group(2).strip()}
                for match in HEADING.finditer(content)
                if len(match.group(1)) <= 3
            ]

        code_blocks = CODE_BLOCK.findall(content)
        concepts = []
        for section in sections:
            if section["level"] <= 2 and 2 < len(section["title"]) < 50:
                concepts.append(section["title"])
        for _, code in code_blocks:
            concepts.extend(CODE_TYPE_NAME.findall(code))

        return ParsedDocument(
            path=source_file.path,
            file_type=suffix.lstrip("."),
            size=source_file.size,
            title=self._title(content, source_file.path, frontmatter),
            content_hash=hashlib.sha256(content.encode("utf-8")).hexdigest(),
            sections=sections,
            links=[(text, target) for text, target in LINK.findall(content)],
            code_languages=sorted({lang for lang, _ in code_blocks if lang}),
            concepts=list(dict.fromkeys(concepts)),
            frontmatter=frontmatter,
            description=self._description(content),
            word_count=len(content.split()),
        )

    @staticmethod
    def _flatten_toc(tokens: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        sections = []
        for token in tokens:
            if token["level"] <= 3:
                sections.append({"level": token["level"], "title": html.unescape(token["name"])})
            sections.extend(DocumentExtractor._flatten_toc(token.get("children", [])))
        return sections

    @staticmethod
    def _title(content: str, path: str, frontmatter: Dict[str, Any]) -> str:
        if isinstance(frontmatter.get("title"), str):
            return frontmatter["title"]
        for level in ("#", "##"):
            for match in HEADING.finditer(content):
                if match.group(1) == level:
                    return match.group(2).strip()
        adoc = ADOC_TITLE.search(content)
        if adoc:
            return adoc.group(1).strip()
        return Path(path).stem

    @staticmethod
    def _description(content: str) -> str:
        in_code = False
        for line in content.splitlines():
            stripped = line.strip()
            if stripped.startswith("```"):
                in_code = not in_code
                continue
            if in_code or not stripped or stripped.startswith(("#", "=", "---", "|", "!", "<")):
                continue
            if ":" in stripped.split(" ", 1)[0]:
                continue
            return stripped[:200]
        return ""

    def validate(self, raw: List[ParsedDocument]) -> bool:
        return raw is not None

    def transform(self, raw: List[ParsedDocument]) -> ExtractionResult:
        result = ExtractionResult()
        known_paths = {doc.path for doc in raw}
        concepts: Dict[str, GraphNode] = {}

        for doc in raw:
            doc_id = document_id(doc.path)
            metadata = {"source_file": doc.path}
            package = self.package_for(doc.path)
            if package:
                metadata["package"] = package

            result.nodes.append(GraphNode(
                id=doc_id,
                type=NodeType.DOCUMENT,
                name=Path(doc.path).name,
                properties={
                    "file_path": doc.path,
                    "file_type": doc.file_type,
                    "content_hash": doc.content_hash,
                    "title": doc.title,
                    "size": doc.size,
                    "sections": [section["title"] for section in doc.sections],
                    "section_count": len(doc.sections),
                    "word_count": doc.word_count,
                    "code_languages": doc.code_languages,
                    "frontmatter": doc.frontmatter,
                    "description": doc.description,
                },
                metadata=metadata,
            ))

            for text, target in doc.links:
                target_path = self._resolve_link(doc.path, target)
                if target_path is None or target_path not in known_paths or target_path == doc.path:
                    continue
                result.relationships.append(self.relationship(
                    RelationType.REFERENCES,
                    doc_id,
                    document_id(target_path),
                    properties={"reference_type": "document_link", "link_text": text},
                    confidence=0.9,
                ))

            for concept in doc.concepts:
                cid = concept_id(concept)
                if cid not in concepts:
                    concepts[cid] = GraphNode(
                        id=cid,
                        type=NodeType.CONCEPT,
                        name=concept,
                        properties={"normalized_name": concept.strip().lower()},
                        metadata={"source_file": doc.path},
                    )
                result.relationships.append(self.relationship(
                    RelationType.REFERENCES,
                    doc_id,
                    cid,
                    properties={"reference_type": "concept"},
                    confidence=0.8,
                ))

        result.nodes.extend(concepts.values())
        return result

    @staticmethod
    def _resolve_link(doc_path: str, target: str) -> Optional[str]:
        """Repository-relative path of a local link target, if it is one."""
        if re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*:", target) or target.startswith(("#", "//")):
            return None
        target = target.split("#", 1)[0].split("?", 1)[0]
        if not target:
            return None
        if not (target.startswith(".") or target.lower().endswith((".md", ".txt")) or "/" not in target):
            return None
        if target.startswith("/"):
            resolved = posixpath.normpath(target.lstrip("/"))
        else:
            resolved = posixpath.normpath(posixpath.join(posixpath.dirname(doc_path), target))
        return None if resolved.startswith("..") else resolved
