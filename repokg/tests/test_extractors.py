import pytest
import sys
from pathlib import Path
from typing import List

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from repokg.extractors.base import (
    EXTRACTOR_REGISTRY,
    ExtractionError,
    available_extractors,
    get_extractor,
    resolve_extractor_names,
)
from repokg.extractors.document_extractor import DocumentExtractor
from repokg.extractors.function_extractor import FunctionExtractor
from repokg.extractors.import_extractor import ImportExtractor
from repokg.extractors.package_extractor import PackageExtractor
from repokg.extractors.schema_extractor import SchemaExtractor
from repokg.identity import document_id, external_module_id, file_id, package_id, table_id
from repokg.types import ExtractionResult, GraphNode, GraphRelationship


def nodes_of(result: ExtractionResult, node_type: str) -> List[GraphNode]:
    return [node for node in result.nodes if node.type == node_type]


def node_named(result: ExtractionResult, node_type: str, name: str) -> GraphNode:
    matches = [node for node in nodes_of(result, node_type) if node.name == name]
    assert matches, f"no {node_type} named {name}"
    return matches[0]


def rels_of(result: ExtractionResult, rel_type: str) -> List[GraphRelationship]:
    return [rel for rel in result.relationships if rel.type == rel_type]


def has_rel(result: ExtractionResult, rel_type: str, source: str, target: str) -> bool:
    return any(rel.source == source and rel.target == target for rel in rels_of(result, rel_type))


class TestExtractorRegistry:
    """Test extractor registration and selection."""

    def test_all_categories_registered(self):
        """The five categories are available in canonical order."""
        assert available_extractors()[:5] == ["package", "schema", "document", "function", "import"]
        assert get_extractor("schema") is SchemaExtractor

    def test_resolve_selection(self):
        """Comma separated names are validated and de-duplicated."""
        assert resolve_extractor_names("function, import,function") == ["function", "import"]
        assert resolve_extractor_names("all") == available_extractors()
        assert resolve_extractor_names("") == available_extractors()

    def test_unknown_extractor(self):
        """Unknown names raise a ValueError listing what is available."""
        with pytest.raises(ValueError, match="Unknown extractor 'bogus'"):
            resolve_extractor_names("package,bogus")

    def test_missing_working_dir(self, tmp_path: Path):
        """A missing directory is an extraction error."""
        extractor = EXTRACTOR_REGISTRY["document"](tmp_path / "missing")
        with pytest.raises(ExtractionError):
            extractor.extract()


class TestPackageExtractor:
    """Test package manifest extraction."""

    def test_packages_and_internal_dependencies(self, temp_repo: Path):
        """Each manifest becomes a package; internal deps become DEPENDS_ON."""
        result = PackageExtractor(temp_repo).extract()
        names = sorted(node.name for node in nodes_of(result, "Package"))

        assert names == ["@sample/web", "sample-app", "sample-core"]
        assert has_rel(result, "DEPENDS_ON", package_id("sample-app"), package_id("sample-core"))

        app = node_named(result, "Package", "sample-app")
        assert app.properties["external_dependencies"] == ["requests"]
        assert app.properties["internal_dependencies"] == ["sample-core"]

        dependency = next(rel for rel in rels_of(result, "DEPENDS_ON"))
        assert dependency.properties["is_internal"] is True
        assert dependency.properties["is_dev"] is False
        assert dependency.confidence == 1.0

    def test_build_order(self, temp_repo: Path):
        """Dependencies are ordered before their dependents."""
        result = PackageExtractor(temp_repo).extract()
        core = node_named(result, "Package", "sample-core")
        app = node_named(result, "Package", "sample-app")

        assert core.properties["build_order"] < app.properties["build_order"]

    def test_key_files_and_entry_points(self, temp_repo: Path):
        """Key files hang off their package, entry points flagged."""
        result = PackageExtractor(temp_repo).extract()
        web = package_id("@sample/web")
        entry = file_id("web/src/index.ts")

        contains = [rel for rel in rels_of(result, "CONTAINS") if rel.source == web and rel.target == entry]
        assert len(contains) == 1
        assert contains[0].properties["is_entry_point"] is True
        assert has_rel(result, "CONTAINS", package_id("sample-app"), file_id("README.md"))

    def test_circular_dependencies(self, tmp_path: Path):
        """Packages in a cycle are still ordered."""
        for name, dep in (("alpha", "beta"), ("beta", "alpha")):
            directory = tmp_path / name
            directory.mkdir()
            (directory / "package.json").write_text(
                f'{{"name": "{name}", "dependencies": {{"{dep}": "*"}}}}', encoding="utf-8"
            )

        result = PackageExtractor(tmp_path).extract()
        orders = sorted(node.properties["build_order"] for node in nodes_of(result, "Package"))

        assert orders == [0, 1]
        assert len(rels_of(result, "DEPENDS_ON")) == 2

    def test_no_manifests(self, tmp_path: Path):
        """A repository without manifests yields an empty result."""
        result = PackageExtractor(tmp_path).extract()

        assert result.nodes == []
        assert result.relationships == []


class TestSchemaExtractor:
    """Test schema definition extraction."""

    def test_pydantic_fields(self, temp_repo: Path):
        """Pydantic models keep field types, defaults and validation."""
        result = SchemaExtractor(temp_repo).extract()
        user = node_named(result, "SchemaEntity", "User")

        assert user.properties["kind"] == "pydantic"
        assert user.properties["fields"] == ["id", "email", "nickname"]
        assert user.metadata["package"] == "sample-app"

        fields = {node.name: node for node in nodes_of(result, "SchemaField")
                  if node.properties["entity"] == "User"}
        assert fields["id"].properties["required"] is True
        assert fields["email"].properties["validation"] == {"max_length": 255}
        assert fields["email"].properties["required"] is True
        assert fields["nickname"].properties["required"] is False
        assert fields["nickname"].properties["default"] == "'anon'"

        has_field = [rel for rel in rels_of(result, "HAS_FIELD") if rel.source == user.id]
        assert len(has_field) == 3

    def test_type_references_and_inheritance(self, temp_repo: Path):
        """Fields typed with another schema and schema subclasses become edges."""
        result = SchemaExtractor(temp_repo).extract()
        user = node_named(result, "SchemaEntity", "User")
        order = node_named(result, "SchemaEntity", "Order")
        record = node_named(result, "SchemaEntity", "OrderRecord")
        base = node_named(result, "SchemaEntity", "Base")

        uses = [rel for rel in rels_of(result, "USES_TYPE") if rel.source == order.id]
        assert [rel.target for rel in uses] == [user.id]
        assert uses[0].properties["field"] == "owner"
        assert has_rel(result, "EXTENDS", record.id, base.id)

    def test_orm_table(self, temp_repo: Path):
        """ORM models produce a database table node."""
        result = SchemaExtractor(temp_repo).extract()
        record = node_named(result, "SchemaEntity", "OrderRecord")
        table = node_named(result, "DatabaseTable", "orders")

        assert record.properties["kind"] == "orm"
        assert record.properties["table_name"] == "orders"
        assert table.id == table_id("orders")

        total = next(node for node in nodes_of(result, "SchemaField")
                     if node.properties["entity"] == "OrderRecord" and node.name == "total")
        assert total.properties["required"] is False

    def test_zod_schema(self, temp_repo: Path):
        """zod object schemas are recognized in TypeScript."""
        result = SchemaExtractor(temp_repo).extract()
        profile = node_named(result, "SchemaEntity", "Profile")

        assert profile.properties["kind"] == "zod"
        assert profile.properties["file_path"] == "web/src/schema.ts"

        fields = {node.name: node for node in nodes_of(result, "SchemaField")
                  if node.properties["entity"] == "Profile"}
        assert fields["name"].properties["field_type"] == "string"
        assert fields["name"].properties["validation"] == {"min": "1"}
        assert fields["age"].properties["required"] is False

    def test_syntax_error_is_skipped(self, tmp_path: Path):
        """Unparseable sources do not stop extraction."""
        (tmp_path / "broken.py").write_text("class Broken(BaseModel:\n", encoding="utf-8")
        (tmp_path / "ok.py").write_text(
            "from dataclasses import dataclass\n\n@dataclass\nclass Point:\n    x: int = 0\n",
            encoding="utf-8",
        )

        result = SchemaExtractor(tmp_path).extract()

        assert [node.name for node in nodes_of(result, "SchemaEntity")] == ["Point"]


class TestDocumentExtractor:
    """Test documentation extraction."""

    def test_documents_found(self, temp_repo: Path):
        """Markdown files are found, hidden directories are not."""
        result = DocumentExtractor(temp_repo).extract()
        paths = sorted(node.properties["file_path"] for node in nodes_of(result, "Document"))

        assert paths == ["README.md", "docs/guide.md", "packages/core/README.md"]

    def test_titles_sections_and_description(self, temp_repo: Path):
        """Title, sections and first paragraph are recorded."""
        result = DocumentExtractor(temp_repo).extract()
        readme = next(node for node in nodes_of(result, "Document") if node.id == document_id("README.md"))

        assert readme.properties["title"] == "Sample App"
        assert readme.properties["sections"] == ["Sample App", "Architecture"]
        assert readme.properties["description"] == "Sample application used to exercise the extractors."
        assert readme.properties["code_languages"] == ["python"]
        assert len(readme.properties["content_hash"]) == 64

    def test_links_between_documents(self, temp_repo: Path):
        """Relative links to known documents become REFERENCES."""
        result = DocumentExtractor(temp_repo).extract()
        readme = document_id("README.md")

        assert has_rel(result, "REFERENCES", readme, document_id("docs/guide.md"))
        assert has_rel(result, "REFERENCES", readme, document_id("packages/core/README.md"))
        assert has_rel(result, "REFERENCES", document_id("docs/guide.md"), readme)

    def test_concepts(self, temp_repo: Path):
        """Top-level headings and code block type names become concepts."""
        result = DocumentExtractor(temp_repo).extract()
        concepts = {node.name for node in nodes_of(result, "Concept")}

        assert {"Architecture", "Pipeline", "Logging"} <= concepts
        ids = [node.id for node in nodes_of(result, "Concept")]
        assert len(ids) == len(set(ids))

    def test_external_links_ignored(self, tmp_path: Path):
        """URLs and anchors do not create edges."""
        (tmp_path / "README.md").write_text(
            "# Links\n\n[site](https://example.com) [top](#links) [missing](other.md)\n",
            encoding="utf-8",
        )

        result = DocumentExtractor(tmp_path).extract()

        assert not [rel for rel in rels_of(result, "REFERENCES")
                    if rel.properties.get("reference_type") == "document_link"]


class TestFunctionExtractor:
    """Test function, method and class extraction."""

    def test_python_symbols(self, temp_repo: Path):
        """Classes, methods and functions are found with signatures."""
        result = FunctionExtractor(temp_repo).extract()
        service = node_named(result, "Class", "UserService")
        get_user = node_named(result, "Method", "get_user")

        assert get_user.properties["qualified_name"] == "UserService.get_user"
        assert get_user.properties["parameters"] == ["user_id"]
        assert get_user.properties["return_type"] == "User"
        assert get_user.properties["signature"] == "def get_user(self, user_id: int) -> User"
        assert get_user.properties["description"] == "Fetch one user."
        assert node_named(result, "Method", "_load").properties["is_exported"] is False
        assert has_rel(result, "CONTAINS", service.id, get_user.id)
        assert has_rel(result, "CONTAINS", file_id("app/service.py"), service.id)

    def test_calls_and_usage(self, temp_repo: Path):
        """Resolved calls become CALLS edges and raise the callee's usage count."""
        result = FunctionExtractor(temp_repo).extract()
        get_user = node_named(result, "Method", "get_user")
        load = node_named(result, "Method", "_load")
        create_service = node_named(result, "Function", "create_service")
        service = node_named(result, "Class", "UserService")

        assert has_rel(result, "CALLS", get_user.id, load.id)
        assert has_rel(result, "CALLS", create_service.id, service.id)
        assert load.properties["usage_count"] == 1

    def test_typescript_symbols(self, temp_repo: Path):
        """Functions, arrow functions, classes, methods and interfaces in TypeScript."""
        result = FunctionExtractor(temp_repo).extract()
        greeter = node_named(result, "Interface", "Greeter")
        console = node_named(result, "Class", "ConsoleGreeter")
        greet = node_named(result, "Method", "greet")
        render = node_named(result, "Function", "renderApp")
        format_name = node_named(result, "Function", "formatName")

        assert render.properties["is_exported"] is True
        assert render.properties["return_type"] == "void"
        assert render.properties["parameters"] == ["target"]
        assert greet.properties["qualified_name"] == "ConsoleGreeter.greet"
        assert has_rel(result, "IMPLEMENTS", console.id, greeter.id)
        assert has_rel(result, "CALLS", greet.id, format_name.id)
        assert has_rel(result, "CALLS", render.id, console.id)

    def test_deterministic(self, temp_repo: Path):
        """Two runs produce identical output."""
        first = FunctionExtractor(temp_repo).extract().to_dict()
        second = FunctionExtractor(temp_repo).extract().to_dict()

        assert first == second


class TestImportExtractor:
    """Test import resolution."""

    def test_python_internal_import(self, temp_repo: Path):
        """Absolute imports inside the repository resolve to files."""
        result = ImportExtractor(temp_repo).extract()
        service = file_id("app/service.py")
        models = file_id("app/models.py")

        dependency = [rel for rel in rels_of(result, "DEPENDS_ON")
                      if rel.source == service and rel.target == models]
        assert len(dependency) == 1
        assert dependency[0].properties["is_internal"] is True
        assert dependency[0].properties["symbols"] == ["User"]

    def test_relative_import_and_exports(self, temp_repo: Path):
        """Relative imports resolve and __all__ becomes exports."""
        result = ImportExtractor(temp_repo).extract()
        init = file_id("packages/core/core_lib/__init__.py")

        assert has_rel(result, "DEPENDS_ON", init, file_id("packages/core/core_lib/log.py"))
        exports = [node for node in nodes_of(result, "Export") if node.properties["file_path"].endswith("__init__.py")]
        assert [node.name for node in exports] == ["createLogger"]

    def test_external_modules(self, temp_repo: Path):
        """Third-party and standard library modules become external nodes."""
        result = ImportExtractor(temp_repo).extract()
        external = {node.name: node for node in nodes_of(result, "ExternalModule")}

        assert external["requests"].properties["is_stdlib"] is False
        assert external["logging"].properties["is_stdlib"] is True
        assert "react" in external
        assert "zod" in external
        assert has_rel(result, "DEPENDS_ON", file_id("app/service.py"), external_module_id("requests"))

    def test_typescript_imports(self, temp_repo: Path):
        """Relative specifiers resolve with extension probing."""
        result = ImportExtractor(temp_repo).extract()
        index = file_id("web/src/index.ts")

        assert has_rel(result, "DEPENDS_ON", index, file_id("web/src/util.ts"))
        format_import = next(node for node in nodes_of(result, "Import")
                             if node.properties["file_path"] == "web/src/index.ts"
                             and node.properties["imported"] == "formatName")
        assert format_import.properties["resolved_path"] == "web/src/util.ts"
        assert format_import.properties["is_external"] is False

        exports = sorted(node.name for node in nodes_of(result, "Export")
                         if node.properties["file_path"] == "web/src/index.ts")
        assert exports == ["ConsoleGreeter", "Greeter", "renderApp"]
