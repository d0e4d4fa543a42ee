import pytest
import sys
from pathlib import Path

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from repokg.extractors.base import BaseExtractor, ExtractionError
from repokg.extractors.package_extractor import PackageExtractor
from repokg.extractors.pipeline import ExtractionPipeline, merge_results
from repokg.identity import document_id, package_id
from repokg.types import ExtractionResult, GraphNode


class BrokenExtractor(BaseExtractor):
    """Extractor that always fails while scanning."""

    name = "broken"

    def extract_raw(self):
        raise RuntimeError("boom")

    def transform(self, raw) -> ExtractionResult:
        return ExtractionResult()


class UnreadableExtractor(BrokenExtractor):
    name = "unreadable"

    def extract_raw(self):
        raise ExtractionError("cannot read sources")


class TestExtractionPipeline:
    """Test the concurrent extraction pipeline."""

    def test_full_run(self, temp_repo: Path):
        """All extractors run and their results are merged and correlated."""
        report = ExtractionPipeline(temp_repo).run()
        types = {node.type for node in report.result.nodes}

        assert report.failures == {}
        assert set(report.extractor_counts) == {"package", "schema", "document", "function", "import"}
        assert {"Package", "SchemaEntity", "Document", "Function", "Import", "File"} <= types
        assert report.correlation_stats["total_correlations"] > 0

    def test_ids_are_unique(self, temp_repo: Path):
        """Merged output never repeats an id."""
        result = ExtractionPipeline(temp_repo).run().result
        node_ids = [node.id for node in result.nodes]
        rel_ids = [rel.id for rel in result.relationships]

        assert len(node_ids) == len(set(node_ids))
        assert len(rel_ids) == len(set(rel_ids))

    def test_relationship_endpoints_exist(self, temp_repo: Path):
        """Every relationship points at nodes in the same result."""
        result = ExtractionPipeline(temp_repo).run().result
        node_ids = {node.id for node in result.nodes}

        dangling = [rel for rel in result.relationships
                    if rel.source not in node_ids or rel.target not in node_ids]
        assert dangling == []

    def test_idempotent(self, temp_repo: Path):
        """Running twice over an unchanged tree gives identical output."""
        first = ExtractionPipeline(temp_repo).run().result.to_dict()
        second = ExtractionPipeline(temp_repo).run().result.to_dict()

        assert first == second

    def test_package_documentation_correlated_once(self, temp_repo: Path):
        """The package README documents its package exactly once."""
        result = ExtractionPipeline(temp_repo).run().result
        documents = [
            rel for rel in result.relationships
            if rel.type == "DOCUMENTS"
            and rel.source == document_id("packages/core/README.md")
            and rel.target == package_id("sample-core")
        ]

        assert len(documents) == 1
        assert documents[0].confidence == 0.9

    def test_selected_extractors_only(self, temp_repo: Path):
        """A subset selection runs only those extractors."""
        report = ExtractionPipeline(temp_repo, extractors="package,document", correlate=False).run()

        assert list(report.extractor_counts) == ["package", "document"]
        assert report.correlation_stats == {}
        assert not [node for node in report.result.nodes if node.type == "Function"]

    def test_failure_isolation(self, temp_repo: Path):
        """One failing extractor does not stop the others."""
        registry = {"package": PackageExtractor, "broken": BrokenExtractor, "unreadable": UnreadableExtractor}
        report = ExtractionPipeline(temp_repo, registry=registry).run()

        assert report.failures["broken"] == "RuntimeError: boom"
        assert report.failures["unreadable"] == "cannot read sources"
        assert report.extractor_counts["package"]["nodes"] > 0
        assert any(node.type == "Package" for node in report.result.nodes)

    def test_missing_directory(self, tmp_path: Path):
        """A missing working directory fails every extractor but returns a report."""
        report = ExtractionPipeline(tmp_path / "missing", extractors="package,function").run()

        assert set(report.failures) == {"package", "function"}
        assert report.result.nodes == []

    def test_unknown_registry_selection(self, temp_repo: Path):
        """Unknown names are rejected up front."""
        with pytest.raises(ValueError):
            ExtractionPipeline(temp_repo, extractors="package,bogus", registry={"package": PackageExtractor})

    def test_report_to_dict(self, temp_repo: Path):
        """The report summarizes counts."""
        report = ExtractionPipeline(temp_repo, extractors="package").run()
        summary = report.to_dict()

        assert summary["nodes"] == len(report.result.nodes)
        assert summary["failures"] == {}
        assert "package" in summary["extractor_counts"]


class TestMergeResults:
    """Test merging of extractor results."""

    def test_first_result_wins(self):
        first = ExtractionResult(nodes=[GraphNode(id="file:a", type="File", name="a", properties={"size": 1})])
        second = ExtractionResult(nodes=[GraphNode(id="file:a", type="File", name="a", properties={"size": 2})])

        merged = merge_results([first, second])

        assert len(merged.nodes) == 1
        assert merged.nodes[0].properties["size"] == 1
