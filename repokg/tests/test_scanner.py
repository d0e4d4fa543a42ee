import sys
from pathlib import Path

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from repokg.scanner.manifests import (
    find_manifest,
    normalize_package_name,
    read_manifest,
    requirement_name,
)
from repokg.scanner.source_scanner import SourceScanner


class TestSourceScanner:
    """Test the repository walker."""

    def test_scan_skips_ignored_and_hidden_dirs(self, temp_repo: Path):
        """node_modules and dot directories are never visited."""
        scanner = SourceScanner(str(temp_repo), ignored_dirs=["node_modules"])
        paths = [f.path for f in scanner.scan()]

        assert "app/service.py" in paths
        assert not any(p.startswith("node_modules/") for p in paths)
        assert not any(p.startswith(".cache/") for p in paths)

    def test_scan_order_is_stable(self, temp_repo: Path):
        """Two scans return the same files in the same order."""
        scanner = SourceScanner(str(temp_repo))

        first = [f.path for f in scanner.scan()]
        second = [f.path for f in scanner.scan()]

        assert first == second

    def test_extension_filter_and_language(self, temp_repo: Path):
        """Only requested extensions are returned, tagged with their language."""
        scanner = SourceScanner(str(temp_repo))
        files = scanner.scan(extensions={".ts"})

        assert files
        assert all(f.path.endswith(".ts") for f in files)
        assert all(f.language == "typescript" for f in files)

    def test_max_depth(self, temp_repo: Path):
        """Depth 1 only lists files directly under the root."""
        scanner = SourceScanner(str(temp_repo))
        paths = [f.path for f in scanner.scan(max_depth=1)]

        assert "README.md" in paths
        assert "app/__init__.py" in paths
        assert "packages/core/README.md" not in paths

    def test_load_files_content(self, temp_repo: Path):
        """Content is loaded and scan order preserved."""
        scanner = SourceScanner(str(temp_repo))
        files = scanner.scan(extensions={".py"})
        loaded = scanner.load_files_content(files)

        assert [f.path for f in loaded] == [f.path for f in files]
        service = next(f for f in loaded if f.path == "app/service.py")
        assert "class UserService" in service.content

    def test_package_for(self, temp_repo: Path):
        """Files map to the nearest enclosing manifest."""
        scanner = SourceScanner(str(temp_repo))

        assert scanner.package_for("packages/core/core_lib/log.py") == "sample-core"
        assert scanner.package_for("app/service.py") == "sample-app"
        assert scanner.package_for("web/src/index.ts") == "@sample/web"

    def test_find_manifests(self, temp_repo: Path):
        """Root and nested manifests are found."""
        scanner = SourceScanner(str(temp_repo))
        names = sorted(m.name for m in scanner.find_manifests())

        assert names == ["@sample/web", "sample-app", "sample-core"]


class TestManifests:
    """Test manifest parsing helpers."""

    def test_read_pyproject(self, temp_repo: Path):
        """pyproject.toml dependencies and extras are read."""
        manifest = read_manifest(temp_repo / "pyproject.toml", temp_repo)

        assert manifest.name == "sample-app"
        assert manifest.version == "1.2.0"
        assert manifest.path == "."
        assert manifest.dependencies == ["requests", "sample-core"]
        assert manifest.dev_dependencies == ["pytest"]

    def test_read_package_json(self, temp_repo: Path):
        """package.json dependencies and entry point are read."""
        manifest = read_manifest(temp_repo / "web" / "package.json", temp_repo)

        assert manifest.name == "@sample/web"
        assert manifest.path == "web"
        assert manifest.main == "src/index.ts"
        assert manifest.dependencies == ["react"]
        assert manifest.dev_dependencies == ["typescript"]

    def test_broken_manifest_is_ignored(self, temp_repo: Path):
        """Unparseable manifests return None instead of raising."""
        broken = temp_repo / "broken" / "package.json"
        broken.parent.mkdir()
        broken.write_text("{not json", encoding="utf-8")

        assert read_manifest(broken, temp_repo) is None

    def test_find_manifest_walks_up(self, temp_repo: Path):
        """The nearest manifest above a directory wins."""
        manifest = find_manifest(temp_repo / "packages" / "core" / "core_lib", temp_repo)

        assert manifest.name == "sample-core"

    def test_name_helpers(self):
        """Requirement strings and names normalize for comparison."""
        assert requirement_name("requests>=2.31") == "requests"
        assert requirement_name("pydantic[email]~=2.0") == "pydantic"
        assert normalize_package_name("Sample_Core") == "sample-core"
        assert normalize_package_name("@Scope/Pkg") == "@scope/pkg"
