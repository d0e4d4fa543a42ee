import os
from pathlib import Path
from typing import List, Set, Optional, Iterator, Iterable, Dict
from concurrent.futures import ThreadPoolExecutor, as_completed

from ..config import settings
from ..types import SourceFile
from ..utils.logger import app_logger
from .manifests import Manifest, find_manifest, read_manifest, MANIFEST_FILES

MAX_FILE_SIZE = 10 * 1024 * 1024

EXTENSION_LANGUAGES = {
    '.py': 'python',
    '.pyi': 'python',
    '.js': 'javascript',
    '.jsx': 'javascript',
    '.mjs': 'javascript',
    '.cjs': 'javascript',
    '.ts': 'typescript',
    '.tsx': 'typescript',
    '.md': 'markdown',
    '.markdown': 'markdown',
    '.txt': 'text',
    '.rst': 'restructuredtext',
    '.adoc': 'asciidoc',
    '.json': 'json',
    '.toml': 'toml',
}

SOURCE_EXTENSIONS = {'.py', '.js', '.jsx', '.mjs', '.cjs', '.ts', '.tsx'}


class SourceScanner:
    """Deterministic file walker shared by the extractors."""

    def __init__(self, root_path: Optional[str] = None, ignored_dirs: Optional[Iterable[str]] = None):
        if root_path is None:
            self.root_path = Path.cwd().resolve()
        else:
            self.root_path = Path(root_path).resolve()

        self.ignored_dirs: Set[str] = set(ignored_dirs or settings.ignored_dirs_list)
        self.logger = app_logger.bind(component="scanner")
        self._manifest_cache: Dict[Path, Optional[Manifest]] = {}

    def relative(self, path: Path) -> str:
        """Repository-relative posix path."""
        return path.resolve().relative_to(self.root_path).as_posix()

    def scan(self, extensions: Optional[Iterable[str]] = None,
             max_depth: Optional[int] = None) -> List[SourceFile]:
        """Scan the root and return matching files in a stable order."""
        if not self.root_path.is_dir():
            raise NotADirectoryError(f"Not a directory: {self.root_path}")

        wanted = {ext.lower() for ext in extensions} if extensions else None
        files = list(self._walk(wanted, max_depth))
        self.logger.debug(f"Found {len(files)} files under {self.root_path}")
        return files

    def _walk(self, extensions: Optional[Set[str]], max_depth: Optional[int]) -> Iterator[SourceFile]:
        """Walk the tree, pruning ignored and hidden directories."""
        def on_error(error: OSError):
            self.logger.warning(f"Cannot read {error.filename}: {error.strerror}")

        for root, dirs, files in os.walk(self.root_path, onerror=on_error):
            root_dir = Path(root)
            depth = len(root_dir.relative_to(self.root_path).parts)

            dirs[:] = sorted(d for d in dirs if not self._is_ignored_dir(d))
            if max_depth is not None and depth >= max_depth:
                dirs[:] = []

            for file_name in sorted(files):
                file_path = root_dir / file_name
                if extensions is not None and file_path.suffix.lower() not in extensions:
                    continue
                source_file = self._create_source_file(file_path)
                if source_file:
                    yield source_file

    def _is_ignored_dir(self, name: str) -> bool:
        return name in self.ignored_dirs or name.startswith('.')

    def _create_source_file(self, file_path: Path) -> Optional[SourceFile]:
        """Create SourceFile object from file path."""
        try:
            size = file_path.stat().st_size
        except OSError as e:
            self.logger.warning(f"Skipping unreadable file {file_path}: {e}")
            return None

        if size > MAX_FILE_SIZE:
            self.logger.warning(f"Skipping large file: {file_path}")
            return None

        return SourceFile(
            path=file_path.relative_to(self.root_path).as_posix(),
            absolute_path=str(file_path),
            language=EXTENSION_LANGUAGES.get(file_path.suffix.lower()),
            size=size,
        )

    def load_file_content(self, source_file: SourceFile) -> Optional[str]:
        """Load content of a source file."""
        try:
            with open(source_file.absolute_path, 'r', encoding='utf-8', errors='ignore') as f:
                return f.read()
        except OSError as e:
            self.logger.error(f"Error loading file {source_file.absolute_path}: {e}")
            return None

    def load_files_content(self, source_files: List[SourceFile], max_workers: int = 4) -> List[SourceFile]:
        """Load content for multiple files in parallel, keeping scan order."""
        def load_content(source_file: SourceFile) -> SourceFile:
            source_file.content = self.load_file_content(source_file)
            return source_file

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [executor.submit(load_content, f) for f in source_files]
            for future in as_completed(futures):
                future.result()

        return [f for f in source_files if f.content is not None]

    def find_manifests(self, max_depth: int = 3) -> List[Manifest]:
        """Find package manifests at the root and in nested package directories."""
        manifests = []
        for source_file in self.scan(extensions={'.toml', '.json'}, max_depth=max_depth):
            path = Path(source_file.absolute_path)
            if path.name not in MANIFEST_FILES:
                continue
            manifest = read_manifest(path, self.root_path)
            if manifest is not None:
                manifests.append(manifest)
        return manifests

    def package_for(self, relative_path: str) -> Optional[str]:
        """Name of the nearest package enclosing a repository-relative path."""
        directory = (self.root_path / relative_path).parent
        if directory not in self._manifest_cache:
            self._manifest_cache[directory] = find_manifest(directory, self.root_path)
        manifest = self._manifest_cache[directory]
        return manifest.name if manifest else None
