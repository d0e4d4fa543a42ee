import pytest
import tempfile
import textwrap
from pathlib import Path
from types import SimpleNamespace
from typing import Generator, Dict, Any, List, Optional, Callable
import sys

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from repokg.config import StoreConfig
from repokg.graph.graph_store import GraphStoreService
from repokg.types import GraphNode, GraphRelationship, StoreQueryResult


def _write(root: Path, relative: str, content: str):
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(content).lstrip("\n"), encoding="utf-8")


@pytest.fixture
def temp_repo() -> Generator[Path, None, None]:
    """Create a small mixed Python / TypeScript repository."""
    with tempfile.TemporaryDirectory() as temp_dir:
        root = Path(temp_dir).resolve()

        _write(root, "pyproject.toml", """
            [project]
            name = "sample-app"
            version = "1.2.0"
            description = "Sample application"
            dependencies = ["requests>=2.31", "sample-core"]

            [project.optional-dependencies]
            test = ["pytest>=7"]
        """)
        _write(root, "README.md", """
            # Sample App

            Sample application used to exercise the extractors.

            See the [guide](docs/guide.md) and the [core docs](packages/core/README.md).

            ## Architecture

            ```python
            class Pipeline:
                pass
            ```
        """)
        _write(root, "docs/guide.md", """
            # UserService Guide

            How to look up users.

            Back to the [readme](../README.md).
        """)
        _write(root, "app/__init__.py", "")
        _write(root, "app/models.py", '''
            from typing import List

            from pydantic import BaseModel, Field
            from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


            class User(BaseModel):
                """A registered user."""
                id: int
                email: str = Field(..., max_length=255)
                nickname: str = "anon"


            class Order(BaseModel):
                owner: User
                items: List[str] = []


            class Base(DeclarativeBase):
                pass


            class OrderRecord(Base):
                __tablename__ = "orders"

                id: Mapped[int] = mapped_column(primary_key=True)
                total: Mapped[float] = mapped_column(nullable=True)
        ''')
        _write(root, "app/service.py", '''
            import requests

            from app.models import User


            class UserService:
                """Looks up users."""

                def get_user(self, user_id: int) -> User:
                    """Fetch one user."""
                    return self._load(user_id)

                def _load(self, user_id: int) -> User:
                    response = requests.get(f"https://example.com/users/{user_id}")
                    return User(**response.json())


            def create_service() -> UserService:
                return UserService()
        ''')
        _write(root, "packages/core/pyproject.toml", """
            [project]
            name = "sample-core"
            version = "0.1.0"
            description = "Core logging utilities"
        """)
        _write(root, "packages/core/README.md", """
            # Core

            Shared logging helpers.

            ## Logging

            Use `createLogger` to build a logger.
        """)
        _write(root, "packages/core/core_lib/__init__.py", '''
            from .log import createLogger

            __all__ = ["createLogger"]
        ''')
        _write(root, "packages/core/core_lib/log.py", '''
            import logging


            def createLogger(name: str) -> logging.Logger:
                """Create a named logger."""
                return logging.getLogger(name)
        ''')
        _write(root, "web/package.json", """
            {
              "name": "@sample/web",
              "version": "0.3.0",
              "main": "src/index.ts",
              "dependencies": {"react": "^18.2.0"},
              "devDependencies": {"typescript": "^5.4.0"}
            }
        """)
        _write(root, "web/src/index.ts", """
            import { formatName } from './util';
            import React from 'react';

            export interface Greeter {
              greet(name: string): string;
            }

            export class ConsoleGreeter implements Greeter {
              greet(name: string): string {
                return formatName(name);
              }
            }

            export function renderApp(target: string): void {
              const greeter = new ConsoleGreeter();
              greeter.greet(target);
            }
        """)
        _write(root, "web/src/util.ts", """
            export const formatName = (name: string): string => {
              return name.trim();
            };
        """)
        _write(root, "web/src/schema.ts", """
            import { z } from 'zod';

            export const ProfileSchema = z.object({
              name: z.string().min(1),
              age: z.number().optional(),
            });
        """)
        _write(root, "node_modules/leftpad/index.js", "module.exports = function leftpad() {};\n")
        _write(root, ".cache/notes.md", "# Hidden\n")

        yield root


@pytest.fixture
def sample_nodes() -> List[GraphNode]:
    """Nodes resembling what the extractors produce."""
    return [
        GraphNode(id="package:sample-core", type="Package", name="sample-core",
                  properties={"path": "packages/core", "description": "Core logging utilities"}),
        GraphNode(id="document:core-readme", type="Document", name="README.md",
                  properties={"file_path": "packages/core/README.md", "title": "Core"},
                  metadata={"package": "sample-core"}),
        GraphNode(id="function:createLogger", type="Function", name="createLogger",
                  properties={"file_path": "packages/core/core_lib/log.py",
                              "signature": "def createLogger(name: str) -> logging.Logger",
                              "usage_count": 3}),
        GraphNode(id="class:UserService", type="Class", name="UserService",
                  properties={"file_path": "app/service.py"}),
        GraphNode(id="function:TestFunction", type="Function", name="TestFunction",
                  properties={"file_path": "tests/test_app.py"}),
        GraphNode(id="function:runTests", type="Function", name="runTests",
                  properties={"file_path": "tests/run.py"}),
    ]


@pytest.fixture
def sample_relationships() -> List[GraphRelationship]:
    return [
        GraphRelationship(id="calls:1", type="CALLS", source="class:UserService",
                          target="function:createLogger", metadata={"confidence": 0.8}),
        GraphRelationship(id="documents:1", type="DOCUMENTS", source="document:core-readme",
                          target="package:sample-core", metadata={"confidence": 0.9}),
    ]


class FakeStore:
    """In-memory stand-in for the graph store that records every query."""

    def __init__(self, result: Optional[StoreQueryResult] = None,
                 responder: Optional[Callable[[str, Dict[str, Any]], StoreQueryResult]] = None,
                 errors: Optional[List[Exception]] = None, stats: Optional[Dict[str, Any]] = None):
        self.result = result or StoreQueryResult()
        self.responder = responder
        self.errors = list(errors or [])
        self.stats = stats or {"node_count": 0, "relationship_count": 0,
                               "node_type_counts": {}, "relationship_type_counts": {}}
        self.calls: List[Dict[str, Any]] = []
        self.connected = True
        self.imported: List[Any] = []
        self.cleared = False

    def connect(self):
        self.connected = True

    def disconnect(self):
        self.connected = False

    def query(self, cypher: str, params: Optional[Dict[str, Any]] = None) -> StoreQueryResult:
        self.calls.append({"cypher": cypher, "params": dict(params or {})})
        if self.errors:
            raise self.errors.pop(0)
        if self.responder is not None:
            return self.responder(cypher, params or {})
        return self.result

    def get_stats(self) -> Dict[str, Any]:
        return self.stats

    def import_data(self, nodes, relationships) -> Dict[str, int]:
        self.imported.append((list(nodes), list(relationships)))
        return {"nodes": len(nodes), "relationships": len(relationships)}

    def clear_database(self):
        self.cleared = True


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


class FakeResult:
    """Mimics a neo4j result: iterable records plus consume/single."""

    def __init__(self, records: List[Dict[str, Any]]):
        self.records = records

    def __iter__(self):
        return iter(self.records)

    def consume(self):
        return SimpleNamespace(result_available_after=3)

    def single(self):
        return self.records[0] if self.records else None


class FakeSession:
    def __init__(self, driver: "FakeDriver"):
        self.driver = driver

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def run(self, cypher: str, parameters: Optional[Dict[str, Any]] = None, **kwargs) -> FakeResult:
        params = dict(parameters or {})
        params.update(kwargs)
        self.driver.calls.append((cypher, params))
        if self.driver.errors:
            raise self.driver.errors.pop(0)
        return FakeResult(self.driver.responder(cypher, params))

    def execute_write(self, work):
        self.driver.write_transactions += 1
        return work(self)


class FakeDriver:
    """Records Cypher sent through sessions; answers with ``responder``."""

    def __init__(self, responder: Optional[Callable[[str, Dict[str, Any]], List[Dict[str, Any]]]] = None):
        self.responder = responder or self.default_responder
        self.calls: List[Any] = []
        self.errors: List[Exception] = []
        self.write_transactions = 0
        self.closed = False
        self.databases: List[str] = []

    @staticmethod
    def default_responder(cypher: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        if "AS merged" in cypher:
            return [{"merged": len(params.get("rows", []))}]
        return []

    def session(self, database: Optional[str] = None) -> FakeSession:
        self.databases.append(database)
        return FakeSession(self)

    def verify_connectivity(self):
        return None

    def close(self):
        self.closed = True


@pytest.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def graph_store(fake_driver: FakeDriver) -> GraphStoreService:
    """Graph store wired to the fake driver."""
    return GraphStoreService(StoreConfig(database="testdb"), driver=fake_driver)


@pytest.fixture
def store_factory() -> Callable[..., FakeStore]:
    """Build fake stores with canned results, responders or errors."""
    return FakeStore
