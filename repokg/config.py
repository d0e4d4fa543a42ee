from pathlib import Path
from typing import Optional, List

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreConfig(BaseModel):
    """Connection settings handed to the graph store."""

    connection_uri: str = "bolt://localhost:7687"
    username: str = "neo4j"
    password: str = "neo4j"
    database: str = "neo4j"
    max_connection_pool_size: int = 50
    connection_acquisition_timeout: float = 60.0
    max_transaction_retry_time: float = 15.0
    max_connection_lifetime: float = 30 * 60.0


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Graph store
    neo4j_uri: str = Field(default="bolt://localhost:7687")
    neo4j_username: str = Field(default="neo4j")
    neo4j_password: str = Field(default="neo4j")
    neo4j_database: str = Field(default="neo4j")
    neo4j_max_pool_size: int = Field(default=50)
    neo4j_acquisition_timeout: float = Field(default=60.0)
    neo4j_max_retry_time: float = Field(default=15.0)
    neo4j_connection_lifetime: float = Field(default=1800.0)

    # Embeddings
    embedding_provider: str = Field(default="openai")
    openai_api_key: Optional[str] = Field(default=None)
    openai_model: str = Field(default="text-embedding-ada-002")
    ollama_host: str = Field(default="http://localhost:11434")
    ollama_model: str = Field(default="nomic-embed-text")
    embedding_dimension: int = Field(default=1536)

    # Vector index
    vector_backend: str = Field(default="neo4j")
    vector_index_name: str = Field(default="graph_node_embeddings")
    milvus_host: str = Field(default="localhost")
    milvus_port: int = Field(default=19530)
    milvus_collection_name: str = Field(default="graph_nodes")

    # Query engine
    query_limit: int = Field(default=20)
    query_depth: int = Field(default=1)
    query_max_depth: int = Field(default=5)
    ai_classifier_enabled: bool = Field(default=False)
    ai_classifier_model: str = Field(default="gpt-4o-mini")
    ai_classifier_timeout: float = Field(default=1.5)
    query_cache_size: int = Field(default=256)
    query_cache_ttl: float = Field(default=300.0)

    # Extraction
    extractor_workers: int = Field(default=5)
    document_max_depth: int = Field(default=3)
    ignored_dirs: str = Field(
        default=".git,.hg,.svn,.venv,venv,env,__pycache__,node_modules,.idea,.vscode,"
                ".pytest_cache,.mypy_cache,.tox,build,dist,.next,coverage"
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_file: str = Field(default="logs/app.log")

    @property
    def ignored_dirs_list(self) -> List[str]:
        """Get ignored directories as a list."""
        return [name.strip() for name in self.ignored_dirs.split(",") if name.strip()]

    @property
    def log_dir(self) -> Path:
        """Get log directory path."""
        return Path(self.log_file).parent

    def store_config(self) -> StoreConfig:
        """Build the graph store connection config."""
        return StoreConfig(
            connection_uri=self.neo4j_uri,
            username=self.neo4j_username,
            password=self.neo4j_password,
            database=self.neo4j_database,
            max_connection_pool_size=self.neo4j_max_pool_size,
            connection_acquisition_timeout=self.neo4j_acquisition_timeout,
            max_transaction_retry_time=self.neo4j_max_retry_time,
            max_connection_lifetime=self.neo4j_connection_lifetime,
        )

    def ensure_directories(self):
        """Ensure necessary directories exist."""
        self.log_dir.mkdir(parents=True, exist_ok=True)


settings = Settings()
settings.ensure_directories()
