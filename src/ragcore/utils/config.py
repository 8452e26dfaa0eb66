"""
Configuration utilities.
"""

import json
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field


class Config(BaseModel):
    """Base configuration class."""

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def from_file(cls, path: str | Path) -> "Config":
        """Load configuration from file (YAML or JSON)."""
        path = Path(path)

        if path.suffix in (".yaml", ".yml"):
            return cls.from_yaml(path)
        elif path.suffix == ".json":
            with open(path) as f:
                data = json.load(f)
            return cls(**data)
        else:
            raise ValueError(f"Unsupported config file format: {path.suffix}")


DEFAULT_SEPARATORS = ["\n\n", "\n", ". ", "! ", "? ", " ", ""]


class ChunkingConfig(BaseModel):
    """How documents are split into chunks."""
    chunk_size: int = 500
    chunk_overlap: int = 50
    min_chunk_size: int = 1
    separators: list[str] = Field(default_factory=lambda: list(DEFAULT_SEPARATORS))
    strategy: str = "recursive"


class CacheConfig(BaseModel):
    """Embedding cache capacity and lifetime."""
    max_size: int = 1000
    ttl_seconds: float = 3600.0


class IndexConfig(BaseModel):
    """Vector table and ANN index thresholds."""
    table: str = "rag_vectors"
    dimension: int = 384
    exact_scan_max_rows: int = 1000
    ivfflat_max_rows: int = 100_000
    hnsw_m: int = 16
    hnsw_ef_construction: int = 64
    auto_tune: bool = True


class RetrievalConfig(BaseModel):
    """Default search behaviour."""
    limit: int = 5
    threshold: float = 0.3
    max_per_document: Optional[int] = 2
    context_window: int = 1
    include_highlights: bool = True


class GenerationConfig(BaseModel):
    """Prompt budgeting and sampling defaults."""
    max_context_chunks: int = 5
    max_context_tokens: int = 2000
    max_tokens: int = 200
    temperature: float = 0.1
    general_max_tokens: int = 250
    general_temperature: float = 0.7
    max_history_turns: int = 5
    timeout: Optional[float] = None
    system_prompt: Optional[str] = None


class BatchConfig(BaseModel):
    """Bounded worker pool settings for batch ingestion and search."""
    concurrency: int = 4
    batch_size: Optional[int] = None
    batch_delay: float = 0.0
    memory_high_water: float = 0.8


class StorageConfig(BaseModel):
    """Where vectors are stored.

    ``url`` is either a SQLite path (``:memory:`` by default) or a
    ``postgresql://`` URL.
    """
    url: str = ":memory:"


class EmbeddingConfig(BaseModel):
    """Which embedding provider to use."""
    provider: str = "local"
    model: str = "all-MiniLM-L6-v2"
    api_key: str | None = None
    base_url: str | None = None


class GeneratorConfig(BaseModel):
    """Which generation provider to use."""
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    general_model: str | None = None
    api_key: str | None = None
    base_url: str | None = None


class RAGConfig(Config):
    """Top-level configuration for a RAG service."""
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    generator: GeneratorConfig = Field(default_factory=GeneratorConfig)


def load_config(path: str | Path = "ragcore.yaml") -> RAGConfig:
    """
    Load RAG configuration from file.

    Args:
        path: Path to config file

    Returns:
        RAGConfig instance (defaults when the file does not exist)
    """
    path = Path(path)

    if not path.exists():
        return RAGConfig()

    return RAGConfig.from_file(path)
