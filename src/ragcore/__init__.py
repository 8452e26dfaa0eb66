"""
RAGCore - chunking, embedding cache, vector index, search and answer orchestration.

Example:
    ```python
    from ragcore import Document, RAGService, load_config

    async with RAGService(load_config()) as rag:
        await rag.ingest(Document(id="doc1", content="Python is a language."))
        response = await rag.answer("What is Python?")
    ```
"""

from .document import (
    Document,
    Chunk,
    StoredChunk,
    VectorRecord,
    CacheEntry,
    ContextWindow,
    SearchResult,
    SearchResponse,
    IndexType,
    IndexRecommendation,
    SourceReference,
    ResponseMetadata,
    RAGResponse,
    ChatTurn,
    GeneralAnswer,
    HybridResponse,
    IngestResult,
    BatchResult,
)
from .base import BaseEmbedding, BaseGenerator, BaseStorage, BaseChunker, GenerationOptions
from .exceptions import (
    RAGError,
    ChunkingConfigError,
    DimensionMismatch,
    UnsupportedIndexType,
    NotInitialized,
    NoContextError,
    PromptTooLarge,
    GenerationError,
    GenerationFailure,
    GenerationTimeout,
    EmbeddingError,
    StorageError,
)
from .chunking import FixedSizeChunker, RecursiveChunker, create_chunker, chunk_text
from .cache import EmbeddingCache, RequestDeduplicator, CachedEmbedding
from .embeddings import HashingEmbedding, OpenAIEmbedding, LocalEmbedding, create_embedding
from .generation import StaticGenerator, OpenAIGenerator, create_generator
from .storage import SQLiteStorage, PostgresStorage, SQLDialect, create_storage
from .vectorindex import VectorIndex, cosine_similarity
from .search import SearchService, SearchOptions, diversify, extract_highlights
from .orchestrator import (
    RAGOrchestrator,
    AnswerOptions,
    build_prompt,
    estimate_tokens,
    fit_to_token_budget,
    parse_chain_of_thought,
)
from .ingestion import IngestionService
from .batch import MemoryMonitor, run_bounded
from .events import ProgressEvent, ProgressStream
from .service import RAGService
from .utils import RAGConfig, load_config, get_logger, set_log_level

__version__ = "0.1.0"
__all__ = [
    # Data structures
    "Document", "Chunk", "StoredChunk", "VectorRecord", "CacheEntry",
    "ContextWindow", "SearchResult", "SearchResponse", "IndexType", "IndexRecommendation",
    "SourceReference", "ResponseMetadata", "RAGResponse", "ChatTurn", "GeneralAnswer",
    "HybridResponse", "IngestResult", "BatchResult",
    # Interfaces
    "BaseEmbedding", "BaseGenerator", "BaseStorage", "BaseChunker", "GenerationOptions",
    # Errors
    "RAGError", "ChunkingConfigError", "DimensionMismatch", "UnsupportedIndexType",
    "NotInitialized", "NoContextError", "PromptTooLarge", "GenerationError",
    "GenerationFailure", "GenerationTimeout", "EmbeddingError", "StorageError",
    # Chunking
    "FixedSizeChunker", "RecursiveChunker", "create_chunker", "chunk_text",
    # Embeddings and cache
    "EmbeddingCache", "RequestDeduplicator", "CachedEmbedding",
    "HashingEmbedding", "OpenAIEmbedding", "LocalEmbedding", "create_embedding",
    # Generation
    "StaticGenerator", "OpenAIGenerator", "create_generator",
    # Storage and index
    "SQLiteStorage", "PostgresStorage", "SQLDialect", "create_storage",
    "VectorIndex", "cosine_similarity",
    # Search and answers
    "SearchService", "SearchOptions", "diversify", "extract_highlights",
    "RAGOrchestrator", "AnswerOptions", "build_prompt", "estimate_tokens",
    "fit_to_token_budget", "parse_chain_of_thought",
    # Ingestion and batching
    "IngestionService", "MemoryMonitor", "run_bounded", "ProgressEvent", "ProgressStream",
    # Service
    "RAGService",
    # Utils
    "RAGConfig", "load_config", "get_logger", "set_log_level",
]
