"""Data structures shared across the RAG core."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Document(BaseModel):
    """A document to be chunked, embedded and indexed.

    Documents are immutable once ingested; ingesting another document with the
    same id supersedes the previous version.

    Attributes:
        id: Unique identifier for the document
        content: The raw text content
        title: Optional human readable title
        source: Optional source URL or path
        metadata: Free-form metadata carried onto every chunk
    """

    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    title: Optional[str] = None
    source: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def __repr__(self) -> str:
        content_preview = self.content[:50] + "..." if len(self.content) > 50 else self.content
        return f"Document(id={self.id!r}, content={content_preview!r})"


class Chunk(BaseModel):
    """A contiguous slice of a document.

    ``content`` is always ``document.content[start_index:end_index]``.

    Attributes:
        id: Chunk id derived from the document id and chunk index
        document_id: ID of the parent document
        content: The text of the chunk
        start_index: Start character offset in the document
        end_index: End character offset (exclusive)
        chunk_index: Position of the chunk within its document
        total_chunks: Number of chunks the document produced
        section: Nearest preceding heading, if the document has any
        metadata: Document metadata inherited by the chunk
    """

    id: str
    document_id: str
    content: str
    start_index: int = 0
    end_index: int = 0
    chunk_index: int = 0
    total_chunks: int = 0
    section: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def __repr__(self) -> str:
        content_preview = self.content[:30] + "..." if len(self.content) > 30 else self.content
        return f"Chunk(id={self.id!r}, doc_id={self.document_id!r}, content={content_preview!r})"


class StoredChunk(BaseModel):
    """A stored vector row without its embedding payload."""

    id: str
    chunk_id: str
    document_id: str
    chunk_index: int = 0
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def title(self) -> str:
        return self.metadata.get("title") or self.document_id


class VectorRecord(StoredChunk):
    """A chunk vector as persisted in the vector index."""

    embedding: list[float]

    def projection(self) -> StoredChunk:
        return StoredChunk(**self.model_dump(exclude={"embedding"}))


class CacheEntry(BaseModel):
    """An embedding cached by text key."""

    key: str
    embedding: list[float]
    timestamp: float
    hit_count: int = 0


class ContextWindow(BaseModel):
    """Neighbouring chunks of a match, in document order."""

    before: list[StoredChunk] = Field(default_factory=list)
    after: list[StoredChunk] = Field(default_factory=list)
    combined_text: str = ""


class SearchResult(BaseModel):
    """A ranked search hit.

    Attributes:
        document: The matching chunk (no embedding)
        score: Cosine similarity to the query
        rank: 1-based rank by descending score
        highlights: Query-relevant sentences from the chunk
        context: Adjacent chunks, when requested
    """

    document: StoredChunk
    score: float
    rank: int = 0
    highlights: list[str] = Field(default_factory=list)
    context: Optional[ContextWindow] = None

    def __repr__(self) -> str:
        return f"SearchResult(chunk_id={self.document.chunk_id!r}, score={self.score:.4f}, rank={self.rank})"


class SearchResponse(BaseModel):
    """Results of a search plus the number of candidates that cleared the threshold."""

    query: str
    results: list[SearchResult] = Field(default_factory=list)
    total_matches: int = 0
    took_ms: float = 0.0


class IndexType(str, Enum):
    """ANN index structures the vector index knows how to build."""

    NONE = "none"
    IVFFLAT = "ivfflat"
    HNSW = "hnsw"


class IndexRecommendation(BaseModel):
    """An index configuration for a given corpus size."""

    index_type: str
    params: dict[str, int] = Field(default_factory=dict)
    row_count: Optional[int] = None

    def same_config(self, other: "IndexRecommendation") -> bool:
        return self.index_type == other.index_type and self.params == other.params


class SourceReference(BaseModel):
    """A source cited by an answer."""

    title: str
    preview: str
    score: float
    document_id: str
    chunk_id: str


class ResponseMetadata(BaseModel):
    """Timings and context accounting for a RAG answer."""

    retrieval_time_ms: float = 0.0
    generation_time_ms: float = 0.0
    total_time_ms: float = 0.0
    chunks_used: int = 0
    context_tokens: int = 0


class RAGResponse(BaseModel):
    """A document-grounded answer."""

    answer: str
    sources: list[SourceReference] = Field(default_factory=list)
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)
    reasoning: Optional[str] = None


class ChatTurn(BaseModel):
    """A previous question/answer exchange."""

    question: str
    answer: str


class GeneralAnswer(BaseModel):
    """An answer produced from the model's own knowledge, without retrieval."""

    answer: str
    generation_time_ms: float = 0.0


class HybridResponse(BaseModel):
    """Document-grounded and general answers, kept separate.

    ``errors`` maps a source name (``"document"`` or ``"general"``) to the
    error message when that source failed.
    """

    query: str
    document: Optional[RAGResponse] = None
    general: Optional[GeneralAnswer] = None
    errors: dict[str, str] = Field(default_factory=dict)


class IngestResult(BaseModel):
    """Outcome of ingesting one document."""

    document_id: str
    chunk_ids: list[str] = Field(default_factory=list)
    removed_chunks: int = 0


class BatchResult(BaseModel):
    """Outcome of a batch operation."""

    completed: list[IngestResult] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)
    cancelled: bool = False

    @property
    def total_chunks(self) -> int:
        return sum(len(r.chunk_ids) for r in self.completed)
