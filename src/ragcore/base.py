"""Base classes and abstract interfaces for RAG collaborators."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

from pydantic import BaseModel

if TYPE_CHECKING:
    from .document import Chunk, Document
    from .events import ProgressStream
    from .storage import SQLDialect


class GenerationOptions(BaseModel):
    """Sampling options passed to a generation provider."""

    max_tokens: int = 512
    temperature: float = 0.1


class BaseEmbedding(ABC):
    """Abstract base class for embedding models.

    Embedding models convert text into fixed-length dense vectors.
    """

    @abstractmethod
    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of documents.

        Args:
            texts: List of text strings to embed

        Returns:
            List of embedding vectors
        """
        pass

    @abstractmethod
    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query.

        Args:
            text: Query text to embed

        Returns:
            Embedding vector
        """
        pass

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the dimension of the embedding vectors."""
        pass

    async def embed(self, text: str) -> list[float]:
        """Embed a single piece of text."""
        return await self.embed_query(text)

    async def load(self, progress: Optional["ProgressStream"] = None) -> None:
        """Load the underlying model ahead of the first call.

        Providers that download or load weights report 0-100 progress on
        ``progress``. The default implementation has nothing to load.
        """
        if progress is not None:
            await progress.emit("model_load", completed=1, total=1)


class BaseGenerator(ABC):
    """Abstract base class for text generation providers."""

    @abstractmethod
    async def generate(self, prompt: str, options: Optional[GenerationOptions] = None) -> str:
        """Generate a completion for a prompt.

        Args:
            prompt: Full prompt text
            options: Sampling options

        Returns:
            Generated text
        """
        pass

    async def generate_stream(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> AsyncIterator[str]:
        """Stream a completion as text fragments.

        The default implementation yields the full completion once.
        """
        yield await self.generate(prompt, options)


class BaseStorage(ABC):
    """Abstract base class for the storage/query engine behind the vector index.

    SQL passed to a storage uses ``:name`` placeholders on every backend.
    """

    @property
    @abstractmethod
    def dialect(self) -> "SQLDialect":
        """Return the SQL dialect used to render vector operations."""
        pass

    async def initialize(self) -> None:
        """Prepare the backend (extensions, connections) before first use."""
        return None

    @abstractmethod
    async def execute(self, sql: str, params: Optional[dict[str, Any]] = None) -> int:
        """Execute a DDL or DML statement.

        Returns:
            Number of affected rows, when the backend reports it
        """
        pass

    @abstractmethod
    async def query(self, sql: str, params: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        """Run a query and return rows as dictionaries."""
        pass

    async def upsert(
        self,
        table: str,
        row: dict[str, Any],
        conflict_key: str,
        casts: Optional[dict[str, str]] = None,
    ) -> None:
        """Insert a row, replacing the existing row with the same ``conflict_key``.

        Args:
            table: Target table
            row: Column values
            conflict_key: Unique column identifying the row
            casts: Optional column -> SQL type casts applied to the parameters
        """
        casts = casts or {}
        columns = list(row)
        values = ", ".join(self.dialect.cast(f":{col}", casts.get(col)) for col in columns)
        updates = ", ".join(f"{col} = excluded.{col}" for col in columns if col != conflict_key)
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({values}) "
            f"ON CONFLICT ({conflict_key}) DO UPDATE SET {updates}"
        )
        await self.execute(sql, row)

    async def close(self) -> None:
        """Release backend resources."""
        return None


class BaseChunker(ABC):
    """Abstract base class for document chunkers.

    Chunkers split documents into smaller pieces for indexing.
    """

    @abstractmethod
    def split(self, text: str, document_id: str) -> list["Chunk"]:
        """Split raw text into chunks for ``document_id``."""
        pass

    def chunk(self, document: "Document") -> list["Chunk"]:
        """Split a document into chunks carrying its metadata.

        Args:
            document: Document to chunk

        Returns:
            List of chunks in document order
        """
        chunks = self.split(document.content, document.id)
        metadata = dict(document.metadata)
        if document.title:
            metadata.setdefault("title", document.title)
        if document.source:
            metadata.setdefault("source", document.source)
        for chunk in chunks:
            chunk.metadata = {**metadata, **chunk.metadata}
        return chunks
