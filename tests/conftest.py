"""
Test configuration and fixtures.
"""

from typing import Any, Optional

import pytest
import pytest_asyncio

from ragcore import (
    BaseStorage,
    CachedEmbedding,
    HashingEmbedding,
    SQLiteStorage,
    SearchService,
    VectorIndex,
    VectorRecord,
)
from ragcore.storage import PostgresDialect
from ragcore.vectorindex import CATALOG_TABLE


PHONETIC_TEXT = "Alpha one. Bravo two. Charlie three. Delta four. Echo five."


def make_record(
    document_id: str,
    chunk_index: int,
    content: str,
    title: Optional[str] = None,
    **metadata: Any,
) -> VectorRecord:
    """Build a stored vector record for scripted search results."""
    if title:
        metadata["title"] = title
    return VectorRecord(
        id=f"{document_id}-{chunk_index}",
        chunk_id=f"{document_id}_chunk_{chunk_index}",
        document_id=document_id,
        chunk_index=chunk_index,
        content=content,
        metadata=metadata,
        embedding=[0.0],
    )


class StubIndex:
    """Stand-in for VectorIndex that returns scripted (record, score) pairs."""

    def __init__(self, scored: Optional[list[tuple[VectorRecord, float]]] = None, error: Optional[Exception] = None):
        self.scored = scored or []
        self.error = error
        self.queries: list[dict[str, Any]] = []

    async def initialize(self) -> None:
        return None

    async def query(self, embedding, limit=5, threshold=None, filters=None):
        self.queries.append({"limit": limit, "filters": filters})
        if self.error is not None:
            raise self.error
        ranked = sorted(self.scored, key=lambda pair: pair[1], reverse=True)
        return ranked[:limit]

    async def get_document_chunks(self, document_id: str):
        chunks = [r.projection() for r, _ in self.scored if r.document_id == document_id]
        return sorted(chunks, key=lambda c: c.chunk_index)


class RecordingStorage(BaseStorage):
    """Storage that records SQL instead of running it, speaking the PostgreSQL dialect."""

    def __init__(self):
        self._dialect = PostgresDialect()
        self.statements: list[str] = []
        self.catalog: dict[str, dict[str, Any]] = {}

    @property
    def dialect(self):
        return self._dialect

    async def execute(self, sql, params=None) -> int:
        self.statements.append(" ".join(sql.split()))
        return 0

    async def query(self, sql, params=None):
        if CATALOG_TABLE in sql:
            row = self.catalog.get(params["table"])
            return [row] if row else []
        return []

    async def upsert(self, table, row, conflict_key, casts=None) -> None:
        if table == CATALOG_TABLE:
            self.catalog[row["table_name"]] = row
        else:
            await super().upsert(table, row, conflict_key, casts)


@pytest.fixture
def embedding():
    """Deterministic offline embedding behind a cache."""
    return CachedEmbedding(HashingEmbedding())


@pytest_asyncio.fixture
async def storage():
    """In-memory SQLite storage."""
    storage = SQLiteStorage(":memory:")
    yield storage
    await storage.close()


@pytest_asyncio.fixture
async def index(storage):
    """Initialized vector index matching the ``embedding`` fixture dimension."""
    index = VectorIndex(storage)
    await index.initialize()
    return index


@pytest_asyncio.fixture
async def search(embedding, index):
    """Initialized search service over the SQLite index."""
    service = SearchService(embedding, index)
    await service.initialize()
    return service
