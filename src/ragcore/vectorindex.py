"""Vector index over a SQL storage backend."""

import json
import logging
import math
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Sequence, TYPE_CHECKING

from .document import Chunk, IndexRecommendation, IndexType, StoredChunk, VectorRecord
from .exceptions import DimensionMismatch, NotInitialized, UnsupportedIndexType
from .utils.config import IndexConfig

if TYPE_CHECKING:
    from .base import BaseStorage

logger = logging.getLogger(__name__)

CATALOG_TABLE = "rag_index_catalog"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_CHUNK_COLUMNS = "id, chunk_id, document_id, chunk_index, content, metadata, created_at"


def check_identifier(name: str) -> str:
    """Return ``name`` if it is a safe SQL identifier or JSON key."""
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return name


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Calculate cosine similarity between two vectors."""
    if len(a) != len(b):
        raise ValueError("Vectors must have the same dimension")

    dot_product = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return dot_product / (norm_a * norm_b)


class VectorIndex:
    """Stores chunk embeddings and manages the ANN index on top of them.

    Rows are keyed by ``chunk_id``: upserting a chunk again replaces its
    content, vector and metadata. ``chunk_index`` is stored as an integer
    column so neighbouring chunks of a document can be read back in order.

    The index structure follows corpus size (see :meth:`recommend_index`):
    exact scans for small tables, IVFFlat clustering for mid-sized ones and
    an HNSW graph beyond that. The applied configuration is recorded in a
    catalog table so :meth:`apply_index` is idempotent.
    """

    def __init__(
        self,
        storage: "BaseStorage",
        dimension: int = 384,
        table: str = "rag_vectors",
        config: Optional[IndexConfig] = None,
    ):
        """Initialize the vector index.

        Args:
            storage: Storage backend executing the SQL
            dimension: Length of every stored embedding
            table: Name of the vector table
            config: Index thresholds and HNSW parameters
        """
        self.storage = storage
        self.dimension = dimension
        self.table = check_identifier(table)
        self.config = config or IndexConfig(table=table, dimension=dimension)
        self._initialized = False

    @classmethod
    def from_config(cls, storage: "BaseStorage", config: IndexConfig) -> "VectorIndex":
        return cls(storage, dimension=config.dimension, table=config.table, config=config)

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def dialect(self):
        return self.storage.dialect

    async def initialize(self) -> None:
        """Create the vector and catalog tables if they do not exist."""
        if self._initialized:
            return

        await self.storage.initialize()
        d = self.dialect
        await self.storage.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                id TEXT PRIMARY KEY,
                chunk_id TEXT NOT NULL UNIQUE,
                document_id TEXT NOT NULL,
                chunk_index INTEGER NOT NULL DEFAULT 0,
                content TEXT NOT NULL,
                embedding {d.vector_type(self.dimension)} NOT NULL,
                metadata {d.json_type},
                created_at {d.timestamp_type} NOT NULL
            )
        """)
        await self.storage.execute(f"""
            CREATE INDEX IF NOT EXISTS {self.table}_document_idx
            ON {self.table} (document_id, chunk_index)
        """)
        await self.storage.execute(f"""
            CREATE TABLE IF NOT EXISTS {CATALOG_TABLE} (
                table_name TEXT PRIMARY KEY,
                index_type TEXT NOT NULL,
                params TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """)
        self._initialized = True
        logger.info(f"Vector index '{self.table}' ready (dimension={self.dimension}, {d.name})")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitialized(f"VectorIndex '{self.table}'")

    def _check_dimension(self, embedding: Sequence[float]) -> None:
        if len(embedding) != self.dimension:
            raise DimensionMismatch(self.dimension, len(embedding))

    def _row_to_chunk(self, row: dict[str, Any]) -> StoredChunk:
        return StoredChunk(
            id=row["id"],
            chunk_id=row["chunk_id"],
            document_id=row["document_id"],
            chunk_index=row["chunk_index"],
            content=row["content"],
            metadata=self.dialect.decode_json(row["metadata"]),
            created_at=row["created_at"],
        )

    def _row_to_record(self, row: dict[str, Any]) -> VectorRecord:
        return VectorRecord(
            **self._row_to_chunk(row).model_dump(),
            embedding=self.dialect.decode_vector(row["embedding"]),
        )

    async def upsert(
        self,
        chunk: Chunk,
        embedding: Sequence[float],
        metadata: Optional[dict[str, Any]] = None,
    ) -> VectorRecord:
        """Insert or replace the vector for a chunk.

        Args:
            chunk: Chunk being stored
            embedding: Its embedding
            metadata: Extra metadata merged over the chunk's own

        Returns:
            The stored record
        """
        self._require_initialized()
        self._check_dimension(embedding)

        record = VectorRecord(
            id=uuid.uuid5(uuid.NAMESPACE_URL, f"{self.table}/{chunk.id}").hex,
            chunk_id=chunk.id,
            document_id=chunk.document_id,
            chunk_index=chunk.chunk_index,
            content=chunk.content,
            embedding=list(embedding),
            metadata={
                **chunk.metadata,
                "start_index": chunk.start_index,
                "end_index": chunk.end_index,
                "total_chunks": chunk.total_chunks,
                "section": chunk.section,
                **(metadata or {}),
            },
            created_at=datetime.now(timezone.utc),
        )

        d = self.dialect
        await self.storage.upsert(
            self.table,
            {
                "id": record.id,
                "chunk_id": record.chunk_id,
                "document_id": record.document_id,
                "chunk_index": record.chunk_index,
                "content": record.content,
                "embedding": d.encode_vector(record.embedding),
                "metadata": d.encode_json(record.metadata),
                "created_at": record.created_at.isoformat(),
            },
            conflict_key="chunk_id",
            casts={"embedding": "vector", "metadata": d.json_type, "created_at": d.timestamp_type},
        )
        return record

    async def upsert_many(
        self,
        chunks: Sequence[Chunk],
        embeddings: Sequence[Sequence[float]],
        metadata: Optional[dict[str, Any]] = None,
    ) -> list[VectorRecord]:
        """Upsert several chunks; every embedding is validated before any write."""
        if len(chunks) != len(embeddings):
            raise ValueError("Number of chunks must match number of embeddings")
        for embedding in embeddings:
            self._check_dimension(embedding)

        return [
            await self.upsert(chunk, embedding, metadata)
            for chunk, embedding in zip(chunks, embeddings)
        ]

    async def query(
        self,
        embedding: Sequence[float],
        limit: int = 5,
        threshold: Optional[float] = None,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[tuple[VectorRecord, float]]:
        """Find the stored vectors closest to ``embedding`` by cosine similarity.

        Args:
            embedding: Query vector
            limit: Maximum number of rows
            threshold: Minimum similarity, if any
            filters: Metadata equality filters; ``document_id`` matches the column

        Returns:
            (record, similarity) pairs, most similar first
        """
        self._require_initialized()
        self._check_dimension(embedding)

        d = self.dialect
        params: dict[str, Any] = {"query": d.encode_vector(list(embedding)), "limit": int(limit)}
        conditions = []
        for i, (key, value) in enumerate((filters or {}).items()):
            if key == "document_id":
                conditions.append(f"document_id = :f{i}")
                params[f"f{i}"] = value
            else:
                conditions.append(f"{d.json_field('metadata', key)} = :f{i}")
                params[f"f{i}"] = d.filter_value(value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        rows = await self.storage.query(
            f"""
            SELECT {_CHUNK_COLUMNS}, embedding, {d.similarity('embedding', ':query')} AS score
            FROM {self.table}
            {where}
            ORDER BY {d.distance('embedding', ':query')}
            LIMIT :limit
            """,
            params,
        )

        results = [(self._row_to_record(row), float(row["score"])) for row in rows]
        if threshold is not None:
            results = [(record, score) for record, score in results if score >= threshold]
        return results

    async def get_document_chunks(self, document_id: str) -> list[StoredChunk]:
        """Return every chunk of a document ordered by ``chunk_index``."""
        self._require_initialized()
        rows = await self.storage.query(
            f"SELECT {_CHUNK_COLUMNS} FROM {self.table} "
            f"WHERE document_id = :document_id ORDER BY chunk_index",
            {"document_id": document_id},
        )
        return [self._row_to_chunk(row) for row in rows]

    async def delete_document(self, document_id: str) -> int:
        """Delete all vectors of a document. Returns the number of rows removed."""
        self._require_initialized()
        removed = await self.storage.execute(
            f"DELETE FROM {self.table} WHERE document_id = :document_id",
            {"document_id": document_id},
        )
        logger.debug(f"Deleted {removed} vectors of document {document_id}")
        return removed

    async def delete_chunks(self, chunk_ids: Sequence[str]) -> int:
        """Delete vectors by chunk id."""
        self._require_initialized()
        if not chunk_ids:
            return 0
        params = {f"c{i}": chunk_id for i, chunk_id in enumerate(chunk_ids)}
        placeholders = ", ".join(f":{name}" for name in params)
        return await self.storage.execute(
            f"DELETE FROM {self.table} WHERE chunk_id IN ({placeholders})",
            params,
        )

    async def count(self) -> int:
        self._require_initialized()
        rows = await self.storage.query(f"SELECT COUNT(*) AS n FROM {self.table}")
        return int(rows[0]["n"]) if rows else 0

    async def clear(self) -> None:
        """Delete every stored vector."""
        self._require_initialized()
        await self.storage.execute(f"DELETE FROM {self.table}")

    def recommend_index(self, row_count: int) -> IndexRecommendation:
        """Choose an index structure for a table of ``row_count`` vectors.

        Below ``exact_scan_max_rows`` no index is used. Up to
        ``ivfflat_max_rows`` an IVFFlat index with ``ceil(sqrt(n))`` lists is
        recommended; larger tables get an HNSW graph built with fixed
        parameters that favour query latency over build time.
        """
        if row_count < self.config.exact_scan_max_rows:
            return IndexRecommendation(index_type=IndexType.NONE.value, row_count=row_count)
        if row_count <= self.config.ivfflat_max_rows:
            return IndexRecommendation(
                index_type=IndexType.IVFFLAT.value,
                params={"lists": math.ceil(math.sqrt(row_count))},
                row_count=row_count,
            )
        return IndexRecommendation(
            index_type=IndexType.HNSW.value,
            params={"m": self.config.hnsw_m, "ef_construction": self.config.hnsw_ef_construction},
            row_count=row_count,
        )

    def _index_name(self, index_type: str) -> str:
        return f"{self.table}_embedding_{index_type}_idx"

    async def current_index(self) -> IndexRecommendation:
        """Return the index configuration currently applied to the table."""
        self._require_initialized()
        rows = await self.storage.query(
            f"SELECT index_type, params FROM {CATALOG_TABLE} WHERE table_name = :table",
            {"table": self.table},
        )
        if not rows:
            return IndexRecommendation(index_type=IndexType.NONE.value)
        return IndexRecommendation(index_type=rows[0]["index_type"], params=json.loads(rows[0]["params"]))

    async def apply_index(self, recommendation: IndexRecommendation) -> bool:
        """Bring the table's ANN index in line with ``recommendation``.

        Re-applying the current configuration does nothing. A different
        configuration drops the existing index before building the new one.
        Backends without ANN support keep exact scans and only record the
        configuration.

        Returns:
            True if the index configuration changed
        """
        self._require_initialized()
        try:
            index_type = IndexType(recommendation.index_type)
        except ValueError:
            raise UnsupportedIndexType(recommendation.index_type) from None

        current = await self.current_index()
        if current.same_config(recommendation):
            logger.debug(f"Index on '{self.table}' already {index_type.value} {recommendation.params}")
            return False

        d = self.dialect
        if current.index_type != IndexType.NONE.value and d.supports_ann:
            await self.storage.execute(d.drop_index_sql(self._index_name(current.index_type)))

        if index_type is not IndexType.NONE:
            if d.supports_ann:
                await self.storage.execute(d.create_index_sql(
                    self._index_name(index_type.value),
                    self.table,
                    "embedding",
                    index_type.value,
                    recommendation.params,
                ))
            else:
                logger.info(f"{d.name} has no ANN indexes; '{self.table}' keeps exact scans")

        await self.storage.upsert(
            CATALOG_TABLE,
            {
                "table_name": self.table,
                "index_type": index_type.value,
                "params": json.dumps(recommendation.params, sort_keys=True),
                "applied_at": datetime.now(timezone.utc).isoformat(),
            },
            conflict_key="table_name",
        )
        logger.info(
            f"Index on '{self.table}' changed from {current.index_type} to "
            f"{index_type.value} {recommendation.params}"
        )
        return True

    async def tune(self) -> IndexRecommendation:
        """Recommend and apply an index for the current row count."""
        recommendation = self.recommend_index(await self.count())
        await self.apply_index(recommendation)
        return recommendation
