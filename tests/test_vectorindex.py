"""Tests for the vector index, storage backends and ANN index tuning."""

import pytest

from ragcore import (
    Chunk,
    DimensionMismatch,
    IndexRecommendation,
    NotInitialized,
    SQLiteStorage,
    StorageError,
    UnsupportedIndexType,
    VectorIndex,
    cosine_similarity,
    create_storage,
)
from ragcore.storage import PostgresDialect, PostgresStorage, SQLiteDialect

from .conftest import RecordingStorage


def unit(dimension: int, axis: int) -> list[float]:
    vector = [0.0] * dimension
    vector[axis] = 1.0
    return vector


def make_chunk(document_id: str, index: int, content: str = "text", **metadata) -> Chunk:
    return Chunk(
        id=f"{document_id}_chunk_{index}",
        document_id=document_id,
        content=content,
        start_index=index * 10,
        end_index=index * 10 + len(content),
        chunk_index=index,
        total_chunks=3,
        metadata=metadata,
    )


class TestCosineSimilarity:
    """Tests for the cosine similarity helper."""

    def test_identical(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0], [1.0, 2.0])


class TestVectorIndex:
    """Tests for storing and querying vectors on SQLite."""

    @pytest.mark.asyncio
    async def test_requires_initialize(self, storage):
        """Test operations before initialize raise NotInitialized."""
        index = VectorIndex(storage, dimension=4)

        with pytest.raises(NotInitialized):
            await index.query(unit(4, 0))
        with pytest.raises(NotInitialized):
            await index.upsert(make_chunk("d", 0), unit(4, 0))

    @pytest.mark.asyncio
    async def test_initialize_idempotent(self, storage):
        """Test initializing twice is harmless."""
        index = VectorIndex(storage, dimension=4)
        await index.initialize()
        await index.initialize()

        assert index.initialized
        assert await index.count() == 0

    @pytest.mark.asyncio
    async def test_upsert_and_query(self, storage):
        """Test the nearest vector is returned first with its similarity."""
        index = VectorIndex(storage, dimension=4)
        await index.initialize()
        await index.upsert(make_chunk("d1", 0, "x axis"), unit(4, 0))
        await index.upsert(make_chunk("d1", 1, "y axis"), unit(4, 1))
        await index.upsert(make_chunk("d2", 0, "mostly x"), [0.9, 0.1, 0.0, 0.0])

        results = await index.query(unit(4, 0), limit=3)

        assert [record.content for record, _ in results] == ["x axis", "mostly x", "y axis"]
        assert results[0][1] == pytest.approx(1.0)
        assert results[2][1] == pytest.approx(0.0)
        assert results[0][0].embedding == unit(4, 0)

    @pytest.mark.asyncio
    async def test_query_threshold_and_limit(self, storage):
        """Test the threshold drops dissimilar rows and limit caps the result."""
        index = VectorIndex(storage, dimension=4)
        await index.initialize()
        for axis in range(4):
            await index.upsert(make_chunk("d", axis), unit(4, axis))

        assert len(await index.query(unit(4, 0), limit=2)) == 2
        results = await index.query(unit(4, 0), limit=4, threshold=0.5)
        assert len(results) == 1

    @pytest.mark.asyncio
    async def test_upsert_replaces_by_chunk_id(self, storage):
        """Test upserting a chunk id again replaces the row."""
        index = VectorIndex(storage, dimension=4)
        await index.initialize()
        first = await index.upsert(make_chunk("d", 0, "old"), unit(4, 0))
        second = await index.upsert(make_chunk("d", 0, "new"), unit(4, 1))

        assert first.id == second.id
        assert await index.count() == 1
        chunks = await index.get_document_chunks("d")
        assert chunks[0].content == "new"

    @pytest.mark.asyncio
    async def test_metadata_stored(self, storage):
        """Test chunk offsets and metadata are kept with the vector."""
        index = VectorIndex(storage, dimension=4)
        await index.initialize()
        await index.upsert(make_chunk("d", 1, "hello", title="Greeting"), unit(4, 0), {"batch": 7})

        (chunk,) = await index.get_document_chunks("d")
        assert chunk.chunk_index == 1
        assert chunk.title == "Greeting"
        assert chunk.metadata["start_index"] == 10
        assert chunk.metadata["end_index"] == 15
        assert chunk.metadata["total_chunks"] == 3
        assert chunk.metadata["batch"] == 7

    @pytest.mark.asyncio
    async def test_filters(self, storage):
        """Test document_id and metadata equality filters."""
        index = VectorIndex(storage, dimension=4)
        await index.initialize()
        await index.upsert(make_chunk("d1", 0, lang="en"), unit(4, 0))
        await index.upsert(make_chunk("d2", 0, lang="de"), unit(4, 0))
        await index.upsert(make_chunk("d3", 0, lang="en"), unit(4, 0))

        by_document = await index.query(unit(4, 0), filters={"document_id": "d2"})
        assert [r.document_id for r, _ in by_document] == ["d2"]

        by_metadata = await index.query(unit(4, 0), filters={"lang": "en"})
        assert sorted(r.document_id for r, _ in by_metadata) == ["d1", "d3"]

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self, storage):
        """Test vectors of the wrong length are rejected."""
        index = VectorIndex(storage, dimension=4)
        await index.initialize()

        with pytest.raises(DimensionMismatch) as exc_info:
            await index.upsert(make_chunk("d", 0), [1.0, 0.0])
        assert exc_info.value.expected == 4
        assert exc_info.value.actual == 2

        with pytest.raises(DimensionMismatch):
            await index.query([1.0])

    @pytest.mark.asyncio
    async def test_upsert_many_validates_first(self, storage):
        """Test one bad vector prevents the whole batch from being written."""
        index = VectorIndex(storage, dimension=4)
        await index.initialize()
        chunks = [make_chunk("d", 0), make_chunk("d", 1)]

        with pytest.raises(DimensionMismatch):
            await index.upsert_many(chunks, [unit(4, 0), [1.0]])
        assert await index.count() == 0

    @pytest.mark.asyncio
    async def test_document_chunks_ordered(self, storage):
        """Test chunks come back in chunk_index order."""
        index = VectorIndex(storage, dimension=4)
        await index.initialize()
        for i in (2, 0, 1):
            await index.upsert(make_chunk("d", i, f"part {i}"), unit(4, i))

        chunks = await index.get_document_chunks("d")
        assert [c.chunk_index for c in chunks] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_delete(self, storage):
        """Test deleting documents and individual chunks."""
        index = VectorIndex(storage, dimension=4)
        await index.initialize()
        for i in range(3):
            await index.upsert(make_chunk("d1", i), unit(4, i))
        await index.upsert(make_chunk("d2", 0), unit(4, 3))

        assert await index.delete_chunks(["d1_chunk_2"]) == 1
        assert await index.delete_document("d1") == 2
        assert await index.count() == 1

        await index.clear()
        assert await index.count() == 0


class TestIndexRecommendation:
    """Tests for ANN index selection by corpus size."""

    def test_small_corpus(self):
        rec = VectorIndex(SQLiteStorage()).recommend_index(500)
        assert rec.index_type == "none"
        assert rec.params == {}

    def test_medium_corpus(self):
        rec = VectorIndex(SQLiteStorage()).recommend_index(5000)
        assert rec.index_type == "ivfflat"
        assert rec.params == {"lists": 71}

    def test_large_corpus(self):
        rec = VectorIndex(SQLiteStorage()).recommend_index(150000)
        assert rec.index_type == "hnsw"
        assert rec.params == {"m": 16, "ef_construction": 64}

    def test_boundaries(self):
        index = VectorIndex(SQLiteStorage())
        assert index.recommend_index(999).index_type == "none"
        assert index.recommend_index(1000).index_type == "ivfflat"
        assert index.recommend_index(100000).index_type == "ivfflat"
        assert index.recommend_index(100001).index_type == "hnsw"

    @pytest.mark.asyncio
    async def test_apply_index_idempotent(self, storage):
        """Test re-applying the same configuration is a no-op."""
        index = VectorIndex(storage, dimension=4)
        await index.initialize()
        rec = index.recommend_index(5000)

        assert await index.apply_index(rec) is True
        assert await index.apply_index(rec) is False

        current = await index.current_index()
        assert current.index_type == "ivfflat"
        assert current.params == {"lists": 71}

    @pytest.mark.asyncio
    async def test_unsupported_index_type(self, storage):
        """Test unknown index types are rejected."""
        index = VectorIndex(storage, dimension=4)
        await index.initialize()

        with pytest.raises(UnsupportedIndexType):
            await index.apply_index(IndexRecommendation(index_type="lsh"))

    @pytest.mark.asyncio
    async def test_tune_small_table(self, storage):
        """Test tuning a small table keeps exact scans."""
        index = VectorIndex(storage, dimension=4)
        await index.initialize()
        await index.upsert(make_chunk("d", 0), unit(4, 0))

        rec = await index.tune()
        assert rec.index_type == "none"
        assert rec.row_count == 1

    @pytest.mark.asyncio
    async def test_postgres_index_ddl(self):
        """Test switching index types drops the old index and builds the new one."""
        storage = RecordingStorage()
        index = VectorIndex(storage, dimension=384)
        await index.initialize()

        assert any("embedding vector(384)" in sql for sql in storage.statements)

        await index.apply_index(index.recommend_index(5000))
        assert storage.statements[-1] == (
            "CREATE INDEX IF NOT EXISTS rag_vectors_embedding_ivfflat_idx "
            "ON rag_vectors USING ivfflat (embedding vector_cosine_ops) WITH (lists = 71)"
        )

        storage.statements.clear()
        await index.apply_index(index.recommend_index(150000))
        assert storage.statements == [
            "DROP INDEX IF EXISTS rag_vectors_embedding_ivfflat_idx",
            "CREATE INDEX IF NOT EXISTS rag_vectors_embedding_hnsw_idx "
            "ON rag_vectors USING hnsw (embedding vector_cosine_ops) WITH (m = 16, ef_construction = 64)",
        ]

        storage.statements.clear()
        assert await index.apply_index(index.recommend_index(150000)) is False
        assert storage.statements == []


class TestDialects:
    """Tests for SQL rendering per backend."""

    def test_sqlite_fragments(self):
        d = SQLiteDialect()
        assert d.similarity("embedding", ":q") == "(1 - cosine_distance(embedding, :q))"
        assert d.json_field("metadata", "lang") == "json_extract(metadata, '$.lang')"
        assert d.filter_value(True) == 1
        assert d.supports_ann is False

    def test_postgres_fragments(self):
        d = PostgresDialect()
        assert d.distance("embedding", ":q") == "(embedding <=> CAST(:q AS vector))"
        assert d.json_field("metadata", "lang") == "(metadata ->> 'lang')"
        assert d.cast(":metadata", "JSONB") == "CAST(:metadata AS JSONB)"
        assert d.vector_type(384) == "vector(384)"
        assert d.filter_value(3) == "3"

    def test_identifiers_checked(self):
        with pytest.raises(ValueError):
            SQLiteDialect().json_field("metadata", "x'); DROP TABLE t; --")

    def test_vector_encoding(self):
        d = SQLiteDialect()
        assert d.decode_vector(d.encode_vector([0.5, 1.0])) == [0.5, 1.0]


class TestStorage:
    """Tests for storage backends."""

    @pytest.mark.asyncio
    async def test_sqlite_errors_wrapped(self, storage):
        """Test driver errors surface as StorageError with the cause chained."""
        with pytest.raises(StorageError) as exc_info:
            await storage.query("SELECT * FROM missing_table")
        assert exc_info.value.__cause__ is not None

    @pytest.mark.asyncio
    async def test_sqlite_upsert(self, storage):
        """Test the generic upsert replaces rows by conflict key."""
        await storage.execute("CREATE TABLE kv (k TEXT PRIMARY KEY, v TEXT)")
        await storage.upsert("kv", {"k": "a", "v": "1"}, conflict_key="k")
        await storage.upsert("kv", {"k": "a", "v": "2"}, conflict_key="k")

        rows = await storage.query("SELECT k, v FROM kv")
        assert rows == [{"k": "a", "v": "2"}]

    def test_create_storage(self):
        """Test backends are chosen from the URL."""
        assert isinstance(create_storage(":memory:"), SQLiteStorage)
        assert create_storage("sqlite:///data/rag.db").db_path == "data/rag.db"

        postgres = create_storage("postgresql://user@localhost/rag")
        assert isinstance(postgres, PostgresStorage)
        assert postgres.url == "postgresql+psycopg://user@localhost/rag"
