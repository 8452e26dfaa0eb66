"""Tests for ingestion, the bounded worker pool and progress events."""

import asyncio

import pytest

from ragcore import (
    Document,
    FixedSizeChunker,
    IngestionService,
    MemoryMonitor,
    ProgressStream,
    RecursiveChunker,
    run_bounded,
)

from .conftest import PHONETIC_TEXT


class ExplodingChunker(RecursiveChunker):
    """Recursive chunker that fails for one document id."""

    def split(self, text, document_id):
        if document_id == "bad":
            raise ValueError("cannot split")
        return super().split(text, document_id)


def documents(count: int) -> list[Document]:
    return [
        Document(id=f"doc{i}", content=f"Document number {i} talks about topic {i}.")
        for i in range(count)
    ]


class TestIngestionService:
    """Tests for single-document ingestion."""

    @pytest.mark.asyncio
    async def test_ingest(self, embedding, index):
        """Test a document is chunked, embedded and stored."""
        ingestion = IngestionService(RecursiveChunker(chunk_size=15), embedding, index)

        result = await ingestion.ingest(Document(id="doc1", content=PHONETIC_TEXT))

        assert result.document_id == "doc1"
        assert result.chunk_ids == [f"doc1_chunk_{i}" for i in range(5)]
        assert result.removed_chunks == 0
        assert await index.count() == 5

    @pytest.mark.asyncio
    async def test_reingest_replaces_stale_chunks(self, embedding, index):
        """Test a shorter new version removes chunks it no longer produces."""
        ingestion = IngestionService(RecursiveChunker(chunk_size=15), embedding, index)
        await ingestion.ingest(Document(id="doc1", content=PHONETIC_TEXT))

        result = await ingestion.ingest(Document(id="doc1", content="Alpha one. Bravo two."))

        assert result.chunk_ids == ["doc1_chunk_0", "doc1_chunk_1"]
        assert result.removed_chunks == 3
        chunks = await index.get_document_chunks("doc1")
        assert [c.content for c in chunks] == ["Alpha one.", "Bravo two."]

    @pytest.mark.asyncio
    async def test_empty_document(self, embedding, index):
        """Test an empty document stores nothing."""
        ingestion = IngestionService(FixedSizeChunker(), embedding, index)

        result = await ingestion.ingest(Document(id="empty", content=""))

        assert result.chunk_ids == []
        assert await index.count() == 0

    @pytest.mark.asyncio
    async def test_delete_document(self, embedding, index):
        ingestion = IngestionService(RecursiveChunker(chunk_size=15), embedding, index)
        await ingestion.ingest(Document(id="doc1", content=PHONETIC_TEXT))

        assert await ingestion.delete_document("doc1") == 5
        assert await index.count() == 0


class TestBatchIngestion:
    """Tests for batch ingestion."""

    @pytest.mark.asyncio
    async def test_ingest_many(self, embedding, index):
        """Test every document is ingested with progress per document."""
        ingestion = IngestionService(RecursiveChunker(), embedding, index)
        progress = ProgressStream()

        result = await ingestion.ingest_many(documents(6), concurrency=2, progress=progress)

        assert [r.document_id for r in result.completed] == [f"doc{i}" for i in range(6)]
        assert result.total_chunks == 6
        assert result.failed == {}
        assert len(progress.history) == 6
        assert progress.history[-1].completed == 6
        assert progress.history[-1].percent == 100.0
        assert {e.stage for e in progress.history} == {"ingest"}

    @pytest.mark.asyncio
    async def test_consumer_loop_ends_with_batch(self, embedding, index):
        """Test a concurrent consumer stops once the batch closes the stream."""
        ingestion = IngestionService(RecursiveChunker(), embedding, index)
        progress = ProgressStream()

        async def consume():
            return [event async for event in progress]

        task = asyncio.ensure_future(ingestion.ingest_many(documents(3), progress=progress))
        events = await asyncio.wait_for(consume(), timeout=5)
        result = await task

        assert progress.closed
        assert len(events) == 3
        assert len(result.completed) == 3

    @pytest.mark.asyncio
    async def test_failures_reported(self, embedding, index):
        """Test a failing document does not stop the batch."""
        ingestion = IngestionService(ExplodingChunker(), embedding, index)
        docs = documents(2) + [Document(id="bad", content="Broken document text.")]

        result = await ingestion.ingest_many(docs)

        assert len(result.completed) == 2
        assert result.failed == {"bad": "cannot split"}

    @pytest.mark.asyncio
    async def test_cancellation(self, embedding, index):
        """Test a set cancel event stops before the next group."""
        ingestion = IngestionService(RecursiveChunker(), embedding, index)
        cancel = asyncio.Event()
        progress = ProgressStream()

        async def cancel_after_first_group():
            async for event in progress:
                if event.completed == 2:
                    cancel.set()
                    return

        watcher = asyncio.ensure_future(cancel_after_first_group())
        result = await ingestion.ingest_many(
            documents(6), concurrency=2, batch_size=2, cancel_event=cancel, progress=progress
        )
        progress.close()
        await watcher

        assert result.cancelled
        assert len(result.completed) < 6

    @pytest.mark.asyncio
    async def test_auto_tune(self, embedding, index):
        """Test the index configuration is recorded after a batch."""
        ingestion = IngestionService(RecursiveChunker(), embedding, index, auto_tune=True)

        await ingestion.ingest_many(documents(2))

        current = await index.current_index()
        assert current.index_type == "none"


class TestRunBounded:
    """Tests for the bounded worker pool."""

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        """Test no more than `concurrency` workers run at once."""
        active = 0
        peak = 0

        async def worker(item):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return item * 2

        result = await run_bounded(list(range(10)), worker, concurrency=3)

        assert peak == 3
        assert [o.result for o in result.outcomes] == [i * 2 for i in range(10)]
        assert not result.cancelled

    @pytest.mark.asyncio
    async def test_errors_captured(self):
        """Test worker exceptions are kept per item."""

        async def worker(item):
            if item == 2:
                raise RuntimeError("bad item")
            return item

        result = await run_bounded([1, 2, 3], worker)

        assert [o.item for o in result.succeeded] == [1, 3]
        assert len(result.failed) == 1
        assert str(result.failed[0].error) == "bad item"

    @pytest.mark.asyncio
    async def test_cancel_before_start(self):
        """Test an already-set cancel event runs nothing."""
        cancel = asyncio.Event()
        cancel.set()

        async def worker(item):
            return item

        result = await run_bounded([1, 2], worker, cancel_event=cancel)

        assert result.cancelled
        assert result.outcomes == []

    @pytest.mark.asyncio
    async def test_groups_checked_for_cancel(self):
        """Test cancellation takes effect at the next group boundary."""
        cancel = asyncio.Event()
        seen = []

        async def worker(item):
            seen.append(item)
            cancel.set()
            return item

        result = await run_bounded([1, 2, 3, 4, 5], worker, batch_size=2, cancel_event=cancel)

        assert seen == [1, 2]
        assert result.cancelled

    @pytest.mark.asyncio
    async def test_progress_labels(self):
        """Test progress events carry item labels and errors."""
        progress = ProgressStream()

        async def worker(item):
            if item == "b":
                raise ValueError("nope")
            return item

        await run_bounded(["a", "b"], worker, progress=progress, stage="test", item_id=str.upper)

        events = {e.item_id: e for e in progress.history}
        assert set(events) == {"A", "B"}
        assert events["B"].error == "nope"
        assert events["A"].error is None

    @pytest.mark.asyncio
    async def test_invalid_concurrency(self):
        async def worker(item):
            return item

        with pytest.raises(ValueError):
            await run_bounded([1], worker, concurrency=0)


class TestMemoryMonitor:
    """Tests for memory back-pressure."""

    @pytest.mark.asyncio
    async def test_no_pressure(self):
        monitor = MemoryMonitor(high_water=0.8, probe=lambda: 0.1)

        assert await monitor.wait_for_capacity() is False
        assert monitor.pauses == 0

    @pytest.mark.asyncio
    async def test_pauses_until_pressure_subsides(self):
        """Test the monitor waits while usage stays above the mark."""
        readings = iter([0.95, 0.95, 0.9, 0.5])
        monitor = MemoryMonitor(high_water=0.8, probe=lambda: next(readings, 0.5), poll_interval=0)

        assert await monitor.wait_for_capacity() is True
        assert monitor.pauses == 1
        assert not monitor.under_pressure()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_wait(self):
        monitor = MemoryMonitor(high_water=0.5, probe=lambda: 0.99, poll_interval=0.01, max_wait=0.03)

        assert await monitor.wait_for_capacity() is True

    def test_invalid_high_water(self):
        with pytest.raises(ValueError):
            MemoryMonitor(high_water=0)

    @pytest.mark.asyncio
    async def test_batch_consults_monitor(self):
        """Test the pool waits on the monitor before each item."""
        monitor = MemoryMonitor(probe=lambda: 0.1)
        calls = []
        original = monitor.wait_for_capacity

        async def tracked():
            calls.append(1)
            return await original()

        monitor.wait_for_capacity = tracked

        async def worker(item):
            return item

        await run_bounded([1, 2, 3], worker, memory_monitor=monitor)

        assert len(calls) == 3


class TestProgressStream:
    """Tests for the progress event stream."""

    @pytest.mark.asyncio
    async def test_iterate_until_closed(self):
        stream = ProgressStream()
        await stream.emit("ingest", 1, 2)
        await stream.emit("ingest", 2, 2)
        stream.close()

        events = [e async for e in stream]

        assert [e.completed for e in events] == [1, 2]
        assert events[0].percent == 50.0

    @pytest.mark.asyncio
    async def test_emit_after_close_dropped(self):
        stream = ProgressStream()
        stream.close()
        await stream.emit("ingest", 1, 1)

        assert stream.history == []
        assert [e async for e in stream] == []
