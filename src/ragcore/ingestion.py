"""Document ingestion: chunk, embed, store."""

import asyncio
import logging
from typing import Optional

from .base import BaseChunker, BaseEmbedding
from .batch import MemoryMonitor, run_bounded
from .cache import CachedEmbedding
from .document import BatchResult, Document, IngestResult
from .events import ProgressStream
from .utils.config import BatchConfig
from .vectorindex import VectorIndex

logger = logging.getLogger(__name__)


class IngestionService:
    """Turns documents into stored chunk vectors.

    Re-ingesting a document id replaces its chunks: new chunks are upserted
    by chunk id and chunks the new version no longer produces are deleted.

    Example:
        ```python
        ingestion = IngestionService(RecursiveChunker(), embedding, index)
        result = await ingestion.ingest(Document(id="doc1", content="..."))
        print(len(result.chunk_ids))
        ```
    """

    def __init__(
        self,
        chunker: BaseChunker,
        embedding: BaseEmbedding,
        index: VectorIndex,
        config: Optional[BatchConfig] = None,
        memory_monitor: Optional[MemoryMonitor] = None,
        auto_tune: bool = False,
    ):
        """Initialize the ingestion service.

        Args:
            chunker: Splits documents into chunks
            embedding: Embedding model; wrapped in a CachedEmbedding if needed
            index: Vector index receiving the chunks
            config: Batch ingestion defaults
            memory_monitor: Pauses batch work under memory pressure
            auto_tune: Re-tune the ANN index after each batch
        """
        if not isinstance(embedding, CachedEmbedding):
            embedding = CachedEmbedding(embedding)
        self.chunker = chunker
        self.embedding = embedding
        self.index = index
        self.config = config or BatchConfig()
        self.memory_monitor = memory_monitor
        self.auto_tune = auto_tune

    async def ingest(self, document: Document) -> IngestResult:
        """Chunk, embed and store a single document.

        Args:
            document: Document to ingest

        Returns:
            IngestResult with the stored chunk ids and the number of stale
            chunks removed from a previous version
        """
        chunks = self.chunker.chunk(document)
        previous = await self.index.get_document_chunks(document.id)

        chunk_ids = []
        if chunks:
            embeddings = await self.embedding.embed_documents([c.content for c in chunks])
            records = await self.index.upsert_many(chunks, embeddings)
            chunk_ids = [r.chunk_id for r in records]

        current = set(chunk_ids)
        stale = [c.chunk_id for c in previous if c.chunk_id not in current]
        removed = await self.index.delete_chunks(stale) if stale else 0

        logger.info(
            f"Ingested document {document.id}: {len(chunk_ids)} chunks"
            + (f", removed {removed} stale" if removed else "")
        )
        return IngestResult(document_id=document.id, chunk_ids=chunk_ids, removed_chunks=removed)

    async def ingest_many(
        self,
        documents: list[Document],
        concurrency: Optional[int] = None,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
        progress: Optional[ProgressStream] = None,
    ) -> BatchResult:
        """Ingest documents with bounded concurrency.

        A failing document does not stop the batch; its error is reported in
        ``BatchResult.failed``. Setting ``cancel_event`` stops the batch at
        the next group boundary.

        Args:
            documents: Documents to ingest
            concurrency: Maximum documents processed at once
            batch_size: Group size between delays and cancellation checks
            batch_delay: Seconds to wait between groups
            cancel_event: Event that cancels the remaining groups
            progress: Receives an ``ingest`` event per finished document and is
                closed when the batch finishes

        Returns:
            BatchResult; ``completed`` follows input order
        """
        try:
            pool = await run_bounded(
                documents,
                self.ingest,
                concurrency=concurrency or self.config.concurrency,
                batch_size=batch_size if batch_size is not None else self.config.batch_size,
                batch_delay=batch_delay if batch_delay is not None else self.config.batch_delay,
                cancel_event=cancel_event,
                progress=progress,
                stage="ingest",
                item_id=lambda document: document.id,
                memory_monitor=self.memory_monitor,
            )
        finally:
            if progress is not None:
                progress.close()

        result = BatchResult(
            completed=[outcome.result for outcome in pool.succeeded],
            failed={outcome.item.id: str(outcome.error) for outcome in pool.failed},
            cancelled=pool.cancelled,
        )
        logger.info(
            f"Batch ingestion finished: {len(result.completed)} documents, "
            f"{result.total_chunks} chunks, {len(result.failed)} failed"
            + (" (cancelled)" if result.cancelled else "")
        )

        if self.auto_tune and result.completed:
            await self.index.tune()
        return result

    async def delete_document(self, document_id: str) -> int:
        """Remove every chunk of a document. Returns the number removed."""
        return await self.index.delete_document(document_id)
