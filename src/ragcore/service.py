"""RAG service: wires the components together and owns their lifecycle."""

import asyncio
from typing import Any, AsyncIterator, Optional

from .base import BaseEmbedding, BaseGenerator, BaseStorage
from .batch import MemoryMonitor
from .cache import CachedEmbedding, EmbeddingCache, RequestDeduplicator
from .chunking import create_chunker
from .document import (
    BatchResult,
    Document,
    GeneralAnswer,
    HybridResponse,
    IndexRecommendation,
    IngestResult,
    RAGResponse,
    SearchResponse,
)
from .embeddings import create_embedding
from .events import ProgressStream
from .exceptions import NotInitialized
from .generation import create_generator
from .ingestion import IngestionService
from .orchestrator import AnswerOptions, RAGOrchestrator
from .search import SearchOptions, SearchService
from .storage import create_storage
from .utils.config import RAGConfig
from .utils.logging import get_logger
from .vectorindex import VectorIndex

logger = get_logger(__name__)


class RAGService:
    """Composition root for ingestion, search and answering.

    Components are created by :meth:`init` and released by :meth:`shutdown`;
    nothing is shared between service instances.

    Example:
        ```python
        config = load_config("ragcore.yaml")
        async with RAGService(config) as rag:
            await rag.ingest(Document(id="doc1", content="Python is a language."))
            response = await rag.answer("What is Python?")
            print(response.answer)
        ```
    """

    def __init__(
        self,
        config: Optional[RAGConfig] = None,
        embedding: Optional[BaseEmbedding] = None,
        generator: Optional[BaseGenerator] = None,
        general_generator: Optional[BaseGenerator] = None,
        storage: Optional[BaseStorage] = None,
    ):
        """Initialize the service.

        Args:
            config: Service configuration (defaults when None)
            embedding: Embedding provider; built from ``config.embedding`` if None
            generator: Generation provider; built from ``config.generator`` if None
            general_generator: Provider for general-knowledge answers
            storage: Storage backend; built from ``config.storage`` if None
        """
        self.config = config or RAGConfig()
        self._embedding = embedding
        self._generator = generator
        self._general_generator = general_generator
        self._storage = storage

        self.storage: Optional[BaseStorage] = None
        self.cache: Optional[EmbeddingCache] = None
        self.embedding: Optional[CachedEmbedding] = None
        self.index: Optional[VectorIndex] = None
        self.search_service: Optional[SearchService] = None
        self.ingestion: Optional[IngestionService] = None
        self.orchestrator: Optional[RAGOrchestrator] = None

    @property
    def initialized(self) -> bool:
        return self.orchestrator is not None

    async def init(self, progress: Optional[ProgressStream] = None) -> None:
        """Create storage, cache, index and services.

        Args:
            progress: Receives model load events and is closed once the
                model is loaded
        """
        if self.initialized:
            return

        config = self.config
        self.storage = self._storage or create_storage(config.storage.url)
        await self.storage.initialize()

        provider = self._embedding or create_embedding(
            config.embedding.provider,
            config.embedding.model,
            **_provider_kwargs(config.embedding),
        )
        self.cache = EmbeddingCache(
            max_size=config.cache.max_size,
            ttl_seconds=config.cache.ttl_seconds,
        )
        self.embedding = CachedEmbedding(provider, self.cache, RequestDeduplicator())
        try:
            await self.embedding.load(progress)
        finally:
            if progress is not None:
                progress.close()

        self.index = VectorIndex.from_config(self.storage, config.index)
        self.search_service = SearchService(self.embedding, self.index, config.retrieval)
        await self.search_service.initialize()

        self.ingestion = IngestionService(
            create_chunker(config.chunking),
            self.embedding,
            self.index,
            config.batch,
            memory_monitor=MemoryMonitor(high_water=config.batch.memory_high_water),
            auto_tune=config.index.auto_tune,
        )

        generator = self._generator or create_generator(
            config.generator.provider,
            config.generator.model,
            **_provider_kwargs(config.generator),
        )
        general_generator = self._general_generator
        if general_generator is None and config.generator.general_model and self._generator is None:
            general_generator = create_generator(
                config.generator.provider,
                config.generator.general_model,
                **_provider_kwargs(config.generator),
            )
        self.orchestrator = RAGOrchestrator(
            self.search_service,
            generator,
            config.generation,
            general_generator=general_generator,
        )
        logger.info(f"RAG service ready (storage: {self.storage.dialect.name})")

    async def shutdown(self) -> None:
        """Release the storage backend and drop cached state."""
        if self.embedding is not None:
            self.embedding.clear()
        if self.storage is not None:
            await self.storage.close()
        self.storage = None
        self.cache = None
        self.embedding = None
        self.index = None
        self.search_service = None
        self.ingestion = None
        self.orchestrator = None
        logger.info("RAG service shut down")

    async def __aenter__(self) -> "RAGService":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    def _require(self) -> None:
        if not self.initialized:
            raise NotInitialized("RAGService")

    async def ingest(self, document: Document) -> IngestResult:
        self._require()
        return await self.ingestion.ingest(document)

    async def ingest_many(
        self,
        documents: list[Document],
        cancel_event: Optional[asyncio.Event] = None,
        progress: Optional[ProgressStream] = None,
        **kwargs: Any,
    ) -> BatchResult:
        self._require()
        return await self.ingestion.ingest_many(
            documents, cancel_event=cancel_event, progress=progress, **kwargs
        )

    async def delete_document(self, document_id: str) -> int:
        self._require()
        return await self.ingestion.delete_document(document_id)

    async def search(self, query: str, **options: Any) -> SearchResponse:
        """Search with the configured defaults, overridden by ``options``."""
        self._require()
        return await self.search_service.search(query, self.search_service.options(**options))

    async def search_many(
        self,
        queries: list[str],
        options: Optional[SearchOptions] = None,
        progress: Optional[ProgressStream] = None,
    ) -> list[SearchResponse]:
        self._require()
        return await self.search_service.search_many(
            queries, options, concurrency=self.config.batch.concurrency, progress=progress
        )

    async def answer(self, query: str, options: Optional[AnswerOptions] = None) -> RAGResponse:
        self._require()
        return await self.orchestrator.answer(query, options)

    async def answer_with_reasoning(
        self,
        query: str,
        options: Optional[AnswerOptions] = None,
    ) -> RAGResponse:
        self._require()
        return await self.orchestrator.answer_with_reasoning(query, options)

    async def answer_general(self, query: str) -> GeneralAnswer:
        self._require()
        return await self.orchestrator.answer_general(query)

    async def answer_hybrid(
        self,
        query: str,
        options: Optional[AnswerOptions] = None,
    ) -> HybridResponse:
        self._require()
        return await self.orchestrator.answer_hybrid(query, options)

    async def stream_answer(
        self,
        query: str,
        options: Optional[AnswerOptions] = None,
    ) -> AsyncIterator[str]:
        self._require()
        async for fragment in self.orchestrator.stream_answer(query, options):
            yield fragment

    async def tune_index(self) -> IndexRecommendation:
        """Apply the recommended ANN index for the current corpus size."""
        self._require()
        return await self.index.tune()

    async def stats(self) -> dict[str, Any]:
        """Vector count, index configuration and cache statistics."""
        self._require()
        current = await self.index.current_index()
        return {
            "vectors": await self.index.count(),
            "index": current.model_dump(),
            "cache": self.cache.stats(),
        }


def _provider_kwargs(config: Any) -> dict[str, Any]:
    """Credentials from a provider config section, omitting unset values."""
    kwargs = {}
    if config.api_key:
        kwargs["api_key"] = config.api_key
    if config.base_url:
        kwargs["base_url"] = config.base_url
    return kwargs
