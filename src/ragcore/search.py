"""Semantic search over the vector index."""

import logging
import re
import time
from typing import Any, Optional

from pydantic import BaseModel

from .base import BaseEmbedding
from .batch import run_bounded
from .cache import CachedEmbedding
from .document import ContextWindow, SearchResponse, SearchResult, StoredChunk
from .events import ProgressStream
from .exceptions import NotInitialized
from .utils.config import RetrievalConfig
from .vectorindex import VectorIndex

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n+")

MIN_HIGHLIGHT_CHARS = 20
MAX_HIGHLIGHT_CHARS = 200


class SearchOptions(BaseModel):
    """Per-call search settings.

    Attributes:
        limit: Number of results to return
        threshold: Minimum cosine similarity
        filters: Metadata equality filters
        include_context: Attach neighbouring chunks to each result
        context_window: Chunks taken on each side of a match
        max_per_document: Cap on results from one document (None disables)
        include_highlights: Extract query-relevant sentences
    """

    limit: int = 5
    threshold: float = 0.3
    filters: Optional[dict[str, Any]] = None
    include_context: bool = False
    context_window: int = 1
    max_per_document: Optional[int] = 2
    include_highlights: bool = True

    @classmethod
    def from_config(cls, config: RetrievalConfig, **overrides: Any) -> "SearchOptions":
        values = {
            "limit": config.limit,
            "threshold": config.threshold,
            "max_per_document": config.max_per_document,
            "context_window": config.context_window,
            "include_highlights": config.include_highlights,
        }
        values.update(overrides)
        return cls(**values)


def keywords(query: str) -> set[str]:
    """Lowercase query words longer than three characters."""
    return {word for word in _WORD_RE.findall(query.lower()) if len(word) > 3}


def extract_highlights(content: str, query: str, max_highlights: int = 3) -> list[str]:
    """Pick sentences of ``content`` that mention a query keyword.

    Sentences must be 20-200 characters long; at most ``max_highlights``
    are returned, in document order.
    """
    terms = keywords(query)
    if not terms:
        return []

    highlights = []
    for sentence in _SENTENCE_SPLIT_RE.split(content):
        sentence = sentence.strip()
        if not MIN_HIGHLIGHT_CHARS <= len(sentence) <= MAX_HIGHLIGHT_CHARS:
            continue
        if terms & set(_WORD_RE.findall(sentence.lower())):
            highlights.append(sentence)
            if len(highlights) >= max_highlights:
                break
    return highlights


def diversify(results: list[SearchResult], max_per_document: int) -> list[SearchResult]:
    """Keep at most ``max_per_document`` results per document, preserving order."""
    seen: dict[str, int] = {}
    kept = []
    for result in results:
        document_id = result.document.document_id
        if seen.get(document_id, 0) < max_per_document:
            seen[document_id] = seen.get(document_id, 0) + 1
            kept.append(result)
    return kept


def join_chunks(chunks: list[StoredChunk]) -> str:
    """Join consecutive chunks of one document, dropping overlapping text."""
    text = ""
    previous_end: Optional[int] = None
    for chunk in chunks:
        start = chunk.metadata.get("start_index")
        end = chunk.metadata.get("end_index")
        content = chunk.content
        if previous_end is not None and start is not None and start < previous_end:
            text += content[previous_end - start:]
        elif text and start is not None and start == previous_end:
            text += content
        elif text:
            text += "\n" + content
        else:
            text = content
        previous_end = end if end is not None else previous_end
    return text


class SearchService:
    """Semantic search with thresholding, diversification and context windows.

    Example:
        ```python
        search = SearchService(CachedEmbedding(LocalEmbedding()), index)
        await search.initialize()
        response = await search.search("What is Python?", SearchOptions(limit=3))
        ```
    """

    def __init__(
        self,
        embedding: BaseEmbedding,
        index: VectorIndex,
        config: Optional[RetrievalConfig] = None,
    ):
        """Initialize the search service.

        Args:
            embedding: Query embedding model; wrapped in a CachedEmbedding if needed
            index: Vector index to search
            config: Default retrieval settings
        """
        if not isinstance(embedding, CachedEmbedding):
            embedding = CachedEmbedding(embedding)
        self.embedding = embedding
        self.index = index
        self.config = config or RetrievalConfig()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Make sure the index exists before accepting searches."""
        await self.index.initialize()
        self._initialized = True

    def options(self, **overrides: Any) -> SearchOptions:
        """Build SearchOptions from the configured defaults."""
        return SearchOptions.from_config(self.config, **overrides)

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> SearchResponse:
        """Search the index for chunks similar to ``query``.

        Fetches twice ``limit`` candidates, drops those under the threshold,
        caps results per document, truncates to ``limit`` and ranks by score.

        Args:
            query: Query text
            options: Search settings (configured defaults when None)

        Returns:
            SearchResponse; ``total_matches`` counts candidates above the
            threshold before diversification and truncation
        """
        if not self._initialized:
            raise NotInitialized("SearchService")

        options = options or self.options()
        started = time.perf_counter()

        query_embedding = await self.embedding.embed_query(query)
        candidates = await self.index.query(
            query_embedding,
            limit=options.limit * 2,
            filters=options.filters,
        )

        matches = [
            SearchResult(document=record.projection(), score=score)
            for record, score in candidates
            if score >= options.threshold
        ]
        matches.sort(key=lambda r: r.score, reverse=True)
        total_matches = len(matches)

        if options.max_per_document:
            matches = diversify(matches, options.max_per_document)
        matches = matches[:options.limit]

        documents: dict[str, list[StoredChunk]] = {}
        for rank, result in enumerate(matches, start=1):
            result.rank = rank
            if options.include_highlights:
                result.highlights = extract_highlights(result.document.content, query)
            if options.include_context:
                result.context = await self._context_window(
                    result.document, options.context_window, documents
                )

        took_ms = (time.perf_counter() - started) * 1000
        logger.debug(
            f"Search returned {len(matches)}/{total_matches} matches in {took_ms:.1f}ms"
        )
        return SearchResponse(
            query=query,
            results=matches,
            total_matches=total_matches,
            took_ms=took_ms,
        )

    async def _context_window(
        self,
        match: StoredChunk,
        window: int,
        documents: dict[str, list[StoredChunk]],
    ) -> ContextWindow:
        """Collect ``window`` chunks on each side of ``match`` in its document."""
        if match.document_id not in documents:
            documents[match.document_id] = await self.index.get_document_chunks(match.document_id)
        chunks = documents[match.document_id]

        position = next((i for i, c in enumerate(chunks) if c.chunk_id == match.chunk_id), None)
        if position is None:
            return ContextWindow(combined_text=match.content)

        before = chunks[max(0, position - window):position]
        after = chunks[position + 1:position + 1 + window]
        return ContextWindow(
            before=before,
            after=after,
            combined_text=join_chunks([*before, chunks[position], *after]),
        )

    async def search_many(
        self,
        queries: list[str],
        options: Optional[SearchOptions] = None,
        concurrency: int = 4,
        progress: Optional[ProgressStream] = None,
    ) -> list[SearchResponse]:
        """Run several searches with bounded concurrency.

        ``progress`` receives a ``search`` event per query and is closed when
        the batch finishes.

        Returns:
            Responses in query order; the first failure is re-raised
        """
        try:
            result = await run_bounded(
                queries,
                lambda q: self.search(q, options),
                concurrency=concurrency,
                progress=progress,
                stage="search",
                item_id=lambda q: q,
            )
        finally:
            if progress is not None:
                progress.close()
        if result.failed:
            raise result.failed[0].error
        return [outcome.result for outcome in result.outcomes]
