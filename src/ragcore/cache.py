"""Embedding cache and request deduplication.

:class:`EmbeddingCache` memoizes embeddings by text with LRU eviction and a
per-entry TTL. :class:`RequestDeduplicator` makes concurrent requests for the
same text share one in-flight computation. :class:`CachedEmbedding` combines
both in front of any embedding provider; all cache writes go through the
deduplicator, so each key has a single writer at a time.
"""

import asyncio
import hashlib
import logging
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING

from .base import BaseEmbedding
from .document import CacheEntry
from .exceptions import EmbeddingError

if TYPE_CHECKING:
    from .events import ProgressStream

logger = logging.getLogger(__name__)


class EmbeddingCache:
    """LRU cache of embeddings with time-to-live.

    Keys are a hash of the text combined with its length, so full texts are
    never stored.
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the cache.

        Args:
            max_size: Maximum number of entries before LRU eviction
            ttl_seconds: Lifetime of an entry
            clock: Time source, seconds
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    @staticmethod
    def make_key(text: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:32]
        return f"{digest}:{len(text)}"

    def get(self, text: str) -> Optional[list[float]]:
        """Return the cached embedding, or None on a miss or expiry."""
        key = self.make_key(text)
        entry = self._entries.get(key)

        if entry is None:
            self.misses += 1
            return None

        if self.clock() - entry.timestamp >= self.ttl_seconds:
            del self._entries[key]
            self.expirations += 1
            self.misses += 1
            return None

        self._entries.move_to_end(key)
        entry.hit_count += 1
        self.hits += 1
        return entry.embedding

    def set(self, text: str, embedding: list[float]) -> None:
        """Insert or refresh an entry, evicting the least recently used at capacity."""
        key = self.make_key(text)

        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug(f"Evicted embedding cache entry {evicted}")

        self._entries[key] = CacheEntry(key=key, embedding=embedding, timestamp=self.clock())

    def delete(self, text: str) -> bool:
        return self._entries.pop(self.make_key(text), None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
        }


class RequestDeduplicator:
    """Shares one in-flight computation between concurrent callers per key.

    The in-flight record is removed as soon as the computation settles, so a
    failure is delivered to every waiter but never remembered: the next call
    for the key computes again.
    """

    def __init__(self) -> None:
        self._in_flight: dict[str, asyncio.Task] = {}
        self.shared = 0

    def is_pending(self, key: str) -> bool:
        return key in self._in_flight

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def submit(self, key: str, compute: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """Return the in-flight task for ``key``, starting ``compute`` if there is none."""
        task = self._in_flight.get(key)
        if task is not None:
            self.shared += 1
            logger.debug(f"Joining in-flight computation for {key}")
            return task

        task = asyncio.ensure_future(compute())
        self._in_flight[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        return task

    async def run(self, key: str, compute: Callable[[], Awaitable[Any]]) -> Any:
        """Await the shared computation for ``key``.

        A cancelled caller does not cancel the computation for other waiters.
        """
        return await asyncio.shield(self.submit(key, compute))

    def _forget(self, key: str, task: asyncio.Task) -> None:
        # A task started before clear() must not drop its successor.
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    def clear(self) -> None:
        """Forget in-flight records. Running computations are left to finish."""
        self._in_flight.clear()


class CachedEmbedding(BaseEmbedding):
    """Embedding provider wrapper that caches and deduplicates requests."""

    def __init__(
        self,
        provider: BaseEmbedding,
        cache: Optional[EmbeddingCache] = None,
        deduplicator: Optional[RequestDeduplicator] = None,
    ):
        self.provider = provider
        self.cache = cache or EmbeddingCache()
        self.deduplicator = deduplicator or RequestDeduplicator()

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    async def load(self, progress: Optional["ProgressStream"] = None) -> None:
        await self.provider.load(progress)

    async def get_or_compute(
        self,
        text: str,
        compute_fn: Callable[[str], Awaitable[list[float]]],
    ) -> list[float]:
        """Return the embedding for ``text``, computing it at most once concurrently.

        Args:
            text: Text to embed
            compute_fn: Coroutine function producing the embedding for ``text``

        Returns:
            The embedding; failures propagate to every concurrent caller and
            are not cached
        """
        cached = self.cache.get(text)
        if cached is not None:
            return cached

        async def compute() -> list[float]:
            embedding = await compute_fn(text)
            self.cache.set(text, embedding)
            return embedding

        return await self.deduplicator.run(self.cache.make_key(text), compute)

    async def embed_query(self, text: str) -> list[float]:
        return await self.get_or_compute(text, self.provider.embed_query)

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed documents, sending only uncached texts to the provider in one batch."""
        results: dict[str, list[float]] = {}
        missing: list[str] = []
        for text in texts:
            if text in results or text in missing:
                continue
            cached = self.cache.get(text)
            if cached is not None:
                results[text] = cached
            else:
                missing.append(text)

        if missing:
            to_compute = [t for t in missing if not self.deduplicator.is_pending(self.cache.make_key(t))]
            positions = {text: i for i, text in enumerate(to_compute)}
            batch: Optional[asyncio.Future] = None
            if to_compute:
                batch = asyncio.ensure_future(self.provider.embed_documents(to_compute))

            def picker(text: str) -> Callable[[], Awaitable[list[float]]]:
                async def pick() -> list[float]:
                    vectors = await batch
                    if len(vectors) != len(to_compute):
                        raise EmbeddingError(
                            f"Provider returned {len(vectors)} embeddings for {len(to_compute)} texts"
                        )
                    embedding = vectors[positions[text]]
                    self.cache.set(text, embedding)
                    return embedding
                return pick

            tasks = [self.deduplicator.submit(self.cache.make_key(t), picker(t)) for t in missing]
            vectors = await asyncio.gather(*(asyncio.shield(task) for task in tasks))
            results.update(zip(missing, vectors))

        return [results[text] for text in texts]

    def clear(self) -> None:
        self.cache.clear()
        self.deduplicator.clear()
