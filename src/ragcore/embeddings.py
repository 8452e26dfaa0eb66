"""Embedding model implementations."""

import asyncio
import hashlib
import logging
import math
import re
from typing import Optional, TYPE_CHECKING

from .base import BaseEmbedding
from .exceptions import EmbeddingError

if TYPE_CHECKING:
    from .events import ProgressStream

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "all-MiniLM-L6-v2"

_TOKEN_RE = re.compile(r"\w+")


class HashingEmbedding(BaseEmbedding):
    """Deterministic bag-of-words embedding built from token hashes.

    Each lowercase token is hashed into one of ``dimension`` buckets with a
    hash-derived sign, and the vector is L2-normalized. Texts sharing words
    get a positive cosine similarity, which makes this useful for tests and
    offline runs without loading a model.
    """

    def __init__(self, dimension: int = 384, seed: int = 42):
        """Initialize the hashing embedding.

        Args:
            dimension: Dimension of the embedding vectors
            seed: Seed mixed into every token hash
        """
        self._dimension = dimension
        self.seed = seed

    @property
    def dimension(self) -> int:
        return self._dimension

    def _hash_text(self, text: str) -> list[float]:
        vector = [0.0] * self._dimension
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha256(f"{self.seed}:{token}".encode()).digest()
            bucket = int.from_bytes(digest[:4], "big") % self._dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._hash_text(text) for text in texts]

    async def embed_query(self, text: str) -> list[float]:
        return self._hash_text(text)


class OpenAIEmbedding(BaseEmbedding):
    """OpenAI embedding model.

    Uses OpenAI's embedding API (text-embedding-3-small/large).

    Note: Requires the 'openai' extra to be installed.
    """

    # Known model dimensions
    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        batch_size: int = 100,
    ):
        """Initialize the OpenAI embedding model.

        Args:
            model: Model name (text-embedding-3-small, text-embedding-3-large)
            api_key: OpenAI API key (optional, uses env var if not provided)
            base_url: Optional base URL for API
            batch_size: Batch size for embedding documents
        """
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.batch_size = batch_size
        self._client = None

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self.model, 1536)

    def _get_client(self):
        """Get or create the OpenAI client."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError:
                raise ImportError(
                    "OpenAI embedding requires the 'openai' package. "
                    "Install it with: pip install ragcore[openai]"
                )

            kwargs = {}
            if self.api_key:
                kwargs["api_key"] = self.api_key
            if self.base_url:
                kwargs["base_url"] = self.base_url

            self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of documents using OpenAI API."""
        client = self._get_client()
        all_embeddings = []

        for i in range(0, len(texts), self.batch_size):
            batch = texts[i : i + self.batch_size]

            try:
                response = await client.embeddings.create(model=self.model, input=batch)
            except Exception as e:
                raise EmbeddingError(f"OpenAI embedding request failed: {e}") from e

            all_embeddings.extend(item.embedding for item in response.data)

        return all_embeddings

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query using OpenAI API."""
        embeddings = await self.embed_documents([text])
        return embeddings[0]


class LocalEmbedding(BaseEmbedding):
    """Local embedding model using sentence-transformers.

    Produces mean-pooled, normalized sentence embeddings entirely on the
    local machine. The model is loaded on first use, or ahead of time with
    :meth:`load`.

    Note: Requires the 'local' extra to be installed.
    """

    # Known model dimensions
    MODEL_DIMENSIONS = {
        "all-MiniLM-L6-v2": 384,
        "all-mpnet-base-v2": 768,
        "paraphrase-multilingual-MiniLM-L12-v2": 384,
        "multi-qa-mpnet-base-dot-v1": 768,
    }

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        device: Optional[str] = None,
        normalize: bool = True,
    ):
        """Initialize the local embedding model.

        Args:
            model_name: Name of the sentence-transformers model
            device: Device to run on (cuda, cpu, mps). Auto-detected if None.
            normalize: Whether to normalize embeddings
        """
        self.model_name = model_name
        self.device = device
        self.normalize = normalize
        self._model = None
        self._lock = asyncio.Lock()

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self.model_name, 384)

    def _load_model(self):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "Local embedding requires 'sentence-transformers'. "
                "Install it with: pip install ragcore[local]"
            )
        return SentenceTransformer(self.model_name, device=self.device)

    async def load(self, progress: Optional["ProgressStream"] = None) -> None:
        """Load the model in a worker thread, reporting 0 and 100 percent."""
        async with self._lock:
            if self._model is not None:
                return
            if progress is not None:
                await progress.emit("model_load", completed=0, total=100, item_id=self.model_name)

            loop = asyncio.get_running_loop()
            self._model = await loop.run_in_executor(None, self._load_model)
            logger.info(f"Loaded embedding model: {self.model_name}")

            if progress is not None:
                await progress.emit("model_load", completed=100, total=100, item_id=self.model_name)

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of documents using local model."""
        await self.load()
        model = self._model

        # Run in thread pool to avoid blocking
        loop = asyncio.get_running_loop()
        embeddings = await loop.run_in_executor(
            None,
            lambda: model.encode(
                texts,
                normalize_embeddings=self.normalize,
                convert_to_numpy=True,
            ),
        )

        return embeddings.tolist()

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query using local model."""
        embeddings = await self.embed_documents([text])
        return embeddings[0]


def create_embedding(provider: str, model: Optional[str] = None, **kwargs) -> BaseEmbedding:
    """Build an embedding provider by name (``local``, ``openai`` or ``hashing``)."""
    if provider == "local":
        return LocalEmbedding(model_name=model or DEFAULT_MODEL, **kwargs)
    if provider == "openai":
        return OpenAIEmbedding(model=model or "text-embedding-3-small", **kwargs)
    if provider == "hashing":
        return HashingEmbedding(**kwargs)
    raise ValueError(f"Unknown embedding provider: {provider!r}")
