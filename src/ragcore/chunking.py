"""Document chunking strategies."""

import bisect
import logging
import re
from typing import Optional

from .base import BaseChunker
from .document import Chunk
from .exceptions import ChunkingConfigError
from .utils.config import DEFAULT_SEPARATORS, ChunkingConfig

logger = logging.getLogger(__name__)

# Strongest boundary first; used when snapping fixed-size windows.
BOUNDARIES = ["\n\n", ". ", "! ", "? ", "\n", " "]

# Fraction of the window, measured from its end, searched for a boundary.
SNAP_ZONE = 0.2

_HEADING_RE = re.compile(r"^#{1,6}[ \t]+(.+?)[ \t#]*$", re.MULTILINE)


def validate_config(chunk_size: int, overlap: int, min_chunk_size: int) -> None:
    """Raise ChunkingConfigError for settings no strategy can use."""
    if chunk_size <= 0:
        raise ChunkingConfigError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0:
        raise ChunkingConfigError(f"chunk_overlap must not be negative, got {overlap}")
    if min_chunk_size < 0:
        raise ChunkingConfigError(f"min_chunk_size must not be negative, got {min_chunk_size}")


class _SpanChunker(BaseChunker):
    """Shared span filtering and chunk construction."""

    name = "base"

    def __init__(self, chunk_size: int = 500, overlap: int = 50, min_chunk_size: int = 1):
        validate_config(chunk_size, overlap, min_chunk_size)
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.min_chunk_size = min_chunk_size

    def _spans(self, text: str) -> list[tuple[int, int]]:
        raise NotImplementedError

    def split(self, text: str, document_id: str) -> list[Chunk]:
        """Split text into chunks, numbered in document order."""
        if not text:
            return []

        spans = [
            (start, end)
            for start, end in self._spans(text)
            if end - start >= max(self.min_chunk_size, 1) and text[start:end].strip()
        ]
        headings = [(m.start(), m.group(1).strip()) for m in _HEADING_RE.finditer(text)]
        heading_positions = [pos for pos, _ in headings]

        chunks = []
        for chunk_index, (start, end) in enumerate(spans):
            section = None
            if headings:
                i = bisect.bisect_right(heading_positions, start) - 1
                if i >= 0:
                    section = headings[i][1]
            chunks.append(Chunk(
                id=f"{document_id}_chunk_{chunk_index}",
                document_id=document_id,
                content=text[start:end],
                start_index=start,
                end_index=end,
                chunk_index=chunk_index,
                section=section,
                metadata={"chunker": self.name},
            ))

        # Only known once every chunk exists.
        for chunk in chunks:
            chunk.total_chunks = len(chunks)

        logger.debug(f"Split {document_id} into {len(chunks)} chunks ({self.name})")
        return chunks


class FixedSizeChunker(_SpanChunker):
    """Chunk documents into fixed-size windows with overlap.

    Window ends are pulled back to the last paragraph, sentence or word
    boundary in the final 20% of the window so words are not cut in half.
    The next window starts ``overlap`` characters before the previous end;
    when that would not move forward (``overlap >= chunk_size``) it starts at
    the previous end instead.
    """

    name = "fixed_size"

    def __init__(self, chunk_size: int = 500, overlap: int = 50, min_chunk_size: int = 1):
        super().__init__(chunk_size, overlap, min_chunk_size)
        if overlap >= chunk_size:
            logger.warning(
                f"overlap ({overlap}) >= chunk_size ({chunk_size}); chunks will not overlap"
            )

    @classmethod
    def from_config(cls, config: ChunkingConfig) -> "FixedSizeChunker":
        return cls(config.chunk_size, config.chunk_overlap, config.min_chunk_size)

    def _spans(self, text: str) -> list[tuple[int, int]]:
        spans = []
        length = len(text)
        start = 0

        while start < length:
            end = min(start + self.chunk_size, length)
            if end < length:
                end = self._snap(text, start, end)
            spans.append((start, end))

            next_start = end - self.overlap
            if next_start <= start:
                next_start = end
            start = next_start

        return spans

    def _snap(self, text: str, start: int, end: int) -> int:
        zone_start = end - int((end - start) * SNAP_ZONE)
        if zone_start >= end:
            return end
        for boundary in BOUNDARIES:
            pos = text.rfind(boundary, zone_start, end)
            if pos != -1 and pos + len(boundary) > start:
                return pos + len(boundary)
        return end


class RecursiveChunker(_SpanChunker):
    """Recursively chunk documents using a priority list of separators.

    Splits on the first separator present in the text (paragraphs, then
    lines, sentences and words), greedily merges the pieces up to
    ``chunk_size`` and recurses into any piece that is still too long with
    the remaining separators. Text with no separator left is sliced at fixed
    width. Separators stay attached to the piece before them, so chunk offsets
    map exactly onto the source text; surrounding whitespace is trimmed.
    """

    name = "recursive"

    DEFAULT_SEPARATORS = DEFAULT_SEPARATORS

    def __init__(
        self,
        chunk_size: int = 500,
        overlap: int = 0,
        min_chunk_size: int = 1,
        separators: Optional[list[str]] = None,
    ):
        super().__init__(chunk_size, overlap, min_chunk_size)
        self.separators = separators or list(self.DEFAULT_SEPARATORS)

    @classmethod
    def from_config(cls, config: ChunkingConfig) -> "RecursiveChunker":
        if config.chunk_overlap:
            logger.debug(
                f"chunk_overlap ({config.chunk_overlap}) is not used by the recursive strategy"
            )
        return cls(config.chunk_size, 0, config.min_chunk_size, config.separators)

    def _spans(self, text: str) -> list[tuple[int, int]]:
        spans = []
        for start, end in self._split(text, 0, self.separators):
            while start < end and text[start].isspace():
                start += 1
            while end > start and text[end - 1].isspace():
                end -= 1
            if end > start:
                spans.append((start, end))
        return spans

    def _split(self, text: str, offset: int, separators: list[str]) -> list[tuple[int, int]]:
        if not text:
            return []
        if len(text) <= self.chunk_size:
            return [(offset, offset + len(text))]

        position = next((i for i, sep in enumerate(separators) if sep and sep in text), None)
        if position is None:
            return self._slice(text, offset)

        separator = separators[position]
        remaining = separators[position + 1:]

        pieces = []
        cursor = 0
        while cursor < len(text):
            found = text.find(separator, cursor)
            if found == -1:
                pieces.append((cursor, len(text)))
                break
            pieces.append((cursor, found + len(separator)))
            cursor = found + len(separator)

        merged: list[tuple[int, int]] = []
        current: Optional[tuple[int, int]] = None
        for piece_start, piece_end in pieces:
            if current is None:
                current = (piece_start, piece_end)
            elif piece_end - current[0] <= self.chunk_size:
                current = (current[0], piece_end)
            else:
                merged.append(current)
                current = (piece_start, piece_end)
        if current is not None:
            merged.append(current)

        spans = []
        for start, end in merged:
            if end - start > self.chunk_size:
                spans.extend(self._split(text[start:end], offset + start, remaining))
            else:
                spans.append((offset + start, offset + end))
        return spans

    def _slice(self, text: str, offset: int) -> list[tuple[int, int]]:
        return [
            (offset + i, offset + min(i + self.chunk_size, len(text)))
            for i in range(0, len(text), self.chunk_size)
        ]


CHUNKERS = {
    "fixed": FixedSizeChunker,
    "fixed_size": FixedSizeChunker,
    "recursive": RecursiveChunker,
}


def create_chunker(config: ChunkingConfig, strategy: Optional[str] = None) -> BaseChunker:
    """Build the chunker named by ``strategy`` (or ``config.strategy``)."""
    strategy = strategy or config.strategy
    try:
        chunker_cls = CHUNKERS[strategy]
    except KeyError:
        raise ChunkingConfigError(f"Unknown chunking strategy: {strategy!r}") from None
    return chunker_cls.from_config(config)


def chunk_text(
    text: str,
    document_id: str,
    config: Optional[ChunkingConfig] = None,
    strategy: Optional[str] = None,
) -> list[Chunk]:
    """Split ``text`` into chunks for ``document_id``.

    Args:
        text: Raw document text
        document_id: ID used to derive chunk ids
        config: Chunking settings (defaults when None)
        strategy: ``"fixed"`` or ``"recursive"``; overrides ``config.strategy``

    Returns:
        Chunks in document order with ``total_chunks`` filled in
    """
    return create_chunker(config or ChunkingConfig(), strategy).split(text, document_id)
