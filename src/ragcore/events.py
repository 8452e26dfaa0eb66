"""Progress events for long-running operations.

Batch ingestion, batch search and model loading report progress by emitting
:class:`ProgressEvent` objects on a :class:`ProgressStream`. The caller
consumes the stream independently of the work being done. The operation
that is handed a stream closes it when it finishes, successfully or not,
which ends the consumer's ``async for`` loop::

    stream = ProgressStream()
    task = asyncio.create_task(service.ingest_many(docs, progress=stream))
    async for event in stream:
        print(f"{event.stage}: {event.percent:.0f}%")
    result = await task
"""

import asyncio
from typing import AsyncIterator, Optional

from pydantic import BaseModel


class ProgressEvent(BaseModel):
    """A single progress update."""

    stage: str
    completed: int
    total: int
    item_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 100.0
        return min(100.0, 100.0 * self.completed / self.total)


_CLOSED = object()


class ProgressStream:
    """Unbounded queue of progress events, closed by the producer when done."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.history: list[ProgressEvent] = []

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(
        self,
        stage: str,
        completed: int,
        total: int,
        item_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> ProgressEvent:
        """Publish an event. Events emitted after ``close()`` are dropped."""
        event = ProgressEvent(
            stage=stage,
            completed=completed,
            total=total,
            item_id=item_id,
            error=error,
        )
        if not self._closed:
            self.history.append(event)
            self._queue.put_nowait(event)
        return event

    def close(self) -> None:
        """Signal consumers that no more events will follow."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self.events()

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events as they are emitted until the stream is closed."""
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
