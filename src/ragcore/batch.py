"""Bounded concurrency helpers for batch ingestion and batch search."""

import asyncio
import gc
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

from .events import ProgressStream

logger = logging.getLogger(__name__)


def _meminfo_usage() -> Optional[float]:
    """Usage from /proc/meminfo, counting reclaimable page cache as free."""
    try:
        with open("/proc/meminfo") as f:
            fields = dict(line.split(":", 1) for line in f if ":" in line)
        total = int(fields["MemTotal"].split()[0])
        available = int(fields["MemAvailable"].split()[0])
    except (OSError, KeyError, ValueError):
        return None
    if total <= 0:
        return None
    return 1.0 - (available / total)


def system_memory_usage() -> float:
    """Return the fraction of physical memory in use, or 0.0 if unknown."""
    usage = _meminfo_usage()
    if usage is not None:
        return usage
    try:
        total = os.sysconf("SC_PHYS_PAGES")
        available = os.sysconf("SC_AVPHYS_PAGES")
    except (AttributeError, ValueError, OSError):
        return 0.0
    if total <= 0:
        return 0.0
    return 1.0 - (available / total)


class MemoryMonitor:
    """Pauses work while memory usage is above a high-water mark.

    Each check runs a garbage collection first; while usage stays above
    ``high_water`` the caller is held back, polling every ``poll_interval``
    seconds for at most ``max_wait`` seconds.
    """

    def __init__(
        self,
        high_water: float = 0.8,
        probe: Optional[Callable[[], float]] = None,
        poll_interval: float = 0.5,
        max_wait: float = 30.0,
    ):
        if not 0.0 < high_water <= 1.0:
            raise ValueError("high_water must be in (0, 1]")
        self.high_water = high_water
        self.probe = probe or system_memory_usage
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.pauses = 0

    def usage(self) -> float:
        return self.probe()

    def under_pressure(self) -> bool:
        return self.usage() > self.high_water

    async def wait_for_capacity(self) -> bool:
        """Wait until usage drops below the high-water mark.

        Returns:
            True if the caller was paused
        """
        if not self.under_pressure():
            return False

        self.pauses += 1
        logger.warning(
            f"Memory usage {self.usage():.0%} above {self.high_water:.0%}, pausing ingestion"
        )
        deadline = time.monotonic() + self.max_wait
        while True:
            gc.collect()
            if not self.under_pressure():
                logger.info("Memory pressure subsided, resuming")
                break
            if time.monotonic() >= deadline:
                logger.warning(f"Memory still above high-water mark after {self.max_wait}s, resuming")
                break
            await asyncio.sleep(self.poll_interval)
        return True


@dataclass
class TaskOutcome:
    """Result of one unit of work in a bounded run."""
    index: int
    item: Any
    result: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PoolResult:
    """Outcomes in submission order; items never started are absent."""
    outcomes: list[TaskOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> list[TaskOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[TaskOutcome]:
        return [o for o in self.outcomes if not o.ok]


async def run_bounded(
    items: Sequence[Any],
    worker: Callable[[Any], Awaitable[Any]],
    *,
    concurrency: int = 4,
    batch_size: Optional[int] = None,
    batch_delay: float = 0.0,
    cancel_event: Optional[asyncio.Event] = None,
    progress: Optional[ProgressStream] = None,
    stage: str = "batch",
    item_id: Optional[Callable[[Any], str]] = None,
    memory_monitor: Optional[MemoryMonitor] = None,
) -> PoolResult:
    """Run ``worker`` over ``items`` with at most ``concurrency`` calls in flight.

    Items are processed in groups of ``batch_size`` (all items form one group
    when it is None). ``batch_delay`` seconds are slept between groups and
    ``cancel_event`` is checked before each group starts; a cancelled run
    returns the outcomes of the groups that finished. Worker exceptions are
    captured per item. A progress event is emitted after every completed item,
    in completion order.

    Args:
        items: Work items
        worker: Coroutine function applied to each item
        concurrency: Maximum number of concurrent worker calls
        batch_size: Group size for delay and cancellation boundaries
        batch_delay: Seconds to wait between groups
        cancel_event: Set to stop before the next group
        progress: Optional progress stream
        stage: Stage name used on progress events
        item_id: Label function for progress events
        memory_monitor: Optional monitor consulted before each item starts

    Returns:
        PoolResult with outcomes in submission order
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    total = len(items)
    semaphore = asyncio.Semaphore(concurrency)
    outcomes: dict[int, TaskOutcome] = {}
    completed = 0
    cancelled = False

    group_size = batch_size or max(total, 1)
    indexed = list(enumerate(items))
    groups = [indexed[i:i + group_size] for i in range(0, total, group_size)]

    async def run_one(index: int, item: Any) -> None:
        nonlocal completed
        async with semaphore:
            if memory_monitor is not None:
                await memory_monitor.wait_for_capacity()
            try:
                outcome = TaskOutcome(index=index, item=item, result=await worker(item))
            except Exception as e:
                logger.warning(f"{stage} item {index} failed: {e}")
                outcome = TaskOutcome(index=index, item=item, error=e)
        outcomes[index] = outcome
        completed += 1
        if progress is not None:
            await progress.emit(
                stage,
                completed=completed,
                total=total,
                item_id=item_id(item) if item_id else str(index),
                error=str(outcome.error) if outcome.error else None,
            )

    for group_number, group in enumerate(groups):
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"{stage} cancelled after {completed}/{total} items")
            cancelled = True
            break
        if group_number > 0 and batch_delay > 0:
            await asyncio.sleep(batch_delay)
        await asyncio.gather(*(run_one(index, item) for index, item in group))

    return PoolResult(
        outcomes=[outcomes[i] for i in sorted(outcomes)],
        cancelled=cancelled,
    )
