"""
Bounded background refresh queue consumed by a fixed pool of workers.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional, Set

from shared.logging import get_logger
from .keys import ResourceKey

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


@dataclass
class RefreshJob:
    """A served entry that should be fetched again."""
    key: ResourceKey
    modified_at: float
    enqueued_at: float = field(default_factory=time.time)


RefreshHandler = Callable[[RefreshJob], Awaitable[None]]


class RefreshQueue:
    """Fire-and-forget refresh jobs with bounded memory.

    A key is queued at most once until its job finishes; when the queue is
    full new jobs are dropped rather than blocking the request that produced
    them.
    """

    def __init__(
        self,
        *,
        workers: int = 4,
        maxsize: int = 1000,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.workers = max(1, workers)
        self.metrics = metrics
        self.logger = get_logger("proxy.refresh_queue")

        self._queue: "asyncio.Queue[RefreshJob]" = asyncio.Queue(maxsize=max(1, maxsize))
        self._pending: Set[ResourceKey] = set()
        self._handler: Optional[RefreshHandler] = None
        self._tasks: List[asyncio.Task] = []
        self.running = False
        self.stats = {"submitted": 0, "dropped": 0, "duplicates": 0, "completed": 0, "failed": 0}

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    def is_pending(self, key: ResourceKey) -> bool:
        return key in self._pending

    async def start(self, handler: RefreshHandler) -> None:
        """Start the worker pool."""
        if self.running:
            return
        self._handler = handler
        self.running = True
        self._tasks = [
            asyncio.create_task(self._worker(index), name=f"refresh-worker-{index}")
            for index in range(self.workers)
        ]
        self.logger.info("Refresh workers started", workers=self.workers)

    async def stop(self) -> None:
        """Stop the worker pool, abandoning queued jobs."""
        if not self.running:
            return
        self.running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.logger.info("Refresh workers stopped", abandoned=self.depth)

    async def join(self) -> None:
        """Wait until every queued job has been handled."""
        await self._queue.join()

    def submit(self, job: RefreshJob) -> bool:
        """Queue ``job`` without blocking. Returns False when it was not queued."""
        if job.key in self._pending:
            self.stats["duplicates"] += 1
            return False

        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self.stats["dropped"] += 1
            self.logger.warning("Refresh queue full, dropping job", key=job.key.path)
            self._record("dropped")
            return False

        self._pending.add(job.key)
        self.stats["submitted"] += 1
        self._update_depth()
        return True

    async def _worker(self, index: int) -> None:
        while self.running:
            job = await self._queue.get()
            try:
                await self._handler(job)  # type: ignore[misc]
                self.stats["completed"] += 1
            except Exception as exc:
                self.stats["failed"] += 1
                self.logger.error("Refresh job failed", key=job.key.path, worker=index, error=str(exc))
                self._record("error")
            finally:
                self._pending.discard(job.key)
                self._queue.task_done()
                self._update_depth()

    def _record(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_refresh_total", result=result)

    def _update_depth(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("refresh_queue_depth", self.depth)
