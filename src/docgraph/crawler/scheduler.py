"""
Bounded-concurrency, interval-rate-limited crawl task scheduler.

The scheduler owns a FIFO of pending ``CrawlTask`` objects and a fixed set of
slot workers. Each worker dispatches one task at a time and waits at least
``min_interval`` seconds between two of its own dispatches, so the interval
limits the request rate even when a slot is free. When the number of pending
tasks exceeds ``max_queue_size`` all dispatch pauses for ``pause_seconds``
and then resumes; queued tasks are kept.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Iterator, List, Optional, Set

import structlog

from docgraph.models import CrawlTask
from docgraph.observability import gauge, increment

logger = structlog.get_logger(__name__)

TaskHandler = Callable[[CrawlTask], Awaitable[Any]]
ErrorHook = Callable[[CrawlTask, BaseException], Awaitable[None]]


class VisitedSet:
    """URLs admitted for crawling. Admission is synchronous and happens exactly once per URL."""

    def __init__(self) -> None:
        self._urls: Set[str] = set()

    def add(self, url: str) -> bool:
        """Mark ``url`` visited. Returns False if it already was."""
        if url in self._urls:
            return False
        self._urls.add(url)
        return True

    def __contains__(self, url: object) -> bool:
        return url in self._urls

    def __len__(self) -> int:
        return len(self._urls)

    def __iter__(self) -> Iterator[str]:
        return iter(self._urls)


@dataclass
class SchedulerStats:
    enqueued: int = 0
    duplicates: int = 0
    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    pause_cycles: int = 0
    pending: int = 0
    active: int = 0
    paused: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CrawlScheduler:
    """Dispatches crawl tasks to a bounded pool of slot workers."""

    def __init__(
        self,
        handler: TaskHandler,
        *,
        visited: Optional[VisitedSet] = None,
        max_concurrent: int = 1,
        min_interval: float = 0.0,
        max_queue_size: int = 1000,
        pause_seconds: float = 5.0,
        task_timeout: Optional[float] = None,
        on_error: Optional[ErrorHook] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._handler = handler
        self.visited = visited if visited is not None else VisitedSet()
        self.max_concurrent = max_concurrent
        self.min_interval = min_interval
        self.max_queue_size = max_queue_size
        self.pause_seconds = pause_seconds
        self.task_timeout = task_timeout
        self._on_error = on_error
        self._clock = clock

        self._pending: Deque[CrawlTask] = deque()
        self._active = 0
        self._work_available = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._workers: List[asyncio.Task[None]] = []
        self._resume_task: Optional[asyncio.Task[None]] = None
        self._stats = SchedulerStats()
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Spawn one worker per concurrency slot."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(slot), name=f"crawl-slot-{slot}") for slot in range(self.max_concurrent)
        ]
        logger.info(
            "Scheduler started",
            max_concurrent=self.max_concurrent,
            min_interval=self.min_interval,
            max_queue_size=self.max_queue_size,
        )

    async def close(self) -> None:
        """Cancel all workers. In-flight tasks are cancelled at their current suspension point."""
        self._closed = True
        tasks = list(self._workers)
        if self._resume_task is not None:
            tasks.append(self._resume_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._resume_task = None

    async def join(self) -> None:
        """Wait until nothing is pending and nothing is executing."""
        await self._idle.wait()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def enqueue(self, url: str) -> bool:
        """Admit ``url`` unless it was already visited. Returns True if a task was created.

        The visited-set update happens synchronously, before any await, so two
        discoveries of the same URL can never both be admitted.
        """
        if self._closed:
            return False
        if not self.visited.add(url):
            self._stats.duplicates += 1
            return False

        self._pending.append(CrawlTask(url=url))
        self._stats.enqueued += 1
        self._idle.clear()
        gauge("queue_pending", len(self._pending))
        logger.debug("Queued URL", url=url, pending=len(self._pending))

        if len(self._pending) > self.max_queue_size and self._resumed.is_set():
            self._pause()

        self._work_available.set()
        return True

    # ------------------------------------------------------------------
    # Backpressure
    # ------------------------------------------------------------------

    @property
    def is_paused(self) -> bool:
        return not self._resumed.is_set()

    def _pause(self) -> None:
        self._resumed.clear()
        self._stats.pause_cycles += 1
        increment("queue_pauses")
        logger.warning(
            "Queue size limit reached, pausing", pending=len(self._pending), cooldown_seconds=self.pause_seconds
        )
        self._resume_task = asyncio.create_task(self._resume_after_cooldown())

    async def _resume_after_cooldown(self) -> None:
        await asyncio.sleep(self.pause_seconds)
        self._resumed.set()
        logger.info("Resuming queue", pending=len(self._pending))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _next_task(self) -> CrawlTask:
        while True:
            await self._resumed.wait()
            if self._pending:
                # Pop and mark active with no await in between so join() never sees a gap.
                task = self._pending.popleft()
                self._active += 1
                return task
            self._work_available.clear()
            await self._work_available.wait()

    async def _worker(self, slot: int) -> None:
        last_dispatch: Optional[float] = None
        while True:
            if last_dispatch is not None and self.min_interval > 0:
                remaining = self.min_interval - (self._clock() - last_dispatch)
                if remaining > 0:
                    await asyncio.sleep(remaining)

            task = await self._next_task()
            last_dispatch = self._clock()
            self._stats.dispatched += 1
            increment("tasks_dispatched")
            gauge("queue_pending", len(self._pending))
            gauge("tasks_active", self._active)
            logger.debug("Working on item", slot=slot, url=task.url, pending=len(self._pending), active=self._active)

            try:
                await self._run_task(task)
            finally:
                self._active -= 1
                gauge("tasks_active", self._active)
                if self._active == 0 and not self._pending:
                    self._idle.set()

    async def _run_task(self, task: CrawlTask) -> None:
        try:
            if self.task_timeout is not None:
                async with asyncio.timeout(self.task_timeout):
                    await self._handler(task)
            else:
                await self._handler(task)
        except Exception as e:
            # Task failures never reach the dispatch loop.
            self._stats.failed += 1
            increment("tasks_failed")
            logger.error("Crawl task failed", url=task.url, error=str(e), error_type=type(e).__name__)
            if self._on_error is not None:
                try:
                    await self._on_error(task, e)
                except Exception as hook_error:
                    logger.error("Error hook failed", url=task.url, error=str(hook_error))
        else:
            self._stats.completed += 1
            logger.debug("Task completed", url=task.url, pending=len(self._pending), active=self._active)

    def get_stats(self) -> SchedulerStats:
        self._stats.pending = len(self._pending)
        self._stats.active = self._active
        self._stats.paused = self.is_paused
        return SchedulerStats(**asdict(self._stats))
