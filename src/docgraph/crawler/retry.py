"""
Per-task fetch/persist loop with politeness jitter and exponential backoff.
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, List, Optional

import structlog

from docgraph.crawler.proxy_rotator import ProxyRotator
from docgraph.crawler.resource_pool import PooledSession, ResourcePool
from docgraph.crawler.scheduler import CrawlScheduler
from docgraph.exceptions import FetchError, PersistenceError
from docgraph.models import CrawlTask, FetchResult
from docgraph.observability import increment
from docgraph.protocols import Fetcher
from docgraph.storage import GraphStore

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def error_stage(error: BaseException) -> str:
    """Label used for the errors_recorded metric."""
    if isinstance(error, (FetchError, TimeoutError)):
        return "fetch"
    if isinstance(error, PersistenceError):
        return "persist"
    return "unexpected"


def describe_error(error: BaseException) -> str:
    message = str(error)
    return message if message else type(error).__name__


class RetryController:
    """
    Runs one crawl task to completion.

    Every attempt waits a random politeness delay in ``[min_delay, max_delay]``,
    leases a session, selects a proxy, fetches the page and persists the page
    and its newly discovered link edges. A failed attempt is written to the
    error log, reported against the proxy, and followed by a
    ``backoff_base * 2^attempt`` second backoff. After ``max_retries`` failed
    attempts the task is given up; the crawl continues with other tasks.
    """

    def __init__(
        self,
        *,
        pool: ResourcePool,
        rotator: ProxyRotator,
        fetcher: Fetcher,
        store: GraphStore,
        scheduler: CrawlScheduler,
        max_retries: int = 3,
        min_delay: float = 3.0,
        max_delay: float = 7.0,
        backoff_base: float = 1.0,
        fetch_timeout: Optional[float] = 30.0,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.pool = pool
        self.rotator = rotator
        self.fetcher = fetcher
        self.store = store
        self.scheduler = scheduler
        self.max_retries = max_retries
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.backoff_base = backoff_base
        self.fetch_timeout = fetch_timeout
        self._sleep = sleep
        self._rng = rng or random.Random()

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base * (2**attempt)

    async def run(self, task: CrawlTask) -> bool:
        """Process ``task``. Returns True if the page was stored, False once retries are exhausted."""
        for attempt in range(1, self.max_retries + 1):
            task.attempt = attempt
            await self._sleep(self._rng.uniform(self.min_delay, self.max_delay))

            proxy: Optional[str] = None
            try:
                async with self.pool.lease() as session:
                    proxy = await self.rotator.select_proxy()
                    result = await self._fetch(session, task.url, proxy)
                    await self._persist(task.url, result)
            except Exception as e:
                await self._record_failure(task, e, proxy)
                await self.rotator.report_failure(proxy)
            else:
                logger.info("Page stored", url=task.url, attempt=attempt, links=len(result.links), proxy=proxy)
                return True

            if attempt < self.max_retries:
                delay = self.backoff_delay(attempt)
                logger.warning(f"Retry {attempt + 1}/{self.max_retries} for {task.url} after {delay:.2f}s delay")
                await self._sleep(delay)

        logger.error("Giving up on URL", url=task.url, attempts=self.max_retries)
        return False

    async def _fetch(self, session: PooledSession, url: str, proxy: Optional[str]) -> FetchResult:
        if self.fetch_timeout is None:
            return await self.fetcher.fetch(session, url, proxy)
        try:
            async with asyncio.timeout(self.fetch_timeout):
                return await self.fetcher.fetch(session, url, proxy)
        except TimeoutError as e:
            raise TimeoutError(f"Fetch timed out after {self.fetch_timeout:.0f}s") from e

    async def _persist(self, url: str, result: FetchResult) -> None:
        await self.store.upsert_page(url, result.content)

        # Edges are stored only for links no task has claimed yet.
        new_links: List[str] = [link for link in result.links if link not in self.scheduler.visited]
        for link in new_links:
            await self.store.upsert_link(url, link)
            if self.scheduler.enqueue(link):
                increment("links_discovered")

        increment("pages_stored")

    async def _record_failure(self, task: CrawlTask, error: Exception, proxy: Optional[str]) -> None:
        stage = error_stage(error)
        logger.warning(
            "Crawl attempt failed",
            url=task.url,
            attempt=task.attempt,
            max_retries=self.max_retries,
            stage=stage,
            error=describe_error(error),
            error_type=type(error).__name__,
            proxy=proxy,
        )
        try:
            await self.store.record_error(task.url, describe_error(error), proxy)
        except Exception as store_error:
            logger.error("Failed to record crawl error", url=task.url, error=str(store_error))
        else:
            increment("errors_recorded", labels={"stage": stage})
