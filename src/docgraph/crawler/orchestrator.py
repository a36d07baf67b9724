"""
Runs one crawl from a seed URL to an idle queue.

The orchestrator builds the graph store, the browser session pool, the proxy
rotator, the scheduler and the retry controller for a run, waits until the
scheduler drains (or the run is aborted or hits its deadline), reports the
stored counts and always tears every component down again.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

from docgraph.config import Config
from docgraph.crawler.fetcher import PageFetcher, PlaywrightSessionFactory
from docgraph.crawler.proxy_rotator import ProxyRotator
from docgraph.crawler.resource_pool import ResourcePool
from docgraph.crawler.retry import RetryController, describe_error
from docgraph.crawler.scheduler import CrawlScheduler
from docgraph.exceptions import CrawlInProgressError
from docgraph.extractor import normalize_url, origin_of
from docgraph.models import CrawlTask
from docgraph.observability import increment
from docgraph.protocols import Fetcher, SessionFactory
from docgraph.storage import GraphStore

logger = structlog.get_logger(__name__)


@dataclass
class CrawlStats:
    """Final report of a crawl run. Counts are read from the graph store."""

    crawl_id: str
    pages_count: int
    links_count: int
    errors_count: int
    tasks_dispatched: int = 0
    tasks_failed: int = 0
    duration_seconds: float = 0.0
    aborted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CrawlOrchestrator:
    """
    Owns the state of crawl runs: visited set, proxy health and pooled sessions
    all live on per-run objects created here, never in module globals.

    ``session_factory`` and ``fetcher`` default to the Playwright
    implementations; tests inject fakes.
    Whether a crawl is running and when one last completed is tracked by
    ``docgraph.service.CrawlService``.
    """

    def __init__(
        self,
        config: Config,
        *,
        session_factory: Optional[SessionFactory] = None,
        fetcher: Optional[Fetcher] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self._session_factory = session_factory
        self._fetcher = fetcher
        self._sleep = sleep
        self._rng = rng

        self._running = False
        self._abort_event: Optional[asyncio.Event] = None
        self._retry: Optional[RetryController] = None
        self._store: Optional[GraphStore] = None

    def abort(self) -> None:
        """Ask the running crawl to stop. In-flight tasks are cancelled and components torn down."""
        if self._abort_event is None or not self._running:
            logger.debug("Abort requested but no crawl is running")
            return
        logger.info("Crawl abort requested")
        self._abort_event.set()

    async def run(self, seed_url: Optional[str] = None) -> CrawlStats:
        """Crawl from ``seed_url`` (default: the configured seed) until the queue is idle."""
        if self._running:
            raise CrawlInProgressError("A crawl is already running")

        crawler_config = self.config.crawler
        seed = normalize_url(seed_url or crawler_config.seed_url)
        crawl_id = str(uuid4())
        start_time = time.monotonic()

        self._running = True
        self._abort_event = asyncio.Event()
        bind_contextvars(crawl_id=crawl_id)

        store = GraphStore(self.config.storage)
        pool: Optional[ResourcePool] = None
        scheduler: Optional[CrawlScheduler] = None
        run_failed = False

        try:
            await store.initialize()
            self._store = store

            factory = self._session_factory or PlaywrightSessionFactory(
                self.config.browser,
                user_agent=crawler_config.effective_user_agent,
                navigation_timeout=crawler_config.navigation_timeout_seconds,
            )
            pool = ResourcePool(factory, crawler_config.max_concurrent)
            await pool.initialize()

            rotator = ProxyRotator(
                crawler_config.proxy_list,
                selection_cooldown=2 * crawler_config.min_delay,
                max_cooldown=crawler_config.max_proxy_cooldown_seconds,
            )
            fetcher = self._fetcher or PageFetcher(
                origin_of(seed),
                navigation_timeout=crawler_config.navigation_timeout_seconds,
                wait_until=self.config.browser.wait_until,
            )
            scheduler = CrawlScheduler(
                self._process,
                max_concurrent=crawler_config.max_concurrent,
                min_interval=crawler_config.min_delay,
                max_queue_size=crawler_config.max_queue_size,
                pause_seconds=crawler_config.queue_pause_seconds,
                task_timeout=crawler_config.task_timeout_seconds,
                on_error=self._record_task_error,
            )
            self._retry = RetryController(
                pool=pool,
                rotator=rotator,
                fetcher=fetcher,
                store=store,
                scheduler=scheduler,
                max_retries=crawler_config.max_retries,
                min_delay=crawler_config.min_delay,
                max_delay=crawler_config.max_delay,
                backoff_base=crawler_config.backoff_base_seconds,
                fetch_timeout=crawler_config.effective_fetch_timeout,
                sleep=self._sleep,
                rng=self._rng,
            )

            logger.info(
                "Starting crawl",
                seed_url=seed,
                max_concurrent=crawler_config.max_concurrent,
                proxies=len(rotator.proxies),
            )
            scheduler.start()
            scheduler.enqueue(seed)

            aborted = await self._wait_for_completion(scheduler)

            counts = await store.get_counts()
            scheduler_stats = scheduler.get_stats()
            stats = CrawlStats(
                crawl_id=crawl_id,
                pages_count=counts["pages"],
                links_count=counts["links"],
                errors_count=counts["errors"],
                tasks_dispatched=scheduler_stats.dispatched,
                tasks_failed=scheduler_stats.failed,
                duration_seconds=round(time.monotonic() - start_time, 3),
                aborted=aborted,
            )
            logger.info("Crawl finished", **stats.to_dict(), pool=pool.get_stats(), proxies=rotator.get_stats())
            return stats

        except BaseException as e:
            run_failed = True
            if not isinstance(e, asyncio.CancelledError):
                logger.error("Crawl failed", error=str(e), error_type=type(e).__name__)
            raise
        finally:
            try:
                await self._teardown(scheduler, pool, store, suppress_errors=run_failed)
            finally:
                self._retry = None
                self._store = None
                self._running = False
                unbind_contextvars("crawl_id")

    async def _process(self, task: CrawlTask) -> None:
        if self._retry is None:
            raise RuntimeError("Crawl task dispatched outside a running crawl")
        await self._retry.run(task)

    async def _record_task_error(self, task: CrawlTask, error: BaseException) -> None:
        """Turns an exception that escaped a crawl task into an error record."""
        if self._store is None:
            return
        await self._store.record_error(task.url, describe_error(error))
        increment("errors_recorded", labels={"stage": "task"})

    async def _wait_for_completion(self, scheduler: CrawlScheduler) -> bool:
        """Wait for the scheduler to drain. Returns True if the run was aborted or timed out."""
        assert self._abort_event is not None
        idle = asyncio.create_task(scheduler.join())
        abort = asyncio.create_task(self._abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {idle, abort},
                timeout=self.config.crawler.crawl_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in (idle, abort):
                waiter.cancel()
            await asyncio.gather(idle, abort, return_exceptions=True)

        if idle in done:
            return False
        if abort in done:
            logger.warning("Crawl aborted", pending=scheduler.get_stats().pending)
        else:
            logger.warning(
                "Crawl deadline reached",
                timeout_seconds=self.config.crawler.crawl_timeout_seconds,
                pending=scheduler.get_stats().pending,
            )
        return True

    async def _teardown(
        self,
        scheduler: Optional[CrawlScheduler],
        pool: Optional[ResourcePool],
        store: GraphStore,
        *,
        suppress_errors: bool,
    ) -> None:
        """Stop workers, shut down the session pool and close store connections, in that order."""
        steps: List[Tuple[str, Optional[Callable[[], Awaitable[None]]]]] = [
            ("scheduler", scheduler.close if scheduler is not None else None),
            ("resource_pool", pool.close if pool is not None else None),
            ("graph_store", store.close),
        ]
        errors: List[Exception] = []
        for component, close in steps:
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.error("Teardown failed", component=component, error=str(e))
                errors.append(e)

        logger.debug("Crawl components torn down", errors=len(errors))
        if errors and not suppress_errors:
            raise errors[0]
