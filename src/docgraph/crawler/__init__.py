"""
DocGraph Crawl Engine

Crawls a documentation site from a seed URL with a headless browser and
records what it finds as a graph of pages and link edges.

Key Features:
- Bounded concurrency with a per-slot minimum dispatch interval
- Queue-size backpressure that pauses dispatch without dropping work
- Fixed-size pool of browser sessions with exclusive leases
- Proxy rotation with exponential failure cooldown
- Politeness jitter and exponential retry backoff per URL
- Guaranteed teardown on success, failure and abort
"""

from .fetcher import PageFetcher, PlaywrightSessionFactory
from .orchestrator import CrawlOrchestrator, CrawlStats
from .proxy_rotator import ProxyRotator, ProxyState
from .resource_pool import PooledSession, ResourcePool
from .retry import RetryController
from .scheduler import CrawlScheduler, SchedulerStats, VisitedSet

__all__ = [
    "CrawlOrchestrator",
    "CrawlScheduler",
    "CrawlStats",
    "PageFetcher",
    "PlaywrightSessionFactory",
    "PooledSession",
    "ProxyRotator",
    "ProxyState",
    "ResourcePool",
    "RetryController",
    "SchedulerStats",
    "VisitedSet",
]
