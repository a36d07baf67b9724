"""
Process-level entry point for crawl runs.

``CrawlService`` is what an outer layer (HTTP handler, scheduler, CLI) talks
to: it starts at most one crawl at a time and exposes whether a crawl is in
progress and when the last one ran to an idle queue. Aborted runs and runs
that hit their deadline do not count as completed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from docgraph.config import Config
from docgraph.crawler.orchestrator import CrawlOrchestrator, CrawlStats
from docgraph.exceptions import CrawlInProgressError

logger = structlog.get_logger(__name__)


class CrawlService:
    """Serializes crawl runs and tracks their status."""

    def __init__(self, **orchestrator_options: Any) -> None:
        self._orchestrator_options = orchestrator_options
        self._current: Optional[CrawlOrchestrator] = None
        self.is_running = False
        self.last_crawl_at: Optional[datetime] = None

    async def run_crawl(self, config: Config, seed_url: Optional[str] = None) -> CrawlStats:
        """Run one crawl. Raises CrawlInProgressError if another is still running."""
        # Checked and set with no await in between.
        if self.is_running:
            raise CrawlInProgressError("Scraping already in progress")
        self.is_running = True

        orchestrator = CrawlOrchestrator(config, **self._orchestrator_options)
        self._current = orchestrator
        try:
            stats = await orchestrator.run(seed_url)
            if not stats.aborted:
                self.last_crawl_at = datetime.now(timezone.utc)
            return stats
        finally:
            self._current = None
            self.is_running = False

    def abort(self) -> None:
        """Abort the running crawl, if any."""
        if self._current is not None:
            self._current.abort()

    def status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "last_crawl_at": self.last_crawl_at.isoformat() if self.last_crawl_at else None,
        }


_default_service: Optional[CrawlService] = None


def get_service() -> CrawlService:
    """Return the process-wide service, creating it on first use."""
    global _default_service
    if _default_service is None:
        _default_service = CrawlService()
    return _default_service


async def run_crawl(config: Config, service: Optional[CrawlService] = None) -> Dict[str, int]:
    """Run a crawl and return ``{"pages_count", "links_count", "errors_count"}``."""
    stats = await (service or get_service()).run_crawl(config)
    return {
        "pages_count": stats.pages_count,
        "links_count": stats.links_count,
        "errors_count": stats.errors_count,
    }

