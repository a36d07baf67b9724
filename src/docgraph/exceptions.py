"""
Exception hierarchy for DocGraph.

Per-URL failures (``FetchError`` and ``PersistenceError``) are contained by the
retry controller and the scheduler; only configuration, startup and teardown
failures reach the caller of a crawl run.
"""

from __future__ import annotations

from typing import Optional


class DocGraphError(Exception):
    """Base class for all DocGraph errors."""


class ConfigurationError(DocGraphError):
    """Invalid or missing configuration. Fatal at startup."""


class FetchError(DocGraphError):
    """A single attempt to fetch and extract a URL failed."""

    def __init__(self, message: str, *, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


class NavigationError(FetchError):
    """Navigation failed, timed out, or returned an error status."""

    def __init__(self, message: str, *, url: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message, url=url)
        self.status = status


class ExtractionError(FetchError):
    """The page loaded but its content could not be extracted."""


class PersistenceError(DocGraphError):
    """The graph store rejected a write or read."""


class CrawlInProgressError(DocGraphError):
    """A crawl was requested while another one is still running."""


class PoolClosedError(DocGraphError):
    """A session was requested from a resource pool that has been shut down."""
