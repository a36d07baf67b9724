"""
Contracts between the crawl engine and its pluggable collaborators.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Protocol

if TYPE_CHECKING:
    from docgraph.crawler.resource_pool import PooledSession
    from docgraph.models import FetchResult


class SessionFactory(Protocol):
    """Creates, resets and destroys the rendering sessions held by a ResourcePool."""

    async def start(self) -> None:
        """Acquire any shared backing resource (e.g. launch the browser)."""
        ...

    async def create(self) -> Any:
        """Return a new session handle."""
        ...

    async def reset(self, handle: Any) -> None:
        """Return a handle to a blank, neutral state."""
        ...

    async def destroy(self, handle: Any) -> None:
        ...

    async def close(self) -> None:
        """Release the shared backing resource."""
        ...


class Fetcher(Protocol):
    """Navigates a leased session to a URL and extracts its content and links."""

    async def fetch(self, session: PooledSession, url: str, proxy: Optional[str]) -> FetchResult:
        ...
