"""
Shared fixtures for DocGraph tests.

Browser work is replaced by in-memory fakes: ``FakeSessionFactory`` stands in
for Playwright sessions and ``FakeFetcher`` serves canned pages keyed by URL.
Storage tests run against a temporary SQLite file.
"""

import asyncio
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional, Union

import pytest
import pytest_asyncio

from docgraph.config import Config, CrawlerConfig, StorageConfig
from docgraph.exceptions import NavigationError
from docgraph.models import ContentBlock, FetchResult, PageContent, PageMetadata

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep legacy deployment variables from leaking into tests."""
    for name in (
        "PROXY_LIST",
        "USER_AGENT",
        "DATABASE_URL",
        "DOCGRAPH_CONFIG",
        "MAX_CONCURRENT_REQUESTS",
        "MIN_REQUEST_DELAY",
        "MAX_REQUEST_DELAY",
        "MAX_RETRIES",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """Cancel any task a test leaves behind so it cannot leak into the next one."""
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before
    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


# ============================================================================
# Fakes
# ============================================================================


class FakeSession:
    def __init__(self, session_number: int):
        self.session_number = session_number
        self.resets = 0
        self.destroyed = False


class FakeSessionFactory:
    """Session factory that records every lifecycle call."""

    def __init__(self, reset_error: Optional[Exception] = None, start_error: Optional[Exception] = None):
        self.reset_error = reset_error
        self.start_error = start_error
        self.started = False
        self.closed = False
        self.sessions: List[FakeSession] = []

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def create(self) -> FakeSession:
        session = FakeSession(len(self.sessions))
        self.sessions.append(session)
        return session

    async def reset(self, handle: FakeSession) -> None:
        handle.resets += 1
        if self.reset_error is not None:
            raise self.reset_error

    async def destroy(self, handle: FakeSession) -> None:
        handle.destroyed = True

    async def close(self) -> None:
        self.closed = True


class FakeFetcher:
    """
    Serves canned results keyed by URL.

    A value may be a ``FetchResult``, an exception instance (raised on every
    attempt) or a list of those consumed one per attempt. Unknown URLs raise a
    404 navigation error.
    """

    def __init__(self, pages: Dict[str, Union[FetchResult, Exception, List[Any]]], delay: float = 0.0):
        self.pages = pages
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def fetch(self, session, url: str, proxy: Optional[str]) -> FetchResult:
        self.calls.append({"url": url, "proxy": proxy, "session": session})
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.pages.get(url)
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if outcome else None
            if outcome is None:
                raise NavigationError(f"HTTP 404 for {url}", url=url, status=404)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1

    def urls_fetched(self) -> List[str]:
        return [call["url"] for call in self.calls]


def make_result(title: str, links: Optional[List[str]] = None) -> FetchResult:
    return FetchResult(
        content=PageContent(
            title=title,
            blocks=[ContentBlock(type="p", content=f"{title} body")],
            metadata=PageMetadata(),
        ),
        links=list(links or []),
    )


async def no_sleep(seconds: float) -> None:
    """Yield to the loop without waiting."""
    await asyncio.sleep(0)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def session_factory() -> FakeSessionFactory:
    return FakeSessionFactory()


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'data' / 'graph.db'}"


@pytest.fixture
def storage_config(db_url: str) -> StorageConfig:
    return StorageConfig(database_url=db_url, pool_size=2)


@pytest.fixture
def fast_config(storage_config: StorageConfig) -> Config:
    """Configuration with every politeness wait and backoff set to zero."""
    return Config(
        crawler=CrawlerConfig(
            seed_url="https://example.com/a",
            max_concurrent=2,
            min_delay_ms=0,
            max_delay_ms=0,
            max_retries=3,
            queue_pause_seconds=0.01,
            navigation_timeout_seconds=5.0,
            backoff_base_seconds=0.0,
        ),
        storage=storage_config,
    )


@pytest.fixture
def sample_page_html() -> str:
    """A documentation page with chrome to strip, varied blocks and links."""
    return """
    <!DOCTYPE html>
    <html>
    <head>
        <title>Onboarding Guide</title>
        <meta name="last-modified" content="2024-03-01">
        <meta name="author" content="Docs Team">
    </head>
    <body>
        <nav><a href="/nav-only">Navigation</a></nav>
        <div class="announcement-bar">We are hiring!</div>
        <main>
            <h1>Onboarding   Guide</h1>
            <p>Welcome to the
               team.</p>
            <div class="sidebar">Sidebar text</div>
            <table><tr><td>Day 1</td><td>Setup</td></tr></table>
            <img src="/img/team.png" alt="The team">
            <pre>  line one
  line two  </pre>
            <p>   </p>
            <p>See <a href="/b">next</a>, <a href="/a#section">this section</a>,
               <a href="https://other.example.org/x">elsewhere</a> and <a href="/b">next again</a>.</p>
        </main>
        <footer><a href="/footer-link">Footer</a></footer>
        <script>var x = 1;</script>
    </body>
    </html>
    """
