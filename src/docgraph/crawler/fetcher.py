"""
Headless-browser page fetching on top of Playwright.

``PlaywrightSessionFactory`` supplies the pooled sessions (one browser context
and page each) and ``PageFetcher`` drives a leased session to a URL and hands
the rendered HTML to the extractor.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from playwright.async_api import Browser, BrowserContext, Page, Playwright, Route, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from docgraph.config.config import BrowserConfig
from docgraph.crawler.resource_pool import PooledSession
from docgraph.exceptions import NavigationError
from docgraph.extractor import extract_content, extract_links
from docgraph.models import FetchResult
from docgraph.observability import histogram

logger = structlog.get_logger(__name__)

BLANK_PAGE = "about:blank"
PROXY_HEADER = "X-Proxy"


@dataclass
class BrowserSession:
    context: BrowserContext
    page: Page


class PlaywrightSessionFactory:
    """Launches one Chromium instance and creates an isolated context per pooled session."""

    def __init__(self, config: BrowserConfig, *, user_agent: str, navigation_timeout: float = 30.0):
        self.config = config
        self.user_agent = user_agent
        self.navigation_timeout = navigation_timeout
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def start(self) -> None:
        if self._browser is not None:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.config.headless,
            args=list(self.config.launch_args),
        )
        logger.info("Browser launched", headless=self.config.headless)

    async def create(self) -> BrowserSession:
        if self._browser is None:
            raise RuntimeError("Browser not started. Call start() first.")
        context = await self._browser.new_context(user_agent=self.user_agent)
        page = await context.new_page()
        page.set_default_navigation_timeout(self.navigation_timeout * 1000)
        await page.route("**/*", self._filter_request)
        return BrowserSession(context=context, page=page)

    async def _filter_request(self, route: Route) -> None:
        if route.request.resource_type in self.config.blocked_resource_types:
            await route.abort()
        else:
            await route.continue_()

    async def reset(self, handle: BrowserSession) -> None:
        """Drop page state by navigating to a blank page."""
        await handle.page.set_extra_http_headers({})
        await handle.page.goto(BLANK_PAGE)

    async def destroy(self, handle: BrowserSession) -> None:
        try:
            await handle.page.close()
        finally:
            await handle.context.close()

    async def close(self) -> None:
        browser, self._browser = self._browser, None
        playwright, self._playwright = self._playwright, None
        try:
            if browser is not None:
                await browser.close()
        finally:
            if playwright is not None:
                await playwright.stop()
        logger.info("Browser closed")


class PageFetcher:
    """Navigates a pooled session to a URL and extracts its content and same-origin links."""

    def __init__(self, origin: str, *, navigation_timeout: float = 30.0, wait_until: Any = "networkidle"):
        self.origin = origin
        self.navigation_timeout = navigation_timeout
        self.wait_until = wait_until

    def _proxy_headers(self, proxy: Optional[str]) -> Dict[str, str]:
        return {PROXY_HEADER: proxy} if proxy else {}

    async def fetch(self, session: PooledSession, url: str, proxy: Optional[str]) -> FetchResult:
        page: Page = session.handle.page
        start_time = time.perf_counter()

        try:
            await page.set_extra_http_headers(self._proxy_headers(proxy))
            response = await page.goto(url, wait_until=self.wait_until, timeout=self.navigation_timeout * 1000)
            html = await page.content()
        except PlaywrightTimeoutError as e:
            raise NavigationError(
                f"Navigation timed out after {self.navigation_timeout:.0f}s: {str(e).splitlines()[0]}", url=url
            ) from e
        except PlaywrightError as e:
            message = str(e).splitlines()[0] if str(e) else type(e).__name__
            raise NavigationError(f"Navigation failed: {message}", url=url) from e

        if response is not None and response.status >= 400:
            raise NavigationError(f"HTTP {response.status} for {url}", url=url, status=response.status)

        final_url = page.url or url
        content = extract_content(html, final_url)
        links = extract_links(html, final_url, self.origin)

        duration = time.perf_counter() - start_time
        histogram("fetch_latency_seconds", duration)
        logger.debug(
            "Page fetched",
            url=url,
            final_url=final_url,
            blocks=len(content.blocks),
            links=len(links),
            duration_seconds=round(duration, 3),
            proxy=proxy,
        )
        return FetchResult(content=content, links=links, final_url=final_url)
