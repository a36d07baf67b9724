"""
Unit tests for the Playwright page fetcher and session factory, against mocked pages.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from docgraph.config import BrowserConfig
from docgraph.crawler.fetcher import PageFetcher, PlaywrightSessionFactory
from docgraph.crawler.resource_pool import PooledSession
from docgraph.exceptions import NavigationError

URL = "https://example.com/a"


def make_page(html: str, status: int = 200, url: str = URL) -> MagicMock:
    page = MagicMock()
    page.url = url
    page.set_extra_http_headers = AsyncMock()
    page.goto = AsyncMock(return_value=SimpleNamespace(status=status))
    page.content = AsyncMock(return_value=html)
    return page


def lease(page: MagicMock) -> PooledSession:
    return PooledSession(handle=SimpleNamespace(page=page), session_id=0, in_use=True)


@pytest.mark.unit
class TestPageFetcher:
    """Navigation, error mapping and extraction hand-off."""

    @pytest.fixture
    def fetcher(self):
        return PageFetcher("https://example.com", navigation_timeout=30.0, wait_until="networkidle")

    async def test_fetch_extracts_content_and_links(self, fetcher, sample_page_html):
        page = make_page(sample_page_html)

        result = await fetcher.fetch(lease(page), URL, None)

        assert result.content.title == "Onboarding Guide"
        assert "https://example.com/b" in result.links
        assert result.final_url == URL
        page.goto.assert_awaited_once_with(URL, wait_until="networkidle", timeout=30000.0)

    async def test_proxy_sent_as_header(self, fetcher, sample_page_html):
        page = make_page(sample_page_html)

        await fetcher.fetch(lease(page), URL, "gateway-1:8080")

        page.set_extra_http_headers.assert_awaited_once_with({"X-Proxy": "gateway-1:8080"})

    async def test_no_proxy_clears_header(self, fetcher, sample_page_html):
        page = make_page(sample_page_html)

        await fetcher.fetch(lease(page), URL, None)

        page.set_extra_http_headers.assert_awaited_once_with({})

    async def test_links_resolve_against_final_url(self, fetcher):
        html = '<html><body><main><p>x</p></main><a href="child">c</a></body></html>'
        page = make_page(html, url="https://example.com/docs/")

        result = await fetcher.fetch(lease(page), "https://example.com/docs", None)

        assert result.links == ["https://example.com/docs/child"]
        assert result.final_url == "https://example.com/docs/"

    async def test_error_status_is_navigation_error(self, fetcher, sample_page_html):
        page = make_page(sample_page_html, status=404)

        with pytest.raises(NavigationError) as exc_info:
            await fetcher.fetch(lease(page), URL, None)

        assert exc_info.value.status == 404
        assert exc_info.value.url == URL

    async def test_missing_response_is_accepted(self, fetcher, sample_page_html):
        page = make_page(sample_page_html)
        page.goto.return_value = None

        result = await fetcher.fetch(lease(page), URL, None)

        assert result.content.title == "Onboarding Guide"

    async def test_timeout_is_navigation_error(self, fetcher):
        page = make_page("")
        page.goto.side_effect = PlaywrightTimeoutError("Timeout 30000ms exceeded.")

        with pytest.raises(NavigationError, match="timed out"):
            await fetcher.fetch(lease(page), URL, None)

    async def test_browser_error_is_navigation_error(self, fetcher):
        page = make_page("")
        page.goto.side_effect = PlaywrightError("net::ERR_CONNECTION_REFUSED at https://example.com/a\nCall log:")

        with pytest.raises(NavigationError, match="ERR_CONNECTION_REFUSED"):
            await fetcher.fetch(lease(page), URL, None)


@pytest.mark.unit
class TestPlaywrightSessionFactory:
    """Browser lifecycle against a mocked Playwright driver."""

    @pytest.fixture
    def config(self):
        return BrowserConfig()

    @pytest.fixture
    def browser(self):
        page = MagicMock()
        page.route = AsyncMock()
        page.goto = AsyncMock()
        page.set_extra_http_headers = AsyncMock()
        page.close = AsyncMock()
        context = MagicMock()
        context.new_page = AsyncMock(return_value=page)
        context.close = AsyncMock()
        browser = MagicMock()
        browser.new_context = AsyncMock(return_value=context)
        browser.close = AsyncMock()
        return browser

    async def test_start_launches_chromium(self, config, browser):
        playwright = MagicMock()
        playwright.chromium.launch = AsyncMock(return_value=browser)
        playwright.stop = AsyncMock()
        driver = MagicMock()
        driver.start = AsyncMock(return_value=playwright)

        with patch("docgraph.crawler.fetcher.async_playwright", return_value=driver):
            factory = PlaywrightSessionFactory(config, user_agent="TestBot/1.0")
            await factory.start()
            await factory.close()

        playwright.chromium.launch.assert_awaited_once_with(headless=True, args=config.launch_args)
        browser.close.assert_awaited_once()
        playwright.stop.assert_awaited_once()

    async def test_create_requires_start(self, config):
        factory = PlaywrightSessionFactory(config, user_agent="TestBot/1.0")

        with pytest.raises(RuntimeError):
            await factory.create()

    async def test_create_configures_context_and_page(self, config, browser):
        factory = PlaywrightSessionFactory(config, user_agent="TestBot/1.0", navigation_timeout=12.0)
        factory._browser = browser

        session = await factory.create()

        browser.new_context.assert_awaited_once_with(user_agent="TestBot/1.0")
        session.page.set_default_navigation_timeout.assert_called_once_with(12000.0)
        session.page.route.assert_awaited_once_with("**/*", factory._filter_request)

    @pytest.mark.parametrize(
        "resource_type,blocked",
        [("image", True), ("stylesheet", True), ("font", True), ("document", False), ("script", False)],
    )
    async def test_request_filter(self, config, resource_type, blocked):
        factory = PlaywrightSessionFactory(config, user_agent="TestBot/1.0")
        route = MagicMock()
        route.request.resource_type = resource_type
        route.abort = AsyncMock()
        route.continue_ = AsyncMock()

        await factory._filter_request(route)

        assert route.abort.await_count == (1 if blocked else 0)
        assert route.continue_.await_count == (0 if blocked else 1)

    async def test_reset_and_destroy(self, config, browser):
        factory = PlaywrightSessionFactory(config, user_agent="TestBot/1.0")
        factory._browser = browser
        session = await factory.create()

        await factory.reset(session)
        await factory.destroy(session)

        session.page.goto.assert_awaited_once_with("about:blank")
        session.page.set_extra_http_headers.assert_awaited_once_with({})
        session.page.close.assert_awaited_once()
        session.context.close.assert_awaited_once()

    async def test_close_without_start(self, config):
        await PlaywrightSessionFactory(config, user_agent="TestBot/1.0").close()
