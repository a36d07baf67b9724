"""
Unit tests for the SQLite graph store.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from docgraph.config import StorageConfig
from docgraph.exceptions import ConfigurationError, PersistenceError
from docgraph.models import ContentBlock, PageContent, PageMetadata
from docgraph.storage import GraphStore


def make_page(title: str) -> PageContent:
    return PageContent(
        title=title,
        blocks=[ContentBlock(type="p", content=f"{title} text"), ContentBlock(type="img", content="/x.png", alt="x")],
        metadata=PageMetadata(author="Docs"),
    )


@pytest.mark.unit
class TestGraphStore:
    """Idempotent page/link/error persistence."""

    @pytest.fixture
    async def store(self, storage_config):
        store = GraphStore(storage_config)
        await store.initialize()
        yield store
        await store.close()

    async def test_initialize_creates_database_file(self, store):
        assert store.db_path is not None
        assert store.db_path.exists()
        assert await store.get_counts() == {"pages": 0, "links": 0, "errors": 0}

    async def test_upsert_page_twice_keeps_latest(self, store):
        first = datetime(2024, 1, 1, tzinfo=timezone.utc)
        second = first + timedelta(days=1)

        await store.upsert_page("https://example.com/a", make_page("First"), scraped_at=first)
        await store.upsert_page("https://example.com/a", make_page("Second"), scraped_at=second)

        assert await store.count_pages() == 1
        stored = await store.get_page("https://example.com/a")
        assert stored["content"].title == "Second"
        assert stored["content"].blocks[1].alt == "x"
        assert stored["content"].metadata.author == "Docs"
        assert stored["last_scraped"] == second

    async def test_get_missing_page(self, store):
        assert await store.get_page("https://example.com/missing") is None

    async def test_upsert_link_is_idempotent(self, store):
        first = datetime(2024, 1, 1, tzinfo=timezone.utc)

        await store.upsert_link("https://example.com/a", "https://example.com/b", discovered_at=first)
        await store.upsert_link("https://example.com/a", "https://example.com/b", discovered_at=first + timedelta(hours=1))
        await store.upsert_link("https://example.com/b", "https://example.com/a")

        assert await store.count_links() == 2
        edges = await store.get_links(from_url="https://example.com/a")
        assert len(edges) == 1
        assert edges[0]["to_url"] == "https://example.com/b"
        assert datetime.fromisoformat(edges[0]["discovered"]) == first

    async def test_concurrent_link_upserts_produce_one_row(self, store):
        await asyncio.gather(
            *(store.upsert_link("https://example.com/a", "https://example.com/b") for _ in range(20))
        )

        assert await store.count_links() == 1

    async def test_errors_are_appended(self, store):
        await store.record_error("https://example.com/a", "HTTP 500", "proxy-1")
        await store.record_error("https://example.com/a", "HTTP 500", "proxy-1")
        await store.record_error("https://example.com/b", "timeout")

        assert await store.count_errors() == 3
        assert await store.count_errors("https://example.com/a") == 2
        errors = await store.get_errors("https://example.com/b")
        assert errors[0]["error"] == "timeout"
        assert errors[0]["proxy"] is None

    async def test_reopen_keeps_data(self, storage_config, store):
        await store.upsert_page("https://example.com/a", make_page("Kept"))
        await store.close()

        async with GraphStore(storage_config) as reopened:
            assert await reopened.count_pages() == 1

    async def test_use_after_close_raises(self, store):
        await store.close()

        with pytest.raises(PersistenceError):
            await store.count_pages()


@pytest.mark.unit
class TestGraphStoreConfiguration:
    """Startup failures for bad storage settings."""

    async def test_missing_database_url(self):
        with pytest.raises(ConfigurationError):
            await GraphStore(StorageConfig()).initialize()

    async def test_database_url_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'env.db'}")

        async with GraphStore(StorageConfig()) as store:
            assert store.db_path == tmp_path / "env.db"

    @pytest.mark.parametrize(
        "url",
        ["postgresql://user@localhost/docs", "sqlite://", "sqlite:///:memory:", "not a url"],
    )
    async def test_unsupported_urls(self, url):
        with pytest.raises(ConfigurationError):
            await GraphStore(StorageConfig(database_url=url)).initialize()
