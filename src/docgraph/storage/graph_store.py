"""
Persists the crawl graph (pages, link edges, error records) in SQLite.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite
import structlog
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError

from docgraph.config.config import StorageConfig
from docgraph.exceptions import PersistenceError
from docgraph.models import PageContent

from .schema import metadata as db_metadata

logger = structlog.get_logger(__name__)

# Incremented whenever the schema in schema.py changes.
CURRENT_SCHEMA_VERSION = 1

_UPSERT_PAGE = """
    INSERT INTO pages (url, content, last_scraped) VALUES (?, ?, ?)
    ON CONFLICT(url) DO UPDATE SET content = excluded.content, last_scraped = excluded.last_scraped
"""

# Re-discovery of an existing edge keeps the first discovery time.
_UPSERT_LINK = """
    INSERT INTO links (from_url, to_url, discovered) VALUES (?, ?, ?)
    ON CONFLICT(from_url, to_url) DO NOTHING
"""

_INSERT_ERROR = "INSERT INTO errors (url, error, timestamp, proxy) VALUES (?, ?, ?, ?)"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GraphStore:
    """Idempotent store for the page/link/error graph.

    Uniqueness is enforced by the database (unique page URL, unique
    ``(from_url, to_url)`` pair), so concurrent upserts for the same key from
    several in-flight tasks never produce duplicate rows.
    """

    def __init__(self, config: StorageConfig):
        self.config = config
        self.db_path: Optional[Path] = None
        self._pool: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=config.pool_size)
        self._connections: List[aiosqlite.Connection] = []
        self._is_initialized = False

    async def initialize(self) -> None:
        """Resolves the database, creates the schema, and fills the connection pool."""
        if self._is_initialized:
            return

        # Raises ConfigurationError for a missing or unsupported URL.
        self.db_path = self.config.resolve_database_path()

        try:
            self._create_schema(self.db_path)
            for _ in range(self.config.pool_size):
                conn = await self._create_connection()
                self._connections.append(conn)
                await self._pool.put(conn)
        except (sqlite3.Error, SQLAlchemyError, OSError) as e:
            await self.close()
            raise PersistenceError(f"Failed to open graph store at {self.db_path}: {e}") from e

        self._is_initialized = True
        logger.info("Graph store initialized", db_path=str(self.db_path), pool_size=self.config.pool_size)

    def _create_schema(self, db_path: Path) -> None:
        engine = create_engine(f"sqlite:///{db_path}")
        try:
            with engine.begin() as conn:
                version = conn.exec_driver_sql("PRAGMA user_version;").scalar() or 0
                if version < CURRENT_SCHEMA_VERSION:
                    logger.info("Migrating graph store schema", from_version=version, to_version=CURRENT_SCHEMA_VERSION)
                    db_metadata.create_all(conn)
                    conn.exec_driver_sql(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION};")
        finally:
            engine.dispose()

    async def _create_connection(self) -> aiosqlite.Connection:
        """Creates and configures a new database connection."""
        conn = await aiosqlite.connect(self.db_path)
        if self.config.wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA busy_timeout = 5000;")
        conn.row_factory = aiosqlite.Row
        return conn

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Gets a connection from the pool."""
        if not self._is_initialized:
            raise PersistenceError("Graph store is not initialized")
        conn = await self._pool.get()
        try:
            yield conn
        finally:
            await self._pool.put(conn)

    async def _write(self, sql: str, params: tuple[Any, ...]) -> None:
        async with self.get_connection() as conn:
            try:
                await conn.execute(sql, params)
                await conn.commit()
            except sqlite3.Error as e:
                await conn.rollback()
                raise PersistenceError(f"Write failed: {e}") from e

    async def upsert_page(self, url: str, content: PageContent, *, scraped_at: Optional[datetime] = None) -> None:
        """Insert or overwrite the page stored for ``url``."""
        timestamp = (scraped_at or _utcnow()).isoformat()
        await self._write(_UPSERT_PAGE, (url, json.dumps(content.to_dict()), timestamp))

    async def upsert_link(self, from_url: str, to_url: str, *, discovered_at: Optional[datetime] = None) -> None:
        """Record the edge ``from_url -> to_url`` if it is not stored yet."""
        timestamp = (discovered_at or _utcnow()).isoformat()
        await self._write(_UPSERT_LINK, (from_url, to_url, timestamp))

    async def record_error(
        self, url: str, message: str, proxy: Optional[str] = None, *, occurred_at: Optional[datetime] = None
    ) -> None:
        """Append an error record. Never deduplicated."""
        timestamp = (occurred_at or _utcnow()).isoformat()
        await self._write(_INSERT_ERROR, (url, message, timestamp, proxy))

    async def _scalar(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        async with self.get_connection() as conn:
            try:
                cursor = await conn.execute(sql, params)
                row = await cursor.fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"Read failed: {e}") from e
        return int(row[0]) if row is not None else 0

    async def count_pages(self) -> int:
        return await self._scalar("SELECT COUNT(*) FROM pages")

    async def count_links(self) -> int:
        return await self._scalar("SELECT COUNT(*) FROM links")

    async def count_errors(self, url: Optional[str] = None) -> int:
        if url is None:
            return await self._scalar("SELECT COUNT(*) FROM errors")
        return await self._scalar("SELECT COUNT(*) FROM errors WHERE url = ?", (url,))

    async def get_page(self, url: str) -> Optional[Dict[str, Any]]:
        """Return the stored page for ``url`` with its content decoded, or None."""
        async with self.get_connection() as conn:
            cursor = await conn.execute("SELECT url, content, last_scraped FROM pages WHERE url = ?", (url,))
            row = await cursor.fetchone()

        if row is None:
            return None
        return {
            "url": row["url"],
            "content": PageContent.from_dict(json.loads(row["content"])),
            "last_scraped": datetime.fromisoformat(row["last_scraped"]),
        }

    async def get_links(self, from_url: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return stored link edges, optionally only those leaving ``from_url``."""
        sql = "SELECT from_url, to_url, discovered FROM links"
        params: tuple[Any, ...] = ()
        if from_url is not None:
            sql += " WHERE from_url = ?"
            params = (from_url,)
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql + " ORDER BY id", params)
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def get_errors(self, url: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = "SELECT url, error, timestamp, proxy FROM errors"
        params: tuple[Any, ...] = ()
        if url is not None:
            sql += " WHERE url = ?"
            params = (url,)
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql + " ORDER BY id", params)
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def get_counts(self) -> Dict[str, int]:
        return {
            "pages": await self.count_pages(),
            "links": await self.count_links(),
            "errors": await self.count_errors(),
        }

    async def close(self) -> None:
        """Closes every pooled connection."""
        connections, self._connections = self._connections, []
        self._is_initialized = False
        while not self._pool.empty():
            self._pool.get_nowait()
        for conn in connections:
            await conn.close()

    async def __aenter__(self) -> "GraphStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
