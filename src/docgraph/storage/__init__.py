"""SQLite-backed storage for the crawl graph."""

from __future__ import annotations

from .graph_store import GraphStore
from .schema import metadata as db_metadata

__all__ = ["GraphStore", "db_metadata"]
