"""
Database schema for the DocGraph page/link/error store.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, Index, Integer, MetaData, Table, Text, UniqueConstraint

# Using a standard naming convention for database objects
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)

# One row per URL; later crawls overwrite content and last_scraped.
pages_table = Table(
    "pages",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("url", Text, nullable=False, unique=True),
    Column("content", Text, nullable=False, comment="JSON-encoded structured document"),
    Column("last_scraped", DateTime, nullable=False, index=True),
)

# One row per (from, to) pair; the first discovery time is kept.
links_table = Table(
    "links",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("from_url", Text, nullable=False),
    Column("to_url", Text, nullable=False),
    Column("discovered", DateTime, nullable=False),
    UniqueConstraint("from_url", "to_url", name="uq_links_from_url_to_url"),
)

# Append-only; every failed attempt produces one row.
errors_table = Table(
    "errors",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("url", Text, nullable=False),
    Column("error", Text, nullable=False),
    Column("timestamp", DateTime, nullable=False),
    Column("proxy", Text, nullable=True),
)

Index("ix_links_to_url", links_table.c.to_url)
Index("ix_errors_url", errors_table.c.url)
