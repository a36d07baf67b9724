"""HTML content and link extraction."""

from __future__ import annotations

from .content import extract_content, extract_links, normalize_url, origin_of

__all__ = ["extract_content", "extract_links", "normalize_url", "origin_of"]
