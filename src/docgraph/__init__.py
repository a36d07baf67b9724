"""
DocGraph - Documentation site crawler that records pages and links as a graph.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .service import CrawlService, run_crawl

__all__ = ["__version__", "Config", "CrawlService", "run_crawl"]
