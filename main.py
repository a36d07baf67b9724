#!/usr/bin/env python3
"""
Production entry point for DocGraph.

Runs a single crawl with the configuration named by ``DOCGRAPH_CONFIG`` (or the
defaults plus ``DOCGRAPH_*`` environment overrides). SIGINT and SIGTERM abort
the crawl in an orderly way. ``main.py health`` prints the graph store counts.
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
from pathlib import Path

import structlog

from docgraph.config import load_config
from docgraph.exceptions import DocGraphError
from docgraph.observability import configure_logging, start_metrics_server
from docgraph.service import CrawlService
from docgraph.storage import GraphStore

logger = structlog.get_logger(__name__)


def load_production_config():
    config_path = os.getenv("DOCGRAPH_CONFIG")
    return load_config(Path(config_path) if config_path else None)


async def health_check() -> dict:
    """Report whether the graph store is reachable, with its record counts."""
    try:
        config = load_production_config()
        async with GraphStore(config.storage) as store:
            counts = await store.get_counts()
        return {"status": "healthy", **counts}
    except DocGraphError as e:
        return {"status": "unhealthy", "error": str(e)}


async def run_production_crawl() -> None:
    config = load_production_config()
    configure_logging(config.monitoring)
    start_metrics_server(config.monitoring.prometheus_port)

    service = CrawlService()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, service.abort)

    logger.info("DocGraph production crawl starting", seed_url=config.crawler.seed_url)
    try:
        stats = await service.run_crawl(config)
        logger.info("DocGraph production crawl finished", **stats.to_dict())
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


async def main():
    """Main entry point."""
    if len(sys.argv) > 1 and sys.argv[1] == "health":
        health = await health_check()
        print(json.dumps(health, indent=2))
        sys.exit(0 if health["status"] == "healthy" else 1)

    try:
        await run_production_crawl()
    except DocGraphError as e:
        logger.error("Production crawl failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
