"""Command-line interface for DocGraph."""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
import structlog
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from docgraph import __version__
from docgraph.config import Config, CrawlerConfig, StorageConfig, load_config
from docgraph.crawler.orchestrator import CrawlStats
from docgraph.exceptions import DocGraphError
from docgraph.observability import configure_logging, start_metrics_server
from docgraph.service import CrawlService
from docgraph.storage import GraphStore

console = Console()
logger = structlog.get_logger(__name__)


def install_abort_handlers(service: CrawlService) -> None:
    """Route SIGINT/SIGTERM to an orderly abort of the running crawl."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.abort)
        except NotImplementedError:
            # Not supported by the event loop on this platform.
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(service.abort))


def apply_overrides(config: Config, crawler: Dict[str, Any], database_url: Optional[str]) -> Config:
    """Return ``config`` with CLI overrides applied and re-validated."""
    updates = {key: value for key, value in crawler.items() if value is not None}
    if updates:
        config.crawler = CrawlerConfig.model_validate({**config.crawler.model_dump(), **updates})
    if database_url:
        config.storage = StorageConfig.model_validate({**config.storage.model_dump(), "database_url": database_url})
    return config


def render_stats(stats: CrawlStats) -> Table:
    table = Table(title="Crawl Results")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta", justify="right")
    table.add_row("Pages", str(stats.pages_count))
    table.add_row("Links", str(stats.links_count))
    table.add_row("Errors", str(stats.errors_count))
    table.add_row("Tasks dispatched", str(stats.tasks_dispatched))
    table.add_row("Tasks failed", str(stats.tasks_failed))
    table.add_row("Duration", f"{stats.duration_seconds:.2f}s")
    if stats.aborted:
        table.add_row("Aborted", "yes")
    return table


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides the configuration file)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """DocGraph - crawl a documentation site into a page/link graph."""
    ctx.ensure_object(dict)
    try:
        loaded = load_config(Path(config) if config else None)
    except (ValidationError, FileNotFoundError) as e:
        console.print(f"[red]Invalid configuration: {escape(str(e))}[/red]")
        sys.exit(2)
    if log_level:
        loaded.monitoring.log_level = log_level
    configure_logging(loaded.monitoring)
    ctx.obj["config"] = loaded


@cli.command()
@click.option("--seed", "seed_url", help="URL to start crawling from")
@click.option("--db", "database_url", help="Database URL, e.g. sqlite:///./data/docgraph.db")
@click.option("--proxies", help="Comma-separated list of egress proxies")
@click.option("--max-concurrent", type=int, help="Concurrent crawl tasks and browser pages")
@click.option("--max-retries", type=int, help="Attempts per URL before giving up")
@click.pass_context
def crawl(
    ctx: click.Context,
    seed_url: Optional[str],
    database_url: Optional[str],
    proxies: Optional[str],
    max_concurrent: Optional[int],
    max_retries: Optional[int],
) -> None:
    """Crawl from the seed URL until no new pages are found."""
    try:
        config = apply_overrides(
            ctx.obj["config"],
            {
                "seed_url": seed_url,
                "proxies": proxies,
                "max_concurrent": max_concurrent,
                "max_retries": max_retries,
            },
            database_url,
        )
    except ValidationError as e:
        console.print(f"[red]Invalid option: {escape(str(e))}[/red]")
        sys.exit(2)

    async def run() -> CrawlStats:
        service = CrawlService()
        install_abort_handlers(service)
        start_metrics_server(config.monitoring.prometheus_port)
        return await service.run_crawl(config)

    console.print(
        Panel.fit(
            f"[bold blue]DocGraph Crawl[/bold blue]\n"
            f"Seed: {config.crawler.seed_url}\n"
            f"Max concurrent: {config.crawler.max_concurrent}\n"
            f"Proxies: {len(config.crawler.proxy_list)}",
            title="Starting Crawl",
        )
    )

    try:
        stats = asyncio.run(run())
    except DocGraphError as e:
        console.print(f"[red]Crawl failed: {escape(str(e))}[/red]")
        sys.exit(1)

    console.print(render_stats(stats))
    if stats.aborted:
        console.print("[yellow]Crawl was aborted before the queue drained.[/yellow]")


@cli.command()
@click.option("--db", "database_url", help="Database URL, e.g. sqlite:///./data/docgraph.db")
@click.pass_context
def stats(ctx: click.Context, database_url: Optional[str]) -> None:
    """Show how many pages, links and errors are stored."""
    config = apply_overrides(ctx.obj["config"], {}, database_url)

    async def read_counts() -> Dict[str, int]:
        async with GraphStore(config.storage) as store:
            return await store.get_counts()

    try:
        counts = asyncio.run(read_counts())
    except DocGraphError as e:
        console.print(f"[red]Could not read graph store: {escape(str(e))}[/red]")
        sys.exit(1)

    table = Table(title="Graph Store")
    table.add_column("Records", style="cyan")
    table.add_column("Count", style="magenta", justify="right")
    for name, count in counts.items():
        table.add_row(name.capitalize(), str(count))
    console.print(table)


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
