"""
Defines and manages Prometheus metrics for the crawl engine.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Defined before any metric creation so that re-importing this module (the
# test suite does) reuses the registered collectors instead of raising.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "pages_stored": Counter(
            "docgraph_pages_stored_total",
            "Pages successfully fetched, extracted and persisted",
        ),
        "links_discovered": Counter(
            "docgraph_links_discovered_total",
            "Newly discovered same-origin links admitted to the queue",
        ),
        "errors_recorded": Counter(
            "docgraph_errors_recorded_total",
            "Error records written, by failure stage",
            ["stage"],
        ),
        "tasks_dispatched": Counter(
            "docgraph_tasks_dispatched_total",
            "Crawl tasks dispatched by the scheduler",
        ),
        "tasks_failed": Counter(
            "docgraph_tasks_failed_total",
            "Crawl tasks that raised past the retry controller",
        ),
        "queue_pending": Gauge(
            "docgraph_queue_pending",
            "Crawl tasks waiting for a concurrency slot",
        ),
        "tasks_active": Gauge(
            "docgraph_tasks_active",
            "Crawl tasks currently executing",
        ),
        "queue_pauses": Counter(
            "docgraph_queue_pauses_total",
            "Backpressure pause/resume cycles",
        ),
        "pool_sessions_in_use": Gauge(
            "docgraph_pool_sessions_in_use",
            "Browser sessions currently leased from the pool",
        ),
        "proxy_failures": Counter(
            "docgraph_proxy_failures_total",
            "Failures reported against egress proxies",
        ),
        "fetch_latency_seconds": Histogram(
            "docgraph_fetch_latency_seconds",
            "Time taken to navigate to and extract one page",
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()

_exporter_port: Optional[int] = None


def start_metrics_server(port: Optional[int]) -> None:
    """Start the Prometheus exporter once per process."""
    global _exporter_port
    if not port or _exporter_port is not None:
        return
    start_http_server(port)
    _exporter_port = port
    logger.info("Prometheus metrics exporter started", port=port)
