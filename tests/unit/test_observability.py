"""
Tests for metrics helpers and logging configuration.
"""

import json
import logging
from unittest.mock import patch

import pytest
import structlog
from prometheus_client import REGISTRY

from docgraph.config import MonitoringConfig
from docgraph.observability import METRICS, configure_logging, gauge, histogram, increment
from docgraph.observability import metrics as metrics_module


def sample(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


@pytest.mark.unit
class TestMetrics:
    def test_expected_metrics_registered(self):
        assert {
            "pages_stored",
            "links_discovered",
            "errors_recorded",
            "tasks_dispatched",
            "tasks_failed",
            "queue_pending",
            "tasks_active",
            "queue_pauses",
            "pool_sessions_in_use",
            "proxy_failures",
            "fetch_latency_seconds",
        } <= set(METRICS)

    def test_counter_with_labels(self):
        before = sample("docgraph_errors_recorded_total", {"stage": "fetch"})

        increment("errors_recorded", labels={"stage": "fetch"})

        assert sample("docgraph_errors_recorded_total", {"stage": "fetch"}) == before + 1

    def test_gauge_and_histogram(self):
        count_before = sample("docgraph_fetch_latency_seconds_count")

        gauge("queue_pending", 7)
        histogram("fetch_latency_seconds", 0.25)

        assert sample("docgraph_queue_pending") == 7
        assert sample("docgraph_fetch_latency_seconds_count") == count_before + 1

    def test_unknown_metric_ignored(self):
        increment("no_such_metric")

    def test_factories_reuse_registered_collectors(self):
        again = metrics_module.Counter("docgraph_pages_stored_total", "duplicate")

        assert again is METRICS["pages_stored"]

    def test_exporter_disabled_without_port(self):
        with patch.object(metrics_module, "start_http_server") as start:
            metrics_module.start_metrics_server(None)

        start.assert_not_called()


@pytest.mark.unit
class TestLogging:
    @pytest.fixture(autouse=True)
    def restore_logging(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)
        structlog.reset_defaults()

    def test_file_logging_is_json_with_crawl_id(self, tmp_path):
        log_file = tmp_path / "logs" / "crawl.log"
        configure_logging(MonitoringConfig(log_level="INFO", log_file=str(log_file)))

        structlog.contextvars.bind_contextvars(crawl_id="run-1")
        try:
            structlog.get_logger("docgraph.test").info("Page stored", url="https://example.com/a")
        finally:
            structlog.contextvars.unbind_contextvars("crawl_id")
        for handler in logging.getLogger().handlers:
            handler.flush()

        records = [json.loads(line) for line in log_file.read_text().splitlines()]
        stored = [record for record in records if record["event"] == "Page stored"]
        assert stored[0]["crawl_id"] == "run-1"
        assert stored[0]["url"] == "https://example.com/a"
        assert stored[0]["level"] == "info"

    def test_level_applied_to_root_logger(self):
        configure_logging(MonitoringConfig(log_level="warning"))

        assert logging.getLogger().level == logging.WARNING
