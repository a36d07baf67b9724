"""Configuration models for DocGraph."""

from __future__ import annotations

from .config import (
    BrowserConfig,
    Config,
    CrawlerConfig,
    MonitoringConfig,
    StorageConfig,
    find_config_file,
    load_config,
)

__all__ = [
    "BrowserConfig",
    "Config",
    "CrawlerConfig",
    "MonitoringConfig",
    "StorageConfig",
    "find_config_file",
    "load_config",
]
