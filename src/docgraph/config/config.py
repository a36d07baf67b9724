"""
Configuration management for DocGraph using Pydantic.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from docgraph.exceptions import ConfigurationError

# --- Setup Logging ---
log = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; HandbookBot/1.0; +http://example.com/bot)"

# Environment variables of earlier deployments, applied when a field is not set explicitly.
LEGACY_CRAWLER_ENV = {
    "max_concurrent": "MAX_CONCURRENT_REQUESTS",
    "min_delay_ms": "MIN_REQUEST_DELAY",
    "max_delay_ms": "MAX_REQUEST_DELAY",
    "max_retries": "MAX_RETRIES",
}

# Extra time a whole fetch may take beyond the browser's navigation timeout.
FETCH_TIMEOUT_HEADROOM_SECONDS = 10.0

# --- Nested Configuration Models ---


class CrawlerConfig(BaseModel):
    """Crawl engine configuration."""

    seed_url: str = Field(default="https://handbook.mattermost.com", description="URL the crawl starts from.")
    max_concurrent: int = Field(default=1, ge=1, description="Concurrency slots and pooled browser pages.")
    min_delay_ms: int = Field(default=3000, ge=0, description="Lower bound of the politeness window.")
    max_delay_ms: int = Field(default=7000, ge=0, description="Upper bound of the politeness window.")
    max_retries: int = Field(default=3, ge=1, description="Attempts per URL before it is given up.")
    max_queue_size: int = Field(default=1000, ge=1, description="Pending tasks above which dispatch pauses.")
    queue_pause_seconds: float = Field(default=5.0, ge=0, description="Backpressure cooldown window.")
    navigation_timeout_seconds: float = Field(default=30.0, gt=0, description="Bound on a single navigation.")
    fetch_timeout_seconds: Optional[float] = Field(
        default=None, gt=0, description="Bound on navigation plus extraction. Defaults to navigation timeout + 10s."
    )
    backoff_base_seconds: float = Field(default=1.0, ge=0, description="Retry backoff is base * 2^attempt.")
    max_proxy_cooldown_seconds: float = Field(default=300.0, ge=0, description="Cap on proxy failure cooldown.")
    proxies: str = Field(default="", description="Comma-separated egress proxies. Empty means direct.")
    user_agent: str = Field(default="", description="User-Agent for the browser context.")
    task_timeout_seconds: Optional[float] = Field(default=None, gt=0, description="Hard bound on one crawl task.")
    crawl_timeout_seconds: Optional[float] = Field(default=None, gt=0, description="Global deadline for a run.")

    @model_validator(mode="before")
    @classmethod
    def apply_legacy_environment(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for field, env_var in LEGACY_CRAWLER_ENV.items():
            raw = os.environ.get(env_var)
            if field in data or raw is None:
                continue
            if raw.strip().isdigit():
                data[field] = int(raw)
            else:
                log.warning("Ignoring non-integer %s=%r", env_var, raw)
        return data

    @field_validator("seed_url")
    @classmethod
    def validate_seed_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("seed_url must be an absolute http(s) URL")
        return v

    @model_validator(mode="after")
    def validate_delay_window(self) -> "CrawlerConfig":
        if self.max_delay_ms < self.min_delay_ms:
            raise ValueError("max_delay_ms must be greater than or equal to min_delay_ms")
        return self

    @property
    def min_delay(self) -> float:
        return self.min_delay_ms / 1000.0

    @property
    def max_delay(self) -> float:
        return self.max_delay_ms / 1000.0

    @property
    def effective_fetch_timeout(self) -> float:
        if self.fetch_timeout_seconds is not None:
            return self.fetch_timeout_seconds
        return self.navigation_timeout_seconds + FETCH_TIMEOUT_HEADROOM_SECONDS

    @property
    def proxy_list(self) -> List[str]:
        raw = self.proxies or os.environ.get("PROXY_LIST", "")
        return [proxy.strip() for proxy in raw.split(",") if proxy.strip()]

    @property
    def effective_user_agent(self) -> str:
        return self.user_agent or os.environ.get("USER_AGENT") or DEFAULT_USER_AGENT


class BrowserConfig(BaseModel):
    """Headless browser configuration."""

    headless: bool = True
    launch_args: List[str] = Field(
        default_factory=lambda: [
            "--no-sandbox",
            "--disable-setuid-sandbox",
            "--disable-dev-shm-usage",
            "--disable-accelerated-2d-canvas",
            "--disable-gpu",
        ]
    )
    blocked_resource_types: List[str] = Field(
        default_factory=lambda: ["image", "stylesheet", "font"],
        description="Request types aborted before they leave the browser.",
    )
    wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = "networkidle"


class StorageConfig(BaseModel):
    """Configuration for the page/link/error graph store."""

    database_url: Optional[str] = Field(default=None, description="SQLite URL, e.g. sqlite:///./data/docgraph.db")
    pool_size: int = Field(default=5, ge=1, description="Size of the connection pool.")
    wal_mode: bool = Field(default=True, description="Enable Write-Ahead Logging for higher concurrency.")

    def resolve_database_path(self) -> Path:
        """Return the SQLite file behind ``database_url``, creating its directory."""
        url_text = self.database_url or os.environ.get("DATABASE_URL")
        if not url_text:
            raise ConfigurationError("No database URL configured (storage.database_url or DATABASE_URL)")
        try:
            url = make_url(url_text)
        except ArgumentError as e:
            raise ConfigurationError(f"Invalid database URL {url_text!r}: {e}") from e
        if url.get_backend_name() != "sqlite":
            raise ConfigurationError(f"Unsupported database backend {url.get_backend_name()!r}; use sqlite")
        if not url.database or url.database == ":memory:":
            raise ConfigurationError("An on-disk SQLite database is required")
        path = Path(url.database)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: int | None = Field(default=None, description="Port for Prometheus exporter. None to disable.")

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "DocGraph"
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="DOCGRAPH_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
        return cls.model_validate(yaml_data or {})


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for path in (current_dir / "config.yaml", current_dir / "config.yml"):
        if path.exists():
            return path
    return None


def load_config(path: Path | None = None) -> Config:
    """Load configuration from ``path``, a discovered config file, or defaults."""
    config_path = path or find_config_file()
    if config_path:
        log.info("Loading configuration from: %s", config_path)
        return Config.from_yaml(config_path)
    return Config()
