"""
Collector settings using Pydantic for type-safe configuration.

Values come from environment variables prefixed with ``INTERN_COLLECTOR_``
(a local ``.env`` file is loaded first when present).
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from intern_collector.models import AdapterConfig

load_dotenv()

DEFAULT_USER_AGENT = "InternCollector/1.0 (+https://github.com/intern-collector/intern-collector)"


class CollectorSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="INTERN_COLLECTOR_", extra="ignore")

    # Transport
    user_agent: str = DEFAULT_USER_AGENT
    accept_language: str = "zh-CN,zh;q=0.9,en;q=0.8"
    http_timeout_s: float = Field(default=30.0, gt=0)
    http_max_retries: int = Field(default=2, ge=0)
    http_backoff_base_s: float = Field(default=0.5, ge=0)
    http_backoff_max_s: float = Field(default=30.0, ge=0)

    # Adapter defaults
    page_size: int = Field(default=10, ge=1)
    max_pages: int = Field(default=100, ge=1)
    delay_ms: int = Field(default=1000, ge=0)
    intern_only: bool = True
    browser_headless: bool = True
    browser_timeout_ms: int = Field(default=30_000, ge=1000)

    # Orchestration
    crawl_schedule: str = "0 */6 * * *"
    inter_source_delay_s: float = Field(default=5.0, ge=0)
    expiry_grace_hours: float = Field(default=48.0, gt=0)

    # Storage
    database_url: Optional[str] = None

    # Logging / telemetry
    log_level: str = "INFO"
    otel_enabled: bool = False
    otel_service_name: str = "intern-collector"
    otel_exporter_endpoint: str = "http://localhost:4318"

    def adapter_config(self) -> AdapterConfig:
        return AdapterConfig(
            page_size=self.page_size,
            max_pages=self.max_pages,
            delay_ms=self.delay_ms,
            intern_only=self.intern_only,
        )


@lru_cache()
def get_settings() -> CollectorSettings:
    """Return the process-wide settings, loaded once."""
    return CollectorSettings()
