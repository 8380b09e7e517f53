from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from intern_collector.http import PoliteHttpClient, delay
from intern_collector.logging_utils import log_event
from intern_collector.models import AdapterConfig, CrawledPosting, CrawlResult, utc_now
from intern_collector.normalize import is_intern_title
from intern_collector.settings import CollectorSettings, get_settings

LOGGER = logging.getLogger(__name__)

HEALTH_CHECK_TIMEOUT_S = 10.0


class SourceResponseError(RuntimeError):
    """The source answered, but reported an application-level error."""

    def __init__(self, source_id: str, message: str) -> None:
        super().__init__(f"{source_id}: {message}")
        self.source_id = source_id


@dataclass
class SourcePage:
    items: List[Dict[str, Any]]
    has_more: bool = True
    total: Optional[int] = None


@dataclass
class PageContext:
    """Per-crawl state shared across page fetches (e.g. an anti-forgery token)."""

    headers: Dict[str, str] = field(default_factory=dict)


class SourceAdapter(abc.ABC):
    """Adapter interface: crawl -> normalized postings, plus a reachability probe.

    Neither method raises; failures are reported through the return value.
    """

    source_id: str = ""
    display_name: str = ""
    base_url: str = ""
    default_headers: Mapping[str, str] = {}
    # Source-specific overrides applied when the caller passes no config.
    default_config: Optional[AdapterConfig] = None

    def __init__(
        self,
        *,
        settings: Optional[CollectorSettings] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

    @property
    def name(self) -> str:
        return self.source_id

    def resolve_config(self, config: Optional[AdapterConfig]) -> AdapterConfig:
        if config is not None:
            return config
        if self.default_config is not None:
            return replace(self.default_config, intern_only=self._settings.intern_only)
        return self._settings.adapter_config()

    def open_http(self, config: Optional[AdapterConfig] = None) -> PoliteHttpClient:
        """A fresh client (and cookie jar) for one crawl or probe."""
        headers = dict(self.default_headers)
        if config is not None:
            headers.update(config.headers)
        return PoliteHttpClient.from_settings(
            self._settings,
            default_headers=headers,
            transport=self._transport,
            sleep=self._sleep,
        )

    @abc.abstractmethod
    def crawl(self, config: Optional[AdapterConfig] = None) -> CrawlResult:
        raise NotImplementedError

    def health_check(self) -> bool:
        try:
            with self.open_http() as http:
                return http.probe(self.base_url, timeout_s=HEALTH_CHECK_TIMEOUT_S)
        except Exception as e:
            LOGGER.debug("Health check for %s failed: %s", self.source_id, e)
            return False

    def _failed(self, jobs: List[CrawledPosting], crawled_at: datetime, error: BaseException) -> CrawlResult:
        message = f"{type(error).__name__}: {error}"
        log_event(
            LOGGER,
            logging.ERROR,
            "crawl_failed",
            source_id=self.source_id,
            partial_jobs=len(jobs),
            error_type=type(error).__name__,
            error=str(error),
        )
        return CrawlResult(success=False, jobs=jobs, crawled_at=crawled_at, error=message)

    def _skip_item(self, item: Any, reason: str) -> None:
        item_id = item.get("id") if isinstance(item, dict) else None
        log_event(LOGGER, logging.WARNING, "item_skipped", source_id=self.source_id, item_id=item_id, reason=reason)


class PaginatedApiAdapter(SourceAdapter):
    """Shared pagination loop for JSON API sources.

    Subclasses implement ``fetch_page`` and ``parse_item``; ``prepare`` may
    fetch auxiliary state (a token) once before the loop and must tolerate
    failure.
    """

    def prepare(self, http: PoliteHttpClient) -> PageContext:
        return PageContext()

    @abc.abstractmethod
    def fetch_page(
        self, http: PoliteHttpClient, page_index: int, config: AdapterConfig, context: PageContext
    ) -> SourcePage:
        raise NotImplementedError

    @abc.abstractmethod
    def parse_item(self, item: Dict[str, Any]) -> Optional[CrawledPosting]:
        """Normalize one raw item; return None (or raise) to skip it."""
        raise NotImplementedError

    def accepts(self, posting: CrawledPosting, config: AdapterConfig) -> bool:
        if not config.intern_only:
            return True
        return posting.job_type == "intern" or is_intern_title(posting.title)

    def crawl(self, config: Optional[AdapterConfig] = None) -> CrawlResult:
        cfg = self.resolve_config(config)
        crawled_at = self._clock()
        jobs: List[CrawledPosting] = []
        total: Optional[int] = None
        start = time.perf_counter()

        log_event(
            LOGGER,
            logging.INFO,
            "crawl_start",
            source_id=self.source_id,
            page_size=cfg.page_size,
            max_pages=cfg.max_pages,
            intern_only=cfg.intern_only,
        )

        try:
            with self.open_http(cfg) as http:
                context = self._prepare_safely(http)
                for page_index in range(cfg.max_pages):
                    page = self.fetch_page(http, page_index, cfg, context)
                    if page.total is not None:
                        total = page.total

                    kept = 0
                    for item in page.items:
                        posting = self._parse_safely(item)
                        if posting is None or not self.accepts(posting, cfg):
                            continue
                        jobs.append(posting)
                        kept += 1

                    log_event(
                        LOGGER,
                        logging.INFO,
                        "crawl_page",
                        source_id=self.source_id,
                        page=page_index + 1,
                        items=len(page.items),
                        kept=kept,
                        collected=len(jobs),
                        total=total,
                    )

                    if not page.has_more or len(page.items) < cfg.page_size:
                        break
                    if page_index + 1 < cfg.max_pages:
                        delay(cfg.delay_ms, sleep=self._sleep)
        except Exception as e:
            return self._failed(jobs, crawled_at, e)

        log_event(
            LOGGER,
            logging.INFO,
            "crawl_done",
            source_id=self.source_id,
            jobs=len(jobs),
            total=total,
            duration_s=round(time.perf_counter() - start, 3),
        )
        return CrawlResult(
            success=True,
            jobs=jobs,
            crawled_at=crawled_at,
            total=total if total is not None else len(jobs),
        )

    def _prepare_safely(self, http: PoliteHttpClient) -> PageContext:
        try:
            return self.prepare(http)
        except Exception as e:
            log_event(
                LOGGER,
                logging.WARNING,
                "crawl_prepare_failed",
                source_id=self.source_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return PageContext()

    def _parse_safely(self, item: Any) -> Optional[CrawledPosting]:
        if not isinstance(item, dict):
            self._skip_item(item, "not an object")
            return None
        try:
            posting = self.parse_item(item)
        except Exception as e:
            self._skip_item(item, f"{type(e).__name__}: {e}")
            return None
        if posting is None:
            self._skip_item(item, "missing identifier")
        return posting
