"""Meituan careers via Playwright.

The listing is rendered client-side, so the adapter drives a headless
Chromium page, waits for the list to appear and reads each card from the DOM.
Cards expose no identifier; the card link (or a content hash) stands in.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional
from urllib.parse import urljoin

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from intern_collector.adapters.base import SourceAdapter
from intern_collector.http import delay
from intern_collector.logging_utils import log_event
from intern_collector.models import AdapterConfig, CrawledPosting, CrawlResult
from intern_collector.normalize import clean_text, derive_post_id, fingerprint

LOGGER = logging.getLogger(__name__)

BASE_URL = "https://job.meituan.com"
HOME_URL = f"{BASE_URL}/web/home"
LIST_URL = f"{BASE_URL}/web/job/list"

READY_SELECTOR = ".job-list, .position-item"
ITEM_SELECTOR = ".position-item, .job-item"
TITLE_SELECTOR = ".positionName, .job-title"
LOCATION_SELECTOR = ".workCity, .job-location"
SUMMARY_SELECTOR = ".workResponsibility, .job-desc"
NEXT_PAGE_SELECTORS = [
    ".pagination-next:not(.disabled)",
    "li.next:not(.disabled) > a",
    "button[aria-label*='next' i]",
    "button:has-text('下一页')",
]

NAVIGATION_TIMEOUT_MS = 30_000
READY_TIMEOUT_MS = 10_000

BrowserSessionFactory = Callable[[AdapterConfig], ContextManager[Any]]


@contextmanager
def playwright_page(*, headless: bool = True, user_agent: Optional[str] = None, timeout_ms: int = NAVIGATION_TIMEOUT_MS) -> Iterator[Any]:
    """Launch Chromium and yield one page; the browser is closed on every exit path."""

    with sync_playwright() as pw:
        browser = pw.chromium.launch(headless=headless)
        try:
            context = browser.new_context(user_agent=user_agent) if user_agent else browser.new_context()
            page = context.new_page()
            page.set_default_timeout(timeout_ms)
            yield page
        finally:
            browser.close()


class MeituanAdapter(SourceAdapter):
    source_id = "meituan"
    display_name = "美团"
    base_url = BASE_URL
    default_headers = {"Referer": BASE_URL, "Origin": BASE_URL}
    default_config = AdapterConfig(page_size=10, max_pages=20, delay_ms=2000)

    def __init__(self, *, session_factory: Optional[BrowserSessionFactory] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._session_factory = session_factory or self._default_session

    def _default_session(self, config: AdapterConfig) -> ContextManager[Any]:
        return playwright_page(
            headless=self._settings.browser_headless,
            user_agent=self._settings.user_agent,
            timeout_ms=self._settings.browser_timeout_ms,
        )

    def crawl(self, config: Optional[AdapterConfig] = None) -> CrawlResult:
        cfg = self.resolve_config(config)
        crawled_at = self._clock()
        jobs: List[CrawledPosting] = []
        seen: set[str] = set()
        start = time.perf_counter()

        log_event(LOGGER, logging.INFO, "crawl_start", source_id=self.source_id, max_pages=cfg.max_pages, browser=True)

        try:
            with self._session_factory(cfg) as page:
                page.goto(HOME_URL, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT_MS)
                page.goto(LIST_URL, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT_MS)

                for page_index in range(cfg.max_pages):
                    self._wait_ready(page)
                    cards = self._extract_cards(page)

                    kept = 0
                    for card in cards:
                        posting = self._to_posting(card, cfg)
                        if posting is None or posting.source_post_id in seen:
                            continue
                        seen.add(posting.source_post_id)
                        jobs.append(posting)
                        kept += 1

                    log_event(
                        LOGGER,
                        logging.INFO,
                        "crawl_page",
                        source_id=self.source_id,
                        page=page_index + 1,
                        items=len(cards),
                        kept=kept,
                        collected=len(jobs),
                    )

                    if page_index + 1 >= cfg.max_pages or kept == 0:
                        break
                    if not self._go_next(page):
                        break
                    delay(cfg.delay_ms, sleep=self._sleep)
        except Exception as e:
            return self._failed(jobs, crawled_at, e)

        log_event(
            LOGGER,
            logging.INFO,
            "crawl_done",
            source_id=self.source_id,
            jobs=len(jobs),
            duration_s=round(time.perf_counter() - start, 3),
        )
        return CrawlResult(success=True, jobs=jobs, crawled_at=crawled_at, total=len(jobs))

    def _wait_ready(self, page: Any) -> None:
        try:
            page.wait_for_selector(READY_SELECTOR, timeout=READY_TIMEOUT_MS)
        except PlaywrightTimeoutError:
            LOGGER.warning("Listing not ready after %d ms; extracting what is present", READY_TIMEOUT_MS)

    def _extract_cards(self, page: Any) -> List[Dict[str, str]]:
        cards: List[Dict[str, str]] = []
        for node in page.query_selector_all(ITEM_SELECTOR):
            link = node.query_selector("a")
            href = (link.get_attribute("href") or "") if link else ""
            cards.append(
                {
                    "title": _inner_text(node, TITLE_SELECTOR),
                    "url": urljoin(BASE_URL + "/", href) if href else "",
                    "location": _inner_text(node, LOCATION_SELECTOR),
                    "summary": _inner_text(node, SUMMARY_SELECTOR),
                }
            )
        return cards

    def _go_next(self, page: Any) -> bool:
        for sel in NEXT_PAGE_SELECTORS:
            try:
                btn = page.query_selector(sel)
                if btn and btn.is_enabled() and btn.is_visible():
                    btn.click()
                    try:
                        page.wait_for_load_state("networkidle", timeout=READY_TIMEOUT_MS)
                    except PlaywrightTimeoutError:
                        LOGGER.debug("Next page did not settle; continuing")
                    return True
            except PlaywrightError as e:
                LOGGER.debug("Next-page selector %s failed: %s", sel, e)
        return False

    def _to_posting(self, card: Dict[str, str], config: AdapterConfig) -> Optional[CrawledPosting]:
        title = clean_text(card.get("title"))
        url = clean_text(card.get("url"))
        location = clean_text(card.get("location"))
        description = clean_text(card.get("summary"))
        if not title and not url:
            self._skip_item(card, "empty card")
            return None

        title = title or "未知职位"
        return CrawledPosting(
            source_id=self.source_id,
            source_post_id=derive_post_id(url, title=title, description=description, location=location),
            title=title,
            url=url or LIST_URL,
            fingerprint=fingerprint(title, description, location, None),
            location=location,
            description=description,
            job_type="intern" if config.intern_only else "unknown",
            raw=dict(card),
        )


def _inner_text(node: Any, selector: str) -> str:
    el = node.query_selector(selector)
    if el is None:
        return ""
    return el.inner_text() or ""
