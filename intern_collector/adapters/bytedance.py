from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from intern_collector.adapters.base import PageContext, PaginatedApiAdapter, SourcePage, SourceResponseError
from intern_collector.http import PoliteHttpClient, retry
from intern_collector.models import AdapterConfig, CrawledPosting
from intern_collector.normalize import (
    classify_job_type,
    clean_text,
    fingerprint,
    parse_datetime,
    uniq_preserve_order,
)

LOGGER = logging.getLogger(__name__)

BASE_URL = "https://jobs.bytedance.com"
TOKEN_URL = f"{BASE_URL}/api/v1/csrf/token"
SEARCH_URL = f"{BASE_URL}/api/v1/search/job/posts"

# Campus portal.
PORTAL_TYPE = 3
PORTAL_ENTRANCE = 1

PAGE_RETRY_ATTEMPTS = 3
PAGE_RETRY_BASE_DELAY_S = 1.0


def build_search_payload(offset: int, limit: int) -> Dict[str, Any]:
    return {
        "keyword": "",
        "limit": int(limit),
        "offset": int(offset),
        "job_category_id_list": [],
        "tag_id_list": [],
        "location_code_list": [],
        "subject_id_list": [],
        "recruitment_id_list": [],
        "portal_type": PORTAL_TYPE,
        "job_function_id_list": [],
        "storefront_id_list": [],
        "portal_entrance": PORTAL_ENTRANCE,
    }


class ByteDanceAdapter(PaginatedApiAdapter):
    """ByteDance campus portal: POST search API with offset pagination.

    Every search call carries the anti-forgery token obtained from
    ``/api/v1/csrf/token`` at the start of the crawl; the session cookie set
    by that call lives in the crawl's own client.
    """

    source_id = "bytedance"
    display_name = "字节跳动"
    base_url = BASE_URL
    default_headers = {
        "Referer": f"{BASE_URL}/campus/position",
        "Origin": BASE_URL,
    }

    def prepare(self, http: PoliteHttpClient) -> PageContext:
        body = http.post_json(TOKEN_URL)
        token = ((body or {}).get("data") or {}).get("token") if isinstance(body, dict) else None
        if not token:
            LOGGER.warning("No CSRF token in response from %s; continuing without it", TOKEN_URL)
            return PageContext()
        return PageContext(headers={"X-CSRF-Token": str(token)})

    def fetch_page(
        self, http: PoliteHttpClient, page_index: int, config: AdapterConfig, context: PageContext
    ) -> SourcePage:
        payload = build_search_payload(page_index * config.page_size, config.page_size)
        headers = {"Content-Type": "application/json", **context.headers}

        def _fetch() -> SourcePage:
            body = http.post_json(SEARCH_URL, payload, headers=headers)
            if not isinstance(body, dict) or body.get("code") != 0:
                code = body.get("code") if isinstance(body, dict) else None
                message = body.get("message") if isinstance(body, dict) else None
                raise SourceResponseError(self.source_id, f"search failed (code={code}, message={message})")

            data = body.get("data") or {}
            items = data.get("job_post_list") or []
            return SourcePage(
                items=list(items),
                has_more=bool(data.get("has_more")) and len(items) > 0,
                total=data.get("total_count"),
            )

        return retry(
            _fetch,
            max_attempts=PAGE_RETRY_ATTEMPTS,
            base_delay_s=PAGE_RETRY_BASE_DELAY_S,
            sleep=self._sleep,
        )

    def parse_item(self, item: Dict[str, Any]) -> Optional[CrawledPosting]:
        raw_id = item.get("id") or item.get("job_post_id")
        if raw_id in (None, ""):
            return None
        post_id = str(raw_id)

        title = clean_text(item.get("title")) or "未知职位"
        description = clean_text(item.get("description"))
        requirements = clean_text(item.get("requirement"))
        location = _location(item)

        return CrawledPosting(
            source_id=self.source_id,
            source_post_id=post_id,
            title=title,
            url=f"{BASE_URL}/campus/position/{post_id}/detail",
            fingerprint=fingerprint(title, description, location, requirements),
            location=location,
            description=description,
            requirements=requirements,
            category=clean_text(item.get("job_function_name")),
            tags=tuple(
                uniq_preserve_order(
                    [item.get("job_function_name"), item.get("recruit_type_name"), item.get("subject_name")]
                )
            ),
            job_type=classify_job_type(item.get("recruit_type_name")),
            posted_at=parse_datetime(item.get("publish_time")),
            raw=dict(item),
        )


def _location(item: Dict[str, Any]) -> Optional[str]:
    cities: List[str] = []
    for city in item.get("city_list") or []:
        if isinstance(city, dict) and city.get("name"):
            cities.append(str(city["name"]))
    if cities:
        return ", ".join(cities)
    return clean_text(item.get("location_name"))
