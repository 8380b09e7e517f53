from __future__ import annotations

from typing import Any, Dict, Optional

from intern_collector.adapters.base import PageContext, PaginatedApiAdapter, SourcePage
from intern_collector.http import PoliteHttpClient
from intern_collector.models import AdapterConfig, CrawledPosting
from intern_collector.normalize import (
    classify_job_type,
    clean_text,
    fingerprint,
    is_intern_title,
    parse_datetime,
    uniq_preserve_order,
)

BASE_URL = "https://careers.tencent.com"
QUERY_URL = f"{BASE_URL}/tencentcareer/api/post/Query"


class TencentAdapter(PaginatedApiAdapter):
    """Tencent careers: GET query API, 1-based ``pageIndex``.

    The API has no intern flag, so intern-only crawls filter on the title.
    """

    source_id = "tencent"
    display_name = "腾讯"
    base_url = BASE_URL
    default_headers = {
        "Referer": f"{BASE_URL}/",
        "Origin": BASE_URL,
    }

    def fetch_page(
        self, http: PoliteHttpClient, page_index: int, config: AdapterConfig, context: PageContext
    ) -> SourcePage:
        params = {"keyword": "", "pageIndex": page_index + 1, "pageSize": config.page_size}
        body = http.get_json(QUERY_URL, params=params, headers=context.headers or None)

        data = body.get("Data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            # No data block means the listing is exhausted.
            return SourcePage(items=[], has_more=False)

        posts = data.get("Posts")
        items = list(posts) if isinstance(posts, list) else []
        count = data.get("Count")
        return SourcePage(items=items, has_more=True, total=count if isinstance(count, int) else None)

    def accepts(self, posting: CrawledPosting, config: AdapterConfig) -> bool:
        return not config.intern_only or is_intern_title(posting.title)

    def parse_item(self, item: Dict[str, Any]) -> Optional[CrawledPosting]:
        raw_id = item.get("PostId") or item.get("RecruitPostId")
        if raw_id in (None, ""):
            return None
        post_id = str(raw_id)

        title = clean_text(item.get("RecruitPostName") or item.get("RecruitPostTitle")) or "未知职位"
        description = clean_text(item.get("Responsibility") or item.get("Description"), strip_html=True)
        requirements = clean_text(item.get("Requirement"), strip_html=True)
        location = clean_text(item.get("LocationName"))
        category = clean_text(item.get("CategoryName"))

        return CrawledPosting(
            source_id=self.source_id,
            source_post_id=post_id,
            title=title,
            url=clean_text(item.get("PostURL")) or f"{BASE_URL}/jobdesc.html?postId={post_id}",
            fingerprint=fingerprint(title, description, location, requirements),
            location=location,
            description=description,
            requirements=requirements,
            category=category,
            tags=tuple(uniq_preserve_order([item.get("BGName") or item.get("CategoryName")])),
            job_type=classify_job_type(title),
            posted_at=parse_datetime(item.get("LastUpdateTime")),
            raw=dict(item),
        )
