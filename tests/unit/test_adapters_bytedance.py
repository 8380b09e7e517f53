from __future__ import annotations

import json

import httpx

from intern_collector.adapters.bytedance import SEARCH_URL, TOKEN_URL, ByteDanceAdapter
from intern_collector.models import AdapterConfig

CONFIG = AdapterConfig(page_size=2, max_pages=5, delay_ms=0, intern_only=False)


def _item(post_id, title="后端开发实习生", recruit_type="实习", **extra):
    item = {
        "id": post_id,
        "title": title,
        "description": f"Description {post_id}",
        "requirement": "Python",
        "city_list": [{"code": "CT_11", "name": "北京"}, {"code": "CT_125", "name": "上海"}],
        "job_function_name": "研发",
        "recruit_type_name": recruit_type,
        "subject_name": "2025届",
        "publish_time": 1705276800,
    }
    item.update(extra)
    return item


def _page(items, has_more, total=3, code=0):
    return {"code": code, "data": {"job_post_list": items, "has_more": has_more, "total_count": total}}


def _adapter(handler, settings, sleeps=None):
    return ByteDanceAdapter(
        settings=settings,
        transport=httpx.MockTransport(handler),
        sleep=sleeps if sleeps is not None else (lambda _s: None),
    )


def test_bytedance_paginates_with_token_and_offsets(settings):
    search_payloads = []
    search_headers = []
    pages = [_page([_item(1), _item(2)], True), _page([_item(3)], False)]

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url == TOKEN_URL:
            return httpx.Response(
                200, json={"code": 0, "data": {"token": "tok-1"}}, headers={"Set-Cookie": "atsx-csrf-token=tok-1; Path=/"}
            )
        if url == SEARCH_URL:
            search_payloads.append(json.loads(request.content))
            search_headers.append(request.headers)
            return httpx.Response(200, json=pages[len(search_payloads) - 1])
        return httpx.Response(404, text="not found")

    result = _adapter(handler, settings).crawl(CONFIG)

    assert result.success is True
    assert result.total == 3
    assert [j.source_post_id for j in result.jobs] == ["1", "2", "3"]

    assert [p["offset"] for p in search_payloads] == [0, 2]
    assert all(p["limit"] == 2 and p["portal_type"] == 3 for p in search_payloads)
    assert all(h["x-csrf-token"] == "tok-1" for h in search_headers)
    assert all("atsx-csrf-token=tok-1" in h["cookie"] for h in search_headers)
    assert search_headers[0]["referer"] == "https://jobs.bytedance.com/campus/position"


def test_bytedance_normalizes_items(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            return httpx.Response(200, json={"data": {"token": "t"}})
        return httpx.Response(200, json=_page([_item(42)], False, total=1))

    job = _adapter(handler, settings).crawl(CONFIG).jobs[0]

    assert job.source_id == "bytedance"
    assert job.url == "https://jobs.bytedance.com/campus/position/42/detail"
    assert job.location == "北京, 上海"
    assert job.requirements == "Python"
    assert job.category == "研发"
    assert job.tags == ("研发", "实习", "2025届")
    assert job.job_type == "intern"
    assert job.posted_at is not None and job.posted_at.year == 2024
    assert job.raw["id"] == 42
    assert len(job.fingerprint) == 64


def test_bytedance_skips_items_without_identifier(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            return httpx.Response(200, json={"data": {"token": "t"}})
        broken = _item(None)
        return httpx.Response(200, json=_page([broken, _item(None, job_post_id=7)], False))

    result = _adapter(handler, settings).crawl(CONFIG)

    assert result.success is True
    assert [j.source_post_id for j in result.jobs] == ["7"]


def test_bytedance_token_failure_is_not_fatal(settings):
    search_headers = []

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            return httpx.Response(403, text="forbidden")
        search_headers.append(request.headers)
        return httpx.Response(200, json=_page([_item(1)], False, total=1))

    result = _adapter(handler, settings).crawl(CONFIG)

    assert result.success is True
    assert len(result.jobs) == 1
    assert "x-csrf-token" not in search_headers[0]


def test_bytedance_application_error_is_retried_then_reported_with_partial_jobs(settings, sleeps):
    search_calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            return httpx.Response(200, json={"data": {"token": "t"}})
        search_calls.append(1)
        if len(search_calls) == 1:
            return httpx.Response(200, json=_page([_item(1), _item(2)], True))
        return httpx.Response(200, json={"code": 10001, "message": "rate limited"})

    result = _adapter(handler, settings, sleeps).crawl(CONFIG)

    assert result.success is False
    assert [j.source_post_id for j in result.jobs] == ["1", "2"]
    assert "rate limited" in (result.error or "")
    # One page succeeded, the second was attempted three times.
    assert len(search_calls) == 4
    assert sleeps.calls == [1.0, 2.0]


def test_bytedance_intern_only_filters_non_intern_postings(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            return httpx.Response(200, json={"data": {"token": "t"}})
        items = [
            _item(1, title="后端开发", recruit_type="实习"),
            _item(2, title="后端开发", recruit_type="校招"),
            _item(3, title="Data Intern", recruit_type="校招"),
        ]
        return httpx.Response(200, json=_page(items, False))

    config = AdapterConfig(page_size=10, max_pages=1, delay_ms=0, intern_only=True)
    result = _adapter(handler, settings).crawl(config)

    assert [j.source_post_id for j in result.jobs] == ["1", "3"]


def test_bytedance_stops_at_max_pages_and_applies_delay(settings, sleeps):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            return httpx.Response(200, json={"data": {"token": "t"}})
        calls.append(1)
        n = len(calls)
        return httpx.Response(200, json=_page([_item(n * 10), _item(n * 10 + 1)], True, total=100))

    config = AdapterConfig(page_size=2, max_pages=3, delay_ms=250, intern_only=False)
    result = _adapter(handler, settings, sleeps).crawl(config)

    assert result.success is True
    assert len(calls) == 3
    assert len(result.jobs) == 6
    assert sleeps.calls == [0.25, 0.25]


def test_bytedance_health_check(settings):
    def up(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="ok")

    def down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    assert _adapter(up, settings).health_check() is True
    assert _adapter(down, settings).health_check() is False
