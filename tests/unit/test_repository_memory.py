from __future__ import annotations

from datetime import timedelta

import pytest

from intern_collector.models import ChangeRecord, Posting, PostingQuery, Source
from intern_collector.repository import InMemoryRepository, RepositoryError
from intern_collector.sources import DEFAULT_SOURCES, seed_default_sources


def _posting(pid, source_id="acme", post_id=None, *, now, **fields):
    values = dict(
        id=pid,
        source_id=source_id,
        source_post_id=post_id or pid,
        title=f"Intern {pid}",
        url=f"https://example.com/{pid}",
        fingerprint="f" * 64,
        last_crawled_at=now,
        last_seen_at=now,
        created_at=now,
        updated_at=now,
        raw={"secret": True},
    )
    values.update(fields)
    return Posting(**values)


@pytest.fixture
def populated(repository, now):
    repository.save(_posting("a", posted_at=now - timedelta(days=3), location="Beijing", job_type="intern", now=now))
    repository.save(
        _posting(
            "b",
            posted_at=now - timedelta(days=1),
            location="Shanghai",
            job_type="campus",
            description="Python backend work",
            now=now,
        )
    )
    repository.save(_posting("c", source_id="other", posted_at=None, location="Beijing", job_type="intern", now=now))
    repository.save(
        _posting("d", posted_at=now - timedelta(days=2), status="expired", updated_at=now - timedelta(days=5), now=now)
    )
    return repository


def test_default_query_lists_active_postings_newest_first(populated):
    page = populated.query_postings(PostingQuery())

    assert [item["id"] for item in page.items] == ["b", "a", "c"]
    assert page.total == 3
    assert all("raw" not in item for item in page.items)
    assert page.items[0]["posted_at"].endswith("+00:00")


def test_query_filters(populated, now):
    assert [i["id"] for i in populated.query_postings(PostingQuery(source_id="ACME")).items] == ["b", "a"]
    assert [i["id"] for i in populated.query_postings(PostingQuery(job_type="campus")).items] == ["b"]
    assert [i["id"] for i in populated.query_postings(PostingQuery(location="beij")).items] == ["a", "c"]
    assert [i["id"] for i in populated.query_postings(PostingQuery(text="PYTHON")).items] == ["b"]
    assert [i["id"] for i in populated.query_postings(PostingQuery(status="expired")).items] == ["d"]
    assert populated.query_postings(PostingQuery(status=None)).total == 4
    assert populated.query_postings(PostingQuery(status=None, updated_after=now - timedelta(days=1))).total == 3


def test_ascending_sort_keeps_missing_dates_last(populated):
    page = populated.query_postings(PostingQuery(sort="posted_at_asc"))
    assert [i["id"] for i in page.items] == ["a", "b", "c"]


@pytest.mark.parametrize("sort", ["posted_at_desc", "posted_at_asc", "updated_at_desc", "updated_at_asc"])
def test_equal_timestamps_are_ordered_by_id_ascending(repository, now, sort):
    for pid in ("c", "a", "b"):
        repository.save(_posting(pid, posted_at=now, now=now))

    page = repository.query_postings(PostingQuery(sort=sort))

    assert [i["id"] for i in page.items] == ["a", "b", "c"]


def test_unknown_sort_falls_back_to_newest_first(populated):
    page = populated.query_postings(PostingQuery(sort="title_desc"))
    assert [i["id"] for i in page.items] == ["b", "a", "c"]


def test_pagination_is_clamped(populated):
    page = populated.query_postings(PostingQuery(page=2, limit=2))
    assert [i["id"] for i in page.items] == ["c"]
    assert page.pagination() == {"page": 2, "limit": 2, "total": 3, "total_pages": 2, "has_more": False}

    clamped = populated.query_postings(PostingQuery(page=0, limit=1000))
    assert clamped.page == 1
    assert clamped.limit == 100

    tiny = populated.query_postings(PostingQuery(limit=0))
    assert tiny.limit == 1
    assert tiny.has_more is True


def test_stats_count_active_postings_only(populated):
    stats = populated.stats()

    assert stats.total == 3
    assert stats.by_source == {"acme": 2, "other": 1}
    assert stats.by_job_type == {"intern": 2, "campus": 1}


def test_get_posting_returns_full_row_and_changes(repository, now):
    posting = _posting("a", now=now)
    change = ChangeRecord(id="c1", posting_id="a", kind="created", created_at=now, snapshot={"title": "Intern a"})
    repository.save(posting, change)

    stored = repository.get_posting("a")
    assert stored == posting
    assert stored is not posting
    assert stored.raw == {"secret": True}
    assert repository.list_changes("a") == [change]
    assert repository.get_posting("missing") is None


def test_save_rejects_second_row_for_same_source_post_id(repository, now):
    repository.save(_posting("a", post_id="123", now=now))

    with pytest.raises(RepositoryError):
        repository.save(_posting("b", post_id="123", now=now))


def test_save_rejects_change_for_another_posting(repository, now):
    change = ChangeRecord(id="c1", posting_id="other", kind="created", created_at=now)

    with pytest.raises(RepositoryError):
        repository.save(_posting("a", now=now), change)
    assert repository.get_posting("a") is None
    assert repository.changes == []


def test_sources_seeding_is_idempotent(repository, now):
    assert seed_default_sources(repository) == ["bytedance", "tencent", "alibaba", "meituan"]
    repository.mark_source_crawled("bytedance", now)

    assert seed_default_sources(repository) == []
    assert repository.get_source("bytedance").last_crawled_at == now
    assert [s.source_id for s in repository.list_sources(enabled_only=True)] == ["bytedance"]
    assert len(repository.list_sources()) == len(DEFAULT_SOURCES)


def test_sources_are_returned_as_copies(repository, now):
    source = Source(source_id="acme", name="Acme")
    repository.upsert_source(source)

    source.enabled = False
    repository.get_source("acme").name = "Changed"
    repository.list_sources()[0].last_crawled_at = now

    stored = repository.get_source("acme")
    assert stored.enabled is True
    assert stored.name == "Acme"
    assert stored.last_crawled_at is None

    repository.mark_source_crawled("ACME", now)
    assert repository.get_source("acme").last_crawled_at == now


def test_sources_with_counts(populated):
    populated.upsert_source(Source(source_id="acme", name="Acme"))
    populated.upsert_source(Source(source_id="empty", name="Empty", enabled=False))

    assert [(s.source_id, n) for s, n in populated.list_sources_with_counts()] == [("acme", 2), ("empty", 0)]
