from __future__ import annotations

import itertools
from datetime import timedelta

import pytest

from intern_collector.models import CrawledPosting
from intern_collector.normalize import fingerprint
from intern_collector.reconcile import CHANGED_MARKER, Reconciler, SourceBusyError
from intern_collector.repository import InMemoryRepository


def posting(post_id, title="Intern", description="desc", location="Beijing", requirements=None, **extra):
    return CrawledPosting(
        source_id="acme",
        source_post_id=post_id,
        title=title,
        url=f"https://acme.example.com/jobs/{post_id}",
        fingerprint=fingerprint(title, description, location, requirements),
        location=location,
        description=description,
        requirements=requirements,
        job_type="intern",
        raw={"id": post_id},
        **extra,
    )


def _reconciler(repository):
    counter = itertools.count(1)
    return Reconciler(repository, id_factory=lambda: f"id-{next(counter)}")


def _active(repository, post_id):
    return next(p for p in repository.list_for_source("acme") if p.source_post_id == post_id)


def test_new_batch_creates_postings_with_snapshots(repository, now):
    result = _reconciler(repository).reconcile("acme", [posting("1"), posting("2"), posting("3")], now)

    assert result.counts() == {"created": 3, "updated": 0, "unchanged": 0, "expired": 0}
    assert [c.kind for c in result.changes] == ["created"] * 3
    for change in result.changes:
        assert change.snapshot is not None
        assert change.snapshot["title"] == "Intern"
        assert "raw" not in change.snapshot
        assert change.diff is None

    stored = repository.list_for_source("acme")
    assert len(stored) == 3
    assert all(p.status == "active" and p.last_seen_at == now and p.last_crawled_at == now for p in stored)


def test_second_identical_run_only_refreshes_timestamps(repository, now):
    reconciler = _reconciler(repository)
    batch = [posting("1"), posting("2")]
    reconciler.reconcile("acme", batch, now)

    later = now + timedelta(hours=6)
    result = reconciler.reconcile("acme", batch, later)

    assert result.counts() == {"created": 0, "updated": 0, "unchanged": 2, "expired": 0}
    assert result.changes == []
    assert len(repository.changes) == 2
    assert _active(repository, "1").last_seen_at == later
    assert _active(repository, "1").updated_at == now


def test_title_change_records_only_changed_fields(repository, now):
    reconciler = _reconciler(repository)
    reconciler.reconcile("acme", [posting("1", title="A")], now)

    result = reconciler.reconcile("acme", [posting("1", title="B")], now + timedelta(hours=1))

    assert result.updated == 1
    (change,) = result.changes
    assert change.kind == "updated"
    assert change.diff == {"title": {"old": "A", "new": "B"}}
    assert change.snapshot is None
    stored = _active(repository, "1")
    assert stored.title == "B"
    assert stored.fingerprint == fingerprint("B", "desc", "Beijing", None)


def test_text_changes_are_recorded_as_markers(repository, now):
    reconciler = _reconciler(repository)
    reconciler.reconcile("acme", [posting("1", description="old", requirements="x")], now)

    result = reconciler.reconcile(
        "acme", [posting("1", description="new", requirements="y", location="Shanghai")], now + timedelta(hours=1)
    )

    assert result.changes[0].diff == {
        "location": {"old": "Beijing", "new": "Shanghai"},
        "description": {"old": CHANGED_MARKER, "new": CHANGED_MARKER},
        "requirements": {"old": CHANGED_MARKER, "new": CHANGED_MARKER},
    }


def test_tags_and_salary_alone_do_not_count_as_changes(repository, now):
    reconciler = _reconciler(repository)
    reconciler.reconcile("acme", [posting("1", tags=("a",), salary="10k")], now)

    result = reconciler.reconcile("acme", [posting("1", tags=("b",), salary="20k")], now + timedelta(hours=1))

    assert result.unchanged == 1
    assert result.updated == 0
    assert _active(repository, "1").tags == ["a"]


@pytest.mark.parametrize("hours_unseen,expected_status", [(47, "active"), (49, "expired")])
def test_absent_posting_expires_only_after_grace_window(repository, now, hours_unseen, expected_status):
    reconciler = _reconciler(repository)
    reconciler.reconcile("acme", [posting("old"), posting("kept")], now - timedelta(hours=hours_unseen))

    result = reconciler.reconcile("acme", [posting("kept")], now)

    assert _active(repository, "old").status == expected_status
    removed = [c for c in result.changes if c.kind == "removed"]
    if expected_status == "expired":
        assert result.expired == 1
        assert len(removed) == 1
        assert removed[0].posting_id == _active(repository, "old").id
        assert removed[0].diff is None and removed[0].snapshot is None
    else:
        assert result.expired == 0
        assert removed == []


def test_expired_posting_is_not_expired_twice(repository, now):
    reconciler = _reconciler(repository)
    reconciler.reconcile("acme", [posting("1")], now - timedelta(hours=72))
    reconciler.reconcile("acme", [], now)

    result = reconciler.reconcile("acme", [], now + timedelta(hours=6))

    assert result.expired == 0
    assert [c.kind for c in repository.changes] == ["created", "removed"]


def test_reappearing_expired_posting_is_reactivated_in_place(repository, now):
    reconciler = _reconciler(repository)
    reconciler.reconcile("acme", [posting("1", title="A")], now - timedelta(hours=72))
    reconciler.reconcile("acme", [], now)
    original_id = _active(repository, "1").id

    result = reconciler.reconcile("acme", [posting("1", title="A2")], now + timedelta(hours=6))

    assert result.created == 1
    assert result.changes[0].kind == "created"
    assert result.changes[0].snapshot["title"] == "A2"
    stored = repository.list_for_source("acme")
    assert len(stored) == 1
    assert stored[0].id == original_id
    assert stored[0].status == "active"
    assert stored[0].title == "A2"


def test_duplicate_ids_in_one_batch_reconcile_against_earlier_occurrence(repository, now):
    result = _reconciler(repository).reconcile("acme", [posting("1", title="A"), posting("1", title="B")], now)

    assert result.created == 1
    assert result.updated == 1
    assert len(repository.list_for_source("acme")) == 1
    assert _active(repository, "1").title == "B"


def test_timestamps_never_move_backwards(repository, now):
    reconciler = _reconciler(repository)
    reconciler.reconcile("acme", [posting("1")], now)

    reconciler.reconcile("acme", [posting("1")], now - timedelta(hours=1))

    stored = _active(repository, "1")
    assert stored.last_seen_at == now
    assert stored.last_crawled_at == now


def test_sources_are_isolated(repository, now):
    reconciler = _reconciler(repository)
    reconciler.reconcile("acme", [posting("1")], now - timedelta(hours=72))

    result = reconciler.reconcile("other", [], now)

    assert result.expired == 0
    assert _active(repository, "1").status == "active"


class ReentrantRepository(InMemoryRepository):
    """Tries to start a second run for the same source while the first is loading state."""

    def __init__(self):
        super().__init__()
        self.reconciler = None
        self.nested_error = None

    def list_for_source(self, source_id):
        if self.nested_error is None:
            try:
                self.reconciler.reconcile(source_id, [])
            except SourceBusyError as e:
                self.nested_error = e
        return super().list_for_source(source_id)


def test_concurrent_run_for_same_source_is_rejected(now):
    repository = ReentrantRepository()
    repository.reconciler = Reconciler(repository)

    result = repository.reconciler.reconcile("acme", [posting("1")], now)

    assert result.created == 1
    assert isinstance(repository.nested_error, SourceBusyError)
    assert repository.nested_error.source_id == "acme"
