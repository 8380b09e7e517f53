"""Merge a crawl batch into stored state.

For one source, each crawled posting is created, refreshed or updated by
comparing fingerprints against the stored row with the same
``source_post_id``. Active rows absent from the batch expire once they have
not been seen for longer than the grace window.
"""
from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional, Set

from intern_collector.logging_utils import log_event
from intern_collector.models import ChangeRecord, CrawledPosting, Posting, ReconcileResult, utc_now
from intern_collector.repository import PostingRepository

LOGGER = logging.getLogger(__name__)

DEFAULT_GRACE_WINDOW = timedelta(hours=48)
CHANGED_MARKER = "(changed)"

# Fields copied from a crawl onto an existing row when its content changed.
MUTABLE_FIELDS = (
    "title",
    "description",
    "requirements",
    "location",
    "salary",
    "category",
    "tags",
    "raw",
    "fingerprint",
)
# Diffed verbatim.
DIFF_FIELDS = ("title", "location")
# Diffed as an opaque marker to keep change records small.
MARKER_DIFF_FIELDS = ("description", "requirements")


class SourceBusyError(RuntimeError):
    def __init__(self, source_id: str) -> None:
        super().__init__(f"reconciliation already running for source {source_id}")
        self.source_id = source_id


def compute_diff(existing: Posting, crawled: CrawledPosting) -> Dict[str, Dict[str, Any]]:
    diff: Dict[str, Dict[str, Any]] = {}
    for name in DIFF_FIELDS:
        old, new = getattr(existing, name), getattr(crawled, name)
        if old != new:
            diff[name] = {"old": old, "new": new}
    for name in MARKER_DIFF_FIELDS:
        if getattr(existing, name) != getattr(crawled, name):
            diff[name] = {"old": CHANGED_MARKER, "new": CHANGED_MARKER}
    return diff


def _mutable_values(crawled: CrawledPosting) -> Dict[str, Any]:
    values = {name: getattr(crawled, name) for name in MUTABLE_FIELDS}
    values["tags"] = list(crawled.tags)
    values["raw"] = dict(crawled.raw)
    return values


class Reconciler:
    """Single writer per source: a second concurrent run raises SourceBusyError."""

    def __init__(
        self,
        repository: PostingRepository,
        *,
        grace_window: timedelta = DEFAULT_GRACE_WINDOW,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._repository = repository
        self._grace_window = grace_window
        self._new_id = id_factory
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def grace_window(self) -> timedelta:
        return self._grace_window

    def _lock_for(self, source_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(source_id, threading.Lock())

    def reconcile(
        self,
        source_id: str,
        crawled: Iterable[CrawledPosting],
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        source_id = source_id.strip().lower()
        lock = self._lock_for(source_id)
        if not lock.acquire(blocking=False):
            raise SourceBusyError(source_id)
        try:
            return self._reconcile(source_id, list(crawled), now or utc_now())
        finally:
            lock.release()

    def _change(self, posting_id: str, kind: str, now: datetime, **fields: Any) -> ChangeRecord:
        return ChangeRecord(id=self._new_id(), posting_id=posting_id, kind=kind, created_at=now, **fields)  # type: ignore[arg-type]

    def _reconcile(self, source_id: str, batch: list, now: datetime) -> ReconcileResult:
        result = ReconcileResult(source_id=source_id)
        stored: Dict[str, Posting] = {p.source_post_id: p for p in self._repository.list_for_source(source_id)}
        seen: Set[str] = set()

        for job in batch:
            seen.add(job.source_post_id)
            existing = stored.get(job.source_post_id)
            change: Optional[ChangeRecord] = None

            if existing is None:
                posting = Posting(
                    id=self._new_id(),
                    source_id=source_id,
                    source_post_id=job.source_post_id,
                    url=job.url,
                    job_type=job.job_type,
                    posted_at=job.posted_at,
                    last_crawled_at=now,
                    last_seen_at=now,
                    status="active",
                    created_at=now,
                    updated_at=now,
                    **_mutable_values(job),
                )
                change = self._change(posting.id, "created", now, snapshot=job.snapshot())
                result.created += 1
            elif existing.status != "active":
                # Reappeared after expiry: reactivate the same row.
                posting = existing.copy(
                    status="active",
                    url=job.url,
                    job_type=job.job_type,
                    posted_at=job.posted_at or existing.posted_at,
                    last_crawled_at=max(existing.last_crawled_at, now),
                    last_seen_at=max(existing.last_seen_at, now),
                    updated_at=now,
                    **_mutable_values(job),
                )
                change = self._change(posting.id, "created", now, snapshot=job.snapshot())
                result.created += 1
            elif existing.fingerprint == job.fingerprint:
                posting = existing.copy(
                    last_crawled_at=max(existing.last_crawled_at, now),
                    last_seen_at=max(existing.last_seen_at, now),
                )
                result.unchanged += 1
            else:
                diff = compute_diff(existing, job)
                posting = existing.copy(
                    last_crawled_at=max(existing.last_crawled_at, now),
                    last_seen_at=max(existing.last_seen_at, now),
                    updated_at=now,
                    **_mutable_values(job),
                )
                change = self._change(posting.id, "updated", now, diff=diff)
                result.updated += 1

            self._repository.save(posting, change)
            stored[job.source_post_id] = posting
            if change is not None:
                result.changes.append(change)

        cutoff = now - self._grace_window
        for post_id, posting in stored.items():
            if post_id in seen or posting.status != "active":
                continue
            if posting.last_seen_at >= cutoff:
                continue
            expired = posting.copy(status="expired", updated_at=now)
            change = self._change(posting.id, "removed", now)
            self._repository.save(expired, change)
            result.changes.append(change)
            result.expired += 1

        log_event(LOGGER, logging.INFO, "reconcile_done", source_id=source_id, batch=len(batch), **result.counts())
        return result
