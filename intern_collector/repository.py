from __future__ import annotations

import threading
from collections import Counter
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from intern_collector.models import (
    ChangeRecord,
    Posting,
    PostingPage,
    PostingQuery,
    PostingStats,
    Source,
)


class RepositoryError(RuntimeError):
    pass


class PostingRepository:
    """Storage boundary for postings, change records and sources.

    ``save`` writes a posting together with its change record (if any) as one
    unit: either both are visible afterwards or neither is.
    """

    def list_for_source(self, source_id: str) -> List[Posting]:
        """Every stored posting for the source, whatever its status."""
        raise NotImplementedError

    def save(self, posting: Posting, change: Optional[ChangeRecord] = None) -> None:
        raise NotImplementedError

    def get_posting(self, posting_id: str) -> Optional[Posting]:
        raise NotImplementedError

    def list_changes(self, posting_id: str) -> List[ChangeRecord]:
        raise NotImplementedError

    def query_postings(self, query: PostingQuery) -> PostingPage:
        raise NotImplementedError

    def stats(self) -> PostingStats:
        raise NotImplementedError

    def list_sources(self, *, enabled_only: bool = False) -> List[Source]:
        raise NotImplementedError

    def get_source(self, source_id: str) -> Optional[Source]:
        raise NotImplementedError

    def upsert_source(self, source: Source) -> None:
        raise NotImplementedError

    def mark_source_crawled(self, source_id: str, crawled_at: datetime) -> None:
        raise NotImplementedError

    def list_sources_with_counts(self) -> List[Tuple[Source, int]]:
        """Sources paired with their active posting count."""
        counts = self.stats().by_source
        return [(source, counts.get(source.source_id, 0)) for source in self.list_sources()]

    def close(self) -> None:
        return None


def _contains(haystack: Optional[str], needle: str) -> bool:
    return bool(haystack) and needle in haystack.lower()  # type: ignore[union-attr]


def _matches(posting: Posting, query: PostingQuery) -> bool:
    if query.source_id and posting.source_id != query.source_id:
        return False
    if query.job_type and posting.job_type != query.job_type:
        return False
    if query.status and posting.status != query.status:
        return False
    if query.location and not _contains(posting.location, query.location.lower()):
        return False
    if query.text:
        needle = query.text.lower()
        if not (_contains(posting.title, needle) or _contains(posting.description, needle)):
            return False
    if query.updated_after is not None:
        if posting.updated_at is None or posting.updated_at <= query.updated_after:
            return False
    return True


def sort_postings(postings: List[Posting], sort: str) -> List[Posting]:
    """Order by ``<field>_<asc|desc>``, ties by id ascending; rows without the timestamp always go last."""
    field_name, _, direction = sort.rpartition("_")
    with_value = sorted((p for p in postings if getattr(p, field_name) is not None), key=lambda p: p.id)
    without_value = [p for p in postings if getattr(p, field_name) is None]
    # Stable sort keeps the id order among equal timestamps in both directions.
    ordered = sorted(with_value, key=lambda p: getattr(p, field_name).timestamp(), reverse=direction == "desc")
    return ordered + sorted(without_value, key=lambda p: p.id)


class InMemoryRepository(PostingRepository):
    """Process-local repository; used for dry runs and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._postings: Dict[str, Posting] = {}
        self._by_key: Dict[Tuple[str, str], str] = {}
        self._changes: List[ChangeRecord] = []
        self._sources: Dict[str, Source] = {}

    @property
    def changes(self) -> List[ChangeRecord]:
        with self._lock:
            return list(self._changes)

    def list_for_source(self, source_id: str) -> List[Posting]:
        with self._lock:
            return [p.copy() for p in self._postings.values() if p.source_id == source_id]

    def save(self, posting: Posting, change: Optional[ChangeRecord] = None) -> None:
        if change is not None and change.posting_id != posting.id:
            raise RepositoryError(f"change {change.id} does not reference posting {posting.id}")
        with self._lock:
            owner = self._by_key.get(posting.key)
            if owner is not None and owner != posting.id:
                raise RepositoryError(f"duplicate posting for {posting.key}")
            self._postings[posting.id] = posting.copy()
            self._by_key[posting.key] = posting.id
            if change is not None:
                self._changes.append(change)

    def get_posting(self, posting_id: str) -> Optional[Posting]:
        with self._lock:
            posting = self._postings.get(posting_id)
            return posting.copy() if posting is not None else None

    def list_changes(self, posting_id: str) -> List[ChangeRecord]:
        with self._lock:
            return [c for c in self._changes if c.posting_id == posting_id]

    def query_postings(self, query: PostingQuery) -> PostingPage:
        q = query.normalized()
        with self._lock:
            matched = [p for p in self._postings.values() if _matches(p, q)]
        ordered = sort_postings(matched, q.sort)
        window = ordered[q.offset : q.offset + q.limit]
        return PostingPage(
            items=[p.as_dict(include_raw=False) for p in window],
            page=q.page,
            limit=q.limit,
            total=len(matched),
        )

    def stats(self) -> PostingStats:
        with self._lock:
            active = [p for p in self._postings.values() if p.status == "active"]
        return PostingStats(
            total=len(active),
            by_source=dict(Counter(p.source_id for p in active)),
            by_job_type=dict(Counter(p.job_type for p in active)),
        )

    def list_sources(self, *, enabled_only: bool = False) -> List[Source]:
        with self._lock:
            sources = [replace(s) for s in sorted(self._sources.values(), key=lambda s: s.source_id)]
        return [s for s in sources if s.enabled or not enabled_only]

    def get_source(self, source_id: str) -> Optional[Source]:
        with self._lock:
            source = self._sources.get(source_id.lower())
            return replace(source) if source is not None else None

    def upsert_source(self, source: Source) -> None:
        with self._lock:
            self._sources[source.source_id.lower()] = replace(source)

    def mark_source_crawled(self, source_id: str, crawled_at: datetime) -> None:
        with self._lock:
            key = source_id.lower()
            source = self._sources.get(key)
            if source is not None:
                self._sources[key] = replace(source, last_crawled_at=crawled_at)
