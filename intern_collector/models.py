from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

JobType = Literal["intern", "campus", "social", "unknown"]
PostingStatus = Literal["active", "expired", "unknown"]
ChangeKind = Literal["created", "updated", "removed"]
PostingSort = Literal["posted_at_desc", "posted_at_asc", "updated_at_desc", "updated_at_asc"]

JOB_TYPES: Tuple[str, ...] = ("intern", "campus", "social", "unknown")
POSTING_STATUSES: Tuple[str, ...] = ("active", "expired", "unknown")
POSTING_SORTS: Tuple[str, ...] = ("posted_at_desc", "posted_at_asc", "updated_at_desc", "updated_at_asc")

MAX_PAGE_SIZE = 100


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class AdapterConfig:
    """Per-invocation crawl options understood by every adapter."""

    page_size: int = 10
    max_pages: int = 100
    delay_ms: int = 1000
    intern_only: bool = True
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CrawledPosting:
    """A normalized posting as produced by an adapter, before reconciliation."""

    source_id: str
    source_post_id: str
    title: str
    url: str
    fingerprint: str
    location: Optional[str] = None
    description: Optional[str] = None
    requirements: Optional[str] = None
    salary: Optional[str] = None
    category: Optional[str] = None
    tags: Tuple[str, ...] = ()
    job_type: JobType = "unknown"
    posted_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def snapshot(self) -> Dict[str, Any]:
        """Full field snapshot for a ``created`` change record (raw payload excluded)."""
        data = asdict(self)
        data.pop("raw", None)
        data["tags"] = list(self.tags)
        data["posted_at"] = _iso(self.posted_at)
        return data


@dataclass
class Posting:
    """A stored posting row, identified by ``(source_id, source_post_id)``."""

    id: str
    source_id: str
    source_post_id: str
    title: str
    url: str
    fingerprint: str
    last_crawled_at: datetime
    last_seen_at: datetime
    location: Optional[str] = None
    description: Optional[str] = None
    requirements: Optional[str] = None
    salary: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    job_type: JobType = "unknown"
    status: PostingStatus = "active"
    posted_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.source_id, self.source_post_id)

    def copy(self, **changes: Any) -> "Posting":
        changes.setdefault("tags", list(self.tags))
        changes.setdefault("raw", dict(self.raw))
        return replace(self, **changes)

    def as_dict(self, *, include_raw: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        if not include_raw:
            data.pop("raw", None)
        for name in ("posted_at", "last_crawled_at", "last_seen_at", "created_at", "updated_at"):
            data[name] = _iso(getattr(self, name))
        return data


@dataclass(frozen=True)
class ChangeRecord:
    """Append-only audit entry for a posting."""

    id: str
    posting_id: str
    kind: ChangeKind
    created_at: datetime
    diff: Optional[Dict[str, Dict[str, Any]]] = None
    snapshot: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class Source:
    """Employer configuration row. The core only reads ``enabled`` and ``source_id``."""

    source_id: str
    name: str
    enabled: bool = True
    crawl_interval_hours: int = 6
    last_crawled_at: Optional[datetime] = None
    display_name: Optional[str] = None
    website: Optional[str] = None
    careers_url: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_crawled_at"] = _iso(self.last_crawled_at)
        return data


@dataclass
class CrawlResult:
    success: bool
    jobs: List[CrawledPosting]
    crawled_at: datetime
    total: Optional[int] = None
    error: Optional[str] = None


@dataclass
class ReconcileResult:
    source_id: str
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    expired: int = 0
    changes: List[ChangeRecord] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "expired": self.expired,
        }


@dataclass(frozen=True)
class PostingQuery:
    """Filter, sort and pagination options for listing postings."""

    source_id: Optional[str] = None
    job_type: Optional[str] = None
    status: Optional[str] = "active"
    text: Optional[str] = None
    location: Optional[str] = None
    updated_after: Optional[datetime] = None
    page: int = 1
    limit: int = 20
    sort: str = "posted_at_desc"

    def normalized(self) -> "PostingQuery":
        page = max(1, int(self.page))
        limit = min(MAX_PAGE_SIZE, max(1, int(self.limit)))
        sort = self.sort if self.sort in POSTING_SORTS else "posted_at_desc"
        source_id = self.source_id.strip().lower() if self.source_id else None
        return replace(self, page=page, limit=limit, sort=sort, source_id=source_id or None)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass
class PostingPage:
    items: List[Dict[str, Any]]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total

    def pagination(self) -> Dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
            "has_more": self.has_more,
        }


@dataclass
class PostingStats:
    total: int
    by_source: Dict[str, int]
    by_job_type: Dict[str, int]
