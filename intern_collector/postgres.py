"""PostgreSQL repository: DDL management, posting upserts and read queries.

Three tables live in one schema:

* ``postings``: one row per ``(source_id, source_post_id)`` (unique).
* ``change_records``: append-only, cascade-deleted with their posting.
* ``sources``: employer catalogue with the last successful crawl time.

A posting and its change record are written in the same transaction.
"""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg2
import psycopg2.extras

from intern_collector.models import (
    ChangeRecord,
    Posting,
    PostingPage,
    PostingQuery,
    PostingStats,
    Source,
)
from intern_collector.repository import PostingRepository, RepositoryError

log = logging.getLogger(__name__)

DEFAULT_SCHEMA = "intern_collector"

POSTING_COLUMNS = [
    "id",
    "source_id",
    "source_post_id",
    "title",
    "url",
    "fingerprint",
    "location",
    "description",
    "requirements",
    "salary",
    "category",
    "tags",
    "job_type",
    "status",
    "posted_at",
    "last_crawled_at",
    "last_seen_at",
    "raw",
    "created_at",
    "updated_at",
]
# Returned by list queries; raw payload is left out.
POSTING_LIST_COLUMNS = [c for c in POSTING_COLUMNS if c != "raw"]
# Never overwritten on conflict.
_IMMUTABLE_POSTING_COLUMNS = {"id", "source_id", "source_post_id", "created_at"}

_SORT_SQL = {
    "posted_at_desc": "posted_at DESC NULLS LAST, id",
    "posted_at_asc": "posted_at ASC NULLS LAST, id",
    "updated_at_desc": "updated_at DESC NULLS LAST, id",
    "updated_at_asc": "updated_at ASC NULLS LAST, id",
}


# ---------------------------------------------------------------------------
# Connection helpers
# ---------------------------------------------------------------------------

@contextmanager
def get_connection(dsn: str) -> Iterator[Any]:
    """Context manager yielding a psycopg2 connection; commits on exit."""
    try:
        pg = psycopg2.connect(dsn)
    except psycopg2.Error as e:
        raise RepositoryError(f"cannot connect to PostgreSQL: {e}") from e
    try:
        yield pg
        pg.commit()
    except psycopg2.Error as e:
        pg.rollback()
        raise RepositoryError(str(e)) from e
    except Exception:
        pg.rollback()
        raise
    finally:
        pg.close()


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

def generate_schema_sql(schema: str = DEFAULT_SCHEMA) -> List[str]:
    """CREATE statements for all tables and indexes, idempotent."""
    return [
        f"CREATE SCHEMA IF NOT EXISTS {schema};",
        f"""
        CREATE TABLE IF NOT EXISTS {schema}.sources (
            source_id               text        NOT NULL PRIMARY KEY,
            name                    text        NOT NULL,
            display_name            text,
            website                 text,
            careers_url             text,
            enabled                 boolean     NOT NULL DEFAULT true,
            crawl_interval_hours    integer     NOT NULL DEFAULT 6,
            last_crawled_at         timestamptz
        );
        """,
        f"""
        CREATE TABLE IF NOT EXISTS {schema}.postings (
            id                  text        NOT NULL PRIMARY KEY,
            source_id           text        NOT NULL,
            source_post_id      text        NOT NULL,
            title               text        NOT NULL,
            url                 text        NOT NULL,
            fingerprint         char(64)    NOT NULL,
            location            text,
            description         text,
            requirements        text,
            salary              text,
            category            text,
            tags                jsonb       NOT NULL DEFAULT '[]'::jsonb,
            job_type            text        NOT NULL DEFAULT 'unknown',
            status              text        NOT NULL DEFAULT 'active',
            posted_at           timestamptz,
            last_crawled_at     timestamptz NOT NULL,
            last_seen_at        timestamptz NOT NULL,
            raw                 jsonb,
            created_at          timestamptz NOT NULL DEFAULT now(),
            updated_at          timestamptz NOT NULL DEFAULT now(),
            CONSTRAINT postings_source_post_key UNIQUE (source_id, source_post_id)
        );
        """,
        f"CREATE INDEX IF NOT EXISTS postings_status_idx ON {schema}.postings (status);",
        f"CREATE INDEX IF NOT EXISTS postings_job_type_idx ON {schema}.postings (job_type);",
        f"CREATE INDEX IF NOT EXISTS postings_posted_at_idx ON {schema}.postings (posted_at);",
        f"""
        CREATE TABLE IF NOT EXISTS {schema}.change_records (
            id              text        NOT NULL PRIMARY KEY,
            posting_id      text        NOT NULL REFERENCES {schema}.postings (id) ON DELETE CASCADE,
            kind            text        NOT NULL,
            diff            jsonb,
            snapshot        jsonb,
            created_at      timestamptz NOT NULL DEFAULT now()
        );
        """,
        f"CREATE INDEX IF NOT EXISTS change_records_posting_idx ON {schema}.change_records (posting_id);",
    ]


# ---------------------------------------------------------------------------
# SQL builders
# ---------------------------------------------------------------------------

def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_posting_filter_sql(query: PostingQuery) -> Tuple[str, List[Any]]:
    """WHERE clause (possibly empty) and its parameters for a normalized query."""
    clauses: List[str] = []
    params: List[Any] = []

    if query.source_id:
        clauses.append("source_id = %s")
        params.append(query.source_id)
    if query.job_type:
        clauses.append("job_type = %s")
        params.append(query.job_type)
    if query.status:
        clauses.append("status = %s")
        params.append(query.status)
    if query.location:
        clauses.append("location ILIKE %s")
        params.append(f"%{_escape_like(query.location)}%")
    if query.text:
        pattern = f"%{_escape_like(query.text)}%"
        clauses.append("(title ILIKE %s OR description ILIKE %s)")
        params.extend([pattern, pattern])
    if query.updated_after is not None:
        clauses.append("updated_at > %s")
        params.append(query.updated_after)

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def build_posting_query_sql(query: PostingQuery, schema: str = DEFAULT_SCHEMA) -> Tuple[str, List[Any]]:
    q = query.normalized()
    where, params = build_posting_filter_sql(q)
    sql = (
        f"SELECT {', '.join(POSTING_LIST_COLUMNS)}\n"
        f"FROM {schema}.postings\n"
        f"{where}\n"
        f"ORDER BY {_SORT_SQL[q.sort]}\n"
        f"LIMIT %s OFFSET %s"
    )
    return sql, params + [q.limit, q.offset]


def build_posting_count_sql(query: PostingQuery, schema: str = DEFAULT_SCHEMA) -> Tuple[str, List[Any]]:
    where, params = build_posting_filter_sql(query.normalized())
    return f"SELECT count(*) AS total FROM {schema}.postings {where}".strip(), params


def build_posting_upsert_sql(schema: str = DEFAULT_SCHEMA) -> str:
    placeholders = ", ".join(["%s"] * len(POSTING_COLUMNS))
    set_clause = ",\n    ".join(
        f"{c} = EXCLUDED.{c}" for c in POSTING_COLUMNS if c not in _IMMUTABLE_POSTING_COLUMNS
    )
    return (
        f"INSERT INTO {schema}.postings (\n"
        f"    {', '.join(POSTING_COLUMNS)}\n"
        f") VALUES ({placeholders})\n"
        f"ON CONFLICT (id) DO UPDATE SET\n"
        f"    {set_clause}"
    )


def posting_to_row(posting: Posting) -> Tuple[Any, ...]:
    values: Dict[str, Any] = {name: getattr(posting, name) for name in POSTING_COLUMNS}
    values["tags"] = psycopg2.extras.Json(list(posting.tags))
    values["raw"] = psycopg2.extras.Json(posting.raw or {})
    return tuple(values[name] for name in POSTING_COLUMNS)


def _json_value(value: Any) -> Any:
    # jsonb comes back decoded; plain json/text columns do not.
    if isinstance(value, str):
        return json.loads(value)
    return value


def row_to_posting(row: Dict[str, Any]) -> Posting:
    return Posting(
        id=row["id"],
        source_id=row["source_id"],
        source_post_id=row["source_post_id"],
        title=row["title"],
        url=row["url"],
        fingerprint=(row["fingerprint"] or "").strip(),
        location=row.get("location"),
        description=row.get("description"),
        requirements=row.get("requirements"),
        salary=row.get("salary"),
        category=row.get("category"),
        tags=list(_json_value(row.get("tags")) or []),
        job_type=row.get("job_type") or "unknown",
        status=row.get("status") or "active",
        posted_at=row.get("posted_at"),
        last_crawled_at=row["last_crawled_at"],
        last_seen_at=row["last_seen_at"],
        raw=dict(_json_value(row.get("raw")) or {}),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def row_to_change(row: Dict[str, Any]) -> ChangeRecord:
    return ChangeRecord(
        id=row["id"],
        posting_id=row["posting_id"],
        kind=row["kind"],
        created_at=row["created_at"],
        diff=_json_value(row.get("diff")),
        snapshot=_json_value(row.get("snapshot")),
    )


def row_to_source(row: Dict[str, Any]) -> Source:
    return Source(
        source_id=row["source_id"],
        name=row["name"],
        enabled=bool(row["enabled"]),
        crawl_interval_hours=int(row.get("crawl_interval_hours") or 6),
        last_crawled_at=row.get("last_crawled_at"),
        display_name=row.get("display_name"),
        website=row.get("website"),
        careers_url=row.get("careers_url"),
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class PostgresRepository(PostingRepository):
    def __init__(self, dsn: str, *, schema: str = DEFAULT_SCHEMA) -> None:
        if not dsn:
            raise RepositoryError("PostgreSQL DSN not set. Configure INTERN_COLLECTOR_DATABASE_URL.")
        self._dsn = dsn
        self._schema = schema

    def _fetch_all(self, sql: str, params: Any = ()) -> List[Dict[str, Any]]:
        with get_connection(self._dsn) as pg:
            cur = pg.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            cur.execute(sql, params)
            return [dict(row) for row in cur.fetchall()]

    def ensure_schema(self) -> None:
        with get_connection(self._dsn) as pg:
            cur = pg.cursor()
            for stmt in generate_schema_sql(self._schema):
                cur.execute(stmt)
        log.info("DDL ensured: %s.{sources,postings,change_records}", self._schema)

    def list_for_source(self, source_id: str) -> List[Posting]:
        rows = self._fetch_all(
            f"SELECT {', '.join(POSTING_COLUMNS)} FROM {self._schema}.postings WHERE source_id = %s",
            (source_id,),
        )
        return [row_to_posting(r) for r in rows]

    def save(self, posting: Posting, change: Optional[ChangeRecord] = None) -> None:
        with get_connection(self._dsn) as pg:
            cur = pg.cursor()
            cur.execute(build_posting_upsert_sql(self._schema), posting_to_row(posting))
            if change is not None:
                cur.execute(
                    f"INSERT INTO {self._schema}.change_records (id, posting_id, kind, diff, snapshot, created_at) "
                    "VALUES (%s, %s, %s, %s, %s, %s)",
                    (
                        change.id,
                        change.posting_id,
                        change.kind,
                        psycopg2.extras.Json(change.diff) if change.diff is not None else None,
                        psycopg2.extras.Json(change.snapshot) if change.snapshot is not None else None,
                        change.created_at,
                    ),
                )

    def get_posting(self, posting_id: str) -> Optional[Posting]:
        rows = self._fetch_all(
            f"SELECT {', '.join(POSTING_COLUMNS)} FROM {self._schema}.postings WHERE id = %s",
            (posting_id,),
        )
        return row_to_posting(rows[0]) if rows else None

    def list_changes(self, posting_id: str) -> List[ChangeRecord]:
        rows = self._fetch_all(
            f"SELECT id, posting_id, kind, diff, snapshot, created_at FROM {self._schema}.change_records "
            "WHERE posting_id = %s ORDER BY created_at, id",
            (posting_id,),
        )
        return [row_to_change(r) for r in rows]

    def query_postings(self, query: PostingQuery) -> PostingPage:
        q = query.normalized()
        count_sql, count_params = build_posting_count_sql(q, self._schema)
        list_sql, list_params = build_posting_query_sql(q, self._schema)
        with get_connection(self._dsn) as pg:
            cur = pg.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            cur.execute(count_sql, count_params)
            total = int(cur.fetchone()["total"])
            cur.execute(list_sql, list_params)
            rows = [dict(r) for r in cur.fetchall()]

        items = []
        for row in rows:
            row["raw"] = None
            items.append(row_to_posting(row).as_dict(include_raw=False))
        return PostingPage(items=items, page=q.page, limit=q.limit, total=total)

    def stats(self) -> PostingStats:
        by_source = self._fetch_all(
            f"SELECT source_id AS key, count(*) AS n FROM {self._schema}.postings "
            "WHERE status = 'active' GROUP BY source_id"
        )
        by_type = self._fetch_all(
            f"SELECT job_type AS key, count(*) AS n FROM {self._schema}.postings "
            "WHERE status = 'active' GROUP BY job_type"
        )
        source_counts = {r["key"]: int(r["n"]) for r in by_source}
        return PostingStats(
            total=sum(source_counts.values()),
            by_source=source_counts,
            by_job_type={r["key"]: int(r["n"]) for r in by_type},
        )

    def list_sources(self, *, enabled_only: bool = False) -> List[Source]:
        where = "WHERE enabled" if enabled_only else ""
        rows = self._fetch_all(f"SELECT * FROM {self._schema}.sources {where} ORDER BY source_id")
        return [row_to_source(r) for r in rows]

    def get_source(self, source_id: str) -> Optional[Source]:
        rows = self._fetch_all(
            f"SELECT * FROM {self._schema}.sources WHERE source_id = %s",
            (source_id.lower(),),
        )
        return row_to_source(rows[0]) if rows else None

    def upsert_source(self, source: Source) -> None:
        sql = f"""
        INSERT INTO {self._schema}.sources
            (source_id, name, display_name, website, careers_url, enabled, crawl_interval_hours, last_crawled_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (source_id) DO UPDATE SET
            name                 = EXCLUDED.name,
            display_name         = EXCLUDED.display_name,
            website              = EXCLUDED.website,
            careers_url          = EXCLUDED.careers_url,
            enabled              = EXCLUDED.enabled,
            crawl_interval_hours = EXCLUDED.crawl_interval_hours,
            last_crawled_at      = EXCLUDED.last_crawled_at
        """
        with get_connection(self._dsn) as pg:
            cur = pg.cursor()
            cur.execute(
                sql,
                (
                    source.source_id.lower(),
                    source.name,
                    source.display_name,
                    source.website,
                    source.careers_url,
                    source.enabled,
                    source.crawl_interval_hours,
                    source.last_crawled_at,
                ),
            )

    def mark_source_crawled(self, source_id: str, crawled_at: datetime) -> None:
        with get_connection(self._dsn) as pg:
            cur = pg.cursor()
            cur.execute(
                f"UPDATE {self._schema}.sources SET last_crawled_at = %s WHERE source_id = %s",
                (crawled_at, source_id.lower()),
            )
        log.info("Last crawl time recorded for %s.", source_id)

    def list_sources_with_counts(self) -> List[Tuple[Source, int]]:
        rows = self._fetch_all(
            f"""
            SELECT s.*, count(p.id) AS active_postings
            FROM {self._schema}.sources s
            LEFT JOIN {self._schema}.postings p
                ON p.source_id = s.source_id AND p.status = 'active'
            GROUP BY s.source_id
            ORDER BY s.source_id
            """
        )
        return [(row_to_source(r), int(r["active_postings"])) for r in rows]
