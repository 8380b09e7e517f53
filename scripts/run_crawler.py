#!/usr/bin/env python3
from __future__ import annotations

# ruff: noqa: E402
import argparse
import json
import logging
import os
import sys
import threading

# Ensure project root is in path for local execution.
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from intern_collector.logging_utils import configure_logging
from intern_collector.orchestrator import CrawlOrchestrator, SourceNotFoundError
from intern_collector.postgres import PostgresRepository
from intern_collector.registry import AdapterRegistry, build_default_registry
from intern_collector.repository import InMemoryRepository, PostingRepository
from intern_collector.settings import CollectorSettings, get_settings
from intern_collector.sources import seed_default_sources

LOGGER = logging.getLogger("intern_collector.cli")


def build_repository(settings: CollectorSettings, *, dry_run: bool = False) -> PostingRepository:
    if dry_run or not settings.database_url:
        if not dry_run:
            LOGGER.warning("INTERN_COLLECTOR_DATABASE_URL not set; using an in-memory store")
        repository: PostingRepository = InMemoryRepository()
    else:
        repository = PostgresRepository(settings.database_url)
    seed_default_sources(repository)
    return repository


def _print_sources(registry: AdapterRegistry, repository: PostingRepository) -> None:
    print("Registered adapters:", ", ".join(sorted(registry.list_ids())))
    for source, active in repository.list_sources_with_counts():
        flags = []
        if source.enabled:
            flags.append("enabled")
        if source.source_id not in registry:
            flags.append("no adapter")
        last = source.last_crawled_at.isoformat() if source.last_crawled_at else "never"
        print(f"  {source.source_id:<10s} active={active:<5d} last_crawled={last} {' '.join(flags)}")


def _health(registry: AdapterRegistry) -> int:
    unhealthy = 0
    for source_id in sorted(registry.list_ids()):
        adapter = registry.get(source_id)
        ok = adapter is not None and adapter.health_check()
        unhealthy += 0 if ok else 1
        print(f"{source_id:<10s} {'ok' if ok else 'unreachable'}")
    return 0 if unhealthy == 0 else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Crawl employer career sites and reconcile stored postings.")
    parser.add_argument("--list", action="store_true", help="List sources and registered adapters, then exit.")
    parser.add_argument("--source", help="Crawl a single source by id (e.g. bytedance), enabled or not.")
    parser.add_argument("--dry-run", action="store_true", help="Reconcile into an in-memory store (no database writes).")
    parser.add_argument("--schedule", action="store_true", help="Run the recurring schedule in the foreground.")
    parser.add_argument("--health", action="store_true", help="Probe every registered source and exit.")
    parser.add_argument("--init-db", action="store_true", help="Create the PostgreSQL schema and seed sources.")
    parser.add_argument("--log-level", help="Override INTERN_COLLECTOR_LOG_LEVEL.")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)

    registry = build_default_registry(settings)

    if args.health:
        return _health(registry)

    if args.init_db:
        if not settings.database_url:
            print("INTERN_COLLECTOR_DATABASE_URL is not set.")
            return 2
        repository = PostgresRepository(settings.database_url)
        repository.ensure_schema()
        added = seed_default_sources(repository)
        print(f"Schema ready; seeded sources: {', '.join(added) or 'none'}")
        return 0

    repository = build_repository(settings, dry_run=args.dry_run)

    if args.list:
        _print_sources(registry, repository)
        return 0

    orchestrator = CrawlOrchestrator.from_settings(settings, registry, repository)

    if args.schedule:
        orchestrator.start()
        print(f"Scheduler running (cron: {settings.crawl_schedule}); Ctrl+C to stop.")
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            pass
        finally:
            orchestrator.stop()
        return 0

    if args.source:
        try:
            outcome = orchestrator.run_source(args.source)
        except SourceNotFoundError as e:
            print(str(e))
            print("Registered adapters:", ", ".join(sorted(registry.list_ids())))
            return 2
        print(json.dumps(outcome.as_dict(), ensure_ascii=False, sort_keys=True))
        return 0 if outcome.success else 1

    summary = orchestrator.run_all()
    totals = summary.totals()
    print(
        f"Run summary run_id={summary.run_id} sources={len(summary.outcomes)} "
        f"created={totals['created']} updated={totals['updated']} unchanged={totals['unchanged']} "
        f"expired={totals['expired']} failed={','.join(summary.failed) or '-'}"
    )
    return 0 if not summary.failed else 1


if __name__ == "__main__":
    raise SystemExit(main())
