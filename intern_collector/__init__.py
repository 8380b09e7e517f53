"""Crawl employer career sites and reconcile postings over repeated runs.

This package provides:
- Source adapters (API and browser based) behind a static registry
- A reconciliation engine producing create/update/expire decisions and change records
- An orchestrator running every enabled source on a schedule or on demand
"""

from intern_collector.models import ChangeRecord, CrawledPosting, CrawlResult, Posting, Source

__all__ = ["ChangeRecord", "CrawlResult", "CrawledPosting", "Posting", "Source"]
