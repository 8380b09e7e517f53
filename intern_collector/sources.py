from __future__ import annotations

import logging
from typing import List, Sequence

from intern_collector.models import Source
from intern_collector.repository import PostingRepository

LOGGER = logging.getLogger(__name__)

DEFAULT_SOURCES: Sequence[Source] = (
    Source(
        source_id="bytedance",
        name="ByteDance",
        display_name="字节跳动",
        website="https://www.bytedance.com",
        careers_url="https://jobs.bytedance.com/campus",
        enabled=True,
    ),
    Source(
        source_id="tencent",
        name="Tencent",
        display_name="腾讯",
        website="https://www.tencent.com",
        careers_url="https://careers.tencent.com",
        enabled=False,
    ),
    Source(
        source_id="alibaba",
        name="Alibaba",
        display_name="阿里巴巴",
        website="https://www.alibaba.com",
        careers_url="https://talent.alibaba.com",
        enabled=False,
    ),
    Source(
        source_id="meituan",
        name="Meituan",
        display_name="美团",
        website="https://www.meituan.com",
        careers_url="https://job.meituan.com",
        enabled=False,
    ),
)


def seed_default_sources(repository: PostingRepository, sources: Sequence[Source] = DEFAULT_SOURCES) -> List[str]:
    """Insert catalogue entries that are not stored yet; existing rows are left alone.

    Returns the ids that were added.
    """

    added: List[str] = []
    for source in sources:
        if repository.get_source(source.source_id) is not None:
            continue
        repository.upsert_source(
            Source(
                source_id=source.source_id,
                name=source.name,
                enabled=source.enabled,
                crawl_interval_hours=source.crawl_interval_hours,
                display_name=source.display_name,
                website=source.website,
                careers_url=source.careers_url,
            )
        )
        added.append(source.source_id)
    if added:
        LOGGER.info("Seeded sources: %s", ", ".join(added))
    return added
