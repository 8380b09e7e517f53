from __future__ import annotations

from datetime import datetime, timezone
from typing import List

import pytest

from intern_collector.repository import InMemoryRepository
from intern_collector.settings import CollectorSettings


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def settings() -> CollectorSettings:
    return CollectorSettings(
        user_agent="TestAgent/1.0",
        http_max_retries=0,
        http_backoff_base_s=0.0,
        delay_ms=0,
        inter_source_delay_s=0,
        otel_enabled=False,
        database_url=None,
    )


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def now() -> datetime:
    return datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
