from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from intern_collector.adapters import ByteDanceAdapter, MeituanAdapter, SourceAdapter, TencentAdapter
from intern_collector.settings import CollectorSettings, get_settings

LOGGER = logging.getLogger(__name__)

AdapterFactory = Callable[[], SourceAdapter]


class AdapterRegistry:
    """Source id -> adapter factory. Lookups are case-insensitive.

    Every ``get``/``get_all`` builds a fresh adapter, so no state is shared
    between crawls.
    """

    def __init__(self) -> None:
        self._factories: Dict[str, AdapterFactory] = {}

    @staticmethod
    def _key(source_id: str) -> str:
        return (source_id or "").strip().lower()

    def register(self, source_id: str, factory: AdapterFactory) -> None:
        key = self._key(source_id)
        if not key:
            raise ValueError("source_id must be non-empty")
        if key in self._factories:
            LOGGER.warning("Replacing adapter factory for source %s", key)
        self._factories[key] = factory

    def get(self, source_id: str) -> Optional[SourceAdapter]:
        factory = self._factories.get(self._key(source_id))
        return factory() if factory is not None else None

    def list_ids(self) -> List[str]:
        return list(self._factories)

    def get_all(self) -> List[SourceAdapter]:
        return [factory() for factory in self._factories.values()]

    def __contains__(self, source_id: object) -> bool:
        return isinstance(source_id, str) and self._key(source_id) in self._factories

    def __len__(self) -> int:
        return len(self._factories)


def build_default_registry(settings: Optional[CollectorSettings] = None) -> AdapterRegistry:
    settings = settings or get_settings()
    registry = AdapterRegistry()
    registry.register("bytedance", lambda: ByteDanceAdapter(settings=settings))
    registry.register("tencent", lambda: TencentAdapter(settings=settings))
    registry.register("meituan", lambda: MeituanAdapter(settings=settings))
    return registry
