from intern_collector.adapters.base import (
    PageContext,
    PaginatedApiAdapter,
    SourceAdapter,
    SourcePage,
    SourceResponseError,
)
from intern_collector.adapters.bytedance import ByteDanceAdapter
from intern_collector.adapters.meituan import MeituanAdapter
from intern_collector.adapters.tencent import TencentAdapter

__all__ = [
    "ByteDanceAdapter",
    "MeituanAdapter",
    "PageContext",
    "PaginatedApiAdapter",
    "SourceAdapter",
    "SourcePage",
    "SourceResponseError",
    "TencentAdapter",
]
