"""
linkbot/impl/cache_service.py

補助キャッシュの実装
プロセス内のTTL付き辞書と、何も保持しないキャッシュを提供
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from linkbot.services import CacheService

logger = logging.getLogger(__name__)


class MemoryCacheService(CacheService):
    """TTL付きのプロセス内キャッシュ"""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        # key -> (value, 期限。None は無期限)
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}

    async def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._entries[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)


class NullCacheService(CacheService):
    """キャッシュ無効時の実装。常にミスする"""

    name = "disabled"

    async def get(self, key: str) -> Any:
        return None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None


def build_cache(enabled: bool) -> CacheService:
    """
    設定に応じたキャッシュ実装を生成

    Args:
        enabled: キャッシュを使うかどうか

    Returns:
        CacheService: キャッシュ実装
    """
    if enabled:
        logger.info("Cache: using in-memory cache")
        return MemoryCacheService()
    logger.info("Cache: disabled")
    return NullCacheService()
