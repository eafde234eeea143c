"""
linkbot/channel_authority.py

ギルドのチャンネルが監視対象かどうかを判定する
キャッシュ → ストア → 設定の旧チャンネル一覧 の順で解決する
"""

import logging
from typing import FrozenSet, Iterable, List, Optional

from linkbot.services import CacheService, SettingsStore

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "monitored:"


def cache_key(guild_id) -> str:
    return f"{CACHE_KEY_PREFIX}{guild_id}"


class ChannelAuthority:
    """監視チャンネルの判定クラス"""

    def __init__(
        self,
        store: SettingsStore,
        cache: CacheService,
        legacy_channel_ids: Optional[Iterable[str]] = None,
        ttl_seconds: float = 60,
    ):
        """
        Args:
            store: 監視チャンネルの正となるストア
            cache: 参考値として使うキャッシュ
            legacy_channel_ids: 解決失敗時に使う固定のチャンネルID一覧
            ttl_seconds: キャッシュの有効期間（秒）
        """
        self.store = store
        self.cache = cache
        self.legacy_channel_ids: FrozenSet[str] = frozenset(str(c) for c in legacy_channel_ids or ())
        self.ttl_seconds = ttl_seconds

    async def get_monitored_channels(self, guild_id) -> List[str]:
        """
        ギルドの監視チャンネルID一覧を取得

        Raises:
            DatabaseError: ストアの読み込みに失敗した場合
        """
        key = cache_key(guild_id)
        try:
            cached = await self.cache.get(key)
        except Exception as e:
            logger.warning(f"Cache lookup failed for {key}: {e}")
            cached = None
        if cached:
            logger.debug(f"Monitored channels for guild {guild_id} served from {self.cache.name} cache")
            return list(cached)

        channels = [str(c) for c in await self.store.get_active_monitored_channels(str(guild_id))]
        try:
            await self.cache.set(key, channels, self.ttl_seconds)
        except Exception as e:
            logger.warning(f"Cache store failed for {key}: {e}")
        return channels

    async def is_monitored(self, guild_id, channel_id) -> bool:
        """チャンネルが監視対象か判定する"""
        try:
            channels = await self.get_monitored_channels(guild_id)
        except Exception as e:
            logger.error(f"Failed to resolve monitored channels for guild {guild_id}, using legacy list: {e}")
            return str(channel_id) in self.legacy_channel_ids
        return str(channel_id) in channels

    async def invalidate(self, guild_id) -> None:
        """管理操作の後にキャッシュを破棄する"""
        try:
            await self.cache.delete(cache_key(guild_id))
        except Exception as e:
            logger.warning(f"Cache invalidation failed for guild {guild_id}: {e}")
