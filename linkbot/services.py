"""
linkbot/services.py

各種サービスの抽象クラスを定義するモジュール。
依存性注入パターンを実現するためのインターフェース。
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Optional, Sequence

from linkbot.models import DMMapping, Link, MonitoredChannel


class LinkStore(ABC):
    """リンクレコードの保存と既読状態の管理"""

    @abstractmethod
    async def store_link(self, message, url: str, guild_id: str) -> Optional[Link]:
        """
        メッセージ中のURLを1件保存

        Args:
            message: Discordメッセージ
            url: 検出したURL
            guild_id: ギルドID

        Returns:
            Optional[Link]: 保存したLink（重複時はNone）

        Raises:
            DatabaseError: 保存失敗時
        """
        pass

    @abstractmethod
    async def update_read_status(self, message_id: str, guild_id: str, read: bool, *, reader: str) -> bool:
        """
        既読/未読を設定（同じ値を再設定しても変化しない）

        Args:
            message_id: 元メッセージID
            guild_id: ギルドID
            read: True=既読, False=未読
            reader: 既読にしたユーザー名

        Returns:
            bool: 対象のリンクが存在した場合True
        """
        pass

    @abstractmethod
    async def update_read_status_from_reaction(
        self, message_id: str, guild_id: str, actor_username: str, read: bool
    ) -> bool:
        """
        チャンネルのリアクションによる既読/未読の設定
        投稿者本人のリアクションは既読として扱わない

        Returns:
            bool: 状態を設定した場合True
        """
        pass

    @abstractmethod
    async def delete_link(self, message_id: str, guild_id: str) -> bool:
        """
        リンクを削除

        Returns:
            bool: 削除対象が存在した場合True
        """
        pass

    @abstractmethod
    async def mark_deleted(self, message_id: str, guild_id: str) -> int:
        """元メッセージが削除されたリンクを論理削除"""
        pass

    @abstractmethod
    async def find_link_by_message_id(self, message_id: str, guild_id: str) -> Optional[Link]:
        pass

    @abstractmethod
    async def find_link_by_message_id_all_guilds(self, message_id: str) -> Optional[Link]:
        """ギルドを問わずメッセージIDでリンクを検索（一括既読用）"""
        pass

    @abstractmethod
    async def get_unread_links_for_user(self, username: str, guild_id: str, bot_id: str) -> List[Link]:
        """
        ギルド内でユーザーが未読の、他人が投稿したリンク一覧（新しい順）
        """
        pass

    @abstractmethod
    async def get_unread_links_for_user_all_guilds(
        self, username: str, guild_ids: Iterable[str], bot_id: str
    ) -> List[Link]:
        """
        指定した複数ギルドにまたがる未読リンク一覧（新しい順）
        """
        pass


class MappingStore(ABC):
    """ダイジェストDMのリアクション対応表"""

    @abstractmethod
    async def create_dm_mapping(
        self, dm_message_id: str, emoji: str, original_message_id: str, guild_id: str, user_id: str
    ) -> DMMapping:
        pass

    @abstractmethod
    async def create_bulk_dm_mapping(
        self, dm_message_id: str, message_ids: Sequence[str], user_id: str
    ) -> DMMapping:
        """一括既読（確認絵文字）用の対応を作成"""
        pass

    @abstractmethod
    async def find_dm_mapping(self, dm_message_id: str, emoji: str) -> Optional[DMMapping]:
        """
        DMメッセージIDと絵文字で対応を検索（期限切れは None）
        """
        pass

    @abstractmethod
    async def cleanup_expired_dm_mappings(self) -> int:
        """期限切れの対応を削除し、削除件数を返す"""
        pass


class SettingsStore(ABC):
    """監視チャンネルと機能フラグ"""

    @abstractmethod
    async def get_active_monitored_channels(self, guild_id: str) -> List[str]:
        pass

    @abstractmethod
    async def list_monitored_channels(self, guild_id: str) -> List[MonitoredChannel]:
        pass

    @abstractmethod
    async def set_monitored_channel(
        self, guild_id: str, channel_id: str, channel_name: str, is_active: bool
    ) -> None:
        pass

    @abstractmethod
    async def get_feature_flag_cached(self, key: str, default: bool = True) -> bool:
        pass

    @abstractmethod
    async def set_feature_flag(self, key: str, enabled: bool) -> None:
        pass

    @abstractmethod
    async def test_connection(self) -> dict:
        """ストアの疎通確認（/status 用）"""
        pass


class CacheService(ABC):
    """キー → 値 の補助キャッシュ（常に参考値として扱う）"""

    name = "cache"

    @abstractmethod
    async def get(self, key: str) -> Any:
        """値を取得（なければ None）"""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass
