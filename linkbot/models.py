"""
linkbot/models.py

データモデルを定義するモジュール。
SQLiteのデータ構造をPythonのデータクラスとしてマッピング。
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union


def _parse_timestamp(value) -> Optional[datetime]:
    """ISO形式の文字列をdatetimeに変換（変換できない場合はNone）"""
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


@dataclass
class Link:
    """
    メッセージから検出した1件のURL
    linksテーブルに対応
    """
    message_id: str
    guild_id: str
    channel_id: str
    url: str
    author: str
    posted_at: datetime
    channel_name: str = ""
    author_id: str = ""
    content: str = ""
    is_deleted: bool = False
    id: Optional[int] = None
    read_by: Dict[str, datetime] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message, url: str, guild_id: str) -> "Link":
        """Discordメッセージから保存用のLinkを組み立てる"""
        posted_at = getattr(message, "created_at", None) or datetime.now(timezone.utc)
        return cls(
            message_id=str(message.id),
            guild_id=str(guild_id),
            channel_id=str(message.channel.id),
            channel_name=getattr(message.channel, "name", "") or "",
            url=url,
            author=message.author.name,
            author_id=str(message.author.id),
            content=message.content or "",
            posted_at=posted_at,
        )

    @property
    def jump_url(self) -> str:
        """元メッセージへのリンク"""
        return f"https://discord.com/channels/{self.guild_id}/{self.channel_id}/{self.message_id}"


@dataclass(frozen=True)
class SingleTarget:
    """番号絵文字 1つ → 元メッセージ 1件"""
    message_id: str
    guild_id: str


@dataclass(frozen=True)
class BulkTarget:
    """一括既読用 → 元メッセージ ID の順序付きリスト（ギルドは解決時に引く）"""
    message_ids: Tuple[str, ...]


MappingTarget = Union[SingleTarget, BulkTarget]


@dataclass
class DMMapping:
    """
    ダイジェストDMのリアクションと元メッセージの対応
    dm_mappingsテーブルに対応
    """
    dm_message_id: str
    emoji: str
    target: MappingTarget
    user_id: str
    created_at: datetime
    expires_at: datetime
    id: Optional[int] = None

    @property
    def is_bulk(self) -> bool:
        return isinstance(self.target, BulkTarget)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now

    @staticmethod
    def encode_target(target: MappingTarget) -> Tuple[str, Optional[str]]:
        """
        保存用の (original_message_id, guild_id) に変換

        一括の場合は JSON 配列文字列と NULL のギルドになる
        """
        if isinstance(target, BulkTarget):
            return json.dumps(list(target.message_ids)), None
        return target.message_id, target.guild_id

    @classmethod
    def from_row(cls, row) -> "DMMapping":
        """
        DB の行から DMMapping を復元する
        original_message_id の形はここで一度だけ判定する
        """
        raw_id = row["original_message_id"]
        guild_id = row["guild_id"]
        if guild_id is None:
            ids = json.loads(raw_id)
            if not isinstance(ids, list):
                raise ValueError(f"bulk mapping payload is not a list: {raw_id!r}")
            target: MappingTarget = BulkTarget(tuple(str(i) for i in ids))
        else:
            target = SingleTarget(message_id=str(raw_id), guild_id=str(guild_id))

        return cls(
            id=row["id"],
            dm_message_id=row["dm_message_id"],
            emoji=row["emoji"],
            target=target,
            user_id=row["user_id"],
            created_at=_parse_timestamp(row["created_at"]),
            expires_at=_parse_timestamp(row["expires_at"]),
        )


@dataclass
class MonitoredChannel:
    """
    リンク収集・リアクション対象のチャンネル
    monitored_channelsテーブルに対応
    """
    guild_id: str
    channel_id: str
    channel_name: str = ""
    is_active: bool = True


@dataclass
class RateWindow:
    """(ユーザー, コマンド) ごとの固定ウィンドウ"""
    count: int
    reset_at: float


@dataclass
class RateLimitResult:
    """
    レート制限チェックの結果
    remaining が None の場合は無制限（制限無効モード）
    """
    allowed: bool
    remaining: Optional[int]
    reset_time: float
    retry_after: int

    @property
    def is_unlimited(self) -> bool:
        return self.remaining is None
