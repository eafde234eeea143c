"""
linkbot/impl/sqlite_service.py

SQLiteデータベースを用いたデータベースサービスの実装
リンク・DM対応表・監視チャンネル・機能フラグを1つのDBで管理する
"""

import asyncio
import functools
import logging
import os
import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from linkbot.emoji import ACK_EMOJI
from linkbot.errors import DatabaseError
from linkbot.models import BulkTarget, DMMapping, Link, MonitoredChannel, SingleTarget
from linkbot.services import LinkStore, MappingStore, SettingsStore

logger = logging.getLogger(__name__)

# 機能フラグのプロセス内キャッシュ期間（秒）
FLAG_CACHE_TTL = 30


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return _now()


class SQLiteDatabaseService(LinkStore, MappingStore, SettingsStore):
    """SQLiteを使用したデータベースサービス実装"""

    def __init__(self, db_path: str = None, dm_mapping_ttl_hours: float = 24):
        """
        SQLite接続の初期化

        Args:
            db_path: データベースファイルのパス（Noneの場合は環境変数またはデフォルト値を使用）
            dm_mapping_ttl_hours: DM対応表の有効期間（時間）
        """
        self.dm_mapping_ttl = timedelta(hours=dm_mapping_ttl_hours)
        self._flag_cache: Dict[str, Tuple[bool, float]] = {}
        # 接続はエグゼキュータの複数スレッドから使われるためロックで直列化
        self._lock = threading.Lock()

        try:
            if db_path is None:
                db_path = os.getenv("DB_PATH", "db.sqlite3")

            db_dir = os.path.dirname(db_path)
            if db_dir and not os.path.exists(db_dir):
                os.makedirs(db_dir, exist_ok=True)
                logger.info(f"Created database directory: {db_dir}")

            self.db_path = db_path
            self.conn = sqlite3.connect(db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self._init_db()
            logger.info(f"SQLiteDatabaseService initialized with db: {db_path}")
        except sqlite3.Error as e:
            logger.error(f"Database initialization failed: {e}")
            raise DatabaseError(f"データベース接続に失敗しました: {e}")

    def _init_db(self):
        """必要なテーブルを作成"""
        self.conn.executescript("""
        CREATE TABLE IF NOT EXISTS links (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            message_id TEXT NOT NULL,
            guild_id TEXT NOT NULL,
            channel_id TEXT NOT NULL,
            channel_name TEXT DEFAULT '',
            url TEXT NOT NULL,
            author TEXT NOT NULL,
            author_id TEXT DEFAULT '',
            content TEXT DEFAULT '',
            posted_at TEXT NOT NULL,
            is_deleted INTEGER DEFAULT 0,
            UNIQUE(message_id, guild_id, url)
        );

        CREATE TABLE IF NOT EXISTS link_reads (
            message_id TEXT NOT NULL,
            guild_id TEXT NOT NULL,
            username TEXT NOT NULL,
            read_at TEXT NOT NULL,
            PRIMARY KEY (message_id, guild_id, username)
        );

        CREATE TABLE IF NOT EXISTS dm_mappings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            dm_message_id TEXT NOT NULL,
            emoji TEXT NOT NULL,
            original_message_id TEXT NOT NULL,
            guild_id TEXT,
            user_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            UNIQUE(dm_message_id, emoji)
        );

        CREATE TABLE IF NOT EXISTS monitored_channels (
            guild_id TEXT NOT NULL,
            channel_id TEXT NOT NULL,
            channel_name TEXT DEFAULT '',
            is_active INTEGER DEFAULT 1,
            PRIMARY KEY (guild_id, channel_id)
        );

        CREATE TABLE IF NOT EXISTS feature_flags (
            key TEXT PRIMARY KEY,
            value INTEGER NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_links_message_id ON links(message_id);
        CREATE INDEX IF NOT EXISTS idx_dm_mappings_expires_at ON dm_mappings(expires_at);
        """)
        self.conn.commit()
        logger.info("Database tables initialized")

    async def _run(self, func, *args, **kwargs):
        """同期のDB処理をエグゼキュータで実行し、sqliteのエラーを DatabaseError に変換"""
        call = functools.partial(func, *args, **kwargs)

        def locked():
            with self._lock:
                try:
                    return call()
                except sqlite3.Error as e:
                    self.conn.rollback()
                    raise DatabaseError(f"{func.__name__} failed: {e}") from e

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, locked)

    def close(self) -> None:
        with self._lock:
            self.conn.close()
        logger.info("Database connection closed")

    # ===== リンク =====

    def _row_to_link(self, row, read_by: Optional[Dict[str, datetime]] = None) -> Link:
        return Link(
            id=row["id"],
            message_id=row["message_id"],
            guild_id=row["guild_id"],
            channel_id=row["channel_id"],
            channel_name=row["channel_name"] or "",
            url=row["url"],
            author=row["author"],
            author_id=row["author_id"] or "",
            content=row["content"] or "",
            posted_at=_parse(row["posted_at"]),
            is_deleted=bool(row["is_deleted"]),
            read_by=read_by or {},
        )

    def _read_by(self, message_id: str, guild_id: str) -> Dict[str, datetime]:
        rows = self.conn.execute(
            "SELECT username, read_at FROM link_reads WHERE message_id = ? AND guild_id = ?",
            (message_id, guild_id),
        ).fetchall()
        return {row["username"]: _parse(row["read_at"]) for row in rows}

    def _store_link(self, link: Link) -> Optional[Link]:
        cur = self.conn.execute(
            """
            INSERT OR IGNORE INTO links
                (message_id, guild_id, channel_id, channel_name, url, author, author_id, content, posted_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                link.message_id,
                link.guild_id,
                link.channel_id,
                link.channel_name,
                link.url,
                link.author,
                link.author_id,
                link.content,
                _iso(link.posted_at),
            ),
        )
        self.conn.commit()
        if cur.rowcount == 0:
            logger.warning(f"Link already stored: {link.url} (message {link.message_id})")
            return None
        link.id = cur.lastrowid
        logger.info(f"Link stored: {link.url} by {link.author} in #{link.channel_name}")
        return link

    async def store_link(self, message, url: str, guild_id: str) -> Optional[Link]:
        return await self._run(self._store_link, Link.from_message(message, url, guild_id))

    def _link_exists(self, message_id: str, guild_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM links WHERE message_id = ? AND guild_id = ? LIMIT 1",
            (message_id, guild_id),
        ).fetchone()
        return row is not None

    def _set_read(self, message_id: str, guild_id: str, username: str, read: bool) -> None:
        if read:
            # 既読済みの場合は何もしない（既読日時も維持）
            self.conn.execute(
                "INSERT OR IGNORE INTO link_reads (message_id, guild_id, username, read_at) VALUES (?, ?, ?, ?)",
                (message_id, guild_id, username, _iso(_now())),
            )
        else:
            self.conn.execute(
                "DELETE FROM link_reads WHERE message_id = ? AND guild_id = ? AND username = ?",
                (message_id, guild_id, username),
            )
        self.conn.commit()

    def _update_read_status(self, message_id: str, guild_id: str, read: bool, reader: str) -> bool:
        if not self._link_exists(message_id, guild_id):
            logger.warning(f"No link found with message ID: {message_id} in guild: {guild_id}")
            return False
        self._set_read(message_id, guild_id, reader, read)
        logger.info(f"Marked message {message_id} as {'read' if read else 'unread'} for {reader}")
        return True

    async def update_read_status(self, message_id: str, guild_id: str, read: bool, *, reader: str) -> bool:
        return await self._run(self._update_read_status, str(message_id), str(guild_id), read, reader)

    def _update_read_status_from_reaction(
        self, message_id: str, guild_id: str, actor_username: str, read: bool
    ) -> bool:
        row = self.conn.execute(
            "SELECT author FROM links WHERE message_id = ? AND guild_id = ? LIMIT 1",
            (message_id, guild_id),
        ).fetchone()
        if row is None:
            logger.warning(f"No link found with message ID: {message_id} in guild: {guild_id}")
            return False
        if row["author"] == actor_username:
            logger.debug(f"Reactor {actor_username} is the original poster, skipping read status update")
            return False
        self._set_read(message_id, guild_id, actor_username, read)
        logger.info(f"Marked message {message_id} as {'read' if read else 'unread'} for {actor_username}")
        return True

    async def update_read_status_from_reaction(
        self, message_id: str, guild_id: str, actor_username: str, read: bool
    ) -> bool:
        return await self._run(
            self._update_read_status_from_reaction, str(message_id), str(guild_id), actor_username, read
        )

    def _delete_link(self, message_id: str, guild_id: str) -> bool:
        cur = self.conn.execute(
            "DELETE FROM links WHERE message_id = ? AND guild_id = ?", (message_id, guild_id)
        )
        self.conn.execute(
            "DELETE FROM link_reads WHERE message_id = ? AND guild_id = ?", (message_id, guild_id)
        )
        self.conn.commit()
        if cur.rowcount > 0:
            logger.info(f"Link deleted: message {message_id} in guild {guild_id}")
            return True
        logger.warning(f"No link found to delete: message {message_id} in guild {guild_id}")
        return False

    async def delete_link(self, message_id: str, guild_id: str) -> bool:
        return await self._run(self._delete_link, str(message_id), str(guild_id))

    def _mark_deleted(self, message_id: str, guild_id: str) -> int:
        cur = self.conn.execute(
            "UPDATE links SET is_deleted = 1 WHERE message_id = ? AND guild_id = ? AND is_deleted = 0",
            (message_id, guild_id),
        )
        self.conn.commit()
        return cur.rowcount

    async def mark_deleted(self, message_id: str, guild_id: str) -> int:
        return await self._run(self._mark_deleted, str(message_id), str(guild_id))

    def _find_link(self, message_id: str, guild_id: Optional[str]) -> Optional[Link]:
        if guild_id is None:
            row = self.conn.execute(
                "SELECT * FROM links WHERE message_id = ? ORDER BY id LIMIT 1", (message_id,)
            ).fetchone()
        else:
            row = self.conn.execute(
                "SELECT * FROM links WHERE message_id = ? AND guild_id = ? ORDER BY id LIMIT 1",
                (message_id, guild_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_link(row, self._read_by(row["message_id"], row["guild_id"]))

    async def find_link_by_message_id(self, message_id: str, guild_id: str) -> Optional[Link]:
        return await self._run(self._find_link, str(message_id), str(guild_id))

    async def find_link_by_message_id_all_guilds(self, message_id: str) -> Optional[Link]:
        return await self._run(self._find_link, str(message_id), None)

    def _unread_links(self, username: str, guild_ids: List[str], bot_id: str) -> List[Link]:
        if not guild_ids:
            return []
        placeholders = ", ".join("?" for _ in guild_ids)
        rows = self.conn.execute(
            f"""
            SELECT l.* FROM links l
            WHERE l.guild_id IN ({placeholders})
              AND l.is_deleted = 0
              AND l.author != ?
              AND l.author_id != ?
              AND NOT EXISTS (
                  SELECT 1 FROM link_reads r
                  WHERE r.message_id = l.message_id AND r.guild_id = l.guild_id AND r.username = ?
              )
            ORDER BY l.posted_at DESC, l.id DESC
            """,
            (*guild_ids, username, str(bot_id), username),
        ).fetchall()
        return [self._row_to_link(row) for row in rows]

    async def get_unread_links_for_user(self, username: str, guild_id: str, bot_id: str) -> List[Link]:
        links = await self._run(self._unread_links, username, [str(guild_id)], bot_id)
        logger.info(f"Found {len(links)} unread links for {username} in guild {guild_id}")
        return links

    async def get_unread_links_for_user_all_guilds(
        self, username: str, guild_ids: Iterable[str], bot_id: str
    ) -> List[Link]:
        guild_ids = [str(g) for g in guild_ids]
        links = await self._run(self._unread_links, username, guild_ids, bot_id)
        logger.info(f"Found {len(links)} unread links for {username} across {len(guild_ids)} guilds")
        return links

    # ===== DM対応表 =====

    def _insert_mapping(self, dm_message_id: str, emoji: str, target, user_id: str) -> DMMapping:
        created_at = _now()
        expires_at = created_at + self.dm_mapping_ttl
        original_message_id, guild_id = DMMapping.encode_target(target)
        cur = self.conn.execute(
            """
            INSERT OR REPLACE INTO dm_mappings
                (dm_message_id, emoji, original_message_id, guild_id, user_id, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (dm_message_id, emoji, original_message_id, guild_id, user_id, _iso(created_at), _iso(expires_at)),
        )
        self.conn.commit()
        logger.debug(f"DM mapping created: {dm_message_id} {emoji} -> {original_message_id}")
        return DMMapping(
            id=cur.lastrowid,
            dm_message_id=dm_message_id,
            emoji=emoji,
            target=target,
            user_id=user_id,
            created_at=created_at,
            expires_at=expires_at,
        )

    async def create_dm_mapping(
        self, dm_message_id: str, emoji: str, original_message_id: str, guild_id: str, user_id: str
    ) -> DMMapping:
        target = SingleTarget(message_id=str(original_message_id), guild_id=str(guild_id))
        return await self._run(self._insert_mapping, str(dm_message_id), emoji, target, str(user_id))

    async def create_bulk_dm_mapping(
        self, dm_message_id: str, message_ids: Sequence[str], user_id: str
    ) -> DMMapping:
        target = BulkTarget(tuple(str(i) for i in message_ids))
        return await self._run(self._insert_mapping, str(dm_message_id), ACK_EMOJI, target, str(user_id))

    def _find_dm_mapping(self, dm_message_id: str, emoji: str) -> Optional[DMMapping]:
        row = self.conn.execute(
            "SELECT * FROM dm_mappings WHERE dm_message_id = ? AND emoji = ?",
            (dm_message_id, emoji),
        ).fetchone()
        if row is None:
            return None
        mapping = DMMapping.from_row(row)
        if mapping.is_expired():
            logger.warning(f"DM mapping expired for {dm_message_id}-{emoji}")
            return None
        return mapping

    async def find_dm_mapping(self, dm_message_id: str, emoji: str) -> Optional[DMMapping]:
        return await self._run(self._find_dm_mapping, str(dm_message_id), emoji)

    def _cleanup_expired_dm_mappings(self) -> int:
        cur = self.conn.execute("DELETE FROM dm_mappings WHERE expires_at < ?", (_iso(_now()),))
        self.conn.commit()
        return cur.rowcount

    async def cleanup_expired_dm_mappings(self) -> int:
        return await self._run(self._cleanup_expired_dm_mappings)

    # ===== 監視チャンネル・機能フラグ =====

    def _active_channels(self, guild_id: str) -> List[str]:
        rows = self.conn.execute(
            "SELECT channel_id FROM monitored_channels WHERE guild_id = ? AND is_active = 1",
            (guild_id,),
        ).fetchall()
        return [row["channel_id"] for row in rows]

    async def get_active_monitored_channels(self, guild_id: str) -> List[str]:
        return await self._run(self._active_channels, str(guild_id))

    def _list_channels(self, guild_id: str) -> List[MonitoredChannel]:
        rows = self.conn.execute(
            "SELECT * FROM monitored_channels WHERE guild_id = ? ORDER BY channel_name",
            (guild_id,),
        ).fetchall()
        return [
            MonitoredChannel(
                guild_id=row["guild_id"],
                channel_id=row["channel_id"],
                channel_name=row["channel_name"] or "",
                is_active=bool(row["is_active"]),
            )
            for row in rows
        ]

    async def list_monitored_channels(self, guild_id: str) -> List[MonitoredChannel]:
        return await self._run(self._list_channels, str(guild_id))

    def _set_channel(self, guild_id: str, channel_id: str, channel_name: str, is_active: bool) -> None:
        self.conn.execute(
            """
            INSERT INTO monitored_channels (guild_id, channel_id, channel_name, is_active)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(guild_id, channel_id)
            DO UPDATE SET channel_name = excluded.channel_name, is_active = excluded.is_active
            """,
            (guild_id, channel_id, channel_name, int(is_active)),
        )
        self.conn.commit()
        logger.info(f"Monitored channel {'enabled' if is_active else 'disabled'}: #{channel_name} ({channel_id})")

    async def set_monitored_channel(
        self, guild_id: str, channel_id: str, channel_name: str, is_active: bool
    ) -> None:
        await self._run(self._set_channel, str(guild_id), str(channel_id), channel_name, is_active)

    def _get_flag(self, key: str) -> Optional[bool]:
        row = self.conn.execute("SELECT value FROM feature_flags WHERE key = ?", (key,)).fetchone()
        return None if row is None else bool(row["value"])

    async def get_feature_flag_cached(self, key: str, default: bool = True) -> bool:
        cached = self._flag_cache.get(key)
        if cached is not None and time.monotonic() < cached[1]:
            return cached[0]
        value = await self._run(self._get_flag, key)
        if value is None:
            value = default
        self._flag_cache[key] = (value, time.monotonic() + FLAG_CACHE_TTL)
        return value

    def invalidate_flag_cache(self, keys: Optional[Iterable[str]] = None) -> None:
        if keys is None:
            self._flag_cache.clear()
            return
        for key in keys:
            self._flag_cache.pop(key, None)

    def _set_flag(self, key: str, enabled: bool) -> None:
        self.conn.execute(
            """
            INSERT INTO feature_flags (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, int(enabled), _iso(_now())),
        )
        self.conn.commit()

    async def set_feature_flag(self, key: str, enabled: bool) -> None:
        await self._run(self._set_flag, key, enabled)
        self.invalidate_flag_cache([key])
        logger.info(f"Feature flag {key} set to {enabled}")

    def _counts(self) -> dict:
        links = self.conn.execute("SELECT COUNT(*) FROM links").fetchone()[0]
        mappings = self.conn.execute("SELECT COUNT(*) FROM dm_mappings").fetchone()[0]
        return {"links": links, "dm_mappings": mappings}

    async def test_connection(self) -> dict:
        started = time.monotonic()
        try:
            counts = await self._run(self._counts)
        except DatabaseError as e:
            logger.error(f"Database connection test failed: {e}")
            return {"success": False, "error": str(e)}
        return {
            "success": True,
            "response_time_ms": int((time.monotonic() - started) * 1000),
            **counts,
        }
