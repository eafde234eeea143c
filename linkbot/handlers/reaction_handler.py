"""
linkbot/handlers/reaction_handler.py

リアクションイベントを既読状態の更新・ダイジェストDMの解決・削除処理に振り分けるハンドラ

- サーバー内のメッセージ: 監視チャンネルのみ対象
  - ✅ の追加/削除で、リアクションしたユーザーの既読/未読を切り替える
  - ❌ / 🗑️ の追加で、権限があればリンクと元メッセージを削除する
- DM（ダイジェスト）: DM対応表を引いて元メッセージの既読/未読を切り替える
  - 番号絵文字は1件、✅ は一覧全件
"""

import logging
from typing import Optional

import discord

from linkbot.channel_authority import ChannelAuthority
from linkbot.emoji import ACK_EMOJI, is_delete_emoji
from linkbot.errors import BotError
from linkbot.logging_config import log_success
from linkbot.models import BulkTarget
from linkbot.services import LinkStore, MappingStore
from linkbot.utils import is_moderator

logger = logging.getLogger(__name__)


class ReactionEngine:
    """リアクションからリンクの状態を更新する"""

    def __init__(
        self,
        client: discord.Client,
        links: LinkStore,
        mappings: MappingStore,
        authority: ChannelAuthority,
    ):
        self.client = client
        self.links = links
        self.mappings = mappings
        self.authority = authority

    async def handle_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        await self._handle_safely(payload, added=True)

    async def handle_reaction_remove(self, payload: discord.RawReactionActionEvent) -> None:
        await self._handle_safely(payload, added=False)

    async def _handle_safely(self, payload: discord.RawReactionActionEvent, added: bool) -> None:
        # 1件の不正なイベントでリスナーを止めない
        try:
            await self._handle(payload, added)
        except Exception:
            logger.exception(
                f"Error handling reaction {'add' if added else 'remove'} "
                f"on message {payload.message_id} by user {payload.user_id}"
            )

    # ===== 取得 =====

    async def _resolve_channel(self, channel_id: int):
        channel = self.client.get_channel(channel_id)
        if channel is None:
            channel = await self.client.fetch_channel(channel_id)
        return channel

    async def _resolve_message(self, channel, message_id: int) -> discord.Message:
        message = discord.utils.get(self.client.cached_messages, id=message_id)
        if message is None:
            message = await channel.fetch_message(message_id)
        return message

    async def _resolve_user(self, payload: discord.RawReactionActionEvent):
        if payload.member is not None:
            return payload.member
        user = self.client.get_user(payload.user_id)
        if user is None:
            user = await self.client.fetch_user(payload.user_id)
        return user

    async def _handle(self, payload: discord.RawReactionActionEvent, added: bool) -> None:
        me = self.client.user
        if me is not None and payload.user_id == me.id:
            return

        emoji = str(payload.emoji)

        try:
            channel = await self._resolve_channel(payload.channel_id)
            message = await self._resolve_message(channel, payload.message_id)
            user = await self._resolve_user(payload)
        except discord.HTTPException as e:
            logger.warning(f"Could not fetch reaction context for message {payload.message_id}: {e}")
            return

        if user.bot:
            return

        logger.debug(
            f"Reaction {'added' if added else 'removed'}: {emoji} by {user.name} on message {message.id}"
        )

        if payload.guild_id is None:
            await self._handle_dm_reaction(payload, emoji, user, added)
        else:
            await self._handle_channel_reaction(payload, emoji, message, user, added)

    # ===== サーバー内 =====

    async def _handle_channel_reaction(self, payload, emoji: str, message, user, added: bool) -> None:
        guild_id = str(payload.guild_id)

        if not await self.authority.is_monitored(guild_id, payload.channel_id):
            logger.debug(f"Channel {payload.channel_id} is not monitored, ignoring reaction")
            return

        if is_delete_emoji(emoji):
            # 削除は追加時のみ（取り消しでは何もしない）
            if added:
                await self._handle_admin_deletion(payload, message, user)
            return

        if emoji != ACK_EMOJI:
            return

        # 同じ値でも必ず呼ぶ（冪等性はストア側で担保）
        await self.links.update_read_status_from_reaction(str(message.id), guild_id, user.name, added)

    async def _resolve_member(self, guild: discord.Guild, payload, user) -> Optional[discord.Member]:
        if payload.member is not None:
            return payload.member
        member = guild.get_member(user.id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user.id)
        except discord.HTTPException as e:
            logger.warning(f"Could not fetch member {user.id} in guild {guild.id}: {e}")
            return None

    async def _handle_admin_deletion(self, payload, message: discord.Message, user) -> None:
        """
        ❌ / 🗑️ によるリンクと元メッセージの削除

        管理者・メッセージ管理権限・モデレーターロールの保持者、または投稿者本人のみ実行できる。
        ストアの削除とメッセージの削除は互いに独立して行う。
        """
        guild = message.guild
        if guild is None:
            raise BotError("削除はサーバー内のメッセージでのみ実行できます。")

        is_author = message.author.id == user.id
        member = await self._resolve_member(guild, payload, user)
        is_mod = member is not None and is_moderator(member)

        if not (is_author or is_mod):
            logger.info(f"User {user.name} is not allowed to delete message {message.id}")
            return

        logger.info(
            f"Deleting message {message.id} requested by {user.name} "
            f"({'author' if is_author else 'moderator'})"
        )

        try:
            await self.links.delete_link(str(message.id), str(guild.id))
        except Exception as e:
            logger.error(f"Failed to delete link record for message {message.id}: {e}")

        try:
            await message.delete()
        except discord.HTTPException as e:
            logger.error(f"Failed to delete message {message.id}: {e}")
            return

        log_success(logger, f"Message {message.id} deleted by {user.name}")

    # ===== DM（ダイジェスト） =====

    async def _handle_dm_reaction(self, payload, emoji: str, user, added: bool) -> None:
        mapping = await self.mappings.find_dm_mapping(str(payload.message_id), emoji)
        if mapping is None:
            logger.warning(f"No DM mapping found for message {payload.message_id} with emoji {emoji}")
            return

        target = mapping.target

        if mapping.is_bulk:
            if emoji != ACK_EMOJI:
                logger.warning(f"Bulk mapping on {payload.message_id} matched non-bulk emoji {emoji}, ignoring")
                return
            await self._bulk_toggle(target, user.name, added)
            return

        if emoji == ACK_EMOJI:
            logger.warning(f"Single mapping on {payload.message_id} matched bulk emoji, ignoring")
            return
        await self.links.update_read_status(target.message_id, target.guild_id, added, reader=user.name)
        logger.info(
            f"Marked message {target.message_id} as {'read' if added else 'unread'} "
            f"for {user.name} via DM"
        )

    async def _bulk_toggle(self, target: BulkTarget, username: str, read: bool) -> int:
        """一覧の全メッセージを既読/未読にし、成功件数を返す"""
        total = len(target.message_ids)
        succeeded = 0

        for message_id in target.message_ids:
            try:
                # 一覧は複数ギルドにまたがるため、ギルドは1件ずつ引く
                link = await self.links.find_link_by_message_id_all_guilds(message_id)
                if link is None:
                    logger.warning(f"No link found for message {message_id} during bulk update")
                    continue
                if await self.links.update_read_status(message_id, link.guild_id, read, reader=username):
                    succeeded += 1
            except Exception as e:
                logger.error(f"Failed to update message {message_id} during bulk update: {e}")

        state = "read" if read else "unread"
        if succeeded == total:
            log_success(logger, f"Marked {succeeded}/{total} messages as {state} for {username}")
        else:
            logger.warning(f"Marked {succeeded}/{total} messages as {state} for {username}")
        return succeeded
