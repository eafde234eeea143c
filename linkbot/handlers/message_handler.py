"""
linkbot/handlers/message_handler.py

受信メッセージから URL を抽出して保存するハンドラ
"""

import logging

import discord

from linkbot.channel_authority import ChannelAuthority
from linkbot.emoji import ACK_EMOJI
from linkbot.services import LinkStore, SettingsStore
from linkbot.utils import extract_urls

logger = logging.getLogger(__name__)

TRACKER_FLAG = "LINK_TRACKER_ENABLED"


class MessageIngestor:
    """メッセージ中のリンクを収集する"""

    def __init__(self, links: LinkStore, settings: SettingsStore, authority: ChannelAuthority):
        self.links = links
        self.settings = settings
        self.authority = authority

    async def _tracker_enabled(self) -> bool:
        try:
            return await self.settings.get_feature_flag_cached(TRACKER_FLAG, True)
        except Exception as e:
            logger.warning(f"Could not read {TRACKER_FLAG}, assuming enabled: {e}")
            return True

    async def handle(self, message: discord.Message) -> int:
        """
        メッセージを処理する

        Returns:
            int: 保存に成功したリンク数
        """
        if message.author.bot:
            return 0

        if message.guild is None:
            logger.debug(f"Message {message.id} has no guild context, skipping")
            return 0
        guild_id = str(message.guild.id)

        if not await self._tracker_enabled():
            logger.debug("Link tracking disabled, ignoring message")
            return 0

        if not await self.authority.is_monitored(guild_id, message.channel.id):
            return 0

        urls = extract_urls(message.content)
        if not urls:
            return 0

        logger.info(f"Found {len(urls)} link(s) in message {message.id} from {message.author.name}")

        stored = 0
        for url in urls:
            try:
                if await self.links.store_link(message, url, guild_id):
                    stored += 1
            except Exception as e:
                logger.error(f"Failed to store link {url}: {e}")

        try:
            await message.add_reaction(ACK_EMOJI)
        except discord.HTTPException as e:
            logger.error(f"Failed to add acknowledgment reaction to {message.id}: {e}")

        return stored

    async def handle_message_delete(self, payload: discord.RawMessageDeleteEvent) -> None:
        """元メッセージの削除をリンクに反映する"""
        if payload.guild_id is None:
            return
        try:
            count = await self.links.mark_deleted(str(payload.message_id), str(payload.guild_id))
        except Exception as e:
            logger.error(f"Failed to mark links of deleted message {payload.message_id}: {e}")
            return
        if count:
            logger.info(f"Marked {count} link(s) of deleted message {payload.message_id} as deleted")
