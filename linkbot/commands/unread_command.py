"""
linkbot/commands/unread_command.py

未読リンクのダイジェストをDMで送るコマンド
"""

import discord
from discord import app_commands
import logging

from linkbot.framework.command_base import BaseCommand, CommandRegistry
from linkbot.handlers.command_handler import CommandDispatcher

logger = logging.getLogger(__name__)


class UnreadCommand(BaseCommand):
    """
    /unread
    サーバー内ではそのサーバーの、DMでは共通の全サーバーの未読リンクを送る
    """

    def __init__(self, dispatcher: CommandDispatcher):
        super().__init__(dispatcher)
        self.command_name = "unread"

    async def execute_impl(self, interaction: discord.Interaction):
        await self.dispatcher.handle_unread_command(interaction)

    def setup_discord_command(self, tree: app_commands.CommandTree):
        """Discord APIにコマンドを登録"""
        @tree.command(name="unread", description="他のメンバーが共有した未読リンクをDMで受け取ります")
        async def unread(interaction: discord.Interaction):
            await self.execute_with_framework(interaction)


def setup_unread_command(registry: CommandRegistry, dispatcher: CommandDispatcher):
    """
    未読コマンドをコマンドレジストリに登録

    Args:
        registry: コマンドレジストリインスタンス
        dispatcher: コマンドディスパッチャ
    """
    registry.register(UnreadCommand(dispatcher))
    logger.debug("Unread command registered to framework")
