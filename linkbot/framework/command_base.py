"""
linkbot/framework/command_base.py

統一されたコマンドフレームワーク
権限チェック、レート制限、エラーハンドリング、ログ出力を統一
"""

import discord
from discord import app_commands
import logging
from abc import ABC, abstractmethod
from typing import List

from linkbot.errors import BotError, PermissionError
from linkbot.handlers.command_handler import CommandDispatcher
from linkbot.utils import is_moderator

logger = logging.getLogger(__name__)


class PermissionLevel:
    """権限レベル定数"""
    PUBLIC = "public"          # 全員
    MODERATOR = "moderator"    # 管理者・メッセージ管理・モデレーターロール


class BaseCommand(ABC):
    """
    コマンドの基底クラス
    実行は必ず CommandDispatcher を通す（レート制限と返信の保証）
    """

    def __init__(self, dispatcher: CommandDispatcher):
        self.dispatcher = dispatcher
        self.permission_level = PermissionLevel.PUBLIC
        self.guild_only = False
        self.command_name = ""

    def set_permission(self, level: str) -> 'BaseCommand':
        """権限レベルを設定"""
        self.permission_level = level
        return self

    def check_permission(self, user: discord.abc.User) -> bool:
        """権限チェック"""
        if self.permission_level == PermissionLevel.PUBLIC:
            return True

        if self.permission_level == PermissionLevel.MODERATOR:
            return is_moderator(user)

        return False

    async def execute_with_framework(self, interaction: discord.Interaction, **kwargs):
        """
        フレームワークによる統一実行処理
        レート制限 → 権限チェック → 実行 → エラーハンドリング
        """
        logger.debug(f"/{self.command_name} args: {kwargs}")

        async def run(inter: discord.Interaction):
            if self.guild_only and inter.guild is None:
                raise BotError("このコマンドはサーバー内でのみ使用できます。")

            if not self.check_permission(inter.user):
                raise PermissionError("このコマンドを使用する権限がありません。")

            await self.execute_impl(inter, **kwargs)

        await self.dispatcher.handle_command(interaction, self.command_name, run)

    @abstractmethod
    async def execute_impl(self, interaction: discord.Interaction, **kwargs):
        """実際のコマンド処理（サブクラスで実装）"""
        pass

    @abstractmethod
    def setup_discord_command(self, tree: app_commands.CommandTree):
        """Discord APIにコマンドを登録（サブクラスで実装）"""
        pass


class CommandRegistry:
    """
    コマンド登録を管理するレジストリクラス
    """

    def __init__(self):
        self.commands: List[BaseCommand] = []

    def register(self, command: BaseCommand) -> 'CommandRegistry':
        """コマンドを登録"""
        self.commands.append(command)
        return self

    def setup_all(self, tree: app_commands.CommandTree):
        """すべてのコマンドをDiscordに登録"""
        for command in self.commands:
            command.setup_discord_command(tree)
        logger.debug(f"Registered {len(self.commands)} commands")
