"""
linkbot/commands/admin_commands.py

モデレーター専用コマンドの実装
監視チャンネルの設定、リンク収集の切替、レート制限のリセット、状態確認を提供
"""

import discord
from discord import app_commands
import logging
from typing import Optional

from linkbot.channel_authority import ChannelAuthority
from linkbot.errors import BotError
from linkbot.framework.command_base import BaseCommand, PermissionLevel, CommandRegistry
from linkbot.handlers.command_handler import CommandDispatcher
from linkbot.handlers.message_handler import TRACKER_FLAG
from linkbot.services import CacheService, SettingsStore

logger = logging.getLogger(__name__)


class MonitorCommand(BaseCommand):
    """
    監視チャンネルを追加・削除・一覧表示するコマンド
    """

    def __init__(self, dispatcher: CommandDispatcher, settings: SettingsStore, authority: ChannelAuthority):
        super().__init__(dispatcher)
        self.settings = settings
        self.authority = authority
        self.command_name = "monitor"
        self.guild_only = True
        self.set_permission(PermissionLevel.MODERATOR)

    async def execute_impl(
        self,
        interaction: discord.Interaction,
        action: str,
        channel: Optional[discord.TextChannel] = None,
    ):
        """
        Args:
            interaction: Discordインタラクション
            action: add / remove / list
            channel: 対象チャンネル（未指定時は実行したチャンネル）
        """
        guild_id = str(interaction.guild.id)

        if action == "list":
            channels = await self.settings.list_monitored_channels(guild_id)
            active = [c for c in channels if c.is_active]
            if not active:
                await interaction.response.send_message("📂 監視中のチャンネルはありません。", ephemeral=True)
                return
            lines = "\n".join(f"- <#{c.channel_id}>" for c in active)
            await interaction.response.send_message(f"📂 監視中のチャンネル:\n{lines}", ephemeral=True)
            return

        if action not in ("add", "remove"):
            raise BotError(f"不明な操作です: {action}")

        target = channel or interaction.channel
        is_active = action == "add"
        await self.settings.set_monitored_channel(
            guild_id, str(target.id), getattr(target, "name", "") or "", is_active
        )
        await self.authority.invalidate(guild_id)

        logger.info(f"Channel #{target} {'added to' if is_active else 'removed from'} monitoring by {interaction.user}")
        if is_active:
            message = f"✅ <#{target.id}> を監視対象に追加しました。"
        else:
            message = f"✅ <#{target.id}> を監視対象から外しました。"
        await interaction.response.send_message(message, ephemeral=True)

    def setup_discord_command(self, tree: app_commands.CommandTree):
        """Discord APIにコマンドを登録"""
        @tree.command(name="monitor", description="リンクを収集するチャンネルを設定します（モデレーターのみ）")
        @app_commands.describe(action="操作", channel="対象チャンネル（指定しない場合はこのチャンネル）")
        @app_commands.choices(action=[
            app_commands.Choice(name="追加", value="add"),
            app_commands.Choice(name="削除", value="remove"),
            app_commands.Choice(name="一覧", value="list"),
        ])
        @app_commands.guild_only()
        async def monitor(
            interaction: discord.Interaction,
            action: app_commands.Choice[str],
            channel: Optional[discord.TextChannel] = None,
        ):
            await self.execute_with_framework(interaction, action=action.value, channel=channel)


class TrackingCommand(BaseCommand):
    """
    リンク収集の有効/無効を切り替えるコマンド
    """

    def __init__(self, dispatcher: CommandDispatcher, settings: SettingsStore):
        super().__init__(dispatcher)
        self.settings = settings
        self.command_name = "tracking"
        self.set_permission(PermissionLevel.MODERATOR)

    async def execute_impl(self, interaction: discord.Interaction, enabled: bool):
        await self.settings.set_feature_flag(TRACKER_FLAG, enabled)
        state = "有効" if enabled else "無効"
        await interaction.response.send_message(f"✅ リンク収集を{state}にしました。", ephemeral=True)

    def setup_discord_command(self, tree: app_commands.CommandTree):
        """Discord APIにコマンドを登録"""
        @tree.command(name="tracking", description="リンク収集の有効/無効を切り替えます（モデレーターのみ）")
        @app_commands.describe(enabled="有効にする場合は True")
        async def tracking(interaction: discord.Interaction, enabled: bool):
            await self.execute_with_framework(interaction, enabled=enabled)


class RateLimitResetCommand(BaseCommand):
    """
    メンバーのレート制限をリセットするコマンド
    """

    def __init__(self, dispatcher: CommandDispatcher):
        super().__init__(dispatcher)
        self.command_name = "ratelimit_reset"
        self.set_permission(PermissionLevel.MODERATOR)

    async def execute_impl(self, interaction: discord.Interaction, user: discord.Member, command: Optional[str] = None):
        count = self.dispatcher.reset_rate_limit(user.id, command)
        scope = f"/{command}" if command else "すべてのコマンド"
        logger.info(f"Rate limits reset for {user} ({scope}, {count} windows) by {interaction.user}")
        await interaction.response.send_message(
            f"✅ {user.display_name} の {scope} のレート制限をリセットしました。", ephemeral=True
        )

    def setup_discord_command(self, tree: app_commands.CommandTree):
        """Discord APIにコマンドを登録"""
        @tree.command(name="ratelimit_reset", description="メンバーのレート制限をリセットします（モデレーターのみ）")
        @app_commands.describe(user="対象のメンバー", command="対象コマンド名（指定しない場合はすべて）")
        async def ratelimit_reset(interaction: discord.Interaction, user: discord.Member, command: Optional[str] = None):
            await self.execute_with_framework(interaction, user=user, command=command)


class StatusCommand(BaseCommand):
    """
    ストア・キャッシュ・監視チャンネル・レート制限の状態を表示するコマンド
    """

    def __init__(
        self,
        dispatcher: CommandDispatcher,
        settings: SettingsStore,
        authority: ChannelAuthority,
        cache: CacheService,
    ):
        super().__init__(dispatcher)
        self.settings = settings
        self.authority = authority
        self.cache = cache
        self.command_name = "status"
        self.set_permission(PermissionLevel.MODERATOR)

    async def execute_impl(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)

        health = await self.settings.test_connection()
        if health.get("success"):
            store_text = (
                f"✅ 接続OK（{health['response_time_ms']}ms）\n"
                f"リンク {health['links']} 件 / DM対応 {health['dm_mappings']} 件"
            )
        else:
            store_text = f"❌ 接続失敗: {health.get('error', '不明')}"

        tracking = await self.settings.get_feature_flag_cached(TRACKER_FLAG, True)

        embed = discord.Embed(title="📊 Bot の状態", color=0x00AE86)
        embed.add_field(name="データベース", value=store_text, inline=False)
        embed.add_field(name="キャッシュ", value=self.cache.name, inline=True)
        embed.add_field(name="リンク収集", value="有効" if tracking else "無効", inline=True)

        if interaction.guild is not None:
            channels = await self.authority.get_monitored_channels(interaction.guild.id)
            channel_text = " ".join(f"<#{c}>" for c in channels) or "なし"
            embed.add_field(name="監視チャンネル", value=channel_text[:1024], inline=False)

        stats = self.dispatcher.get_rate_limit_stats()
        if stats["enabled"]:
            limit_text = (
                f"{stats['max_requests']}回 / {stats['window_seconds']}秒\n"
                f"アクティブ {stats['active_users']} 件（合計 {stats['total_requests']} 回）"
            )
        else:
            limit_text = "無効"
        embed.add_field(name="レート制限", value=limit_text, inline=False)

        await interaction.followup.send(embed=embed, ephemeral=True)

    def setup_discord_command(self, tree: app_commands.CommandTree):
        """Discord APIにコマンドを登録"""
        @tree.command(name="status", description="Bot の状態を表示します（モデレーターのみ）")
        async def status(interaction: discord.Interaction):
            await self.execute_with_framework(interaction)


def setup_admin_commands(
    registry: CommandRegistry,
    dispatcher: CommandDispatcher,
    settings: SettingsStore,
    authority: ChannelAuthority,
    cache: CacheService,
):
    """
    モデレーターコマンドをコマンドレジストリに登録
    """
    registry.register(MonitorCommand(dispatcher, settings, authority))
    registry.register(TrackingCommand(dispatcher, settings))
    registry.register(RateLimitResetCommand(dispatcher))
    registry.register(StatusCommand(dispatcher, settings, authority, cache))

    logger.debug("Admin commands registered to framework")
