"""
linkbot/handlers/command_handler.py

スラッシュコマンドの実行をレート制限付きで包むディスパッチャと、
未読リンクのダイジェストDMの生成
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import discord
import pytz

from linkbot.emoji import ACK_EMOJI, MAX_DIGEST_ITEMS, symbol_for_index
from linkbot.errors import DMDeliveryError, handle_bot_error, reply_ephemeral
from linkbot.models import Link, RateLimitResult
from linkbot.rate_limiter import RateLimiter, format_retry_time
from linkbot.services import LinkStore, MappingStore

logger = logging.getLogger(__name__)

CommandFn = Callable[[discord.Interaction], Awaitable[None]]

DIGEST_COLOR = 0x00AE86

# Discord の埋め込みの上限
EMBED_CHAR_LIMIT = 6000
FIELD_VALUE_LIMIT = 1024

# ダイジェストの1項目あたりの見出しと URL の長さ
FIELD_NAME_LIMIT = 80
MIN_URL_CHARS = 16


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


class CommandDispatcher:
    """コマンド実行の共通処理とダイジェスト生成"""

    def __init__(
        self,
        client: discord.Client,
        links: LinkStore,
        mappings: MappingStore,
        rate_limiter: RateLimiter,
        display_timezone: str = "Asia/Tokyo",
    ):
        self.client = client
        self.links = links
        self.mappings = mappings
        self.rate_limiter = rate_limiter
        self.display_tz = pytz.timezone(display_timezone)

    async def handle_command(self, interaction: discord.Interaction, command_name: str, command_fn: CommandFn) -> bool:
        """
        レート制限を確認してからコマンドを実行する

        制限中は理由を返信して command_fn を呼ばない。
        command_fn の例外はすべてここで捕捉し、エラー返信に変換する。

        Returns:
            bool: command_fn が正常に完了した場合True
        """
        user = interaction.user
        result = self.rate_limiter.check_limit(user.id, command_name)
        if not result.allowed:
            logger.warning(f"Rate limit exceeded for user {user.name} ({user.id}) on command {command_name}")
            try:
                await reply_ephemeral(
                    interaction,
                    f"⏰ **レート制限中です**\n\n"
                    f"このコマンドの実行回数が上限に達しました。**{format_retry_time(result.retry_after)}**後に再度お試しください。\n\n"
                    f"*このコマンドは{self.rate_limiter.window_seconds}秒間に"
                    f"{self.rate_limiter.max_requests}回まで使用できます。*",
                )
            except discord.HTTPException as e:
                logger.error(f"Failed to send rate limit notice: {e}")
            return False

        remaining = "unlimited" if result.is_unlimited else f"{result.remaining} remaining"
        logger.info(f"/{command_name} invoked by {user} ({remaining})")
        try:
            await command_fn(interaction)
        except Exception as e:
            await handle_bot_error(e, interaction, f"/{command_name} failed")
            return False

        logger.info(f"/{command_name} completed for {user}")
        return True

    # ===== ダイジェスト =====

    async def _shared_guilds(self, user) -> List[Tuple[discord.Guild, discord.Member]]:
        """Bot とユーザーが共に参加しているギルドとメンバーの一覧"""
        shared = []
        for guild in self.client.guilds:
            member = guild.get_member(user.id)
            if member is None:
                try:
                    member = await guild.fetch_member(user.id)
                except discord.NotFound:
                    continue
                except discord.HTTPException as e:
                    logger.warning(f"Could not check membership in guild {guild.id}: {e}")
                    continue
            shared.append((guild, member))
        return shared

    @staticmethod
    def _filter_visible(
        links: Sequence[Link], members: Dict[str, Tuple[discord.Guild, discord.Member]]
    ) -> List[Link]:
        """ユーザーが閲覧できるチャンネルのリンクのみ残す"""
        visible = []
        for link in links:
            entry = members.get(str(link.guild_id))
            if entry is None:
                continue
            guild, member = entry
            if member is None:
                continue
            channel = guild.get_channel_or_thread(int(link.channel_id))
            if channel is None:
                continue
            if channel.permissions_for(member).view_channel:
                visible.append(link)
        return visible

    def _format_date(self, link: Link) -> str:
        if link.posted_at is None:
            return "不明"
        posted_at = link.posted_at
        if posted_at.tzinfo is None:
            posted_at = pytz.utc.localize(posted_at)
        return posted_at.astimezone(self.display_tz).strftime("%Y-%m-%d %H:%M")

    def build_digest_embed(
        self, links: Sequence[Link], total: int, guild_names: Optional[Dict[str, str]] = None
    ) -> discord.Embed:
        """
        ダイジェストDMの埋め込みを作成

        埋め込み全体が EMBED_CHAR_LIMIT に収まるよう、
        各フィールドに同じ文字数の枠を割り当て、URL を枠に合わせて省略する。

        Args:
            links: 表示するリンク（最大25件）
            total: 未読の総数
            guild_names: ギルドID → 名前（複数サーバー表示の場合のみ）
        """
        title = "📚 未読リンク（全サーバー）" if guild_names is not None else "📚 未読リンク"
        description = (
            f"他のメンバーが共有した未読リンクが {total} 件あります。\n\n"
            f"**番号にリアクションで既読、外すと未読に戻ります。{ACK_EMOJI} で全件既読になります。**"
        )
        footer = None
        if total > len(links):
            footer = f"未読 {total} 件のうち最初の {len(links)} 件を表示しています"

        embed = discord.Embed(title=title, description=description, color=DIGEST_COLOR)
        if footer is not None:
            embed.set_footer(text=footer)

        if not links:
            return embed

        per_field = min(
            FIELD_VALUE_LIMIT,
            (EMBED_CHAR_LIMIT - len(title) - len(description) - len(footer or "")) // len(links),
        )

        for index, link in enumerate(links):
            location = f"#{link.channel_name or 'unknown'}"
            if guild_names is not None:
                location += f" ({guild_names.get(str(link.guild_id), '不明なサーバー')})"
            name = _truncate(f"{symbol_for_index(index)} {link.author} / {location}", FIELD_NAME_LIMIT)

            jump = f"[メッセージへ移動]({link.jump_url})"
            posted = f"*投稿: {self._format_date(link)}*"
            room = per_field - len(name) - len(jump) - len(posted) - 2
            if room >= MIN_URL_CHARS:
                value = f"{jump}\n{_truncate(link.url, room)}\n{posted}"
            else:
                value = f"{jump}\n{posted}"

            embed.add_field(name=name, value=value, inline=False)

        return embed

    async def _create_mappings(self, dm_message: discord.Message, links: Sequence[Link], user_id) -> None:
        """番号ごとの対応と、全件既読用の対応を作成"""
        dm_id = str(dm_message.id)
        for index, link in enumerate(links):
            await self.mappings.create_dm_mapping(
                dm_id, symbol_for_index(index), link.message_id, link.guild_id, str(user_id)
            )
        await self.mappings.create_bulk_dm_mapping(dm_id, [link.message_id for link in links], str(user_id))
        logger.debug(f"Created {len(links)} DM mappings plus bulk mapping for DM {dm_id}")

    async def _add_reactions(self, dm_message: discord.Message, count: int) -> None:
        for symbol in [symbol_for_index(i) for i in range(count)] + [ACK_EMOJI]:
            try:
                await dm_message.add_reaction(symbol)
            except discord.HTTPException as e:
                logger.error(f"Failed to add reaction {symbol} to DM {dm_message.id}: {e}")

    async def handle_unread_command(self, interaction: discord.Interaction) -> None:
        """
        /unread の本体

        サーバー内で実行した場合はそのサーバーの、DMで実行した場合は
        Bot と共通の全サーバーの未読リンクをDMで送る。
        """
        await interaction.response.defer(ephemeral=True, thinking=True)

        user = interaction.user
        bot_id = str(self.client.user.id)
        guild_names: Optional[Dict[str, str]] = None

        if interaction.guild is not None:
            guild = interaction.guild
            member = user if isinstance(user, discord.Member) else guild.get_member(user.id)
            members = {str(guild.id): (guild, member)}
            links = await self.links.get_unread_links_for_user(user.name, str(guild.id), bot_id)
        else:
            logger.info(f"/unread used in DM by {user.name}, collecting links from shared guilds")
            shared = await self._shared_guilds(user)
            members = {str(guild.id): (guild, member) for guild, member in shared}
            guild_names = {str(guild.id): guild.name for guild, _ in shared}
            links = await self.links.get_unread_links_for_user_all_guilds(user.name, list(members), bot_id)

        links = self._filter_visible(links, members)

        if not links:
            await reply_ephemeral(interaction, "🎉 未読のリンクはありません！")
            return

        total = len(links)
        shown = links[:MAX_DIGEST_ITEMS]
        embed = self.build_digest_embed(shown, total, guild_names)

        try:
            dm_channel = await user.create_dm()
            dm_message = await dm_channel.send(embed=embed)
        except discord.Forbidden as e:
            logger.warning(f"Digest DM to {user.name} was refused: {e}")
            raise DMDeliveryError("DMを送信できませんでした。プライバシー設定を確認してください。") from e

        # リアクションより先に対応表を作る（直後のリアクションも解決できるように）
        try:
            await self._create_mappings(dm_message, shown, user.id)
        except Exception as e:
            # DMは届いているので、失敗を伝えてリアクションは付けない
            logger.error(f"Failed to create DM mappings for DM {dm_message.id}: {e}", exc_info=e)
            await reply_ephemeral(
                interaction,
                "⚠️ 未読リンクをDMで送信しましたが、リアクション操作を準備できませんでした。"
                "しばらくしてから /unread を再度お試しください。",
            )
            return

        await self._add_reactions(dm_message, len(shown))

        logger.info(f"Sent digest of {len(shown)}/{total} unread links to {user.name}")
        await reply_ephemeral(
            interaction,
            "📬 未読リンクをDMで送信しました！ リアクションで既読、外すと未読に戻ります。",
        )

    # ===== レート制限の管理 =====

    def get_rate_limit_info(self, user_id, command_name: str = "global") -> RateLimitResult:
        return self.rate_limiter.get_limit_info(user_id, command_name)

    def reset_rate_limit(self, user_id, command_name: Optional[str] = None) -> int:
        """
        ユーザーのレート制限をリセット

        Args:
            user_id: 対象ユーザーID
            command_name: 対象コマンド（未指定時は全コマンド）

        Returns:
            int: リセットしたウィンドウ数（コマンド指定時は常に1）
        """
        if command_name:
            self.rate_limiter.reset_limit(user_id, command_name)
            return 1
        return self.rate_limiter.reset_user_limits(user_id)

    def get_rate_limit_stats(self) -> dict:
        return self.rate_limiter.get_stats()

    def destroy(self) -> None:
        self.rate_limiter.destroy()
        logger.info("Command dispatcher destroyed")
