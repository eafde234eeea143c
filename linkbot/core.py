"""
linkbot/core.py

Discord Botの中核となる統合管理クラス
設定読み込み、ログ初期化、サービス管理、イベント・コマンド登録を一元化
"""

import discord
from discord import app_commands
import asyncio
import signal
import logging
from typing import Optional

from linkbot.channel_authority import ChannelAuthority
from linkbot.commands.admin_commands import setup_admin_commands
from linkbot.commands.unread_command import setup_unread_command
from linkbot.config import load_config
from linkbot.framework.command_base import CommandRegistry
from linkbot.handlers.command_handler import CommandDispatcher
from linkbot.handlers.message_handler import MessageIngestor
from linkbot.handlers.reaction_handler import ReactionEngine
from linkbot.impl.cache_service import build_cache
from linkbot.impl.sqlite_service import SQLiteDatabaseService
from linkbot.logging_config import log_success, setup_logging
from linkbot.rate_limiter import RateLimiter
from linkbot.scheduler import Scheduler


class DiscordBot:
    """
    Discord Botの統合管理クラス
    アプリケーション全体のライフサイクルを管理
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Botインスタンスの初期化

        Args:
            config_path: 設定ファイルのパス（未指定時は CONFIG_PATH 環境変数か config.yaml）
        """
        self.config_path = config_path
        self.config = {}
        self.logger = logging.getLogger(__name__)
        self._commands_synced = False

        # 初期化の実行順序は依存関係に基づく
        self._load_config()
        self._setup_logging()
        self._init_services()
        self._setup_discord_client()
        self._setup_command_registry()

    def _load_config(self) -> None:
        """
        設定ファイルの読み込みと環境変数による上書き処理
        デフォルト値 → YAMLファイル → 環境変数の順で優先度が高い
        """
        self.config = load_config(self.config_path)

    def _setup_logging(self) -> None:
        """
        ログシステムの初期化
        コンソール出力とファイル出力で異なるレベルに対応
        """
        setup_logging(
            console_level=self.config["CONSOLE_LOG_LEVEL"],
            file_level=self.config["FILE_LOG_LEVEL"],
            log_dir=self.config["LOG_DIR"],
        )

    def _init_services(self) -> None:
        """
        ストア、キャッシュ、レートリミッタ、チャンネル判定の初期化
        """
        self.store = SQLiteDatabaseService(
            db_path=self.config["DB_PATH"],
            dm_mapping_ttl_hours=self.config["DM_MAPPING_TTL_HOURS"],
        )
        self.logger.debug("Store initialized")

        self.cache = build_cache(self.config["CACHE_ENABLED"])
        self.authority = ChannelAuthority(
            self.store,
            self.cache,
            legacy_channel_ids=self.config["LEGACY_CHANNEL_IDS"],
            ttl_seconds=self.config["MONITORED_CACHE_TTL"],
        )

        self.rate_limiter = RateLimiter(
            window_seconds=self.config["RATE_LIMIT_WINDOW_SECONDS"],
            max_requests=self.config["RATE_LIMIT_MAX_REQUESTS"],
            cleanup_interval=self.config["RATE_LIMIT_CLEANUP_INTERVAL"],
            enabled=self.config["RATE_LIMIT_ENABLED"],
        )
        if self.rate_limiter.enabled:
            self.logger.info(
                f"Rate limiting enabled: {self.rate_limiter.max_requests} requests "
                f"per {self.rate_limiter.window_seconds}s"
            )
        else:
            self.logger.info("Rate limiting disabled")

        self.scheduler = Scheduler(self.store, self.rate_limiter, timezone=self.config["DISPLAY_TIMEZONE"])

    def _setup_discord_client(self) -> None:
        """
        Discordクライアントとイベントハンドラの設定
        """
        # 必要なインテントの設定
        intents = discord.Intents.default()
        intents.members = True
        intents.message_content = True
        intents.guild_reactions = True
        intents.dm_reactions = True

        self.client = discord.Client(intents=intents)
        self.tree = app_commands.CommandTree(self.client)

        self.ingestor = MessageIngestor(self.store, self.store, self.authority)
        self.reactions = ReactionEngine(self.client, self.store, self.store, self.authority)
        self.dispatcher = CommandDispatcher(
            self.client,
            self.store,
            self.store,
            self.rate_limiter,
            display_timezone=self.config["DISPLAY_TIMEZONE"],
        )

        @self.client.event
        async def on_ready():
            # 再接続でも on_ready は再度呼ばれるため、登録と同期は一度だけ
            if not self._commands_synced:
                self._register_commands()
                self.command_registry.setup_all(self.tree)
                await self.tree.sync()
                self._commands_synced = True
                self.scheduler.start()

            log_success(self.logger, f"Bot logged in as {self.client.user} ({len(self.client.guilds)} guilds)")

        @self.client.event
        async def on_message(message: discord.Message):
            try:
                await self.ingestor.handle(message)
            except Exception:
                self.logger.exception(f"Error handling message {message.id}")

        @self.client.event
        async def on_raw_reaction_add(payload: discord.RawReactionActionEvent):
            await self.reactions.handle_reaction_add(payload)

        @self.client.event
        async def on_raw_reaction_remove(payload: discord.RawReactionActionEvent):
            await self.reactions.handle_reaction_remove(payload)

        @self.client.event
        async def on_raw_message_delete(payload: discord.RawMessageDeleteEvent):
            await self.ingestor.handle_message_delete(payload)

        self.logger.debug("Discord client configured")

    def _setup_command_registry(self) -> None:
        """
        コマンドレジストリの初期化
        """
        self.command_registry = CommandRegistry()
        self.logger.debug("Command registry initialized")

    def _register_commands(self) -> None:
        """
        各コマンドモジュールからのコマンド登録
        """
        setup_unread_command(self.command_registry, self.dispatcher)
        setup_admin_commands(self.command_registry, self.dispatcher, self.store, self.authority, self.cache)

        self.logger.debug("All commands registered to framework")

    async def _shutdown(self) -> None:
        """
        Bot終了時のクリーンアップ処理
        """
        self.logger.info("Shutting down bot...")
        self.scheduler.stop()
        self.dispatcher.destroy()
        # client.close() で client.run が戻るため、ストアはその前に閉じる
        self.store.close()
        self.logger.info("Bot shutdown complete")
        await self.client.close()

    def _handle_exit(self, *_) -> None:
        """
        システムシグナル受信時の終了処理
        """
        asyncio.create_task(self._shutdown())

    def run(self) -> int:
        """
        Botの実行開始

        Returns:
            int: 終了コード（0=正常終了、1=異常終了）
        """
        try:
            # システムシグナルのハンドラ登録
            signal.signal(signal.SIGTERM, self._handle_exit)
            signal.signal(signal.SIGINT, self._handle_exit)

            self.logger.debug("Starting Discord bot...")
            self.client.run(self.config["DISCORD_TOKEN"], log_handler=None)

        except Exception as e:
            self.logger.critical(f"Critical error: {e}", exc_info=True)
            return 1

        return 0


def run_bot() -> int:
    """
    Bot起動のエントリーポイント関数
    main.pyから呼び出される
    """
    bot = DiscordBot()
    return bot.run()
