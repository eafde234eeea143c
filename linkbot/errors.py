"""
linkbot/errors.py

アプリケーション固有の例外クラスとエラー処理ユーティリティ
統一されたエラーハンドリングを提供
"""

import discord
import logging

logger = logging.getLogger(__name__)

class BotError(Exception):
    """
    Botアプリケーションの基底例外クラス
    すべてのBot固有エラーはこのクラスを継承する
    """
    pass

class ConfigError(BotError):
    """
    設定の読み込み・検証に関連するエラー
    必須項目の欠落や型変換の失敗時に発生
    """
    pass

class DatabaseError(BotError):
    """
    データベース操作に関連するエラー
    SQLite操作の失敗時に発生
    """
    pass

class PermissionError(BotError):
    """
    権限チェックに関連するエラー
    コマンド実行権限がない場合に発生
    """
    pass

class DMDeliveryError(BotError):
    """
    DM送信に関連するエラー
    ユーザーがDMを閉じている場合などに発生
    """
    pass

async def reply_ephemeral(interaction: discord.Interaction, content: str, **kwargs):
    """
    インタラクションの応答状態に応じて一度だけエフェメラル返信を送る

    Args:
        interaction: Discord インタラクション
        content: 送信するメッセージ
    """
    if interaction.response.is_done():
        return await interaction.followup.send(content, ephemeral=True, **kwargs)
    return await interaction.response.send_message(content, ephemeral=True, **kwargs)

async def handle_bot_error(error, interaction, log_message="Command failed"):
    """
    統一されたエラーハンドリング関数
    例外をログに記録し、ユーザーに適切なエラーメッセージを表示

    BotError はメッセージをそのまま表示し、それ以外の例外と
    DatabaseError は内部情報を出さずに汎用メッセージへ置き換える。

    Args:
        error: 発生した例外
        interaction: Discord インタラクション
        log_message: ログに記録するメッセージ
    """
    if isinstance(error, BotError) and not isinstance(error, DatabaseError):
        error_message = f"⚠️ {str(error)}"
        logger.warning(f"{log_message}: {error}")
    else:
        error_message = "❌ コマンドの処理中にエラーが発生しました。しばらくしてから再度お試しください。"
        logger.error(f"{log_message}: {error}", exc_info=error)

    try:
        return await reply_ephemeral(interaction, error_message)
    except discord.HTTPException as e:
        logger.error(f"Failed to send error reply: {e}")
