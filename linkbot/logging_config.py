"""
linkbot/logging_config.py

ロギング設定を一元管理するモジュール
"""

import logging
import logging.handlers
import os
from datetime import datetime

# info と warning の間に置く成功ログのレベル
SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")


def log_success(logger: logging.Logger, message: str, *args, **kwargs):
    """SUCCESS レベルでログを出力する"""
    logger.log(SUCCESS, message, *args, **kwargs)


def setup_logging(console_level="INFO", file_level="DEBUG", log_dir="logs"):
    """
    アプリケーション全体のロギング設定

    Args:
        console_level: コンソール出力のログレベル
        file_level: ファイル出力のログレベル
        log_dir: ログファイルの出力先

    Returns:
        logging.Logger: ルートロガー
    """
    console_num = getattr(logging, str(console_level).upper(), logging.INFO)
    file_num = getattr(logging, str(file_level).upper(), logging.DEBUG)

    root_logger = logging.getLogger()
    root_logger.setLevel(min(console_num, file_num))

    # 既存のハンドラをクリア
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console.setLevel(console_num)
    root_logger.addHandler(console)

    # ファイル出力（日付ごと）
    try:
        os.makedirs(log_dir, exist_ok=True)
        today = datetime.now().strftime("%Y-%m-%d")
        log_path = os.path.join(log_dir, f"linkbot-{today}.log")

        if os.access(log_dir, os.W_OK):
            file_handler = logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=10485760,  # 10MB
                backupCount=5,
                encoding="utf-8"
            )
            file_handler.setFormatter(formatter)
            file_handler.setLevel(file_num)
            root_logger.addHandler(file_handler)
        else:
            root_logger.warning(f"No write permission to log directory: {log_dir}, console logging only")
    except OSError as e:
        root_logger.error(f"Failed to setup file logging: {e}, console logging only")

    # 外部ライブラリのログレベル調整
    logging.getLogger("discord").setLevel(logging.WARNING)
    logging.getLogger("discord.http").setLevel(logging.WARNING)
    logging.getLogger("discord.gateway").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    root_logger.info(f"Logging initialized (console: {console_level}, file: {file_level})")

    return root_logger
