"""
linkbot/config.py

環境変数または設定ファイルから各種設定を読み込むモジュール
"""

import logging
import os
from typing import Any, Dict, Mapping, Optional

import yaml

from linkbot.errors import ConfigError

logger = logging.getLogger(__name__)

# 設定の優先順位: 環境変数 > 設定ファイル > デフォルト値
DEFAULT_CONFIG: Dict[str, Any] = {
    "DISCORD_TOKEN": "",
    "DB_PATH": "data/linkbot.sqlite3",
    "CONSOLE_LOG_LEVEL": "INFO",
    "FILE_LOG_LEVEL": "DEBUG",
    "LOG_DIR": "logs",
    "RATE_LIMIT_ENABLED": True,
    "RATE_LIMIT_WINDOW_SECONDS": 60,
    "RATE_LIMIT_MAX_REQUESTS": 5,
    "RATE_LIMIT_CLEANUP_INTERVAL": 300,
    "CACHE_ENABLED": True,
    "MONITORED_CACHE_TTL": 60,
    "LEGACY_CHANNEL_IDS": [],
    "DM_MAPPING_TTL_HOURS": 24,
    "DISPLAY_TIMEZONE": "Asia/Tokyo",
}

REQUIRED_KEYS = ["DISCORD_TOKEN"]

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _convert(key: str, value: Any, default: Any) -> Any:
    """値をデフォルト値と同じ型に変換する"""
    try:
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE_VALUES:
                return True
            if text in _FALSE_VALUES:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        if isinstance(default, int):
            return int(value)
        if isinstance(default, list):
            if value is None:
                return []
            if isinstance(value, str):
                value = [part for part in value.split(",") if part.strip()]
            return [str(item).strip() for item in value]
    except (TypeError, ValueError) as e:
        raise ConfigError(f"設定値 {key} の形式が不正です: {e}")
    return value if value is None else str(value)


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    設定を YAML ファイルと環境変数から読み込む

    Args:
        path: 設定ファイルのパス（未指定時は CONFIG_PATH 環境変数か config.yaml）
        environ: 環境変数（テスト用、未指定時は os.environ）

    Returns:
        Dict[str, Any]: 型変換済みの設定

    Raises:
        ConfigError: 必須項目の欠落、ファイル不正、型変換失敗
    """
    if environ is None:
        environ = os.environ
    if path is None:
        path = environ.get("CONFIG_PATH", "config.yaml")

    config = dict(DEFAULT_CONFIG)

    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                yaml_config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"設定ファイルの読み込みに失敗しました: {e}")
        if yaml_config:
            if not isinstance(yaml_config, dict):
                raise ConfigError(f"設定ファイルの形式が不正です: {path}")
            config.update(yaml_config)
        logger.info(f"Configuration loaded from {path}")
    else:
        logger.warning(f"Configuration file {path} not found, using defaults and environment")

    # 環境変数で上書き
    env_overrides = 0
    for key in DEFAULT_CONFIG:
        env_value = environ.get(key)
        if env_value is not None:
            config[key] = env_value
            env_overrides += 1

    if env_overrides > 0:
        logger.info(f"Configuration overridden by {env_overrides} environment variables")

    for key, default in DEFAULT_CONFIG.items():
        config[key] = _convert(key, config[key], default)

    missing_keys = [key for key in REQUIRED_KEYS if not config[key]]
    if missing_keys:
        missing_str = ", ".join(missing_keys)
        logger.error(f"Missing required configuration: {missing_str}")
        raise ConfigError(f"必須の設定がありません: {missing_str}")

    return config
