"""
main.py

リンク収集 Bot のエントリーポイント
アプリケーションの起動処理を担当
"""

import sys

from linkbot.core import run_bot
from linkbot.errors import ConfigError


def main():
    """
    アプリケーションのメイン関数。
    Bot を初期化して実行する。
    """
    try:
        sys.exit(run_bot())
    except ConfigError as e:
        sys.exit(f"Configuration error: {e}")


if __name__ == "__main__":
    main()
