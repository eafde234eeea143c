"""
linkbot/framework/__init__.py

コマンドフレームワークのパッケージ初期化
"""

from .command_base import BaseCommand, CommandRegistry, PermissionLevel

__all__ = [
    'BaseCommand',
    'CommandRegistry',
    'PermissionLevel',
]
