"""
linkbot/utils.py

URL抽出および Discord メンバーの権限チェックを提供するユーティリティ関数群。
"""

import re
from typing import List

import discord

# http(s):// に続く空白以外の連続
URL_PATTERN = re.compile(r"https?://\S+")

# モデレーターとみなすロール名（小文字で比較）
MODERATOR_ROLE_NAMES = frozenset({"admin", "administrator", "moderator", "mod"})
MODERATOR_ROLE_KEYWORDS = ("admin", "moderator")


def extract_urls(content: str) -> List[str]:
    """
    メッセージ本文から URL を出現順に抽出する。

    Args:
        content: メッセージ本文

    Returns:
        List[str]: 検出した URL（重複も含めてそのまま）
    """
    if not content:
        return []
    return URL_PATTERN.findall(content)


def is_moderator_role(role_name: str) -> bool:
    """ロール名がモデレーター語彙に該当するかを判定する。"""
    name = role_name.lower()
    if name in MODERATOR_ROLE_NAMES:
        return True
    return any(keyword in name for keyword in MODERATOR_ROLE_KEYWORDS)


def is_moderator(member: discord.abc.User | discord.Member) -> bool:
    """
    メンバーが管理者・メッセージ管理権限・モデレーターロールのいずれかを持つか判定する。

    Args:
        member: チェック対象の Discord メンバー

    Returns:
        True: 管理権限あり
        False: 一般ユーザー（またはギルド外のユーザー）
    """
    # メンバー型でのみ権限・ロールを確認できる
    permissions = getattr(member, "guild_permissions", None)
    if permissions is not None and (permissions.administrator or permissions.manage_messages):
        return True
    if hasattr(member, "roles"):
        return any(is_moderator_role(role.name) for role in member.roles)
    return False
