"""
linkbot/emoji.py

リアクションに使用する絵文字の定義
ダイジェストDMの番号絵文字は 0..24 のインデックスで引く
"""

from typing import List

# 既読/未読の切替（チャンネル）と一括既読（DM）
ACK_EMOJI = "✅"

# 削除リクエスト
DELETE_EMOJIS = frozenset({"❌", "🗑️"})

# 1〜10件目
DIGIT_SYMBOLS: List[str] = ["1️⃣", "2️⃣", "3️⃣", "4️⃣", "5️⃣", "6️⃣", "7️⃣", "8️⃣", "9️⃣", "🔟"]

# 11〜25件目（🇦〜🇴）
LETTER_SYMBOLS: List[str] = [chr(0x1F1E6 + i) for i in range(15)]

DIGEST_SYMBOLS: List[str] = DIGIT_SYMBOLS + LETTER_SYMBOLS

# ダイジェスト1通あたりの最大件数
MAX_DIGEST_ITEMS = len(DIGEST_SYMBOLS)


def symbol_for_index(index: int) -> str:
    """
    ダイジェスト内の位置に対応する絵文字を返す

    Args:
        index: 0始まりの位置（0..24）

    Returns:
        str: 対応する絵文字

    Raises:
        IndexError: 範囲外の位置
    """
    if not 0 <= index < MAX_DIGEST_ITEMS:
        raise IndexError(f"digest index out of range: {index}")
    return DIGEST_SYMBOLS[index]


def is_delete_emoji(emoji: str) -> bool:
    """削除用の絵文字かどうか"""
    # 異体字セレクタ有無の揺れを吸収
    return emoji in DELETE_EMOJIS or emoji.rstrip("\ufe0f") + "\ufe0f" in DELETE_EMOJIS
