from __future__ import annotations

import pytest

from linkbot.emoji import (
    ACK_EMOJI,
    DIGEST_SYMBOLS,
    MAX_DIGEST_ITEMS,
    is_delete_emoji,
    symbol_for_index,
)


def test_symbol_vocabulary() -> None:
    assert MAX_DIGEST_ITEMS == 25
    assert len(set(DIGEST_SYMBOLS)) == 25
    assert symbol_for_index(0) == "1\ufe0f\u20e3"
    assert symbol_for_index(9) == "\U0001f51f"
    assert symbol_for_index(10) == "\U0001f1e6"
    assert symbol_for_index(24) == "\U0001f1f4"
    assert ACK_EMOJI not in DIGEST_SYMBOLS


@pytest.mark.parametrize("index", [-1, 25])
def test_symbol_out_of_range(index: int) -> None:
    with pytest.raises(IndexError):
        symbol_for_index(index)


def test_delete_emoji_with_and_without_variation_selector() -> None:
    assert is_delete_emoji("❌")
    assert is_delete_emoji("\U0001f5d1\ufe0f")
    assert is_delete_emoji("\U0001f5d1")
    assert not is_delete_emoji(ACK_EMOJI)
    assert not is_delete_emoji(symbol_for_index(0))
