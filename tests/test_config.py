from __future__ import annotations

from pathlib import Path

import pytest

from linkbot.config import load_config
from linkbot.errors import ConfigError


def test_missing_token_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.yaml"), environ={})


def test_yaml_then_environment_precedence(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "DISCORD_TOKEN: from-file\n"
        "RATE_LIMIT_MAX_REQUESTS: 3\n"
        "LEGACY_CHANNEL_IDS: [10, 11]\n",
        encoding="utf-8",
    )

    config = load_config(
        str(path),
        environ={
            "DISCORD_TOKEN": "from-env",
            "RATE_LIMIT_ENABLED": "false",
            "MONITORED_CACHE_TTL": "30",
        },
    )

    assert config["DISCORD_TOKEN"] == "from-env"
    assert config["RATE_LIMIT_MAX_REQUESTS"] == 3
    assert config["RATE_LIMIT_ENABLED"] is False
    assert config["MONITORED_CACHE_TTL"] == 30
    assert config["LEGACY_CHANNEL_IDS"] == ["10", "11"]
    assert config["DISPLAY_TIMEZONE"] == "Asia/Tokyo"


def test_list_values_from_environment(tmp_path: Path) -> None:
    config = load_config(
        str(tmp_path / "missing.yaml"),
        environ={"DISCORD_TOKEN": "t", "LEGACY_CHANNEL_IDS": "10, 11,"},
    )
    assert config["LEGACY_CHANNEL_IDS"] == ["10", "11"]


def test_invalid_values_raise(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.yaml"), environ={"DISCORD_TOKEN": "t", "RATE_LIMIT_WINDOW_SECONDS": "soon"})
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.yaml"), environ={"DISCORD_TOKEN": "t", "CACHE_ENABLED": "maybe"})


def test_config_path_from_environment(tmp_path: Path) -> None:
    path = tmp_path / "custom.yaml"
    path.write_text("DISCORD_TOKEN: abc\n", encoding="utf-8")
    config = load_config(environ={"CONFIG_PATH": str(path)})
    assert config["DISCORD_TOKEN"] == "abc"
