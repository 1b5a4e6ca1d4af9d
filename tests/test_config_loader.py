"""Unit tests for configuration loading and URL resolution."""

import pytest

from lobclient.config_loader import (
    DEFAULT_API_URL,
    apply_env_overrides,
    load_config,
    resolve_api_base,
    to_websocket_base,
)
from lobclient.exceptions import ConfigurationError


def test_load_config_reads_yaml(tmp_path, monkeypatch):
    monkeypatch.delenv("LOB_API_URL", raising=False)
    monkeypatch.delenv("LOB_API_TOKEN", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text("api_url: http://engine:7070/\ndepth: 20\nws:\n  ping_interval: 5\n", encoding="utf-8")

    cfg = load_config(str(path))

    assert cfg["depth"] == 20
    assert cfg["ws"] == {"ping_interval": 5}
    assert resolve_api_base(cfg) == "http://engine:7070"


def test_env_overrides_take_precedence(tmp_path, monkeypatch):
    monkeypatch.setenv("LOB_API_URL", "https://prod.example")
    monkeypatch.setenv("LOB_API_TOKEN", "secret")
    path = tmp_path / "config.yaml"
    path.write_text("api_url: http://engine:7070\n", encoding="utf-8")

    cfg = load_config(str(path))

    assert cfg["api_url"] == "https://prod.example"
    assert cfg["api_token"] == "secret"


def test_apply_env_overrides_ignores_empty_values():
    cfg = apply_env_overrides({"api_url": "http://a"}, environ={"LOB_API_URL": ""})

    assert cfg == {"api_url": "http://a"}


def test_empty_file_is_empty_config(tmp_path, monkeypatch):
    monkeypatch.delenv("LOB_API_URL", raising=False)
    monkeypatch.delenv("LOB_API_TOKEN", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text("", encoding="utf-8")

    assert load_config(str(path)) == {}


def test_invalid_yaml_raises(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("api_url: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        load_config(str(path))


def test_non_mapping_root_raises(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="must be a mapping"):
        load_config(str(path))


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigurationError, match="Cannot read config"):
        load_config(str(tmp_path / "absent.yaml"))


def test_default_api_base():
    assert resolve_api_base({}) == DEFAULT_API_URL


@pytest.mark.parametrize(
    ("http_base", "expected"),
    [
        ("http://localhost:7070", "ws://localhost:7070"),
        ("https://engine.example", "wss://engine.example"),
        ("wss://already.example", "wss://already.example"),
        ("engine:7070", "ws://engine:7070"),
        ("", "ws://localhost:7070"),
    ],
)
def test_to_websocket_base(http_base, expected):
    assert to_websocket_base(http_base) == expected
