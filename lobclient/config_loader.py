# lobclient/config_loader.py
import os
from pathlib import Path
from typing import Any, Dict

import yaml

from .exceptions import ConfigurationError

DEFAULT_API_URL = "http://localhost:7070"

# override da ambiente: utili in container senza toccare il file
ENV_OVERRIDES = {
    "LOB_API_URL": "api_url",
    "LOB_API_TOKEN": "api_token",
}


def load_config(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    try:
        with config_path.open("r", encoding="utf-8") as fh:
            cfg = yaml.safe_load(fh) or {}
    except OSError as e:
        raise ConfigurationError(f"Cannot read config {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(cfg, dict):
        raise ConfigurationError(f"Config root must be a mapping: {config_path}")

    return apply_env_overrides(cfg)


def apply_env_overrides(cfg: Dict[str, Any], environ=None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    merged = dict(cfg)
    for env_name, key in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            merged[key] = value
    return merged


def resolve_api_base(cfg: Dict[str, Any]) -> str:
    raw = cfg.get("api_url") or DEFAULT_API_URL
    return str(raw).rstrip("/")


def to_websocket_base(http_base: str) -> str:
    if not http_base:
        return "ws://localhost:7070"
    if http_base.startswith("https://"):
        return "wss://" + http_base[len("https://"):]
    if http_base.startswith("http://"):
        return "ws://" + http_base[len("http://"):]
    if http_base.startswith(("ws://", "wss://")):
        return http_base
    return "ws://" + http_base.lstrip("/")
