"""Runtime configuration — llm_config.json with auto-reload on file change.

Missing keys fall back to DEFAULT_CONFIG; a missing or unreadable file means
"all defaults". OLLAMA_BASE_URL and INTERROGATE_DB override the file.
"""

import copy
import json
import logging
import os

log = logging.getLogger("interrogate")

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_PATH = os.environ.get("INTERROGATE_CONFIG", os.path.join(BASE_DIR, "llm_config.json"))

DEFAULT_CONFIG = {
    "ollama": {
        "base_url": "http://localhost:11434",
        # None = wait for the backend indefinitely
        "timeout": None,
    },
    "auto_play": {
        "turn_delay": 1.5,
    },
    "storage": {
        "db_path": os.path.join("data", "interrogate.db"),
        "seed_defaults": True,
    },
    "trace": {
        "enabled": False,
        "retention_days": 14,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 5051,
    },
}

_config_cache: dict | None = None
_config_mtime: float = 0


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_config() -> dict:
    """Return the merged config, re-reading the file when its mtime changes."""
    global _config_cache, _config_mtime
    try:
        mtime = os.path.getmtime(CONFIG_PATH)
        if _config_cache is None or mtime != _config_mtime:
            with open(CONFIG_PATH, "r", encoding="utf-8") as f:
                _config_cache = _merge(DEFAULT_CONFIG, json.load(f))
            _config_mtime = mtime
            log.info("llm_config: loaded %s", CONFIG_PATH)
    except FileNotFoundError:
        if _config_cache is None:
            _config_cache = copy.deepcopy(DEFAULT_CONFIG)
    except (OSError, json.JSONDecodeError) as e:
        log.warning("llm_config: failed to read %s — %s", CONFIG_PATH, e)
        if _config_cache is None:
            _config_cache = copy.deepcopy(DEFAULT_CONFIG)
    return _config_cache


def reset_cache():
    global _config_cache, _config_mtime
    _config_cache = None
    _config_mtime = 0


def ollama_base_url() -> str:
    url = os.environ.get("OLLAMA_BASE_URL") or get_config()["ollama"].get("base_url")
    return (url or DEFAULT_CONFIG["ollama"]["base_url"]).rstrip("/")


def ollama_timeout() -> float | None:
    return get_config()["ollama"].get("timeout")


def turn_delay() -> float:
    return float(get_config()["auto_play"].get("turn_delay", 1.5))


def db_path() -> str:
    path = os.environ.get("INTERROGATE_DB") or get_config()["storage"]["db_path"]
    if not os.path.isabs(path):
        path = os.path.join(BASE_DIR, path)
    return path


def seed_defaults() -> bool:
    return bool(get_config()["storage"].get("seed_defaults", True))


def trace_settings() -> dict:
    return get_config()["trace"]


def server_settings() -> dict:
    return get_config()["server"]
