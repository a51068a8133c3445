"""
Config loader for chatline.
Reads config.yaml once and caches it. All other modules import from here.
Values are layered over built-in defaults, so a partial config file (or none
at all) is fine. ${ENV_VAR} references in strings are resolved from the
environment, after .env has been loaded.
"""

import copy
import logging
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

DEFAULTS: dict = {
    "server": {"host": "127.0.0.1", "port": 8080},
    "engine": {
        "provider": "echo",
        "url": "",
        "model": "",
        "api_key": "",
        "timeout": 120,
    },
    "chat": {"system_prompt": "", "history_path": ""},
    "context": {"max_tokens": 0},
    "logging": {"level": "INFO", "file": ""},
}

_config: dict | None = None


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _merge(base: dict, override: dict) -> dict:
    """Deep-merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str | None = None) -> dict:
    """
    Load and cache config.

    An explicit path (argument or CHATLINE_CONFIG) must exist; the default
    config.yaml is optional.
    """
    global _config
    if _config is not None and path is None:
        return _config

    explicit = path or os.environ.get("CHATLINE_CONFIG")
    config_path = Path(explicit) if explicit else _CONFIG_PATH

    raw = {}
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config must be a mapping: {config_path}")
    elif explicit:
        raise FileNotFoundError(f"Config not found: {config_path}")

    _config = _walk_and_resolve(_merge(DEFAULTS, raw))
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config():
    """Forget the cached config so the next get_config() reloads it."""
    global _config
    _config = None


def setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
