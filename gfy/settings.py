# gfy/settings.py
from __future__ import annotations
import copy
import json
from pathlib import Path
from typing import Any, Dict
from .constants import (
    DEFAULT_LOG_MAX_BYTES, DEFAULT_LOG_BACKUP_COUNT, DEFAULT_OLLAMA, DEFAULT_MODEL,
)

DEFAULT_SETTINGS: Dict[str, Any] = {
    "schema": 1,
    "logging": {
        "level": "INFO",
        "max_bytes": DEFAULT_LOG_MAX_BYTES,
        "backup_count": DEFAULT_LOG_BACKUP_COUNT
    },
    "ollama": {
        "base_url": DEFAULT_OLLAMA,
        "model": DEFAULT_MODEL,
        "timeout": 269,
        "probe_timeout": 2
    },
    # Only keys present here are sent; the backend fills in the rest.
    "generation": {},
    "prompt": {
        "system": None,
        "style": "Regular"
    }
}

def _forward_fill(cfg: dict, defaults: dict) -> None:
    """Copy keys missing from `cfg` out of `defaults`, recursing into nested sections."""
    for k, v in defaults.items():
        if k not in cfg:
            cfg[k] = copy.deepcopy(v)
        elif isinstance(v, dict) and isinstance(cfg[k], dict):
            _forward_fill(cfg[k], v)

def load_settings(path: Path) -> dict:
    if not path.exists():
        save_settings(path, DEFAULT_SETTINGS)
        return copy.deepcopy(DEFAULT_SETTINGS)
    with path.open("r", encoding="utf-8") as f:
        cfg = json.load(f)
    if not isinstance(cfg, dict):
        raise ValueError(f"{path}: settings must be a JSON object")
    _forward_fill(cfg, DEFAULT_SETTINGS)
    return cfg

def save_settings(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)
    tmp.replace(path)
