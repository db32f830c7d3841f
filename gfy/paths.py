# gfy/paths.py
from __future__ import annotations
import os
from pathlib import Path
from typing import Tuple
from .constants import DEFAULT_LOG_FILENAME, SETTINGS_FILENAME

def default_data_dir() -> Path:
    """
    $GFY_DATA_DIR if set, else the per-user data dir ($XDG_DATA_HOME/gfy or
    ~/.local/share/gfy). The CLI runs from anywhere, so nothing is cwd-relative.
    """
    env = os.getenv("GFY_DATA_DIR")
    if env:
        return Path(env).expanduser().resolve()
    base = os.getenv("XDG_DATA_HOME") or Path.home() / ".local" / "share"
    return (Path(base).expanduser() / "gfy").resolve()

def log_paths(data_dir: Path) -> Tuple[Path, Path]:
    logs_dir = data_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir, logs_dir / DEFAULT_LOG_FILENAME

def settings_path(data_dir: Path) -> Path:
    d = data_dir / "settings"
    d.mkdir(parents=True, exist_ok=True)
    return d / SETTINGS_FILENAME
