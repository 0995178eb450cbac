from __future__ import annotations

import os
from pathlib import Path

DEFAULT_WORKSPACE_DIR = Path("~/.local/share/bddrun/").expanduser()


def workspace_dir() -> Path:
    override = os.environ.get("BDDRUN_WORKSPACE_DIR")
    return Path(override).expanduser() if override else DEFAULT_WORKSPACE_DIR


def db_path() -> Path:
    override = os.environ.get("BDDRUN_DB_PATH")
    if override:
        return Path(override).expanduser()
    return workspace_dir() / "history.sqlite3"


def resolve_against(base: Path, path: str | Path) -> Path:
    """Resolve `path` relative to `base` unless it is already absolute."""
    candidate = Path(path).expanduser()
    return candidate.resolve() if candidate.is_absolute() else (base / candidate).resolve()
