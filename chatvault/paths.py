"""Shared filesystem paths for chatvault."""

from __future__ import annotations

import os
from pathlib import Path


def _xdg_path(env_var: str, fallback: Path) -> Path:
    raw = os.environ.get(env_var)
    if raw:
        return Path(raw).expanduser()
    return fallback


def data_home() -> Path:
    """Return the data directory, re-reading the environment for test isolation."""
    return _xdg_path("XDG_DATA_HOME", Path.home() / ".local/share") / "chatvault"


def sidecar_paths(db_path: Path) -> list[Path]:
    """Return the write-ahead-log and shared-memory companions of a database file."""
    return [db_path.with_name(db_path.name + suffix) for suffix in ("-wal", "-shm")]


__all__ = ["data_home", "sidecar_paths"]
