"""Storage configuration using Pydantic Settings for env var support."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .paths import data_home

DB_FILENAME = "chatvault.db"
PREFERENCES_FILENAME = "preferences.json"


class StorageSettings(BaseSettings):
    """Settings for the persistence engine.

    Every field can be overridden with a ``CHATVAULT_`` environment variable,
    e.g. ``CHATVAULT_DB_PATH=/tmp/chat.db``.
    """

    db_path: Optional[Path] = Field(default=None)
    preferences_path: Optional[Path] = Field(default=None)
    backup_dir_name: str = Field(default="DatabaseBackups")
    max_backups: int = Field(default=5, ge=1)
    cache_size_kib: int = Field(default=64000, ge=0)
    busy_timeout_ms: int = Field(default=30000, ge=0)
    shutdown_timeout: float = Field(default=5.0, gt=0)
    preview_length: int = Field(default=100, ge=1)
    key_rotation_days: int = Field(default=30, ge=1)

    model_config = SettingsConfigDict(env_prefix="CHATVAULT_")

    @field_validator("db_path", "preferences_path", mode="before")
    @classmethod
    def expand_path(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Path(v).expanduser()
        if isinstance(v, Path):
            return v.expanduser()
        return v

    def resolved_db_path(self) -> Path:
        return self.db_path if self.db_path is not None else data_home() / DB_FILENAME

    def resolved_preferences_path(self) -> Path:
        if self.preferences_path is not None:
            return self.preferences_path
        return self.resolved_db_path().parent / PREFERENCES_FILENAME

    def backup_dir(self) -> Path:
        return self.resolved_db_path().parent / self.backup_dir_name


__all__ = ["StorageSettings"]
