"""High-level facade for the chat persistence engine.

This module provides the `ChatVault` class, which wires the storage
components together and exposes them behind one lifecycle.

Example:
    async with ChatVault() as vault:
        chat = Chat(title="Hello", provider=Provider.OPENAI, model_name="gpt-4-turbo-preview")
        await vault.records.save_chat(chat)
        await vault.records.save_message(Message(chat_id=chat.id, content="hi", is_user=True))

        page = await vault.optimizer.load_chats_paginated(PaginationOptions(limit=20))
        hits = await vault.records.search_messages("hello")
"""

from __future__ import annotations

from pathlib import Path

from chatvault.config import StorageSettings
from chatvault.lib.log import get_logger
from chatvault.preferences import Preferences, ProviderConfigurationStore
from chatvault.security.encryption import SecurityLayer
from chatvault.security.keys import EncryptionKeys
from chatvault.security.keystore import KeyringKeyStore, KeyStore
from chatvault.storage.connection import ConnectionManager
from chatvault.storage.migrations import BackupInfo, MigrationRecord, SchemaValidation
from chatvault.storage.optimizer import PerformanceOptimizer
from chatvault.storage.repository import RecordStore
from chatvault.storage.search_index import FTSHealth

LOGGER = get_logger(__name__)


class ChatVault:
    """Chat database with migrations, search, batching and encryption.

    Args:
        settings: Storage settings; read from ``CHATVAULT_*`` env vars when omitted
        db_path: Shortcut overriding ``settings.db_path``
        keystore: Secret store for the encryption key (system keyring by default)

    Example:
        # Context manager (recommended)
        async with ChatVault(db_path="~/chats.db") as vault:
            chats = await vault.records.get_recent_chats()

        # Manual lifecycle
        vault = ChatVault()
        await vault.initialize()
        try:
            ...
        finally:
            await vault.shutdown()
    """

    def __init__(
        self,
        settings: StorageSettings | None = None,
        *,
        db_path: str | Path | None = None,
        keystore: KeyStore | None = None,
    ):
        settings = settings or StorageSettings()
        if db_path is not None:
            settings = settings.model_copy(update={"db_path": Path(db_path).expanduser()})
        self.settings = settings

        self.preferences = Preferences(settings.resolved_preferences_path())
        self.providers = ProviderConfigurationStore(self.preferences)
        self.keys = EncryptionKeys(keystore or KeyringKeyStore(), self.preferences)

        self.manager = ConnectionManager(settings, self.keys)
        self.records = RecordStore(self.manager)
        self.optimizer = PerformanceOptimizer(self.manager, self.records)
        self.security = SecurityLayer(self.manager)

    @property
    def db_path(self) -> Path:
        return self.manager.path

    @property
    def is_initialized(self) -> bool:
        return self.manager.is_initialized

    async def initialize(self) -> None:
        """Open the database (migrating and recovering as needed)."""
        await self.manager.initialize()

    async def shutdown(self, timeout: float | None = None) -> None:
        await self.manager.shutdown(timeout)

    async def force_close(self) -> None:
        await self.manager.force_close()

    async def __aenter__(self) -> ChatVault:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.shutdown()

    # --- Migrations and backups ---

    def list_backups(self) -> list[BackupInfo]:
        return self.manager.migrations.list_backups()

    async def restore_backup(self, backup: BackupInfo | Path) -> None:
        path = backup.path if isinstance(backup, BackupInfo) else backup
        await self.manager.restore_from_backup(path)

    async def validate_schema(self) -> SchemaValidation:
        return await self.manager.migrations.validate_schema(self.manager.ensure_initialized())

    async def migration_history(self) -> list[MigrationRecord]:
        return await self.manager.migrations.migration_history(self.manager.ensure_initialized())

    # --- Search index ---

    async def check_search_health(self) -> FTSHealth:
        return await self.manager.search_index.check_health()

    async def rebuild_search_index(self) -> None:
        await self.manager.search_index.rebuild()


__all__ = ["ChatVault"]
