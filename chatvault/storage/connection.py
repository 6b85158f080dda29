"""Connection manager: the single live handle to the chat database.

Lifecycle:
    manager = ConnectionManager(settings)
    await manager.initialize()      # open, verify, migrate, build search index
    async with manager.transaction() as conn:
        ...
    await manager.shutdown()        # checkpoint + optimize + close, time-boxed

All callers share one aiosqlite connection. Writers are serialized by an
asyncio lock; exclusive maintenance (vacuum, reindex, encryption changes,
backup restore) is serialized behind a separate gate.
"""

from __future__ import annotations

import asyncio
import shutil
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from chatvault.config import StorageSettings
from chatvault.errors import (
    ConnectionFailedError,
    EncryptionUnavailableError,
    IndexSetupError,
    MigrationError,
    MissingKeyError,
    NotInitializedError,
    UnknownSchemaVersionError,
)
from chatvault.lib.log import get_logger
from chatvault.paths import sidecar_paths
from chatvault.security.keys import EncryptionKeys, key_to_hex
from chatvault.storage import driver
from chatvault.storage.migrations import MigrationEngine
from chatvault.storage.search_index import SearchIndexSynchronizer, register_functions

LOGGER = get_logger(__name__)


class ConnectionManager:
    """Owns the database handle and its lifecycle.

    Args:
        settings: Storage settings; defaults are read from the environment.
        keys: Encryption key access. Without it the database is always plain.
    """

    def __init__(self, settings: StorageSettings | None = None, keys: EncryptionKeys | None = None) -> None:
        self.settings = settings or StorageSettings()
        self.keys = keys
        self.path: Path = self.settings.resolved_db_path()
        self.migrations = MigrationEngine(self.settings)
        self.search_index = SearchIndexSynchronizer(self)

        self._conn: aiosqlite.Connection | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

        # Serializes writers on the shared connection
        self._write_lock = asyncio.Lock()
        # Serializes exclusive maintenance operations
        self._maintenance_lock = asyncio.Lock()

        self._txn_owner: asyncio.Task[object] | None = None
        self._txn_depth = 0

    @property
    def is_initialized(self) -> bool:
        return self._initialized and self._conn is not None

    @property
    def encrypted(self) -> bool:
        return self.keys is not None and self.keys.enabled

    # =========================================================================
    # Startup
    # =========================================================================

    async def initialize(self) -> None:
        """Open the database in a known-good state. A second call is a no-op."""
        if self.is_initialized:
            return
        async with self._init_lock:
            if self.is_initialized:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            key_hex = self._resolve_key()

            if self.path.exists():
                problem = await asyncio.to_thread(driver.validate_database_file, self.path, key_hex=key_hex)
                if problem is not None:
                    await self._recover(f"file validation failed: {problem}")

            conn = await self._open(key_hex)
            integrity = await self._integrity_check(conn)
            if integrity != "ok":
                await conn.close()
                await self._recover(f"integrity check returned {integrity!r}")
                conn = await self._open(key_hex)

            try:
                await self.migrations.migrate(conn)
            except UnknownSchemaVersionError:
                await conn.close()
                raise
            except MigrationError as exc:
                await conn.close()
                await self._recover(f"migration failed: {exc}")
                conn = await self._open(key_hex)
                await self.migrations.migrate(conn)

            self._conn = conn
            self._initialized = True
            LOGGER.info("Database initialized at %s (encrypted=%s)", self.path, key_hex is not None)

        try:
            await self.search_index.setup_indexes()
        except IndexSetupError as exc:
            LOGGER.warning("Search index unavailable, searches will scan tables: %s", exc)

    def _resolve_key(self) -> str | None:
        keys = self.keys
        if keys is None or not keys.enabled:
            return None
        if not driver.sqlcipher_available():
            raise EncryptionUnavailableError()
        # Never mint a fresh key for a file that already exists: it could not open it.
        key = keys.get_key() if self.path.exists() else keys.get_or_create_key()
        if key is None:
            raise MissingKeyError("Encryption is enabled but no key is present in the keystore")
        return key_to_hex(key)

    async def _open(self, key_hex: str | None) -> aiosqlite.Connection:
        timeout = self.settings.busy_timeout_ms / 1000
        try:
            conn = await driver.connect_async(self.path, key_hex=key_hex, timeout=timeout)
        except driver.DRIVER_ERRORS as exc:
            raise ConnectionFailedError(f"Could not open {self.path}: {exc}") from exc
        try:
            await conn.execute("PRAGMA foreign_keys = ON")
            await conn.execute("PRAGMA journal_mode = WAL")
            await conn.execute(f"PRAGMA cache_size = -{self.settings.cache_size_kib}")
            await conn.execute(f"PRAGMA busy_timeout = {self.settings.busy_timeout_ms}")
            await register_functions(conn)
        except driver.DRIVER_ERRORS as exc:
            await conn.close()
            raise ConnectionFailedError(f"Could not configure {self.path}: {exc}") from exc
        return conn

    async def _integrity_check(self, conn: aiosqlite.Connection) -> str:
        try:
            cursor = await conn.execute("PRAGMA integrity_check")
            row = await cursor.fetchone()
        except driver.DRIVER_ERRORS as exc:
            return str(exc)
        return row[0] if row else "no result"

    async def _recover(self, reason: str) -> None:
        """Delete the database and its companions so a fresh one is created.

        This discards data. It only runs when the file cannot be read.
        """
        LOGGER.warning("Database recovery: %s; deleting %s and recreating", reason, self.path)
        for candidate in (self.path, *sidecar_paths(self.path)):
            candidate.unlink(missing_ok=True)

    # =========================================================================
    # Access
    # =========================================================================

    def ensure_initialized(self) -> aiosqlite.Connection:
        """Return the live connection.

        Raises:
            NotInitializedError: initialize() has not been called.
            ConnectionFailedError: the handle is gone (e.g. during a file swap).
        """
        if not self._initialized:
            raise NotInitializedError()
        if self._conn is None:
            raise ConnectionFailedError("Database connection is not available")
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a unit of work under the write lock.

        Nested use from the same task becomes a SAVEPOINT, so helpers can
        open their own transaction while called from inside another.
        """
        conn = self.ensure_initialized()
        task = asyncio.current_task()
        if self._txn_owner is not None and self._txn_owner is task:
            name = f"sp_{self._txn_depth}"
            await conn.execute(f"SAVEPOINT {name}")
            self._txn_depth += 1
            try:
                yield conn
            except BaseException:
                await conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
                await conn.execute(f"RELEASE SAVEPOINT {name}")
                raise
            else:
                await conn.execute(f"RELEASE SAVEPOINT {name}")
            finally:
                self._txn_depth -= 1
            return

        async with self._write_lock:
            conn = self.ensure_initialized()
            await conn.execute("BEGIN IMMEDIATE")
            self._txn_owner = task
            self._txn_depth = 1
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()
            finally:
                self._txn_owner = None
                self._txn_depth = 0

    @asynccontextmanager
    async def writer(self) -> AsyncIterator[aiosqlite.Connection]:
        """Hold the write lock without opening a transaction (VACUUM, REINDEX, checkpoints)."""
        async with self._write_lock:
            yield self.ensure_initialized()

    @asynccontextmanager
    async def maintenance(self) -> AsyncIterator[None]:
        """Gate for exclusive maintenance operations."""
        async with self._maintenance_lock:
            yield

    async def database_size(self) -> int:
        """Size in bytes of the database file plus its write-ahead log."""
        total = 0
        for candidate in (self.path, *sidecar_paths(self.path)):
            try:
                total += candidate.stat().st_size
            except FileNotFoundError:
                continue
        return total

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def close(self) -> None:
        """Checkpoint and release the handle, waiting for in-flight writes."""
        conn = self._conn
        if conn is None:
            return
        async with self._write_lock:
            try:
                await conn.execute("PRAGMA wal_checkpoint(FULL)")
                await conn.execute("PRAGMA optimize")
            except driver.DRIVER_ERRORS as exc:
                LOGGER.warning("Checkpoint before close failed: %s", exc)
            await conn.close()
            self._conn = None

    async def restore_from_backup(self, backup_path: Path) -> None:
        """Replace the live database with a backup and reopen it.

        Raises:
            BackupNotFoundError: backup_path does not exist.
            BackupCorruptedError: the backup cannot be read.
            SchemaValidationError: the backup has no chat tables.
        """
        async with self.maintenance():
            key_hex = self._resolve_key()
            await asyncio.to_thread(self.migrations.verify_backup, backup_path, key_hex=key_hex)
            await self.close()
            for candidate in sidecar_paths(self.path):
                candidate.unlink(missing_ok=True)
            await asyncio.to_thread(shutil.copy2, backup_path, self.path)
            LOGGER.info("Restored database from backup %s", backup_path)
            await self.initialize()

    async def shutdown(self, timeout: float | None = None) -> None:
        """Checkpoint, optimize and close within a bounded time, else force-close."""
        timeout = timeout if timeout is not None else self.settings.shutdown_timeout
        if self._conn is not None:
            try:
                await asyncio.wait_for(self.close(), timeout=timeout)
            except asyncio.TimeoutError:
                LOGGER.warning("Shutdown exceeded %.1fs, forcing close", timeout)
                await self.force_close()
        self._initialized = False
        LOGGER.info("Database shut down")

    async def force_close(self) -> None:
        """Release the handle immediately without checkpointing."""
        conn, self._conn = self._conn, None
        self._initialized = False
        if conn is None:
            return
        try:
            await conn.interrupt()
            await asyncio.wait_for(conn.close(), timeout=1.0)
        except (asyncio.TimeoutError, *driver.DRIVER_ERRORS) as exc:
            LOGGER.warning("Force close did not complete cleanly: %s", exc)


__all__ = ["ConnectionManager"]
