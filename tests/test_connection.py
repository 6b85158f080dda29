"""Tests for the connection manager.

Covers:
- Idempotent and concurrent initialization
- Recovery from unreadable database files
- Transactions, savepoints and rollback
- Shutdown, force close and reopen
- Encryption preconditions at startup
"""

import asyncio

import pytest

from chatvault.errors import (
    ConnectionFailedError,
    EncryptionUnavailableError,
    MissingKeyError,
    NotInitializedError,
)
from chatvault.storage import driver
from chatvault.storage.connection import ConnectionManager
from chatvault.storage.repository import RecordStore
from chatvault.storage.schema import SCHEMA_VERSION
from tests.helpers import create_index_mismatch_database, make_chat, scalar


# =============================================================================
# Initialization
# =============================================================================


@pytest.mark.asyncio
async def test_initialize_creates_database(settings, keys, db_path):
    manager = ConnectionManager(settings, keys)
    await manager.initialize()
    try:
        assert db_path.exists()
        assert manager.is_initialized
        assert await scalar(manager, "PRAGMA user_version") == SCHEMA_VERSION
        assert await scalar(manager, "PRAGMA foreign_keys") == 1
        assert (await scalar(manager, "PRAGMA journal_mode")).lower() == "wal"
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_initialize_is_idempotent(manager):
    conn = manager.ensure_initialized()
    await manager.initialize()
    assert manager.ensure_initialized() is conn


@pytest.mark.asyncio
async def test_concurrent_initialize_opens_one_connection(settings, keys):
    manager = ConnectionManager(settings, keys)
    try:
        await asyncio.gather(*(manager.initialize() for _ in range(5)))
        assert manager.is_initialized
        history = await manager.migrations.migration_history(manager.ensure_initialized())
        assert len(history) == 1
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_operations_before_initialize_raise(settings, keys):
    manager = ConnectionManager(settings, keys)
    with pytest.raises(NotInitializedError):
        manager.ensure_initialized()
    with pytest.raises(NotInitializedError):
        await RecordStore(manager).load_all_chats()


@pytest.mark.asyncio
async def test_garbage_file_is_recreated(settings, keys, db_path):
    db_path.write_bytes(b"this is not a database at all " * 200)

    manager = ConnectionManager(settings, keys)
    await manager.initialize()
    try:
        assert driver.has_plaintext_header(db_path)
        store = RecordStore(manager)
        await store.save_chat(make_chat("After recovery"))
        assert len(await store.load_all_chats()) == 1
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_failed_integrity_check_recreates_database(settings, keys, db_path):
    create_index_mismatch_database(db_path)
    assert driver.validate_database_file(db_path) is None

    manager = ConnectionManager(settings, keys)
    await manager.initialize()
    try:
        assert await scalar(manager, "PRAGMA integrity_check") == "ok"
        assert await scalar(manager, "PRAGMA user_version") == SCHEMA_VERSION
        assert await scalar(manager, "SELECT COUNT(*) FROM sqlite_master WHERE name = 'idx_chats_note'") == 0
        assert await RecordStore(manager).load_all_chats() == []
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_data_survives_restart(settings, keys):
    first = ConnectionManager(settings, keys)
    await first.initialize()
    chat = make_chat("Persistent")
    await RecordStore(first).save_chat(chat)
    await first.shutdown()

    second = ConnectionManager(settings, keys)
    await second.initialize()
    try:
        loaded = await RecordStore(second).load_chat(chat.id)
        assert loaded is not None
        assert loaded.title == "Persistent"
    finally:
        await second.shutdown()


@pytest.mark.asyncio
async def test_manager_without_keys_opens_plain_database(settings, db_path):
    manager = ConnectionManager(settings)
    await manager.initialize()
    try:
        assert manager.keys is None
        await RecordStore(manager).save_chat(make_chat("No keystore"))
    finally:
        await manager.shutdown()
    assert driver.has_plaintext_header(db_path)


# =============================================================================
# Transactions
# =============================================================================


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(manager, store):
    chat = make_chat()
    with pytest.raises(RuntimeError):
        async with manager.transaction() as conn:
            await conn.execute(
                "INSERT INTO settings (key, value, type, updated_at) VALUES ('k', 'v', 'string', 'now')"
            )
            raise RuntimeError("boom")

    assert await store.get_setting("k") is None
    await store.save_chat(chat)
    assert await store.load_chat(chat.id) is not None


@pytest.mark.asyncio
async def test_nested_transaction_uses_savepoint(manager, store):
    async with manager.transaction() as conn:
        await conn.execute(
            "INSERT INTO settings (key, value, type, updated_at) VALUES ('outer', '1', 'string', 'now')"
        )
        with pytest.raises(ValueError):
            async with manager.transaction() as inner:
                await inner.execute(
                    "INSERT INTO settings (key, value, type, updated_at) VALUES ('inner', '1', 'string', 'now')"
                )
                raise ValueError("inner failure")

    assert await store.get_setting("outer") == "1"
    assert await store.get_setting("inner") is None


@pytest.mark.asyncio
async def test_concurrent_writers_are_serialized(store):
    chats = [make_chat(f"Chat {i}") for i in range(20)]
    await asyncio.gather(*(store.save_chat(chat) for chat in chats))
    assert len(await store.load_all_chats()) == 20


# =============================================================================
# Shutdown
# =============================================================================


@pytest.mark.asyncio
async def test_shutdown_releases_connection(settings, keys):
    manager = ConnectionManager(settings, keys)
    await manager.initialize()
    await manager.shutdown()

    assert not manager.is_initialized
    with pytest.raises(NotInitializedError):
        manager.ensure_initialized()


@pytest.mark.asyncio
async def test_shutdown_is_safe_twice(settings, keys):
    manager = ConnectionManager(settings, keys)
    await manager.initialize()
    await manager.shutdown()
    await manager.shutdown()


@pytest.mark.asyncio
async def test_force_close(settings, keys):
    manager = ConnectionManager(settings, keys)
    await manager.initialize()
    await manager.force_close()
    assert not manager.is_initialized
    with pytest.raises(NotInitializedError):
        manager.ensure_initialized()


@pytest.mark.asyncio
async def test_connection_unavailable_between_close_and_reopen(manager, store):
    await manager.close()
    with pytest.raises(ConnectionFailedError):
        manager.ensure_initialized()
    await manager.initialize()
    assert await store.load_all_chats() == []


@pytest.mark.asyncio
async def test_database_size_counts_file(manager):
    assert await manager.database_size() > 0


# =============================================================================
# Encryption preconditions
# =============================================================================


@pytest.mark.asyncio
async def test_encryption_enabled_without_sqlcipher(settings, keys, monkeypatch):
    monkeypatch.setattr(driver, "sqlcipher", None)
    keys.set_enabled(True)
    manager = ConnectionManager(settings, keys)
    with pytest.raises(EncryptionUnavailableError):
        await manager.initialize()


@pytest.mark.asyncio
async def test_existing_file_with_missing_key_is_not_rekeyed(settings, keys, keystore, db_path, monkeypatch):
    db_path.write_bytes(b"\x00" * 4096)
    monkeypatch.setattr(driver, "sqlcipher_available", lambda: True)
    keys.set_enabled(True)

    manager = ConnectionManager(settings, keys)
    with pytest.raises(MissingKeyError):
        await manager.initialize()
    assert keystore.secrets == {}
    assert db_path.read_bytes() == b"\x00" * 4096
