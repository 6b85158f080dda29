"""Tests for schema migrations, validation and backups."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from chatvault.errors import (
    BackupCorruptedError,
    BackupNotFoundError,
    SchemaValidationError,
    UnknownSchemaVersionError,
)
from chatvault.models import MessageMetadata
from chatvault.storage.connection import ConnectionManager
from chatvault.storage.migrations import MigrationEngine
from chatvault.storage.repository import RecordStore
from chatvault.storage.schema import LEGACY_TRIGGERS, REQUIRED_INDEXES, SCHEMA_VERSION
from tests.helpers import create_v1_database, make_chat, make_message, scalar


# =============================================================================
# Fresh databases
# =============================================================================


@pytest.mark.asyncio
async def test_fresh_database_validates(manager):
    validation = await manager.migrations.validate_schema(manager.ensure_initialized())
    assert validation.is_valid, validation.issues
    assert validation.version == SCHEMA_VERSION


@pytest.mark.asyncio
async def test_fresh_database_records_initial_schema(manager):
    history = await manager.migrations.migration_history(manager.ensure_initialized())
    assert [(record.version, record.status) for record in history] == [(SCHEMA_VERSION, "completed")]


@pytest.mark.asyncio
async def test_migrate_at_current_version_changes_nothing(manager):
    conn = manager.ensure_initialized()
    before = conn.total_changes

    report = await manager.migrations.migrate(conn)

    assert report.applied == []
    assert report.backup is None
    assert conn.total_changes == before


@pytest.mark.asyncio
async def test_validation_reports_missing_index(manager):
    conn = manager.ensure_initialized()
    await conn.execute(f"DROP INDEX {REQUIRED_INDEXES[0]}")

    validation = await manager.migrations.validate_schema(conn)

    assert not validation.is_valid
    assert f"Missing index: {REQUIRED_INDEXES[0]}" in validation.issues


# =============================================================================
# v1 -> v2
# =============================================================================


@pytest.mark.asyncio
async def test_v1_database_is_upgraded(settings, keys, db_path):
    create_v1_database(db_path)

    manager = ConnectionManager(settings, keys)
    await manager.initialize()
    try:
        conn = manager.ensure_initialized()
        assert await scalar(manager, "PRAGMA user_version") == SCHEMA_VERSION

        cursor = await conn.execute("SELECT name FROM sqlite_master WHERE type = 'trigger'")
        triggers = {row[0] for row in await cursor.fetchall()}
        assert not triggers & set(LEGACY_TRIGGERS)

        cursor = await conn.execute("PRAGMA table_info(messages)")
        columns = {row[1] for row in await cursor.fetchall()}
        assert {"provider_config_id", "temperature", "max_tokens", "finish_reason", "error"} <= columns

        validation = await manager.migrations.validate_schema(conn)
        assert validation.is_valid, validation.issues
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_v1_data_is_preserved_and_searchable(settings, keys, db_path):
    create_v1_database(db_path, chat_id="legacy-chat")

    manager = ConnectionManager(settings, keys)
    await manager.initialize()
    try:
        store = RecordStore(manager)
        messages = await store.load_messages("legacy-chat")
        assert [message.content for message in messages] == ["legacy greeting", "legacy reply"]

        hits = await store.search_messages("greet")
        assert [hit.id for hit in hits] == ["legacy-0"]

        health = await manager.search_index.check_health()
        assert health.is_healthy
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_writes_after_upgrade_do_not_fire_legacy_triggers(settings, keys, db_path):
    create_v1_database(db_path, chat_id="legacy-chat")

    manager = ConnectionManager(settings, keys)
    await manager.initialize()
    try:
        store = RecordStore(manager)
        await store.save_message(make_message("legacy-chat", "a new message"))
        chat = await store.load_chat("legacy-chat")
        assert chat.message_count == 3
        assert chat.last_message_preview == "a new message"
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_unversioned_tables_are_upgraded_in_place(settings, keys, db_path):
    create_v1_database(db_path, chat_id="legacy-chat", user_version=0)

    manager = ConnectionManager(settings, keys)
    await manager.initialize()
    try:
        conn = manager.ensure_initialized()
        assert await scalar(manager, "PRAGMA user_version") == SCHEMA_VERSION

        cursor = await conn.execute("PRAGMA table_info(messages)")
        columns = {row[1] for row in await cursor.fetchall()}
        assert {"provider_config_id", "temperature", "max_tokens", "finish_reason", "error"} <= columns

        validation = await manager.migrations.validate_schema(conn)
        assert validation.is_valid, validation.issues

        store = RecordStore(manager)
        message = make_message("legacy-chat", "written after the upgrade", metadata=MessageMetadata(temperature=0.2))
        await store.save_message(message)
        assert (await store.load_message(message.id)).metadata.temperature == 0.2
        assert (await store.load_chat("legacy-chat")).message_count == 3
        assert len(manager.migrations.list_backups()) == 1
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_upgrade_takes_backup_and_records_history(settings, keys, db_path):
    create_v1_database(db_path)

    manager = ConnectionManager(settings, keys)
    await manager.initialize()
    try:
        backups = manager.migrations.list_backups()
        assert len(backups) == 1
        assert backups[0].version == 1
        assert backups[0].path.parent == settings.backup_dir()

        history = await manager.migrations.migration_history(manager.ensure_initialized())
        assert [(record.version, record.status) for record in history] == [(2, "completed")]
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_second_start_after_upgrade_is_noop(settings, keys, db_path):
    create_v1_database(db_path)

    first = ConnectionManager(settings, keys)
    await first.initialize()
    await first.shutdown()

    second = ConnectionManager(settings, keys)
    await second.initialize()
    try:
        assert len(second.migrations.list_backups()) == 1
        report = await second.migrations.migrate(second.ensure_initialized())
        assert report.applied == []
    finally:
        await second.shutdown()


# =============================================================================
# Unknown versions
# =============================================================================


@pytest.mark.asyncio
async def test_newer_schema_is_refused_and_kept(settings, keys, db_path):
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE future (x)")
    conn.execute("PRAGMA user_version = 99")
    conn.commit()
    conn.close()

    manager = ConnectionManager(settings, keys)
    with pytest.raises(UnknownSchemaVersionError) as excinfo:
        await manager.initialize()

    assert excinfo.value.version == 99
    assert db_path.exists()
    check = sqlite3.connect(db_path)
    try:
        assert check.execute("PRAGMA user_version").fetchone()[0] == 99
    finally:
        check.close()


# =============================================================================
# Backups
# =============================================================================


def test_cleanup_keeps_newest_backups(settings, db_path):
    engine = MigrationEngine(settings)
    engine.backup_dir.mkdir(parents=True)
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for i in range(7):
        engine.backup_path_for(1, start + timedelta(hours=i)).write_bytes(b"x")

    removed = engine.cleanup_old_backups(keep=3)

    remaining = engine.list_backups()
    assert removed == 4
    assert [info.created_at for info in remaining] == [start + timedelta(hours=i) for i in (6, 5, 4)]


def test_list_backups_ignores_foreign_files(settings):
    engine = MigrationEngine(settings)
    engine.backup_dir.mkdir(parents=True)
    (engine.backup_dir / "notes.txt").write_text("hi")
    (engine.backup_dir / "other_backup_v1_20240101T000000000000Z.db").write_bytes(b"x")
    assert engine.list_backups() == []


def test_verify_backup_errors(settings, tmp_path):
    engine = MigrationEngine(settings)
    with pytest.raises(BackupNotFoundError):
        engine.verify_backup(tmp_path / "missing.db")

    junk = tmp_path / "junk.db"
    junk.write_bytes(b"definitely not sqlite" * 50)
    with pytest.raises(BackupCorruptedError):
        engine.verify_backup(junk)


def test_backup_without_chat_tables_is_rejected(settings, tmp_path):
    unrelated = tmp_path / "unrelated.db"
    conn = sqlite3.connect(unrelated)
    conn.execute("CREATE TABLE notes (body TEXT)")
    conn.commit()
    conn.close()

    with pytest.raises(SchemaValidationError) as excinfo:
        MigrationEngine(settings).verify_backup(unrelated)

    assert excinfo.value.issues == ["Missing table: chats", "Missing table: messages"]


@pytest.mark.asyncio
async def test_restore_from_backup_rolls_data_back(settings, keys, db_path):
    create_v1_database(db_path, chat_id="legacy-chat")

    manager = ConnectionManager(settings, keys)
    await manager.initialize()
    try:
        store = RecordStore(manager)
        later = make_chat("Created after the backup")
        await store.save_chat(later)
        backup = manager.migrations.list_backups()[0]

        await manager.restore_from_backup(backup.path)

        assert await store.load_chat(later.id) is None
        assert await store.load_chat("legacy-chat") is not None
        assert await scalar(manager, "PRAGMA user_version") == SCHEMA_VERSION
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_restore_missing_backup_leaves_database_open(manager, store, tmp_path):
    with pytest.raises(BackupNotFoundError):
        await manager.restore_from_backup(tmp_path / "nope.db")
    assert await store.load_all_chats() == []
