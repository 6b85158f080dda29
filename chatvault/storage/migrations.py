"""Schema migration engine.

The schema version lives in ``PRAGMA user_version``. Version 0 means a fresh
file and gets the current schema directly, unless the chat tables already
exist: such a file predates versioning and is upgraded in place like v1; older versions are upgraded one
step at a time, each step committed on its own so a failure leaves the file
at the last good version. A file copy is taken before the first step.
"""

from __future__ import annotations

import asyncio
import re
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from chatvault.config import StorageSettings
from chatvault.errors import (
    BackupCorruptedError,
    BackupNotFoundError,
    MigrationFailedError,
    SchemaValidationError,
    UnknownSchemaVersionError,
)
from chatvault.lib.log import get_logger
from chatvault.storage import driver
from chatvault.storage.schema import (
    FTS_TABLES,
    INDEXES,
    LEGACY_TRIGGERS,
    REQUIRED_COLUMNS,
    REQUIRED_INDEXES,
    REQUIRED_TABLES,
    SCHEMA_VERSION,
    TABLES,
)

LOGGER = get_logger(__name__)

_BACKUP_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"
_BACKUP_NAME_RE = re.compile(r"^(?P<stem>.+)_backup_v(?P<version>\d+)_(?P<timestamp>\d{8}T\d{12}Z)$")


@dataclass(frozen=True)
class BackupInfo:
    path: Path
    version: int
    created_at: datetime
    size_bytes: int


@dataclass(frozen=True)
class SchemaValidation:
    is_valid: bool
    version: int
    issues: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MigrationRecord:
    version: int
    description: str | None
    applied_at: str
    status: str
    error_message: str | None


@dataclass
class MigrationReport:
    from_version: int
    to_version: int
    applied: list[int] = field(default_factory=list)
    backup: Path | None = None
    validation: SchemaValidation | None = None


# =============================================================================
# Steps
# =============================================================================

# Metadata columns that v1 message rows did not have.
_V2_MESSAGE_COLUMNS = (
    ("provider_config_id", "TEXT"),
    ("temperature", "REAL"),
    ("max_tokens", "INTEGER"),
    ("finish_reason", "TEXT"),
    ("error", "TEXT"),
)


async def _table_columns(conn: aiosqlite.Connection, table: str) -> set[str]:
    cursor = await conn.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in await cursor.fetchall()}


async def _has_chat_tables(conn: aiosqlite.Connection) -> bool:
    cursor = await conn.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name IN ('chats', 'messages')"
    )
    row = await cursor.fetchone()
    return bool(row and row[0])


async def _create_catalog_objects(conn: aiosqlite.Connection) -> None:
    for ddl in TABLES.values():
        await conn.execute(ddl)
    for index in INDEXES:
        await conn.execute(index.ddl)


async def _migrate_v1_to_v2(conn: aiosqlite.Connection) -> None:
    """Migrate from v1 to v2: drop trigger-maintained search index.

    v1 kept the full-text tables and chat_stats current with triggers, which
    corrupted the index when content changed underneath it. The search index
    synchronizer now maintains the index explicitly and populates it on startup.
    """
    for trigger in LEGACY_TRIGGERS:
        await conn.execute(f"DROP TRIGGER IF EXISTS {trigger}")
    for table in FTS_TABLES:
        await conn.execute(f"DROP TABLE IF EXISTS {table}")

    existing = await _table_columns(conn, "messages")
    for column, decl in _V2_MESSAGE_COLUMNS:
        if column not in existing:
            await conn.execute(f"ALTER TABLE messages ADD COLUMN {column} {decl}")

    await _create_catalog_objects(conn)


MigrationStep = Callable[[aiosqlite.Connection], Awaitable[None]]

# Migration registry: maps source version to (description, step)
_MIGRATIONS: dict[int, tuple[str, MigrationStep]] = {
    1: ("Replace index triggers with explicit sync; add message metadata columns", _migrate_v1_to_v2),
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Engine
# =============================================================================


class MigrationEngine:
    """Brings a database file to SCHEMA_VERSION and keeps its backups."""

    def __init__(self, settings: StorageSettings, target_version: int = SCHEMA_VERSION) -> None:
        self.settings = settings
        self.target_version = target_version
        self.db_path = settings.resolved_db_path()
        self.backup_dir = self.db_path.parent / settings.backup_dir_name

    async def current_version(self, conn: aiosqlite.Connection) -> int:
        cursor = await conn.execute("PRAGMA user_version")
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def migrate(self, conn: aiosqlite.Connection) -> MigrationReport:
        """Upgrade the schema to the target version.

        Raises:
            UnknownSchemaVersionError: the file is newer than this build.
            MigrationFailedError: a step failed; earlier steps stay committed.
        """
        current = await self.current_version(conn)
        report = MigrationReport(from_version=current, to_version=current)

        if current > self.target_version:
            raise UnknownSchemaVersionError(current, self.target_version)
        if current == self.target_version:
            return report

        if current == 0:
            if await _has_chat_tables(conn):
                return await self._adopt_unversioned(conn, report)
            await self._apply_fresh_schema(conn)
            report.to_version = self.target_version
            LOGGER.info("Created schema v%d", self.target_version)
            return report

        report.backup = await self.create_backup(conn, current)

        # Table rebuilds and drops must not cascade while the schema is in flux.
        await conn.execute("PRAGMA foreign_keys = OFF")
        try:
            for version in range(current, self.target_version):
                await self._run_step(conn, version)
                report.applied.append(version + 1)
                report.to_version = version + 1
        finally:
            await conn.execute("PRAGMA foreign_keys = ON")

        report.validation = await self.validate_schema(conn)
        if not report.validation.is_valid:
            LOGGER.warning("Schema validation issues after migration: %s", "; ".join(report.validation.issues))
        await asyncio.to_thread(self.cleanup_old_backups)
        return report

    async def _apply_fresh_schema(self, conn: aiosqlite.Connection) -> None:
        await conn.execute("BEGIN IMMEDIATE")
        try:
            await _create_catalog_objects(conn)
            await conn.execute(f"PRAGMA user_version = {self.target_version}")
            await conn.execute(
                "INSERT INTO migration_info (version, description, applied_at, status) VALUES (?, ?, ?, 'completed')",
                (self.target_version, "Initial schema", _now()),
            )
        except driver.DRIVER_ERRORS as exc:
            await conn.rollback()
            raise MigrationFailedError(self.target_version, exc) from exc
        await conn.commit()

    async def _adopt_unversioned(self, conn: aiosqlite.Connection, report: MigrationReport) -> MigrationReport:
        """Bring chat tables left at user_version 0 up to the target schema."""
        LOGGER.warning("Found unversioned chat tables, upgrading them in place")
        report.backup = await self.create_backup(conn, 0)
        await conn.execute("BEGIN IMMEDIATE")
        try:
            await _migrate_v1_to_v2(conn)
            await conn.execute(f"PRAGMA user_version = {self.target_version}")
            await conn.execute(
                "INSERT INTO migration_info (version, description, applied_at, status) VALUES (?, ?, ?, 'completed')",
                (self.target_version, "Upgrade unversioned schema", _now()),
            )
        except driver.DRIVER_ERRORS as exc:
            await conn.rollback()
            raise MigrationFailedError(self.target_version, exc) from exc
        await conn.commit()
        report.applied.append(self.target_version)
        report.to_version = self.target_version

        report.validation = await self.validate_schema(conn)
        if not report.validation.is_valid:
            LOGGER.warning("Schema validation issues after upgrade: %s", "; ".join(report.validation.issues))
        return report

    async def _run_step(self, conn: aiosqlite.Connection, version: int) -> None:
        entry = _MIGRATIONS.get(version)
        if entry is None:
            raise MigrationFailedError(version + 1, f"no migration registered from v{version}")
        description, step = entry

        LOGGER.info("Running migration v%d -> v%d", version, version + 1)
        await conn.execute("BEGIN IMMEDIATE")
        try:
            await step(conn)
            await conn.execute(f"PRAGMA user_version = {version + 1}")
            await conn.execute(
                "INSERT INTO migration_info (version, description, applied_at, status) VALUES (?, ?, ?, 'completed')",
                (version + 1, description, _now()),
            )
        except driver.DRIVER_ERRORS as exc:
            await conn.rollback()
            LOGGER.error("Migration v%d -> v%d failed: %s", version, version + 1, exc)
            await self._record_failure(conn, version + 1, description, exc)
            raise MigrationFailedError(version + 1, exc) from exc
        await conn.commit()
        LOGGER.info("Migration v%d -> v%d completed", version, version + 1)

    async def _record_failure(
        self, conn: aiosqlite.Connection, version: int, description: str, exc: BaseException
    ) -> None:
        try:
            await conn.execute(TABLES["migration_info"])
            await conn.execute(
                "INSERT INTO migration_info (version, description, applied_at, status, error_message) "
                "VALUES (?, ?, ?, 'failed', ?)",
                (version, description, _now(), str(exc)),
            )
        except driver.DRIVER_ERRORS as record_exc:
            LOGGER.warning("Could not record failed migration v%d: %s", version, record_exc)

    # =========================================================================
    # Validation and history
    # =========================================================================

    async def validate_schema(self, conn: aiosqlite.Connection) -> SchemaValidation:
        """Check tables, columns and indexes against the catalog.

        Problems are reported, not raised: a schema missing an index is still usable.
        """
        issues: list[str] = []
        cursor = await conn.execute("SELECT type, name FROM sqlite_master WHERE type IN ('table', 'index')")
        objects = {(row[0], row[1]) for row in await cursor.fetchall()}

        for table in REQUIRED_TABLES:
            if ("table", table) not in objects:
                issues.append(f"Missing table: {table}")
        for index in REQUIRED_INDEXES:
            if ("index", index) not in objects:
                issues.append(f"Missing index: {index}")
        for table, columns in REQUIRED_COLUMNS.items():
            if ("table", table) not in objects:
                continue
            present = await _table_columns(conn, table)
            for column in columns:
                if column not in present:
                    issues.append(f"Missing column: {table}.{column}")

        cursor = await conn.execute("PRAGMA foreign_key_check")
        violations = await cursor.fetchall()
        if violations:
            issues.append(f"Foreign key violations: {len(violations)}")

        version = await self.current_version(conn)
        if version != self.target_version:
            issues.append(f"Schema version {version} does not match expected {self.target_version}")
        return SchemaValidation(is_valid=not issues, version=version, issues=issues)

    async def migration_history(self, conn: aiosqlite.Connection) -> list[MigrationRecord]:
        cursor = await conn.execute(
            "SELECT version, description, applied_at, status, error_message FROM migration_info ORDER BY id"
        )
        return [
            MigrationRecord(
                version=row["version"],
                description=row["description"],
                applied_at=row["applied_at"],
                status=row["status"],
                error_message=row["error_message"],
            )
            for row in await cursor.fetchall()
        ]

    # =========================================================================
    # Backups
    # =========================================================================

    def backup_path_for(self, version: int, when: datetime | None = None) -> Path:
        when = when or datetime.now(timezone.utc)
        stamp = when.strftime(_BACKUP_TIMESTAMP_FORMAT)
        return self.backup_dir / f"{self.db_path.stem}_backup_v{version}_{stamp}{self.db_path.suffix}"

    async def create_backup(self, conn: aiosqlite.Connection, version: int) -> Path:
        """Copy the database file after flushing the write-ahead log into it."""
        await conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        target = self.backup_path_for(version)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copy2, self.db_path, target)
        LOGGER.info("Created database backup %s", target)
        return target

    def _parse_backup(self, path: Path) -> BackupInfo | None:
        name = path.name[: -len(self.db_path.suffix)] if self.db_path.suffix else path.name
        match = _BACKUP_NAME_RE.match(name)
        if match is None or match.group("stem") != self.db_path.stem:
            return None
        created = datetime.strptime(match.group("timestamp"), _BACKUP_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        return BackupInfo(
            path=path,
            version=int(match.group("version")),
            created_at=created,
            size_bytes=path.stat().st_size,
        )

    def list_backups(self) -> list[BackupInfo]:
        """Available backups, newest first."""
        if not self.backup_dir.exists():
            return []
        backups = [
            info
            for info in (self._parse_backup(path) for path in self.backup_dir.glob(f"{self.db_path.stem}_backup_v*"))
            if info is not None
        ]
        return sorted(backups, key=lambda info: info.created_at, reverse=True)

    def cleanup_old_backups(self, keep: int | None = None) -> int:
        keep = keep if keep is not None else self.settings.max_backups
        removed = 0
        for info in self.list_backups()[keep:]:
            info.path.unlink(missing_ok=True)
            removed += 1
        if removed:
            LOGGER.info("Removed %d old database backups", removed)
        return removed

    def verify_backup(self, path: Path, *, key_hex: str | None = None) -> None:
        """Raise unless path is a readable database backup."""
        if not path.is_file():
            raise BackupNotFoundError(f"Backup not found: {path}")
        if key_hex is None and not driver.has_plaintext_header(path):
            raise BackupCorruptedError(f"Backup is not a plaintext SQLite database: {path}")
        problem = driver.validate_database_file(path, key_hex=key_hex)
        missing: list[str] = []
        if problem is None:
            conn = driver.connect(path, key_hex=key_hex, timeout=5.0)
            try:
                row = conn.execute("PRAGMA quick_check").fetchone()
                if row is None or row[0] != "ok":
                    problem = f"quick_check returned {row[0] if row else None!r}"
                tables = {entry[0] for entry in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
                missing = [f"Missing table: {table}" for table in ("chats", "messages") if table not in tables]
            except driver.DRIVER_ERRORS as exc:
                problem = str(exc)
            finally:
                conn.close()
        if problem is not None:
            raise BackupCorruptedError(f"Backup {path.name} is unreadable: {problem}")
        if missing:
            # Readable, but not a chat database
            raise SchemaValidationError(missing)


__all__ = [
    "BackupInfo",
    "MigrationEngine",
    "MigrationRecord",
    "MigrationReport",
    "SchemaValidation",
]
