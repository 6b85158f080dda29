"""SQLite driver selection: stdlib sqlite3 for plain files, SQLCipher for encrypted ones."""

from __future__ import annotations

import sqlite3
from functools import partial
from pathlib import Path
from typing import Any, Callable

import aiosqlite

try:
    import sqlcipher3.dbapi2 as sqlcipher
except ImportError:  # optional extra: chatvault[encryption]
    sqlcipher = None

SQLITE_HEADER = b"SQLite format 3\x00"

DRIVER_ERRORS: tuple[type[Exception], ...] = (sqlite3.Error,)
if sqlcipher is not None:
    DRIVER_ERRORS = (sqlite3.Error, sqlcipher.Error)


def sqlcipher_available() -> bool:
    return sqlcipher is not None


def has_plaintext_header(path: Path) -> bool:
    """True when the file starts with the plaintext SQLite magic string."""
    with path.open("rb") as fh:
        return fh.read(len(SQLITE_HEADER)) == SQLITE_HEADER


def key_pragma(key_hex: str) -> str:
    # Raw-key form skips SQLCipher's passphrase KDF.
    return f"\"x'{key_hex}'\""


def connect(path: Path, *, key_hex: str | None = None, timeout: float = 30.0) -> Any:
    """Open a synchronous connection in autocommit mode with Row results.

    Transactions are always explicit (BEGIN IMMEDIATE / SAVEPOINT), so the
    driver's implicit transaction handling is disabled.
    """
    if key_hex is None:
        conn = sqlite3.connect(path, timeout=timeout, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    if sqlcipher is None:
        from chatvault.errors import EncryptionUnavailableError

        raise EncryptionUnavailableError()
    conn = sqlcipher.connect(str(path), timeout=timeout, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlcipher.Row
    conn.execute(f"PRAGMA key = {key_pragma(key_hex)}")
    return conn


def connect_unkeyed_sqlcipher(path: Path, *, timeout: float = 30.0) -> Any:
    """Open a plaintext file through SQLCipher so encrypted databases can be attached."""
    if sqlcipher is None:
        from chatvault.errors import EncryptionUnavailableError

        raise EncryptionUnavailableError()
    conn = sqlcipher.connect(str(path), timeout=timeout, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlcipher.Row
    return conn


async def connect_async(
    path: Path, *, key_hex: str | None = None, timeout: float = 30.0
) -> aiosqlite.Connection:
    """Open an aiosqlite connection backed by the right driver."""
    connector: Callable[[], Any] = partial(connect, path, key_hex=key_hex, timeout=timeout)
    return await aiosqlite.Connection(connector, iter_chunk_size=64)


def validate_database_file(path: Path, *, key_hex: str | None = None) -> str | None:
    """Check an existing database file with a throwaway connection.

    Returns None when the file is readable, otherwise a short reason.
    """
    try:
        conn = connect(path, key_hex=key_hex, timeout=5.0)
    except DRIVER_ERRORS as exc:
        return f"open failed: {exc}"
    try:
        conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
        has_chats = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'chats'"
        ).fetchone()
        if has_chats:
            conn.execute("SELECT * FROM chats LIMIT 1").fetchall()
    except DRIVER_ERRORS as exc:
        return str(exc)
    finally:
        conn.close()
    return None


__all__ = [
    "DRIVER_ERRORS",
    "SQLITE_HEADER",
    "connect",
    "connect_async",
    "connect_unkeyed_sqlcipher",
    "has_plaintext_header",
    "key_pragma",
    "sqlcipher_available",
    "validate_database_file",
]
