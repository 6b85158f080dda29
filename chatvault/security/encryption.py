"""At-rest encryption of the database file with SQLCipher.

Every conversion works on a closed database: the live handle is checkpointed
and closed, the file is exported into a sibling with the new keying, the
sibling replaces the original, and the manager reopens. The maintenance gate
keeps other exclusive operations out for the duration.
"""

from __future__ import annotations

import asyncio
import os
import stat
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from chatvault.errors import (
    EncryptionFailedError,
    EncryptionUnavailableError,
    MissingKeyError,
    RotationNotApplicableError,
    SearchIndexError,
    SecurityError,
)
from chatvault.lib.log import get_logger
from chatvault.paths import sidecar_paths
from chatvault.security.keys import generate_key, key_to_hex
from chatvault.storage import driver
from chatvault.storage.connection import ConnectionManager

LOGGER = get_logger(__name__)

# Group/other read bits
_WORLD_READABLE = stat.S_IRGRP | stat.S_IROTH


@dataclass
class SecurityValidationResult:
    is_secure: bool
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# File conversion (blocking; run in a worker thread)
# =============================================================================


def _export(conn: Any, target: Path, key_clause: str) -> None:
    """Copy every object of ``main`` into ``target`` under a new key."""
    version = conn.execute("PRAGMA user_version").fetchone()[0]
    target.unlink(missing_ok=True)
    conn.execute(f"ATTACH DATABASE ? AS converted KEY {key_clause}", (str(target),))
    try:
        conn.execute("SELECT sqlcipher_export('converted')")
        conn.execute(f"PRAGMA converted.user_version = {int(version)}")
    finally:
        conn.execute("DETACH DATABASE converted")


def _staging_path(path: Path) -> Path:
    return path.with_name(path.name + ".converting")


def _swap_in(path: Path, staged: Path) -> None:
    for candidate in sidecar_paths(path):
        candidate.unlink(missing_ok=True)
    os.replace(staged, path)


def encrypt_file(path: Path, key_hex: str) -> None:
    staged = _staging_path(path)
    conn = driver.connect_unkeyed_sqlcipher(path)
    try:
        _export(conn, staged, driver.key_pragma(key_hex))
    finally:
        conn.close()
    _verify(staged, key_hex)
    _swap_in(path, staged)


def decrypt_file(path: Path, key_hex: str) -> None:
    staged = _staging_path(path)
    conn = driver.connect(path, key_hex=key_hex)
    try:
        _export(conn, staged, "''")
    finally:
        conn.close()
    _verify(staged, None)
    _swap_in(path, staged)


def rekey_file(path: Path, old_key_hex: str, new_key_hex: str) -> Path:
    """Export ``path`` under the new key into a staged file and return it.

    The caller swaps it in once the new key is safely stored.
    """
    staged = _staging_path(path)
    conn = driver.connect(path, key_hex=old_key_hex)
    try:
        _export(conn, staged, driver.key_pragma(new_key_hex))
    finally:
        conn.close()
    _verify(staged, new_key_hex)
    return staged


def _verify(path: Path, key_hex: str | None) -> None:
    problem = driver.validate_database_file(path, key_hex=key_hex)
    if problem is not None:
        path.unlink(missing_ok=True)
        raise EncryptionFailedError(f"Converted database failed verification: {problem}")


# =============================================================================
# Security layer
# =============================================================================


class SecurityLayer:
    """Turns encryption on and off, rotates the key, audits the setup."""

    def __init__(self, manager: ConnectionManager) -> None:
        if manager.keys is None:
            raise SecurityError("SecurityLayer requires a ConnectionManager with encryption keys")
        self._manager = manager
        self._keys = manager.keys

    @property
    def path(self) -> Path:
        return self._manager.path

    def is_encrypted(self) -> bool:
        """True when the file on disk lacks the plaintext SQLite header."""
        if not self.path.exists() or self.path.stat().st_size == 0:
            return False
        return not driver.has_plaintext_header(self.path)

    async def enable_encryption(self) -> None:
        """Encrypt the existing database in place. No-op when already encrypted."""
        if not driver.sqlcipher_available():
            raise EncryptionUnavailableError()
        if self._keys.enabled and self.is_encrypted():
            return
        key_hex = key_to_hex(self._keys.get_or_create_key())
        async with self._manager.maintenance():
            was_open = await self._close()
            try:
                if self.path.exists():
                    await self._convert(encrypt_file, self.path, key_hex)
                self._keys.set_enabled(True)
                self._keys.record_rotation()
            finally:
                if was_open:
                    await self._reopen()
        LOGGER.info("Database encryption enabled")

    async def disable_encryption(self) -> None:
        """Decrypt the database in place and drop the key. No-op when not encrypted."""
        if not self._keys.enabled:
            return
        key = self._keys.get_key()
        if key is None:
            raise MissingKeyError("Cannot decrypt: no encryption key in the keystore")
        key_hex = key_to_hex(key)
        async with self._manager.maintenance():
            was_open = await self._close()
            try:
                if self.is_encrypted():
                    await self._convert(decrypt_file, self.path, key_hex)
                self._keys.set_enabled(False)
                self._keys.remove_key()
            finally:
                if was_open:
                    await self._reopen()
        LOGGER.info("Database encryption disabled")

    async def rotate_key(self) -> None:
        """Re-encrypt the database under a freshly generated key.

        Raises:
            RotationNotApplicableError: encryption is not enabled.
            MissingKeyError: the current key is gone from the keystore.
        """
        if not self._keys.enabled:
            raise RotationNotApplicableError()
        old_key = self._keys.get_key()
        if old_key is None:
            raise MissingKeyError("Cannot rotate: no encryption key in the keystore")
        new_key = generate_key()
        async with self._manager.maintenance():
            was_open = await self._close()
            try:
                staged = await self._convert(rekey_file, self.path, key_to_hex(old_key), key_to_hex(new_key))
                self._commit_rotation(staged, old_key, new_key)
            finally:
                if was_open:
                    await self._reopen()
        LOGGER.info("Database encryption key rotated")

    def _commit_rotation(self, staged: Path, old_key: str, new_key: str) -> None:
        # The original file stays aside until the keystore holds the new key.
        previous = self.path.with_name(self.path.name + ".previous")
        os.replace(self.path, previous)
        os.replace(staged, self.path)
        try:
            self._keys.store_key(new_key)
        except SecurityError:
            os.replace(previous, self.path)
            self._keys.store_key(old_key)
            raise
        for candidate in sidecar_paths(self.path):
            candidate.unlink(missing_ok=True)
        previous.unlink(missing_ok=True)
        self._keys.record_rotation()

    def should_rotate_key(self, now: datetime | None = None) -> bool:
        if not self._keys.enabled:
            return False
        interval = timedelta(days=self._manager.settings.key_rotation_days)
        return self._keys.should_rotate(interval, now=now)

    def validate_security(self) -> SecurityValidationResult:
        """Report what keeps the database from being secure at rest.

        A plaintext database is never secure. A keystore that cannot be read
        is an issue too; it is reported rather than raised.
        """
        issues: list[str] = []
        warnings: list[str] = []

        if self._keys.enabled:
            if not driver.sqlcipher_available():
                issues.append("Encryption is enabled but SQLCipher support is not installed")
            try:
                if self._keys.get_key() is None:
                    issues.append("Encryption is enabled but no key is present in the keystore")
                if self.should_rotate_key():
                    warnings.append("Encryption key rotation is overdue")
            except SecurityError as exc:
                issues.append(f"Encryption keystore is inaccessible: {exc}")
            if self.path.exists() and not self.is_encrypted():
                issues.append("Encryption is enabled but the database file is plaintext")
        else:
            issues.append("Database encryption is disabled")

        if self.path.exists() and self.path.stat().st_mode & _WORLD_READABLE:
            warnings.append("Database file is readable by other users")

        return SecurityValidationResult(is_secure=not issues, issues=issues, warnings=warnings)

    def restrict_permissions(self) -> None:
        """Make the database and its companion files owner-only."""
        for candidate in (self.path, *sidecar_paths(self.path)):
            if candidate.exists():
                candidate.chmod(0o600)

    async def _close(self) -> bool:
        was_open = self._manager.is_initialized
        if was_open:
            await self._manager.close()
        return was_open

    async def _reopen(self) -> None:
        await self._manager.initialize()
        # sqlcipher_export renumbers implicit rowids, which key the search index.
        try:
            await self._manager.search_index.rebuild()
        except SearchIndexError as exc:
            LOGGER.warning("Search index rebuild after conversion failed: %s", exc)

    async def _convert(self, func: Any, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except driver.DRIVER_ERRORS as exc:
            _staging_path(self.path).unlink(missing_ok=True)
            raise EncryptionFailedError(f"Database conversion failed: {exc}") from exc


__all__ = [
    "SecurityLayer",
    "SecurityValidationResult",
    "decrypt_file",
    "encrypt_file",
    "rekey_file",
]
