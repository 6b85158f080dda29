"""Secure storage for the database encryption key.

Only the keystore ever holds key material; nothing in the storage layer writes
it to disk.
"""

from __future__ import annotations

from typing import Protocol

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from chatvault.errors import SecurityError
from chatvault.lib.log import get_logger

LOGGER = get_logger(__name__)

SERVICE_NAME = "chatvault.database"
ENCRYPTION_KEY_ACCOUNT = "database_encryption_key"
LAST_ROTATION_ACCOUNT = "last_key_rotation"


class KeyStore(Protocol):
    """Protocol for secret persistence, one secret per account."""

    def get(self, account: str) -> str | None:
        """Return the secret stored under account, or None if absent."""
        ...

    def set(self, account: str, secret: str) -> None:
        ...

    def delete(self, account: str) -> None:
        """Remove the secret; absent accounts are ignored."""
        ...


class KeyringKeyStore:
    """KeyStore backed by the system credential store via `keyring`."""

    def __init__(self, service_name: str = SERVICE_NAME) -> None:
        self._service_name = service_name

    def get(self, account: str) -> str | None:
        try:
            return keyring.get_password(self._service_name, account)
        except KeyringError as exc:
            raise SecurityError(f"Keystore read failed for {account}: {exc}") from exc

    def set(self, account: str, secret: str) -> None:
        try:
            keyring.set_password(self._service_name, account, secret)
        except KeyringError as exc:
            raise SecurityError(f"Keystore write failed for {account}: {exc}") from exc

    def delete(self, account: str) -> None:
        try:
            keyring.delete_password(self._service_name, account)
        except PasswordDeleteError:
            LOGGER.debug("No keystore entry for %s", account)
        except KeyringError as exc:
            raise SecurityError(f"Keystore delete failed for {account}: {exc}") from exc


__all__ = [
    "ENCRYPTION_KEY_ACCOUNT",
    "KeyStore",
    "KeyringKeyStore",
    "LAST_ROTATION_ACCOUNT",
    "SERVICE_NAME",
]
