"""Encryption key material and the persisted encryption toggle."""

from __future__ import annotations

import base64
import binascii
import secrets
from datetime import datetime, timedelta, timezone

from chatvault.errors import InvalidKeyError
from chatvault.preferences import Preferences
from chatvault.security.keystore import ENCRYPTION_KEY_ACCOUNT, LAST_ROTATION_ACCOUNT, KeyStore

KEY_BYTES = 32


def generate_key() -> str:
    """Return a new 256-bit key, base64 encoded."""
    return base64.b64encode(secrets.token_bytes(KEY_BYTES)).decode("ascii")


def key_to_hex(key: str) -> str:
    """Convert a stored base64 key to the hex form SQLCipher accepts as a raw key."""
    try:
        raw = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidKeyError("Stored encryption key is not valid base64") from exc
    if len(raw) != KEY_BYTES:
        raise InvalidKeyError(f"Encryption key must be {KEY_BYTES} bytes, got {len(raw)}")
    return raw.hex()


class EncryptionKeys:
    """Access to the encryption key and the on/off setting.

    The key lives in the keystore; the toggle lives in the preferences file.
    """

    def __init__(self, keystore: KeyStore, preferences: Preferences) -> None:
        self.keystore = keystore
        self.preferences = preferences

    @property
    def enabled(self) -> bool:
        return self.preferences.encryption_enabled

    def set_enabled(self, value: bool) -> None:
        self.preferences.encryption_enabled = value

    def get_key(self) -> str | None:
        return self.keystore.get(ENCRYPTION_KEY_ACCOUNT)

    def get_or_create_key(self) -> str:
        key = self.get_key()
        if key is None:
            key = generate_key()
            self.keystore.set(ENCRYPTION_KEY_ACCOUNT, key)
        return key

    def store_key(self, key: str) -> None:
        self.keystore.set(ENCRYPTION_KEY_ACCOUNT, key)

    def remove_key(self) -> None:
        self.keystore.delete(ENCRYPTION_KEY_ACCOUNT)

    def record_rotation(self, when: datetime | None = None) -> None:
        when = when or datetime.now(timezone.utc)
        self.keystore.set(LAST_ROTATION_ACCOUNT, when.isoformat())

    def last_rotation(self) -> datetime | None:
        raw = self.keystore.get(LAST_ROTATION_ACCOUNT)
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    def should_rotate(self, interval: timedelta, now: datetime | None = None) -> bool:
        last = self.last_rotation()
        if last is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now - last >= interval


__all__ = ["EncryptionKeys", "generate_key", "key_to_hex"]
