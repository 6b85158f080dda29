"""Chatvault error hierarchy.

All project exceptions inherit from ChatVaultError, enabling:
- ``except ChatVaultError`` at the host boundary
- Fine-grained catches deeper in the stack (``except MigrationFailedError``)

Hierarchy:
    ChatVaultError
    ├── ConfigError
    ├── DatabaseError
    │   ├── StorageConnectionError
    │   │   ├── NotInitializedError
    │   │   └── ConnectionFailedError
    │   ├── MigrationError
    │   │   ├── MigrationFailedError
    │   │   ├── SchemaValidationError
    │   │   ├── BackupNotFoundError
    │   │   ├── BackupCorruptedError
    │   │   └── UnknownSchemaVersionError
    │   ├── SearchIndexError
    │   │   ├── IndexUnavailableError
    │   │   ├── IndexSetupError
    │   │   ├── IndexRecordNotFoundError
    │   │   ├── SearchFailedError
    │   │   └── SyncFailedError
    │   └── DataError
    │       ├── InsertFailedError
    │       ├── QueryFailedError
    │       ├── DeleteFailedError
    │       └── RecordNotFoundError
    └── SecurityError
        ├── InvalidKeyError
        ├── MissingKeyError
        ├── RotationNotApplicableError
        ├── EncryptionUnavailableError
        └── EncryptionFailedError
"""

from __future__ import annotations


class ChatVaultError(Exception):
    """Base class for all chatvault errors."""


class ConfigError(ChatVaultError):
    """Invalid configuration or preference data."""


class DatabaseError(ChatVaultError):
    """Base class for database errors."""


# Connection


class StorageConnectionError(DatabaseError):
    """The database handle is not usable."""


class NotInitializedError(StorageConnectionError):
    def __init__(self) -> None:
        super().__init__("Database not initialized; call initialize() first")


class ConnectionFailedError(StorageConnectionError):
    pass


# Schema / migration


class MigrationError(DatabaseError):
    pass


class MigrationFailedError(MigrationError):
    def __init__(self, version: int, cause: BaseException | str) -> None:
        self.version = version
        super().__init__(f"Migration to v{version} failed: {cause}")


class SchemaValidationError(MigrationError):
    def __init__(self, issues: list[str]) -> None:
        self.issues = issues
        super().__init__("Schema validation failed: " + "; ".join(issues))


class BackupNotFoundError(MigrationError):
    pass


class BackupCorruptedError(MigrationError):
    pass


class UnknownSchemaVersionError(MigrationError):
    def __init__(self, version: int, supported: int) -> None:
        self.version = version
        super().__init__(f"Unsupported DB schema version {version} (expected <= {supported})")


# Search index


class SearchIndexError(DatabaseError):
    pass


class IndexUnavailableError(SearchIndexError):
    pass


class IndexSetupError(SearchIndexError):
    pass


class IndexRecordNotFoundError(SearchIndexError):
    pass


class SearchFailedError(SearchIndexError):
    pass


class SyncFailedError(SearchIndexError):
    pass


# Data


class DataError(DatabaseError):
    pass


class InsertFailedError(DataError):
    pass


class QueryFailedError(DataError):
    pass


class DeleteFailedError(DataError):
    pass


class RecordNotFoundError(DataError):
    pass


# Security


class SecurityError(ChatVaultError):
    """Base class for encryption and key management errors."""


class InvalidKeyError(SecurityError):
    pass


class MissingKeyError(SecurityError):
    pass


class RotationNotApplicableError(SecurityError):
    def __init__(self) -> None:
        super().__init__("Key rotation requires encryption to be enabled")


class EncryptionUnavailableError(SecurityError):
    def __init__(self) -> None:
        super().__init__("SQLCipher support is not installed (pip install 'chatvault[encryption]')")


class EncryptionFailedError(SecurityError):
    pass
