import sys
from pathlib import Path

import pytest
import pytest_asyncio

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from chatvault.config import StorageSettings
from chatvault.preferences import Preferences
from chatvault.security.keys import EncryptionKeys
from chatvault.storage.connection import ConnectionManager
from chatvault.storage.optimizer import PerformanceOptimizer
from chatvault.storage.repository import RecordStore
from tests.helpers import MemoryKeyStore


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    for var in ("CHATVAULT_DB_PATH", "CHATVAULT_PREFERENCES_PATH"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "chat.db"


@pytest.fixture
def settings(db_path) -> StorageSettings:
    return StorageSettings(db_path=db_path)


@pytest.fixture
def keystore() -> MemoryKeyStore:
    return MemoryKeyStore()


@pytest.fixture
def preferences(settings) -> Preferences:
    return Preferences(settings.resolved_preferences_path())


@pytest.fixture
def keys(keystore, preferences) -> EncryptionKeys:
    return EncryptionKeys(keystore, preferences)


@pytest_asyncio.fixture
async def manager(settings, keys):
    manager = ConnectionManager(settings, keys)
    await manager.initialize()
    yield manager
    await manager.shutdown()


@pytest.fixture
def store(manager) -> RecordStore:
    return RecordStore(manager)


@pytest.fixture
def optimizer(manager, store) -> PerformanceOptimizer:
    return PerformanceOptimizer(manager, store)
