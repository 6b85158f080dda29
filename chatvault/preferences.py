"""JSON preference storage kept outside the database.

Holds the encryption toggle and the provider configurations. The file is
small and rewritten atomically on every change.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from chatvault.errors import ConfigError
from chatvault.lib.json import JSONDecodeError, dumps, loads
from chatvault.lib.log import get_logger
from chatvault.models import ProviderConfiguration
from chatvault.types import Provider

LOGGER = get_logger(__name__)

ENCRYPTION_ENABLED_KEY = "database_encryption_enabled"
PROVIDER_CONFIGURATIONS_KEY = "provider_configurations"


class Preferences:
    """Key/value preferences persisted as a JSON object."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = loads(self.path.read_bytes())
        except JSONDecodeError as exc:
            raise ConfigError(f"Invalid preferences file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Preferences file {self.path} must contain a JSON object")
        return data

    def get(self, key: str, default: Any = None) -> Any:
        return self.load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self.load()
        data[key] = value
        self._write(data)

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(dumps(data, indent=True), encoding="utf-8")
        os.replace(tmp, self.path)

    @property
    def encryption_enabled(self) -> bool:
        return bool(self.get(ENCRYPTION_ENABLED_KEY, False))

    @encryption_enabled.setter
    def encryption_enabled(self, value: bool) -> None:
        self.set(ENCRYPTION_ENABLED_KEY, bool(value))


class ProviderConfigurationStore:
    """Provider endpoints, at most one of which is the default."""

    def __init__(self, preferences: Preferences) -> None:
        self._preferences = preferences

    def load_all(self) -> list[ProviderConfiguration]:
        configs: list[ProviderConfiguration] = []
        for raw in self._preferences.get(PROVIDER_CONFIGURATIONS_KEY, []):
            try:
                configs.append(ProviderConfiguration.model_validate(raw))
            except ValidationError as exc:
                LOGGER.warning("Skipping invalid provider configuration: %s", exc)
        return configs

    def get(self, config_id: str) -> ProviderConfiguration | None:
        return next((config for config in self.load_all() if config.id == config_id), None)

    def for_provider(self, provider: Provider) -> list[ProviderConfiguration]:
        return [config for config in self.load_all() if config.provider is provider]

    def default(self) -> ProviderConfiguration | None:
        configs = self.load_all()
        return next((config for config in configs if config.is_default), configs[0] if configs else None)

    def save(self, config: ProviderConfiguration) -> None:
        """Insert or replace by id. Saving a default clears the flag on the others."""
        configs = [existing for existing in self.load_all() if existing.id != config.id]
        if config.is_default:
            configs = [existing.model_copy(update={"is_default": False}) for existing in configs]
        configs.append(config)
        self._store(configs)

    def delete(self, config_id: str) -> bool:
        configs = self.load_all()
        remaining = [config for config in configs if config.id != config_id]
        if len(remaining) == len(configs):
            return False
        self._store(remaining)
        return True

    def ensure_defaults(self) -> list[ProviderConfiguration]:
        """Create one configuration per provider kind when none exist yet."""
        configs = self.load_all()
        if configs:
            return configs
        configs = [
            ProviderConfiguration.default_for(provider, is_default=provider is Provider.OPENAI)
            for provider in Provider
        ]
        self._store(configs)
        return configs

    def _store(self, configs: list[ProviderConfiguration]) -> None:
        self._preferences.set(
            PROVIDER_CONFIGURATIONS_KEY, [config.model_dump(mode="json") for config in configs]
        )


__all__ = ["Preferences", "ProviderConfigurationStore"]
