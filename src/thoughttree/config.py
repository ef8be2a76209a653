"""Persisted user settings and the key/value store facade over them."""

from __future__ import annotations

import asyncio
import os
import tempfile
import tomllib
from pathlib import Path
from typing import Any, TypeAlias

import tomlkit
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from thoughttree.debug_log import log
from thoughttree.errors import ConfigurationError
from thoughttree.paths import get_config_path
from thoughttree.providers import DEFAULT_PROVIDER, ProviderKind

ProviderPaths: TypeAlias = dict[ProviderKind, str]
ModelPreferences: TypeAlias = dict[ProviderKind, str]


class ThoughtTreeConfig(BaseModel):
    """Root configuration model."""

    model_config = ConfigDict(extra="forbid")

    notes_directory: str | None = Field(
        default=None, description="Sandbox root the agent may read from"
    )
    provider: ProviderKind = Field(default=DEFAULT_PROVIDER, description="Selected agent provider")
    provider_paths: ProviderPaths = Field(
        default_factory=dict, description="User-overridden executable path per provider"
    )
    model_preferences: ModelPreferences = Field(
        default_factory=dict, description="Preferred model identifier per provider"
    )

    @field_validator("provider_paths")
    @classmethod
    def validate_provider_paths(cls, value: ProviderPaths) -> ProviderPaths:
        for provider, path in value.items():
            if not Path(path).is_absolute():
                msg = f"Path override for {provider} must be absolute: {path}"
                raise ValueError(msg)
        return value

    @field_validator("model_preferences")
    @classmethod
    def drop_blank_models(cls, value: ModelPreferences) -> ModelPreferences:
        return {provider: model for provider, model in value.items() if model.strip()}

    @classmethod
    def load(cls, config_path: Path | None = None) -> ThoughtTreeConfig:
        """Load configuration from TOML file or use defaults."""
        if config_path is None:
            config_path = get_config_path()

        if config_path.exists():
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
            return cls.model_validate(data)

        return cls()

    async def save(self, path: Path) -> None:
        """Serialize current config to TOML file (created if missing)."""
        doc = tomlkit.document()
        if self.notes_directory is not None:
            doc["notes_directory"] = self.notes_directory
        doc["provider"] = self.provider.value

        for name in ("provider_paths", "model_preferences"):
            mapping: dict[ProviderKind, str] = getattr(self, name)
            table = tomlkit.table()
            for provider, value in sorted(mapping.items()):
                table[provider.value] = value
            doc[name] = table

        content = tomlkit.dumps(doc)
        await asyncio.to_thread(_atomic_write, path, content)


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=".toml")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        Path(tmp_name).replace(path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class ConfigStore:
    """Key/value view over :class:`ThoughtTreeConfig` backed by a TOML file.

    ``set`` validates eagerly so an invalid value never reaches ``save``.
    """

    def __init__(self, path: Path | None = None, config: ThoughtTreeConfig | None = None) -> None:
        self.path = path if path is not None else get_config_path()
        try:
            self._config = config if config is not None else ThoughtTreeConfig.load(self.path)
        except (tomllib.TOMLDecodeError, ValidationError) as exc:
            raise ConfigurationError(f"Invalid config file {self.path}: {exc}") from exc

    @property
    def config(self) -> ThoughtTreeConfig:
        return self._config

    def get(self, key: str) -> Any | None:
        self._check_key(key)
        return getattr(self._config, key)

    def set(self, key: str, value: Any) -> None:
        self._check_key(key)
        data = self._config.model_dump()
        data[key] = value
        try:
            self._config = ThoughtTreeConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid value for '{key}': {exc}") from exc

    async def save(self) -> None:
        try:
            await self._config.save(self.path)
        except OSError as exc:
            raise ConfigurationError(f"Failed to save config: {exc}") from exc
        log.info(f"[config] Saved settings to {self.path}")

    def notes_directory(self) -> Path:
        """Return the configured sandbox root, which must be an existing directory."""
        raw = self._config.notes_directory
        if not raw:
            raise ConfigurationError(
                "Notes directory not configured. Please set it in settings."
            )
        path = Path(raw).expanduser()
        if not path.is_dir():
            raise ConfigurationError(f"Notes directory does not exist: {path}")
        return path

    def provider_path(self, provider: ProviderKind) -> str | None:
        return self._config.provider_paths.get(provider)

    def model_preference(self, provider: ProviderKind) -> str | None:
        return self._config.model_preferences.get(provider)

    @staticmethod
    def _check_key(key: str) -> None:
        if key not in ThoughtTreeConfig.model_fields:
            valid = ", ".join(sorted(ThoughtTreeConfig.model_fields))
            raise ConfigurationError(f"Unknown setting '{key}'. Valid settings: {valid}")


__all__ = ["ConfigStore", "ModelPreferences", "ProviderPaths", "ThoughtTreeConfig"]
