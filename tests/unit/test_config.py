"""Unit tests for persisted settings."""

from __future__ import annotations

import tomllib
from typing import TYPE_CHECKING

import pytest

from thoughttree.config import ConfigStore, ThoughtTreeConfig
from thoughttree.errors import ConfigurationError
from thoughttree.paths import get_config_path
from thoughttree.providers import ProviderKind

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.unit


class TestThoughtTreeConfig:
    def test_defaults(self) -> None:
        config = ThoughtTreeConfig()
        assert config.notes_directory is None
        assert config.provider is ProviderKind.CLAUDE_CODE
        assert config.provider_paths == {}
        assert config.model_preferences == {}

    def test_load_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        assert ThoughtTreeConfig.load(tmp_path / "missing.toml") == ThoughtTreeConfig()

    def test_load_from_toml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.toml"
        path.write_text(
            'notes_directory = "/home/me/notes"\n'
            'provider = "gemini-cli"\n'
            "[provider_paths]\n"
            '"claude-code" = "/opt/claude/claude-code-acp"\n'
            "[model_preferences]\n"
            '"gemini-cli" = "gemini-2.5-pro"\n'
        )

        config = ThoughtTreeConfig.load(path)

        assert config.notes_directory == "/home/me/notes"
        assert config.provider is ProviderKind.GEMINI_CLI
        assert config.provider_paths == {ProviderKind.CLAUDE_CODE: "/opt/claude/claude-code-acp"}
        assert config.model_preferences == {ProviderKind.GEMINI_CLI: "gemini-2.5-pro"}

    def test_relative_provider_path_is_rejected(self) -> None:
        with pytest.raises(ValueError, match="must be absolute"):
            ThoughtTreeConfig(provider_paths={ProviderKind.CLAUDE_CODE: "bin/claude-code-acp"})

    def test_blank_model_preferences_are_dropped(self) -> None:
        config = ThoughtTreeConfig(
            model_preferences={ProviderKind.CLAUDE_CODE: "  ", ProviderKind.GEMINI_CLI: "flash"}
        )
        assert config.model_preferences == {ProviderKind.GEMINI_CLI: "flash"}

    def test_unknown_keys_are_rejected(self) -> None:
        with pytest.raises(ValueError):
            ThoughtTreeConfig.model_validate({"theme": "dark"})

    async def test_save_round_trips(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "config.toml"
        config = ThoughtTreeConfig(
            notes_directory="/home/me/notes",
            provider=ProviderKind.GEMINI_CLI,
            model_preferences={ProviderKind.CLAUDE_CODE: "sonnet"},
        )

        await config.save(path)

        assert ThoughtTreeConfig.load(path) == config
        assert [p.name for p in path.parent.iterdir()] == ["config.toml"]


class TestConfigStore:
    def test_default_path_honours_config_dir_override(self) -> None:
        assert ConfigStore().path == get_config_path()

    def test_get_and_set(self, tmp_path: Path) -> None:
        store = ConfigStore(tmp_path / "config.toml")
        store.set("notes_directory", "/home/me/notes")
        assert store.get("notes_directory") == "/home/me/notes"

    def test_unknown_key(self, tmp_path: Path) -> None:
        store = ConfigStore(tmp_path / "config.toml")
        with pytest.raises(ConfigurationError, match="Unknown setting 'theme'"):
            store.get("theme")
        with pytest.raises(ConfigurationError, match="Unknown setting"):
            store.set("theme", "dark")

    def test_invalid_value_keeps_previous_config(self, tmp_path: Path) -> None:
        store = ConfigStore(tmp_path / "config.toml")
        with pytest.raises(ConfigurationError, match="Invalid value for 'provider'"):
            store.set("provider", "copilot")
        assert store.config.provider is ProviderKind.CLAUDE_CODE

    async def test_save_persists(self, tmp_path: Path) -> None:
        path = tmp_path / "config.toml"
        store = ConfigStore(path)
        store.set("provider", "gemini-cli")

        await store.save()

        with path.open("rb") as handle:
            assert tomllib.load(handle)["provider"] == "gemini-cli"
        assert ConfigStore(path).config.provider is ProviderKind.GEMINI_CLI

    def test_corrupt_file_is_configuration_error(self, tmp_path: Path) -> None:
        path = tmp_path / "config.toml"
        path.write_text("notes_directory = [unterminated")
        with pytest.raises(ConfigurationError, match="Invalid config file"):
            ConfigStore(path)

    def test_notes_directory_unset(self, tmp_path: Path) -> None:
        store = ConfigStore(tmp_path / "config.toml")
        with pytest.raises(ConfigurationError, match="not configured"):
            store.notes_directory()

    def test_notes_directory_missing(self, tmp_path: Path) -> None:
        store = ConfigStore(
            tmp_path / "config.toml",
            ThoughtTreeConfig(notes_directory=str(tmp_path / "gone")),
        )
        with pytest.raises(ConfigurationError, match="does not exist"):
            store.notes_directory()

    def test_notes_directory_present(self, config_store: ConfigStore, notes_dir: Path) -> None:
        assert config_store.notes_directory() == notes_dir

    def test_provider_lookups(self, tmp_path: Path) -> None:
        store = ConfigStore(
            tmp_path / "config.toml",
            ThoughtTreeConfig(
                provider_paths={ProviderKind.GEMINI_CLI: "/opt/gemini/gemini"},
                model_preferences={ProviderKind.CLAUDE_CODE: "opus"},
            ),
        )
        assert store.provider_path(ProviderKind.GEMINI_CLI) == "/opt/gemini/gemini"
        assert store.provider_path(ProviderKind.CLAUDE_CODE) is None
        assert store.model_preference(ProviderKind.CLAUDE_CODE) == "opus"
