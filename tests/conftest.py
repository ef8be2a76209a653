"""Pytest fixtures for ThoughtTree tests."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from hypothesis import Phase, Verbosity, settings

_TEST_BASE_DIR = Path(tempfile.mkdtemp(prefix="thoughttree-tests-"))
os.environ["THOUGHTTREE_CONFIG_DIR"] = str(_TEST_BASE_DIR / "config")
os.environ["THOUGHTTREE_DATA_DIR"] = str(_TEST_BASE_DIR / "data")

from thoughttree.acp.pending import PendingPermissions  # noqa: E402
from thoughttree.config import ConfigStore, ThoughtTreeConfig  # noqa: E402
from thoughttree.debug_log import clear_log_buffer  # noqa: E402
from tests.helpers import RecordingSink  # noqa: E402

if TYPE_CHECKING:
    from collections.abc import Generator


settings.register_profile(
    "ci",
    max_examples=100,
    deadline=None,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
)
settings.register_profile(
    "dev",
    max_examples=20,
    deadline=500,
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))


@pytest.fixture(autouse=True)
def _clean_log_buffer() -> Generator[None, None, None]:
    clear_log_buffer()
    yield
    clear_log_buffer()


@pytest.fixture
def notes_dir(tmp_path: Path) -> Path:
    """A notes directory with a couple of files and a hidden folder."""
    root = tmp_path / "notes"
    (root / "projects").mkdir(parents=True)
    (root / ".obsidian").mkdir()
    (root / "inbox.md").write_text("# Inbox\n")
    (root / "projects" / "roadmap.md").write_text("# Roadmap\n")
    (root / ".obsidian" / "workspace.json").write_text("{}")
    return root


@pytest.fixture
def config_store(tmp_path: Path, notes_dir: Path) -> ConfigStore:
    return ConfigStore(
        tmp_path / "config" / "config.toml",
        ThoughtTreeConfig(notes_directory=str(notes_dir)),
    )


@pytest.fixture
def pending() -> PendingPermissions:
    return PendingPermissions()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
