from __future__ import annotations

from pathlib import Path

import pytest

from flake_edit.config import EditContext, LockSettings
from tests._fixtures.flake_builder import FlakeBuilder


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep user config, caches and forge tokens out of every test."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "xdg-cache"))
    for name in ("GITHUB_TOKEN", "GH_TOKEN", "GITLAB_TOKEN", "GITEA_TOKEN", "FORGEJO_TOKEN"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def flake_builder(tmp_path: Path) -> FlakeBuilder:
    """Provide a reusable flake builder rooted at the pytest tmp_path."""
    return FlakeBuilder(tmp_path)


@pytest.fixture
def edit_context(tmp_path: Path) -> EditContext:
    """Non-interactive context that never shells out to regenerate the lock."""
    return EditContext(
        cache_dir=tmp_path / "cache",
        interactive=False,
        lock=LockSettings(regenerate=False),
    )
