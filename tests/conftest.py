"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

STORE_HASH = "a" * 32


@pytest.fixture(autouse=True)
def config_home(tmp_path: Path, monkeypatch) -> Path:
    """Point XDG_CONFIG_HOME at a temp dir so tests never touch ~/.config."""
    home = tmp_path / "xdg-config"
    home.mkdir()
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home))
    for var in ("NIXMATE_LOG_LEVEL", "NIXMATE_LOG_FILE", "NIXMATE_LOG_FILE_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def store_path():
    """Build a /nix/store path for ``name``."""
    def _make(name: str) -> str:
        return f"/nix/store/{STORE_HASH}-{name}"
    return _make
