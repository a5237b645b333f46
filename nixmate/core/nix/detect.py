"""
System detection — flakes vs channels.

Reports whether the machine is configured through a flake and, if so,
which directory holds ``flake.nix``.  Only well-known locations are
checked; an explicit ``flake_path`` in config.yml overrides this.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)

_SYSTEM_FLAKE_DIR = Path("/etc/nixos")
_HOME_FLAKE_DIRS = (".config/nixos", "nixos", ".nixos")


class SystemConfig(BaseModel):
    """How the running system is configured."""

    uses_flakes: bool = False
    flake_path: str | None = None


def flake_candidates(home: Path | None = None) -> list[Path]:
    """Directories that may contain the system flake, in priority order."""
    home = home if home is not None else Path.home()
    return [_SYSTEM_FLAKE_DIR] + [home / rel for rel in _HOME_FLAKE_DIRS]


def detect_system(candidates: list[Path] | None = None) -> SystemConfig:
    """Detect flake usage by looking for ``flake.nix`` in the candidates."""
    if candidates is None:
        try:
            candidates = flake_candidates()
        except RuntimeError as e:
            # Path.home() fails without HOME and without a passwd entry
            logger.debug("Cannot resolve home directory: %s", e)
            candidates = [_SYSTEM_FLAKE_DIR]

    for directory in candidates:
        try:
            if (directory / "flake.nix").is_file():
                logger.debug("Found system flake in %s", directory)
                return SystemConfig(uses_flakes=True, flake_path=str(directory))
        except OSError as e:
            logger.debug("Cannot inspect %s: %s", directory, e)

    return SystemConfig()
