"""
Configuration loader — reads config.yml into the Settings model.

The config file lives in the user config directory
(``$XDG_CONFIG_HOME/nixmate/config.yml``, falling back to
``~/.config/nixmate/config.yml``).  A missing file means defaults.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

from nixmate.core.models.settings import Settings

logger = logging.getLogger(__name__)

APP_NAME = "nixmate"
CONFIG_FILE = "config.yml"


class ConfigError(Exception):
    """Raised when the configuration file is unreadable or invalid."""


def user_config_dir() -> Path:
    """The XDG user config directory."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg and Path(xdg).is_absolute():
        return Path(xdg)
    try:
        return Path.home() / ".config"
    except RuntimeError:
        return Path(".")


def app_config_dir() -> Path:
    """Directory holding nixmate's config and history files."""
    return user_config_dir() / APP_NAME


def default_config_path() -> Path:
    return app_config_dir() / CONFIG_FILE


def load_settings(path: Path | None = None) -> Settings:
    """Load and validate settings.

    Args:
        path: Explicit config file.  If None, the default location is used.

    Returns:
        Validated Settings model (defaults if the file does not exist).

    Raises:
        ConfigError: If the file exists but cannot be read or is invalid.
    """
    if path is None:
        path = default_config_path()

    if not path.is_file():
        logger.debug("No config file at %s — using defaults", path)
        return Settings()

    logger.debug("Loading settings from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return Settings()

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    # Accept both flat keys and a top-level "rebuild:" section
    settings_data = (data["rebuild"] or {}) if "rebuild" in data else data
    if not isinstance(settings_data, dict):
        raise ConfigError(f"Expected 'rebuild' to be a mapping in {path}")

    try:
        settings = Settings.model_validate(settings_data)
    except Exception as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    logger.info("Loaded settings from %s", path)
    return settings
