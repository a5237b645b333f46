"""
Logging setup for the nixmate CLI.

``setup_logging`` is called once by main.py; every module just does
``logger = logging.getLogger(__name__)``.

Console level precedence:
    --debug / --verbose / --quiet  >  NIXMATE_LOG_LEVEL  >  WARNING

A log file can be added with NIXMATE_LOG_FILE (level from
NIXMATE_LOG_FILE_LEVEL, else the console level).  Rebuild output
itself never goes through logging; only nixmate's own diagnostics do.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping

ENV_LEVEL = "NIXMATE_LOG_LEVEL"
ENV_FILE = "NIXMATE_LOG_FILE"
ENV_FILE_LEVEL = "NIXMATE_LOG_FILE_LEVEL"

_DEFAULT_LEVEL = "WARNING"

# ── Formats ─────────────────────────────────────────────────────

_FORMATS: dict[int, tuple[str, str | None]] = {
    logging.DEBUG: ("%(asctime)s %(levelname)-5s %(name)s:%(lineno)d — %(message)s", "%H:%M:%S"),
    logging.INFO: ("%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
}
_FMT_PLAIN = "%(message)s"
_FMT_FILE = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d — %(message)s"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

# Chatty stdlib loggers kept at WARNING unless debugging
_NOISY_LOGGERS = ("asyncio", "concurrent.futures")


def resolve_level(
    *,
    debug: bool = False,
    verbose: bool = False,
    quiet: bool = False,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Pick the console level name from CLI flags, then the environment."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    env = os.environ if environ is None else environ
    return env.get(ENV_LEVEL) or _DEFAULT_LEVEL


def setup_logging(
    level: str = _DEFAULT_LEVEL,
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Configure the root logger for the whole process.

    Args:
        level: Console level name (unknown names mean WARNING).
        log_file: Optional path of an extra log file.
        log_file_level: Level for the file (defaults to ``level``).
        quiet_third_party: Keep noisy loggers at WARNING unless DEBUG.
    """
    console_level = _parse_level(level)

    fmt, datefmt = _format_for(console_level)
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root_level = console_level

    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else console_level
        try:
            fh = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            root.warning("Cannot open log file %s: %s", log_file, e)
        else:
            fh.setLevel(file_level)
            fh.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
            root.addHandler(fh)
            root_level = min(root_level, file_level)

    root.setLevel(root_level)

    if quiet_third_party and console_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.raiseExceptions = False


def setup_from_env(
    level: str,
    *,
    debug: bool = False,
    environ: Mapping[str, str] | None = None,
) -> None:
    """``setup_logging`` with the file options taken from the environment."""
    env = os.environ if environ is None else environ
    setup_logging(
        level=level,
        log_file=env.get(ENV_FILE),
        log_file_level=env.get(ENV_FILE_LEVEL),
        quiet_third_party=not debug,
    )


def _format_for(level: int) -> tuple[str, str | None]:
    for threshold in (logging.DEBUG, logging.INFO):
        if level <= threshold:
            return _FORMATS[threshold]
    return _FMT_PLAIN, None


def _parse_level(level: str | None) -> int:
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric
