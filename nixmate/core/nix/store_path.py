"""
Store-path parsing — ``/nix/store/<hash>-<name>-<version>`` → (name, version).

The final path segment of a store path is a 32-character hash, a dash,
then the package name, optionally followed by ``-<version>``.  The
version is the part after the last dash when it starts with a digit.
"""

from __future__ import annotations

_HASH_LEN = 32

# Build-infrastructure artifacts that are not user-facing packages
_SKIP_PREFIXES = (
    "hook", "setup-hook", "source", "patch", "wrap",
    "move-", "make-", "compress-", "strip-",
    "audit-", "fixup-",
)
_SKIP_NAMES = frozenset({"stdenv", "builder", "raw", "env-manifest"})


def parse_store_path(path: str) -> tuple[str, str] | None:
    """Split a store path into (name, version).

    Returns None when the final segment is too short to carry a hash.
    The version is empty when the remainder has no digit-led suffix.
    """
    basename = path.rstrip("/").rsplit("/", 1)[-1]
    if len(basename) < _HASH_LEN + 2:
        return None

    rest = basename[_HASH_LEN + 1:]
    name, sep, version = rest.rpartition("-")
    if sep and version and version[0] in "0123456789":
        return name, version
    return rest, ""


def is_infrastructure(name: str) -> bool:
    """True for build-infrastructure names excluded from snapshots."""
    return name.startswith(_SKIP_PREFIXES) or name in _SKIP_NAMES
