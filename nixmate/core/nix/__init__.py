"""
NixOS system inspection — store paths, detection, package snapshots.

Public API::

    from nixmate.core.nix import parse_store_path, detect_system, take_snapshot
"""

from nixmate.core.nix.detect import SystemConfig, detect_system
from nixmate.core.nix.snapshot import take_snapshot
from nixmate.core.nix.store_path import is_infrastructure, parse_store_path

__all__ = [
    "SystemConfig",
    "detect_system",
    "is_infrastructure",
    "parse_store_path",
    "take_snapshot",
]
