"""
Package snapshot — what the active system has installed right now.

A snapshot is the closure of ``/run/current-system`` reduced to
(name, version) pairs, plus the kernel and NixOS version identifiers.
Two snapshots (before and after a rebuild) feed the diff engine.

Every failure degrades to an empty list / None.  A snapshot never
raises.
"""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any

from nixmate.core.models.rebuild import PackageSnapshot
from nixmate.core.nix.store_path import is_infrastructure, parse_store_path

logger = logging.getLogger(__name__)

CURRENT_SYSTEM = Path("/run/current-system")


def take_snapshot(
    system_path: Path = CURRENT_SYSTEM,
    *,
    timeout: float = 120.0,
) -> PackageSnapshot:
    """Capture packages, kernel and OS version of the active system."""
    packages = _closure_packages(system_path, timeout)
    if not packages:
        packages = _sw_bin_packages(system_path)

    snapshot = PackageSnapshot(
        packages=packages,
        kernel=_kernel_version(system_path),
        os_version=_os_version(system_path),
    )
    logger.debug(
        "Snapshot of %s: %d packages, kernel=%s, version=%s",
        system_path, len(snapshot.packages), snapshot.kernel, snapshot.os_version,
    )
    return snapshot


# ── Closure via nix path-info ───────────────────────────────────


def _closure_packages(system_path: Path, timeout: float) -> list[tuple[str, str]]:
    if not (system_path / "sw" / "bin").exists():
        return []

    try:
        result = subprocess.run(
            ["nix", "path-info", "-r", "--json", str(system_path)],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        logger.warning("nix CLI not found — package snapshot unavailable")
        return []
    except subprocess.TimeoutExpired:
        logger.warning("nix path-info timed out after %ss", timeout)
        return []
    except OSError as e:
        logger.warning("nix path-info failed to start: %s", e)
        return []

    if result.returncode != 0:
        logger.warning(
            "nix path-info exited with %d: %s",
            result.returncode, result.stderr.strip()[:200],
        )
        return []

    return parse_path_info(result.stdout)


def parse_path_info(raw: str) -> list[tuple[str, str]]:
    """Extract (name, version) pairs from ``nix path-info --json`` output.

    Newer Nix prints an object keyed by store path; older releases print
    an array of ``{"path": ...}`` objects.  Both are accepted.  The
    result is sorted by name with duplicate names removed.
    """
    try:
        data: Any = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Unparseable nix path-info output: %s", e)
        return []

    paths: list[str] = []
    if isinstance(data, dict):
        paths = [str(key) for key in data]
    elif isinstance(data, list):
        for item in data:
            if isinstance(item, dict) and isinstance(item.get("path"), str):
                paths.append(item["path"])
            elif isinstance(item, str):
                paths.append(item)

    packages: list[tuple[str, str]] = []
    for path in paths:
        parsed = parse_store_path(path)
        if parsed is None or is_infrastructure(parsed[0]):
            continue
        packages.append(parsed)

    packages.sort(key=lambda pkg: pkg[0])
    deduped: list[tuple[str, str]] = []
    for pkg in packages:
        if deduped and deduped[-1][0] == pkg[0]:
            continue
        deduped.append(pkg)
    return deduped


# ── Fallbacks and identifiers ───────────────────────────────────


def _sw_bin_packages(system_path: Path) -> list[tuple[str, str]]:
    """Rough package list from the executables in sw/bin (no versions)."""
    bin_dir = system_path / "sw" / "bin"
    try:
        names = sorted(entry.name for entry in bin_dir.iterdir())
    except OSError:
        return []
    return [(name, "") for name in names if name.strip()]


def _kernel_version(system_path: Path) -> str | None:
    modules_dir = system_path / "kernel-modules" / "lib" / "modules"
    try:
        names = sorted(entry.name for entry in modules_dir.iterdir())
    except OSError:
        return None
    for name in names:
        if not name.startswith("."):
            return name
    return None


def _os_version(system_path: Path) -> str | None:
    try:
        version = (system_path / "nixos-version").read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError):
        return None
    return version or None
