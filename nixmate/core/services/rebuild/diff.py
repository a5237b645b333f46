"""
Diff engine — compare two package snapshots.

Packages are matched by name.  A package counts as updated only when
both versions are non-empty and the strings differ, so a rebuild that
changes store contents without changing the version string does not
show up here.
"""

from __future__ import annotations

from collections.abc import Iterable

from nixmate.core.models.rebuild import PackageSnapshot, RebuildDiff


def _changed(old: str | None, new: str | None) -> tuple[str, str] | None:
    if old is not None and new is not None and old != new:
        return old, new
    return None


def compute_diff(
    pre: PackageSnapshot,
    post: PackageSnapshot,
    services_restarted: Iterable[str] = (),
) -> RebuildDiff:
    """Every name lands in at most one of added / removed / updated."""
    pre_map = dict(pre.packages)
    post_map = dict(post.packages)

    added: list[tuple[str, str]] = []
    updated: list[tuple[str, str, str]] = []
    for name, version in post_map.items():
        if name not in pre_map:
            added.append((name, version))
            continue
        old = pre_map[name]
        if old and version and old != version:
            updated.append((name, old, version))

    removed = [(name, version) for name, version in pre_map.items() if name not in post_map]

    kernel_changed = _changed(pre.kernel, post.kernel)
    return RebuildDiff(
        added=added,
        removed=removed,
        updated=updated,
        kernel_changed=kernel_changed,
        reboot_needed=kernel_changed is not None,
        os_version_changed=_changed(pre.os_version, post.os_version),
        services_restarted=list(services_restarted),
    )
