"""
Rebuild orchestration — run nixos-rebuild and track its progress.

Public API::

    from nixmate.core.services.rebuild import RebuildOrchestrator

    orch = RebuildOrchestrator(settings)
    orch.start(RunConfiguration.from_system(detect_system(), mode=RebuildMode.SWITCH))
    while orch.is_running:
        orch.poll()                  # call every tick; never blocks
        lines, cursor = orch.lines_since(cursor)
    orch.diff, orch.history

Threads:
    - the caller's thread owns the orchestrator and calls ``poll()``
    - one worker per run spawns the child and waits for it
    - one reader per output stream classifies lines
    All cross-thread traffic is messages on a queue, plus the child pid.
"""

from nixmate.core.services.rebuild.classify import (
    beautify_line,
    classify_line,
    detect_phase,
    detect_service_restart,
    update_stats,
)
from nixmate.core.services.rebuild.diff import compute_diff
from nixmate.core.services.rebuild.orchestrator import RebuildOrchestrator
from nixmate.core.services.rebuild.supervisor import (
    ChildPidCell,
    RebuildSupervisor,
    build_argv,
    build_rebuild_command,
)

__all__ = [
    "ChildPidCell",
    "RebuildOrchestrator",
    "RebuildSupervisor",
    "beautify_line",
    "build_argv",
    "build_rebuild_command",
    "classify_line",
    "compute_diff",
    "detect_phase",
    "detect_service_restart",
    "update_stats",
]
