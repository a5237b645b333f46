"""
Domain models — Pydantic types for nixmate.

All models are re-exported here for convenient access:

    from nixmate.core.models import BuildPhase, RebuildMode, HistoryEntry, Settings
"""

from nixmate.core.models.rebuild import (
    PIPELINE_PHASES,
    PIPELINE_SLOTS,
    BuildPhase,
    BuildStats,
    HistoryEntry,
    LogLevel,
    LogLine,
    PackageSnapshot,
    PhaseTiming,
    RebuildDiff,
    RebuildMode,
    RunConfiguration,
)
from nixmate.core.models.settings import Settings

__all__ = [
    "PIPELINE_PHASES",
    "PIPELINE_SLOTS",
    # rebuild.py
    "BuildPhase",
    "BuildStats",
    "HistoryEntry",
    "LogLevel",
    "LogLine",
    "PackageSnapshot",
    "PhaseTiming",
    "RebuildDiff",
    "RebuildMode",
    "RunConfiguration",
    # settings.py
    "Settings",
]
