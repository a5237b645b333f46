"""
Channel messages — what the supervisor's threads tell the orchestrator.

Messages are immutable and self-contained: each one can be applied
without knowing which other messages (from the other output stream)
arrived around it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union

from nixmate.core.models.rebuild import BuildPhase, BuildStats, PackageSnapshot

Stream = Literal["stdout", "stderr"]


@dataclass(frozen=True)
class OutputLine:
    stream: Stream
    text: str


@dataclass(frozen=True)
class PhaseChanged:
    phase: BuildPhase


@dataclass(frozen=True)
class StatsUpdated:
    """Cumulative counters of one stream (a copy, never shared)."""

    stream: Stream
    stats: BuildStats


@dataclass(frozen=True)
class ServiceRestarted:
    name: str


@dataclass(frozen=True)
class SnapshotTaken:
    which: Literal["pre", "post"]
    snapshot: PackageSnapshot


@dataclass(frozen=True)
class Finished:
    success: bool
    error: str | None = None


RebuildMessage = Union[
    OutputLine,
    PhaseChanged,
    StatsUpdated,
    ServiceRestarted,
    SnapshotTaken,
    Finished,
]
