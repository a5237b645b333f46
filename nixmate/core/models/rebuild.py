"""
Rebuild models — the vocabulary of a nixos-rebuild run.

Modes and phases are closed sets (``StrEnum``).  Only five phases take
part in timing bookkeeping; ``BuildPhase.pipeline_index`` is the
partial mapping from the full phase set onto the five timing slots.

Everything here is plain data.  Behaviour lives in
``nixmate.core.services.rebuild``.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator

PIPELINE_SLOTS = 5


# ── Mode ────────────────────────────────────────────────────────


class RebuildMode(StrEnum):
    """nixos-rebuild sub-command.  The value is the CLI argument."""

    SWITCH = "switch"
    BOOT = "boot"
    TEST = "test"
    BUILD = "build"
    DRY_BUILD = "dry-build"

    @classmethod
    def parse(cls, token: Any) -> RebuildMode:
        """Parse a mode token; anything unrecognized means ``switch``."""
        try:
            return cls(str(token))
        except ValueError:
            return cls.SWITCH

    def next(self) -> RebuildMode:
        """Cycle to the following mode (wraps around)."""
        members = list(RebuildMode)
        return members[(members.index(self) + 1) % len(members)]

    @property
    def label(self) -> str:
        return _MODE_LABELS[self]


_MODE_LABELS = {
    RebuildMode.SWITCH: "Switch",
    RebuildMode.BOOT: "Boot",
    RebuildMode.TEST: "Test",
    RebuildMode.BUILD: "Build",
    RebuildMode.DRY_BUILD: "Dry build",
}


# ── Phase ───────────────────────────────────────────────────────


class BuildPhase(StrEnum):
    """Where a run currently is."""

    IDLE = "idle"
    PREPARING = "preparing"
    EVALUATING = "evaluating"
    FETCHING = "fetching"
    BUILDING = "building"
    ACTIVATING = "activating"
    BOOTLOADER = "bootloader"
    DONE = "done"
    FAILED = "failed"

    @property
    def pipeline_index(self) -> int | None:
        """Slot in the five-phase timing array, or None."""
        return _PIPELINE_INDEX.get(self)

    @property
    def is_running(self) -> bool:
        return self in _RUNNING

    @property
    def label(self) -> str:
        return _PHASE_LABELS[self]

    @staticmethod
    def pipeline_phases() -> tuple[BuildPhase, ...]:
        """The five timed phases in slot order."""
        return PIPELINE_PHASES


PIPELINE_PHASES = (
    BuildPhase.EVALUATING,
    BuildPhase.FETCHING,
    BuildPhase.BUILDING,
    BuildPhase.ACTIVATING,
    BuildPhase.BOOTLOADER,
)

_PIPELINE_INDEX = {phase: idx for idx, phase in enumerate(PIPELINE_PHASES)}

_RUNNING = frozenset({
    BuildPhase.PREPARING,
    BuildPhase.EVALUATING,
    BuildPhase.FETCHING,
    BuildPhase.BUILDING,
    BuildPhase.ACTIVATING,
    BuildPhase.BOOTLOADER,
})

_PHASE_LABELS = {
    BuildPhase.IDLE: "Idle",
    BuildPhase.PREPARING: "Preparing",
    BuildPhase.EVALUATING: "Evaluating",
    BuildPhase.FETCHING: "Fetching",
    BuildPhase.BUILDING: "Building",
    BuildPhase.ACTIVATING: "Activating",
    BuildPhase.BOOTLOADER: "Bootloader",
    BuildPhase.DONE: "Done",
    BuildPhase.FAILED: "Failed",
}


class PhaseTiming(BaseModel):
    """Start/end of one pipeline slot (monotonic seconds).

    Absent and not skipped means "not yet reached".
    """

    started: float | None = None
    ended: float | None = None
    skipped: bool = False

    @property
    def reached(self) -> bool:
        return self.started is not None

    @property
    def is_open(self) -> bool:
        return self.started is not None and self.ended is None

    def elapsed(self, now: float) -> float | None:
        """Seconds spent in the slot; open slots measure up to ``now``."""
        if self.started is None:
            return None
        end = self.ended if self.ended is not None else now
        return max(end - self.started, 0.0)


# ── Log ─────────────────────────────────────────────────────────


class LogLevel(StrEnum):
    NORMAL = "normal"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    PHASE = "phase"


class LogLine(BaseModel):
    """One line of rebuild output."""

    text: str           # beautified display text
    raw: str            # original unmodified output
    level: LogLevel = LogLevel.NORMAL


# ── Stats ───────────────────────────────────────────────────────


class BuildStats(BaseModel):
    """Counters extracted from build output.

    ``derivations_built`` counts build announcements, so a retried
    derivation is counted once per attempt.
    """

    derivations_built: int = 0
    derivations_total: int | None = None
    fetched: int = 0
    warnings: int = 0
    errors: int = 0

    def merged(self, other: BuildStats) -> BuildStats:
        """Combine two stream-local copies into one view."""
        return BuildStats(
            derivations_built=self.derivations_built + other.derivations_built,
            derivations_total=(
                self.derivations_total
                if self.derivations_total is not None
                else other.derivations_total
            ),
            fetched=self.fetched + other.fetched,
            warnings=self.warnings + other.warnings,
            errors=self.errors + other.errors,
        )


# ── Snapshot / diff ─────────────────────────────────────────────


class PackageSnapshot(BaseModel):
    """Installed-package state of the active system at one instant."""

    packages: list[tuple[str, str]] = Field(default_factory=list)  # (name, version)
    kernel: str | None = None
    os_version: str | None = None


class RebuildDiff(BaseModel):
    """What changed between the pre- and post-run snapshots."""

    added: list[tuple[str, str]] = Field(default_factory=list)
    removed: list[tuple[str, str]] = Field(default_factory=list)
    updated: list[tuple[str, str, str]] = Field(default_factory=list)  # (name, old, new)
    kernel_changed: tuple[str, str] | None = None
    reboot_needed: bool = False
    os_version_changed: tuple[str, str] | None = None
    services_restarted: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.added
            or self.removed
            or self.updated
            or self.kernel_changed
            or self.os_version_changed
            or self.services_restarted
        )


# ── History ─────────────────────────────────────────────────────


HISTORY_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def _now_local() -> str:
    return datetime.now().strftime(HISTORY_TIME_FORMAT)


class HistoryEntry(BaseModel):
    """One completed run, as persisted to rebuild_history.json."""

    timestamp: str = Field(default_factory=_now_local)
    mode: RebuildMode = RebuildMode.SWITCH
    duration: int = 0               # seconds
    success: bool = False
    error_preview: str | None = None
    command: str = ""

    @field_validator("mode", mode="before")
    @classmethod
    def _lenient_mode(cls, value: Any) -> RebuildMode:
        return RebuildMode.parse(value)


# ── Run configuration ───────────────────────────────────────────


DEFAULT_FLAKE_DIR = "/etc/nixos"


class RunConfiguration(BaseModel):
    """Everything needed to launch one rebuild.  Consumed once."""

    mode: RebuildMode = RebuildMode.SWITCH
    flake_mode: bool = False
    flake_dir: str | None = None
    show_trace: bool = False
    secret: SecretStr | None = Field(default=None, exclude=True, repr=False)

    @classmethod
    def from_system(
        cls,
        system: Any,
        *,
        mode: RebuildMode = RebuildMode.SWITCH,
        show_trace: bool = False,
        flake_dir: str | None = None,
        force_channels: bool = False,
        secret: str | None = None,
    ) -> RunConfiguration:
        """Build a configuration from a detected ``SystemConfig``.

        An explicit ``flake_dir`` forces flake mode; ``force_channels``
        forces channel mode.
        """
        if force_channels:
            flake_mode, directory = False, None
        elif flake_dir:
            flake_mode, directory = True, flake_dir
        else:
            flake_mode, directory = system.uses_flakes, system.flake_path
        return cls(
            mode=mode,
            flake_mode=flake_mode,
            flake_dir=directory,
            show_trace=show_trace,
            secret=SecretStr(secret) if secret else None,
        )

    @property
    def has_secret(self) -> bool:
        return self.secret is not None and bool(self.secret.get_secret_value())

    def command_string(self) -> str:
        """Human-readable command line (never includes the secret)."""
        from nixmate.core.services.rebuild.supervisor import build_rebuild_command

        parts = build_rebuild_command(self.mode, self.flake_mode, self.flake_dir)
        if self.show_trace:
            parts.append("--show-trace")
        return " ".join(parts)
