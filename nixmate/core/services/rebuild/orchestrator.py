"""
Rebuild orchestrator — the state machine behind the rebuild dashboard.

Owns everything about the current run: phase, per-phase timing, stats,
the log buffer, snapshots, the diff, and the persisted history.  All of
it is mutated only from the thread that calls ``poll()`` (the UI tick),
in response to messages from the supervisor.

Phase flow::

    Idle → Preparing → Evaluating ⇄ {Fetching, Building}
         → Activating ⇄ Bootloader → Done | Failed

Once the activation block (Activating/Bootloader) is reached, phase
messages pointing back to the evaluation/build block are ignored.
``cancel()`` jumps to Failed from any running phase.  Done/Failed stay
until ``dismiss()`` or the next ``start()``.
"""

from __future__ import annotations

import functools
import logging
import queue
import time
from collections.abc import Callable
from typing import Protocol

from nixmate.core.models.rebuild import (
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
from nixmate.core.nix.snapshot import take_snapshot
from nixmate.core.persistence.history import HistoryStore, estimated_duration
from nixmate.core.services.rebuild.classify import beautify_line, classify_line
from nixmate.core.services.rebuild.diff import compute_diff
from nixmate.core.services.rebuild.messages import (
    Finished,
    OutputLine,
    PhaseChanged,
    RebuildMessage,
    ServiceRestarted,
    SnapshotTaken,
    StatsUpdated,
)
from nixmate.core.services.rebuild.supervisor import ChildPidCell, RebuildSupervisor

logger = logging.getLogger(__name__)

ERROR_PREVIEW_MAX = 80
CANCELLED_MESSAGE = "Cancelled by user"
TERMINATED_MESSAGE = "Rebuild process terminated unexpectedly"

# First slot of the activation block (Activating, Bootloader)
_ACTIVATION_SLOT = BuildPhase.ACTIVATING.pipeline_index or 3


class Supervisor(Protocol):
    """What the orchestrator needs from a process supervisor."""

    def start(self) -> None: ...

    def cancel(self) -> bool: ...

    def is_alive(self) -> bool: ...


SupervisorFactory = Callable[
    [RunConfiguration, queue.Queue[RebuildMessage], ChildPidCell], Supervisor
]


def format_clock(seconds: float) -> str:
    """``MM:SS`` for the running clock."""
    secs = int(seconds)
    return f"{secs // 60:02}:{secs % 60:02}"


def format_duration(seconds: float) -> str:
    """``3m 12s`` / ``45s`` for summaries."""
    secs = int(seconds)
    minutes, secs = divmod(secs, 60)
    return f"{minutes}m {secs}s" if minutes else f"{secs}s"


def _preview(text: str) -> str:
    if len(text) > ERROR_PREVIEW_MAX:
        return text[:ERROR_PREVIEW_MAX] + "..."
    return text


class RebuildOrchestrator:
    """Coordinates one rebuild at a time.

    Args:
        settings: Limits and defaults (see ``Settings``).
        history: History store (default: the user config directory).
        supervisor_factory: Builds the supervisor for a run.
        clock: Monotonic clock used for all timings.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        history: HistoryStore | None = None,
        supervisor_factory: SupervisorFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or Settings()
        self._store = (
            history if history is not None
            else HistoryStore(limit=self._settings.history_limit)
        )
        self._supervisor_factory = supervisor_factory or self._default_supervisor
        self._clock = clock

        self._history: list[HistoryEntry] = self._store.load()
        self._mode = self._settings.default_mode
        self._command = ""

        self._channel: queue.Queue[RebuildMessage] | None = None
        self._supervisor: Supervisor | None = None
        self._pid_cell = ChildPidCell()
        self._reset()

    # ── Lifecycle ───────────────────────────────────────────────

    def _default_supervisor(
        self,
        config: RunConfiguration,
        channel: queue.Queue[RebuildMessage],
        pid_cell: ChildPidCell,
    ) -> Supervisor:
        return RebuildSupervisor(
            config,
            channel,
            pid_cell,
            snapshot=functools.partial(
                take_snapshot, timeout=self._settings.snapshot_timeout,
            ),
            settle_delay=self._settings.settle_delay,
        )

    def _reset(self) -> None:
        self._phase = BuildPhase.IDLE
        self._stream_stats: dict[str, BuildStats] = {}
        self._timings = [PhaseTiming() for _ in range(PIPELINE_SLOTS)]
        self._failed_phase_index: int | None = None
        self._log: list[LogLine] = []
        self._log_dropped = 0
        self._current_activity = ""
        self._pre: PackageSnapshot | None = None
        self._post: PackageSnapshot | None = None
        self._services: list[str] = []
        self._diff: RebuildDiff | None = None
        self._started_at: float | None = None
        self._ended_at: float | None = None
        self._cancelled = False

    def start(self, config: RunConfiguration) -> bool:
        """Launch a rebuild.  Rejected (returns False) while one is running."""
        if self.is_running:
            logger.warning("Rebuild already running — start ignored")
            return False

        self._abandon_pending()
        self._reset()

        self._mode = config.mode
        self._command = config.command_string()
        self._phase = BuildPhase.PREPARING
        self._started_at = self._clock()
        self._push_line(LogLine(
            text=f"$ {self._command}", raw=f"$ {self._command}", level=LogLevel.INFO,
        ))

        channel: queue.Queue[RebuildMessage] = queue.Queue()
        self._channel = channel
        self._pid_cell = ChildPidCell()
        supervisor = self._supervisor_factory(config, channel, self._pid_cell)
        self._supervisor = supervisor

        logger.info("Rebuild started: %s", self._command)
        try:
            supervisor.start()
        except RuntimeError as e:
            logger.error("Cannot start rebuild worker: %s", e)
            self._push_line(LogLine(
                text=f"✗ Failed to start: {e}", raw=f"Failed to start: {e}",
                level=LogLevel.ERROR,
            ))
            self._on_finished(Finished(False, str(e)))
        return True

    def cancel(self) -> bool:
        """Kill the running rebuild.  No-op (False) when nothing runs."""
        if not self.is_running:
            return False

        idx = self._phase.pipeline_index
        self._failed_phase_index = idx
        self._close_slot(idx)

        if self._supervisor is not None:
            self._supervisor.cancel()

        self._cancelled = True
        self._phase = BuildPhase.FAILED
        self._ended_at = self._clock()
        self._push_line(LogLine(
            text=f"⏹ {CANCELLED_MESSAGE}", raw=CANCELLED_MESSAGE, level=LogLevel.WARNING,
        ))
        self._mark_unreached_skipped()
        logger.info("Rebuild cancelled during %s", self._phase_before_cancel(idx))
        return True

    def dismiss(self) -> bool:
        """Return to Idle after Done/Failed.  No-op while running."""
        if self.is_running:
            return False
        self._abandon_pending()
        self._reset()
        return True

    # ── Polling ─────────────────────────────────────────────────

    def poll(self) -> int:
        """Apply pending supervisor messages.  Never blocks.

        At most ``poll_batch`` messages are applied per call so a very
        chatty build cannot starve the UI.  Returns the number applied.
        """
        channel = self._channel
        if channel is None:
            return 0

        handled = 0
        while handled < self._settings.poll_batch:
            try:
                message = channel.get_nowait()
            except queue.Empty:
                if self._worker_gone() and channel.empty():
                    self._on_disconnect()
                break
            handled += 1
            self._apply(message)
            if self._channel is None:
                break
        return handled

    def _worker_gone(self) -> bool:
        return self._supervisor is None or not self._supervisor.is_alive()

    def _apply(self, message: RebuildMessage) -> None:
        if isinstance(message, OutputLine):
            self._on_output(message.text)
        elif isinstance(message, PhaseChanged):
            self._on_phase(message.phase)
        elif isinstance(message, StatsUpdated):
            self._stream_stats[message.stream] = message.stats
        elif isinstance(message, ServiceRestarted):
            self._services.append(message.name)
        elif isinstance(message, SnapshotTaken):
            if message.which == "pre":
                self._pre = message.snapshot
            else:
                self._post = message.snapshot
        elif isinstance(message, Finished):
            self._on_finished(message)
        else:
            logger.debug("Ignoring unknown message %r", message)

    def _on_output(self, text: str) -> None:
        display = beautify_line(text)
        self._current_activity = display
        self._push_line(LogLine(text=display, raw=text, level=classify_line(text)))

    def _on_phase(self, phase: BuildPhase) -> None:
        if not self.is_running or phase == self._phase or phase == BuildPhase.PREPARING:
            return

        old_idx = self._phase.pipeline_index
        new_idx = phase.pipeline_index
        if (
            old_idx is not None
            and old_idx >= _ACTIVATION_SLOT
            and (new_idx is None or new_idx < _ACTIVATION_SLOT)
        ):
            logger.debug("Ignoring %s after %s", phase, self._phase)
            return

        self._close_slot(old_idx)
        self._phase = phase
        if new_idx is not None:
            self._open_slot(new_idx)

        marker = f"── {phase.label} ──"
        self._push_line(LogLine(text=marker, raw=marker, level=LogLevel.PHASE))

    def _on_finished(self, message: Finished) -> None:
        idx = self._phase.pipeline_index
        self._close_slot(idx)

        success = message.success and not self._cancelled
        if not success and self._failed_phase_index is None:
            self._failed_phase_index = idx

        self._phase = BuildPhase.DONE if success else BuildPhase.FAILED
        if self._ended_at is None:
            self._ended_at = self._clock()
        self._mark_unreached_skipped()

        if success and self._pre is not None and self._post is not None:
            self._diff = compute_diff(self._pre, self._post, self._services)

        self._record_history(success, message.error)
        self._detach()
        logger.info(
            "Rebuild %s after %s", "succeeded" if success else "failed",
            format_duration(self.elapsed()),
        )

    def _on_disconnect(self) -> None:
        if self.is_running:
            idx = self._phase.pipeline_index
            self._failed_phase_index = idx
            self._close_slot(idx)
            self._phase = BuildPhase.FAILED
            self._ended_at = self._clock()
            self._mark_unreached_skipped()
            self._push_line(LogLine(
                text=f"✗ {TERMINATED_MESSAGE}", raw=TERMINATED_MESSAGE, level=LogLevel.ERROR,
            ))
            logger.error(TERMINATED_MESSAGE)
        self._detach()

    def _detach(self) -> None:
        self._channel = None
        self._supervisor = None

    def _abandon_pending(self) -> None:
        """Record a cancelled run whose Finished never arrived."""
        if self._channel is not None and self._cancelled:
            self._record_history(False, None)
        self._detach()

    # ── Timing ──────────────────────────────────────────────────

    def _open_slot(self, idx: int) -> None:
        slot = self._timings[idx]
        if slot.started is None:
            slot.started = self._clock()
        else:
            # Re-entered: the slot spans first entry to last exit
            slot.ended = None

    def _close_slot(self, idx: int | None) -> None:
        if idx is None:
            return
        slot = self._timings[idx]
        if slot.is_open:
            slot.ended = self._clock()

    def _mark_unreached_skipped(self) -> None:
        for slot in self._timings:
            if not slot.reached:
                slot.skipped = True

    def _phase_before_cancel(self, idx: int | None) -> str:
        if idx is None:
            return "preparation"
        return BuildPhase.pipeline_phases()[idx].label

    # ── Log buffer ──────────────────────────────────────────────

    def _push_line(self, line: LogLine) -> None:
        self._log.append(line)
        if len(self._log) > self._settings.log_cap:
            drop = min(self._settings.log_drain, len(self._log))
            del self._log[:drop]
            self._log_dropped += drop

    # ── History ─────────────────────────────────────────────────

    def _record_history(self, success: bool, error: str | None) -> None:
        preview = None
        if not success:
            if self._cancelled:
                preview = CANCELLED_MESSAGE
            elif error:
                preview = _preview(error)
            else:
                last_error = next(
                    (line for line in reversed(self._log) if line.level == LogLevel.ERROR),
                    None,
                )
                preview = _preview(last_error.raw) if last_error else None

        self._history.append(HistoryEntry(
            mode=self._mode,
            duration=int(self.elapsed()),
            success=success,
            error_preview=preview,
            command=self._command,
        ))
        self._persist_history()

    def _persist_history(self) -> None:
        try:
            self._store.save(self._history)
        except Exception as e:
            logger.warning("Failed to save rebuild history to %s: %s", self._store.path, e)
            return
        self._history = self._store.trim(self._history)

    # ── Read-only accessors ─────────────────────────────────────

    @property
    def phase(self) -> BuildPhase:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._phase.is_running

    @property
    def is_attached(self) -> bool:
        """True until the run's final message (or disconnect) is handled."""
        return self._channel is not None

    @property
    def mode(self) -> RebuildMode:
        """Mode of the current (or last) run."""
        return self._mode

    @property
    def command(self) -> str:
        """Command line of the current (or last) run."""
        return self._command

    @property
    def child_pid(self) -> int:
        return self._pid_cell.load()

    @property
    def stats(self) -> BuildStats:
        """Counters of all output streams combined."""
        merged = BuildStats()
        for stream in sorted(self._stream_stats):
            merged = merged.merged(self._stream_stats[stream])
        return merged

    @property
    def timings(self) -> list[PhaseTiming]:
        return [slot.model_copy() for slot in self._timings]

    @property
    def failed_phase_index(self) -> int | None:
        return self._failed_phase_index

    @property
    def current_activity(self) -> str:
        return self._current_activity

    @property
    def diff(self) -> RebuildDiff | None:
        return self._diff

    @property
    def history(self) -> list[HistoryEntry]:
        return list(self._history)

    @property
    def log_total(self) -> int:
        """Lines ever appended during this run (including dropped ones)."""
        return self._log_dropped + len(self._log)

    def log_lines(self, offset: int = 0, limit: int | None = None) -> list[LogLine]:
        """A page of the retained log buffer."""
        end = None if limit is None else offset + limit
        return self._log[offset:end]

    def lines_since(self, cursor: int) -> tuple[list[LogLine], int]:
        """Lines appended after ``cursor`` (a previous ``log_total``).

        Lines already dropped from the buffer are skipped.
        """
        start = max(cursor - self._log_dropped, 0)
        return self._log[start:], self.log_total

    def search_log(self, query: str) -> list[LogLine]:
        """Retained lines whose text or raw output contains ``query``."""
        needle = query.lower()
        if not needle:
            return list(self._log)
        return [
            line for line in self._log
            if needle in line.text.lower() or needle in line.raw.lower()
        ]

    def elapsed(self) -> float:
        """Seconds since start (frozen once the run ended)."""
        if self._started_at is None:
            return 0.0
        end = self._ended_at if self._ended_at is not None else self._clock()
        return max(end - self._started_at, 0.0)

    def elapsed_str(self) -> str:
        return format_clock(self.elapsed())

    def phase_elapsed(self, idx: int) -> float | None:
        """Seconds spent in pipeline slot ``idx`` (None if never reached)."""
        if not 0 <= idx < PIPELINE_SLOTS:
            return None
        return self._timings[idx].elapsed(self._clock())

    def phase_elapsed_str(self, idx: int) -> str:
        """``"12s"`` for a reached slot, empty otherwise."""
        seconds = self.phase_elapsed(idx)
        return "" if seconds is None else f"{int(seconds)}s"

    def estimated_duration(self) -> int | None:
        return estimated_duration(self._history)
