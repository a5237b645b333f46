"""
Process supervisor — run nixos-rebuild in the background and report back.

One supervisor per run.  ``start()`` spawns a worker thread that:

    1. takes the pre-rebuild package snapshot
    2. spawns the rebuild in its own process group (``start_new_session``)
    3. feeds the sudo password to stdin, if one was given, then closes it
    4. starts one reader thread per output stream
    5. waits for the child, takes the post snapshot on success
    6. sends ``Finished``

Every observation crosses to the orchestrator as a message on the
channel.  The only state shared with the poll thread is the child pid,
held in a ``ChildPidCell`` so ``cancel()`` can signal the process group
without touching anything else.

If the worker dies without sending ``Finished`` the orchestrator sees a
dead worker and an empty channel, and synthesizes a failure.
"""

from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
import time
from typing import IO, Callable

from nixmate.core.models.rebuild import (
    DEFAULT_FLAKE_DIR,
    BuildPhase,
    BuildStats,
    PackageSnapshot,
    RebuildMode,
    RunConfiguration,
)
from nixmate.core.nix.snapshot import take_snapshot
from nixmate.core.services.rebuild.classify import (
    detect_phase,
    detect_service_restart,
    update_stats,
)
from nixmate.core.services.rebuild.messages import (
    Finished,
    OutputLine,
    PhaseChanged,
    RebuildMessage,
    ServiceRestarted,
    SnapshotTaken,
    StatsUpdated,
    Stream,
)

logger = logging.getLogger(__name__)

AUTH_MESSAGE = "🔐 Authenticating with sudo..."


# ── Command construction ────────────────────────────────────────


def build_rebuild_command(
    mode: RebuildMode,
    flake_mode: bool,
    flake_dir: str | None = None,
) -> list[str]:
    """The rebuild command as an argv list (without sudo flags)."""
    if flake_mode:
        directory = flake_dir or DEFAULT_FLAKE_DIR
        return ["sudo", "nixos-rebuild", str(mode), "--flake", f"{directory}#"]
    return ["sudo", "nixos-rebuild", str(mode)]


def build_argv(config: RunConfiguration) -> list[str]:
    """Full argv for a run: ``-S`` when a password is piped, trace flag."""
    argv = build_rebuild_command(config.mode, config.flake_mode, config.flake_dir)
    if config.has_secret and argv[0] == "sudo":
        argv.insert(1, "-S")
    if config.show_trace:
        argv.append("--show-trace")
    return argv


# ── Shared pid ──────────────────────────────────────────────────


class ChildPidCell:
    """The live child's pid, or 0 when there is none.

    Written by the worker thread, read and cleared by the poll thread.
    Python has no standard atomic int, so the lock stands in for an
    atomic compare-and-swap. Each critical section is a single read or
    write of the pid and never blocks on I/O.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pid = 0

    def load(self) -> int:
        with self._lock:
            return self._pid

    def store(self, pid: int) -> None:
        with self._lock:
            self._pid = pid

    def take(self) -> int:
        """Return the pid and reset the cell to 0."""
        with self._lock:
            pid, self._pid = self._pid, 0
            return pid

    def clear_if(self, pid: int) -> None:
        """Reset to 0 only if the cell still holds ``pid``."""
        with self._lock:
            if self._pid == pid:
                self._pid = 0


# ── Supervisor ──────────────────────────────────────────────────


class RebuildSupervisor:
    """Spawns and watches one rebuild child process.

    Args:
        config: The run to perform.  The secret is read once, at spawn.
        channel: Unbounded queue the orchestrator drains.
        pid_cell: Shared cell for the child pid.
        argv: Override the command (defaults to ``build_argv(config)``).
        snapshot: Snapshot collector, called before and after the run.
        settle_delay: Seconds to wait before the post snapshot.
    """

    def __init__(
        self,
        config: RunConfiguration,
        channel: queue.Queue[RebuildMessage],
        pid_cell: ChildPidCell,
        *,
        argv: list[str] | None = None,
        snapshot: Callable[[], PackageSnapshot] = take_snapshot,
        settle_delay: float = 0.5,
    ) -> None:
        self._config = config
        self._channel = channel
        self._pid_cell = pid_cell
        self._argv = argv if argv is not None else build_argv(config)
        self._snapshot = snapshot
        self._settle_delay = settle_delay
        self._cancelled = threading.Event()
        self._worker: threading.Thread | None = None

    @property
    def argv(self) -> list[str]:
        return list(self._argv)

    def start(self) -> None:
        if self._worker is not None:
            raise RuntimeError("Supervisor already started")
        self._worker = threading.Thread(
            target=self._run, name="rebuild-worker", daemon=True,
        )
        self._worker.start()

    def is_alive(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def join(self, timeout: float | None = None) -> None:
        if self._worker is not None:
            self._worker.join(timeout)

    def cancel(self) -> bool:
        """Terminate the child's whole process group.

        Safe to call at any time.  A worker that has not spawned yet
        will not spawn.  Returns True if a signal was sent.
        """
        self._cancelled.set()
        pid = self._pid_cell.take()
        if not pid:
            return False
        _terminate_group(pid)
        return True

    # ── Worker ──────────────────────────────────────────────────

    def _send(self, message: RebuildMessage) -> None:
        self._channel.put(message)

    def _take_snapshot(self) -> PackageSnapshot:
        try:
            return self._snapshot()
        except Exception as e:
            logger.warning("Package snapshot failed: %s", e)
            return PackageSnapshot()

    def _run(self) -> None:
        try:
            self._supervise()
        except Exception:
            # No Finished is sent: the orchestrator treats the silent
            # worker as a disconnect and fails the run.
            logger.exception("Rebuild worker crashed")

    def _supervise(self) -> None:
        self._send(PhaseChanged(BuildPhase.PREPARING))
        self._send(SnapshotTaken("pre", self._take_snapshot()))

        if self._cancelled.is_set():
            self._send(Finished(False, "Cancelled before start"))
            return

        self._send(PhaseChanged(BuildPhase.EVALUATING))

        secret = (
            self._config.secret.get_secret_value()
            if self._config.has_secret and self._config.secret is not None
            else None
        )
        if secret is not None:
            self._send(OutputLine("stderr", AUTH_MESSAGE))

        logger.info("Starting rebuild: %s", self._config.command_string())
        try:
            proc = subprocess.Popen(
                self._argv,
                stdin=subprocess.PIPE if secret is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            logger.error("Failed to start rebuild: %s", e)
            self._send(OutputLine("stderr", f"Failed to start: {e}"))
            self._send(Finished(False, str(e)))
            return

        self._pid_cell.store(proc.pid)
        if self._cancelled.is_set():
            # cancel() ran between the check above and the spawn
            self._pid_cell.clear_if(proc.pid)
            _terminate_group(proc.pid)

        if secret is not None and proc.stdin is not None:
            _feed_secret(proc.stdin, secret)
        del secret

        readers = [
            threading.Thread(
                target=self._read_stream, args=("stderr", proc.stderr),
                name="rebuild-stderr", daemon=True,
            ),
            threading.Thread(
                target=self._read_stream, args=("stdout", proc.stdout),
                name="rebuild-stdout", daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        returncode = proc.wait()
        for reader in readers:
            reader.join()
        self._pid_cell.clear_if(proc.pid)

        success = returncode == 0
        error = None if success else f"Exit code: {returncode}"
        logger.info("Rebuild exited with %d", returncode)

        if success:
            if self._settle_delay > 0:
                time.sleep(self._settle_delay)
            self._send(SnapshotTaken("post", self._take_snapshot()))

        self._send(Finished(success, error))

    def _read_stream(self, stream: Stream, pipe: IO[bytes] | None) -> None:
        """Classify every line of one output stream and forward it.

        The phase cursor and stats are local to this stream: nothing is
        inferred from the relative order of the two streams.
        """
        if pipe is None:
            return
        phase = BuildPhase.EVALUATING
        stats = BuildStats()
        try:
            for raw in iter(pipe.readline, b""):
                try:
                    line = raw.decode("utf-8").rstrip("\r\n")
                except UnicodeDecodeError as e:
                    logger.debug("Skipping undecodable %s line: %s", stream, e)
                    continue

                new_phase = detect_phase(line, phase)
                if new_phase != phase:
                    phase = new_phase
                    self._send(PhaseChanged(new_phase))

                update_stats(line, stats)
                self._send(StatsUpdated(stream, stats.model_copy()))

                service = detect_service_restart(line)
                if service:
                    self._send(ServiceRestarted(service))

                self._send(OutputLine(stream, line))
        except (OSError, ValueError) as e:
            logger.warning("Stopped reading %s: %s", stream, e)
        finally:
            pipe.close()


def _feed_secret(stdin: IO[bytes], secret: str) -> None:
    """Write the password and close stdin so sudo proceeds."""
    try:
        stdin.write(f"{secret}\n".encode("utf-8"))
        stdin.flush()
    except OSError as e:
        logger.warning("Could not pass password to sudo: %s", e)
    finally:
        try:
            stdin.close()
        except OSError:
            pass


def _terminate_group(pid: int) -> None:
    """SIGTERM the process group led by ``pid`` (same as kill(-pid))."""
    try:
        os.killpg(pid, signal.SIGTERM)
        logger.info("Sent SIGTERM to process group %d", pid)
    except ProcessLookupError:
        logger.debug("Process group %d already gone", pid)
    except OSError as e:
        logger.warning("Cannot signal process group %d: %s", pid, e)
