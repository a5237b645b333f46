"""
Tests for the rebuild orchestrator — the state machine, driven by
hand-fed messages through a fake supervisor and a manual clock.
"""

import logging
import queue
from pathlib import Path

import pytest

from nixmate.core.models.rebuild import (
    BuildPhase,
    BuildStats,
    LogLevel,
    PackageSnapshot,
    RebuildMode,
    RunConfiguration,
)
from nixmate.core.models.settings import Settings
from nixmate.core.persistence.history import HistoryStore
from nixmate.core.services.rebuild.messages import (
    Finished,
    OutputLine,
    PhaseChanged,
    ServiceRestarted,
    SnapshotTaken,
    StatsUpdated,
)
from nixmate.core.services.rebuild.orchestrator import (
    CANCELLED_MESSAGE,
    TERMINATED_MESSAGE,
    RebuildOrchestrator,
    format_clock,
    format_duration,
)

PRE = PackageSnapshot(packages=[("foo", "1.0"), ("bar", "2.0")], kernel="6.1.0")
POST = PackageSnapshot(packages=[("foo", "1.1"), ("baz", "3.0")], kernel="6.6.0")

EVAL, FETCH, BUILD, ACTIVATE, BOOT = range(5)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeSupervisor:
    """Stands in for RebuildSupervisor; the test feeds the channel."""

    def __init__(self, config, channel, pid_cell) -> None:
        self.config = config
        self.channel = channel
        self.pid_cell = pid_cell
        self.started = False
        self.cancelled = False
        self.alive = True
        self.fail_start = False

    def start(self) -> None:
        if self.fail_start:
            raise RuntimeError("can't start new thread")
        self.started = True

    def cancel(self) -> bool:
        self.cancelled = True
        return True

    def is_alive(self) -> bool:
        return self.alive


class Harness:
    """Orchestrator + its fakes."""

    def __init__(self, tmp_path: Path, settings: Settings | None = None,
                 store: HistoryStore | None = None) -> None:
        self.clock = FakeClock()
        self.supervisors: list[FakeSupervisor] = []
        self.orch = RebuildOrchestrator(
            settings or Settings(),
            history=store or HistoryStore(tmp_path / "history.json"),
            supervisor_factory=self._factory,
            clock=self.clock,
        )

    def _factory(self, config, channel, pid_cell) -> FakeSupervisor:
        sup = FakeSupervisor(config, channel, pid_cell)
        self.supervisors.append(sup)
        return sup

    @property
    def sup(self) -> FakeSupervisor:
        return self.supervisors[-1]

    def start(self, **kwargs) -> bool:
        return self.orch.start(RunConfiguration(**kwargs))

    def feed(self, *messages, at: float | None = None) -> None:
        """Deliver messages and poll until they are all applied."""
        if at is not None:
            self.clock.now = at
        for message in messages:
            self.sup.channel.put(message)
        while not self.sup.channel.empty() and self.orch.is_attached:
            self.orch.poll()


@pytest.fixture
def h(tmp_path: Path) -> Harness:
    return Harness(tmp_path)


class TestLifecycle:
    """Tests for start / dismiss."""

    def test_initial_state(self, h: Harness):
        assert h.orch.phase == BuildPhase.IDLE
        assert h.orch.is_running is False
        assert h.orch.elapsed() == 0.0
        assert h.orch.elapsed_str() == "00:00"
        assert h.orch.history == []
        assert h.orch.poll() == 0

    def test_start(self, h: Harness):
        assert h.start(mode=RebuildMode.BOOT) is True

        assert h.orch.phase == BuildPhase.PREPARING
        assert h.orch.is_running
        assert h.orch.is_attached
        assert h.sup.started
        assert h.orch.mode == RebuildMode.BOOT
        assert h.orch.command == "sudo nixos-rebuild boot"
        first = h.orch.log_lines()[0]
        assert first.raw == "$ sudo nixos-rebuild boot"
        assert first.level == LogLevel.INFO

    def test_start_rejected_while_running(self, h: Harness):
        h.start()
        assert h.start() is False
        assert len(h.supervisors) == 1

    def test_restart_after_done_resets(self, h: Harness):
        h.start()
        h.feed(PhaseChanged(BuildPhase.EVALUATING), OutputLine("stdout", "hello"))
        h.feed(Finished(True))
        assert h.start() is True
        assert h.orch.log_total == 1
        assert all(not t.reached for t in h.orch.timings)

    def test_dismiss(self, h: Harness):
        h.start()
        assert h.orch.dismiss() is False
        h.feed(Finished(True))
        assert h.orch.dismiss() is True
        assert h.orch.phase == BuildPhase.IDLE
        assert h.orch.log_lines() == []
        assert len(h.orch.history) == 1

    def test_worker_start_failure(self, h: Harness):
        def factory(config, channel, pid_cell):
            sup = FakeSupervisor(config, channel, pid_cell)
            sup.fail_start = True
            return sup

        h.orch._supervisor_factory = factory
        assert h.orch.start(RunConfiguration()) is True
        assert h.orch.phase == BuildPhase.FAILED
        assert h.orch.history[-1].success is False
        assert "can't start" in h.orch.history[-1].error_preview


class TestPhases:
    """Tests for phase transitions and timing."""

    def test_full_successful_run(self, h: Harness):
        h.start()
        h.feed(PhaseChanged(BuildPhase.PREPARING), SnapshotTaken("pre", PRE), at=0.5)
        h.feed(PhaseChanged(BuildPhase.EVALUATING), at=1)
        h.feed(PhaseChanged(BuildPhase.BUILDING), at=3)
        h.feed(PhaseChanged(BuildPhase.ACTIVATING), at=10)
        h.feed(ServiceRestarted("nginx.service"), SnapshotTaken("post", POST), at=11)
        h.feed(Finished(True), at=12)

        orch = h.orch
        assert orch.phase == BuildPhase.DONE
        assert not orch.is_attached
        assert orch.failed_phase_index is None

        timings = orch.timings
        assert (timings[EVAL].started, timings[EVAL].ended) == (1, 3)
        assert (timings[BUILD].started, timings[BUILD].ended) == (3, 10)
        assert (timings[ACTIVATE].started, timings[ACTIVATE].ended) == (10, 12)
        assert timings[FETCH].skipped and not timings[FETCH].reached
        assert timings[BOOT].skipped and not timings[BOOT].reached
        assert orch.phase_elapsed_str(BUILD) == "7s"
        assert orch.phase_elapsed_str(FETCH) == ""

        h.clock.now = 100
        assert orch.elapsed() == 12
        assert orch.elapsed_str() == "00:12"

        diff = orch.diff
        assert diff is not None
        assert diff.added == [("baz", "3.0")]
        assert diff.removed == [("bar", "2.0")]
        assert diff.updated == [("foo", "1.0", "1.1")]
        assert diff.kernel_changed == ("6.1.0", "6.6.0")
        assert diff.reboot_needed
        assert diff.services_restarted == ["nginx.service"]

        entry = orch.history[-1]
        assert entry.success is True
        assert entry.duration == 12
        assert entry.error_preview is None
        assert entry.command == "sudo nixos-rebuild switch"

    def test_phase_markers_logged(self, h: Harness):
        h.start()
        h.feed(PhaseChanged(BuildPhase.PREPARING), PhaseChanged(BuildPhase.EVALUATING))
        phase_lines = [l.text for l in h.orch.log_lines() if l.level == LogLevel.PHASE]
        assert phase_lines == ["── Evaluating ──"]

    def test_no_return_to_build_after_activation(self, h: Harness):
        h.start()
        h.feed(PhaseChanged(BuildPhase.EVALUATING), at=1)
        h.feed(PhaseChanged(BuildPhase.ACTIVATING), at=2)
        h.feed(PhaseChanged(BuildPhase.BUILDING), at=3)
        h.feed(PhaseChanged(BuildPhase.EVALUATING), at=4)

        assert h.orch.phase == BuildPhase.ACTIVATING
        assert not h.orch.timings[BUILD].reached

    def test_activation_block_alternates(self, h: Harness):
        h.start()
        h.feed(PhaseChanged(BuildPhase.ACTIVATING), at=1)
        h.feed(PhaseChanged(BuildPhase.BOOTLOADER), at=2)
        h.feed(PhaseChanged(BuildPhase.ACTIVATING), at=3)
        assert h.orch.phase == BuildPhase.ACTIVATING
        assert h.orch.timings[BOOT].ended == 3

    def test_bootloader_before_activation_allowed(self, h: Harness):
        h.start()
        indices = []
        for phase in (BuildPhase.EVALUATING, BuildPhase.BUILDING,
                      BuildPhase.BOOTLOADER, BuildPhase.ACTIVATING):
            h.feed(PhaseChanged(phase))
            indices.append(h.orch.phase.pipeline_index)
        assert indices == [0, 2, 4, 3]

    def test_pipeline_index_non_decreasing_by_block(self, h: Harness):
        h.start()
        seen = []
        sequence = [BuildPhase.EVALUATING, BuildPhase.FETCHING, BuildPhase.BUILDING,
                    BuildPhase.FETCHING, BuildPhase.ACTIVATING, BuildPhase.BUILDING,
                    BuildPhase.EVALUATING, BuildPhase.BOOTLOADER, BuildPhase.FETCHING]
        for phase in sequence:
            h.feed(PhaseChanged(phase))
            seen.append(h.orch.phase.pipeline_index >= ACTIVATE)
        assert seen == sorted(seen)

    def test_reentered_slot_spans_first_entry_to_last_exit(self, h: Harness):
        h.start()
        h.feed(PhaseChanged(BuildPhase.EVALUATING), at=1)
        h.feed(PhaseChanged(BuildPhase.BUILDING), at=2)
        h.feed(PhaseChanged(BuildPhase.EVALUATING), at=4)
        h.feed(PhaseChanged(BuildPhase.BUILDING), at=7)

        evaluating = h.orch.timings[EVAL]
        assert (evaluating.started, evaluating.ended) == (1, 7)
        assert h.orch.timings[BUILD].started == 2
        assert h.orch.timings[BUILD].is_open

    def test_phase_ignored_when_not_running(self, h: Harness):
        h.start()
        h.sup.channel.put(Finished(True))
        h.sup.channel.put(PhaseChanged(BuildPhase.BUILDING))
        h.orch.poll()
        assert h.orch.phase == BuildPhase.DONE


class TestCancel:
    """Tests for cancel()."""

    def test_cancel_while_building(self, h: Harness):
        h.start()
        h.feed(PhaseChanged(BuildPhase.EVALUATING), at=1)
        h.feed(PhaseChanged(BuildPhase.BUILDING), at=2)
        h.clock.now = 5

        assert h.orch.cancel() is True

        orch = h.orch
        assert h.sup.cancelled
        assert orch.phase == BuildPhase.FAILED
        assert orch.failed_phase_index == BUILD
        assert orch.timings[BUILD].ended == 5
        for idx in (ACTIVATE, BOOT):
            assert orch.timings[idx].skipped
            assert orch.timings[idx].started is None
            assert orch.timings[idx].ended is None
        assert orch.log_lines()[-1].raw == CANCELLED_MESSAGE

        # The killed process reports back later
        h.feed(OutputLine("stderr", "late output"), Finished(False, "Exit code: -15"), at=6)
        assert orch.phase == BuildPhase.FAILED
        assert not orch.is_attached
        assert orch.history[-1].error_preview == CANCELLED_MESSAGE
        assert orch.history[-1].success is False
        assert orch.elapsed() == 5

    def test_cancel_not_running_is_noop(self, h: Harness):
        assert h.orch.cancel() is False
        assert h.orch.phase == BuildPhase.IDLE

        h.start()
        h.feed(Finished(True))
        assert h.orch.cancel() is False
        assert h.orch.phase == BuildPhase.DONE
        assert not h.sup.cancelled

    def test_cancelled_success_still_failed(self, h: Harness):
        """A child that exits 0 right as it is cancelled stays cancelled."""
        h.start()
        h.feed(PhaseChanged(BuildPhase.EVALUATING))
        h.orch.cancel()
        h.feed(Finished(True))
        assert h.orch.phase == BuildPhase.FAILED
        assert h.orch.diff is None
        assert h.orch.history[-1].success is False

    def test_dismiss_before_finished_records_history(self, h: Harness):
        h.start()
        h.orch.cancel()
        assert h.orch.dismiss() is True
        assert h.orch.history[-1].error_preview == CANCELLED_MESSAGE


class TestFailure:
    """Tests for failed runs and disconnects."""

    def test_exit_code_failure(self, h: Harness):
        h.start()
        h.feed(PhaseChanged(BuildPhase.EVALUATING), at=1)
        h.feed(Finished(False, "Exit code: 1"), at=4)

        assert h.orch.phase == BuildPhase.FAILED
        assert h.orch.failed_phase_index == EVAL
        assert h.orch.diff is None
        assert h.orch.history[-1].error_preview == "Exit code: 1"
        assert h.orch.history[-1].duration == 4

    def test_preview_from_last_error_line(self, h: Harness):
        long_error = "error: " + "x" * 120
        h.start()
        h.feed(OutputLine("stderr", "error: first"), OutputLine("stderr", long_error))
        h.feed(Finished(False, None))

        preview = h.orch.history[-1].error_preview
        assert preview == long_error[:80] + "..."

    def test_disconnect(self, h: Harness):
        h.start()
        h.feed(PhaseChanged(BuildPhase.EVALUATING), at=1)
        h.sup.alive = False
        h.clock.now = 3
        h.orch.poll()

        orch = h.orch
        assert orch.phase == BuildPhase.FAILED
        assert orch.failed_phase_index == EVAL
        assert orch.log_lines()[-1].raw == TERMINATED_MESSAGE
        assert orch.log_lines()[-1].level == LogLevel.ERROR
        assert not orch.is_attached
        assert orch.history == []
        assert orch.elapsed() == 3

    def test_pending_messages_drained_before_disconnect(self, h: Harness):
        h.start()
        h.sup.alive = False
        h.sup.channel.put(OutputLine("stdout", "last words"))
        h.sup.channel.put(Finished(True))
        h.orch.poll()

        assert h.orch.phase == BuildPhase.DONE
        assert all(l.raw != TERMINATED_MESSAGE for l in h.orch.log_lines())

    def test_persistence_failure_keeps_history(self, tmp_path: Path, caplog):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        harness = Harness(tmp_path, store=HistoryStore(blocker / "history.json"))
        harness.start()

        with caplog.at_level(logging.WARNING):
            harness.feed(Finished(True))

        assert len(harness.orch.history) == 1
        assert "Failed to save rebuild history" in caplog.text


class TestLog:
    """Tests for the log buffer and its accessors."""

    def test_output_classified_and_beautified(self, h: Harness):
        h.start()
        h.feed(OutputLine("stderr", "warning: dirty tree"),
               OutputLine("stdout", "these 3 derivations will be built:"))

        lines = h.orch.log_lines(offset=1)
        assert lines[0].level == LogLevel.WARNING
        assert lines[0].text == "⚠ warning: dirty tree"
        assert lines[1].raw == "these 3 derivations will be built:"
        assert h.orch.current_activity == "📋 3 derivations to build"

    def test_cap_and_drain(self, tmp_path: Path):
        harness = Harness(tmp_path, Settings(log_cap=10, log_drain=4, poll_batch=1000))
        harness.start()
        harness.feed(*[OutputLine("stdout", f"line {i}") for i in range(20)])

        orch = harness.orch
        assert len(orch.log_lines()) <= 11
        assert orch.log_total == 21
        assert orch.log_lines()[-1].raw == "line 19"

    def test_lines_since_skips_dropped(self, tmp_path: Path):
        harness = Harness(tmp_path, Settings(log_cap=5, log_drain=3, poll_batch=1000))
        harness.start()
        cursor = harness.orch.log_total
        assert cursor == 1

        harness.feed(*[OutputLine("stdout", f"line {i}") for i in range(8)])
        lines, cursor = harness.orch.lines_since(cursor)

        assert cursor == 9
        assert lines[-1].raw == "line 7"
        assert [l.raw for l in lines] == [f"line {i}" for i in range(8)][-len(lines):]
        assert harness.orch.lines_since(cursor) == ([], 9)

    def test_pagination(self, h: Harness):
        h.start()
        h.feed(*[OutputLine("stdout", f"line {i}") for i in range(5)])
        assert [l.raw for l in h.orch.log_lines(offset=2, limit=2)] == ["line 1", "line 2"]

    def test_search(self, h: Harness):
        h.start()
        h.feed(OutputLine("stdout", "Building NGINX"), OutputLine("stdout", "other"))
        assert [l.raw for l in h.orch.search_log("nginx")] == ["Building NGINX"]

    def test_poll_batch(self, tmp_path: Path):
        harness = Harness(tmp_path, Settings(poll_batch=3))
        harness.start()
        for i in range(5):
            harness.sup.channel.put(OutputLine("stdout", str(i)))
        assert harness.orch.poll() == 3
        assert harness.orch.poll() == 2
        assert harness.orch.poll() == 0


class TestStatsAndHistory:
    """Tests for merged stats and history bookkeeping."""

    def test_stats_merged_across_streams(self, h: Harness):
        h.start()
        h.feed(
            StatsUpdated("stdout", BuildStats(derivations_built=2, warnings=1)),
            StatsUpdated("stderr", BuildStats(derivations_total=5, errors=1)),
            StatsUpdated("stdout", BuildStats(derivations_built=3, warnings=2)),
        )
        stats = h.orch.stats
        assert stats.derivations_built == 3
        assert stats.derivations_total == 5
        assert stats.warnings == 2
        assert stats.errors == 1

    def test_history_trimmed(self, tmp_path: Path):
        store = HistoryStore(tmp_path / "history.json", limit=2)
        harness = Harness(tmp_path, store=store)
        for _ in range(3):
            harness.start()
            harness.feed(Finished(True))

        assert len(harness.orch.history) == 2
        assert len(store.load()) == 2

    def test_history_loaded_and_estimated(self, tmp_path: Path):
        h1 = Harness(tmp_path)
        for duration in (10, 20):
            h1.clock.now = 0
            h1.start()
            h1.feed(Finished(True), at=duration)

        h2 = Harness(tmp_path)
        assert [e.duration for e in h2.orch.history] == [10, 20]
        assert h2.orch.estimated_duration() == 15


class TestFormatting:
    """Tests for the time formatters."""

    def test_format_clock(self):
        assert format_clock(0) == "00:00"
        assert format_clock(75.9) == "01:15"
        assert format_clock(3600) == "60:00"

    def test_format_duration(self):
        assert format_duration(45) == "45s"
        assert format_duration(192) == "3m 12s"
