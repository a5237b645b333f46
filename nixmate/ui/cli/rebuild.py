"""
CLI commands for NixOS rebuilds.

Thin wrappers over ``nixmate.core.services.rebuild``.  ``run`` is the
terminal stand-in for the dashboard: it ticks the orchestrator, streams
new log lines and prints a summary when the run is over.
"""

from __future__ import annotations

import json
import sys
import time
from pathlib import Path

import click

from nixmate.core.config.loader import ConfigError, load_settings
from nixmate.core.models.rebuild import (
    BuildPhase,
    LogLevel,
    LogLine,
    RebuildMode,
    RunConfiguration,
)
from nixmate.core.models.settings import Settings
from nixmate.core.nix.detect import detect_system
from nixmate.core.persistence.history import HistoryStore, estimated_duration
from nixmate.core.services.rebuild.orchestrator import (
    RebuildOrchestrator,
    format_duration,
)

# Seconds to wait for the killed process to report back after Ctrl-C
_CANCEL_GRACE = 10.0

_MODE_CHOICE = click.Choice([m.value for m in RebuildMode])

_LEVEL_STYLE: dict[LogLevel, dict] = {
    LogLevel.ERROR: {"fg": "red"},
    LogLevel.WARNING: {"fg": "yellow"},
    LogLevel.PHASE: {"fg": "cyan", "bold": True},
    LogLevel.INFO: {"fg": "blue"},
}


def _load_settings(ctx: click.Context) -> Settings:
    """Settings from --config (or the default location); exit on errors."""
    config_path: Path | None = ctx.obj.get("config_path")
    try:
        return load_settings(config_path)
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)


def _make_orchestrator(settings: Settings) -> RebuildOrchestrator:
    return RebuildOrchestrator(settings)


def _run_configuration(
    settings: Settings,
    mode: str | None,
    show_trace: bool | None,
    flake_dir: str | None,
    channels: bool,
    secret: str | None = None,
) -> RunConfiguration:
    return RunConfiguration.from_system(
        detect_system(),
        mode=RebuildMode.parse(mode) if mode else settings.default_mode,
        show_trace=settings.show_trace if show_trace is None else show_trace,
        flake_dir=flake_dir or settings.flake_path,
        force_channels=channels,
        secret=secret,
    )


@click.group()
def rebuild() -> None:
    """NixOS rebuild — run, cancel with Ctrl-C, review history."""


# ── Command preview ─────────────────────────────────────────────


@rebuild.command("command")
@click.option("--mode", "-m", type=_MODE_CHOICE, default=None, help="Rebuild mode.")
@click.option("--show-trace/--no-show-trace", default=None, help="Pass --show-trace.")
@click.option("--flake", "flake_dir", default=None, help="Flake directory (forces flake mode).")
@click.option("--channels", is_flag=True, help="Force channel mode.")
@click.pass_context
def command(
    ctx: click.Context,
    mode: str | None,
    show_trace: bool | None,
    flake_dir: str | None,
    channels: bool,
) -> None:
    """Print the command a rebuild would run."""
    settings = _load_settings(ctx)
    config = _run_configuration(settings, mode, show_trace, flake_dir, channels)
    click.echo(config.command_string())


# ── Run ─────────────────────────────────────────────────────────


@rebuild.command("run")
@click.option("--mode", "-m", type=_MODE_CHOICE, default=None, help="Rebuild mode.")
@click.option("--show-trace/--no-show-trace", default=None, help="Pass --show-trace.")
@click.option("--flake", "flake_dir", default=None, help="Flake directory (forces flake mode).")
@click.option("--channels", is_flag=True, help="Force channel mode.")
@click.option("--ask-password", is_flag=True, help="Prompt for the sudo password.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def run(
    ctx: click.Context,
    mode: str | None,
    show_trace: bool | None,
    flake_dir: str | None,
    channels: bool,
    ask_password: bool,
    as_json: bool,
) -> None:
    """Run nixos-rebuild and follow its progress.

    Examples:

        nixmate rebuild run

        nixmate rebuild run --mode boot --show-trace

        nixmate rebuild run --flake ~/nixos --ask-password
    """
    settings = _load_settings(ctx)

    secret = None
    if ask_password:
        secret = click.prompt("🔐 sudo password", hide_input=True, default="", show_default=False)

    config = _run_configuration(settings, mode, show_trace, flake_dir, channels, secret)
    orch = _make_orchestrator(settings)

    if not as_json:
        click.secho(f"\n🔨 {config.mode.label}", fg="cyan", bold=True, nl=False)
        click.echo(f"  {config.command_string()}")
        estimate = orch.estimated_duration()
        if estimate is not None:
            click.echo(f"   ⏱  Usually takes ~{format_duration(estimate)}")
        click.echo()

    orch.start(config)
    del secret
    _follow(orch, tick=settings.tick_interval, echo_lines=not as_json)

    if as_json:
        click.echo(json.dumps(_run_summary(orch), indent=2))
    else:
        _print_summary(orch)

    if orch.phase != BuildPhase.DONE:
        sys.exit(1)


def _follow(orch: RebuildOrchestrator, *, tick: float, echo_lines: bool) -> None:
    """Tick the orchestrator until the run is over.  Ctrl-C cancels."""
    cursor = 0
    cancel_deadline: float | None = None

    while orch.is_running or orch.is_attached:
        try:
            orch.poll()
            if echo_lines:
                cursor = _echo_new_lines(orch, cursor)
            if cancel_deadline is not None and time.monotonic() > cancel_deadline:
                break
            time.sleep(tick)
        except KeyboardInterrupt:
            if cancel_deadline is not None:
                break
            orch.cancel()
            cancel_deadline = time.monotonic() + _CANCEL_GRACE

    if echo_lines:
        _echo_new_lines(orch, cursor)


def _echo_new_lines(orch: RebuildOrchestrator, cursor: int) -> int:
    lines, cursor = orch.lines_since(cursor)
    for line in lines:
        _echo_line(line)
    return cursor


def _echo_line(line: LogLine) -> None:
    style = _LEVEL_STYLE.get(line.level)
    if style:
        click.secho(f"   {line.text}", **style)
    else:
        click.echo(f"   {line.text}")


def _run_summary(orch: RebuildOrchestrator) -> dict:
    failed = orch.failed_phase_index
    phases = BuildPhase.pipeline_phases()
    return {
        "success": orch.phase == BuildPhase.DONE,
        "phase": orch.phase.value,
        "mode": orch.mode.value,
        "command": orch.command,
        "duration": int(orch.elapsed()),
        "failed_phase": phases[failed].value if failed is not None else None,
        "timings": [
            {
                "phase": phase.value,
                "seconds": orch.phase_elapsed(idx),
                "skipped": timing.skipped,
            }
            for idx, (phase, timing) in enumerate(zip(phases, orch.timings))
        ],
        "stats": orch.stats.model_dump(),
        "diff": orch.diff.model_dump(mode="json") if orch.diff else None,
    }


def _print_summary(orch: RebuildOrchestrator) -> None:
    click.echo()
    elapsed = format_duration(orch.elapsed())
    if orch.phase == BuildPhase.DONE:
        click.secho(f"✅ Rebuild finished in {elapsed}", fg="green", bold=True)
    else:
        click.secho(f"❌ Rebuild failed after {elapsed}", fg="red", bold=True)

    # Phases
    click.secho("   Phases:", fg="white", bold=True)
    for idx, (phase, timing) in enumerate(zip(BuildPhase.pipeline_phases(), orch.timings)):
        if idx == orch.failed_phase_index:
            click.secho(f"     ✗ {phase.label:<12}", fg="red", nl=False)
            click.echo(f" {orch.phase_elapsed_str(idx)}")
        elif timing.reached:
            click.secho(f"     ✓ {phase.label:<12}", fg="green", nl=False)
            click.echo(f" {orch.phase_elapsed_str(idx)}")
        else:
            click.secho(f"     ⊘ {phase.label:<12} skipped", fg="bright_black")

    # Stats
    stats = orch.stats
    built = (
        f"{stats.derivations_built}/{stats.derivations_total}"
        if stats.derivations_total is not None
        else str(stats.derivations_built)
    )
    click.echo(
        f"   Stats: {built} built · {stats.fetched} fetched · "
        f"{stats.warnings} warnings · {stats.errors} errors"
    )

    diff = orch.diff
    if diff is not None:
        click.echo()
        if diff.is_empty:
            click.secho("   No package changes", fg="cyan")
        else:
            click.secho(
                f"   Changes: +{len(diff.added)} -{len(diff.removed)} ~{len(diff.updated)}",
                fg="cyan", bold=True,
            )
            for name, version in diff.added:
                click.secho(f"     + {name} {version}".rstrip(), fg="green")
            for name, version in diff.removed:
                click.secho(f"     - {name} {version}".rstrip(), fg="red")
            for name, old, new in diff.updated:
                click.secho(f"     ~ {name} {old} → {new}", fg="yellow")
        if diff.kernel_changed:
            old, new = diff.kernel_changed
            click.secho(f"   🐧 Kernel {old} → {new} (reboot needed)", fg="yellow", bold=True)
        if diff.os_version_changed:
            old, new = diff.os_version_changed
            click.echo(f"   ❄️  NixOS {old} → {new}")
        if diff.services_restarted:
            click.echo(f"   🔄 Services: {', '.join(diff.services_restarted)}")

    click.echo()


# ── History ─────────────────────────────────────────────────────


@rebuild.command()
@click.option("-n", "count", default=10, type=int, help="Number of runs.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, count: int, as_json: bool) -> None:
    """Show recent rebuilds, newest first."""
    settings = _load_settings(ctx)
    entries = HistoryStore(limit=settings.history_limit).load()
    recent = list(reversed(entries))[:max(count, 0)]
    estimate = estimated_duration(entries)

    if as_json:
        click.echo(json.dumps({
            "entries": [e.model_dump(mode="json") for e in recent],
            "estimated_duration": estimate,
        }, indent=2))
        return

    if not recent:
        click.secho("📜 No rebuilds recorded yet", fg="yellow")
        return

    click.secho(f"📜 Rebuild history ({len(entries)} total):", fg="cyan", bold=True)
    for entry in recent:
        icon, color = ("✓", "green") if entry.success else ("✗", "red")
        click.secho(f"   {icon} {entry.timestamp}", fg=color, nl=False)
        click.echo(f"  {entry.mode.label:<9} {format_duration(entry.duration):>7}")
        if entry.error_preview:
            click.echo(f"       │ {entry.error_preview}")

    if estimate is not None:
        click.echo()
        click.echo(f"   ⏱  Estimated duration: ~{format_duration(estimate)}")
    click.echo()
