"""
nixmate — CLI entrypoint.

Usage:
    nixmate --help
    nixmate detect
    nixmate rebuild run --mode switch
    python -m nixmate.main rebuild history
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from nixmate.core.observability.logging_config import resolve_level, setup_from_env

from nixmate import __version__


@click.group()
@click.version_option(version=__version__, prog_name="nixmate")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, dir_okay=False),
    default=None,
    help="Path to config.yml (default: ~/.config/nixmate/config.yml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """nixmate — NixOS rebuilds with progress, diffs and history."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    level = resolve_level(debug=debug, verbose=verbose, quiet=quiet)
    setup_from_env(level, debug=debug)


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def detect(ctx: click.Context, as_json: bool) -> None:
    """Detect whether the system is configured with flakes or channels."""
    from nixmate.core.nix.detect import detect_system

    system = detect_system()

    if as_json:
        click.echo(json.dumps(system.model_dump(), indent=2))
        return

    if system.uses_flakes:
        click.secho("❄️  Flakes", fg="cyan", bold=True, nl=False)
        click.echo(f"  → {system.flake_path}/flake.nix")
    else:
        click.secho("📡 Channels", fg="cyan", bold=True, nl=False)
        click.echo("  (no flake.nix in the usual locations)")


@cli.group()
def config() -> None:
    """nixmate configuration commands."""


@config.command("show")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_show(ctx: click.Context, as_json: bool) -> None:
    """Show the effective settings."""
    from nixmate.core.config.loader import ConfigError, default_config_path, load_settings

    path: Path = ctx.obj.get("config_path") or default_config_path()
    try:
        settings = load_settings(path)
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)

    data = settings.model_dump(mode="json")
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    source = str(path) if path.is_file() else "defaults (no config file)"
    click.secho(f"⚙️  Settings from {source}", fg="cyan", bold=True)
    for key, value in data.items():
        click.echo(f"   {key:<18} {value}")
    click.echo()


@config.command("path")
@click.pass_context
def config_path(ctx: click.Context) -> None:
    """Print the config file location."""
    from nixmate.core.config.loader import default_config_path

    click.echo(str(ctx.obj.get("config_path") or default_config_path()))


# ── Register subgroups ──────────────────────────────────────────

from nixmate.ui.cli.rebuild import rebuild  # noqa: E402

cli.add_command(rebuild)


if __name__ == "__main__":
    cli()
