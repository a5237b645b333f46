"""
Line classification — turn unstructured nixos-rebuild output into structure.

All functions here are pure and operate on a single line:

    detect_phase            — line + current phase → phase
    update_stats            — line + running counters → counters (in place)
    detect_service_restart  — line → restarted unit name(s) or None
    classify_line           — line → LogLevel
    beautify_line           — line → human-readable display text

Rules are keyword matches on the lower-cased line.  Exact output of
nixos-rebuild varies across releases; these match the common wording.
"""

from __future__ import annotations

from nixmate.core.models.rebuild import BuildPhase, BuildStats, LogLevel
from nixmate.core.nix.store_path import parse_store_path

# ── Phase rules (ordered, first match wins) ─────────────────────

_EVALUATING = ("evaluating", "trace:")
_BUILDING = (
    "building '",
    "these derivations will be built",
    "these paths will be fetched",
)
_FETCHING = ("copying path", "fetching ", "downloading ")
_BOOTLOADER = (
    "updating boot",
    "installing boot",
    "updating the boot",
    "grub",
    "systemd-boot",
    "bootctl",
    "updating efi",
)
_ACTIVATING = (
    "activating the configuration",
    "setting up",
    "switching to",
    "updating systemd",
    "reloading systemd",
    "restarting",
    "stopping",
    "starting",
)

# Bootloader is checked before activation: "updating GRUB" would
# otherwise be caught by the generic activation words.
_PHASE_RULES: tuple[tuple[tuple[str, ...], BuildPhase], ...] = (
    (_EVALUATING, BuildPhase.EVALUATING),
    (_BUILDING, BuildPhase.BUILDING),
    (_FETCHING, BuildPhase.FETCHING),
    (_BOOTLOADER, BuildPhase.BOOTLOADER),
    (_ACTIVATING, BuildPhase.ACTIVATING),
)


def detect_phase(line: str, current: BuildPhase) -> BuildPhase:
    """Return the phase a line announces, or ``current`` if none."""
    lower = line.lower()
    for keywords, phase in _PHASE_RULES:
        if any(k in lower for k in keywords):
            return phase
    return current


# ── Stats ───────────────────────────────────────────────────────


def extract_number(line: str) -> int | None:
    """First whitespace-delimited token that is a non-negative integer."""
    for word in line.split():
        if word.isascii() and word.isdigit():
            return int(word)
    return None


def update_stats(line: str, stats: BuildStats) -> BuildStats:
    """Fold one line into ``stats`` (mutated and returned)."""
    lower = line.lower()

    if "building '" in lower:
        stats.derivations_built += 1

    if "derivations will be built" in lower or "derivation(s) will be built" in lower:
        total = extract_number(line)
        if total is not None:
            stats.derivations_total = total

    if "copying path" in lower or "fetching path" in lower:
        stats.fetched += 1

    if "warning:" in lower:
        stats.warnings += 1

    if "error:" in lower:
        stats.errors += 1

    return stats


# ── Services ────────────────────────────────────────────────────


def detect_service_restart(line: str) -> str | None:
    """Extract the unit(s) a (re)starting line refers to.

    Handles ``restarting the following units: a.service, b.service``
    and ``restarting foo.service...``.
    """
    lower = line.lower()
    if "restarting" not in lower and "starting" not in lower:
        return None

    idx = lower.find("units:")
    if idx != -1:
        units = [u.strip() for u in line[idx + len("units:"):].split(",")]
        units = [u for u in units if u]
        if units:
            return ", ".join(units)

    idx = lower.find(".service")
    if idx != -1:
        before = line[:idx]
        space = before.rfind(" ")
        if space != -1:
            name = before[space + 1:].strip()
            if name:
                return f"{name}.service"
    return None


# ── Severity ────────────────────────────────────────────────────


def classify_line(line: str) -> LogLevel:
    """Severity tag for display."""
    lower = line.lower()
    if "error:" in lower or "error " in lower or lower.startswith("error"):
        return LogLevel.ERROR
    if "warning:" in lower:
        return LogLevel.WARNING
    if "building '" in lower or "fetching " in lower or "copying path" in lower:
        return LogLevel.INFO
    return LogLevel.NORMAL


# ── Display ─────────────────────────────────────────────────────

_STORE_PREFIX = "/nix/store/"
_TRACE_MAX = 100

_UNIT_ACTIONS = (
    ("restarting the following units:", "🔄 Restarting"),
    ("starting the following units:", "▶ Starting"),
    ("stopping the following units:", "⏹ Stopping"),
    ("reloading the following units:", "🔃 Reloading"),
)


def _store_path_in(line: str, terminators: str) -> str | None:
    start = line.find(_STORE_PREFIX)
    if start == -1:
        return None
    rest = line[start:]
    end = len(rest)
    for ch in terminators:
        pos = rest.find(ch)
        if pos != -1:
            end = pos
            break
    return rest[:end]


def _name_version(path: str) -> str | None:
    parsed = parse_store_path(path)
    if parsed is None:
        return None
    name, version = parsed
    name = name.removesuffix(".drv")
    version = version.removesuffix(".drv")
    return f"{name} {version}" if version else name


def beautify_line(line: str) -> str:
    """Human-readable rendering of a raw output line."""
    lower = line.lower()

    if "building '" in lower:
        # building '/nix/store/<hash>-name-version.drv'...
        path = _store_path_in(line, "'")
        label = _name_version(path) if path else None
        if label:
            return f"🔨 Building {label}"

    if "copying path" in lower or "fetching path" in lower:
        path = _store_path_in(line, "' ")
        label = _name_version(path) if path else None
        if label:
            return f"📦 Fetching {label}"

    if "derivations will be built" in lower or "derivation(s) will be built" in lower:
        n = extract_number(line)
        if n is not None:
            return f"📋 {n} derivations to build"

    if "paths will be fetched" in lower:
        n = extract_number(line)
        if n is not None:
            open_idx, close_idx = line.find("("), line.find(")")
            if open_idx != -1 and close_idx > open_idx:
                return f"📋 {n} paths to fetch ({line[open_idx + 1:close_idx]})"
            return f"📋 {n} paths to fetch from cache"

    if lower.startswith("evaluating"):
        return f"⚙ {line}"

    if "activating the configuration" in lower:
        return "⚡ Activating new system configuration"

    if "setting up /etc" in lower:
        return "📁 Updating /etc configuration files"

    for marker, verb in _UNIT_ACTIONS:
        if marker in lower:
            units = line.split("units:", 1)[1].strip() if "units:" in line else ""
            return f"{verb}: {units}"

    if "updating grub" in lower or "installing grub" in lower:
        return "🥾 Updating GRUB bootloader"
    if "updating systemd-boot" in lower or "installing systemd-boot" in lower:
        return "🥾 Updating systemd-boot"

    if lower.startswith("warning:"):
        return f"⚠ {line}"
    if lower.startswith("error:"):
        return f"✗ {line}"

    if lower.startswith("trace:") and len(line) > _TRACE_MAX:
        return f"… {line[:_TRACE_MAX - 3]}"

    return line
