"""
Settings — user configuration loaded from config.yml.

Every key is optional; a missing file yields the defaults below.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from nixmate.core.models.rebuild import RebuildMode


class Settings(BaseModel):
    """Root settings model."""

    model_config = ConfigDict(extra="ignore")

    # ── Rebuild defaults ────────────────────────────────────────
    default_mode: RebuildMode = RebuildMode.SWITCH
    show_trace: bool = False
    flake_path: str | None = None          # overrides detection when set

    # ── Limits ──────────────────────────────────────────────────
    history_limit: int = Field(default=100, ge=1, le=100)
    log_cap: int = Field(default=50_000, ge=1)
    log_drain: int = Field(default=10_000, ge=1)
    poll_batch: int = Field(default=100, ge=1)

    # ── Timing (seconds) ────────────────────────────────────────
    tick_interval: float = Field(default=0.1, gt=0)
    snapshot_timeout: float = Field(default=120.0, gt=0)
    settle_delay: float = Field(default=0.5, ge=0)

    @field_validator("default_mode", mode="before")
    @classmethod
    def _lenient_mode(cls, value: object) -> RebuildMode:
        return RebuildMode.parse(value)
