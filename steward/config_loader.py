"""
Configuration loader for STEWARD.
Merges defaults with per-repo .steward/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class RoutingConfig(BaseModel):
    implementer: list[str] = Field(default_factory=lambda: ["anthropic/claude-sonnet-4-20250514"])
    repairer: list[str] = Field(default_factory=lambda: ["anthropic/claude-sonnet-4-20250514"])
    reviewer: list[str] = Field(default_factory=lambda: ["openai/gpt-4.1"])
    security_reviewer: list[str] = Field(default_factory=lambda: ["gemini/gemini-2.5-flash"])
    fixer: list[str] = Field(default_factory=lambda: ["anthropic/claude-sonnet-4-20250514"])

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_single_model(cls, value: Any) -> Any:
        # A bare string is shorthand for a one-entry fallback chain.
        if isinstance(value, str):
            return [value]
        return value

    def chain_for(self, role: str) -> list[str]:
        chain = getattr(self, role, None)
        if not chain:
            raise ValueError(f"Unknown or empty routing role: {role}")
        return list(chain)


class LimitsConfig(BaseModel):
    max_attempts: int = 4
    max_repairs: int = 2
    max_fixes: int = 4
    # When set, repairs and fixes draw from this single pool instead of
    # their own ceilings.
    shared_loop_budget: int | None = None
    max_cost_usd: float = 0.50
    max_wall_ms: int = 300_000
    call_reserve_usd: float = 0.005
    call_reserve_ms: int = 1_000


class ReliabilityConfig(BaseModel):
    call_timeout_s: float = 60.0
    max_retries: int = 3
    max_retry_latency_s: float = 90.0
    backoff_min_s: float = 2.0
    backoff_max_s: float = 16.0
    breaker_failure_threshold: int = 3
    breaker_window_s: float = 60.0
    breaker_cooldown_s: float = 30.0


class ReviewConfig(BaseModel):
    blocking_severities: list[str] = Field(default_factory=lambda: ["critical", "warning"])
    reviewers: list[str] = Field(default_factory=lambda: ["reviewer", "security_reviewer"])
    max_concurrent_reviewers: int = 2
    dismiss_probable_false_positives: bool = True


class ChecksConfig(BaseModel):
    command: str | None = None
    timeout_s: float = 120.0
    require_available: bool = False


class WorkspaceConfig(BaseModel):
    sandbox_root: str | None = None
    reports_dir: str = ".steward/reports"
    telemetry_file: str = ".steward/telemetry.jsonl"
    log_dir: str = ".steward/logs"
    min_free_mb: int = 200


class FinalizeConfig(BaseModel):
    mode: Literal["fast_forward", "branch_only"] = "fast_forward"
    branch_prefix: str = "steward/"
    target_branch: str | None = None


class StewardConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    reliability: ReliabilityConfig = Field(default_factory=ReliabilityConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    checks: ChecksConfig = Field(default_factory=ChecksConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    finalize: FinalizeConfig = Field(default_factory=FinalizeConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    check_cmd = os.environ.get("STEWARD_CHECK_CMD", "").strip()
    if check_cmd:
        overrides.setdefault("checks", {})["command"] = check_cmd
    max_cost = os.environ.get("STEWARD_MAX_COST_USD", "").strip()
    if max_cost:
        overrides.setdefault("limits", {})["max_cost_usd"] = float(max_cost)
    return overrides


def load_config(repo_path: Path | None = None) -> StewardConfig:
    """
    Load config by merging:
      1. Built-in defaults (steward/config.yaml)
      2. Repo-level overrides (<repo>/.steward/config.yaml)
      3. Environment variable overrides
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if repo_path:
        repo_config = repo_path / ".steward" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    base = _deep_merge(base, _env_overrides())
    return StewardConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
