"""
STEWARD Report Emitter

One JSON report per run under `<repo>/<reports_dir>/<run_id>/report.json`
and one append-only JSON-lines telemetry row per run. Also turns a
failure's reason code into the plain-language message and next action
the user sees.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field

from steward.checks import QuickCheckResult
from steward.config_loader import WorkspaceConfig
from steward.finalize import FinalizationOutcome
from steward.gates import GATE_ORDER
from steward.router import ModelCallRecord
from steward.state import Attempt, GateSnapshot, LoopRecord, Phase, ReviewFinding, TransitionEvent

TELEMETRY_SCHEMA_VERSION = 1

Outcome = Literal["passed", "failed", "aborted"]


# ---------------------------------------------------------------------------
# Plain-language failures
# ---------------------------------------------------------------------------

_SCOPE_ACTION = "Regenerate the fix so it only edits files in the validated scope."

_MESSAGES: dict[str, tuple[str, str]] = {
    "budget_exceeded": (
        "STEWARD stopped before applying changes because the run budget was exhausted.",
        "Rerun apply with a smaller scoped change or a higher budget for this run.",
    ),
    "deadline_exceeded": (
        "STEWARD stopped before applying changes because the run hit its time limit.",
        "Rerun apply with a smaller scoped change or a longer time limit for this run.",
    ),
    "quick_check_failed": (
        "STEWARD could not apply this change because project quick checks failed.",
        "Fix the quick-check error in the scoped file and rerun apply.",
    ),
    "quick_check_unavailable": (
        "STEWARD could not apply this change because the project quick-check tool is unavailable.",
        "Install or enable the required quick-check tool for this repo, then rerun apply.",
    ),
    "out-of-scope": ("STEWARD stopped because the proposed edit went outside the validated scope.", _SCOPE_ACTION),
    "path-traversal": ("STEWARD stopped because the proposed edit pointed outside the repository.", _SCOPE_ACTION),
    "symlink-write": ("STEWARD stopped because the proposed edit would write through a symbolic link.", _SCOPE_ACTION),
    "binary-write": (
        "STEWARD stopped because the proposed edit would modify a binary file.",
        "Regenerate the fix so it only edits text files in the validated scope.",
    ),
    "syntax-safety": (
        "STEWARD stopped because the proposed edit left a file that no longer parses.",
        "Fix parse/syntax errors in changed files and rerun apply.",
    ),
    "blocking_review_residual": (
        "STEWARD stopped because review found blocking issues that auto-fix could not resolve.",
        "Address blocking review findings in scope and rerun apply.",
    ),
    "non_empty_diff_violation": (
        "STEWARD stopped because no usable change was generated for this suggestion.",
        "Generate at least one in-scope file change and rerun apply.",
    ),
    "provider_unavailable": (
        "STEWARD stopped because every configured model provider was unavailable.",
        "Check provider API keys and status, then rerun apply.",
    ),
    "cancelled": (
        "STEWARD was interrupted before the change was applied.",
        "Rerun apply when ready.",
    ),
    "finalization_error": (
        "STEWARD could not merge the verified change and rolled the repository back.",
        "Make sure the repository is clean and on the target branch, then rerun apply.",
    ),
    "repo_dirty": (
        "STEWARD did not start because the repository has uncommitted tracked changes.",
        "Commit or stash your changes, then rerun apply.",
    ),
    "repo_locked": (
        "STEWARD did not start because another git process holds the repository lock.",
        "Wait for the other git command to finish (or remove a stale index.lock), then rerun apply.",
    ),
    "disk_space": (
        "STEWARD did not start because there is not enough free disk space for a sandbox.",
        "Free some disk space, then rerun apply.",
    ),
    "worktree_failed": (
        "STEWARD did not start because the isolated worktree could not be created.",
        "Run `git worktree prune` in the repository, then rerun apply.",
    ),
}


def describe_failure(reason_code: str | None) -> tuple[str, str]:
    """(message, action) for a reason code."""
    if reason_code in _MESSAGES:
        return _MESSAGES[reason_code]
    return (
        f"STEWARD stopped before applying changes ({reason_code or 'unknown reason'}).",
        "Inspect the report for details and rerun apply.",
    )


class FailureRecord(BaseModel):
    kind: str
    code: str
    gate: str | None = None
    message: str
    action: str
    detail: str = ""


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

class Report(BaseModel):
    run_id: str
    suggestion_id: str
    summary: str
    scope: list[str]
    outcome: Outcome
    failure: FailureRecord | None = None
    attempt_phase: str
    base_commit: str | None = None
    gate_snapshots: list[GateSnapshot] = Field(default_factory=list)
    commands: list[QuickCheckResult] = Field(default_factory=list)
    model_calls: list[ModelCallRecord] = Field(default_factory=list)
    findings: list[ReviewFinding] = Field(default_factory=list)
    repairs: list[LoopRecord] = Field(default_factory=list)
    fixes: list[LoopRecord] = Field(default_factory=list)
    transitions: list[TransitionEvent] = Field(default_factory=list)
    generations: int = 0
    cost_usd: float = 0.0
    wall_ms: int = 0
    notes: list[str] = Field(default_factory=list)
    reduced_confidence: bool = False
    finalization: str
    finalization_detail: str = ""
    commit_id: str | None = None
    branch: str | None = None
    mutation_on_failure: bool = False
    started_at: str
    ended_at: str
    report_path: str | None = None

    @classmethod
    def build(
        cls,
        attempt: Attempt,
        final: FinalizationOutcome,
        calls: list[ModelCallRecord] | None = None,
    ) -> "Report":
        state = attempt.state
        outcome: Outcome = {Phase.PASSED: "passed", Phase.ABORTED: "aborted"}.get(state.phase, "failed")
        failure: FailureRecord | None = None

        if final.status == "rolled_back":
            outcome = "failed"
            message, action = describe_failure("finalization_error")
            failure = FailureRecord(
                kind="finalization_error", code="finalization_error",
                message=message, action=action, detail=final.detail,
            )
        elif outcome != "passed":
            code = state.reason_code or (state.failure.value if state.failure else "unknown")
            message, action = describe_failure(code)
            failure = FailureRecord(
                kind=state.failure.value if state.failure else "unknown",
                code=code,
                gate=code if code in GATE_ORDER else None,
                message=message,
                action=action,
                detail=state.detail,
            )

        budget = attempt.budget
        return cls(
            run_id=attempt.run_id,
            suggestion_id=attempt.suggestion.id,
            summary=attempt.suggestion.summary,
            scope=list(attempt.suggestion.scope),
            outcome=outcome,
            failure=failure,
            attempt_phase=state.phase.value,
            base_commit=attempt.base_commit,
            gate_snapshots=attempt.gate_snapshots,
            commands=attempt.commands,
            model_calls=calls or [],
            findings=attempt.findings,
            repairs=attempt.repairs,
            fixes=attempt.fixes,
            transitions=attempt.transitions,
            generations=attempt.generations,
            cost_usd=budget.cost_usd if budget else 0.0,
            wall_ms=budget.wall_ms if budget else 0,
            notes=attempt.notes,
            reduced_confidence=attempt.reduced_confidence,
            finalization=final.status,
            finalization_detail=final.detail,
            commit_id=final.commit_id if final.status == "applied" else None,
            branch=final.branch,
            mutation_on_failure=final.mutation_on_failure,
            started_at=attempt.started_at,
            ended_at=attempt.ended_at or datetime.now(timezone.utc).isoformat(),
        )

    def telemetry_row(self) -> dict[str, Any]:
        return {
            "schema_version": TELEMETRY_SCHEMA_VERSION,
            "timestamp": self.ended_at,
            "run_id": self.run_id,
            "suggestion_id": self.suggestion_id,
            "outcome": self.outcome,
            "reason_code": self.failure.code if self.failure else None,
            "finalization": self.finalization,
            "cost_usd": round(self.cost_usd, 6),
            "wall_ms": self.wall_ms,
            "generations": self.generations,
            "repairs": len(self.repairs),
            "fixes": len(self.fixes),
            "model_calls": len(self.model_calls),
            "reduced_confidence": self.reduced_confidence,
            "mutation_on_failure": self.mutation_on_failure,
        }


def describe_outcome(report: Report) -> str:
    """User-visible summary: plain reason, report path, and any confidence caveat."""
    if report.outcome == "passed":
        where = f"branch {report.branch}" if report.finalization == "applied" and report.branch else "the repository"
        lines = [f"STEWARD applied the change to {where} (commit {(report.commit_id or '')[:10]})."]
    else:
        failure = report.failure
        lines = [failure.message if failure else "STEWARD did not apply this change."]
        if failure and failure.detail:
            lines.append(f"Details: {failure.detail}")
        if failure:
            lines.append(f"Next step: {failure.action}")
    if report.report_path:
        lines.append(f"Report: {report.report_path}")
    if report.reduced_confidence:
        lines.append("Note: confidence is reduced (some checks could not run for this change).")
    if report.mutation_on_failure:
        lines.append("WARNING: the repository changed during this run; inspect it before continuing.")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Emitters
# ---------------------------------------------------------------------------

class TelemetryLog:
    """Append-only JSON-lines file."""

    def __init__(self, path: Path):
        self.path = path

    def append(self, row: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(row, default=str) + "\n")

    def read(self, limit: int | None = None) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        rows = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"[REPORT] Skipping malformed telemetry row in {self.path}")
        return rows[-limit:] if limit else rows


class ReportEmitter:
    def __init__(self, repo_path: Path, config: WorkspaceConfig):
        self.reports_dir = repo_path / config.reports_dir
        self.telemetry = TelemetryLog(repo_path / config.telemetry_file)

    def path_for(self, run_id: str) -> Path:
        return self.reports_dir / run_id / "report.json"

    def emit(self, report: Report) -> Path:
        path = self.path_for(report.run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        report.report_path = str(path)
        path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
        self.telemetry.append(report.telemetry_row())
        logger.info(f"[REPORT] {report.outcome} → {path}")
        return path

    def load(self, run_id: str) -> Report:
        return Report.model_validate_json(self.path_for(run_id).read_text(encoding="utf-8"))
