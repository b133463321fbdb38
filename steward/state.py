"""
STEWARD Attempt State

The attempt lifecycle is a tagged state value plus a pure transition
function:

    transition(state, signal) -> (next_state, events)

Created → Applying → GatesChecked → QuickChecking ⇄ Repairing
        → Reviewing → AutoFixing → ReReviewing → Passed | Failed | Aborted

Terminal states are final; calling `transition` on one raises. Budget
exhaustion, a provider outage, or cancellation override whatever
non-terminal phase the attempt is in.

Also holds the data the orchestrator accumulates while it runs (the
`Attempt` record) and the upstream `Suggestion` input.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from steward.budget import BudgetSnapshot
from steward.checks import QuickCheckResult
from steward.gates import GateResult, normalize_path


# ---------------------------------------------------------------------------
# Suggestion (upstream input)
# ---------------------------------------------------------------------------

class Suggestion(BaseModel):
    """A validated improvement proposal. Immutable for the life of an attempt."""

    model_config = ConfigDict(frozen=True)

    id: str
    scope: tuple[str, ...]
    summary: str
    detail: str = ""
    priority: str = "medium"
    kind: str = "improvement"

    @field_validator("scope", mode="before")
    @classmethod
    def _normalize_scope(cls, value):
        if isinstance(value, str):
            value = [value]
        seen: dict[str, None] = {}
        for raw in value or []:
            path = normalize_path(str(raw))
            if path in ("", ".") or path.startswith(("/", "../")) or path == "..":
                raise ValueError(f"Scope path must be repo-relative: {raw!r}")
            seen.setdefault(path, None)
        if not seen:
            raise ValueError("Suggestion scope must name at least one file")
        return tuple(seen)

    @classmethod
    def from_file(cls, path: Path) -> "Suggestion":
        """Load from YAML or JSON."""
        text = path.read_text(encoding="utf-8")
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
        data.setdefault("id", path.stem)
        return cls(**data)


# ---------------------------------------------------------------------------
# Review findings
# ---------------------------------------------------------------------------

Severity = Literal["critical", "warning", "suggestion", "nitpick"]


class ReviewFinding(BaseModel):
    """One issue raised by an adversarial reviewer."""
    id: str
    reviewer: str
    severity: Severity = "warning"
    file: str = ""
    line: int | None = None
    category: str = "correctness"
    title: str = ""
    description: str = ""
    recommended: bool = True
    status: Literal["open", "fixed", "dismissed"] = "open"
    round: int = 1

    def location(self) -> str:
        if not self.file:
            return "(no file)"
        return f"{self.file}:{self.line}" if self.line else self.file


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    CREATED = "created"
    APPLYING = "applying"
    GATES_CHECKED = "gates_checked"
    QUICK_CHECKING = "quick_checking"
    REPAIRING = "repairing"
    REVIEWING = "reviewing"
    AUTO_FIXING = "auto_fixing"
    RE_REVIEWING = "re_reviewing"
    PASSED = "passed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_PHASES = frozenset({Phase.PASSED, Phase.FAILED, Phase.ABORTED})


class FailureKind(str, Enum):
    SANDBOX_CREATION = "sandbox_creation"
    SAFETY_GATE_VIOLATION = "safety_gate_violation"
    QUICK_CHECK_FAILURE = "quick_check_failure"
    REVIEW_FINDING_BLOCKING = "review_finding_blocking"
    BUDGET_EXCEEDED = "budget_exceeded"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    GENERATION_FAILED = "generation_failed"
    FINALIZATION_ERROR = "finalization_error"
    CANCELLED = "cancelled"


class Signal(str, Enum):
    SANDBOX_READY = "sandbox_ready"
    SANDBOX_FAILED = "sandbox_failed"
    PATCH_EMPTY = "patch_empty"
    GENERATION_EXHAUSTED = "generation_exhausted"
    GATES_PASSED = "gates_passed"
    GATES_VIOLATION = "gates_violation"
    SYNTAX_FAILED = "syntax_failed"
    SYNTAX_UNREPAIRABLE = "syntax_unrepairable"
    BEGIN_CHECKS = "begin_checks"
    CHECKS_PASSED = "checks_passed"
    CHECKS_UNAVAILABLE = "checks_unavailable"
    CHECKS_REQUIRED_UNAVAILABLE = "checks_required_unavailable"
    CHECKS_FAILED = "checks_failed"
    REPAIRS_EXHAUSTED = "repairs_exhausted"
    REVIEW_CLEAN = "review_clean"
    REVIEW_BLOCKING = "review_blocking"
    FIXES_EXHAUSTED = "fixes_exhausted"
    FIX_APPLIED = "fix_applied"
    FIX_GATE_REGRESSED = "fix_gate_regressed"
    FIX_BROKE_CHECKS = "fix_broke_checks"
    BUDGET_EXCEEDED = "budget_exceeded"
    DEADLINE = "deadline"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    CANCELLED = "cancelled"


class AttemptState(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Phase = Phase.CREATED
    failure: FailureKind | None = None
    reason_code: str | None = None
    detail: str = ""

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


class TransitionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["transition", "terminal"]
    source: Phase
    target: Phase
    signal: Signal
    reason_code: str | None = None
    at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class InvalidTransition(Exception):
    def __init__(self, state: AttemptState, signal: Signal):
        self.state = state
        self.signal = signal
        super().__init__(f"No transition from {state.phase.value} on {signal.value}")


_F = FailureKind
_GATED_FROM = (Phase.APPLYING, Phase.REPAIRING)
_REVIEW_FROM = (Phase.REVIEWING, Phase.RE_REVIEWING)

# (phase, signal) -> (next phase, failure kind, default reason code)
_TABLE: dict[tuple[Phase, Signal], tuple[Phase, FailureKind | None, str | None]] = {
    (Phase.CREATED, Signal.SANDBOX_READY): (Phase.APPLYING, None, None),
    (Phase.CREATED, Signal.SANDBOX_FAILED): (Phase.FAILED, _F.SANDBOX_CREATION, "sandbox_creation_failed"),
    (Phase.APPLYING, Signal.PATCH_EMPTY): (Phase.APPLYING, None, None),
    (Phase.APPLYING, Signal.GENERATION_EXHAUSTED): (Phase.FAILED, _F.GENERATION_FAILED, "non_empty_diff_violation"),
    (Phase.GATES_CHECKED, Signal.BEGIN_CHECKS): (Phase.QUICK_CHECKING, None, None),
    (Phase.QUICK_CHECKING, Signal.CHECKS_PASSED): (Phase.REVIEWING, None, None),
    (Phase.QUICK_CHECKING, Signal.CHECKS_UNAVAILABLE): (Phase.REVIEWING, None, "quick_check_unavailable"),
    (Phase.QUICK_CHECKING, Signal.CHECKS_REQUIRED_UNAVAILABLE): (
        Phase.FAILED, _F.QUICK_CHECK_FAILURE, "quick_check_unavailable"),
    (Phase.QUICK_CHECKING, Signal.CHECKS_FAILED): (Phase.REPAIRING, None, "quick_check_failed"),
    (Phase.QUICK_CHECKING, Signal.REPAIRS_EXHAUSTED): (Phase.FAILED, _F.QUICK_CHECK_FAILURE, "quick_check_failed"),
    (Phase.AUTO_FIXING, Signal.FIX_APPLIED): (Phase.RE_REVIEWING, None, None),
    (Phase.AUTO_FIXING, Signal.FIX_GATE_REGRESSED): (Phase.FAILED, _F.SAFETY_GATE_VIOLATION, None),
    (Phase.AUTO_FIXING, Signal.FIX_BROKE_CHECKS): (Phase.FAILED, _F.QUICK_CHECK_FAILURE, "quick_check_failed"),
}
for _phase in _GATED_FROM:
    _TABLE[(_phase, Signal.GATES_PASSED)] = (Phase.GATES_CHECKED, None, None)
    _TABLE[(_phase, Signal.GATES_VIOLATION)] = (Phase.FAILED, _F.SAFETY_GATE_VIOLATION, None)
    _TABLE[(_phase, Signal.SYNTAX_FAILED)] = (Phase.REPAIRING, None, "syntax-safety")
    _TABLE[(_phase, Signal.SYNTAX_UNREPAIRABLE)] = (Phase.FAILED, _F.SAFETY_GATE_VIOLATION, "syntax-safety")
for _phase in _REVIEW_FROM:
    _TABLE[(_phase, Signal.REVIEW_CLEAN)] = (Phase.PASSED, None, None)
    _TABLE[(_phase, Signal.REVIEW_BLOCKING)] = (Phase.AUTO_FIXING, None, "blocking_review_residual")
    _TABLE[(_phase, Signal.FIXES_EXHAUSTED)] = (
        Phase.FAILED, _F.REVIEW_FINDING_BLOCKING, "blocking_review_residual")

# Allowed from every non-terminal phase.
_OVERRIDES: dict[Signal, tuple[Phase, FailureKind | None, str]] = {
    Signal.BUDGET_EXCEEDED: (Phase.FAILED, _F.BUDGET_EXCEEDED, "budget_exceeded"),
    Signal.DEADLINE: (Phase.FAILED, _F.BUDGET_EXCEEDED, "deadline_exceeded"),
    Signal.PROVIDER_UNAVAILABLE: (Phase.FAILED, _F.PROVIDER_UNAVAILABLE, "provider_unavailable"),
    Signal.CANCELLED: (Phase.ABORTED, _F.CANCELLED, "cancelled"),
}


def transition(
    state: AttemptState,
    signal: Signal,
    reason_code: str | None = None,
    detail: str = "",
) -> tuple[AttemptState, list[TransitionEvent]]:
    """
    Pure transition function.

    `reason_code` overrides the table's default code (gate failures pass
    the failing gate's id). Raises InvalidTransition for terminal states
    and for signals the current phase does not accept.
    """
    if state.terminal:
        raise InvalidTransition(state, signal)

    entry = _OVERRIDES.get(signal) or _TABLE.get((state.phase, signal))
    if entry is None:
        raise InvalidTransition(state, signal)

    target, failure, default_code = entry
    code = reason_code or default_code
    if target in TERMINAL_PHASES and target != Phase.PASSED:
        next_state = AttemptState(phase=target, failure=failure, reason_code=code, detail=detail)
    else:
        next_state = AttemptState(phase=target)

    events = [TransitionEvent(kind="transition", source=state.phase, target=target, signal=signal, reason_code=code)]
    if next_state.terminal:
        events.append(TransitionEvent(kind="terminal", source=state.phase, target=target, signal=signal, reason_code=code))
    return next_state, events


# ---------------------------------------------------------------------------
# Attempt record
# ---------------------------------------------------------------------------

class GateSnapshot(BaseModel):
    step: str
    results: list[GateResult]

    @property
    def all_passed(self) -> bool:
        return all(r.passed for r in self.results)


class LoopRecord(BaseModel):
    """One repair or auto-fix iteration."""
    index: int
    trigger: str
    applied: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    summary: str = ""


class Attempt(BaseModel):
    """Everything one orchestrator run accumulates. Owned by that orchestrator."""
    run_id: str
    suggestion: Suggestion
    state: AttemptState = Field(default_factory=AttemptState)
    sandbox_root: str | None = None
    base_commit: str | None = None
    budget: BudgetSnapshot | None = None
    gate_snapshots: list[GateSnapshot] = Field(default_factory=list)
    commands: list[QuickCheckResult] = Field(default_factory=list)
    findings: list[ReviewFinding] = Field(default_factory=list)
    commit_message: str = ""
    generations: int = 0
    repairs: list[LoopRecord] = Field(default_factory=list)
    fixes: list[LoopRecord] = Field(default_factory=list)
    transitions: list[TransitionEvent] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    reduced_confidence: bool = False
    started_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    ended_at: str | None = None

    @property
    def last_gates(self) -> GateSnapshot | None:
        return self.gate_snapshots[-1] if self.gate_snapshots else None

    def open_blocking(self, blocking: set[str]) -> list[ReviewFinding]:
        return [
            f for f in self.findings
            if f.status == "open" and f.recommended and f.severity in blocking
        ]
