"""Tests for the attempt state machine and suggestion model."""

import pytest
from pydantic import ValidationError

from steward.state import (
    AttemptState,
    FailureKind,
    InvalidTransition,
    Phase,
    Signal,
    Suggestion,
    transition,
)


def _walk(*signals, state=None):
    state = state or AttemptState()
    events = []
    for signal in signals:
        state, new = transition(state, signal)
        events.extend(new)
    return state, events


class TestTransitions:
    def test_happy_path(self):
        state, events = _walk(
            Signal.SANDBOX_READY, Signal.GATES_PASSED, Signal.BEGIN_CHECKS,
            Signal.CHECKS_PASSED, Signal.REVIEW_CLEAN,
        )
        assert state.phase == Phase.PASSED
        assert state.failure is None
        assert [e.target for e in events if e.kind == "transition"] == [
            Phase.APPLYING, Phase.GATES_CHECKED, Phase.QUICK_CHECKING, Phase.REVIEWING, Phase.PASSED,
        ]
        assert events[-1].kind == "terminal"

    def test_repair_loop_and_fix_loop(self):
        state, _ = _walk(
            Signal.SANDBOX_READY, Signal.GATES_PASSED, Signal.BEGIN_CHECKS,
            Signal.CHECKS_FAILED, Signal.GATES_PASSED, Signal.BEGIN_CHECKS,
            Signal.CHECKS_PASSED, Signal.REVIEW_BLOCKING, Signal.FIX_APPLIED,
        )
        assert state.phase == Phase.RE_REVIEWING
        state, _ = transition(state, Signal.REVIEW_CLEAN)
        assert state.phase == Phase.PASSED

    def test_syntax_failure_routes_to_repair(self):
        state, events = _walk(Signal.SANDBOX_READY, Signal.SYNTAX_FAILED)
        assert state.phase == Phase.REPAIRING
        assert events[-1].reason_code == "syntax-safety"

    def test_gate_violation_carries_gate_code(self):
        state, _ = _walk(Signal.SANDBOX_READY)
        state, events = transition(state, Signal.GATES_VIOLATION, reason_code="out-of-scope", detail="src/b.ts")
        assert state.phase == Phase.FAILED
        assert state.failure == FailureKind.SAFETY_GATE_VIOLATION
        assert state.reason_code == "out-of-scope"
        assert state.detail == "src/b.ts"
        assert [e.kind for e in events] == ["transition", "terminal"]

    def test_fixes_exhausted(self):
        state, _ = _walk(
            Signal.SANDBOX_READY, Signal.GATES_PASSED, Signal.BEGIN_CHECKS,
            Signal.CHECKS_PASSED, Signal.FIXES_EXHAUSTED,
        )
        assert state.failure == FailureKind.REVIEW_FINDING_BLOCKING
        assert state.reason_code == "blocking_review_residual"

    def test_unknown_signal_for_phase_raises(self):
        with pytest.raises(InvalidTransition):
            transition(AttemptState(), Signal.REVIEW_CLEAN)

    @pytest.mark.parametrize("terminal", [Phase.PASSED, Phase.FAILED, Phase.ABORTED])
    def test_terminal_states_are_final(self, terminal):
        with pytest.raises(InvalidTransition):
            transition(AttemptState(phase=terminal), Signal.CANCELLED)

    @pytest.mark.parametrize("phase", [p for p in Phase if p not in (Phase.PASSED, Phase.FAILED, Phase.ABORTED)])
    @pytest.mark.parametrize("signal,target,code", [
        (Signal.BUDGET_EXCEEDED, Phase.FAILED, "budget_exceeded"),
        (Signal.DEADLINE, Phase.FAILED, "deadline_exceeded"),
        (Signal.PROVIDER_UNAVAILABLE, Phase.FAILED, "provider_unavailable"),
        (Signal.CANCELLED, Phase.ABORTED, "cancelled"),
    ])
    def test_overrides_apply_from_any_live_phase(self, phase, signal, target, code):
        state, events = transition(AttemptState(phase=phase), signal)
        assert state.phase == target
        assert state.reason_code == code
        assert events[0].source == phase

    def test_transition_is_pure(self):
        start = AttemptState(phase=Phase.QUICK_CHECKING)
        first, _ = transition(start, Signal.CHECKS_FAILED)
        second, _ = transition(start, Signal.CHECKS_FAILED)
        assert first == second
        assert start.phase == Phase.QUICK_CHECKING


class TestSuggestion:
    def test_scope_is_normalized_and_deduplicated(self):
        suggestion = Suggestion(id="s", scope=["./src/a.ts", "src/a.ts", "src//b.ts"], summary="x")
        assert suggestion.scope == ("src/a.ts", "src/b.ts")

    @pytest.mark.parametrize("scope", [[], ["../x"], ["/abs/path"], ["."]])
    def test_invalid_scope_rejected(self, scope):
        with pytest.raises(ValidationError):
            Suggestion(id="s", scope=scope, summary="x")

    def test_from_yaml_file_defaults_id_to_stem(self, tmp_path):
        path = tmp_path / "bump-a.yaml"
        path.write_text("scope: src/a.ts\nsummary: Bump a\n")
        suggestion = Suggestion.from_file(path)
        assert suggestion.id == "bump-a"
        assert suggestion.scope == ("src/a.ts",)
