"""
STEWARD Attempt Orchestrator

Drives one attempt through the state machine in `steward.state`:

  apply → gates → quick checks ⇄ repair → review → auto-fix → re-review

It is deterministic glue. It never decides what code to write; it asks
the agents, applies what they return inside the sandbox, re-runs the
gates after every mutation, and turns each outcome into a signal for
the pure transition function. Repair and fix counters are checked
before they are consumed, and every model call goes through the
budget-guarded router.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from loguru import logger

from steward.agents import AgentContext, read_scope_files
from steward.agents.fixer import FixerAgent
from steward.agents.implementer import ImplementerAgent
from steward.agents.repairer import RepairAgent
from steward.agents.reviewer import BlockingPolicy, ReviewerAgent, build_reviewer
from steward.budget import BudgetExceeded, BudgetGuard
from steward.checks import QuickCheckResult, QuickCheckRunner
from steward.config_loader import StewardConfig
from steward.event_bus import EventBus
from steward.gates import FileChange, GateResult, evaluate, first_failure
from steward.reliability import ProviderUnavailable
from steward.router import Router
from steward.state import (
    Attempt,
    GateSnapshot,
    LoopRecord,
    Phase,
    ReviewFinding,
    Signal,
    transition,
)
from steward.workspace import SandboxHandle, SandboxManager, diff_text
from steward.workspace.apply import ApplyResult, apply_changes


class AttemptOrchestrator:
    """Owns one Attempt from Applying to a terminal state."""

    def __init__(
        self,
        attempt: Attempt,
        sandbox: SandboxManager,
        handle: SandboxHandle,
        guard: BudgetGuard,
        router: Router,
        checks: QuickCheckRunner,
        config: StewardConfig,
        bus: EventBus | None = None,
    ):
        self.attempt = attempt
        self.sandbox = sandbox
        self.handle = handle
        self.guard = guard
        self.router = router
        self.checks = checks
        self.config = config
        self.bus = bus or EventBus()

        self.policy = BlockingPolicy(config.review.blocking_severities)
        self.implementer = ImplementerAgent(router)
        self.repairer = RepairAgent(router)
        self.fixer = FixerAgent(router)
        self.reviewers: list[ReviewerAgent] = [build_reviewer(r, router) for r in config.review.reviewers]

        self._rejected: list[FileChange] = []
        self._pending: tuple[str, str, str | None] | None = None  # (trigger, output, command)
        self._generation_note: str = ""
        self._last_check: QuickCheckResult | None = None
        self._review_round = 0
        self._gated: set[str] = set()

        self._handlers: dict[Phase, Callable[[], Awaitable[None]]] = {
            Phase.APPLYING: self._apply_phase,
            Phase.GATES_CHECKED: self._begin_checks,
            Phase.QUICK_CHECKING: self._quick_check,
            Phase.REPAIRING: self._repair,
            Phase.REVIEWING: self._review,
            Phase.RE_REVIEWING: self._review,
            Phase.AUTO_FIXING: self._auto_fix,
        }

    # ------------------------------------------------------------------ #
    # Driver
    # ------------------------------------------------------------------ #

    @property
    def scope(self) -> list[str]:
        return list(self.attempt.suggestion.scope)

    async def drive(self) -> Attempt:
        """Run until a terminal state. Budget and provider failures end the attempt."""
        self.attempt.sandbox_root = str(self.handle.root)
        self.attempt.base_commit = self.handle.base_commit
        if self.attempt.state.phase == Phase.CREATED:
            self._signal(Signal.SANDBOX_READY)

        try:
            while not self.attempt.state.terminal:
                self.guard.charge()  # refreshes wall time; raises past the wall ceiling
                await self._handlers[self.attempt.state.phase]()
        except BudgetExceeded as e:
            self._signal(Signal.BUDGET_EXCEEDED, detail=str(e))
        except ProviderUnavailable as e:
            self._signal(Signal.PROVIDER_UNAVAILABLE, detail=str(e))
        finally:
            self.attempt.budget = self.guard.remaining()
        return self.attempt

    def interrupt(self, signal: Signal, detail: str = "") -> None:
        """Force an override (deadline, cancellation) unless already terminal."""
        if not self.attempt.state.terminal:
            self._signal(signal, detail=detail)
        self.attempt.budget = self.guard.remaining()

    def _signal(self, signal: Signal, reason_code: str | None = None, detail: str = "") -> None:
        before = self.attempt.state.phase
        self.attempt.state, events = transition(self.attempt.state, signal, reason_code, detail)
        self.attempt.transitions.extend(events)
        for event in events:
            self.bus.emit(event.kind, self.attempt.run_id, event.model_dump(mode="json"))
        logger.debug(
            f"[ATTEMPT] {self.attempt.run_id}: {before.value} --{signal.value}--> "
            f"{self.attempt.state.phase.value}"
        )

    def _note(self, text: str) -> None:
        self.attempt.notes.append(text)
        logger.info(f"[ATTEMPT] {text}")

    # ------------------------------------------------------------------ #
    # Shared steps
    # ------------------------------------------------------------------ #

    def _context(self, **extra) -> AgentContext:
        s = self.attempt.suggestion
        return AgentContext(
            suggestion_id=s.id,
            summary=s.summary,
            detail=s.detail,
            scope=self.scope,
            working_dir=str(self.handle.root),
            file_context=read_scope_files(self.handle.root, self.scope),
            extra=extra,
        )

    async def _apply(self, changes: list[dict]) -> ApplyResult:
        result = await asyncio.to_thread(apply_changes, self.handle.root, changes)
        self._rejected.extend(result.rejected)
        for line in result.failed:
            logger.debug(f"[ATTEMPT] {line}")
        return result

    async def _gates(self, step: str) -> tuple[GateSnapshot, list[FileChange]]:
        changes = await asyncio.to_thread(self.sandbox.collect_changes, self.handle)
        results: list[GateResult] = evaluate(self.scope, [*changes, *self._rejected])
        snapshot = GateSnapshot(step=step, results=results)
        self.attempt.gate_snapshots.append(snapshot)
        self._gated = {c.path for c in changes}
        reduced = [r for r in results if r.confidence == "reduced"]
        if reduced and not self.attempt.reduced_confidence:
            self.attempt.reduced_confidence = True
            self._note(f"Reduced confidence: {reduced[0].evidence}")
        return snapshot, changes

    async def _gate_step(self, step: str) -> None:
        """Gate evaluation after an apply or repair mutation."""
        snapshot, _ = await self._gates(step)
        failure = first_failure(snapshot.results)
        if failure is None:
            self._signal(Signal.GATES_PASSED)
            return
        if not failure.retriable:
            self._signal(Signal.GATES_VIOLATION, reason_code=failure.reason_code, detail=failure.evidence)
            return

        self._pending = ("syntax", f"Files no longer parse: {failure.evidence}", None)
        if self.guard.remaining().repairs_left > 0:
            self._signal(Signal.SYNTAX_FAILED)
        else:
            self._signal(Signal.SYNTAX_UNREPAIRABLE, detail=failure.evidence)

    # ------------------------------------------------------------------ #
    # Phase handlers
    # ------------------------------------------------------------------ #

    async def _apply_phase(self) -> None:
        if self.guard.remaining().attempts_left <= 0:
            self._signal(Signal.GENERATION_EXHAUSTED, detail=self._generation_note or "no usable patch")
            return
        self.guard.charge(attempts=1)
        self.attempt.generations += 1
        n = self.attempt.generations

        result = await self.implementer.run(self._context(previous_failure=self._generation_note))
        self.attempt.commit_message = result.get("commit_message") or self.attempt.commit_message

        if not result["changes"]:
            self._generation_note = "unparseable reply" if result.get("parse_error") else "empty changes list"
            self._note(f"Generation {n} produced no changes ({self._generation_note})")
            self._signal(Signal.PATCH_EMPTY)
            return

        applied = await self._apply(result["changes"])
        if not applied.rejected:
            touched = await asyncio.to_thread(self.sandbox.collect_changes, self.handle)
            if not touched:
                self._generation_note = "; ".join(applied.failed) or "changes did not alter any file"
                self._note(f"Generation {n} left the sandbox unchanged")
                self._signal(Signal.PATCH_EMPTY)
                return

        await self._gate_step(f"apply#{n}")

    async def _begin_checks(self) -> None:
        self._signal(Signal.BEGIN_CHECKS)

    async def _run_checks(self) -> QuickCheckResult:
        """Run the quick checks, then drop whatever they left outside the gated change set."""
        result = await self.checks.run(self.handle.root, self.handle.env)
        self.attempt.commands.append(result)
        self._last_check = result
        reverted = await asyncio.to_thread(self.sandbox.revert_except, self.handle, self._gated)
        if reverted:
            logger.debug(f"[ATTEMPT] Quick checks left {len(reverted)} artifact(s): {', '.join(reverted[:5])}")
        return result

    async def _quick_check(self) -> None:
        result = await self._run_checks()

        if result.status == "passed":
            self._signal(Signal.CHECKS_PASSED)
        elif result.status == "unavailable":
            if self.config.checks.require_available:
                self._signal(Signal.CHECKS_REQUIRED_UNAVAILABLE, detail=result.output_tail[-300:])
                return
            self.attempt.reduced_confidence = True
            self._note("Reduced confidence: quick checks unavailable")
            self._signal(Signal.CHECKS_UNAVAILABLE)
        else:
            self._pending = ("quick_check", result.output_tail, result.command)
            if self.guard.remaining().repairs_left > 0:
                self._signal(Signal.CHECKS_FAILED)
            else:
                self._signal(
                    Signal.REPAIRS_EXHAUSTED,
                    detail=f"'{result.command}' failed after {len(self.attempt.repairs)} repair(s)",
                )

    async def _repair(self) -> None:
        self.guard.charge(repairs=1)
        index = len(self.attempt.repairs) + 1
        trigger, output, command = self._pending or ("quick_check", "", None)

        result = await self.repairer.run(self._context(
            error_output=output,
            command=command,
            attempt=index,
            previous_diagnoses=[r.summary for r in self.attempt.repairs],
        ))
        applied = await self._apply(result["changes"])
        self.attempt.repairs.append(LoopRecord(
            index=index,
            trigger=trigger,
            applied=applied.applied,
            failed=applied.failed,
            summary=result["diagnosis"],
        ))
        await self._gate_step(f"repair#{index}")

    async def _review(self) -> None:
        self._review_round += 1
        round_no = self._review_round
        changes = await asyncio.to_thread(self.sandbox.collect_changes, self.handle)
        status = self._last_check.status if self._last_check else "unknown"

        prior = [f for f in self.attempt.findings if f.status == "fixed"]
        context = self._context(
            diff=diff_text(changes),
            changed_files=[c.path for c in changes],
            round=round_no,
            quick_check_status=status,
            prior_findings=prior,
            dismiss_false_positives=self.config.review.dismiss_probable_false_positives,
        )

        semaphore = asyncio.Semaphore(max(1, self.config.review.max_concurrent_reviewers))

        async def run_one(agent: ReviewerAgent) -> dict:
            async with semaphore:
                return await agent.run(context)

        # The phase is complete only once every reviewer has reported.
        outcomes = await asyncio.gather(*(run_one(a) for a in self.reviewers), return_exceptions=True)
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        for kind in (BudgetExceeded, ProviderUnavailable, BaseException):
            for error in errors:
                if isinstance(error, kind):
                    raise error

        new: list[ReviewFinding] = [f for o in outcomes for f in o["findings"]]
        self.attempt.findings.extend(new)
        blocking = self.policy.blocking(self.attempt.findings)
        logger.info(f"[ATTEMPT] Review round {round_no}: {len(new)} finding(s), {len(blocking)} blocking")

        last = self.attempt.last_gates
        if not blocking and last is not None and last.all_passed:
            self._signal(Signal.REVIEW_CLEAN)
        elif self.guard.remaining().fixes_left > 0:
            self._signal(Signal.REVIEW_BLOCKING)
        else:
            titles = "; ".join(f"{f.location()}: {f.title}" for f in blocking[:3])
            self._signal(Signal.FIXES_EXHAUSTED, detail=titles)

    async def _auto_fix(self) -> None:
        self.guard.charge(fixes=1)
        index = len(self.attempt.fixes) + 1
        blocking = self.policy.blocking(self.attempt.findings)

        result = await self.fixer.run(self._context(findings=blocking, attempt=index))
        applied = await self._apply(result["changes"])
        self.attempt.fixes.append(LoopRecord(
            index=index,
            trigger="review",
            applied=applied.applied,
            failed=applied.failed,
            summary=result["summary"],
        ))

        snapshot, _ = await self._gates(f"fix#{index}")
        failure = first_failure(snapshot.results)
        if failure is not None:
            logger.warning(f"[ATTEMPT] Auto-fix {index} regressed gate {failure.gate}: {failure.evidence}")
            self._signal(Signal.FIX_GATE_REGRESSED, reason_code=failure.reason_code, detail=failure.evidence)
            return

        check = await self._run_checks()
        if check.status == "failed":
            logger.warning(f"[ATTEMPT] Auto-fix {index} broke quick checks")
            self._signal(Signal.FIX_BROKE_CHECKS, detail=f"'{check.command}' failed after auto-fix {index}")
            return

        for finding in blocking:
            finding.status = "fixed"
        self._signal(Signal.FIX_APPLIED)
