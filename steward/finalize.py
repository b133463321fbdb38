"""
STEWARD Finalization Controller

The only code path that writes to the primary checkout.

  Passed          → gate the sandbox changes once more, commit exactly
                    those paths, then one all-or-nothing branch +
                    fast-forward into the real repository.
  Failed/Aborted  → discard the sandbox and verify the primary checkout
                    is exactly as it was before the attempt started.

Any error after the merge has started rolls the primary checkout back
to the base commit and removes the branch.
"""

from __future__ import annotations

from typing import Literal

from loguru import logger
from pydantic import BaseModel

from steward.config_loader import StewardConfig
from steward.gates import evaluate, first_failure
from steward.state import Attempt, GateSnapshot, Phase
from steward.workspace import STATE_PREFIX, SandboxHandle, SandboxManager, VcsError, VersionControl, sanitize_component

FinalizationStatus = Literal["applied", "rolled_back", "failed_before_finalize"]


class FinalizationError(Exception):
    """The merge could not complete cleanly; the caller sees a rollback."""


class PrimaryState(BaseModel):
    """What the primary checkout looked like before the attempt."""
    head: str | None = None
    dirty: tuple[str, ...] = ()


class FinalizationOutcome(BaseModel):
    status: FinalizationStatus
    commit_id: str | None = None
    branch: str | None = None
    target_branch: str | None = None
    detail: str = ""
    mutation_on_failure: bool = False


class FinalizationController:
    def __init__(self, vcs: VersionControl, sandbox: SandboxManager, config: StewardConfig):
        self.vcs = vcs
        self.sandbox = sandbox
        self.config = config
        self.ignore_prefixes: tuple[str, ...] = (STATE_PREFIX,)

    def snapshot(self) -> PrimaryState:
        """Record the primary checkout before anything runs."""
        try:
            return PrimaryState(head=self.vcs.head_commit(), dirty=tuple(self.vcs.dirty_paths(self.ignore_prefixes)))
        except VcsError as e:
            logger.warning(f"[FINALIZE] Could not snapshot primary checkout: {e}")
            return PrimaryState()

    def finalize(self, attempt: Attempt, handle: SandboxHandle | None, before: PrimaryState) -> FinalizationOutcome:
        if attempt.state.phase == Phase.PASSED and handle is not None:
            try:
                return self._apply(attempt, handle)
            finally:
                self.sandbox.release(handle)
        return self.discard(handle, before, attempt.state.detail)

    # ------------------------------------------------------------------ #
    # Passed
    # ------------------------------------------------------------------ #

    def _ready(self, attempt: Attempt) -> None:
        last = attempt.last_gates
        if last is None or not last.all_passed:
            raise FinalizationError("Final gate snapshot is not all-passing")
        blocking = attempt.open_blocking(set(self.config.review.blocking_severities))
        if blocking:
            raise FinalizationError(f"{len(blocking)} blocking review finding(s) still open")

    def _final_gates(self, attempt: Attempt, handle: SandboxHandle) -> list[str]:
        """Gate exactly what is about to be committed and return those paths."""
        changes = self.sandbox.collect_changes(handle)
        results = evaluate(attempt.suggestion.scope, changes)
        attempt.gate_snapshots.append(GateSnapshot(step="finalize", results=results))
        failure = first_failure(results)
        if failure is not None:
            raise FinalizationError(f"Final gate '{failure.gate}' failed on {failure.evidence}")
        return [c.path for c in changes]

    def _apply(self, attempt: Attempt, handle: SandboxHandle) -> FinalizationOutcome:
        cfg = self.config.finalize
        base = handle.base_commit
        branch = f"{cfg.branch_prefix}{sanitize_component(attempt.run_id)}"
        target: str | None = None
        commit_id: str | None = None
        merge_started = False

        try:
            self._ready(attempt)
            paths = self._final_gates(attempt, handle)
            message = attempt.commit_message or f"steward: {attempt.suggestion.summary[:60]}"
            commit_id = self.vcs.commit(handle.root, message, paths, env=handle.env)
            if commit_id is None:
                raise FinalizationError("Sandbox has no changes to commit")

            head = self.vcs.head_commit()
            if head != base:
                raise FinalizationError(f"Primary HEAD moved during the attempt ({base[:10]} → {head[:10]})")
            dirty = self.vcs.dirty_paths(self.ignore_prefixes)
            if dirty:
                raise FinalizationError(f"Primary checkout became dirty during the attempt: {', '.join(dirty[:5])}")

            if cfg.mode == "fast_forward":
                target = cfg.target_branch or self.vcs.current_branch()
                if target is None:
                    raise FinalizationError("Primary checkout is detached; cannot fast-forward")

            merge_started = True
            self.vcs.merge(commit_id, target, branch)
            if target is not None and self.vcs.head_commit() != commit_id:
                raise FinalizationError(f"Fast-forward of '{target}' did not land on {commit_id[:10]}")

        except (FinalizationError, VcsError) as e:
            logger.error(f"[FINALIZE] {e}. Rolling back.")
            if merge_started:
                self._rollback(base, branch, target)
            detail = str(e).strip().splitlines()[0] if str(e).strip() else type(e).__name__
            problems = self._verify(PrimaryState(head=base)) if merge_started else []
            return FinalizationOutcome(
                status="rolled_back",
                commit_id=commit_id,
                detail=detail,
                mutation_on_failure=bool(problems),
            )

        where = f"'{target}'" if target else f"branch '{branch}'"
        logger.info(f"[FINALIZE] Applied {commit_id[:10]} to {where}")
        return FinalizationOutcome(status="applied", commit_id=commit_id, branch=branch, target_branch=target)

    def _rollback(self, base: str, branch: str, target: str | None) -> None:
        try:
            if target is not None:
                self.vcs.reset_to(base)
            self.vcs.delete_branch(branch)
        except VcsError as e:
            logger.error(f"[FINALIZE] Rollback reported an error: {e}")

    # ------------------------------------------------------------------ #
    # Failed / Aborted
    # ------------------------------------------------------------------ #

    def discard(self, handle: SandboxHandle | None, before: PrimaryState, detail: str = "") -> FinalizationOutcome:
        """Release the sandbox and confirm the primary checkout is untouched. Safe to re-run."""
        if handle is not None:
            self.sandbox.release(handle)
        problems = self._verify(before)
        return FinalizationOutcome(status="failed_before_finalize", detail=detail, mutation_on_failure=bool(problems))

    def _verify(self, before: PrimaryState) -> list[str]:
        problems: list[str] = []
        try:
            head = self.vcs.head_commit()
            dirty = set(self.vcs.dirty_paths(self.ignore_prefixes)) - set(before.dirty)
        except VcsError as e:
            logger.error(f"[FINALIZE] Could not verify primary checkout: {e}")
            return [str(e)]

        if before.head is not None and head != before.head:
            problems.append(f"HEAD moved to {head[:10]}")
        if dirty:
            problems.append(f"tracked changes in {', '.join(sorted(dirty)[:5])}")
        if problems:
            logger.error(f"[FINALIZE] Primary checkout mutated on a non-applied outcome: {'; '.join(problems)}")
        return problems
