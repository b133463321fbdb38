"""
STEWARD Controller — The Brainstem

It is NOT smart. It is deterministic.

Responsibilities:
  - Snapshot the primary checkout
  - Allocate an isolated sandbox for the attempt
  - Give the attempt its own Budget Guard and Router
  - Enforce the run-level deadline
  - Hand the terminal attempt to finalization
  - Release the sandbox on every exit path
  - Emit the report and telemetry row

It never writes code. It only coordinates.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger

from steward.attempt import AttemptOrchestrator
from steward.budget import BudgetGuard
from steward.checks import QuickCheckRunner
from steward.config_loader import StewardConfig, load_config
from steward.event_bus import EventBus
from steward.finalize import FinalizationController, FinalizationOutcome
from steward.report import Report, ReportEmitter
from steward.router import ProviderFactory, Router
from steward.state import Attempt, Signal, Suggestion, transition
from steward.workspace import (
    GitVcs,
    SandboxCreationError,
    SandboxHandle,
    SandboxManager,
    VersionControl,
    sanitize_component,
)


def new_run_id(suggestion: Suggestion) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"{sanitize_component(suggestion.id)}-{stamp}-{uuid.uuid4().hex[:6]}"


class Controller:
    """Runs one suggestion at a time against one repository."""

    def __init__(
        self,
        repo_path: Path,
        config: StewardConfig | None = None,
        vcs: VersionControl | None = None,
        provider_factory: ProviderFactory | None = None,
        checks: QuickCheckRunner | None = None,
        bus: EventBus | None = None,
    ):
        self.repo_path = repo_path.resolve()
        self.config = config or load_config(self.repo_path)
        self.vcs = vcs or GitVcs(self.repo_path)
        self.bus = bus or EventBus()
        self.provider_factory = provider_factory

        ws = self.config.workspace
        self.sandbox = SandboxManager(
            self.vcs,
            sandbox_root=Path(ws.sandbox_root) if ws.sandbox_root else None,
            min_free_bytes=ws.min_free_mb * 1024 * 1024,
        )
        self.finalizer = FinalizationController(self.vcs, self.sandbox, self.config)
        self.reports = ReportEmitter(self.repo_path, ws)
        self.checks = checks or QuickCheckRunner(self.config.checks.command, self.config.checks.timeout_s)

    def run_sync(self, suggestion: Suggestion, run_id: str | None = None) -> Report:
        return asyncio.run(self.run(suggestion, run_id))

    async def run(self, suggestion: Suggestion, run_id: str | None = None) -> Report:
        """
        Drive one suggestion to a terminal outcome and report it.

        Gate, check, review, budget and provider outcomes come back inside
        the Report. Cancellation and unexpected errors propagate after the
        sandbox is released. Cancellation during finalization waits for the
        finalization to finish and reports its outcome before propagating.
        """
        run_id = run_id or new_run_id(suggestion)
        attempt = Attempt(run_id=run_id, suggestion=suggestion)
        guard = BudgetGuard(self.config.limits)
        router = Router(self.config, guard, self.provider_factory)
        before = await asyncio.to_thread(self.finalizer.snapshot)
        handle: SandboxHandle | None = None
        orchestrator: AttemptOrchestrator | None = None

        self.bus.emit("run_started", run_id, {"suggestion_id": suggestion.id, "scope": list(suggestion.scope)})
        logger.info(f"[CONTROLLER] Run {run_id} for suggestion {suggestion.id}")

        try:
            try:
                handle = await self._acquire(run_id)
            except SandboxCreationError as e:
                logger.warning(f"[CONTROLLER] Sandbox creation failed ({e.reason_code}): {e}")
                self._force(attempt, Signal.SANDBOX_FAILED, e.reason_code, str(e))
            else:
                orchestrator = AttemptOrchestrator(
                    attempt, self.sandbox, handle, guard, router, self.checks, self.config, self.bus,
                )
                deadline_s = self.config.limits.max_wall_ms / 1000
                try:
                    async with asyncio.timeout(deadline_s):
                        await orchestrator.drive()
                except TimeoutError:
                    logger.warning(f"[CONTROLLER] Run {run_id} hit its {deadline_s:g}s deadline")
                    orchestrator.interrupt(Signal.DEADLINE, f"run exceeded {self.config.limits.max_wall_ms} ms")

        except asyncio.CancelledError:
            logger.warning(f"[CONTROLLER] Run {run_id} cancelled")
            if orchestrator is not None:
                orchestrator.interrupt(Signal.CANCELLED, "run cancelled")
            else:
                self._force(attempt, Signal.CANCELLED, None, "run cancelled")
            attempt.ended_at = datetime.now(timezone.utc).isoformat()
            final = self.finalizer.discard(handle, before, attempt.state.detail)
            self._report(attempt, final, router)
            raise

        except Exception:
            logger.exception(f"[CONTROLLER] Run {run_id} hit an unexpected error")
            self.finalizer.discard(handle, before)
            raise

        attempt.ended_at = datetime.now(timezone.utc).isoformat()
        # Finalization runs to completion even if the run is cancelled meanwhile.
        finalizing = asyncio.ensure_future(asyncio.to_thread(self.finalizer.finalize, attempt, handle, before))
        try:
            final = await asyncio.shield(finalizing)
        except asyncio.CancelledError:
            logger.warning(f"[CONTROLLER] Run {run_id} cancelled during finalization; waiting for it to finish")
            final = await finalizing
            self._report(attempt, final, router)
            raise
        finally:
            if handle is not None:
                self.sandbox.release(handle)
        return self._report(attempt, final, router)

    async def _acquire(self, run_id: str) -> SandboxHandle:
        """Acquire in a worker thread; a sandbox created after cancellation is still released."""
        pending = asyncio.ensure_future(asyncio.to_thread(self.sandbox.acquire, run_id))
        try:
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            try:
                handle = await pending
            except SandboxCreationError as e:
                logger.info(f"[CONTROLLER] Sandbox for cancelled run {run_id} was never created: {e}")
            else:
                self.sandbox.release(handle)
            raise

    @staticmethod
    def _force(attempt: Attempt, signal: Signal, reason_code: str | None, detail: str) -> None:
        if attempt.state.terminal:
            return
        attempt.state, events = transition(attempt.state, signal, reason_code, detail)
        attempt.transitions.extend(events)

    def _report(self, attempt: Attempt, final: FinalizationOutcome, router: Router) -> Report:
        if attempt.budget is None:
            attempt.budget = router.guard.remaining()
        report = Report.build(attempt, final, router.call_log)
        self.reports.emit(report)
        self.bus.emit("run_finished", attempt.run_id, {
            "outcome": report.outcome,
            "reason_code": report.failure.code if report.failure else None,
            "finalization": report.finalization,
        })
        return report

