"""
STEWARD Parallel Runner

Runs independent suggestions side by side. Each one gets:
  1. Its own Controller, Budget Guard and Router.
  2. Its own sandbox worktree under a run-scoped root.
  3. Branch-only finalization, so no two runs race for the checkout.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from loguru import logger
from rich.console import Console
from rich.table import Table

from steward.config_loader import StewardConfig, load_config
from steward.controller import Controller
from steward.report import Report
from steward.state import Suggestion

console = Console()


async def run_parallel(
    repo_path: Path,
    suggestions: list[Suggestion],
    max_workers: int = 3,
    config: StewardConfig | None = None,
    **controller_kwargs: Any,
) -> list[Report | BaseException]:
    """Run every suggestion, at most `max_workers` at a time. Results keep input order."""
    repo_path = repo_path.resolve()
    base = config or load_config(repo_path)
    # Parallel mode never fast-forwards the shared checkout.
    parallel_config = base.model_copy(update={
        "finalize": base.finalize.model_copy(update={"mode": "branch_only"}),
    })

    _print_parallel_header(len(suggestions), max_workers)
    semaphore = asyncio.Semaphore(max(1, max_workers))

    async def worker(suggestion: Suggestion) -> Report:
        async with semaphore:
            controller = Controller(repo_path, parallel_config, **controller_kwargs)
            report = await controller.run(suggestion)
            _log_completion(report)
            return report

    results = await asyncio.gather(*(worker(s) for s in suggestions), return_exceptions=True)
    for suggestion, result in zip(suggestions, results):
        if isinstance(result, BaseException):
            logger.error(f"[PARALLEL] {suggestion.id} failed unexpectedly: {result}")

    _print_parallel_summary(suggestions, results)
    return list(results)


# --- Helpers ---

def _print_parallel_header(count: int, workers: int) -> None:
    console.print(f"\n[bold]STEWARD batch: {count} suggestion(s), {workers} worker(s)[/]")
    console.print("[dim]Each suggestion runs in its own sandbox and lands on its own branch.[/]\n")


def _log_completion(report: Report) -> None:
    color = "green" if report.outcome == "passed" else "red"
    console.print(f"  [{color}]{report.suggestion_id}: {report.outcome}[/]")


def _print_parallel_summary(suggestions: list[Suggestion], results: list[Report | BaseException]) -> None:
    table = Table(title="Batch Results", border_style="bright_green")
    table.add_column("Suggestion")
    table.add_column("Outcome")
    table.add_column("Reason / Branch")
    table.add_column("Cost")

    total_cost = 0.0
    passed = 0
    for suggestion, result in zip(suggestions, results):
        if isinstance(result, BaseException):
            table.add_row(suggestion.id, "[red]error[/]", str(result)[:60], "—")
            continue
        total_cost += result.cost_usd
        if result.outcome == "passed":
            passed += 1
            detail = result.branch or "—"
            color = "green"
        else:
            detail = result.failure.code if result.failure else result.finalization
            color = "red"
        table.add_row(result.suggestion_id, f"[{color}]{result.outcome}[/]", detail[:60], f"${result.cost_usd:.4f}")

    console.print(table)
    console.print(f"\n[bold]{passed}/{len(results)} passed | Total cost: ${total_cost:.4f}[/]")
