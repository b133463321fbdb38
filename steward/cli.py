"""
STEWARD CLI — The Interface

  steward apply --repo <path> --suggestion <file>   (one suggestion)
  steward batch --repo <path> --dir <dir>           (parallel suggestions)

Plus utilities:
  - steward status        (check config, API keys, and tools)
  - steward init <path>   (bootstrap .steward in a repo)
  - steward history       (view previous runs)
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from steward.checks import detect_quick_check_command
from steward.config_loader import StewardConfig, load_config, validate_api_keys
from steward.controller import Controller
from steward.identity import BANNER, __codename__, __tagline__, __version__
from steward.parallel import run_parallel
from steward.report import TelemetryLog, describe_outcome
from steward.state import Suggestion

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".steward" / ".env")

app = typer.Typer(
    name="steward",
    help=f"{__codename__} — {__tagline__}\nThe Suggestion Implementation Harness.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

SUGGESTION_SUFFIXES = (".yaml", ".yml", ".json")


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def apply(
    repo: Path = typer.Option(..., "--repo", "-r", help="Path to the target repository"),
    suggestion_file: Path = typer.Option(..., "--suggestion", "-s", help="Suggestion YAML or JSON"),
    check_cmd: Optional[str] = typer.Option(None, "--check-cmd", "-c", help="Quick-check command (e.g. 'cargo check')"),
    branch_only: bool = typer.Option(False, "--branch-only", help="Create the branch but do not fast-forward"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Apply one validated suggestion, or leave the repository untouched."""
    _print_banner()

    repo = repo.resolve()
    if not repo.exists():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)

    config = load_config(repo)
    _configure_logging(verbose, repo / config.workspace.log_dir)
    config = _with_overrides(config, check_cmd, branch_only)
    suggestion = _load_suggestion(suggestion_file)

    console.print(Panel(
        f"[bold green]Suggestion:[/] {suggestion.summary[:120]}\n"
        f"[bold]ID:[/] {suggestion.id}  |  [bold]Priority:[/] {suggestion.priority}\n"
        f"[bold]Scope:[/] {', '.join(suggestion.scope)}",
        title=f"{__codename__} v{__version__}",
        border_style="bright_green",
    ))

    report = Controller(repo, config).run_sync(suggestion)

    color = "green" if report.outcome == "passed" else "red"
    console.print(f"\n[bold {color}]Outcome: {report.outcome}[/]")
    console.print(describe_outcome(report))
    if report.outcome != "passed":
        raise typer.Exit(1)


@app.command()
def batch(
    repo: Path = typer.Option(..., "--repo", "-r", help="Path to the target repository"),
    suggestions_dir: Optional[Path] = typer.Option(None, "--dir", "-d", help="Directory of suggestion files"),
    workers: int = typer.Option(3, "--workers", "-w", help="Max concurrent suggestions"),
    check_cmd: Optional[str] = typer.Option(None, "--check-cmd", "-c"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run several suggestions in parallel, each onto its own branch."""
    _print_banner()

    repo = repo.resolve()
    config = load_config(repo)
    _configure_logging(verbose, repo / config.workspace.log_dir)
    config = _with_overrides(config, check_cmd, branch_only=True)

    sd = suggestions_dir or (repo / ".steward" / "suggestions")
    if not sd.exists():
        console.print(f"[red]Suggestions directory not found: {sd}[/]")
        raise typer.Exit(1)

    files = sorted(p for p in sd.iterdir() if p.suffix in SUGGESTION_SUFFIXES and "example" not in p.name.lower())
    if not files:
        console.print(f"[red]No suggestion files found in {sd}[/]")
        raise typer.Exit(1)

    console.print(f"[cyan]Found {len(files)} suggestions in {sd}[/]")
    suggestions = [_load_suggestion(f) for f in files]

    results = asyncio.run(run_parallel(repo, suggestions, max_workers=workers, config=config))

    failures = sum(1 for r in results if isinstance(r, BaseException) or r.outcome != "passed")
    if failures:
        raise typer.Exit(1)


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check STEWARD configuration and readiness."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)
    console.print(key_table)

    if repo:
        repo = repo.resolve()
        config = load_config(repo)
        console.print("\n[bold]Routing:[/]")
        for role, models in config.routing.model_dump().items():
            console.print(f"  {role:<18} {' → '.join(models)}")

        limits = config.limits
        console.print("\n[bold]Limits:[/]")
        console.print(f"  Max $/run:        ${limits.max_cost_usd}")
        console.print(f"  Max wall time:    {limits.max_wall_ms / 1000:g}s")
        console.print(f"  Max generations:  {limits.max_attempts}")
        if limits.shared_loop_budget is not None:
            console.print(f"  Repair+fix pool:  {limits.shared_loop_budget}")
        else:
            console.print(f"  Max repairs:      {limits.max_repairs}")
            console.print(f"  Max auto-fixes:   {limits.max_fixes}")
        console.print(f"  Blocking review:  {', '.join(config.review.blocking_severities)}")

        command = detect_quick_check_command(repo, config.checks.command)
        console.print(f"\n[bold]Quick check:[/] {command or '[yellow]none detected (reduced confidence)[/]'}")

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")
    for tool in ["git", "cargo", "python3", "node", "go"]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)
    console.print(tools_table)


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize .steward directory in a repository."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    st_dir = repo / ".steward"
    st_dir.mkdir(exist_ok=True)
    (st_dir / "suggestions").mkdir(exist_ok=True)
    (st_dir / "logs").mkdir(exist_ok=True)
    (st_dir / "reports").mkdir(exist_ok=True)

    config_path = st_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# STEWARD repo-level config overrides
# These merge with the built-in defaults.

# Override the fallback chain for a role:
# routing:
#   implementer:
#     - "anthropic/claude-sonnet-4-20250514"
#     - "openai/gpt-4.1"

# Adjust limits:
# limits:
#   max_cost_usd: 1.0
#   max_repairs: 2
#   max_fixes: 4

# Pin the quick-check command:
# checks:
#   command: "cargo check --locked"
""")

    example_path = st_dir / "suggestions" / "example.yaml"
    if not example_path.exists():
        example_path.write_text("""id: example-001
summary: "Guard against an empty list in parse_items"
detail: |
  parse_items() indexes items[0] without checking length.
scope:
  - src/parser.py
priority: medium
kind: bugfix
""")

    gitignore = repo / ".gitignore"
    ignore_entries = [".steward/logs/", ".steward/reports/", ".steward/telemetry.jsonl"]
    if gitignore.exists():
        content = gitignore.read_text()
        additions = [e for e in ignore_entries if e not in content]
        if additions:
            with open(gitignore, "a") as f:
                f.write("\n# STEWARD\n")
                for e in additions:
                    f.write(f"{e}\n")
    else:
        gitignore.write_text("# STEWARD\n" + "\n".join(ignore_entries) + "\n")

    console.print(f"[green]✅ Initialized STEWARD in {st_dir}[/]")
    console.print(f"  Config:      {config_path}")
    console.print(f"  Suggestions: {st_dir / 'suggestions'}")
    console.print(f"  Example:     {example_path}")


@app.command()
def history(
    repo: Path = typer.Option(..., "--repo", "-r", help="Path to the target repository"),
    count: int = typer.Option(10, "--count", "-n", help="Number of entries to show"),
):
    """View previous runs from the telemetry log."""
    _print_banner()

    repo = repo.resolve()
    config = load_config(repo)
    rows = TelemetryLog(repo / config.workspace.telemetry_file).read(limit=count)
    if not rows:
        console.print("[dim]No history yet. Apply a suggestion first.[/]")
        return

    table = Table(title=f"Recent Runs (last {count})", border_style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Suggestion")
    table.add_column("Outcome")
    table.add_column("Reason")
    table.add_column("Cost")
    table.add_column("Notes")

    for row in reversed(rows):
        outcome = row.get("outcome", "?")
        color = "green" if outcome == "passed" else "red"
        notes = []
        if row.get("repairs"):
            notes.append(f"repairs:{row['repairs']}")
        if row.get("fixes"):
            notes.append(f"fixes:{row['fixes']}")
        if row.get("reduced_confidence"):
            notes.append("reduced-confidence")
        table.add_row(
            str(row.get("timestamp", "?"))[:19],
            str(row.get("suggestion_id", "?")),
            f"[{color}]{outcome}[/]",
            row.get("reason_code") or "—",
            f"${row.get('cost_usd', 0):.4f}",
            " ".join(notes),
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_suggestion(path: Path) -> Suggestion:
    if not path.exists():
        console.print(f"[red]Suggestion file not found: {path}[/]")
        raise typer.Exit(1)
    try:
        return Suggestion.from_file(path)
    except (ValidationError, ValueError, TypeError, AttributeError) as e:
        console.print(f"[red]Invalid suggestion {path.name}: {e}[/]")
        raise typer.Exit(1)


def _with_overrides(config: StewardConfig, check_cmd: str | None, branch_only: bool) -> StewardConfig:
    updates = {}
    if check_cmd:
        updates["checks"] = config.checks.model_copy(update={"command": check_cmd})
    if branch_only:
        updates["finalize"] = config.finalize.model_copy(update={"mode": "branch_only"})
    return config.model_copy(update=updates) if updates else config


def _configure_logging(verbose: bool, log_dir: Path | None = None) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(str(msg).rstrip(), style="dim", highlight=False, markup=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(str(msg).rstrip(), style="dim", highlight=False, markup=False),
            level="WARNING",
            format="{message}",
        )
    if log_dir is not None:
        logger.add(
            log_dir / "steward_{time:YYYYMMDD}.log",
            level="DEBUG",
            rotation="10 MB",
            retention=10,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level:<7} | {message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
