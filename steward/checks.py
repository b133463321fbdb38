"""
STEWARD Quick Checks

Fast, target-supplied build/test subset run inside the sandbox before
the (expensive) adversarial review. The command is auto-detected from
the repository unless configured explicitly.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import time
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import BaseModel

MAX_OUTPUT_TAIL_CHARS = 4_000
CHECK_CMD_ENV = "STEWARD_CHECK_CMD"

_ANSI = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_JS_SCRIPT_ORDER = ("typecheck", "type-check", "check", "test:once", "test", "lint", "build")


class QuickCheckResult(BaseModel):
    status: Literal["passed", "failed", "unavailable"]
    command: str | None = None
    exit_code: int | None = None
    duration_ms: int = 0
    timed_out: bool = False
    output_tail: str = ""

    @property
    def passed(self) -> bool:
        return self.status == "passed"


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def _js_runner(root: Path) -> str:
    if (root / "pnpm-lock.yaml").exists():
        return "pnpm run"
    if (root / "yarn.lock").exists():
        return "yarn run"
    if (root / "bun.lockb").exists() or (root / "bun.lock").exists():
        return "bun run"
    return "npm run --silent"


def _skip_js_script(name: str, command: str, deps: set[str]) -> bool:
    # A lint script that calls eslint without depending on it can only fail.
    return name == "lint" and "eslint" in command.lower() and "eslint" not in deps


def _detect_js(root: Path) -> str | None:
    try:
        manifest = json.loads((root / "package.json").read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    scripts = manifest.get("scripts") or {}
    deps = set(manifest.get("dependencies") or {}) | set(manifest.get("devDependencies") or {})
    for name in _JS_SCRIPT_ORDER:
        command = scripts.get(name)
        if not isinstance(command, str) or _skip_js_script(name, command, deps):
            continue
        return f"{_js_runner(root)} {name}"
    return None


def _detect_make_target(root: Path) -> str | None:
    try:
        text = (root / "Makefile").read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    for target in ("check", "test"):
        if re.search(rf"^{target}\s*:", text, re.MULTILINE):
            return target
    return None


def detect_quick_check_command(root: Path, configured: str | None = None) -> str | None:
    """Pick the quick-check command for the repository at `root`."""
    explicit = (configured or os.environ.get(CHECK_CMD_ENV, "")).strip()
    if explicit:
        return explicit
    if (root / "Cargo.toml").exists():
        return "cargo check --locked"
    if (root / "package.json").exists():
        js = _detect_js(root)
        if js:
            return js
    if (root / "go.mod").exists():
        return "go test ./..."
    make_target = _detect_make_target(root)
    if make_target:
        return f"make {make_target}"
    if any((root / name).exists() for name in ("pyproject.toml", "setup.py", "setup.cfg")):
        return "python3 -m compileall -q ."
    return None


def _tail(text: str) -> str:
    text = _ANSI.sub("", text)
    return text[-MAX_OUTPUT_TAIL_CHARS:]


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class QuickCheckRunner:
    """Runs the quick-check command in a sandbox, never longer than `timeout_s`."""

    def __init__(self, command: str | None = None, timeout_s: float = 120.0):
        self.command = command
        self.timeout_s = timeout_s

    async def run(self, root: Path, env: dict[str, str] | None = None) -> QuickCheckResult:
        command = detect_quick_check_command(root, self.command)
        if command is None:
            logger.info("[CHECKS] No quick-check command detected")
            return QuickCheckResult(status="unavailable", output_tail="no quick-check command detected")

        logger.info(f"[CHECKS] Running: {command}")
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=root,
                env={**os.environ, **(env or {})},
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            return QuickCheckResult(status="unavailable", command=command, output_tail=str(e))

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            await _kill(proc)
            elapsed = int((time.monotonic() - start) * 1000)
            logger.warning(f"[CHECKS] '{command}' timed out after {self.timeout_s:g}s")
            return QuickCheckResult(
                status="failed", command=command, duration_ms=elapsed, timed_out=True,
                output_tail=f"timed out after {self.timeout_s:g}s",
            )
        except asyncio.CancelledError:
            await _kill(proc)
            raise

        elapsed = int((time.monotonic() - start) * 1000)
        output = _tail(stdout.decode("utf-8", errors="replace"))
        code = proc.returncode

        if code == 127:
            status = "unavailable"
        elif code == 0:
            status = "passed"
        else:
            status = "failed"
        logger.info(f"[CHECKS] {command} → {status} (exit {code}, {elapsed}ms)")
        return QuickCheckResult(
            status=status, command=command, exit_code=code,
            duration_ms=elapsed, output_tail=output,
        )


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()
