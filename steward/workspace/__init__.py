"""
STEWARD Sandbox Manager

Every attempt works in its own detached worktree under a private root
keyed by run id. Nothing an attempt does touches the primary checkout
until finalization. Release is idempotent and never raises, so it can
sit on every exit path, cancellation included.
"""

from __future__ import annotations

import difflib
import os
import re
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from loguru import logger

from steward.gates import FileChange
from steward.workspace.vcs import GitVcs, VcsError, VersionControl

__all__ = [
    "GitVcs",
    "SandboxCreationError",
    "SandboxHandle",
    "SandboxManager",
    "VcsError",
    "VersionControl",
    "diff_text",
    "sanitize_component",
]

STATE_PREFIX = ".steward/"


class SandboxCreationError(Exception):
    """The base repository cannot host a sandbox right now."""

    def __init__(self, reason_code: str, message: str):
        self.reason_code = reason_code
        super().__init__(message)


def sanitize_component(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_-]", "_", value).strip("_")
    return cleaned or "run"


def _isolation_env() -> dict[str, str]:
    no_op = shutil.which("true") or "/bin/true"
    return {
        "GIT_TERMINAL_PROMPT": "0",
        "GIT_ASKPASS": no_op,
        "SSH_ASKPASS": no_op,
        "GCM_INTERACTIVE": "never",
        "STEWARD_DISABLE_PUSH": "1",
        # Rewrites every push URL to an unroutable scheme.
        "GIT_CONFIG_COUNT": "1",
        "GIT_CONFIG_KEY_0": "url.steward-push-disabled://.pushInsteadOf",
        "GIT_CONFIG_VALUE_0": "",
    }


@dataclass
class SandboxHandle:
    root: Path
    base_commit: str
    run_id: str
    run_dir: Path
    env: dict[str, str] = field(default_factory=_isolation_env)
    status: Literal["created", "active", "released"] = "created"
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def released(self) -> bool:
        return self.status == "released"


class SandboxManager:
    """Creates and destroys isolated repository copies for attempts."""

    def __init__(
        self,
        vcs: VersionControl,
        sandbox_root: Path | None = None,
        min_free_bytes: int = 200 * 1024 * 1024,
        ignore_prefixes: tuple[str, ...] = (STATE_PREFIX,),
    ):
        self.vcs = vcs
        self.sandbox_root = sandbox_root or Path(tempfile.gettempdir()) / "steward-sandbox"
        self.min_free_bytes = min_free_bytes
        self.ignore_prefixes = ignore_prefixes

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def acquire(self, run_id: str) -> SandboxHandle:
        """
        Create a worktree at the base repository's HEAD.

        Raises SandboxCreationError when the base repository is dirty or
        locked, when disk space is short, or when the worktree cannot be
        created.
        """
        if self.vcs.is_locked():
            raise SandboxCreationError("repo_locked", "Base repository is locked (index.lock present)")

        dirty = self.vcs.dirty_paths(self.ignore_prefixes)
        if dirty:
            preview = ", ".join(dirty[:5])
            raise SandboxCreationError(
                "repo_dirty",
                f"Base repository has uncommitted tracked changes: {preview}",
            )

        self.sandbox_root.mkdir(parents=True, exist_ok=True)
        free = shutil.disk_usage(self.sandbox_root).free
        if free < self.min_free_bytes:
            raise SandboxCreationError(
                "disk_space",
                f"Only {free // (1024 * 1024)} MB free under {self.sandbox_root}",
            )

        run_dir = self.sandbox_root / sanitize_component(run_id)
        root = run_dir / "worktree"
        try:
            if run_dir.exists():
                logger.warning(f"[SANDBOX] Found stale sandbox for {run_id}. Resetting...")
                self.vcs.discard(root)
                shutil.rmtree(run_dir, ignore_errors=True)
            base_commit = self.vcs.head_commit()
            self.vcs.create_worktree(base_commit, root)
        except (VcsError, OSError) as e:
            shutil.rmtree(run_dir, ignore_errors=True)
            raise SandboxCreationError("worktree_failed", f"Failed to create isolated worktree: {e}") from e

        handle = SandboxHandle(root=root, base_commit=base_commit, run_id=run_id, run_dir=run_dir)
        handle.status = "active"
        logger.info(f"[SANDBOX] Created {root} at {base_commit[:10]}")
        return handle

    def release(self, handle: SandboxHandle) -> None:
        """Discard the sandbox. A second call on the same handle is a no-op."""
        with handle._lock:
            if handle.released:
                return
            try:
                self.vcs.discard(handle.root)
            except (VcsError, OSError) as e:
                logger.warning(f"[SANDBOX] Worktree removal reported an error, removing directory: {e}")
            shutil.rmtree(handle.run_dir, ignore_errors=True)
            handle.status = "released"
        logger.info(f"[SANDBOX] Released {handle.run_id}")

    # ------------------------------------------------------------------ #
    # Inspection
    # ------------------------------------------------------------------ #

    def collect_changes(self, handle: SandboxHandle) -> list[FileChange]:
        """Every path that differs from the base commit, with before/after bytes."""
        if handle.released:
            raise RuntimeError(f"Sandbox {handle.run_id} is already released")

        root = handle.root
        real_root = os.path.realpath(root)
        changes: list[FileChange] = []
        for rel in sorted(self.vcs.changed_paths(root, handle.base_commit)):
            full = root / rel
            before = self.vcs.read_base(handle.base_commit, rel)
            is_link = full.is_symlink()
            exists = is_link or full.exists()
            after = None
            if exists and not is_link and full.is_file():
                after = full.read_bytes()

            if before is None:
                status = "added"
            elif not exists:
                status = "deleted"
            else:
                status = "modified"

            changes.append(FileChange(
                path=rel,
                status=status,
                before=before,
                after=after,
                is_symlink=is_link,
                traverses_symlink=_traverses_symlink(root, rel),
                escapes_root=not _within(real_root, os.path.realpath(full)),
            ))
        return changes

    def revert_except(self, handle: SandboxHandle, keep: set[str]) -> list[str]:
        """
        Put every changed path not in `keep` back to its base content.

        Quick checks leave build output behind (bytecode, logs, caches);
        this removes it so the sandbox only differs from the base commit
        where the gates have looked.
        """
        if handle.released:
            raise RuntimeError(f"Sandbox {handle.run_id} is already released")

        root = handle.root
        reverted: list[str] = []
        for rel in self.vcs.changed_paths(root, handle.base_commit):
            if rel in keep:
                continue
            full = root / rel
            before = self.vcs.read_base(handle.base_commit, rel)
            try:
                if full.is_symlink() or full.is_file():
                    full.unlink()
                elif full.is_dir():
                    shutil.rmtree(full)
                if before is not None:
                    full.parent.mkdir(parents=True, exist_ok=True)
                    full.write_bytes(before)
                else:
                    _prune_empty_dirs(root, full.parent)
            except OSError as e:
                raise VcsError(f"Could not revert {rel} in sandbox: {e}") from e
            reverted.append(rel)
        if reverted:
            logger.info(f"[SANDBOX] Reverted {len(reverted)} path(s) outside the gated change set")
        return reverted


def _prune_empty_dirs(root: Path, directory: Path) -> None:
    while directory != root and directory.is_dir() and not any(directory.iterdir()):
        directory.rmdir()
        directory = directory.parent


def _traverses_symlink(root: Path, rel: str) -> bool:
    current = root
    for part in Path(rel).parts[:-1]:
        current = current / part
        if current.is_symlink():
            return True
    return False


def _within(real_root: str, candidate: str) -> bool:
    return candidate == real_root or candidate.startswith(real_root + os.sep)


def diff_text(changes: list[FileChange], context: int = 3) -> str:
    """Unified diff of text changes, for prompts and reports."""
    chunks: list[str] = []
    for change in changes:
        if change.status == "rejected":
            continue
        try:
            before = (change.before or b"").decode("utf-8").splitlines(keepends=True)
            after = (change.after or b"").decode("utf-8").splitlines(keepends=True)
        except UnicodeDecodeError:
            chunks.append(f"Binary file {change.path} differs\n")
            continue
        chunks.extend(difflib.unified_diff(
            before, after,
            fromfile=f"a/{change.path}" if change.before is not None else "/dev/null",
            tofile=f"b/{change.path}" if change.after is not None else "/dev/null",
            n=context,
        ))
    return "".join(chunks)
