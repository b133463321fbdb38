"""
Version-control capability.

The orchestration code only talks to `VersionControl`; `GitVcs` is the
real implementation and tests substitute a directory-backed fake.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import Protocol, runtime_checkable

from loguru import logger


class VcsError(Exception):
    pass


# Used only when the repository has no committer identity configured.
_FALLBACK_IDENTITY = {
    "GIT_AUTHOR_NAME": "steward",
    "GIT_AUTHOR_EMAIL": "steward@localhost",
    "GIT_COMMITTER_NAME": "steward",
    "GIT_COMMITTER_EMAIL": "steward@localhost",
}


@runtime_checkable
class VersionControl(Protocol):
    repo_path: Path

    def head_commit(self) -> str: ...
    def current_branch(self) -> str | None: ...
    def dirty_paths(self, ignore_prefixes: tuple[str, ...] = ()) -> list[str]: ...
    def is_locked(self) -> bool: ...
    def create_worktree(self, base_commit: str, path: Path) -> Path: ...
    def changed_paths(self, worktree: Path, base_commit: str) -> list[str]: ...
    def read_base(self, base_commit: str, path: str) -> bytes | None: ...
    def commit(
        self, worktree: Path, message: str, paths: list[str], env: dict[str, str] | None = None,
    ) -> str | None: ...
    def merge(self, commit_id: str, target_branch: str | None, branch_name: str) -> None: ...
    def reset_to(self, commit_id: str) -> None: ...
    def delete_branch(self, name: str) -> None: ...
    def discard(self, worktree: Path) -> None: ...


class GitVcs:
    """
    `VersionControl` over the git CLI.

    Every command that runs inside a sandbox is pinned to the worktree's
    git directory as recorded when the worktree was created, so a
    rewritten `.git` pointer in the sandbox cannot redirect it.
    """

    def __init__(self, repo_path: Path, timeout_s: float = 60):
        self.repo_path = repo_path.resolve()
        self.timeout_s = timeout_s
        self._git_dirs: dict[Path, Path] = {}

    # -- queries -----------------------------------------------------------

    def head_commit(self) -> str:
        return self._git("rev-parse", "HEAD", capture=True).strip()

    def current_branch(self) -> str | None:
        name = self._git("symbolic-ref", "--quiet", "--short", "HEAD", capture=True, check=False).strip()
        return name or None

    def dirty_paths(self, ignore_prefixes: tuple[str, ...] = ()) -> list[str]:
        """Tracked files that are modified or staged. Untracked files are ignored."""
        out = self._git("status", "--porcelain", "--untracked-files=no", capture=True)
        paths = []
        for line in out.splitlines():
            if len(line) < 4:
                continue
            path = line[3:].split(" -> ")[-1].strip('"')
            if not path.startswith(ignore_prefixes):
                paths.append(path)
        return paths

    def is_locked(self) -> bool:
        git_dir = Path(self._git("rev-parse", "--git-dir", capture=True).strip())
        if not git_dir.is_absolute():
            git_dir = self.repo_path / git_dir
        return (git_dir / "index.lock").exists()

    def read_base(self, base_commit: str, path: str) -> bytes | None:
        result = subprocess.run(
            ["git", "show", f"{base_commit}:{path}"],
            cwd=self.repo_path, capture_output=True, timeout=self.timeout_s,
        )
        return result.stdout if result.returncode == 0 else None

    def changed_paths(self, worktree: Path, base_commit: str) -> list[str]:
        """Tracked paths that differ from `base_commit` plus untracked, non-ignored files. Never stages."""
        tracked = self._sandbox(worktree, "diff", "--name-only", "--no-renames", "-z", base_commit, capture=True)
        untracked = self._sandbox(worktree, "ls-files", "-z", "--others", "--exclude-standard", capture=True)
        return sorted({p for p in (tracked + untracked).split("\0") if p})

    # -- mutations ---------------------------------------------------------

    def create_worktree(self, base_commit: str, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._git("worktree", "add", "--detach", str(path), base_commit)
        self._git_dirs[path.resolve()] = self._worktree_git_dir(path)
        return path

    def commit(
        self, worktree: Path, message: str, paths: list[str], env: dict[str, str] | None = None,
    ) -> str | None:
        """Commit exactly `paths` (additions, edits and deletions) in the sandbox."""
        if not paths:
            logger.info("[VCS] Nothing to commit.")
            return None
        self._sandbox(worktree, "--literal-pathspecs", "add", "-A", "--", *paths)
        staged = self._sandbox(worktree, "diff", "--cached", "--name-only", capture=True)
        if not staged.strip():
            logger.info("[VCS] Nothing to commit.")
            return None
        env = dict(env or {})
        if not self._sandbox(worktree, "config", "user.email", check=False, capture=True).strip():
            env.update(_FALLBACK_IDENTITY)
        self._sandbox(worktree, "commit", "--no-verify", "-m", message, env=env)
        return self._sandbox(worktree, "rev-parse", "HEAD", capture=True).strip()

    def merge(self, commit_id: str, target_branch: str | None, branch_name: str) -> None:
        """
        Record `commit_id` on `branch_name`; when `target_branch` is given,
        fast-forward the primary checkout to it as well.
        """
        self._git("branch", "--force", branch_name, commit_id)
        if target_branch is None:
            return
        current = self.current_branch()
        if current != target_branch:
            raise VcsError(f"Primary checkout is on '{current}', expected '{target_branch}'")
        self._git("merge", "--ff-only", "--no-edit", commit_id)

    def reset_to(self, commit_id: str) -> None:
        self._git("reset", "--hard", "--quiet", commit_id)

    def delete_branch(self, name: str) -> None:
        self._git("branch", "-D", name, check=False)

    def discard(self, worktree: Path) -> None:
        """Remove a worktree. Safe to call on a path that is already gone."""
        self._git("worktree", "remove", "--force", str(worktree), check=False)
        if worktree.exists():
            shutil.rmtree(worktree, ignore_errors=True)
        self._git("worktree", "prune", check=False)
        self._git_dirs.pop(worktree.resolve(), None)

    # -- plumbing ----------------------------------------------------------

    def _git(self, *args: str, check: bool = True, capture: bool = False) -> str:
        return self._run_cmd(["git", *args], cwd=self.repo_path, check=check, capture=capture)

    def _worktree_git_dir(self, worktree: Path) -> Path:
        """Resolve the administrative directory git created for `worktree`."""
        common = Path(self._git("rev-parse", "--git-common-dir", capture=True).strip())
        if not common.is_absolute():
            common = self.repo_path / common
        common = common.resolve()
        try:
            pointer = (worktree / ".git").read_text(encoding="utf-8").strip()
        except OSError as e:
            raise VcsError(f"Worktree {worktree} has no .git pointer: {e}") from e
        if not pointer.startswith("gitdir:"):
            raise VcsError(f"Unexpected .git pointer in {worktree}: {pointer[:80]}")
        git_dir = Path(pointer[len("gitdir:"):].strip())
        if not git_dir.is_absolute():
            git_dir = worktree / git_dir
        git_dir = git_dir.resolve()
        if git_dir.parent != common / "worktrees":
            raise VcsError(f"Worktree {worktree} points at {git_dir}, outside {common / 'worktrees'}")
        return git_dir

    def _sandbox(
        self,
        worktree: Path,
        *args: str,
        check: bool = True,
        capture: bool = False,
        env: dict[str, str] | None = None,
    ) -> str:
        git_dir = self._git_dirs.get(worktree.resolve())
        if git_dir is None:
            raise VcsError(f"{worktree} is not a sandbox created by this repository")
        pinned = {**(env or {}), "GIT_DIR": str(git_dir), "GIT_WORK_TREE": str(worktree.resolve())}
        return self._run_cmd(["git", *args], cwd=worktree, check=check, capture=capture, env=pinned)

    def _run_cmd(
        self,
        cmd: list[str],
        cwd: Path,
        check: bool = True,
        capture: bool = False,
        env: dict[str, str] | None = None,
    ) -> str:
        full_env = {**os.environ, **env} if env else None
        try:
            result = subprocess.run(
                cmd, cwd=cwd, capture_output=True, text=True,
                timeout=self.timeout_s, env=full_env,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise VcsError(f"Git failed to run: {' '.join(cmd)}: {e}") from e
        if check and result.returncode != 0:
            raise VcsError(f"Git failed: {' '.join(cmd)}\n{result.stderr}")
        return result.stdout if capture else ""
