"""
Shared fixtures: a directory-backed version-control fake, scripted model
providers, scripted quick checks, and a config builder.
"""

from __future__ import annotations

import hashlib
import json
import os
import shutil
import subprocess
from pathlib import Path
from typing import Any, Callable

import pytest

from steward.checks import QuickCheckResult, QuickCheckRunner
from steward.config_loader import StewardConfig
from steward.reliability import ModelRequest, ModelResponse, Provider, ProviderError
from steward.workspace import VcsError

ROLES = ("implementer", "repairer", "reviewer", "security_reviewer", "fixer")


# ============================================================
# VERSION CONTROL FAKE
# ============================================================

def _read_tree(root: Path, ignore: tuple[str, ...] = (".steward/",)) -> dict[str, bytes]:
    files: dict[str, bytes] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        for name in list(dirnames):
            if (base / name).is_symlink():
                filenames.append(name)
                dirnames.remove(name)
        for name in filenames:
            full = base / name
            rel = full.relative_to(root).as_posix()
            if rel.startswith(ignore):
                continue
            if full.is_symlink():
                files[rel] = b"symlink:" + os.readlink(full).encode()
            else:
                files[rel] = full.read_bytes()
    return files


def _write_tree(root: Path, old: dict[str, bytes], new: dict[str, bytes]) -> None:
    for rel in old:
        if rel not in new and (root / rel).exists():
            (root / rel).unlink()
    for rel, data in new.items():
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)


class FakeVcs:
    """`VersionControl` over plain directories; commits are tree snapshots."""

    def __init__(self, repo_path: Path, branch: str = "main"):
        self.repo_path = repo_path
        self.commits: dict[str, dict[str, bytes]] = {}
        self.messages: dict[str, str] = {}
        self.branches: dict[str, str] = {}
        self.current = branch
        self.locked = False
        self.fail_merge_after_write = False
        self.commit_calls: list[str] = []
        self.merge_calls: list[tuple[str, str | None, str]] = []
        self.worktrees: list[Path] = []
        self.branches[branch] = self._store(_read_tree(repo_path), "initial")

    def _store(self, tree: dict[str, bytes], message: str) -> str:
        digest = hashlib.sha1(json.dumps(sorted((k, v.hex()) for k, v in tree.items())).encode())
        digest.update(str(len(self.commits)).encode())
        commit_id = digest.hexdigest()
        self.commits[commit_id] = dict(tree)
        self.messages[commit_id] = message
        return commit_id

    # -- queries -----------------------------------------------------------

    def head_commit(self) -> str:
        return self.branches[self.current]

    def current_branch(self) -> str | None:
        return self.current

    def dirty_paths(self, ignore_prefixes: tuple[str, ...] = ()) -> list[str]:
        tracked = self.commits[self.head_commit()]
        on_disk = _read_tree(self.repo_path)
        dirty = [
            rel for rel, data in tracked.items()
            if on_disk.get(rel) != data and not rel.startswith(ignore_prefixes)
        ]
        return sorted(dirty)

    def is_locked(self) -> bool:
        return self.locked

    def read_base(self, base_commit: str, path: str) -> bytes | None:
        return self.commits[base_commit].get(path)

    def changed_paths(self, worktree: Path, base_commit: str) -> list[str]:
        base = self.commits[base_commit]
        current = _read_tree(worktree)
        return sorted(p for p in set(base) | set(current) if base.get(p) != current.get(p))

    # -- mutations ---------------------------------------------------------

    def create_worktree(self, base_commit: str, path: Path) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        _write_tree(path, {}, self.commits[base_commit])
        self.worktrees.append(path)
        return path

    def commit(
        self, worktree: Path, message: str, paths: list[str], env: dict[str, str] | None = None,
    ) -> str | None:
        on_disk = _read_tree(worktree)
        tree = dict(self.commits[self.head_commit()])
        for rel in paths:
            if rel in on_disk:
                tree[rel] = on_disk[rel]
            else:
                tree.pop(rel, None)
        if tree == self.commits[self.head_commit()]:
            return None
        commit_id = self._store(tree, message)
        self.commit_calls.append(commit_id)
        return commit_id

    def merge(self, commit_id: str, target_branch: str | None, branch_name: str) -> None:
        self.merge_calls.append((commit_id, target_branch, branch_name))
        self.branches[branch_name] = commit_id
        if target_branch is None:
            return
        if target_branch != self.current:
            raise VcsError(f"Primary checkout is on '{self.current}', expected '{target_branch}'")
        old = self.commits[self.head_commit()]
        _write_tree(self.repo_path, old, self.commits[commit_id])
        if self.fail_merge_after_write:
            raise VcsError("simulated failure after partial merge")
        self.branches[self.current] = commit_id

    def reset_to(self, commit_id: str) -> None:
        on_disk = _read_tree(self.repo_path)
        _write_tree(self.repo_path, on_disk, self.commits[commit_id])
        self.branches[self.current] = commit_id

    def delete_branch(self, name: str) -> None:
        self.branches.pop(name, None)

    def discard(self, worktree: Path) -> None:
        shutil.rmtree(worktree, ignore_errors=True)


# ============================================================
# MODEL PROVIDERS
# ============================================================

Reply = str | ProviderError | Callable[[ModelRequest], str]


class ScriptedProvider(Provider):
    """Replays replies in order; the last one repeats."""

    def __init__(self, name: str, replies: list[Reply], cost_usd: float = 0.001, latency_ms: int = 5):
        self.name = name
        self.replies = list(replies)
        self.cost_usd = cost_usd
        self.latency_ms = latency_ms
        self.requests: list[ModelRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        index = min(len(self.requests), len(self.replies)) - 1
        reply = self.replies[index]
        if isinstance(reply, ProviderError):
            raise reply
        content = reply(request) if callable(reply) else reply
        return ModelResponse(
            content=content,
            model=self.name,
            provider=self.name.split("/", 1)[0],
            tokens_used=100,
            cost_usd=self.cost_usd,
            latency_ms=self.latency_ms,
        )


class ProviderPool:
    """provider_factory for Router: one scripted provider per model name."""

    def __init__(self, scripts: dict[str, list[Reply]] | None = None, cost_usd: float = 0.001):
        self.providers: dict[str, ScriptedProvider] = {}
        self.cost_usd = cost_usd
        for model, replies in (scripts or {}).items():
            self.script(model, replies)

    def script(self, model: str, replies: list[Reply]) -> ScriptedProvider:
        self.providers[model] = ScriptedProvider(model, replies, cost_usd=self.cost_usd)
        return self.providers[model]

    def __call__(self, model: str) -> ScriptedProvider:
        if model not in self.providers:
            self.script(model, [ProviderError("server", f"no script for {model}", model)])
        return self.providers[model]

    def for_role(self, role: str) -> ScriptedProvider:
        return self(f"fake/{role}")


def patch_reply(summary: str, changes: list[dict[str, Any]], **extra: Any) -> str:
    return json.dumps({"summary": summary, "commit_message": f"fix: {summary}", "changes": changes, **extra})


def repair_reply(diagnosis: str, changes: list[dict[str, Any]]) -> str:
    return json.dumps({"diagnosis": diagnosis, "root_cause": diagnosis, "changes": changes})


def review_reply(findings: list[dict[str, Any]]) -> str:
    return json.dumps({"summary": f"{len(findings)} finding(s)", "findings": findings})


def fix_reply(summary: str, changes: list[dict[str, Any]], addressed: list[str] | None = None) -> str:
    return json.dumps({"summary": summary, "addressed": addressed or [], "changes": changes})


def file_change(path: str, content: str, action: str = "modify") -> dict[str, Any]:
    return {"file": path, "action": action, "content": content}


# ============================================================
# QUICK CHECKS
# ============================================================

class ScriptedChecks(QuickCheckRunner):
    """Returns the scripted statuses in order; the last one repeats."""

    def __init__(self, statuses: list[str]):
        super().__init__(command="scripted-check")
        self.statuses = statuses
        self.calls: list[Path] = []

    async def run(self, root: Path, env: dict[str, str] | None = None) -> QuickCheckResult:
        self.calls.append(root)
        status = self.statuses[min(len(self.calls), len(self.statuses)) - 1]
        return QuickCheckResult(
            status=status,
            command=self.command,
            exit_code={"passed": 0, "failed": 1, "unavailable": 127}[status],
            output_tail="" if status == "passed" else "src/a.ts(3,1): error TS1005: ';' expected.",
        )


# ============================================================
# CONFIG
# ============================================================

def make_config(tmp_path: Path, **sections: dict[str, Any]) -> StewardConfig:
    """Fast, hermetic config: one fake model per role, no retry sleeps."""
    data: dict[str, Any] = {
        "routing": {role: [f"fake/{role}"] for role in ROLES},
        "limits": {"max_attempts": 3, "max_repairs": 2, "max_fixes": 2, "max_cost_usd": 1.0, "max_wall_ms": 60_000},
        "reliability": {"call_timeout_s": 5.0, "max_retries": 0, "breaker_failure_threshold": 3},
        "review": {"reviewers": ["reviewer"]},
        "checks": {"command": "scripted-check"},
        "workspace": {"sandbox_root": str(tmp_path / "sandboxes"), "min_free_mb": 0},
    }
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    return StewardConfig(**data)


@pytest.fixture
def primary_repo(tmp_path: Path) -> Path:
    """A small project checkout used as the primary repository."""
    repo = tmp_path / "repo"
    (repo / "src").mkdir(parents=True)
    (repo / "src" / "a.ts").write_text("export const a = 1;\n")
    (repo / "src" / "b.ts").write_text("export const b = 2;\n")
    (repo / "src" / "util.py").write_text("def double(x):\n    return x * 2\n")
    (repo / "README.md").write_text("# demo\n")
    return repo


@pytest.fixture
def fake_vcs(primary_repo: Path) -> FakeVcs:
    return FakeVcs(primary_repo)


@pytest.fixture
def pool() -> ProviderPool:
    return ProviderPool()


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)
    return result.stdout.strip()


@pytest.fixture
def git_repo(primary_repo: Path) -> Path:
    """`primary_repo` as a real git repository with one commit on main."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    git(primary_repo, "init", "-q", "-b", "main")
    git(primary_repo, "config", "user.email", "dev@example.com")
    git(primary_repo, "config", "user.name", "Dev")
    git(primary_repo, "config", "commit.gpgsign", "false")
    git(primary_repo, "add", "-A")
    git(primary_repo, "commit", "-q", "-m", "initial")
    return primary_repo
