"""Tests for the Sandbox Manager, against both the fake and real git."""

import os

import pytest

from conftest import FakeVcs, git
from steward.workspace import GitVcs, SandboxCreationError, SandboxManager, VcsError, diff_text, sanitize_component


def _manager(vcs, tmp_path, **kwargs):
    return SandboxManager(vcs, sandbox_root=tmp_path / "sandboxes", min_free_bytes=0, **kwargs)


class TestSandboxManager:
    def test_acquire_copies_head_and_release_is_idempotent(self, tmp_path, fake_vcs):
        manager = _manager(fake_vcs, tmp_path)
        handle = manager.acquire("run-1")

        assert (handle.root / "src" / "a.ts").read_text() == "export const a = 1;\n"
        assert handle.base_commit == fake_vcs.head_commit()
        assert handle.status == "active"

        manager.release(handle)
        manager.release(handle)
        assert handle.released
        assert not handle.run_dir.exists()

    def test_dirty_primary_is_refused(self, tmp_path, primary_repo, fake_vcs):
        (primary_repo / "src" / "a.ts").write_text("export const a = 9;\n")
        with pytest.raises(SandboxCreationError) as exc:
            _manager(fake_vcs, tmp_path).acquire("run-1")
        assert exc.value.reason_code == "repo_dirty"
        assert fake_vcs.worktrees == []

    def test_locked_primary_is_refused(self, tmp_path, fake_vcs):
        fake_vcs.locked = True
        with pytest.raises(SandboxCreationError) as exc:
            _manager(fake_vcs, tmp_path).acquire("run-1")
        assert exc.value.reason_code == "repo_locked"

    def test_disk_space_floor(self, tmp_path, fake_vcs):
        manager = SandboxManager(fake_vcs, sandbox_root=tmp_path / "sandboxes", min_free_bytes=10**18)
        with pytest.raises(SandboxCreationError) as exc:
            manager.acquire("run-1")
        assert exc.value.reason_code == "disk_space"

    def test_stale_sandbox_is_replaced(self, tmp_path, fake_vcs):
        manager = _manager(fake_vcs, tmp_path)
        stale = tmp_path / "sandboxes" / "run-1" / "worktree"
        stale.mkdir(parents=True)
        (stale / "junk.txt").write_text("left over")

        handle = manager.acquire("run-1")
        assert not (handle.root / "junk.txt").exists()

    def test_stale_sandbox_that_cannot_be_removed_is_a_creation_error(self, tmp_path, fake_vcs, monkeypatch):
        (tmp_path / "sandboxes" / "run-1" / "worktree").mkdir(parents=True)

        def refuse(_path):
            raise VcsError("worktree is locked")

        monkeypatch.setattr(fake_vcs, "discard", refuse)
        with pytest.raises(SandboxCreationError) as exc:
            _manager(fake_vcs, tmp_path).acquire("run-1")
        assert exc.value.reason_code == "worktree_failed"

    def test_collect_changes(self, tmp_path, fake_vcs):
        manager = _manager(fake_vcs, tmp_path)
        handle = manager.acquire("run-1")
        (handle.root / "src" / "a.ts").write_text("export const a = 2;\n")
        (handle.root / "src" / "b.ts").unlink()
        (handle.root / "src" / "c.ts").write_text("export const c = 3;\n")

        changes = {c.path: c for c in manager.collect_changes(handle)}

        assert changes["src/a.ts"].status == "modified"
        assert changes["src/a.ts"].before == b"export const a = 1;\n"
        assert changes["src/b.ts"].status == "deleted"
        assert changes["src/c.ts"].status == "added"
        assert "+export const a = 2;" in diff_text(list(changes.values()))

    def test_revert_except_drops_paths_outside_the_kept_set(self, tmp_path, primary_repo, fake_vcs):
        manager = _manager(fake_vcs, tmp_path)
        handle = manager.acquire("run-1")
        (handle.root / "src" / "a.ts").write_text("export const a = 2;\n")
        (handle.root / "README.md").write_text("# rewritten by a build step\n")
        (handle.root / "build.log").write_text("log\n")
        (handle.root / "src" / "__pycache__").mkdir()
        (handle.root / "src" / "__pycache__" / "util.cpython-311.pyc").write_bytes(b"\x00\x01")

        reverted = manager.revert_except(handle, {"src/a.ts"})

        assert sorted(reverted) == ["README.md", "build.log", "src/__pycache__/util.cpython-311.pyc"]
        assert [c.path for c in manager.collect_changes(handle)] == ["src/a.ts"]
        assert (handle.root / "README.md").read_text() == "# demo\n"
        assert not (handle.root / "src" / "__pycache__").exists()
        assert (handle.root / "src" / "a.ts").read_text() == "export const a = 2;\n"

    def test_collect_after_release_raises(self, tmp_path, fake_vcs):
        manager = _manager(fake_vcs, tmp_path)
        handle = manager.acquire("run-1")
        manager.release(handle)
        with pytest.raises(RuntimeError):
            manager.collect_changes(handle)

    def test_sandboxes_are_isolated_from_each_other(self, tmp_path, fake_vcs):
        manager = _manager(fake_vcs, tmp_path)
        first = manager.acquire("run-1")
        second = manager.acquire("run-2")
        (first.root / "src" / "a.ts").write_text("changed\n")
        assert (second.root / "src" / "a.ts").read_text() == "export const a = 1;\n"

    def test_isolation_env_disables_push(self, tmp_path, fake_vcs):
        handle = _manager(fake_vcs, tmp_path).acquire("run-1")
        assert handle.env["GIT_TERMINAL_PROMPT"] == "0"
        assert handle.env["GIT_CONFIG_KEY_0"].endswith(".pushInsteadOf")


@pytest.mark.parametrize("raw,expected", [
    ("fix/a b", "fix_a_b"),
    ("../../x", "x"),
    ("...", "run"),
])
def test_sanitize_component(raw, expected):
    assert sanitize_component(raw) == expected


class TestGitVcs:
    def test_worktree_lifecycle(self, tmp_path, git_repo):
        vcs = GitVcs(git_repo)
        manager = _manager(vcs, tmp_path)
        handle = manager.acquire("git-run")

        (handle.root / "src" / "a.ts").write_text("export const a = 2;\n")
        os.symlink("a.ts", handle.root / "src" / "alias.ts")
        changes = {c.path: c for c in manager.collect_changes(handle)}

        assert changes["src/a.ts"].status == "modified"
        assert changes["src/alias.ts"].is_symlink
        assert vcs.dirty_paths() == []

        manager.release(handle)
        assert not handle.run_dir.exists()
        assert "git-run" not in git(git_repo, "worktree", "list")

    def test_dirty_ignores_state_directory_and_untracked(self, git_repo):
        (git_repo / ".steward").mkdir()
        (git_repo / ".steward" / "report.json").write_text("{}")
        (git_repo / "scratch.txt").write_text("untracked")
        vcs = GitVcs(git_repo)
        assert vcs.dirty_paths((".steward/",)) == []

        (git_repo / "README.md").write_text("# changed\n")
        assert vcs.dirty_paths((".steward/",)) == ["README.md"]

    def test_index_lock_detected(self, git_repo):
        (git_repo / ".git" / "index.lock").write_text("")
        assert GitVcs(git_repo).is_locked()

    def test_commit_and_fast_forward(self, tmp_path, git_repo):
        vcs = GitVcs(git_repo)
        handle = _manager(vcs, tmp_path).acquire("ff-run")
        (handle.root / "src" / "a.ts").write_text("export const a = 2;\n")

        commit_id = vcs.commit(handle.root, "bump a", ["src/a.ts"], env=handle.env)
        vcs.merge(commit_id, "main", "steward/ff-run")

        assert vcs.head_commit() == commit_id
        assert (git_repo / "src" / "a.ts").read_text() == "export const a = 2;\n"
        assert git(git_repo, "rev-parse", "steward/ff-run") == commit_id

    def test_commit_with_no_changes_returns_none(self, tmp_path, git_repo):
        vcs = GitVcs(git_repo)
        handle = _manager(vcs, tmp_path).acquire("noop-run")
        assert vcs.commit(handle.root, "nothing", [], env=handle.env) is None
        assert vcs.commit(handle.root, "nothing", ["src/a.ts"], env=handle.env) is None

    def test_listing_changes_never_stages(self, tmp_path, git_repo):
        vcs = GitVcs(git_repo)
        manager = _manager(vcs, tmp_path)
        handle = manager.acquire("stage-run")
        (handle.root / "src" / "a.ts").write_text("export const a = 2;\n")
        (handle.root / "notes.txt").write_text("new\n")

        assert vcs.changed_paths(handle.root, handle.base_commit) == ["notes.txt", "src/a.ts"]
        assert git(handle.root, "diff", "--cached", "--name-only") == ""

    def test_commit_takes_only_the_listed_paths(self, tmp_path, git_repo):
        vcs = GitVcs(git_repo)
        handle = _manager(vcs, tmp_path).acquire("paths-run")
        (handle.root / "src" / "a.ts").write_text("export const a = 2;\n")
        (handle.root / "src" / "b.ts").unlink()
        (handle.root / "build.log").write_text("log\n")

        commit_id = vcs.commit(handle.root, "bump a", ["src/a.ts", "src/b.ts"], env=handle.env)

        committed = git(git_repo, "show", "--name-only", "--format=", commit_id).splitlines()
        assert sorted(committed) == ["src/a.ts", "src/b.ts"]

    def test_rewritten_git_pointer_cannot_reach_the_primary(self, tmp_path, git_repo):
        vcs = GitVcs(git_repo)
        manager = _manager(vcs, tmp_path)
        handle = manager.acquire("pointer-run")
        base = git(git_repo, "rev-parse", "HEAD")
        (handle.root / ".git").write_text(f"gitdir: {git_repo / '.git'}\n")
        (handle.root / "src" / "util.py").write_text("def double(x):\n    return x + x\n")

        assert [c.path for c in manager.collect_changes(handle)] == ["src/util.py"]
        commit_id = vcs.commit(handle.root, "edit util", ["src/util.py"], env=handle.env)

        assert commit_id is not None
        assert git(git_repo, "rev-parse", "HEAD") == base
        assert git(git_repo, "diff", "--cached", "--name-only") == ""
        assert vcs.dirty_paths() == []
        manager.release(handle)
        assert not handle.run_dir.exists()
