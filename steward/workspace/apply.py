"""
Change applicator.

Applies model-produced changes to a sandbox using surgical
search/replace blocks with a full-content fallback. Writes that would
leave the sandbox root, land in `.git` or go through a symlink are
refused and reported back as rejected touches, so the safety gates see
them. Filesystem errors on one change are recorded as failures.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from steward.gates import FileChange, is_repository_metadata, normalize_path


@dataclass
class ApplyResult:
    applied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    rejected: list[FileChange] = field(default_factory=list)

    @property
    def touched_anything(self) -> bool:
        return bool(self.applied or self.rejected)


def _looks_like_diff(text: str) -> bool:
    """Check if text looks like a unified diff vs plain file content."""
    lines = text.strip().split("\n")[:20]
    diff_markers = 0
    for line in lines:
        if line.startswith(("---", "+++", "@@", "diff ")):
            diff_markers += 1
        if line.startswith(("--- a/", "+++ b/", "diff --git")):
            return True
    return diff_markers >= 2


def _strip_fences(text: str) -> str:
    if not text.strip().startswith("```"):
        return text
    lines = [line for line in text.strip().split("\n") if not line.strip().startswith("```")]
    return "\n".join(lines) + "\n"


def normalize_change(change: dict) -> dict:
    """
    Normalize an LLM-produced change dict so that content is always available.

    Models sometimes put full file content in 'patch' instead of 'content'.
    """
    change = dict(change)
    patch = change.get("patch")
    if patch and patch.strip() and not change.get("content") and not _looks_like_diff(patch):
        logger.info(f"[APPLY] 'patch' for {change.get('file', '?')} is not a diff; using it as content")
        change["content"] = patch
        change["patch"] = None

    if change.get("content"):
        change["content"] = _strip_fences(change["content"])
    return change


def _refusal(root: Path, filename: str) -> FileChange | None:
    """A rejected touch if writing `filename` under `root` is unsafe."""
    rel = normalize_path(filename)
    if os.path.isabs(filename) or rel == ".." or rel.startswith("../"):
        return FileChange(path=filename, status="rejected", escapes_root=True, note="path escapes sandbox")
    if is_repository_metadata(rel):
        return FileChange(path=rel, status="rejected", escapes_root=True, note="path is repository metadata")

    current = root
    parts = Path(rel).parts
    for part in parts[:-1]:
        current = current / part
        if current.is_symlink():
            return FileChange(path=rel, status="rejected", traverses_symlink=True, note="parent is a symlink")

    target = root / rel
    if target.is_symlink():
        return FileChange(path=rel, status="rejected", is_symlink=True, note="target is a symlink")

    real_root = os.path.realpath(root)
    real_target = os.path.realpath(target)
    if real_target != real_root and not real_target.startswith(real_root + os.sep):
        return FileChange(path=rel, status="rejected", escapes_root=True, note="path escapes sandbox")
    return None


def _apply_one(fpath: Path, rel: str, change: dict, result: ApplyResult) -> None:
    action = change.get("action", "modify")
    surgical_blocks = change.get("surgical_blocks") or []
    full_content = change.get("content")

    if action == "create":
        if full_content is None:
            result.failed.append(f"FAIL {rel} (creation requires content)")
            return
        fpath.parent.mkdir(parents=True, exist_ok=True)
        fpath.write_text(full_content, encoding="utf-8")
        result.applied.append(f"CREATE {rel}")

    elif action == "delete":
        if fpath.is_dir():
            result.failed.append(f"FAIL {rel} (is a directory)")
        elif fpath.exists():
            fpath.unlink()
            result.applied.append(f"DELETE {rel}")
        else:
            result.failed.append(f"FAIL {rel} (nothing to delete)")

    elif action == "modify":
        if not fpath.is_file():
            result.failed.append(f"FAIL {rel} (file not found for modification)")
            return

        if surgical_blocks:
            try:
                text = fpath.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                result.failed.append(f"FAIL {rel} (not a text file)")
                return
            hits = 0
            for block in surgical_blocks:
                search = block.get("search", "")
                if search and search in text:
                    text = text.replace(search, block.get("replace", ""), 1)
                    hits += 1
                else:
                    logger.warning(f"[APPLY] Surgical block search failed in {rel}")

            if hits == len(surgical_blocks):
                fpath.write_text(text, encoding="utf-8")
                result.applied.append(f"SURGICAL {rel} ({hits} blocks)")
                return
            logger.warning(f"[APPLY] {len(surgical_blocks) - hits} block(s) failed in {rel}. Falling back...")

        if full_content is not None:
            fpath.write_text(full_content, encoding="utf-8")
            result.applied.append(f"MODIFY {rel} (full content)")
        else:
            result.failed.append(f"FAIL {rel} (no valid surgical blocks or content)")

    else:
        result.failed.append(f"FAIL {rel} (unknown action '{action}')")


def apply_changes(root: Path, changes: list[dict]) -> ApplyResult:
    """Apply changes inside the sandbox rooted at `root`."""
    result = ApplyResult()
    for raw in changes:
        change = normalize_change(raw)
        filename = (change.get("file") or "").strip()
        if not filename:
            continue

        refusal = _refusal(root, filename)
        if refusal is not None:
            logger.warning(f"[APPLY] Refused {filename}: {refusal.note}")
            result.rejected.append(refusal)
            continue

        rel = normalize_path(filename)
        try:
            _apply_one(root / rel, rel, change, result)
        except OSError as e:
            logger.warning(f"[APPLY] {rel}: {e}")
            result.failed.append(f"FAIL {rel} ({e.strerror or type(e).__name__})")

    return result
