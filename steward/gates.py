"""
STEWARD Safety Gates

Stateless, deterministic checks over the set of files an attempt has
touched. The same five gates run, in the same order, after every
apply, repair, and auto-fix step:

  path-traversal   touched path resolves outside the sandbox root
  symlink-write    write creates or goes through a symbolic link
  binary-write     mutation of a non-text file
  out-of-scope     touched path not declared in the suggestion's scope
  syntax-safety    changed file no longer parses

The first four are terminal. syntax-safety may be routed to repair.
"""

from __future__ import annotations

import ast
import json
import posixpath
import tomllib
from dataclasses import dataclass
from typing import Iterable, Literal

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict

try:
    from tree_sitter_languages import get_parser
    TREE_SITTER_AVAILABLE = True
except ImportError:
    TREE_SITTER_AVAILABLE = False


PATH_TRAVERSAL = "path-traversal"
SYMLINK_WRITE = "symlink-write"
BINARY_WRITE = "binary-write"
OUT_OF_SCOPE = "out-of-scope"
SYNTAX_SAFETY = "syntax-safety"

GATE_ORDER = (PATH_TRAVERSAL, SYMLINK_WRITE, BINARY_WRITE, OUT_OF_SCOPE, SYNTAX_SAFETY)
NON_RETRIABLE = frozenset({PATH_TRAVERSAL, SYMLINK_WRITE, BINARY_WRITE, OUT_OF_SCOPE})

BINARY_FILE_EXTENSIONS = frozenset({
    "7z", "avi", "bmp", "class", "db", "dll", "dylib", "exe", "gif", "gz",
    "ico", "jar", "jpeg", "jpg", "mov", "mp3", "mp4", "ogg", "otf", "pdf",
    "png", "so", "sqlite", "tar", "tgz", "ttf", "wav", "webm", "woff",
    "woff2", "zip",
})

TREE_SITTER_LANGUAGES = {
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".rs": "rust",
    ".go": "go",
    ".rb": "ruby",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cs": "c_sharp",
    ".php": "php",
    ".sh": "bash",
    ".kt": "kotlin",
    ".lua": "lua",
}

_SNIFF_BYTES = 8000


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

ChangeStatus = Literal["added", "modified", "deleted", "rejected"]


@dataclass(frozen=True)
class FileChange:
    """One touched path as seen from the sandbox root."""
    path: str
    status: ChangeStatus
    before: bytes | None = None
    after: bytes | None = None
    is_symlink: bool = False          # the path itself is (or became) a link
    traverses_symlink: bool = False   # a parent component is a link
    escapes_root: bool = False        # resolved location is outside the root
    note: str = ""                    # why an apply was refused


class GateResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    gate: str
    passed: bool
    reason_code: str
    evidence: str = ""
    confidence: Literal["full", "reduced"] = "full"

    @property
    def retriable(self) -> bool:
        return self.passed or self.gate not in NON_RETRIABLE


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize_path(path: str) -> str:
    p = posixpath.normpath(path.replace("\\", "/"))
    while p.startswith("./"):
        p = p[2:]
    return p


def is_repository_metadata(path: str) -> bool:
    """True for `.git` itself or anything under it."""
    first = normalize_path(path).split("/", 1)[0]
    return first.lower() == ".git"


def _escapes(path: str) -> bool:
    p = normalize_path(path)
    if is_repository_metadata(p):
        return True
    return p.startswith("/") or p == ".." or p.startswith("../") or (len(p) > 1 and p[1] == ":")


def _extension(path: str) -> str:
    return posixpath.splitext(path)[1].lower()


def is_binary(path: str, data: bytes | None) -> bool:
    if _extension(path).lstrip(".") in BINARY_FILE_EXTENSIONS:
        return True
    if not data:
        return False
    head = data[:_SNIFF_BYTES]
    if b"\x00" in head:
        return True
    try:
        head.decode("utf-8")
    except UnicodeDecodeError as e:
        # A multibyte sequence cut at the sniff boundary is still text.
        return e.start < len(head) - 3
    return False


def _evidence(paths: Iterable[str], limit: int = 5) -> str:
    items = sorted(set(paths))
    text = ", ".join(items[:limit])
    if len(items) > limit:
        text += f" (+{len(items) - limit} more)"
    return text


# ---------------------------------------------------------------------------
# Syntax
# ---------------------------------------------------------------------------

def _parse_python(text: str) -> None:
    ast.parse(text)


def _parse_json(text: str) -> None:
    json.loads(text)


def _parse_toml(text: str) -> None:
    tomllib.loads(text)


def _parse_yaml(text: str) -> None:
    list(yaml.safe_load_all(text))


_BUILTIN_PARSERS = {
    ".py": _parse_python,
    ".pyi": _parse_python,
    ".json": _parse_json,
    ".toml": _parse_toml,
    ".yaml": _parse_yaml,
    ".yml": _parse_yaml,
}


def parses(path: str, data: bytes) -> bool | None:
    """
    True if `data` parses for the file's language, False if it does not,
    None if no parser is available for this language.
    """
    ext = _extension(path)
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return False

    parser = _BUILTIN_PARSERS.get(ext)
    if parser is not None:
        try:
            parser(text)
        except (SyntaxError, ValueError, yaml.YAMLError, tomllib.TOMLDecodeError):
            return False
        return True

    language = TREE_SITTER_LANGUAGES.get(ext)
    if language is None:
        return True  # prose, config without grammar, etc.
    if not TREE_SITTER_AVAILABLE:
        return None
    tree = get_parser(language).parse(data)
    return not tree.root_node.has_error


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------

def _result(gate: str, offenders: list[str], confidence: str = "full", extra: str = "") -> GateResult:
    if offenders:
        return GateResult(gate=gate, passed=False, reason_code=gate, evidence=_evidence(offenders))
    return GateResult(gate=gate, passed=True, reason_code="pass", evidence=extra, confidence=confidence)


def _syntax_gate(changes: list[FileChange]) -> GateResult:
    broken: list[str] = []
    unverified: list[str] = []
    for change in changes:
        if change.status in ("deleted", "rejected") or change.after is None:
            continue
        if is_binary(change.path, change.after):
            continue
        after_ok = parses(change.path, change.after)
        if after_ok is None:
            unverified.append(change.path)
            continue
        if after_ok:
            continue
        # Only a regression counts: a file that was already broken stays the owner's problem.
        if change.before is not None and parses(change.path, change.before) is False:
            continue
        broken.append(change.path)

    if unverified:
        logger.debug(f"[GATES] No parser for {_evidence(unverified)}; syntax unverified")
        return _result(SYNTAX_SAFETY, broken, "reduced", f"unverified: {_evidence(unverified)}")
    return _result(SYNTAX_SAFETY, broken)


def evaluate(scope: Iterable[str], changes: Iterable[FileChange]) -> list[GateResult]:
    """
    Evaluate every gate against the touched files.

    Pure: the same scope and changes always give the same results.
    """
    changes = list(changes)
    allowed = {normalize_path(p) for p in scope}

    traversal = [c.path for c in changes if c.escapes_root or _escapes(c.path)]
    symlinks = [c.path for c in changes if c.is_symlink or c.traverses_symlink]
    binaries = [
        c.path for c in changes
        if c.status != "rejected" and (is_binary(c.path, c.before) or is_binary(c.path, c.after))
    ]
    out_of_scope = [c.path for c in changes if normalize_path(c.path) not in allowed]

    results = [
        _result(PATH_TRAVERSAL, traversal),
        _result(SYMLINK_WRITE, symlinks),
        _result(BINARY_WRITE, binaries),
        _result(OUT_OF_SCOPE, out_of_scope),
        _syntax_gate(changes),
    ]

    failed = [r.gate for r in results if not r.passed]
    if failed:
        logger.info(f"[GATES] Failed: {', '.join(failed)}")
    return results


def first_failure(results: list[GateResult]) -> GateResult | None:
    """First failing gate in fixed order, non-retriable gates first."""
    for r in results:
        if not r.passed and not r.retriable:
            return r
    for r in results:
        if not r.passed:
            return r
    return None
