"""Tests for the safety gates."""

import pytest

from steward.gates import (
    BINARY_WRITE,
    GATE_ORDER,
    OUT_OF_SCOPE,
    PATH_TRAVERSAL,
    SYMLINK_WRITE,
    SYNTAX_SAFETY,
    FileChange,
    evaluate,
    first_failure,
    is_binary,
    parses,
)


def _modified(path, after=b"x = 1\n", before=b"x = 0\n", **flags):
    return FileChange(path=path, status="modified", before=before, after=after, **flags)


def _by_gate(results):
    return {r.gate: r for r in results}


class TestEvaluate:
    def test_clean_change_passes_every_gate_in_order(self):
        results = evaluate(["src/app.py"], [_modified("src/app.py")])
        assert [r.gate for r in results] == list(GATE_ORDER)
        assert all(r.passed for r in results)
        assert first_failure(results) is None

    def test_out_of_scope(self):
        results = _by_gate(evaluate(["src/app.py"], [_modified("src/other.py")]))
        assert not results[OUT_OF_SCOPE].passed
        assert results[OUT_OF_SCOPE].reason_code == OUT_OF_SCOPE
        assert "src/other.py" in results[OUT_OF_SCOPE].evidence

    def test_scope_paths_are_normalized(self):
        results = _by_gate(evaluate(["./src/app.py"], [_modified("src/./app.py")]))
        assert results[OUT_OF_SCOPE].passed

    @pytest.mark.parametrize("path", [
        "../outside.py", "/etc/passwd", "src/../../x.py", "C:/win.py", ".git", ".git/config", "./.GIT/HEAD",
    ])
    def test_path_traversal(self, path):
        results = _by_gate(evaluate([path], [_modified(path)]))
        assert not results[PATH_TRAVERSAL].passed

    def test_escape_flag_from_resolution(self):
        change = _modified("src/app.py", escapes_root=True)
        assert not _by_gate(evaluate(["src/app.py"], [change]))[PATH_TRAVERSAL].passed

    def test_symlink_write(self):
        changes = [_modified("src/link.py", is_symlink=True), _modified("lib/x.py", traverses_symlink=True)]
        result = _by_gate(evaluate(["src/link.py", "lib/x.py"], changes))[SYMLINK_WRITE]
        assert not result.passed
        assert "lib/x.py" in result.evidence and "src/link.py" in result.evidence

    def test_binary_write_by_extension_and_content(self):
        changes = [
            FileChange(path="logo.png", status="added", after=b"not really png"),
            FileChange(path="data.txt", status="modified", before=b"a", after=b"\x00\x01\x02"),
        ]
        result = _by_gate(evaluate(["logo.png", "data.txt"], changes))[BINARY_WRITE]
        assert not result.passed

    def test_rejected_binary_is_not_a_binary_write(self):
        change = FileChange(path="logo.png", status="rejected", note="binary")
        assert _by_gate(evaluate(["logo.png"], [change]))[BINARY_WRITE].passed

    def test_non_retriable_failure_wins_over_syntax(self):
        changes = [_modified("src/app.py", after=b"def f(:\n"), _modified("src/extra.py")]
        failure = first_failure(evaluate(["src/app.py"], changes))
        assert failure.gate == OUT_OF_SCOPE
        assert not failure.retriable

    def test_is_pure(self):
        changes = [_modified("src/app.py"), _modified("src/other.py")]
        assert evaluate(["src/app.py"], changes) == evaluate(["src/app.py"], changes)


class TestSyntaxGate:
    def test_regression_fails_and_is_retriable(self):
        result = _by_gate(evaluate(["a.py"], [_modified("a.py", after=b"def f(:\n")]))[SYNTAX_SAFETY]
        assert not result.passed
        assert result.retriable
        assert first_failure([result]).gate == SYNTAX_SAFETY

    def test_already_broken_file_is_not_a_regression(self):
        change = _modified("a.py", before=b"def f(:\n", after=b"def g(:\n")
        assert _by_gate(evaluate(["a.py"], [change]))[SYNTAX_SAFETY].passed

    def test_deleted_file_is_skipped(self):
        change = FileChange(path="a.py", status="deleted", before=b"x = 1\n")
        assert _by_gate(evaluate(["a.py"], [change]))[SYNTAX_SAFETY].passed

    @pytest.mark.parametrize("path,good,bad", [
        ("cfg.json", b'{"a": 1}', b'{"a": 1'),
        ("cfg.toml", b'a = 1\n', b'a = \n'),
        ("cfg.yaml", b'a: 1\n', b'a: [1\n'),
    ])
    def test_builtin_parsers(self, path, good, bad):
        assert parses(path, good) is True
        assert parses(path, bad) is False

    def test_plain_text_always_parses(self):
        assert parses("README.md", b"# anything {[(") is True


class TestBinarySniff:
    def test_utf8_text_is_not_binary(self):
        assert not is_binary("notes.txt", "héllo wörld".encode())

    def test_invalid_utf8_is_binary(self):
        assert is_binary("blob.dat", b"\xff\xfe\xfd" + b"a" * 100)

    def test_empty_file_is_not_binary(self):
        assert not is_binary("empty.txt", b"")
