"""
Adversarial reviewers.

Independent passes over the sandbox diff that look for defects the
attempt introduced. Two flavours share one schema: a general
correctness reviewer and a security-focused one. Which severities
block finalization is decided by `BlockingPolicy`, not by the model.
"""

from __future__ import annotations

from typing import Any, Iterable

from loguru import logger

from steward.agents import AgentContext, BaseAgent, parse_json_object
from steward.reliability import ModelResponse
from steward.state import ReviewFinding

SEVERITIES = ("critical", "warning", "suggestion", "nitpick")
_SEVERITY_ALIASES = {
    "high": "critical",
    "error": "critical",
    "medium": "warning",
    "major": "warning",
    "low": "suggestion",
    "minor": "suggestion",
    "info": "nitpick",
}

MAX_DIFF_CHARS = 30_000

REVIEW_SCHEMA = """{
  "summary": "one-line verdict",
  "findings": [
    {
      "severity": "critical|warning|suggestion|nitpick",
      "file": "path/to/file",
      "line": 42,
      "category": "correctness|security|performance|style",
      "title": "short title",
      "description": "what is wrong and why it matters",
      "recommended": true
    }
  ]
}"""


class BlockingPolicy:
    """Which findings prevent a Passed outcome."""

    def __init__(self, severities: Iterable[str] = ("critical", "warning")):
        self.severities = {s.lower() for s in severities}

    def is_blocking(self, finding: ReviewFinding) -> bool:
        return finding.status == "open" and finding.recommended and finding.severity in self.severities

    def blocking(self, findings: Iterable[ReviewFinding]) -> list[ReviewFinding]:
        return [f for f in findings if self.is_blocking(f)]


def is_probable_compile_error_false_positive(title: str) -> bool:
    """Reviewers often flag imports they cannot see; quick checks already settled those."""
    lower = title.lower()
    if "missing import" in lower or "not imported" in lower or "unresolved import" in lower:
        return True
    # "`symbol` undefined", but not "undefined behavior"
    return "`" in title and "undefined" in lower


def resolve_finding_file(finding_file: str, candidates: list[str]) -> str | None:
    """Map a reviewer's file reference onto one of the changed paths."""
    normalized = finding_file.replace("\\", "/").strip()
    if not normalized:
        return None
    if normalized in candidates:
        return normalized
    for path in candidates:
        if normalized.endswith(path):
            return path
    name = normalized.rsplit("/", 1)[-1]
    matches = [p for p in candidates if p.rsplit("/", 1)[-1] == name]
    return matches[0] if len(matches) == 1 else None


def _severity(value: Any) -> str:
    sev = str(value or "warning").strip().lower()
    sev = _SEVERITY_ALIASES.get(sev, sev)
    return sev if sev in SEVERITIES else "warning"


def _line(value: Any) -> int | None:
    try:
        line = int(value)
    except (TypeError, ValueError):
        return None
    return line if line > 0 else None


class ReviewerAgent(BaseAgent):
    role = "reviewer"
    focus = "correctness, regressions, edge cases, and whether the change actually implements the suggestion"

    @property
    def system_prompt(self) -> str:  # type: ignore[override]
        return f"""You are an adversarial code reviewer inside STEWARD.

Someone else wrote the change below. Assume it is wrong until proven
otherwise. Focus on {self.focus}.

Report only defects introduced or left unresolved by this change. Do not
report style preferences as critical or warning.

You MUST respond with valid JSON only. No markdown wrapping.

Output schema:
{REVIEW_SCHEMA}

Return an empty findings list if the change is sound.
"""

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        diff = context.extra.get("diff", "")
        if len(diff) > MAX_DIFF_CHARS:
            diff = diff[:MAX_DIFF_CHARS] + "\n... (diff truncated)"

        prior = context.extra.get("prior_findings") or []
        prior_text = ""
        if prior:
            prior_text = "\n\nPREVIOUSLY REPORTED (verify whether each is now resolved):\n" + "\n".join(
                f"- [{f.severity}] {f.location()}: {f.title}" for f in prior
            )

        checks = context.extra.get("quick_check_status", "unknown")
        user_content = f"""SUGGESTION {context.suggestion_id}
Summary: {context.summary}
Detail: {context.detail or '(none)'}

Quick checks: {checks}

DIFF:
{diff}{prior_text}

Review the change."""
        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: ModelResponse, context: AgentContext) -> dict[str, Any]:
        payload = parse_json_object(response.content, self.role)
        if payload is None:
            # An unreadable review is not a clean review.
            finding = ReviewFinding(
                id=f"{self.role}-r{context.extra.get('round', 1)}-unparsed",
                reviewer=self.role,
                severity="warning",
                title="Review response could not be parsed",
                description="The reviewer's reply was not valid JSON, so the change is unverified.",
                round=context.extra.get("round", 1),
            )
            return {"summary": "unparseable review", "findings": [finding], "parse_error": True}

        round_no = int(context.extra.get("round", 1))
        changed = list(context.extra.get("changed_files") or context.scope)
        checks_passed = context.extra.get("quick_check_status") == "passed"
        dismiss = bool(context.extra.get("dismiss_false_positives", True))

        findings: list[ReviewFinding] = []
        for index, raw in enumerate(payload.get("findings") or [], 1):
            if not isinstance(raw, dict):
                continue
            title = str(raw.get("title") or raw.get("description") or "")[:200]
            raw_file = str(raw.get("file") or "")
            finding = ReviewFinding(
                id=f"{self.role}-r{round_no}-{index}",
                reviewer=self.role,
                severity=_severity(raw.get("severity")),
                file=resolve_finding_file(raw_file, changed) or raw_file,
                line=_line(raw.get("line")),
                category=str(raw.get("category") or "correctness"),
                title=title,
                description=str(raw.get("description") or ""),
                recommended=bool(raw.get("recommended", True)),
                round=round_no,
            )
            if dismiss and checks_passed and is_probable_compile_error_false_positive(title):
                finding.status = "dismissed"
                logger.debug(f"[REVIEW] Dismissed probable false positive: {title}")
            findings.append(finding)

        logger.info(f"[REVIEW] {self.role} round {round_no}: {len(findings)} finding(s) via {response.model}")
        return {"summary": str(payload.get("summary", "")), "findings": findings, "parse_error": False}


class SecurityReviewerAgent(ReviewerAgent):
    role = "security_reviewer"
    focus = (
        "security: injection vectors, unsafe deserialization, secrets, path handling, "
        "permission changes, and unsafe shell or eval usage"
    )


REVIEWER_CLASSES: dict[str, type[ReviewerAgent]] = {
    "reviewer": ReviewerAgent,
    "security_reviewer": SecurityReviewerAgent,
}


def build_reviewer(role: str, router) -> ReviewerAgent:
    """Reviewer for a configured role; unknown roles get the general reviewer on that route."""
    cls = REVIEWER_CLASSES.get(role, ReviewerAgent)
    return cls(router, role=role)
