"""
Fixer — resolves blocking review findings, strictly inside scope.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from steward.agents import CHANGE_SCHEMA, AgentContext, BaseAgent, changes_from, format_file_context, parse_json_object
from steward.reliability import ModelResponse


class FixerAgent(BaseAgent):
    role = "fixer"

    system_prompt = f"""You are the auto-fix engine inside STEWARD.

A reviewer found blocking problems in a change. Resolve EVERY listed
finding with the smallest possible edit. Do not start new work.

You MUST respond with valid JSON only. No markdown wrapping.

Output schema:
{{
  "summary": "what you changed",
  "addressed": ["finding ids you resolved"],
  "changes": [
{CHANGE_SCHEMA}
  ]
}}

CRITICAL RULES:
1. Only touch files listed under SCOPE.
2. Keep every changed file syntactically valid and the build green.
3. `search` strings must match the current file exactly.
"""

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        findings = context.extra.get("findings") or []
        listed = "\n".join(
            f"- {f.id} [{f.severity}] {f.location()}: {f.title}\n  {f.description}" for f in findings
        )
        user_content = f"""SUGGESTION {context.suggestion_id}
Summary: {context.summary}
SCOPE: {', '.join(context.scope)}

BLOCKING FINDINGS (fix {context.extra.get('attempt', 1)}):
{listed}

CURRENT FILES:
{format_file_context(context.file_context)}

Produce the JSON fix."""
        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: ModelResponse, context: AgentContext) -> dict[str, Any]:
        payload = parse_json_object(response.content, "fixer") or {}
        addressed = [str(a) for a in payload.get("addressed") or []]
        changes = changes_from(payload)
        logger.info(f"[FIXER] {len(changes)} change(s), addressed {addressed or 'unspecified'}")
        return {
            "summary": str(payload.get("summary", "")),
            "addressed": addressed,
            "changes": changes,
            "parse_error": not payload,
        }
