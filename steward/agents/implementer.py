"""
Implementer — turns a validated suggestion into a patch.

Writes nothing itself: it returns a `changes` list that the
orchestrator applies inside the sandbox.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from steward.agents import CHANGE_SCHEMA, AgentContext, BaseAgent, changes_from, format_file_context, parse_json_object
from steward.reliability import ModelResponse


class ImplementerAgent(BaseAgent):
    role = "implementer"
    max_tokens = 8192

    system_prompt = f"""You are the implementation engine inside STEWARD.

You receive ONE validated improvement suggestion and the current content of
the files it is allowed to touch. Produce the smallest correct change that
implements it.

You MUST respond with valid JSON only. No markdown wrapping.

Output schema:
{{
  "summary": "one sentence describing the change in plain language",
  "commit_message": "conventional commit message",
  "changes": [
{CHANGE_SCHEMA}
  ]
}}

CRITICAL RULES:
1. Only touch files listed under SCOPE. Any other path fails the attempt.
2. Prefer `surgical_blocks` for modifications. `search` must match the file exactly.
3. Never create symlinks or binary files.
4. Keep every changed file syntactically valid.
5. If tokens run out, prioritize completing the JSON structure.
"""

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        retry_note = ""
        previous = context.extra.get("previous_failure")
        if previous:
            retry_note = f"\n\nPREVIOUS TRY PRODUCED NO USABLE CHANGE: {previous}\nReturn at least one in-scope change."

        user_content = f"""SUGGESTION {context.suggestion_id}
Summary: {context.summary}

Detail:
{context.detail or '(none)'}

SCOPE (the only files you may touch):
{chr(10).join('- ' + p for p in context.scope)}

CURRENT FILES:
{format_file_context(context.file_context)}{retry_note}

Produce the JSON patch."""
        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: ModelResponse, context: AgentContext) -> dict[str, Any]:
        payload = parse_json_object(response.content, "implementer") or {}
        changes = changes_from(payload)
        logger.info(f"[IMPLEMENTER] {len(changes)} change(s) proposed via {response.model}")
        return {
            "summary": str(payload.get("summary", "")),
            "commit_message": str(payload.get("commit_message", "")),
            "changes": changes,
            "parse_error": not payload,
            "_model": response.model,
        }
