"""
Repairer — invoked only when quick checks fail or a change stops parsing.

Laser-focused: produce the minimal in-scope fix for the exact failure.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from steward.agents import CHANGE_SCHEMA, AgentContext, BaseAgent, changes_from, format_file_context, parse_json_object
from steward.reliability import ModelResponse

MAX_ERROR_CHARS = 2_000


class RepairAgent(BaseAgent):
    role = "repairer"

    system_prompt = f"""You are the repair engine inside STEWARD.

You are invoked ONLY when a change broke the build, the tests, or the
syntax of a file. Your job is to produce a MINIMAL, surgically precise fix.

You MUST respond with valid JSON only. No markdown wrapping.

Output schema:
{{
  "diagnosis": "Short summary of what failed",
  "root_cause": "The specific line or logic error",
  "changes": [
{CHANGE_SCHEMA}
  ]
}}

CRITICAL RULES:
1. Fix the EXACT failure. Do not refactor unrelated code.
2. Only touch files listed under SCOPE.
3. The `search` string must EXACTLY match the current file, including whitespace.
4. If tokens run out, prioritize completing the JSON structure.
"""

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        error_output = (context.extra.get("error_output") or "")[-MAX_ERROR_CHARS:]
        command = context.extra.get("command") or "syntax check"
        attempt = context.extra.get("attempt", 1)

        previous = context.extra.get("previous_diagnoses") or []
        prev_text = ""
        if previous:
            prev_text = "\n\nFAILED PREVIOUS REPAIRS:\n" + "\n".join(
                f"Repair {i}: {d}" for i, d in enumerate(previous[-2:], 1)
            )

        user_content = f"""FAILURE DETECTED (repair {attempt})

Suggestion: {context.summary}
SCOPE: {', '.join(context.scope)}

FAILED CHECK: {command}

ERROR LOG (TRUNCATED):
{error_output}
{prev_text}

FILES:
{format_file_context(context.file_context)}

Produce the minimal JSON fix."""
        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: ModelResponse, context: AgentContext) -> dict[str, Any]:
        payload = parse_json_object(response.content, "repairer") or {}
        diagnosis = str(payload.get("diagnosis") or "Unknown")
        logger.info(f"[REPAIRER] Diagnosis: {diagnosis[:60]}")
        return {
            "diagnosis": diagnosis,
            "root_cause": str(payload.get("root_cause", "")),
            "changes": changes_from(payload),
            "parse_error": not payload,
        }
