"""
STEWARD Agent Roster

Each agent is:
  - A system prompt
  - A structured input template
  - A constrained JSON output schema

Agents are stateless between calls. State lives in the Attempt record
owned by the orchestrator; agents only see the sandbox and the context
they are handed.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from steward.reliability import ModelResponse
from steward.router import Router

MAX_FILE_CHARS = 24_000


class AgentContext(BaseModel):
    """Shared context passed to every agent invocation."""
    suggestion_id: str
    summary: str
    detail: str = ""
    scope: list[str] = Field(default_factory=list)
    working_dir: str
    file_context: dict[str, str] = Field(default_factory=dict)  # path → current content
    extra: dict[str, Any] = Field(default_factory=dict)


class BaseAgent(ABC):
    """
    Base class for all STEWARD agents.

    Subclasses define:
      - role: str — maps to a routing fallback chain
      - system_prompt: str — agent contract
      - build_messages() — constructs the chat messages
      - parse_response() — extracts structured output
    """

    role: str = "unknown"
    system_prompt: str = "You are a helpful assistant."
    max_tokens: int = 4096

    def __init__(self, router: Router, role: str | None = None):
        self.router = router
        if role:
            self.role = role

    async def run(self, context: AgentContext, **kwargs) -> dict[str, Any]:
        """Execute the agent: build messages → call model → parse."""
        messages = self.build_messages(context)
        kwargs.setdefault("max_tokens", self.max_tokens)
        response = await self.router.complete(role=self.role, messages=messages, **kwargs)
        return self.parse_response(response, context)

    @abstractmethod
    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        """Build the message list for the LLM call."""
        ...

    @abstractmethod
    def parse_response(self, response: ModelResponse, context: AgentContext) -> dict[str, Any]:
        """Parse the LLM response into structured output."""
        ...

    def _system_msg(self) -> dict[str, str]:
        return {"role": "system", "content": self.system_prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def read_scope_files(root: Path, scope: list[str]) -> dict[str, str]:
    """Current text of each in-scope file, capped for prompt headroom."""
    files: dict[str, str] = {}
    for rel in scope:
        path = root / rel
        if path.is_symlink() or not path.is_file():
            files[rel] = "(file does not exist yet)"
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            files[rel] = "(binary file, not shown)"
            continue
        if len(text) > MAX_FILE_CHARS:
            text = text[:MAX_FILE_CHARS] + "\n... (truncated)"
        files[rel] = text
    return files


def format_file_context(files: dict[str, str]) -> str:
    return "".join(f"\n--- {name} ---\n{content}\n" for name, content in files.items())


def strip_markdown(content: str) -> str:
    """Remove ``` or ```json wrappers safely."""
    content = content.strip()
    if content.startswith("```"):
        content = re.sub(r"^```(?:json)?\s*|\s*```$", "", content)
    return content.strip()


def _extract_outer_json(text: str) -> str | None:
    """Extract first top-level JSON object using brace tracking."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    for i in range(start, len(text)):
        if text[i] == "{":
            depth += 1
        elif text[i] == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _balance_json(text: str) -> str | None:
    """Attempt to balance braces and brackets in truncated JSON."""
    repaired = text
    if repaired.count('"') % 2 != 0:
        repaired += '"'
    open_brackets = repaired.count("[") - repaired.count("]")
    if open_brackets > 0:
        repaired += "]" * open_brackets
    open_braces = repaired.count("{") - repaired.count("}")
    if open_braces > 0:
        repaired += "}" * open_braces
    return repaired if repaired != text else None


def parse_json_object(content: str, agent: str) -> dict[str, Any] | None:
    """
    Parse a model's JSON reply, recovering from fences, surrounding noise,
    and truncation. Returns None when nothing usable can be recovered.
    """
    content = strip_markdown(content)
    for candidate in (content, _extract_outer_json(content), _balance_json(content)):
        if not candidate:
            continue
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            if candidate is not content:
                logger.warning(f"[{agent.upper()}] Recovered malformed JSON reply")
            return parsed
    logger.error(f"[{agent.upper()}] JSON recovery failed")
    return None


def changes_from(payload: dict[str, Any] | None) -> list[dict]:
    """Pull a `changes` list out of a parsed reply, tolerating common shapes."""
    if not payload:
        return []
    changes = payload.get("changes")
    if changes is None and isinstance(payload.get("fix"), dict):
        changes = payload["fix"].get("changes")
    if not isinstance(changes, list):
        return []
    return [c for c in changes if isinstance(c, dict) and c.get("file")]


CHANGE_SCHEMA = """{
  "file": "path/to/file (must be one of the in-scope files)",
  "action": "modify|create|delete",
  "surgical_blocks": [
    {"search": "exact existing lines, with 2-3 lines of unchanged context", "replace": "new lines"}
  ],
  "content": "full file content (only for create, or when surgical blocks cannot express the change)"
}"""
