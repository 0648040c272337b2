from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from importlib import resources
from typing import Any

from autopilot.backends.base import AgentBackend

FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")
OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")

logger = logging.getLogger(__name__)


def extract_json_payload(text: str) -> dict[str, Any]:
    """Pull the JSON object out of a free-text LLM reply.

    Tries the outermost ``{...}`` span, then a fenced block, then the whole
    text. Raises ``ValueError`` when none of them decode to an object.
    """
    candidates: list[str] = []
    match = OBJECT_PATTERN.search(text)
    if match:
        candidates.append(match.group(0))
    fenced = FENCED_JSON_PATTERN.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    candidates.append(text.strip())

    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    raise ValueError("No JSON object found in response.")


@dataclass(slots=True)
class AgentResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def json(self) -> dict[str, Any]:
        return extract_json_payload(self.content)


class LLMAgent:
    role: str = "agent"
    prompt_file: str | None = None
    fallback_prompt: str = "You are a careful software automation assistant."

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("autopilot.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            logger.debug("Prompt %s not packaged, using fallback", self.prompt_file)
            return self.fallback_prompt.strip()

    async def run(self, instruction: str, context: dict[str, Any] | None = None) -> AgentResponse:
        run_context = dict(context or {})
        if self.model:
            run_context["model"] = self.model
        content = await self.backend.complete(
            system_prompt=self.system_prompt,
            user_prompt=instruction,
            context=run_context,
        )
        return AgentResponse(
            role=self.role,
            content=content,
            metadata={"instruction": instruction[:200], "model": self.model},
        )
