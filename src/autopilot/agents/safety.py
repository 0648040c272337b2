from __future__ import annotations

from autopilot.agents.base import LLMAgent


class SafetyAnalystAgent(LLMAgent):
    role = "safety_analyst"
    prompt_file = "safety.md"
    fallback_prompt = """
You classify shell commands by intent and risk before they run.
Answer with a single JSON object and never execute anything.
""".strip()
