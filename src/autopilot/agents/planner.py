from __future__ import annotations

from autopilot.agents.base import LLMAgent


class PlannerAgent(LLMAgent):
    role = "planner"
    prompt_file = "planner.md"
    fallback_prompt = """
You are an intelligent task planner.
Break requests into small, executable tasks with dependencies and realistic
duration estimates. Always answer with a single JSON object.
""".strip()
