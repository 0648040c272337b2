from autopilot.agents.base import AgentResponse, LLMAgent, extract_json_payload
from autopilot.agents.planner import PlannerAgent
from autopilot.agents.safety import SafetyAnalystAgent

__all__ = [
    "AgentResponse",
    "LLMAgent",
    "PlannerAgent",
    "SafetyAnalystAgent",
    "extract_json_payload",
]
