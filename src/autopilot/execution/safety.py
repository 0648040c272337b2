from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any

from autopilot.agents.safety import SafetyAnalystAgent
from autopilot.commands import Command, FileCommand, InternalCommand, render_command
from autopilot.errors import SafetyViolation
from autopilot.models import (
    INTENT_CATEGORIES,
    SAFETY_LEVELS,
    CommandIntent,
    IntentCategory,
    SafetyLevel,
    safety_rank,
)

DENYLIST = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"rm\s+-(?:[a-z]*r[a-z]*f|[a-z]*f[a-z]*r)[a-z]*\s+"
        r"(?:--no-preserve-root\s+)?/(?:\*)?(?:$|\s|;|&|\|)",
        r"format\s+[a-z]:",
        r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
        r">\s*/dev/(?:sd|nvme|hd)",
        r"dd\s+if=.*of=/dev/",
        r"\bmkfs(?:\.\w+)?\b",
        r"del\s+/s\s+/q",
    )
)

# first match wins, so destructive patterns come before their milder prefixes
QUICK_RULES: tuple[tuple[re.Pattern[str], IntentCategory, SafetyLevel, str], ...] = tuple(
    (re.compile(pattern), category, risk, purpose)
    for pattern, category, risk, purpose in (
        (
            r"^(rm\s+-\w*[rf]|del\s+/s|rmdir\s+/s|dd\s+if=|git\s+(reset\s+--hard|clean\s+-\w*f))",
            "delete",
            "danger",
            "Destructive operation",
        ),
        (
            r"^(sudo|chmod\s+-R|chown\s+-R)\b",
            "execute",
            "danger",
            "Privileged or recursive permission change",
        ),
        (r"^(rm|rmdir|git\s+rm)\b", "delete", "caution", "Remove files"),
        (r"^(curl|wget|ssh|scp|rsync)\b", "network", "caution", "Network access"),
        (
            r"^(touch|mkdir|cp|mv|git\s+(add|commit|checkout|switch|pull|clone|stash|tag)|"
            r"npm\s+(install|ci|i)\b|yarn(\s+(add|install)\b.*)?$|pip3?\s+install)\b",
            "write",
            "caution",
            "Create or modify files",
        ),
        (
            r"^(ls|dir|cat|type|echo|printf|pwd|head|tail|wc|grep|rg|find|which|whoami|date|"
            r"env|printenv|du|df|stat|file|tree|git\s+(status|log|diff|show|branch|remote)|"
            r"(node|npm|python3?|pip3?|go|cargo|java)\s+--?version)\b",
            "read",
            "safe",
            "Read information",
        ),
    )
)
SEGMENT_SEPARATOR = re.compile(r"\s*(?:&&|\|\||;|\|)\s*")
REDIRECT = re.compile(r"(?<![0-9&])>{1,2}\s*(?!&)\S")

logger = logging.getLogger(__name__)


def denylisted(command_text: str) -> re.Pattern[str] | None:
    for pattern in DENYLIST:
        if pattern.search(command_text):
            return pattern
    return None


def _unknown_intent() -> CommandIntent:
    return CommandIntent(purpose="Unknown command", category="execute", estimated_risk="caution")


class SafetyClassifier:
    """Classifies commands by intent and risk.

    Denylisted shell commands are forbidden before any other analysis. File
    and internal commands are classified locally; shell commands use the quick
    rules and fall back to the safety analyst agent.
    """

    def __init__(
        self,
        agent: SafetyAnalystAgent | None = None,
        *,
        use_llm: bool = True,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.agent = agent
        self.use_llm = use_llm and agent is not None
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    @staticmethod
    def quick_categorize(command_text: str) -> CommandIntent | None:
        segments = [part for part in SEGMENT_SEPARATOR.split(command_text.strip()) if part]
        if not segments:
            return None
        intents: list[CommandIntent] = []
        for segment in segments:
            for pattern, category, risk, purpose in QUICK_RULES:
                if not pattern.search(segment):
                    continue
                if REDIRECT.search(segment) and safety_rank(risk) < safety_rank("caution"):
                    intents.append(
                        CommandIntent(
                            purpose="Write command output to a file",
                            category="write",
                            estimated_risk="caution",
                        )
                    )
                else:
                    intents.append(
                        CommandIntent(purpose=purpose, category=category, estimated_risk=risk)
                    )
                break
            else:
                return None
        return max(intents, key=lambda intent: safety_rank(intent.estimated_risk))

    @staticmethod
    def classify_local(command: FileCommand | InternalCommand) -> CommandIntent:
        if isinstance(command, InternalCommand):
            return CommandIntent(
                purpose=f"Internal action {command.name}",
                category="execute",
                estimated_risk="safe",
            )
        if command.operation in {"read", "exists"}:
            return CommandIntent(
                purpose=f"Inspect {command.path}",
                category="read",
                target_resources=[command.path],
                estimated_risk="safe",
            )
        return CommandIntent(
            purpose=f"{command.operation.capitalize()} {command.path}",
            category=command.operation,  # type: ignore[arg-type]
            target_resources=[command.path],
            estimated_risk="caution",
        )

    async def analyze_command_intent(self, command: Command) -> CommandIntent:
        if isinstance(command, (FileCommand, InternalCommand)):
            return self.classify_local(command)

        text = command.command
        if denylisted(text):
            return CommandIntent(
                purpose="Destructive system operation",
                category="delete",
                estimated_risk="forbidden",
            )
        quick = self.quick_categorize(text)
        if quick is not None:
            return quick
        if not self.use_llm:
            return _unknown_intent()
        return await self._ask_agent(text)

    async def _ask_agent(self, command_text: str) -> CommandIntent:
        assert self.agent is not None
        try:
            response = await self.agent.run(
                "Analyze this command and determine its intent and safety level.\n"
                f"Command: {command_text}",
                {"phase": "safety"},
            )
            payload = response.json()
        except Exception as exc:
            logger.warning("Safety analysis failed for %r, assuming caution: %s", command_text, exc)
            return _unknown_intent()

        category = str(payload.get("category", "execute")).lower()
        if category not in INTENT_CATEGORIES:
            category = "execute"
        risk = str(payload.get("estimatedRisk", "caution")).lower()
        if risk not in SAFETY_LEVELS:
            risk = "caution"
        targets = payload.get("targetResources")
        alternatives = payload.get("alternatives")
        return CommandIntent(
            purpose=str(payload.get("purpose") or "Unknown"),
            category=category,  # type: ignore[arg-type]
            target_resources=[str(item) for item in targets] if isinstance(targets, list) else [],
            estimated_risk=risk,  # type: ignore[arg-type]
            alternatives=(
                [str(item) for item in alternatives] if isinstance(alternatives, list) else None
            ),
        )

    async def check_safety(self, command: Command, declared_level: SafetyLevel) -> CommandIntent:
        """Return the command's intent or raise ``SafetyViolation``.

        The denylist is consulted first and cannot be overridden by the agent's
        classification.
        """
        text = render_command(command)
        local = isinstance(command, (FileCommand, InternalCommand))
        if not local and denylisted(text) is not None:
            self._emit({"event": "safety_violation", "command": text, "reason": "denylist"})
            raise SafetyViolation(f"Command matches forbidden pattern: {text}")

        intent = await self.analyze_command_intent(command)
        if intent.estimated_risk == "forbidden":
            self._emit({"event": "safety_violation", "command": text, "reason": "forbidden"})
            raise SafetyViolation(f"Command is classified as forbidden: {text}")
        if safety_rank(intent.estimated_risk) > safety_rank(declared_level):
            self._emit(
                {
                    "event": "safety_violation",
                    "command": text,
                    "reason": "under_declared",
                    "classified": intent.estimated_risk,
                    "declared": declared_level,
                }
            )
            raise SafetyViolation(
                f"Command classified as {intent.estimated_risk} exceeds the declared "
                f"{declared_level} level: {text}"
            )
        return intent
