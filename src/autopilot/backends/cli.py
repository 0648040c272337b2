from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from autopilot.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

logger = logging.getLogger(__name__)


class CLIBackend(AgentBackend):
    """Runs an agent CLI (``claude`` or ``codex``) and streams its JSON events."""

    def __init__(
        self,
        name: str,
        binary: str | None = None,
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        if name not in {"claude", "codex"}:
            raise ValueError(f"Unsupported CLI backend: {name}")
        self.name = name
        self.binary = binary or name
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @staticmethod
    def render_prompt(user_prompt: str, context: dict[str, Any]) -> str:
        visible = {key: value for key, value in context.items() if not key.startswith("_")}
        if not visible:
            return user_prompt
        return (
            f"{user_prompt}\n\nContext JSON:\n"
            f"{json.dumps(visible, ensure_ascii=False, indent=2, default=str)}"
        )

    def build_command(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        prompt = self.render_prompt(user_prompt, context)
        model = context.get("model")
        if self.name == "codex":
            command = [
                self.binary,
                "exec",
                "--json",
                "-c",
                f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
            ]
            if isinstance(model, str) and model.strip():
                command.extend(["-m", model.strip()])
            command.append(prompt)
            return command

        command = [
            self.binary,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--append-system-prompt",
            system_prompt,
        ]
        if isinstance(model, str) and model.strip():
            command.extend(["--model", model.strip()])
        return command

    @staticmethod
    def extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        for key in ("delta", "result"):
            value = event.get(key)
            if isinstance(value, str):
                return value
        message = event.get("message")
        if isinstance(message, dict):
            return CLIBackend.extract_content(message)
        if isinstance(message, str):
            return message
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context)
        self._emit({"event": "llm_cli_start", "backend": self.name, "model": context.get("model")})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )

        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                yield line
                continue
            if not isinstance(event, dict):
                continue
            # claude repeats the assistant text in its final "result" event
            if self.name == "claude" and event.get("type") == "result":
                continue
            content = self.extract_content(event)
            if content:
                yield content

        if parse_buffer:
            logger.debug("Flushing unparsed %s output (%d bytes)", self.name, len(parse_buffer))
            yield parse_buffer

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit({"event": "llm_cli_exit", "backend": self.name, "exit_code": return_code})
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
