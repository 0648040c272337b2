from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from typing import Literal

from autopilot.errors import CommandParseError

FileOperation = Literal["read", "write", "delete", "exists"]
FILE_OPERATIONS: tuple[str, ...] = ("read", "write", "delete", "exists")

FILE_PREFIX = "file:"
INTERNAL_PREFIX = "internal:"

# path token, then the untouched remainder
FILE_ARGS = re.compile(r"""\s*('[^']*'|"(?:[^"\\]|\\.)*"|\S+)(?:\s+(.*))?\Z""", re.DOTALL)


@dataclass(slots=True, frozen=True)
class ShellCommand:
    command: str
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return "shell"


@dataclass(slots=True, frozen=True)
class FileCommand:
    operation: FileOperation
    path: str
    content: str = ""

    @property
    def kind(self) -> str:
        return "file"


@dataclass(slots=True, frozen=True)
class InternalCommand:
    name: str
    args: tuple[str, ...] = ()

    @property
    def kind(self) -> str:
        return "internal"


Command = ShellCommand | FileCommand | InternalCommand


def _split(text: str) -> list[str]:
    try:
        return shlex.split(text)
    except ValueError as exc:
        raise CommandParseError(f"Unbalanced quoting in command: {text!r}") from exc


def parse_command(raw: str, *, cwd: str | None = None) -> Command:
    """Turn a step command string into a typed command.

    ``file:<op> <path> [content...]`` becomes a FileCommand,
    ``internal:<name> [args...]`` an InternalCommand, anything else is run by
    the shell verbatim.
    """
    text = raw.strip()
    if not text:
        raise CommandParseError("Command is empty.")

    if text.startswith(FILE_PREFIX):
        head, _, rest = text[len(FILE_PREFIX) :].partition(" ")
        operation = head.strip()
        if operation not in FILE_OPERATIONS:
            raise CommandParseError(f"Unknown file operation: {operation or '<missing>'}")
        match = FILE_ARGS.match(rest)
        if match is None:
            raise CommandParseError(f"File operation '{operation}' needs a path.")
        path = _split(match.group(1))
        if len(path) != 1:
            raise CommandParseError(f"Unusable path in command: {text!r}")
        content = (match.group(2) or "") if operation == "write" else ""
        return FileCommand(
            operation=operation,  # type: ignore[arg-type]
            path=path[0],
            content=content,
        )

    if text.startswith(INTERNAL_PREFIX):
        parts = _split(text[len(INTERNAL_PREFIX) :])
        if not parts:
            raise CommandParseError("Internal command needs a name.")
        return InternalCommand(name=parts[0], args=tuple(parts[1:]))

    return ShellCommand(command=text, cwd=cwd)


def render_command(command: Command) -> str:
    if isinstance(command, ShellCommand):
        return command.command
    if isinstance(command, FileCommand):
        parts = [f"{FILE_PREFIX}{command.operation}", shlex.quote(command.path)]
        if command.content:
            parts.append(command.content)
        return " ".join(parts)
    return " ".join([f"{INTERNAL_PREFIX}{command.name}", *command.args])
