from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from autopilot.models import ProcessStatus, utcnow

PORT_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"(?i)\bport\b[:\s]+(\d+)",
        r"Listening on[:\s]+.*:(\d+)",
        r"https?://[^:/\s]+:(\d+)",
        r":(\d{4,5})\b",
    )
)

logger = logging.getLogger(__name__)


def detect_port(text: str) -> int | None:
    for pattern in PORT_PATTERNS:
        match = pattern.search(text)
        if match:
            port = int(match.group(1))
            if 0 < port < 65536:
                return port
    return None


@dataclass(slots=True)
class BackgroundProcess:
    id: str
    command: str
    start_time: datetime = field(default_factory=utcnow)
    status: ProcessStatus = "running"
    exit_code: int | None = None
    pid: int | None = None
    port: int | None = None
    stdout: deque[str] = field(default_factory=lambda: deque(maxlen=500))
    stderr: deque[str] = field(default_factory=lambda: deque(maxlen=500))

    def output(self) -> str:
        return "".join(self.stdout) + "".join(self.stderr)


class BackgroundProcessRegistry:
    """Launches detached long-running commands and keeps track of them.

    Records stay in the registry after their process exits; call ``reap`` to
    drop finished entries.
    """

    def __init__(
        self,
        *,
        readiness_delay_seconds: float = 2.0,
        output_buffer_lines: int = 500,
        working_directory: str | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.readiness_delay_seconds = readiness_delay_seconds
        self.output_buffer_lines = output_buffer_lines
        self.working_directory = working_directory
        self.event_hook = event_hook
        self._records: dict[str, BackgroundProcess] = {}
        self._handles: dict[str, asyncio.subprocess.Process] = {}
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._readiness: dict[str, asyncio.Task[int | None]] = {}
        self._pumps: dict[str, list[asyncio.Task[None]]] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    async def launch(
        self,
        command: str,
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> BackgroundProcess:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd or self.working_directory,
            env={**os.environ, **env} if env else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        record = BackgroundProcess(
            id=f"bg-{uuid4().hex[:8]}",
            command=command,
            pid=process.pid,
            stdout=deque(maxlen=self.output_buffer_lines),
            stderr=deque(maxlen=self.output_buffer_lines),
        )
        self._records[record.id] = record
        self._handles[record.id] = process
        self._pumps[record.id] = [
            asyncio.create_task(self._capture(process.stdout, record.stdout)),
            asyncio.create_task(self._capture(process.stderr, record.stderr)),
        ]
        self._watchers[record.id] = asyncio.create_task(self._watch_exit(record, process))
        self._readiness[record.id] = asyncio.create_task(self._detect_readiness(record))
        self._emit(
            {
                "event": "background_started",
                "process_id": record.id,
                "pid": record.pid,
                "command": command,
            }
        )
        logger.info("Launched background process %s (pid %s): %s", record.id, record.pid, command)
        return record

    @staticmethod
    async def _capture(stream: asyncio.StreamReader | None, buffer: deque[str]) -> None:
        if stream is None:
            return
        async for raw_line in stream:
            buffer.append(raw_line.decode("utf-8", errors="replace"))

    async def _watch_exit(
        self, record: BackgroundProcess, process: asyncio.subprocess.Process
    ) -> None:
        exit_code = await process.wait()
        record.exit_code = exit_code
        if record.status == "running":
            record.status = "completed" if exit_code == 0 else "failed"
        self._emit(
            {
                "event": "background_exited",
                "process_id": record.id,
                "exit_code": exit_code,
                "status": record.status,
            }
        )

    async def _detect_readiness(self, record: BackgroundProcess) -> int | None:
        await asyncio.sleep(self.readiness_delay_seconds)
        if record.status == "killed":
            return None
        port = detect_port(record.output())
        if port is None:
            return None
        record.port = port
        self._emit({"event": "server_ready", "process_id": record.id, "port": port})
        return port

    async def wait_for_readiness(self, process_id: str) -> int | None:
        """Wait for the readiness scan of ``process_id`` and return the detected port."""
        task = self._readiness.get(process_id)
        if task is None:
            return None
        return await task

    async def wait(self, process_id: str, timeout: float | None = None) -> int | None:
        watcher = self._watchers.get(process_id)
        if watcher is None:
            return None
        await asyncio.wait_for(asyncio.shield(watcher), timeout=timeout)
        pumps = self._pumps.get(process_id, [])
        if pumps:
            await asyncio.wait(pumps, timeout=1.0)
        return self._records[process_id].exit_code

    def get(self, process_id: str) -> BackgroundProcess | None:
        return self._records.get(process_id)

    def list(self) -> list[BackgroundProcess]:
        return list(self._records.values())

    def kill(self, process_id: str) -> bool:
        record = self._records.get(process_id)
        process = self._handles.get(process_id)
        if record is None or process is None or process.returncode is not None:
            return False
        try:
            # the process leads its own session, so the group id equals its pid
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return False
        record.status = "killed"
        self._emit({"event": "background_killed", "process_id": process_id})
        return True

    def kill_all(self) -> int:
        return sum(1 for process_id in list(self._records) if self.kill(process_id))

    def reap(self) -> list[BackgroundProcess]:
        finished = [record for record in self._records.values() if record.status != "running"]
        for record in finished:
            self._records.pop(record.id, None)
            self._handles.pop(record.id, None)
            self._watchers.pop(record.id, None)
            self._readiness.pop(record.id, None)
            self._pumps.pop(record.id, None)
        return finished
