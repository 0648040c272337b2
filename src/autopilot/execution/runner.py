from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
import time
from collections.abc import Callable
from dataclasses import dataclass

SERVER_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"^(python|python3)\s+.+\.py",
        r"^flask\s+run",
        r"^django-admin\s+runserver",
        r"^python3?\s+manage\.py\s+runserver",
        r"^python3?\s+-m\s+(flask|http\.server|uvicorn)",
        r"^uvicorn\s+",
        r"^npm\s+(run\s+)?(start|dev|serve)",
        r"^yarn\s+(start|dev|serve)",
        r"^pnpm\s+(run\s+)?(start|dev|serve)",
        r"^node\s+.+\.js",
        r"^nodemon",
        r"^php\s+-S",
        r"^rails\s+server",
        r"^dotnet\s+run",
        r"^java\s+-jar",
        r"^go\s+run",
        r"^cargo\s+run",
        r"^http-server",
        r"^live-server",
        r"^webpack-dev-server",
    )
)

OutputCallback = Callable[[str], None]

logger = logging.getLogger(__name__)


def is_server_command(command: str) -> bool:
    """True for invocations that usually keep running (dev servers, watchers)."""
    text = command.strip()
    return any(pattern.search(text) for pattern in SERVER_PATTERNS)


@dataclass(slots=True)
class CommandResult:
    command: str
    stdout: str
    stderr: str
    exit_code: int | None
    duration: float
    timed_out: bool = False
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.aborted


class CommandRunner:
    def __init__(
        self,
        *,
        timeout_seconds: float = 60.0,
        kill_grace_seconds: float = 5.0,
        working_directory: str | None = None,
        dry_run: bool = False,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.working_directory = working_directory
        self.dry_run = dry_run
        self._processes: set[asyncio.subprocess.Process] = set()

    @staticmethod
    async def _pump(
        stream: asyncio.StreamReader | None,
        sink: list[str],
        callback: OutputCallback | None,
    ) -> None:
        if stream is None:
            return
        async for raw_line in stream:
            text = raw_line.decode("utf-8", errors="replace")
            sink.append(text)
            if callback is not None:
                callback(text)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except TimeoutError:
            logger.warning("Process %s ignored SIGTERM, sending SIGKILL", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        abort_event: asyncio.Event | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandResult:
        """Run ``command`` through the shell and wait for it.

        The process is terminated when ``timeout`` expires or ``abort_event``
        is set. Only the shell itself is signalled; grandchildren it spawned
        may outlive it.
        """
        if self.dry_run:
            return CommandResult(
                command=command,
                stdout=f"[dry-run] {command}\n",
                stderr="",
                exit_code=0,
                duration=0.0,
            )

        limit = self.timeout_seconds if timeout is None else timeout
        started = time.monotonic()
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd or self.working_directory,
            env={**os.environ, **env} if env else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._processes.add(process)
        stdout: list[str] = []
        stderr: list[str] = []

        async def _complete() -> None:
            await asyncio.gather(
                self._pump(process.stdout, stdout, on_stdout),
                self._pump(process.stderr, stderr, on_stderr),
            )
            await process.wait()

        completion = asyncio.ensure_future(_complete())
        waiters: set[asyncio.Future] = {completion}
        abort_waiter: asyncio.Future | None = None
        if abort_event is not None:
            abort_waiter = asyncio.ensure_future(abort_event.wait())
            waiters.add(abort_waiter)

        timed_out = aborted = False
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=limit, return_when=asyncio.FIRST_COMPLETED
            )
            if completion not in done:
                aborted = abort_waiter is not None and abort_waiter in done
                timed_out = not aborted
                await self._terminate(process)
                try:
                    await asyncio.wait_for(completion, timeout=self.kill_grace_seconds)
                except TimeoutError:
                    # a detached grandchild still holds the pipes open
                    logger.warning("Output of %r did not close after termination", command)
        finally:
            if abort_waiter is not None:
                abort_waiter.cancel()
            if not completion.done():
                completion.cancel()
            self._processes.discard(process)

        return CommandResult(
            command=command,
            stdout="".join(stdout),
            stderr="".join(stderr),
            exit_code=process.returncode,
            duration=time.monotonic() - started,
            timed_out=timed_out,
            aborted=aborted,
        )

    async def run_sequence(
        self,
        commands: list[str],
        *,
        stop_on_error: bool = True,
        **options,
    ) -> list[CommandResult]:
        results: list[CommandResult] = []
        for command in commands:
            result = await self.run(command, **options)
            results.append(result)
            if stop_on_error and not result.ok:
                break
        return results

    async def check_command(self, executable: str) -> bool:
        if not executable.strip():
            return False
        if self.dry_run:
            return True
        result = await self.run(
            f"command -v {shlex.quote(executable)} >/dev/null 2>&1", timeout=10.0
        )
        return result.exit_code == 0

    async def kill_all(self) -> None:
        await asyncio.gather(*(self._terminate(process) for process in list(self._processes)))
