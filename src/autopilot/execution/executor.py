from __future__ import annotations

import asyncio
import logging
import shutil
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from autopilot.commands import Command, FileCommand, InternalCommand, ShellCommand, render_command
from autopilot.errors import (
    AbortRequested,
    ApprovalTimeout,
    CommandParseError,
    SnapshotError,
    TransientExecutionError,
)
from autopilot.execution.approvals import ApprovalQueue
from autopilot.execution.runner import CommandRunner
from autopilot.execution.safety import SafetyClassifier
from autopilot.execution.snapshots import SnapshotStore
from autopilot.models import (
    CommandIntent,
    DetailedTask,
    DryRunResult,
    ExecutionResult,
    ExecutionStep,
    LogEntry,
    ProgressUpdate,
    Snapshot,
    safety_rank,
)

STDERR_TAIL = 500

logger = logging.getLogger(__name__)


class TaskExecutor:
    """Runs the steps of one detailed task.

    The executor returns an ``ExecutionResult`` and never records it; the
    caller owns task state.
    """

    def __init__(
        self,
        runner: CommandRunner,
        safety: SafetyClassifier,
        snapshots: SnapshotStore,
        approvals: ApprovalQueue,
        *,
        safe_mode: bool = False,
        step_approval_timeout_seconds: float = 30.0,
        working_directory: Path | str | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
        on_progress: Callable[[ProgressUpdate], None] | None = None,
    ) -> None:
        self.runner = runner
        self.safety = safety
        self.snapshots = snapshots
        self.approvals = approvals
        self.safe_mode = safe_mode
        self.step_approval_timeout_seconds = step_approval_timeout_seconds
        self.working_directory = Path(working_directory or Path.cwd()).resolve()
        self.event_hook = event_hook
        self.on_progress = on_progress
        self._abort_events: dict[str, asyncio.Event] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def _progress(self, task_id: str, progress: int, step: str | None, message: str) -> None:
        if self.on_progress is not None:
            self.on_progress(
                ProgressUpdate(
                    task_id=task_id, progress=progress, current_step=step, message=message
                )
            )

    def abort(self, task_id: str | None = None) -> None:
        """Signal running tasks (all of them when ``task_id`` is None) to stop."""
        targets = [task_id] if task_id is not None else list(self._abort_events)
        for target in targets:
            event = self._abort_events.get(target)
            if event is not None:
                event.set()

    @property
    def running_task_ids(self) -> list[str]:
        return list(self._abort_events)

    def needs_approval(self, step: ExecutionStep) -> bool:
        if step.requires_approval:
            return True
        return self.safe_mode and safety_rank(step.safety_level) >= safety_rank("caution")

    async def execute_task(self, task: DetailedTask) -> ExecutionResult:
        abort_event = asyncio.Event()
        self._abort_events[task.id] = abort_event
        started = time.monotonic()
        logs: list[LogEntry] = []
        outputs: list[dict[str, Any]] = []
        taken: list[Snapshot] = []
        total = len(task.steps)
        self._emit({"event": "task_execution_started", "task_id": task.id, "steps": total})

        try:
            for index, step in enumerate(task.steps):
                if abort_event.is_set():
                    raise AbortRequested("Task execution aborted")
                self._progress(task.id, int(index / total * 100), step.id, step.description)
                if step.parse_error is not None:
                    raise CommandParseError(
                        f"Step {step.id} has an unusable command {step.raw_command!r}: "
                        f"{step.parse_error}"
                    )

                if self.needs_approval(step) and not await self._request_approval(task, step, logs):
                    logs.append(
                        LogEntry(
                            level="warning",
                            message=f"Step skipped without approval: {step.description}",
                            metadata={"step_id": step.id},
                        )
                    )
                    outputs.append({"step_id": step.id, "skipped": True})
                    self._emit({"event": "step_skipped", "task_id": task.id, "step_id": step.id})
                    continue
                if abort_event.is_set():
                    raise AbortRequested("Task execution aborted")

                self._emit({"event": "step_started", "task_id": task.id, "step_id": step.id})
                output = await self._execute_step(task, step, abort_event, taken)
                outputs.append({"step_id": step.id, **output})
                logs.append(
                    LogEntry(
                        level="info",
                        message=f"Step completed: {step.description}",
                        metadata={"step_id": step.id},
                    )
                )
                self._emit({"event": "step_completed", "task_id": task.id, "step_id": step.id})
            if abort_event.is_set():
                raise AbortRequested("Task execution aborted")
        except Exception as exc:
            logs.append(LogEntry(level="error", message=str(exc), metadata={"task_id": task.id}))
            self._emit(
                {
                    "event": "task_execution_failed",
                    "task_id": task.id,
                    "error": str(exc),
                    "retriable": getattr(exc, "retriable", False),
                }
            )
            strategy = task.rollback_strategy
            if strategy is not None and strategy.automatic and not isinstance(exc, AbortRequested):
                await self._rollback(task, taken, logs)
            return ExecutionResult(
                task_id=task.id,
                status="failure",
                output={"steps": outputs},
                error=str(exc),
                duration=time.monotonic() - started,
                logs=logs,
                exception=exc,
            )
        finally:
            self._abort_events.pop(task.id, None)

        self._progress(task.id, 100, None, "Task completed")
        return ExecutionResult(
            task_id=task.id,
            status="success",
            output={"steps": outputs},
            duration=time.monotonic() - started,
            logs=logs,
        )

    async def _request_approval(
        self, task: DetailedTask, step: ExecutionStep, logs: list[LogEntry]
    ) -> bool:
        request = self.approvals.open(
            "step",
            step.description,
            {
                "task_id": task.id,
                "step_id": step.id,
                "command": step.raw_command,
                "safety_level": step.safety_level,
            },
        )
        try:
            return await self.approvals.wait(request, self.step_approval_timeout_seconds)
        except ApprovalTimeout as exc:
            logs.append(LogEntry(level="warning", message=str(exc), metadata={"step_id": step.id}))
            return False

    def _resolve_path(self, raw: str) -> Path:
        path = Path(raw).expanduser()
        return path if path.is_absolute() else self.working_directory / path

    def _snapshot_targets(self, command: Command, intent: CommandIntent) -> list[Path]:
        if isinstance(command, FileCommand):
            return [self._resolve_path(command.path)]
        if isinstance(command, ShellCommand):
            return [self._resolve_path(item) for item in intent.target_resources if item.strip()]
        return []

    async def _execute_step(
        self,
        task: DetailedTask,
        step: ExecutionStep,
        abort_event: asyncio.Event,
        taken: list[Snapshot],
    ) -> dict[str, Any]:
        command = step.command
        if command is None:
            return {"simulated": True, "description": step.description}

        intent = await self.safety.check_safety(command, step.safety_level)
        risky = "danger" in (step.safety_level, intent.estimated_risk)
        if risky or intent.category in {"write", "delete"}:
            for path in self._snapshot_targets(command, intent):
                snapshot = self.snapshots.snapshot(path, reason=f"{task.id}:{step.id}")
                if snapshot is not None:
                    taken.append(snapshot)

        if isinstance(command, ShellCommand):
            return await self._run_shell(command, abort_event)
        if isinstance(command, FileCommand):
            return self._run_file(command)
        return self._run_internal(command)

    async def _run_shell(self, command: ShellCommand, abort_event: asyncio.Event) -> dict[str, Any]:
        result = await self.runner.run(
            command.command,
            cwd=command.cwd or str(self.working_directory),
            env=command.env or None,
            abort_event=abort_event,
        )
        if result.aborted:
            raise AbortRequested(f"Task execution aborted while running: {command.command}")
        if result.timed_out:
            raise TransientExecutionError(
                f"Command timed out after {result.duration:.1f}s: {command.command}"
            )
        if result.exit_code != 0:
            raise TransientExecutionError(
                f"Command failed with exit code {result.exit_code}: "
                f"{result.stderr.strip()[-STDERR_TAIL:]}"
            )
        return {
            "command": command.command,
            "stdout": result.stdout,
            "stderr": result.stderr,
            "exit_code": result.exit_code,
        }

    def _run_file(self, command: FileCommand) -> dict[str, Any]:
        path = self._resolve_path(command.path)
        try:
            if command.operation == "read":
                return {"path": str(path), "content": path.read_text(encoding="utf-8")}
            if command.operation == "write":
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(command.content, encoding="utf-8")
                return {"path": str(path), "written": len(command.content)}
            if command.operation == "delete":
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink()
                return {"path": str(path), "deleted": True}
            return {"path": str(path), "exists": path.exists()}
        except OSError as exc:
            raise TransientExecutionError(
                f"File {command.operation} failed for {path}: {exc}"
            ) from exc

    @staticmethod
    def _run_internal(command: InternalCommand) -> dict[str, Any]:
        return {"executed": True, "command": command.name, "args": list(command.args)}

    async def _rollback(
        self, task: DetailedTask, taken: list[Snapshot], logs: list[LogEntry]
    ) -> None:
        """Best-effort undo: rollback commands first, then snapshots newest first."""
        strategy = task.rollback_strategy
        self._emit({"event": "rollback_started", "task_id": task.id})
        for command in strategy.commands if strategy else []:
            text = render_command(command)
            try:
                await self.safety.check_safety(command, "danger")
                if isinstance(command, ShellCommand):
                    result = await self.runner.run(
                        command.command, cwd=command.cwd or str(self.working_directory)
                    )
                    if not result.ok:
                        raise TransientExecutionError(
                            f"exit code {result.exit_code}: {result.stderr.strip()[-STDERR_TAIL:]}"
                        )
                elif isinstance(command, FileCommand):
                    self._run_file(command)
            except Exception as exc:
                logger.error("Rollback command %r for task %s failed: %s", text, task.id, exc)
                logs.append(
                    LogEntry(level="error", message=f"Rollback command failed: {text}: {exc}")
                )

        for snapshot in reversed(taken):
            try:
                self.snapshots.rollback(snapshot.id)
            except SnapshotError as exc:
                logger.error("Restoring snapshot %s failed: %s", snapshot.id, exc)
                logs.append(LogEntry(level="error", message=str(exc)))
        self._emit({"event": "rollback_completed", "task_id": task.id})

    async def dry_run_command(self, command: Command) -> DryRunResult:
        intent = await self.safety.analyze_command_intent(command)
        changes: list[str] = []
        warnings: list[str] = []
        if intent.category in {"write", "delete"}:
            changes.extend(f"Would modify: {resource}" for resource in intent.target_resources)
        if intent.estimated_risk in {"danger", "forbidden"}:
            warnings.append(f"High risk command: {intent.purpose}")
        return DryRunResult(
            command=command,
            simulated_output=f"[DRY RUN] Would execute: {render_command(command)}",
            estimated_changes=changes,
            safety_level=intent.estimated_risk,
            warnings=warnings,
        )
