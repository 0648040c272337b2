import asyncio
import json
import shlex
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from autopilot.agents import PlannerAgent
from autopilot.backends.base import AgentBackend
from autopilot.commands import FileCommand, parse_command
from autopilot.errors import CommandParseError
from autopilot.execution import (
    ApprovalQueue,
    CommandRunner,
    SafetyClassifier,
    SnapshotStore,
    TaskExecutor,
)
from autopilot.models import DetailedTask, ExecutionStep, ProgressUpdate, RollbackStrategy, Task
from autopilot.planning import TaskPlanner

PYTHON = shlex.quote(sys.executable)


def _step(index: int, raw: str | None, level: str = "safe", **kwargs: Any) -> ExecutionStep:
    return ExecutionStep(
        id=f"t1-step-{index}",
        description=f"step {index}",
        command=parse_command(raw) if raw else None,
        raw_command=raw,
        safety_level=level,
        **kwargs,
    )


def _task(*steps: ExecutionStep, rollback: RollbackStrategy | None = None) -> DetailedTask:
    return DetailedTask(
        id="t1",
        name="Task one",
        description="exercise the executor",
        parent_id="t1",
        steps=list(steps),
        rollback_strategy=rollback,
    )


def _executor(
    tmp_path: Path,
    *,
    events: list[dict[str, Any]] | None = None,
    answer: bool | None = None,
    **kwargs: Any,
) -> TaskExecutor:
    def _on_approval(event: dict[str, Any]) -> None:
        if events is not None:
            events.append(event)
        if event["event"] == "approval_requested" and answer is not None:
            if answer:
                event["request"].approve()
            else:
                event["request"].deny()

    return TaskExecutor(
        CommandRunner(kill_grace_seconds=1.0),
        SafetyClassifier(None),
        SnapshotStore(persist=False, base_directory=tmp_path),
        ApprovalQueue(event_hook=_on_approval),
        working_directory=tmp_path,
        event_hook=events.append if events is not None else None,
        **kwargs,
    )


def test_file_steps_run_and_report_progress(tmp_path: Path) -> None:
    updates: list[ProgressUpdate] = []
    executor = _executor(tmp_path, on_progress=updates.append)
    task = _task(
        _step(0, "file:write notes/out.txt hello there", "caution"),
        _step(1, "file:read notes/out.txt"),
        _step(2, "file:exists notes/out.txt"),
        _step(3, None),
        _step(4, "internal:notify done"),
    )

    result = asyncio.run(executor.execute_task(task))

    steps = result.output["steps"]
    assert result.status == "success"
    assert (tmp_path / "notes" / "out.txt").read_text(encoding="utf-8") == "hello there"
    assert steps[1]["content"] == "hello there"
    assert steps[2]["exists"] is True
    assert steps[3]["simulated"] is True
    assert steps[4] == {
        "step_id": "t1-step-4",
        "executed": True,
        "command": "notify",
        "args": ["done"],
    }
    assert [update.progress for update in updates] == [0, 20, 40, 60, 80, 100]
    assert executor.running_task_ids == []


def test_shell_step_output_is_captured(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    task = _task(_step(0, "echo hello", "safe"))

    result = asyncio.run(executor.execute_task(task))

    assert result.status == "success"
    assert result.output["steps"][0]["stdout"] == "hello\n"
    assert result.output["steps"][0]["exit_code"] == 0


def test_unanswered_approval_skips_the_step_and_continues(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    executor = _executor(tmp_path, events=events, step_approval_timeout_seconds=0.05)
    task = _task(
        _step(0, "file:write gated.txt x", "caution", requires_approval=True),
        _step(1, "file:write open.txt y", "caution"),
    )

    result = asyncio.run(executor.execute_task(task))

    assert result.status == "success"
    assert result.output["steps"][0] == {"step_id": "t1-step-0", "skipped": True}
    assert not (tmp_path / "gated.txt").exists()
    assert (tmp_path / "open.txt").exists()
    names = [event["event"] for event in events]
    assert "approval_requested" in names
    assert "step_skipped" in names
    assert any(entry.level == "warning" for entry in result.logs)


def test_approved_step_runs(tmp_path: Path) -> None:
    executor = _executor(tmp_path, answer=True)
    task = _task(_step(0, "file:write gated.txt x", "caution", requires_approval=True))

    result = asyncio.run(executor.execute_task(task))

    assert result.status == "success"
    assert (tmp_path / "gated.txt").read_text(encoding="utf-8") == "x"


def test_safe_mode_requires_approval_for_risky_steps(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    executor = _executor(tmp_path, events=events, answer=False, safe_mode=True)
    (tmp_path / "present.txt").write_text("present", encoding="utf-8")
    task = _task(
        _step(0, "file:read present.txt", "safe"),
        _step(1, "file:write a.txt 1", "caution"),
    )

    result = asyncio.run(executor.execute_task(task))

    requested = [event for event in events if event["event"] == "approval_requested"]
    assert result.status == "success"
    assert [event["details"]["step_id"] for event in requested] == ["t1-step-1"]
    assert not (tmp_path / "a.txt").exists()


def test_failure_triggers_automatic_rollback(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    target = tmp_path / "config.ini"
    target.write_text("original", encoding="utf-8")
    executor = _executor(tmp_path, events=events)
    task = _task(
        _step(0, "file:write config.ini changed", "caution"),
        _step(1, "file:read does-not-exist.txt"),
        rollback=RollbackStrategy(steps=["file:write rollback-marker.txt done"], automatic=True),
    )

    result = asyncio.run(executor.execute_task(task))

    assert result.status == "failure"
    assert result.retriable is True
    assert "does-not-exist.txt" in result.error
    assert target.read_text(encoding="utf-8") == "original"
    assert (tmp_path / "rollback-marker.txt").read_text(encoding="utf-8") == "done"
    names = [event["event"] for event in events]
    assert names.index("rollback_started") < names.index("rollback_completed")
    assert "task_execution_failed" in names


def test_manual_rollback_strategy_leaves_changes_in_place(tmp_path: Path) -> None:
    target = tmp_path / "config.ini"
    target.write_text("original", encoding="utf-8")
    executor = _executor(tmp_path)
    task = _task(
        _step(0, "file:write config.ini changed", "caution"),
        _step(1, "file:read does-not-exist.txt"),
        rollback=RollbackStrategy(automatic=False),
    )

    result = asyncio.run(executor.execute_task(task))

    assert result.status == "failure"
    assert target.read_text(encoding="utf-8") == "changed"
    assert executor.snapshots.latest_for(target).content == "original"


def test_safety_violation_fails_without_retry(tmp_path: Path) -> None:
    (tmp_path / "build").mkdir()
    executor = _executor(tmp_path)
    task = _task(_step(0, "rm -rf build", "safe"))

    result = asyncio.run(executor.execute_task(task))

    assert result.status == "failure"
    assert result.retriable is False
    assert "exceeds the declared safe level" in result.error
    assert (tmp_path / "build").exists()


def test_nonzero_exit_is_a_retriable_failure(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    command = f"{PYTHON} -c 'import sys; sys.stderr.write(\"kaput\"); sys.exit(3)'"
    task = _task(_step(0, command, "caution"))

    result = asyncio.run(executor.execute_task(task))

    assert result.status == "failure"
    assert result.retriable is True
    assert "exit code 3" in result.error
    assert "kaput" in result.error


def test_abort_stops_running_command(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    task = _task(
        _step(0, f"{PYTHON} -c 'import time; time.sleep(30)'", "caution"),
        _step(1, "file:write after.txt x", "caution"),
    )

    async def _scenario():
        asyncio.get_running_loop().call_later(0.3, executor.abort)
        return await executor.execute_task(task)

    result = asyncio.run(_scenario())

    assert result.status == "failure"
    assert "aborted" in result.error
    assert result.retriable is False
    assert not (tmp_path / "after.txt").exists()


def test_dry_run_command_describes_changes(tmp_path: Path) -> None:
    executor = _executor(tmp_path)

    preview = asyncio.run(
        executor.dry_run_command(FileCommand(operation="write", path="out.txt", content="x"))
    )

    assert preview.simulated_output == "[DRY RUN] Would execute: file:write out.txt x"
    assert preview.estimated_changes == ["Would modify: out.txt"]
    assert preview.safety_level == "caution"
    assert not (tmp_path / "out.txt").exists()


class DetailBackend(AgentBackend):
    def __init__(self, steps: list[dict[str, Any]]) -> None:
        self.steps = steps

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        yield json.dumps({"steps": self.steps})


def test_unparsable_step_command_fails_the_task(tmp_path: Path) -> None:
    planner = TaskPlanner(
        PlannerAgent(
            DetailBackend(
                [
                    {
                        "description": "Write the note",
                        "command": "file:write \"note.txt don't panic",
                        "safetyLevel": "caution",
                    },
                    {"description": "Mark done", "command": "file:write done.txt ok"},
                ]
            )
        ),
        working_directory=str(tmp_path),
    )
    task = Task(id="t1", name="Note", description="write a note")
    events: list[dict[str, Any]] = []

    detailed = asyncio.run(planner.detail_task(task, []))
    result = asyncio.run(_executor(tmp_path, events=events).execute_task(detailed))

    assert detailed.steps[0].raw_command == "file:write \"note.txt don't panic"
    assert result.status == "failure"
    assert result.retriable is False
    assert isinstance(result.exception, CommandParseError)
    assert "t1-step-0" in result.error
    assert not (tmp_path / "done.txt").exists()
    assert "step_started" not in [event["event"] for event in events]
