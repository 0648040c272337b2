import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import pytest

from autopilot.agents import PlannerAgent
from autopilot.backends.base import AgentBackend, BackendExecutionError
from autopilot.commands import FileCommand, ShellCommand
from autopilot.errors import PlanParseError
from autopilot.models import Plan, Task
from autopilot.planning import TaskPlanner, format_duration


class ScriptedBackend(AgentBackend):
    """Answers each planning phase with a canned reply."""

    def __init__(self, replies: dict[str, Any]) -> None:
        self.replies = replies
        self.phases: list[str] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        phase = context.get("phase", "")
        self.phases.append(phase)
        reply = self.replies.get(phase)
        if isinstance(reply, Exception):
            raise reply
        yield reply if isinstance(reply, str) else json.dumps(reply)


def _planner(replies: dict[str, Any], events: list[dict[str, Any]] | None = None) -> TaskPlanner:
    agent = PlannerAgent(ScriptedBackend(replies))
    return TaskPlanner(agent, event_hook=events.append if events is not None else None)


def _task(task_id: str, deps: list[str] | None = None, duration: float | None = 60) -> Task:
    return Task(
        id=task_id,
        name=f"Task {task_id}",
        description=f"Do {task_id}",
        estimated_duration=duration,
        dependencies=deps or [],
    )


def test_analyze_request_builds_plan_with_resolved_dependencies() -> None:
    events: list[dict[str, Any]] = []
    planner = _planner(
        {
            "planning": {
                "tasks": [
                    {"name": "Install", "description": "npm install", "estimatedDuration": 30},
                    {
                        "name": "Test",
                        "description": "npm test",
                        "priority": "HIGH",
                        "estimatedDuration": 90,
                        "dependencies": [0],
                    },
                    {
                        "name": "Report",
                        "description": "Summarise",
                        "priority": "urgent",
                        "dependencies": ["Test", "task-0"],
                    },
                ]
            }
        },
        events,
    )

    plan = asyncio.run(planner.analyze_request("Install and test"))

    install, test, report = plan.tasks
    assert plan.user_request == "Install and test"
    assert install.id == f"task-{plan.id}-0"
    assert test.dependencies == [install.id]
    assert report.dependencies == [test.id, install.id]
    assert test.priority == "high"
    assert report.priority == "medium"
    assert report.estimated_duration is None
    assert plan.estimated_total_duration == 120
    assert all(task.status == "pending" for task in plan.tasks)
    assert events[-1] == {"event": "plan_analyzed", "plan_id": plan.id, "tasks": 3}


def test_analyze_request_keeps_unknown_dependencies_for_validation() -> None:
    planner = _planner(
        {"planning": {"tasks": [{"name": "A", "description": "a", "dependencies": ["ghost"]}]}}
    )

    plan = asyncio.run(planner.analyze_request("x"))
    result = planner.validate_plan(plan)

    assert plan.tasks[0].dependencies == ["ghost"]
    assert not result.valid
    assert f"Task {plan.tasks[0].id} has invalid dependency: ghost" in result.errors


def test_unparsable_reply_raises_plan_parse_error() -> None:
    events: list[dict[str, Any]] = []
    planner = _planner({"planning": "I cannot help with that."}, events)

    with pytest.raises(PlanParseError) as excinfo:
        asyncio.run(planner.analyze_request("x"))

    assert excinfo.value.raw_response == "I cannot help with that."
    assert events[-1]["event"] == "plan_parse_failed"


def test_empty_task_list_yields_plan_that_fails_validation() -> None:
    planner = _planner({"planning": {"tasks": []}})

    plan = asyncio.run(planner.analyze_request("nothing"))
    result = planner.validate_plan(plan)

    assert plan.tasks == []
    assert result.valid is False
    assert result.errors == ["Plan has no tasks"]


def test_validate_plan_reports_warnings_and_suggestions() -> None:
    planner = _planner({})
    plan = Plan(
        id="p",
        user_request="r",
        tasks=[
            _task("a", duration=None),
            _task("b", ["a"], duration=7200),
            Task(id="c", name="", description="missing name"),
        ],
    )

    result = planner.validate_plan(plan)

    assert result.errors == ["Task c is missing required information"]
    assert "Task a has no duration estimate" in result.warnings
    assert "Task b has very long duration (>1 hour)" in result.warnings
    assert result.suggestions == ["Consider breaking down task b into smaller subtasks"]


def test_cycles_are_detected_and_ordering_still_terminates() -> None:
    tasks = [_task("a", ["c"]), _task("b", ["a"]), _task("c", ["b"])]
    planner = _planner({})

    result = planner.validate_plan(Plan(id="p", user_request="r", tasks=tasks))
    order = TaskPlanner.get_execution_order(tasks)

    assert TaskPlanner.has_cycles(tasks) is True
    assert "Plan contains circular dependencies" in result.errors
    assert sorted(task.id for task in order) == ["a", "b", "c"]
    assert TaskPlanner.critical_path(tasks) == []


def test_execution_order_puts_dependencies_first() -> None:
    tasks = [_task("b", ["a"]), _task("a")]

    order = TaskPlanner.get_execution_order(tasks)

    assert [task.id for task in order] == ["a", "b"]


def test_execution_order_keeps_input_order_for_independent_tasks() -> None:
    tasks = [_task("z"), _task("y"), _task("x", ["z"])]

    assert [task.id for task in TaskPlanner.get_execution_order(tasks)] == ["z", "y", "x"]


def test_dependency_graph_edges_point_from_dependency_to_dependent() -> None:
    tasks = [_task("a"), _task("b", ["a"]), _task("c", ["a", "b"])]

    graph = TaskPlanner.build_dependency_graph(tasks)

    assert graph.nodes == tasks
    assert graph.edges == [("a", "b"), ("a", "c"), ("b", "c")]


def test_parallel_groups_and_critical_path() -> None:
    tasks = [
        _task("setup", duration=10),
        _task("backend", ["setup"], duration=100),
        _task("frontend", ["setup"], duration=40),
        _task("deploy", ["backend", "frontend"], duration=5),
    ]

    groups = TaskPlanner.parallel_groups(tasks)
    path = TaskPlanner.critical_path(tasks)

    assert [[task.id for task in group] for group in groups] == [
        ["setup"],
        ["backend", "frontend"],
        ["deploy"],
    ]
    assert TaskPlanner.parallelizable_task_ids(tasks) == {"backend", "frontend"}
    assert [task.id for task in path] == ["setup", "backend", "deploy"]


def test_decompose_task_orders_subtasks_and_survives_failures() -> None:
    planner = _planner(
        {
            "decomposition": {
                "subtasks": [
                    {"name": "First", "description": "one", "order": 2},
                    {"name": "Second", "description": "two", "estimatedDuration": "15"},
                ]
            }
        }
    )
    task = _task("t1")

    subtasks = asyncio.run(planner.decompose_task(task))
    broken = _planner({"decomposition": BackendExecutionError("down", retriable=False)})

    assert [sub.id for sub in subtasks] == ["t1-sub-0", "t1-sub-1"]
    assert [sub.order for sub in subtasks] == [2, 1]
    assert subtasks[1].estimated_duration == 15.0
    assert all(sub.parent_id == "t1" for sub in subtasks)
    assert asyncio.run(broken.decompose_task(task)) == []


def test_detail_task_parses_steps_resources_risks_and_rollback() -> None:
    planner = _planner(
        {
            "detailing": {
                "steps": [
                    {"description": "List files", "command": "ls -la", "safetyLevel": "safe"},
                    {
                        "description": "Write config",
                        "command": "file:write app.cfg debug=1",
                        "requiresApproval": True,
                        "safetyLevel": "caution",
                    },
                    {"description": "Think about it"},
                    {
                        "description": "Bad quoting",
                        "command": 'file:write "oops',
                        "safetyLevel": "??",
                    },
                ],
                "resources": [{"type": "tool", "name": "npm"}, {"type": "weird", "name": "x"}],
                "risks": [{"type": "data", "description": "overwrite", "impact": "high"}],
                "rollback": {"steps": ["file:delete app.cfg"], "automatic": True},
            }
        }
    )
    task = _task("t1")

    detailed = asyncio.run(planner.detail_task(task, []))

    listing, write, think, bad = detailed.steps
    assert detailed.id == "t1"
    assert listing.id == "t1-step-0"
    assert listing.command == ShellCommand(command="ls -la")
    assert isinstance(write.command, FileCommand)
    assert write.requires_approval is True
    assert write.safety_level == "caution"
    assert think.command is None
    assert bad.command is None
    assert bad.raw_command == 'file:write "oops'
    assert "Unbalanced quoting" in bad.parse_error
    assert think.parse_error is None and write.parse_error is None
    assert bad.safety_level == "caution"
    assert [(res.type, res.name) for res in detailed.resources] == [("tool", "npm"), ("tool", "x")]
    assert detailed.risks[0].impact == "high"
    assert detailed.risks[0].probability == "medium"
    assert detailed.rollback_strategy is not None
    assert detailed.rollback_strategy.automatic is True
    assert detailed.rollback_strategy.commands == [FileCommand(operation="delete", path="app.cfg")]


def test_detail_task_falls_back_to_bare_task_on_unusable_reply() -> None:
    planner = _planner({"detailing": "no plan today"})

    detailed = asyncio.run(planner.detail_task(_task("t1", ["t0"]), []))

    assert detailed.steps == []
    assert detailed.dependencies == ["t0"]
    assert detailed.rollback_strategy is None


def test_format_plan_for_display_lists_tasks_in_execution_order() -> None:
    planner = _planner({})
    plan = Plan(
        id="p",
        user_request="Ship it",
        tasks=[_task("b", ["a"], duration=90), _task("a", duration=30)],
        estimated_total_duration=120,
    )

    rendered = planner.format_plan_for_display(plan)

    assert "Request: Ship it" in rendered
    assert "Total Duration: 2m 0s" in rendered
    assert rendered.index("Task a") < rendered.index("Task b")
    assert "[depends on: a]" in rendered


def test_format_duration() -> None:
    assert format_duration(42) == "42s"
    assert format_duration(125) == "2m 5s"
    assert format_duration(7320) == "2h 2m"
