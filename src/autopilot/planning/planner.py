from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from typing import Any
from uuid import uuid4

from autopilot.agents.base import LLMAgent, extract_json_payload
from autopilot.commands import parse_command
from autopilot.errors import CommandParseError, PlanParseError
from autopilot.models import (
    PRIORITIES,
    SAFETY_LEVELS,
    DependencyGraph,
    DetailedTask,
    ExecutionStep,
    Plan,
    ResourceRequirement,
    Risk,
    RollbackStrategy,
    SubTask,
    Task,
    ValidationResult,
)

LONG_TASK_SECONDS = 3600
GRADES = ("high", "medium", "low")
RESOURCE_TYPES = ("file", "api", "permission", "tool")
INDEX_REFERENCE = re.compile(r"^(?:task[-_ ]?)?(\d+)$", re.IGNORECASE)

PLAN_INSTRUCTION = """
Analyze the user's request and break it down into manageable tasks.

Return a JSON object with the following structure:
{
  "tasks": [
    {
      "name": "Task name",
      "description": "Detailed description",
      "priority": "critical|high|medium|low",
      "estimatedDuration": 120,
      "dependencies": [0]
    }
  ],
  "estimatedTotalDuration": 120
}

Guidelines:
- Break complex work into smaller, actionable tasks
- Reference dependencies by the zero-based index of the task they wait for
- Estimate realistic durations in seconds
- Focus on clear, executable actions
""".strip()

DECOMPOSE_INSTRUCTION = """
Break down the following task into specific, actionable subtasks.

Return a JSON object:
{
  "subtasks": [
    {"name": "Subtask name", "description": "Specific action", "order": 1,
     "estimatedDuration": 60}
  ]
}

Each subtask should be a single, clear action, ordered logically.
""".strip()

DETAIL_INSTRUCTION = """
Create execution steps for the task below.

Return a JSON object:
{
  "steps": [
    {"description": "step description", "command": "command to run (optional)",
     "expectedOutput": "what to expect", "requiresApproval": false,
     "safetyLevel": "safe|caution|danger"}
  ],
  "resources": [{"type": "file|api|permission|tool", "name": "...", "required": true}],
  "risks": [{"type": "...", "description": "...", "probability": "high|medium|low",
             "impact": "high|medium|low", "mitigation": "..."}],
  "rollback": {"steps": ["command that undoes the task"], "automatic": false}
}
""".strip()

logger = logging.getLogger(__name__)


def _as_seconds(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


def _choice(value: Any, allowed: Iterable[str], default: str) -> Any:
    text = str(value if value is not None else default).strip().lower()
    return text if text in allowed else default


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None and str(item).strip()]


class TaskPlanner:
    """Turns requests into plans and plans into executable detail."""

    def __init__(
        self,
        agent: LLMAgent,
        *,
        working_directory: str | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.agent = agent
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    async def analyze_request(self, request: str) -> Plan:
        """Ask the planner agent for a plan.

        A reply without a decodable JSON object raises ``PlanParseError``; a
        decodable reply listing no tasks yields an empty ``Plan`` which
        ``validate_plan`` will reject.
        """
        plan_id = uuid4().hex[:12]
        response = await self.agent.run(
            f"{PLAN_INSTRUCTION}\n\nUser Request: {request}",
            {"phase": "planning"},
        )
        try:
            payload = response.json()
        except ValueError as exc:
            self._emit({"event": "plan_parse_failed", "plan_id": plan_id})
            raise PlanParseError(
                f"Planner response could not be parsed: {exc}",
                raw_response=response.content,
            ) from exc

        raw_tasks = payload.get("tasks", [])
        if not isinstance(raw_tasks, list):
            raise PlanParseError(
                "Planner response field 'tasks' is not a list.", raw_response=response.content
            )
        entries = [item for item in raw_tasks if isinstance(item, dict)]
        ids = [f"task-{plan_id}-{index}" for index in range(len(entries))]
        names = {
            str(item.get("name", "")).strip().lower(): ids[index]
            for index, item in enumerate(entries)
        }

        tasks: list[Task] = []
        for index, item in enumerate(entries):
            tasks.append(
                Task(
                    id=ids[index],
                    name=str(item.get("name", "")).strip(),
                    description=str(item.get("description", "")).strip(),
                    priority=_choice(item.get("priority"), PRIORITIES, "medium"),
                    estimated_duration=_as_seconds(item.get("estimatedDuration")),
                    dependencies=self._resolve_dependencies(item.get("dependencies"), ids, names),
                )
            )

        total = _as_seconds(payload.get("estimatedTotalDuration"))
        if total is None:
            total = sum(task.estimated_duration or 0 for task in tasks)
        plan = Plan(id=plan_id, user_request=request, tasks=tasks, estimated_total_duration=total)
        self._emit({"event": "plan_analyzed", "plan_id": plan_id, "tasks": len(tasks)})
        return plan

    @staticmethod
    def _resolve_dependencies(raw: Any, ids: list[str], names: dict[str, str]) -> list[str]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            raw = [raw]
        resolved: list[str] = []
        for reference in raw:
            if isinstance(reference, bool):
                continue
            if isinstance(reference, int):
                resolved.append(ids[reference] if 0 <= reference < len(ids) else str(reference))
                continue
            text = str(reference).strip()
            if not text:
                continue
            if text in ids:
                resolved.append(text)
                continue
            match = INDEX_REFERENCE.match(text)
            if match and int(match.group(1)) < len(ids):
                resolved.append(ids[int(match.group(1))])
                continue
            # unknown references are kept so validation can report them
            resolved.append(names.get(text.lower(), text))
        return resolved

    async def decompose_task(self, task: Task) -> list[SubTask]:
        try:
            response = await self.agent.run(
                f"{DECOMPOSE_INSTRUCTION}\n\nTask: {task.name}\nDescription: {task.description}",
                {"phase": "decomposition", "task_id": task.id},
            )
            payload = response.json()
        except Exception as exc:
            logger.warning("Failed to decompose task %s: %s", task.id, exc)
            self._emit({"event": "decompose_failed", "task_id": task.id, "error": str(exc)})
            return []

        raw_subtasks = payload.get("subtasks", [])
        if not isinstance(raw_subtasks, list):
            return []
        subtasks: list[SubTask] = []
        for index, item in enumerate(entry for entry in raw_subtasks if isinstance(entry, dict)):
            order = item.get("order")
            subtasks.append(
                SubTask(
                    id=f"{task.id}-sub-{index}",
                    parent_id=task.id,
                    name=str(item.get("name", "")).strip(),
                    description=str(item.get("description", "")).strip(),
                    order=order if type(order) is int else index,
                    priority=task.priority,
                    estimated_duration=_as_seconds(item.get("estimatedDuration")),
                )
            )
        return subtasks

    async def detail_task(self, task: Task, subtasks: list[SubTask]) -> DetailedTask:
        outline = "\n".join(
            f"{sub.order}. {sub.name}: {sub.description}"
            for sub in sorted(subtasks, key=lambda sub: sub.order)
        )
        instruction = f"{DETAIL_INSTRUCTION}\n\nTask: {task.name}\nDescription: {task.description}"
        if outline:
            instruction += f"\nSubtasks:\n{outline}"
        try:
            response = await self.agent.run(instruction, {"phase": "detailing", "task_id": task.id})
            payload = response.json()
        except Exception as exc:
            logger.warning("Failed to detail task %s: %s", task.id, exc)
            self._emit({"event": "detail_failed", "task_id": task.id, "error": str(exc)})
            return DetailedTask.from_task(task)

        return DetailedTask.from_task(
            task,
            steps=self._build_steps(task.id, payload.get("steps")),
            resources=self._build_resources(payload.get("resources")),
            risks=self._build_risks(payload.get("risks")),
            rollback_strategy=self._build_rollback(task.id, payload.get("rollback")),
        )

    def _build_steps(self, task_id: str, raw: Any) -> list[ExecutionStep]:
        if not isinstance(raw, list):
            return []
        steps: list[ExecutionStep] = []
        for index, item in enumerate(entry for entry in raw if isinstance(entry, dict)):
            raw_command = item.get("command")
            command = None
            parse_error = None
            if isinstance(raw_command, str) and raw_command.strip():
                try:
                    command = parse_command(raw_command, cwd=self.working_directory)
                except CommandParseError as exc:
                    logger.warning("Unusable command in step %s-step-%d: %s", task_id, index, exc)
                    parse_error = str(exc)
            else:
                raw_command = None
            steps.append(
                ExecutionStep(
                    id=f"{task_id}-step-{index}",
                    description=str(item.get("description", "")).strip(),
                    command=command,
                    raw_command=raw_command,
                    expected_output=item.get("expectedOutput"),
                    requires_approval=bool(item.get("requiresApproval", False)),
                    safety_level=_choice(item.get("safetyLevel", "safe"), SAFETY_LEVELS, "caution"),
                    parse_error=parse_error,
                )
            )
        return steps

    @staticmethod
    def _build_resources(raw: Any) -> list[ResourceRequirement]:
        if not isinstance(raw, list):
            return []
        resources: list[ResourceRequirement] = []
        for item in raw:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            resources.append(
                ResourceRequirement(
                    type=_choice(item.get("type"), RESOURCE_TYPES, "tool"),
                    name=str(item["name"]),
                    required=bool(item.get("required", True)),
                )
            )
        return resources

    @staticmethod
    def _build_risks(raw: Any) -> list[Risk]:
        if not isinstance(raw, list):
            return []
        risks: list[Risk] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            risks.append(
                Risk(
                    type=str(item.get("type", "general")),
                    description=str(item.get("description", "")),
                    probability=_choice(item.get("probability"), GRADES, "medium"),
                    impact=_choice(item.get("impact"), GRADES, "medium"),
                    mitigation=str(item.get("mitigation", "")),
                )
            )
        return risks

    @staticmethod
    def _build_rollback(task_id: str, raw: Any) -> RollbackStrategy:
        if not isinstance(raw, dict):
            return RollbackStrategy()
        try:
            return RollbackStrategy(
                steps=_as_str_list(raw.get("steps")),
                automatic=bool(raw.get("automatic", False)),
            )
        except CommandParseError as exc:
            logger.warning("Ignoring rollback strategy of %s: %s", task_id, exc)
            return RollbackStrategy()

    def validate_plan(self, plan: Plan) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        suggestions: list[str] = []

        if not plan.tasks:
            errors.append("Plan has no tasks")

        task_ids = plan.task_ids()
        for task in plan.tasks:
            if not task.name or not task.description:
                errors.append(f"Task {task.id} is missing required information")
            for dep in task.dependencies:
                if dep not in task_ids:
                    errors.append(f"Task {task.id} has invalid dependency: {dep}")
            if not task.estimated_duration:
                warnings.append(f"Task {task.id} has no duration estimate")
            elif task.estimated_duration > LONG_TASK_SECONDS:
                warnings.append(f"Task {task.id} has very long duration (>1 hour)")
                suggestions.append(f"Consider breaking down task {task.id} into smaller subtasks")

        if self.has_cycles(plan.tasks):
            errors.append("Plan contains circular dependencies")

        return ValidationResult(
            valid=not errors, errors=errors, warnings=warnings, suggestions=suggestions
        )

    @staticmethod
    def has_cycles(tasks: list[Task]) -> bool:
        white, gray, black = 0, 1, 2
        task_map = {task.id: task for task in tasks}
        color = dict.fromkeys(task_map, white)

        def visit(task_id: str) -> bool:
            color[task_id] = gray
            for dep in task_map[task_id].dependencies:
                if dep not in task_map:
                    continue
                if color[dep] == gray:
                    return True
                if color[dep] == white and visit(dep):
                    return True
            color[task_id] = black
            return False

        return any(color[task.id] == white and visit(task.id) for task in tasks)

    @staticmethod
    def build_dependency_graph(tasks: list[Task]) -> DependencyGraph:
        edges = [(dep, task.id) for task in tasks for dep in task.dependencies]
        return DependencyGraph(nodes=list(tasks), edges=edges)

    @staticmethod
    def get_execution_order(tasks: list[Task]) -> list[Task]:
        """Depth-first postorder: dependencies first, ties kept in input order.

        Priority is not used to break ties. Cycles terminate through the
        visited set; the resulting order is then only best effort.
        """
        visited: set[str] = set()
        result: list[Task] = []
        task_map = {task.id: task for task in tasks}

        def visit(task_id: str) -> None:
            if task_id in visited:
                return
            visited.add(task_id)
            task = task_map.get(task_id)
            if task is None:
                return
            for dep in task.dependencies:
                visit(dep)
            result.append(task)

        for task in tasks:
            visit(task.id)
        return result

    @classmethod
    def parallel_groups(cls, tasks: list[Task]) -> list[list[Task]]:
        """Group tasks by dependency depth; tasks sharing a group may run together."""
        known = {task.id for task in tasks}
        depth: dict[str, int] = {}
        for task in cls.get_execution_order(tasks):
            levels = [depth[dep] for dep in task.dependencies if dep in known and dep in depth]
            depth[task.id] = max(levels) + 1 if levels else 0
        groups: dict[int, list[Task]] = {}
        for task in tasks:
            groups.setdefault(depth[task.id], []).append(task)
        return [groups[level] for level in sorted(groups)]

    @classmethod
    def parallelizable_task_ids(cls, tasks: list[Task]) -> set[str]:
        return {
            task.id for group in cls.parallel_groups(tasks) if len(group) > 1 for task in group
        }

    @classmethod
    def critical_path(cls, tasks: list[Task]) -> list[Task]:
        if cls.has_cycles(tasks):
            return []
        task_map = {task.id: task for task in tasks}
        finish: dict[str, float] = {}
        previous: dict[str, str | None] = {}
        for task in cls.get_execution_order(tasks):
            best_dep: str | None = None
            best_finish = 0.0
            for dep in task.dependencies:
                if dep in finish and finish[dep] > best_finish:
                    best_dep, best_finish = dep, finish[dep]
            finish[task.id] = best_finish + (task.estimated_duration or 0)
            previous[task.id] = best_dep
        if not finish:
            return []
        cursor: str | None = max(finish, key=lambda task_id: finish[task_id])
        path: list[Task] = []
        while cursor is not None:
            path.append(task_map[cursor])
            cursor = previous[cursor]
        return list(reversed(path))

    def format_plan_for_display(self, plan: Plan) -> str:
        lines = [
            "Execution Plan",
            "=" * 50,
            f"Request: {plan.user_request}",
            f"Total Duration: {format_duration(plan.estimated_total_duration)}",
            f"Tasks: {len(plan.tasks)}",
            "",
        ]
        for index, task in enumerate(self.get_execution_order(plan.tasks), start=1):
            deps = f" [depends on: {', '.join(task.dependencies)}]" if task.dependencies else ""
            lines.append(f"{index}. [{task.priority}] {task.name}")
            lines.append(f"   {task.description}")
            lines.append(f"   Duration: {format_duration(task.estimated_duration or 0)}{deps}")
            lines.append("")
        return "\n".join(lines).rstrip() + "\n"


def format_duration(seconds: float) -> str:
    whole = int(seconds)
    if whole < 60:
        return f"{whole}s"
    if whole < 3600:
        return f"{whole // 60}m {whole % 60}s"
    return f"{whole // 3600}h {(whole % 3600) // 60}m"
