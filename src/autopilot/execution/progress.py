from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from autopilot.models import (
    PRIORITIES,
    DependencyGraph,
    ExecutionResult,
    Plan,
    ProgressUpdate,
    Task,
)
from autopilot.planning.planner import format_duration

BAR_WIDTH = 20


def progress_bar_units(percentage: float, width: int = BAR_WIDTH) -> int:
    clamped = min(max(percentage, 0), 100)
    return int(clamped / 100 * width)


def render_bar(percentage: float, width: int = BAR_WIDTH) -> str:
    filled = progress_bar_units(percentage, width)
    return f"[{'#' * filled}{'.' * (width - filled)}] {int(min(max(percentage, 0), 100))}%"


@dataclass(slots=True)
class TaskProgress:
    task_id: str
    name: str
    started_at: float = field(default_factory=time.monotonic)
    percentage: int = 0
    current_step: str | None = None
    message: str | None = None
    finished_at: float | None = None
    outcome: str | None = None

    def elapsed(self, now: float | None = None) -> float:
        end = self.finished_at if self.finished_at is not None else (now or time.monotonic())
        return max(0.0, end - self.started_at)


class ProgressTracker:
    """Aggregates progress reported by the flow.

    Graph data (dependencies, critical path, parallel groups) is handed in by
    the planner; the tracker never computes it.
    """

    def __init__(self) -> None:
        self.tasks: dict[str, TaskProgress] = {}
        self.total_tasks = 0
        self.current_phase: str | None = None
        self.graph: DependencyGraph | None = None
        self.critical_path: list[Task] = []
        self.parallel_groups: list[list[Task]] = []

    def set_phase(self, phase: str) -> None:
        self.current_phase = phase

    def set_total_tasks(self, count: int) -> None:
        self.total_tasks = count

    def set_dependency_data(
        self,
        graph: DependencyGraph,
        critical_path: list[Task],
        parallel_groups: list[list[Task]],
    ) -> None:
        self.graph = graph
        self.critical_path = list(critical_path)
        self.parallel_groups = [list(group) for group in parallel_groups]
        self.total_tasks = len(graph.nodes)

    def start_task(self, task_id: str, name: str | None = None) -> TaskProgress:
        entry = TaskProgress(task_id=task_id, name=name or f"Task {task_id}")
        self.tasks[task_id] = entry
        return entry

    def update_progress(self, update: ProgressUpdate) -> TaskProgress:
        entry = self.tasks.get(update.task_id) or self.start_task(update.task_id)
        entry.percentage = min(max(int(update.progress), 0), 100)
        if update.current_step is not None:
            entry.current_step = update.current_step
        if update.message is not None:
            entry.message = update.message
        return entry

    def complete_task(self, task_id: str, outcome: str) -> TaskProgress:
        entry = self.tasks.get(task_id) or self.start_task(task_id)
        entry.finished_at = time.monotonic()
        entry.outcome = outcome
        if outcome == "success":
            entry.percentage = 100
        return entry

    def elapsed(self, task_id: str) -> float:
        entry = self.tasks.get(task_id)
        return entry.elapsed() if entry else 0.0

    def describe(self, task_id: str) -> str:
        entry = self.tasks.get(task_id)
        if entry is None:
            return f"{task_id}: not started"
        step = f" - {entry.current_step}" if entry.current_step else ""
        return (
            f"{entry.name} {render_bar(entry.percentage)} "
            f"({format_duration(entry.elapsed())}){step}"
        )

    def overall_progress(self) -> int:
        if not self.total_tasks:
            return 0
        finished = sum(1 for entry in self.tasks.values() if entry.outcome is not None)
        return round(finished / self.total_tasks * 100)

    @staticmethod
    def plan_summary(plan: Plan) -> dict[str, Any]:
        by_priority = {priority: 0 for priority in PRIORITIES}
        for task in plan.tasks:
            by_priority[task.priority] = by_priority.get(task.priority, 0) + 1
        estimated = sum(task.estimated_duration or 0 for task in plan.tasks)
        return {
            "total_tasks": len(plan.tasks),
            "by_priority": by_priority,
            "estimated_duration": estimated,
            "estimated_duration_text": format_duration(estimated),
        }

    def timeline(self, tasks: list[Task]) -> list[dict[str, Any]]:
        """Estimated schedule; tasks in one parallel group share a start offset."""
        groups = self.parallel_groups or [[task] for task in tasks]
        wanted = {task.id for task in tasks}
        entries: list[dict[str, Any]] = []
        offset = 0.0
        for group in groups:
            members = [task for task in group if task.id in wanted]
            if not members:
                continue
            for task in members:
                entries.append(
                    {
                        "task_id": task.id,
                        "name": task.name,
                        "start": offset,
                        "duration": task.estimated_duration or 0,
                        "critical": any(item.id == task.id for item in self.critical_path),
                    }
                )
            offset += max(task.estimated_duration or 0 for task in members)
        return entries

    @staticmethod
    def completion_summary(results: list[ExecutionResult]) -> dict[str, Any]:
        skipped = sum(
            1
            for result in results
            if isinstance(result.output, dict) and result.output.get("skipped") is True
        )
        succeeded = sum(1 for result in results if result.status == "success") - skipped
        failed = sum(1 for result in results if result.status != "success")
        total = len(results)
        total_duration = sum(result.duration for result in results)
        return {
            "total": total,
            "succeeded": succeeded,
            "failed": failed,
            "skipped": skipped,
            "success_rate": round((succeeded + skipped) / total * 100) if total else 0,
            "total_duration": total_duration,
            "total_duration_text": format_duration(total_duration),
        }
