from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from autopilot.errors import TaskStateError
from autopilot.models import (
    SATISFIED_STATUSES,
    TERMINAL_STATUSES,
    ExecutionResult,
    Plan,
    ProgressUpdate,
    Task,
    TaskStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class TaskManager:
    """Single owner of plan, task and result state.

    Only this class mutates task statuses and ``plan.tasks``. The number of
    simultaneously executing tasks is capped by ``max_active_tasks``.
    """

    def __init__(
        self,
        *,
        max_active_tasks: int = 1,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.max_active_tasks = max(1, int(max_active_tasks))
        self.event_hook = event_hook
        self.plans: dict[str, Plan] = {}
        self.tasks: dict[str, Task] = {}
        self.results: dict[str, ExecutionResult] = {}
        self._task_plan: dict[str, str] = {}
        self._active: list[str] = []

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    @property
    def active_task_id(self) -> str | None:
        return self._active[0] if self._active else None

    @property
    def active_task_ids(self) -> list[str]:
        return list(self._active)

    def register_plan(self, plan: Plan) -> None:
        self.plans[plan.id] = plan
        for task in plan.tasks:
            self.tasks[task.id] = task
            self._task_plan[task.id] = plan.id
        self._emit({"event": "plan_registered", "plan_id": plan.id, "tasks": len(plan.tasks)})

    def approve_plan(self, plan_id: str) -> Plan:
        plan = self._require_plan(plan_id)
        plan.approved = True
        plan.approved_at = utcnow()
        self._emit({"event": "plan_approved", "plan_id": plan_id})
        return plan

    def add_task(self, task: Task) -> None:
        """Register ``task``, replacing any entry with the same id in its plan."""
        self.tasks[task.id] = task
        plan_id = self._task_plan.get(task.id)
        if plan_id is None:
            return
        plan = self.plans[plan_id]
        for index, existing in enumerate(plan.tasks):
            if existing.id == task.id:
                plan.tasks[index] = task
                break

    def _require_plan(self, plan_id: str) -> Plan:
        plan = self.plans.get(plan_id)
        if plan is None:
            raise TaskStateError(f"Unknown plan: {plan_id}")
        return plan

    def _require_task(self, task_id: str) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskStateError(f"Unknown task: {task_id}")
        return task

    def update_task_status(self, task_id: str, status: TaskStatus) -> Task:
        task = self._require_task(task_id)
        previous = task.status
        if status == "executing" and task_id not in self._active:
            if len(self._active) >= self.max_active_tasks:
                raise TaskStateError(
                    f"Cannot start {task_id}: {len(self._active)} task(s) already executing "
                    f"(limit {self.max_active_tasks})."
                )
            self._active.append(task_id)
        elif status != "executing" and task_id in self._active:
            self._active.remove(task_id)

        task.status = status
        task.touch()
        self._emit(
            {
                "event": "task_status_changed",
                "task_id": task_id,
                "previous": previous,
                "status": status,
            }
        )
        return task

    def record_result(self, result: ExecutionResult) -> None:
        self._require_task(result.task_id)
        if result.task_id in self.results:
            raise TaskStateError(f"Result already recorded for task {result.task_id}")
        self.results[result.task_id] = result
        self.update_task_status(
            result.task_id, "completed" if result.status == "success" else "failed"
        )
        self._emit(
            {
                "event": "task_result",
                "task_id": result.task_id,
                "status": result.status,
                "duration": result.duration,
            }
        )

    def skip_task(self, task_id: str, reason: str = "Skipped by user") -> None:
        task = self._require_task(task_id)
        if task.status in TERMINAL_STATUSES or task_id in self.results:
            raise TaskStateError(f"Task {task_id} is already {task.status}")
        self.results[task_id] = ExecutionResult(
            task_id=task_id,
            status="success",
            output={"skipped": True, "reason": reason},
        )
        self.update_task_status(task_id, "skipped")
        logger.info("Skipped task %s: %s", task_id, reason)

    def emit_progress(self, update: ProgressUpdate) -> None:
        self._emit(
            {
                "event": "task_progress",
                "task_id": update.task_id,
                "progress": update.progress,
                "current_step": update.current_step,
                "message": update.message,
            }
        )

    def dependencies_satisfied(self, task: Task) -> bool:
        for dep in task.dependencies:
            dep_task = self.tasks.get(dep)
            if dep_task is None or dep_task.status not in SATISFIED_STATUSES:
                return False
        return True

    def get_ready_tasks(self, plan_id: str) -> list[Task]:
        plan = self._require_plan(plan_id)
        return [
            task
            for task in plan.tasks
            if task.status == "pending" and self.dependencies_satisfied(task)
        ]

    def get_next_pending_task(self, plan_id: str) -> Task | None:
        ready = self.get_ready_tasks(plan_id)
        return ready[0] if ready else None

    def get_blocked_tasks(self, plan_id: str) -> list[Task]:
        """Pending tasks with at least one failed dependency.

        Such tasks are never started and are not moved to a terminal status.
        """
        plan = self._require_plan(plan_id)
        blocked: list[Task] = []
        for task in plan.tasks:
            if task.status != "pending":
                continue
            if any(
                self.tasks.get(dep) is not None and self.tasks[dep].status == "failed"
                for dep in task.dependencies
            ):
                blocked.append(task)
        return blocked

    def get_task(self, task_id: str) -> Task | None:
        return self.tasks.get(task_id)

    def get_plan(self, plan_id: str) -> Plan | None:
        return self.plans.get(plan_id)

    def get_result(self, task_id: str) -> ExecutionResult | None:
        return self.results.get(task_id)

    def get_active_task(self) -> Task | None:
        active = self.active_task_id
        return self.tasks.get(active) if active else None

    def get_plan_tasks(self, plan_id: str) -> list[Task]:
        return list(self._require_plan(plan_id).tasks)

    def get_plan_progress(self, plan_id: str) -> dict[str, Any]:
        tasks = self.get_plan_tasks(plan_id)
        statuses = ("pending", "executing", "completed", "failed", "skipped")
        counts = dict.fromkeys(statuses, 0)
        for task in tasks:
            counts[task.status] = counts.get(task.status, 0) + 1
        total = len(tasks)
        finished = counts["completed"] + counts["failed"] + counts["skipped"]
        return {
            "total": total,
            **counts,
            "percentage": round(finished / total * 100) if total else 0,
        }

    def compile_plan_results(self, plan_id: str) -> list[ExecutionResult]:
        return [
            self.results[task.id]
            for task in self._require_plan(plan_id).tasks
            if task.id in self.results
        ]

    def get_all_plans(self) -> list[Plan]:
        return list(self.plans.values())

    def get_active_plans(self) -> list[Plan]:
        return [
            plan
            for plan in self.plans.values()
            if any(task.status not in TERMINAL_STATUSES for task in plan.tasks)
        ]

    def clear_plan(self, plan_id: str) -> None:
        plan = self.plans.pop(plan_id, None)
        if plan is None:
            return
        for task in plan.tasks:
            self.tasks.pop(task.id, None)
            self.results.pop(task.id, None)
            self._task_plan.pop(task.id, None)
            if task.id in self._active:
                self._active.remove(task.id)
