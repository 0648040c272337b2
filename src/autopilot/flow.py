from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from autopilot.config import FlowConfig
from autopilot.errors import (
    AbortRequested,
    ApprovalDenied,
    PlanValidationError,
    TaskStateError,
)
from autopilot.execution.approvals import ApprovalQueue, ApprovalRequest
from autopilot.execution.executor import TaskExecutor
from autopilot.execution.progress import ProgressTracker
from autopilot.models import (
    CompletedExecution,
    DetailedTask,
    ExecutionResult,
    Plan,
    ProgressUpdate,
    Task,
    ValidationReport,
    utcnow,
)
from autopilot.planning.planner import TaskPlanner, format_duration
from autopilot.planning.task_manager import TaskManager

PhaseName = Literal["planning", "detailing", "execution", "completion"]
PhaseStatus = Literal["pending", "in_progress", "completed", "failed"]
PHASES: tuple[PhaseName, ...] = ("planning", "detailing", "execution", "completion")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PhaseState:
    status: PhaseStatus = "pending"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None


class ExecutionFlow:
    """Drives one request through planning, detailing, execution and completion.

    Control methods (``approve``, ``deny``, ``pause``, ``resume``, ``abort``,
    ``skip_task``, ``respond``) may be called from other coroutines on the
    same event loop while ``execute`` is running.
    """

    def __init__(
        self,
        planner: TaskPlanner,
        manager: TaskManager,
        executor: TaskExecutor,
        approvals: ApprovalQueue,
        *,
        config: FlowConfig | None = None,
        tracker: ProgressTracker | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.planner = planner
        self.manager = manager
        self.executor = executor
        self.approvals = approvals
        self.config = config or FlowConfig()
        self.tracker = tracker or ProgressTracker()
        self.event_hook = event_hook
        self.phases: dict[PhaseName, PhaseState] = {name: PhaseState() for name in PHASES}
        self.current_phase: PhaseName | None = None
        self.approved = False
        self.paused = False
        self.aborted = False
        self.plan: Plan | None = None
        self.blocked_task_ids: list[str] = []
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._abort_event = asyncio.Event()
        self._plan_request: ApprovalRequest | None = None
        manager.max_active_tasks = max(
            manager.max_active_tasks, int(self.config.max_parallel_tasks)
        )
        if executor.on_progress is None:
            executor.on_progress = self._on_progress

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def _on_progress(self, update: ProgressUpdate) -> None:
        self.tracker.update_progress(update)
        self.manager.emit_progress(update)

    def _start_phase(self, name: PhaseName) -> None:
        phase = self.phases[name]
        phase.status = "in_progress"
        phase.started_at = utcnow()
        self.current_phase = name
        self.tracker.set_phase(name)
        self._emit({"event": "phase_started", "phase": name})

    def _complete_phase(self, name: PhaseName) -> None:
        phase = self.phases[name]
        phase.status = "completed"
        phase.completed_at = utcnow()
        self._emit({"event": "phase_completed", "phase": name})

    def _fail_phase(self, name: PhaseName, exc: BaseException) -> None:
        phase = self.phases[name]
        phase.status = "failed"
        phase.completed_at = utcnow()
        phase.error = str(exc)
        logger.error("Phase %s failed: %s", name, exc)
        self._emit({"event": "phase_failed", "phase": name, "error": str(exc)})

    def _check_abort(self) -> None:
        if self.aborted:
            raise AbortRequested("Flow aborted by user")

    async def execute(self, request: str) -> CompletedExecution:
        started = time.monotonic()
        plan = await self._run_planning(request)
        await self._run_detailing(plan)
        await self._run_execution(plan)
        return self._run_completion(plan, started)

    async def _run_planning(self, request: str) -> Plan:
        self._start_phase("planning")
        try:
            plan = await self.planner.analyze_request(request)
            validation = self.planner.validate_plan(plan)
            for warning in validation.warnings:
                logger.warning("Plan %s: %s", plan.id, warning)
            if not validation.valid:
                raise PlanValidationError(validation.errors)
            self.plan = plan
            self.tracker.set_dependency_data(
                self.planner.build_dependency_graph(plan.tasks),
                self.planner.critical_path(plan.tasks),
                self.planner.parallel_groups(plan.tasks),
            )
            self._emit(
                {
                    "event": "plan_created",
                    "plan_id": plan.id,
                    "plan": plan,
                    "warnings": validation.warnings,
                    "suggestions": validation.suggestions,
                }
            )
            if not self.config.auto_approve and not self.approved:
                await self._await_plan_approval(plan)
            self.approved = True
            self.manager.register_plan(plan)
            self.manager.approve_plan(plan.id)
        except Exception as exc:
            self._fail_phase("planning", exc)
            self.aborted = True
            raise
        self._complete_phase("planning")
        return plan

    async def _await_plan_approval(self, plan: Plan) -> None:
        request = self.approvals.open(
            "plan",
            plan.user_request,
            {"plan_id": plan.id, "tasks": len(plan.tasks), "plan": plan},
        )
        self._plan_request = request
        try:
            approved = await self.approvals.wait(request, self.config.plan_approval_timeout_seconds)
        finally:
            self._plan_request = None
        self._check_abort()
        if not approved:
            raise ApprovalDenied("Plan rejected by user")

    async def _run_detailing(self, plan: Plan) -> None:
        self._start_phase("detailing")
        try:
            for task in list(plan.tasks):
                self._check_abort()
                subtasks = await self.planner.decompose_task(task)
                detailed = await self.planner.detail_task(task, subtasks)
                self.manager.add_task(detailed)
                self._emit(
                    {"event": "task_detailed", "task_id": task.id, "steps": len(detailed.steps)}
                )
        except Exception as exc:
            self._fail_phase("detailing", exc)
            raise
        self._complete_phase("detailing")

    async def _run_execution(self, plan: Plan) -> None:
        self._start_phase("execution")
        try:
            if max(1, int(self.config.max_parallel_tasks)) > 1:
                await self._execute_parallel(plan)
            else:
                await self._execute_sequential(plan)
        except Exception as exc:
            self._fail_phase("execution", exc)
            raise
        self._complete_phase("execution")

    async def _wait_if_paused(self) -> None:
        if self.paused:
            self._emit({"event": "flow_waiting_for_resume"})
            await self._resume_event.wait()

    def _mark_blocked(self, task: Task) -> None:
        if task.id in self.blocked_task_ids:
            return
        self.blocked_task_ids.append(task.id)
        waiting_on: list[str] = []
        for dep in task.dependencies:
            dep_task = self.manager.get_task(dep)
            if dep_task is None or dep_task.status not in {"completed", "skipped"}:
                waiting_on.append(dep)
        logger.warning("Task %s is blocked by %s", task.id, ", ".join(waiting_on))
        self._emit({"event": "task_blocked", "task_id": task.id, "waiting_on": waiting_on})

    async def _execute_sequential(self, plan: Plan) -> None:
        for ordered in self.planner.get_execution_order(plan.tasks):
            await self._wait_if_paused()
            self._check_abort()
            task = self.manager.get_task(ordered.id)
            if task is None or task.status != "pending":
                continue
            if not self.manager.dependencies_satisfied(task):
                self._mark_blocked(task)
                continue
            self._begin_task(task)
            await self._finish_task(task)
        self._check_abort()

    async def _execute_parallel(self, plan: Plan) -> None:
        limit = max(1, int(self.config.max_parallel_tasks))
        running: dict[asyncio.Task[ExecutionResult], str] = {}
        while True:
            if not running:
                await self._wait_if_paused()
            if not self.aborted and not self.paused:
                for task in self.manager.get_ready_tasks(plan.id)[: limit - len(running)]:
                    self._begin_task(task)
                    running[asyncio.create_task(self._finish_task(task))] = task.id
            if not running:
                if self.paused and not self.aborted:
                    continue
                break
            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for finished in done:
                running.pop(finished)
                finished.result()
        self._check_abort()
        for task in plan.tasks:
            current = self.manager.get_task(task.id)
            if current is not None and current.status == "pending":
                self._mark_blocked(current)

    def _begin_task(self, task: Task) -> None:
        self.manager.update_task_status(task.id, "executing")
        self.tracker.start_task(task.id, task.name)
        self._emit(
            {
                "event": "task_started",
                "task_id": task.id,
                "name": task.name,
                "estimated_duration": task.estimated_duration,
            }
        )

    async def _finish_task(self, task: Task) -> ExecutionResult:
        if not isinstance(task, DetailedTask):
            task = DetailedTask.from_task(task)
        result = await self._execute_with_retry(task)
        self.manager.record_result(result)
        self.tracker.complete_task(task.id, result.status)
        self._emit(
            {
                "event": "task_completed",
                "task_id": task.id,
                "status": result.status,
                "duration": result.duration,
                "attempts": result.attempts,
                "error": result.error,
            }
        )
        return result

    async def _execute_with_retry(self, task: DetailedTask) -> ExecutionResult:
        """Run ``task`` up to ``max_retries`` times in total.

        Only failures flagged retriable are attempted again; the wait before
        attempt ``n + 1`` is ``retry_backoff_seconds * n``.
        """
        attempts = max(1, int(self.config.max_retries))
        result: ExecutionResult | None = None
        for attempt in range(1, attempts + 1):
            if self.config.dry_run:
                result = await self._simulate(task)
            else:
                result = await self.executor.execute_task(task)
            result.attempts = attempt
            if result.status == "success" or not result.retriable or attempt == attempts:
                return result
            if self.aborted:
                break

            delay = max(0.0, float(self.config.retry_backoff_seconds)) * attempt
            self._emit(
                {
                    "event": "task_retry",
                    "task_id": task.id,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error": result.error,
                }
            )
            try:
                await asyncio.wait_for(self._abort_event.wait(), timeout=delay)
            except TimeoutError:
                pass
            if self.aborted:
                break

        assert result is not None
        return ExecutionResult(
            task_id=task.id,
            status="failure",
            output=result.output,
            error="Task execution aborted",
            duration=result.duration,
            logs=result.logs,
            attempts=result.attempts,
            exception=AbortRequested("Task execution aborted"),
        )

    async def _simulate(self, task: DetailedTask) -> ExecutionResult:
        started = time.monotonic()
        steps: list[dict[str, Any]] = []
        for step in task.steps:
            entry: dict[str, Any] = {"step_id": step.id, "description": step.description}
            if step.command is not None:
                preview = await self.executor.dry_run_command(step.command)
                entry["simulated_output"] = preview.simulated_output
                entry["safety_level"] = preview.safety_level
                entry["warnings"] = preview.warnings
            elif step.parse_error is not None:
                entry["warnings"] = [f"Unusable command {step.raw_command!r}: {step.parse_error}"]
            steps.append(entry)
        return ExecutionResult(
            task_id=task.id,
            status="success",
            output={"simulated": True, "task": task.name, "steps": steps},
            duration=time.monotonic() - started,
        )

    def _run_completion(self, plan: Plan, started: float) -> CompletedExecution:
        self._start_phase("completion")
        results = self.manager.compile_plan_results(plan.id)
        report = self.validate_results(results)
        successes = sum(1 for result in results if result.status == "success")
        completion = CompletedExecution(
            plan_id=plan.id,
            results=results,
            total_duration=time.monotonic() - started,
            success_rate=successes / len(results) if results else 0.0,
        )
        completion.report = self.render_report(plan, completion, report)
        self._complete_phase("completion")
        self._emit(
            {
                "event": "flow_completed",
                "plan_id": plan.id,
                "success_rate": completion.success_rate,
            }
        )
        return completion

    def validate_results(self, results: list[ExecutionResult]) -> ValidationReport:
        threshold = float(self.config.long_running_threshold_seconds)
        failed = [result.task_id for result in results if result.status != "success"]
        long_running = [result.task_id for result in results if result.duration > threshold]
        warnings: list[str] = []
        recommendations: list[str] = []
        if failed:
            warnings.append(f"{len(failed)} tasks failed")
            recommendations.append("Review failed tasks and consider retry or manual intervention")
        if long_running:
            warnings.append(f"{len(long_running)} tasks took longer than expected")
            recommendations.append("Consider optimizing long-running tasks")
        if self.blocked_task_ids:
            warnings.append(f"{len(self.blocked_task_ids)} tasks were never started")
            recommendations.append("Fix the failed dependencies, then rerun the blocked tasks")
        return ValidationReport(
            all_tasks_completed=not failed and not self.blocked_task_ids,
            failed_tasks=failed,
            long_running_tasks=long_running,
            blocked_tasks=list(self.blocked_task_ids),
            warnings=warnings,
            recommendations=recommendations,
        )

    def render_report(
        self, plan: Plan, completion: CompletedExecution, report: ValidationReport
    ) -> str:
        names = {task.id: task.name for task in plan.tasks}
        lines = [
            "Execution Complete",
            "=" * 50,
            f"Total Duration: {format_duration(completion.total_duration)}",
            f"Success Rate: {completion.success_rate * 100:.1f}%",
            f"Tasks Executed: {len(completion.results)}",
            "",
        ]
        for title, task_ids in (
            ("Failed Tasks:", report.failed_tasks),
            ("Blocked Tasks:", report.blocked_tasks),
        ):
            if task_ids:
                lines.append(title)
                lines.extend(f"  - {names.get(task_id, task_id)}" for task_id in task_ids)
                lines.append("")
        if report.warnings:
            lines.append("Warnings:")
            lines.extend(f"  - {warning}" for warning in report.warnings)
            lines.append("")
        if report.recommendations:
            lines.append("Recommendations:")
            lines.extend(f"  - {item}" for item in report.recommendations)
        return "\n".join(lines).rstrip() + "\n"

    def approve(self) -> None:
        self.approved = True
        if self._plan_request is not None:
            self._plan_request.approve()

    def deny(self) -> None:
        if self._plan_request is not None:
            self._plan_request.deny()

    def pause(self) -> None:
        self.paused = True
        self._resume_event.clear()
        self._emit({"event": "flow_paused"})

    def resume(self) -> None:
        self.paused = False
        self._resume_event.set()
        self._emit({"event": "flow_resumed"})

    def abort(self) -> None:
        if self.aborted:
            return
        self.aborted = True
        self._abort_event.set()
        self.executor.abort()
        self.approvals.deny_all()
        # a paused flow must wake up to notice the abort
        self._resume_event.set()
        self._emit({"event": "flow_aborted"})

    def skip_task(self, task_id: str, reason: str = "Skipped by user") -> None:
        task = self.manager.get_task(task_id)
        if task is None:
            raise TaskStateError(f"Unknown task: {task_id}")
        if task.status == "executing":
            raise TaskStateError(f"Task {task_id} is already executing")
        self.manager.skip_task(task_id, reason)
        self.tracker.complete_task(task_id, "skipped")
        self._emit({"event": "task_skipped", "task_id": task_id, "reason": reason})

    def respond(self, request_id: str, approved: bool) -> bool:
        return self.approvals.respond(request_id, approved)

    def pending_approvals(self) -> list[ApprovalRequest]:
        return self.approvals.pending()

    def progress(self) -> int:
        return self.tracker.overall_progress()
