from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from autopilot.commands import Command, parse_command

TaskPriority = Literal["critical", "high", "medium", "low"]
TaskStatus = Literal["pending", "planning", "executing", "completed", "failed", "skipped"]
SafetyLevel = Literal["safe", "caution", "danger", "forbidden"]
ResultStatus = Literal["success", "failure", "partial"]
LogLevel = Literal["info", "warning", "error", "debug"]
IntentCategory = Literal["read", "write", "execute", "delete", "network"]
ProcessStatus = Literal["running", "completed", "failed", "killed"]

PRIORITIES: tuple[str, ...] = ("critical", "high", "medium", "low")
TERMINAL_STATUSES = frozenset({"completed", "failed", "skipped"})
SATISFIED_STATUSES = frozenset({"completed", "skipped"})
SAFETY_LEVELS: tuple[str, ...] = ("safe", "caution", "danger", "forbidden")
INTENT_CATEGORIES: tuple[str, ...] = ("read", "write", "execute", "delete", "network")


def utcnow() -> datetime:
    return datetime.now(UTC)


def safety_rank(level: str) -> int:
    try:
        return SAFETY_LEVELS.index(level)
    except ValueError:
        return SAFETY_LEVELS.index("caution")


@dataclass(slots=True, kw_only=True)
class Task:
    id: str
    name: str
    description: str
    priority: TaskPriority = "medium"
    status: TaskStatus = "pending"
    estimated_duration: float | None = None
    dependencies: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()


@dataclass(slots=True, kw_only=True)
class SubTask(Task):
    parent_id: str
    order: int = 0


@dataclass(slots=True, frozen=True, kw_only=True)
class ExecutionStep:
    id: str
    description: str
    command: Command | None = None
    raw_command: str | None = None
    expected_output: str | None = None
    requires_approval: bool = False
    safety_level: SafetyLevel = "safe"
    parse_error: str | None = None


@dataclass(slots=True, kw_only=True)
class ResourceRequirement:
    type: Literal["file", "api", "permission", "tool"]
    name: str
    required: bool = True


@dataclass(slots=True, kw_only=True)
class Risk:
    type: str
    description: str
    probability: Literal["high", "medium", "low"] = "medium"
    impact: Literal["high", "medium", "low"] = "medium"
    mitigation: str = ""


@dataclass(slots=True, kw_only=True)
class RollbackStrategy:
    steps: list[str] = field(default_factory=list)
    automatic: bool = False
    commands: list[Command] = field(init=False, default_factory=list)

    def __post_init__(self) -> None:
        self.commands = [parse_command(step) for step in self.steps]


@dataclass(slots=True, kw_only=True)
class DetailedTask(SubTask):
    steps: list[ExecutionStep] = field(default_factory=list)
    resources: list[ResourceRequirement] = field(default_factory=list)
    risks: list[Risk] = field(default_factory=list)
    rollback_strategy: RollbackStrategy | None = None

    @classmethod
    def from_task(cls, task: Task, **details: Any) -> DetailedTask:
        return cls(
            id=task.id,
            name=task.name,
            description=task.description,
            priority=task.priority,
            status=task.status,
            estimated_duration=task.estimated_duration,
            dependencies=list(task.dependencies),
            created_at=task.created_at,
            updated_at=utcnow(),
            parent_id=getattr(task, "parent_id", task.id),
            order=getattr(task, "order", 0),
            **details,
        )


@dataclass(slots=True, kw_only=True)
class Plan:
    id: str
    user_request: str
    tasks: list[Task] = field(default_factory=list)
    estimated_total_duration: float = 0.0
    created_at: datetime = field(default_factory=utcnow)
    approved: bool = False
    approved_at: datetime | None = None

    def task_ids(self) -> set[str]:
        return {task.id for task in self.tasks}


@dataclass(slots=True, kw_only=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


@dataclass(slots=True, kw_only=True)
class LogEntry:
    level: LogLevel
    message: str
    metadata: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True, kw_only=True)
class ExecutionResult:
    task_id: str
    status: ResultStatus
    output: Any = None
    error: str | None = None
    duration: float = 0.0
    executed_at: datetime = field(default_factory=utcnow)
    logs: list[LogEntry] = field(default_factory=list)
    attempts: int = 1
    exception: BaseException | None = field(default=None, repr=False, compare=False)

    @property
    def retriable(self) -> bool:
        return bool(getattr(self.exception, "retriable", False))


@dataclass(slots=True, kw_only=True)
class ProgressUpdate:
    task_id: str
    progress: int
    current_step: str | None = None
    message: str | None = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True, kw_only=True)
class DependencyGraph:
    nodes: list[Task]
    edges: list[tuple[str, str]]


@dataclass(slots=True, kw_only=True)
class CommandIntent:
    purpose: str
    category: IntentCategory = "execute"
    target_resources: list[str] = field(default_factory=list)
    estimated_risk: SafetyLevel = "caution"
    alternatives: list[str] | None = None


@dataclass(slots=True, kw_only=True)
class DryRunResult:
    command: Command
    simulated_output: str
    estimated_changes: list[str]
    safety_level: SafetyLevel
    warnings: list[str]


@dataclass(slots=True, kw_only=True)
class Snapshot:
    id: str
    path: str
    content: str
    hash: str
    created_at: datetime = field(default_factory=utcnow)
    reason: str | None = None

    @property
    def size(self) -> int:
        return len(self.content.encode("utf-8"))


@dataclass(slots=True, kw_only=True)
class ValidationReport:
    all_tasks_completed: bool
    failed_tasks: list[str] = field(default_factory=list)
    long_running_tasks: list[str] = field(default_factory=list)
    blocked_tasks: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass(slots=True, kw_only=True)
class CompletedExecution:
    plan_id: str
    results: list[ExecutionResult]
    total_duration: float
    success_rate: float
    completed_at: datetime = field(default_factory=utcnow)
    report: str = ""
