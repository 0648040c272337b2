from __future__ import annotations


class AutopilotError(RuntimeError):
    """Base class for orchestration failures."""

    retriable: bool = False

    def __init__(self, message: str, *, retriable: bool | None = None) -> None:
        super().__init__(message)
        if retriable is not None:
            self.retriable = retriable


class PlanParseError(AutopilotError):
    """Raised when the planner response cannot be turned into a plan."""

    def __init__(self, message: str, *, raw_response: str = "") -> None:
        super().__init__(message)
        self.raw_response = raw_response


class PlanValidationError(AutopilotError):
    """Raised when a plan has structural defects."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Plan validation failed: " + ", ".join(errors))
        self.errors = list(errors)


class SafetyViolation(AutopilotError):
    """Raised when a command is forbidden or riskier than its step declares."""


class TransientExecutionError(AutopilotError):
    """Raised when a step fails in a way that may succeed on retry."""

    retriable = True


class ApprovalDenied(AutopilotError):
    """Raised when an approval request is answered with a denial."""


class ApprovalTimeout(AutopilotError):
    """Raised when nobody answers an approval request in time."""


class AbortRequested(AutopilotError):
    """Raised when execution stops because the flow was aborted."""


class TaskStateError(AutopilotError):
    """Raised on an illegal task status transition."""


class SnapshotError(AutopilotError):
    """Raised when a snapshot cannot be stored or restored."""


class CommandParseError(AutopilotError, ValueError):
    """Raised when a step command string cannot be parsed."""
