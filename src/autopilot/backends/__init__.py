from autopilot.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from autopilot.backends.cli import CLIBackend
from autopilot.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CLIBackend",
    "ResilientBackend",
    "RetryPolicy",
]
