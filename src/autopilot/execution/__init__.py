from autopilot.execution.approvals import ApprovalQueue, ApprovalRequest
from autopilot.execution.background import BackgroundProcess, BackgroundProcessRegistry, detect_port
from autopilot.execution.executor import TaskExecutor
from autopilot.execution.progress import ProgressTracker
from autopilot.execution.runner import CommandResult, CommandRunner, is_server_command
from autopilot.execution.safety import SafetyClassifier, denylisted
from autopilot.execution.snapshots import SnapshotStore

__all__ = [
    "ApprovalQueue",
    "ApprovalRequest",
    "BackgroundProcess",
    "BackgroundProcessRegistry",
    "CommandResult",
    "CommandRunner",
    "ProgressTracker",
    "SafetyClassifier",
    "SnapshotStore",
    "TaskExecutor",
    "denylisted",
    "detect_port",
    "is_server_command",
]
