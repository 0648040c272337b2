from autopilot.planning.planner import TaskPlanner, format_duration
from autopilot.planning.task_manager import TaskManager

__all__ = ["TaskManager", "TaskPlanner", "format_duration"]
