from autopilot.execution.progress import ProgressTracker, progress_bar_units, render_bar
from autopilot.models import ExecutionResult, Plan, ProgressUpdate, Task
from autopilot.planning import TaskPlanner


def _tasks() -> list[Task]:
    return [
        Task(id="a", name="A", description="a", priority="high", estimated_duration=30),
        Task(id="b", name="B", description="b", estimated_duration=60, dependencies=["a"]),
        Task(id="c", name="C", description="c", estimated_duration=20, dependencies=["a"]),
    ]


def test_progress_bar_is_clamped() -> None:
    assert progress_bar_units(50) == 10
    assert progress_bar_units(150) == 20
    assert progress_bar_units(-5) == 0
    assert render_bar(50) == "[##########..........] 50%"
    assert render_bar(100, width=4) == "[####] 100%"


def test_task_progress_lifecycle() -> None:
    tracker = ProgressTracker()
    tracker.set_total_tasks(2)

    tracker.start_task("a", "Install")
    tracker.update_progress(ProgressUpdate(task_id="a", progress=140, current_step="a-step-1"))

    assert tracker.tasks["a"].percentage == 100
    assert "a-step-1" in tracker.describe("a")
    assert tracker.overall_progress() == 0

    tracker.complete_task("a", "success")
    tracker.complete_task("b", "failure")

    assert tracker.overall_progress() == 100
    assert tracker.tasks["b"].percentage == 0
    assert tracker.describe("zzz") == "zzz: not started"
    assert tracker.elapsed("a") >= 0


def test_plan_summary_counts_priorities_and_duration() -> None:
    summary = ProgressTracker.plan_summary(Plan(id="p", user_request="r", tasks=_tasks()))

    assert summary["total_tasks"] == 3
    assert summary["by_priority"] == {"critical": 0, "high": 1, "medium": 2, "low": 0}
    assert summary["estimated_duration"] == 110
    assert summary["estimated_duration_text"] == "1m 50s"


def test_timeline_uses_parallel_groups_from_the_planner() -> None:
    tasks = _tasks()
    tracker = ProgressTracker()
    tracker.set_dependency_data(
        TaskPlanner.build_dependency_graph(tasks),
        TaskPlanner.critical_path(tasks),
        TaskPlanner.parallel_groups(tasks),
    )

    timeline = tracker.timeline(tasks)

    assert tracker.total_tasks == 3
    assert [(entry["task_id"], entry["start"]) for entry in timeline] == [
        ("a", 0.0),
        ("b", 30.0),
        ("c", 30.0),
    ]
    assert [entry["critical"] for entry in timeline] == [True, True, False]


def test_completion_summary_counts_skips_as_successful() -> None:
    results = [
        ExecutionResult(task_id="a", status="success", duration=5),
        ExecutionResult(task_id="b", status="failure", duration=10),
        ExecutionResult(task_id="c", status="success", output={"skipped": True, "reason": "x"}),
    ]

    summary = ProgressTracker.completion_summary(results)

    assert summary["succeeded"] == 1
    assert summary["failed"] == 1
    assert summary["skipped"] == 1
    assert summary["success_rate"] == 67
    assert summary["total_duration"] == 15
    assert summary["total_duration_text"] == "15s"
