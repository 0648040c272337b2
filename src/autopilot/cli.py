from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

import click

from autopilot.agents import PlannerAgent, SafetyAnalystAgent
from autopilot.backends import AgentBackend, CLIBackend, ResilientBackend, RetryPolicy
from autopilot.config import AutopilotConfig, BackendName, load_config, save_config
from autopilot.errors import AbortRequested, AutopilotError
from autopilot.execution import (
    ApprovalQueue,
    ApprovalRequest,
    BackgroundProcessRegistry,
    CommandRunner,
    SafetyClassifier,
    SnapshotStore,
    TaskExecutor,
    is_server_command,
)
from autopilot.flow import ExecutionFlow
from autopilot.models import CompletedExecution
from autopilot.planning import TaskManager, TaskPlanner

EventHook = Callable[[dict[str, Any]], None]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    working_directory: Path
    config_path: Path
    config: AutopilotConfig
    backend: AgentBackend
    snapshots: SnapshotStore


def _resolve_config_path(working_directory: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = working_directory / config_path
    return config_path.resolve()


def _log_backend_event(event: dict[str, Any]) -> None:
    if event.get("event") in {"backend_retry", "backend_attempt_failed", "backend_failover_start"}:
        logger.warning("Backend event: %s", event)
    else:
        logger.debug("Backend event: %s", event)


def _build_backend(config: AutopilotConfig, working_directory: Path) -> AgentBackend:
    binaries = {"claude": config.backend.claude_binary, "codex": config.backend.codex_binary}

    def _single(name: BackendName) -> CLIBackend:
        return CLIBackend(
            name,
            binary=binaries.get(name),
            working_directory=working_directory,
            event_hook=_log_backend_event,
        )

    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=_single(config.backend.primary),
        fallback_name=config.backend.fallback,
        fallback_backend=_single(config.backend.fallback),
        retry_policy=policy,
        event_hook=_log_backend_event,
    )


def _load_runtime(config_value: str) -> Runtime:
    working_directory = Path.cwd().resolve()
    config_path = _resolve_config_path(working_directory, config_value)
    config = load_config(config_path)
    executor_root = (working_directory / config.executor.working_directory).resolve()
    snapshots = SnapshotStore(
        config.snapshots.directory,
        persist=config.snapshots.persist,
        base_directory=executor_root,
    )
    return Runtime(
        working_directory=executor_root,
        config_path=config_path,
        config=config,
        backend=_build_backend(config, executor_root),
        snapshots=snapshots,
    )


def _build_planner(runtime: Runtime, event_hook: EventHook | None = None) -> TaskPlanner:
    agent = PlannerAgent(runtime.backend, model=runtime.config.agents.planner_model)
    return TaskPlanner(
        agent, working_directory=str(runtime.working_directory), event_hook=event_hook
    )


def _build_flow(runtime: Runtime, event_hook: EventHook) -> ExecutionFlow:
    config = runtime.config
    approvals = ApprovalQueue(event_hook=event_hook)
    runner = CommandRunner(
        timeout_seconds=config.runner.timeout_seconds,
        kill_grace_seconds=config.runner.kill_grace_seconds,
        working_directory=str(runtime.working_directory),
    )
    safety = SafetyClassifier(
        SafetyAnalystAgent(runtime.backend, model=config.agents.safety_model),
        use_llm=config.executor.analyze_intent_with_llm,
        event_hook=event_hook,
    )
    runtime.snapshots.event_hook = event_hook
    executor = TaskExecutor(
        runner,
        safety,
        runtime.snapshots,
        approvals,
        safe_mode=config.executor.safe_mode,
        step_approval_timeout_seconds=config.executor.step_approval_timeout_seconds,
        working_directory=runtime.working_directory,
        event_hook=event_hook,
    )
    manager = TaskManager(max_active_tasks=config.flow.max_parallel_tasks, event_hook=event_hook)
    return ExecutionFlow(
        _build_planner(runtime, event_hook),
        manager,
        executor,
        approvals,
        config=config.flow,
        event_hook=event_hook,
    )


def _describe_event(event: dict[str, Any]) -> str | None:
    name = event.get("event")
    if name == "phase_started":
        return f"== {event['phase']} =="
    if name == "phase_failed":
        return f"Phase {event['phase']} failed: {event['error']}"
    if name == "task_started":
        return f"-> {event['name']} ({event['task_id']})"
    if name == "task_completed":
        suffix = f": {event['error']}" if event.get("error") else ""
        return f"   {event['status']} in {event['duration']:.1f}s{suffix}"
    if name == "task_retry":
        return f"   retry {event['attempt']} of {event['task_id']} in {event['delay_seconds']:.1f}s"
    if name == "task_blocked":
        return f"   blocked {event['task_id']} (waiting on {', '.join(event['waiting_on'])})"
    if name == "step_skipped":
        return f"   skipped step {event['step_id']} (not approved)"
    if name == "safety_violation":
        return f"   refused {event['command']!r} ({event['reason']})"
    if name == "snapshot_created":
        return f"   snapshot {event['snapshot_id']} of {event['path']}"
    if name == "rollback_started":
        return f"   rolling back {event['task_id']}"
    if name == "flow_paused":
        return "Execution paused."
    if name == "flow_aborted":
        return "Aborting..."
    return None


class StdinLines:
    """Feeds terminal lines into the running loop from one daemon thread.

    A read blocked on the terminal never holds up interpreter exit, and each
    line goes to whichever prompt is current when it arrives.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream
        self._queue: asyncio.Queue[str | None] | None = None
        self._eof = False

    def _pump(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[str | None]) -> None:
        stream = self._stream if self._stream is not None else click.get_text_stream("stdin")
        while True:
            try:
                line = stream.readline()
            except (OSError, ValueError):
                line = ""
            try:
                loop.call_soon_threadsafe(queue.put_nowait, line or None)
            except RuntimeError:
                # loop already closed
                return
            if not line:
                return

    async def readline(self) -> str | None:
        """Return the next line, or ``None`` once input is exhausted."""
        if self._eof:
            return None
        if self._queue is None:
            self._queue = asyncio.Queue()
            threading.Thread(
                target=self._pump,
                args=(asyncio.get_running_loop(), self._queue),
                name="autopilot-stdin",
                daemon=True,
            ).start()
        line = await self._queue.get()
        if line is None:
            self._eof = True
        return line


class ConsoleHooks:
    """Echoes flow events and answers approval requests from the terminal.

    Requests are asked one at a time by a single prompt task. A request that
    settles while its question is on screen (timeout, abort) is abandoned, and
    the next typed line answers the next open request.
    """

    def __init__(self, *, interactive: bool, lines: StdinLines | None = None) -> None:
        self.interactive = interactive
        self.flow: ExecutionFlow | None = None
        self.lines = lines if lines is not None else StdinLines()
        self._queue: deque[ApprovalRequest] = deque()
        self._arrived = asyncio.Event()
        self._prompter: asyncio.Task[None] | None = None
        self._line: asyncio.Future[str | None] | None = None

    def __call__(self, event: dict[str, Any]) -> None:
        if event.get("event") == "approval_requested":
            request = event["request"]
            if self.interactive:
                self._enqueue(request)
            else:
                # unattended runs deny step approvals
                request.deny()
            return
        message = _describe_event(event)
        if message is not None:
            click.echo(message)

    def _enqueue(self, request: ApprovalRequest) -> None:
        self._queue.append(request)
        self._arrived.set()
        if self._prompter is None or self._prompter.done():
            self._prompter = asyncio.get_running_loop().create_task(self._prompt_loop())

    async def _prompt_loop(self) -> None:
        while True:
            while not self._queue:
                self._arrived.clear()
                await self._arrived.wait()
            request = self._queue.popleft()
            if not request.done:
                await self._ask(request)

    def _question(self, request: ApprovalRequest) -> str:
        plan = request.details.get("plan")
        if plan is not None and self.flow is not None:
            click.echo(self.flow.planner.format_plan_for_display(plan))
            return "Approve this plan?"
        command = request.details.get("command")
        return f"Run step '{request.subject}'" + (f" ({command})" if command else "") + "?"

    async def _ask(self, request: ApprovalRequest) -> None:
        click.echo(f"{self._question(request)} [y/N]: ", nl=False)
        settled: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def _settle(_: ApprovalRequest) -> None:
            if not settled.done():
                settled.set_result(None)

        request.add_done_callback(_settle)
        if self._line is None:
            self._line = asyncio.ensure_future(self.lines.readline())
        await asyncio.wait({self._line, settled}, return_when=asyncio.FIRST_COMPLETED)
        if not self._line.done():
            # the pending read carries over to the next request
            click.echo("\n(no longer waiting for an answer)")
            return
        line = self._line.result()
        self._line = None
        if line is not None and line.strip().lower() in {"y", "yes"}:
            request.approve()
        else:
            request.deny()

    def cancel_prompts(self) -> None:
        for pending in (self._prompter, self._line):
            if pending is not None:
                pending.cancel()
        self._prompter = None
        self._line = None
        self._queue.clear()


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log at debug level.")
def cli(verbose: bool) -> None:
    """Autopilot CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--config", "config_value", default="autopilot.toml", show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    working_directory = Path.cwd().resolve()
    config_path = _resolve_config_path(working_directory, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)
    snapshot_dir = working_directory / config.snapshots.directory
    if config.snapshots.persist:
        snapshot_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized autopilot in {working_directory}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")


@cli.command("plan")
@click.argument("request")
@click.option("--config", "config_value", default="autopilot.toml", show_default=True)
def plan_command(request: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    planner = _build_planner(runtime)
    try:
        plan = asyncio.run(planner.analyze_request(request))
    except AutopilotError as exc:
        raise click.ClickException(str(exc)) from exc

    validation = planner.validate_plan(plan)
    click.echo(planner.format_plan_for_display(plan))
    for warning in validation.warnings:
        click.echo(f"warning: {warning}")
    for suggestion in validation.suggestions:
        click.echo(f"suggestion: {suggestion}")
    if not validation.valid:
        raise click.ClickException("Plan is invalid: " + "; ".join(validation.errors))


async def _run_flow(
    flow: ExecutionFlow, hooks: ConsoleHooks, request: str
) -> CompletedExecution:
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, flow.abort)
    try:
        return await flow.execute(request)
    finally:
        hooks.cancel_prompts()
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)


@cli.command("run")
@click.argument("request")
@click.option("--auto-approve", is_flag=True, default=False, help="Skip the plan approval prompt.")
@click.option("--dry-run", is_flag=True, default=False, help="Simulate every task.")
@click.option("--parallel", type=click.IntRange(min=1), default=None, help="Max concurrent tasks.")
@click.option("--config", "config_value", default="autopilot.toml", show_default=True)
def run_command(
    request: str,
    auto_approve: bool,
    dry_run: bool,
    parallel: int | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    if auto_approve:
        runtime.config.flow.auto_approve = True
    if dry_run:
        runtime.config.flow.dry_run = True
    if parallel is not None:
        runtime.config.flow.max_parallel_tasks = parallel

    hooks = ConsoleHooks(interactive=not runtime.config.flow.auto_approve)
    flow = _build_flow(runtime, hooks)
    hooks.flow = flow
    try:
        completion = asyncio.run(_run_flow(flow, hooks, request))
    except AbortRequested as exc:
        raise click.ClickException(f"Execution aborted: {exc}") from exc
    except AutopilotError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(completion.report)
    if completion.success_rate < 1.0 or flow.blocked_task_ids:
        raise click.exceptions.Exit(1)


@cli.command("rollback")
@click.argument("snapshot_id")
@click.option("--config", "config_value", default="autopilot.toml", show_default=True)
def rollback_command(snapshot_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        snapshot = runtime.snapshots.rollback(snapshot_id)
    except AutopilotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Restored {snapshot.path} from {snapshot.id}")


@cli.command("snapshots")
@click.option("--config", "config_value", default="autopilot.toml", show_default=True)
def snapshots_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    snapshots = runtime.snapshots.list()
    if not snapshots:
        click.echo("No snapshots found.")
        return
    for snapshot in snapshots:
        created = snapshot.created_at.replace(microsecond=0).isoformat()
        click.echo(f"{snapshot.id} {created} {snapshot.size:>8}B {snapshot.path}")


@cli.command("safe-mode")
@click.argument("state", type=click.Choice(["on", "off"]))
@click.option("--config", "config_value", default="autopilot.toml", show_default=True)
def safe_mode_command(state: str, config_value: str) -> None:
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    config = load_config(config_path)
    config.executor.safe_mode = state == "on"
    save_config(config_path, config)
    click.echo(f"Safe mode {'enabled' if config.executor.safe_mode else 'disabled'}")


async def _serve(registry: BackgroundProcessRegistry, command: str) -> int | None:
    record = await registry.launch(command)
    click.echo(f"Started {record.id} (pid {record.pid})")
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, registry.kill_all)
    try:
        port = await registry.wait_for_readiness(record.id)
        if port is not None:
            click.echo(f"Server ready on port {port}")
        else:
            click.echo("No port detected in the output yet.")
        return await registry.wait(record.id)
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        registry.kill_all()


@cli.command("serve")
@click.argument("command")
@click.option("--config", "config_value", default="autopilot.toml", show_default=True)
def serve_command(command: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    if not is_server_command(command):
        click.echo("warning: this does not look like a server command", err=True)
    registry = BackgroundProcessRegistry(
        readiness_delay_seconds=runtime.config.runner.readiness_delay_seconds,
        output_buffer_lines=runtime.config.runner.output_buffer_lines,
        working_directory=str(runtime.working_directory),
    )
    exit_code = asyncio.run(_serve(registry, command))
    click.echo(f"Process exited with code {exit_code}")
