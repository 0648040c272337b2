import asyncio
import shlex
import sys
from pathlib import Path

import pytest

from autopilot.execution import CommandRunner, is_server_command

PYTHON = shlex.quote(sys.executable)


def _python(code: str) -> str:
    return f"{PYTHON} -c {shlex.quote(code)}"


@pytest.mark.parametrize(
    "command",
    [
        "python app.py",
        "python3 -m http.server 8000",
        "npm run dev",
        "yarn start",
        "flask run --port 5000",
        "uvicorn main:app --reload",
        "node server.js",
        "cargo run",
    ],
)
def test_server_commands_are_detected(command: str) -> None:
    assert is_server_command(command) is True


@pytest.mark.parametrize("command", ["ls -la", "npm install", "python --version", "git status"])
def test_regular_commands_are_not_servers(command: str) -> None:
    assert is_server_command(command) is False


def test_run_captures_output_and_exit_code(tmp_path: Path) -> None:
    runner = CommandRunner(working_directory=str(tmp_path))
    seen: list[str] = []

    result = asyncio.run(
        runner.run(
            _python("import os, sys; print(os.getcwd()); sys.stderr.write('warn\\n'); sys.exit(3)"),
            on_stdout=seen.append,
        )
    )

    assert result.exit_code == 3
    assert result.ok is False
    assert result.stdout.strip() == str(tmp_path.resolve())
    assert result.stderr == "warn\n"
    assert seen == [result.stdout]


def test_run_passes_extra_environment() -> None:
    runner = CommandRunner()

    command = _python("import os; print(os.environ['AUTOPILOT_X'])")

    result = asyncio.run(runner.run(command, env={"AUTOPILOT_X": "42"}))

    assert result.ok
    assert result.stdout.strip() == "42"


def test_run_times_out_and_terminates_process() -> None:
    runner = CommandRunner(kill_grace_seconds=1.0)

    result = asyncio.run(runner.run(_python("import time; time.sleep(30)"), timeout=0.5))

    assert result.timed_out is True
    assert result.aborted is False
    assert result.exit_code is not None and result.exit_code != 0
    assert result.duration < 10


def test_run_stops_when_abort_event_is_set() -> None:
    runner = CommandRunner(kill_grace_seconds=1.0)

    async def _scenario():
        abort = asyncio.Event()
        asyncio.get_running_loop().call_later(0.3, abort.set)
        return await runner.run(_python("import time; time.sleep(30)"), abort_event=abort)

    result = asyncio.run(_scenario())

    assert result.aborted is True
    assert result.timed_out is False
    assert result.duration < 10


def test_dry_run_never_spawns_processes(tmp_path: Path) -> None:
    runner = CommandRunner(dry_run=True)
    marker = tmp_path / "marker"

    result = asyncio.run(runner.run(f"touch {shlex.quote(str(marker))}"))

    assert result.ok
    assert result.stdout.startswith("[dry-run]")
    assert not marker.exists()


def test_run_sequence_stops_on_first_failure() -> None:
    runner = CommandRunner()

    commands = [_python("print(1)"), _python("raise SystemExit(2)"), _python("print(3)")]

    results = asyncio.run(runner.run_sequence(commands))

    assert [result.exit_code for result in results] == [0, 2]


def test_check_command_reports_availability() -> None:
    runner = CommandRunner()

    assert asyncio.run(runner.check_command("sh")) is True
    assert asyncio.run(runner.check_command("definitely-not-a-real-binary-xyz")) is False
    assert asyncio.run(runner.check_command("  ")) is False
