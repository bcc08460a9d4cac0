from __future__ import annotations

from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from task_loop.main import task_loop
from task_loop.orchestrator.state import RunStateStore

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("CLI"),
]

_PASSING = """
# Task: Say OK
## Description
Print OK.
## Completion Promise
OK
## Validation Command
echo OK
## Max Iterations
1
"""


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch, echo_agent_command: str) -> Path:
    workdir = tmp_path / "work"
    workdir.mkdir()
    monkeypatch.setenv("TASK_LOOP_AGENT_COMMAND", echo_agent_command)
    monkeypatch.setenv("TASK_LOOP_RUNS_ROOT", str(tmp_path / "runs"))
    monkeypatch.delenv("TASK_LOOP_MAX_PARALLEL", raising=False)
    monkeypatch.delenv("TASK_LOOP_STRICT", raising=False)
    return workdir


def test_requires_exactly_one_mode(tmp_path: Path) -> None:
    runner = CliRunner()

    assert runner.invoke(task_loop, []).exit_code == 2
    result = runner.invoke(
        task_loop,
        ["--loop", str(tmp_path / "a.md"), "--show-state", str(tmp_path / "s.json")],
    )
    assert result.exit_code == 2
    assert "Exactly one of" in result.output


def test_loop_success_prints_report(tmp_path: Path, cli_env: Path, write_task_file) -> None:
    task_file = write_task_file(tmp_path / "tasks.md", _PASSING)
    state_file = tmp_path / "state" / "loop.json"

    result = CliRunner().invoke(
        task_loop,
        ["--loop", str(task_file), "--repo", str(cli_env), "--state-file", str(state_file)],
    )

    assert result.exit_code == 0, result.output
    assert "task_0 [completed] Say OK: attempts=1 reason=promise_matched" in result.output
    assert "Summary: tasks=1 completed=1 not_completed=0 exit_code=0" in result.output
    assert RunStateStore.load(state_file).completed_tasks == ["task_0"]


def test_loop_exhausted_exits_one(tmp_path: Path, cli_env: Path, write_task_file) -> None:
    task_file = write_task_file(
        tmp_path / "tasks.md",
        "# Task: Fail\n## Validation Command\nfalse\n## Max Iterations\n1\n",
    )

    result = CliRunner().invoke(task_loop, ["--loop", str(task_file), "--repo", str(cli_env)])

    assert result.exit_code == 1
    assert "task_0 [exhausted]" in result.output


def test_missing_task_file_is_reported(tmp_path: Path, cli_env: Path) -> None:
    result = CliRunner().invoke(
        task_loop,
        ["--loop", str(tmp_path / "missing.md"), "--repo", str(cli_env)],
    )

    assert result.exit_code == 1
    assert "Task file not found" in result.output


def test_strict_mode_rejects_incomplete_document(
    tmp_path: Path,
    cli_env: Path,
    write_task_file,
) -> None:
    task_file = write_task_file(tmp_path / "tasks.md", "# Task: Loose\n## Description\nx\n")

    result = CliRunner().invoke(
        task_loop,
        ["--loop", str(task_file), "--repo", str(cli_env), "--strict"],
    )

    assert result.exit_code == 1
    assert "Missing sections" in result.output


def test_invalid_environment_is_reported(
    tmp_path: Path,
    cli_env: Path,
    monkeypatch,
    write_task_file,
) -> None:
    monkeypatch.setenv("TASK_LOOP_MAX_PARALLEL", "0")
    task_file = write_task_file(tmp_path / "tasks.md", _PASSING)

    result = CliRunner().invoke(
        task_loop,
        ["--loop-parallel", str(task_file), "--repo", str(cli_env)],
    )

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_max_parallel_option_overrides_environment(
    tmp_path: Path,
    cli_env: Path,
    monkeypatch,
    write_task_file,
) -> None:
    monkeypatch.setenv("TASK_LOOP_MAX_PARALLEL", "0")
    task_file = write_task_file(tmp_path / "tasks.md", _PASSING)

    result = CliRunner().invoke(
        task_loop,
        ["--loop-parallel", str(task_file), "--repo", str(cli_env), "--max-parallel", "2"],
    )

    assert result.exit_code == 0, result.output
    assert "mode=parallel (sequential fallback)" in result.output


def test_show_state_prints_snapshot(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state.json", run_id="run-42")
    store.record_attempt("task_1", 3)
    store.mark_completed("task_0")

    result = CliRunner().invoke(task_loop, ["--show-state", str(store.path)])

    assert result.exit_code == 0
    assert "Run: run-42" in result.output
    assert "Current task: task_1" in result.output
    assert "Iteration: 3" in result.output
    assert 'Completed tasks: ["task_0"]' in result.output


def test_show_state_missing_file(tmp_path: Path) -> None:
    result = CliRunner().invoke(task_loop, ["--show-state", str(tmp_path / "none.json")])

    assert result.exit_code == 1
    assert "State file not found" in result.output
