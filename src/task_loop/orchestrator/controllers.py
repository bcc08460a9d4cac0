"""Controllers for task loop CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from task_loop.config import Settings
from task_loop.orchestrator.models import RunReport, TaskOutcome
from task_loop.orchestrator.runner import LoopOrchestrator
from task_loop.orchestrator.state import RunStateStore


@dataclass(slots=True)
class LoopRunCommand:
    """CLI input for a sequential or parallel run."""

    task_file: Path
    parallel: bool
    max_parallel: int | None = None
    strict: bool | None = None
    agent_command: str | None = None
    runs_root: Path | None = None
    state_file: Path | None = None
    repo: Path | None = None
    log_level: str | None = None


@dataclass(slots=True)
class StateShowCommand:
    """CLI input for explicit run-state reload."""

    state_file: Path


@dataclass(slots=True)
class CliResult:
    """Lines to render and the process exit code."""

    lines: list[str]
    exit_code: int = 0


class TaskLoopCliController:
    """Builds settings from CLI input, runs the orchestrator and renders reports."""

    def run_loop(self, command: LoopRunCommand) -> CliResult:
        settings = Settings.from_env(repo_root=command.repo)
        if command.max_parallel is not None:
            settings.max_parallel = command.max_parallel
        if command.strict is not None:
            settings.strict = command.strict
        if command.agent_command:
            settings.agent.command_template = command.agent_command
        if command.runs_root is not None:
            settings.runs_root = command.runs_root
        if command.log_level:
            settings.log_level = command.log_level.upper()
        settings.validate()
        settings.configure_logging()

        orchestrator = LoopOrchestrator(settings, state_path=command.state_file)
        if command.parallel:
            report = orchestrator.run_parallel(
                command.task_file,
                max_parallel=settings.max_parallel,
            )
        else:
            report = orchestrator.run_sequential(command.task_file)
        return CliResult(lines=render_report(report), exit_code=report.exit_code)

    def show_state(self, command: StateShowCommand) -> CliResult:
        if not command.state_file.is_file():
            return CliResult(lines=[f"State file not found: {command.state_file}"], exit_code=1)
        try:
            state = RunStateStore.load(command.state_file)
        except (OSError, ValueError, TypeError) as error:
            return CliResult(
                lines=[f"State file unreadable: {command.state_file}: {error}"],
                exit_code=1,
            )

        timestamp = state.timestamp.isoformat() if state.timestamp is not None else "-"
        return CliResult(
            lines=[
                f"Run: {state.run_id or '-'}",
                f"Current task: {state.current_task or '-'}",
                f"Iteration: {state.iteration}",
                f"Completed tasks: {json.dumps(state.completed_tasks)}",
                f"Timestamp: {timestamp}",
            ],
        )


def render_report(report: RunReport) -> list[str]:
    lines = [
        f"Run: {report.run_id} mode={report.mode}",
        f"State: {report.state_path or '-'}",
        f"Logs: {report.logs_dir or '-'}",
    ]
    lines.extend(_render_outcome(outcome) for outcome in report.outcomes)
    for outcome in report.outcomes:
        if outcome.manual_steps:
            lines.append(f"Manual resolution required for {outcome.task_id}:")
            lines.extend(f"  {step}" for step in outcome.manual_steps)
    lines.append(
        "Summary: "
        f"tasks={len(report.outcomes)} completed={report.completed} "
        f"not_completed={report.failed} exit_code={report.exit_code}",
    )
    return lines


def _render_outcome(outcome: TaskOutcome) -> str:
    line = (
        f"  {outcome.task_id} [{outcome.state.value}{', degraded' if outcome.degraded else ''}] "
        f"{outcome.name}: attempts={outcome.attempts} reason={outcome.reason or '-'}"
    )
    if outcome.notes:
        line += f" notes={'; '.join(outcome.notes)}"
    return line
