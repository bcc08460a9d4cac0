"""CLI entrypoint for task-loop."""

from pathlib import Path

import rich_click as click

from task_loop import __version__
from task_loop.orchestrator.controllers import (
    LoopRunCommand,
    StateShowCommand,
    TaskLoopCliController,
)
from task_loop.orchestrator.errors import TaskFileError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskLoopCliController()


@click.command()
@click.version_option(version=__version__, prog_name="task-loop")
@click.option(
    "--loop",
    "loop_file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Run tasks from FILE sequentially.",
)
@click.option(
    "--loop-parallel",
    "parallel_file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Run tasks from FILE, non-zero groups concurrently in isolated worktrees.",
)
@click.option(
    "--show-state",
    "state_to_show",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Print a saved run-state snapshot and exit.",
)
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1),
    default=None,
    help="Max concurrently running tasks in parallel mode. Default: TASK_LOOP_MAX_PARALLEL or 5.",
)
@click.option(
    "--strict/--lenient",
    default=None,
    help="Fail on missing sections, malformed tasks and tasks without a validation command.",
)
@click.option(
    "--agent-command",
    default=None,
    help=(
        "Agent run template. The prompt is fed on stdin; {prompt_file} is replaced "
        "with a file holding the prompt. If omitted, TASK_LOOP_AGENT_COMMAND is used."
    ),
)
@click.option(
    "--runs-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory for run state, transcripts and worktrees.",
)
@click.option(
    "--state-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Write the run-state snapshot here instead of the run directory.",
)
@click.option(
    "--repo",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Repository working directory. Default: current directory.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Log level. Default: TASK_LOOP_LOG_LEVEL or INFO.",
)
def task_loop(  # noqa: PLR0913
    loop_file: Path | None,
    parallel_file: Path | None,
    state_to_show: Path | None,
    max_parallel: int | None,
    strict: bool | None,
    agent_command: str | None,
    runs_root: Path | None,
    state_file: Path | None,
    repo: Path | None,
    log_level: str | None,
) -> None:
    """Drive an external coding agent through the tasks of a task document.

    Exit codes: **0** all tasks completed, **1** no task completed,
    **2** partial success.
    """

    selected = [value for value in (loop_file, parallel_file, state_to_show) if value is not None]
    if len(selected) != 1:
        raise click.UsageError(
            "Exactly one of --loop, --loop-parallel or --show-state is required.",
        )

    if state_to_show is not None:
        result = CONTROLLER.show_state(StateShowCommand(state_file=state_to_show))
        _emit_lines(result.lines)
        raise SystemExit(result.exit_code)

    if loop_file is not None:
        task_file, parallel = loop_file, False
    else:
        task_file, parallel = parallel_file, True
    try:
        result = CONTROLLER.run_loop(
            LoopRunCommand(
                task_file=task_file,
                parallel=parallel,
                max_parallel=max_parallel,
                strict=strict,
                agent_command=agent_command,
                runs_root=runs_root,
                state_file=state_file,
                repo=repo.resolve() if repo is not None else None,
                log_level=log_level,
            ),
        )
    except TaskFileError as error:
        raise click.ClickException(str(error)) from error
    except ValueError as error:
        raise click.ClickException(f"Invalid configuration: {error}") from error
    _emit_lines(result.lines)
    raise SystemExit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_loop()
