"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from pathlib import Path

from task_loop.orchestrator.backend.base import AgentRunRequest, AgentRunResult
from task_loop.orchestrator.errors import AgentInvocationError

TIMEOUT_EXIT_CODE = 124
CANCELLED_EXIT_CODE = 130


class CliAgentBackend:
    """Execute the configured agent command with the prompt on stdin."""

    def __init__(self, *, poll_interval_seconds: float = 0.1) -> None:
        self.poll_interval_seconds = poll_interval_seconds

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        request.output_path.parent.mkdir(parents=True, exist_ok=True)
        prompt_path = request.output_path.with_suffix(".prompt.txt")
        prompt_path.write_text(request.prompt, "utf-8")

        run_args = build_run_args(
            command_template=request.command_template,
            prompt_file=prompt_path,
        )

        env = os.environ.copy()
        env.update(request.env)

        try:
            with (
                prompt_path.open("r", encoding="utf-8") as stdin_handle,
                request.output_path.open("w", encoding="utf-8") as stdout_handle,
            ):
                if request.stderr_path is None:
                    return self._run_subprocess(
                        run_args=run_args,
                        request=request,
                        env=env,
                        stdin_handle=stdin_handle,
                        stdout_handle=stdout_handle,
                        stderr_handle=subprocess.STDOUT,
                        prompt_path=prompt_path,
                    )
                request.stderr_path.parent.mkdir(parents=True, exist_ok=True)
                with request.stderr_path.open("w", encoding="utf-8") as stderr_handle:
                    return self._run_subprocess(
                        run_args=run_args,
                        request=request,
                        env=env,
                        stdin_handle=stdin_handle,
                        stdout_handle=stdout_handle,
                        stderr_handle=stderr_handle,
                        prompt_path=prompt_path,
                    )
        except FileNotFoundError as error:
            raise AgentInvocationError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise AgentInvocationError(
                f"Agent failed to start: {error}",
                transient=True,
            ) from error

    def _run_subprocess(  # noqa: PLR0913
        self,
        *,
        run_args: list[str],
        request: AgentRunRequest,
        env: dict[str, str],
        stdin_handle,
        stdout_handle,
        stderr_handle,
        prompt_path: Path,
    ) -> AgentRunResult:
        process = subprocess.Popen(  # noqa: S603
            run_args,
            cwd=request.cwd,
            env=env,
            stdin=stdin_handle,
            stdout=stdout_handle,
            stderr=stderr_handle,
            text=True,
        )
        start_monotonic = time.monotonic()
        cancel_deadline: float | None = None
        graceful_seconds = max(0, request.graceful_shutdown_seconds or 0)

        while True:
            returncode = process.poll()
            if returncode is not None:
                return AgentRunResult(
                    exit_code=returncode,
                    timed_out=False,
                    cancelled=False,
                    output_path=request.output_path,
                    prompt_path=prompt_path,
                )

            now = time.monotonic()
            if now - start_monotonic >= request.timeout_seconds:
                _terminate_process(process)
                return AgentRunResult(
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=True,
                    cancelled=False,
                    output_path=request.output_path,
                    prompt_path=prompt_path,
                )

            if request.cancel_requested is not None and request.cancel_requested():
                if cancel_deadline is None:
                    cancel_deadline = now + graceful_seconds
                if now >= cancel_deadline:
                    _terminate_process(process)
                    return AgentRunResult(
                        exit_code=CANCELLED_EXIT_CODE,
                        timed_out=False,
                        cancelled=True,
                        output_path=request.output_path,
                        prompt_path=prompt_path,
                    )

            time.sleep(self.poll_interval_seconds)


def build_run_args(*, command_template: str, prompt_file: Path) -> list[str]:
    """Render the agent command template into argv.

    ``{prompt_file}`` is the only supported placeholder; the prompt itself is
    always delivered on stdin.
    """

    stripped = command_template.strip()
    if not stripped:
        raise AgentInvocationError("Agent command template is empty.", transient=False)
    try:
        rendered = stripped.format(prompt_file=shlex.quote(str(prompt_file)))
    except (KeyError, IndexError, ValueError) as error:
        raise AgentInvocationError(
            f"Unsupported agent command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentInvocationError(
            "Agent command template rendered empty command.",
            transient=False,
        )
    return argv


def _terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
