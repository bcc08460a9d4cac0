"""Completion verifier: run the validation command and match the promise."""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path

from task_loop.orchestrator.errors import ValidationError
from task_loop.orchestrator.models import TaskDefinition, VerificationResult

logger = logging.getLogger(__name__)

VALIDATION_TIMEOUT_EXIT_CODE = 124


class CompletionVerifier:
    """Decides whether a task's completion promise is met.

    Decision table, applied to the combined stdout/stderr of the validation
    command:

    - no validation command: met (lenient fallback, logged as a warning)
    - exit status != 0: not met
    - exit status 0 and empty promise: met
    - exit status 0 and the promise pattern is found in the output: met
    - otherwise: not met

    The promise is a case-sensitive regular expression matched line by line,
    so ``^`` and ``$`` anchor to each output line; a promise that does not
    compile is matched as a literal substring.
    """

    def __init__(self, *, timeout_seconds: int = 600) -> None:
        self.timeout_seconds = timeout_seconds

    def verify(self, task: TaskDefinition, *, cwd: Path) -> VerificationResult:
        command = task.validation_command.strip()
        if not command:
            logger.warning(
                "Task %s has no validation command - assuming the promise is met",
                task.task_id,
            )
            return VerificationResult(met=True, reason="no_validation_command")

        logger.info(
            "Verifying %s: command=%r expected=%r",
            task.task_id,
            command,
            task.completion_promise,
        )
        try:
            exit_code, output = self._run(command, cwd=cwd)
        except ValidationError as error:
            logger.warning("Validation for %s could not run: %s", task.task_id, error)
            return VerificationResult(met=False, reason=str(error))

        result = evaluate_promise(
            promise=task.completion_promise,
            exit_code=exit_code,
            output=output,
        )
        if result.met:
            logger.info("Completion promise met for %s (%s)", task.task_id, result.reason)
        else:
            logger.warning("Completion promise not met for %s (%s)", task.task_id, result.reason)
        return result

    def _run(self, command: str, *, cwd: Path) -> tuple[int, str]:
        try:
            completed = subprocess.run(  # noqa: S602
                command,
                shell=True,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            raise ValidationError(
                f"validation command timed out after {self.timeout_seconds}s "
                f"(exit {VALIDATION_TIMEOUT_EXIT_CODE})",
            ) from error
        except OSError as error:
            raise ValidationError(f"validation command failed to start: {error}") from error
        return completed.returncode, completed.stdout or ""


def evaluate_promise(*, promise: str, exit_code: int, output: str) -> VerificationResult:
    """Pure verdict over one validation run; same inputs always give the same verdict."""

    if exit_code != 0:
        return VerificationResult(
            met=False,
            reason=f"validation command exited with {exit_code}",
            exit_code=exit_code,
            output=output,
        )
    if not promise:
        return VerificationResult(
            met=True,
            reason="exit_status_only",
            exit_code=exit_code,
            output=output,
        )
    if promise_matches(promise, output):
        return VerificationResult(
            met=True,
            reason="promise_matched",
            exit_code=exit_code,
            output=output,
        )
    return VerificationResult(
        met=False,
        reason=f"promise {promise!r} not found in output",
        exit_code=exit_code,
        output=output,
    )


def promise_matches(promise: str, output: str) -> bool:
    try:
        pattern = re.compile(promise, re.MULTILINE)
    except re.error:
        return promise in output
    return pattern.search(output) is not None
