"""Iteration executor: one agent invocation per attempt."""

from __future__ import annotations

import logging
from pathlib import Path

from task_loop.orchestrator.backend import AgentBackend, AgentRunRequest
from task_loop.orchestrator.cancellation import CancelToken
from task_loop.orchestrator.errors import AgentInvocationError
from task_loop.orchestrator.models import IterationAttempt, TaskDefinition

logger = logging.getLogger(__name__)

AGENT_UNAVAILABLE_EXIT_CODE = 127


def build_iteration_prompt(task: TaskDefinition, iteration: int) -> str:
    """Deterministic prompt for one iteration of a task."""

    return (
        f"Task: {task.name}\n"
        f"\n"
        f"Description:\n"
        f"{task.description}\n"
        f"\n"
        f"Completion Promise:\n"
        f"{task.completion_promise}\n"
        f"\n"
        f"This is iteration {iteration}. Focus on meeting the completion promise.\n"
    )


class IterationExecutor:
    """Runs the agent once for a task and captures the transcript."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: AgentBackend,
        command_template: str,
        logs_dir: Path,
        timeout_seconds: int,
        graceful_shutdown_seconds: int = 10,
        cancel_token: CancelToken | None = None,
    ) -> None:
        self.backend = backend
        self.command_template = command_template
        self.logs_dir = logs_dir
        self.timeout_seconds = timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.cancel_token = cancel_token or CancelToken()

    def transcript_path(self, task_id: str, iteration: int) -> Path:
        return self.logs_dir / task_id / f"iteration-{iteration}.log"

    def execute(self, task: TaskDefinition, iteration: int, *, cwd: Path) -> IterationAttempt:
        """Invoke the agent and return the attempt; a non-zero exit is reported, not raised."""

        transcript = self.transcript_path(task.task_id, iteration)
        logger.info(
            "Starting iteration %d/%d for %s (%s), transcript: %s",
            iteration,
            task.max_iterations,
            task.task_id,
            task.name,
            transcript,
        )
        try:
            result = self.backend.run(
                AgentRunRequest(
                    prompt=build_iteration_prompt(task, iteration),
                    cwd=cwd,
                    output_path=transcript,
                    command_template=self.command_template,
                    timeout_seconds=self.timeout_seconds,
                    env={
                        "TASK_LOOP_TASK_ID": task.task_id,
                        "TASK_LOOP_ITERATION": str(iteration),
                    },
                    cancel_requested=lambda: self.cancel_token.cancelled,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                ),
            )
        except AgentInvocationError as error:
            logger.error(
                "Agent invocation failed for %s iteration %d (transient=%s): %s",
                task.task_id,
                iteration,
                error.transient,
                error,
            )
            return IterationAttempt(
                task_id=task.task_id,
                iteration=iteration,
                exit_code=AGENT_UNAVAILABLE_EXIT_CODE,
                transcript_path=transcript,
                error=str(error),
            )

        if result.timed_out:
            logger.warning(
                "Agent timed out after %ss for %s iteration %d",
                self.timeout_seconds,
                task.task_id,
                iteration,
            )
        elif result.exit_code == 0:
            logger.info("Agent iteration %d completed for %s", iteration, task.task_id)
        else:
            logger.warning(
                "Agent iteration %d for %s finished with code %d",
                iteration,
                task.task_id,
                result.exit_code,
            )
        return IterationAttempt(
            task_id=task.task_id,
            iteration=iteration,
            exit_code=result.exit_code,
            transcript_path=result.output_path,
            timed_out=result.timed_out,
            cancelled=result.cancelled,
        )
