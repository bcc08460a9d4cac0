"""Backoff retry controller.

State machine per task::

    Start -> Attempt -> Verify -> Success
                          |
                          +-> Retry (sleep min(cap, base**k), k += 1) -> Attempt
                          +-> Exhausted (k >= max_iterations)

Iteration 1 runs immediately.  Every later iteration ``k`` is preceded by a
delay of ``min(cap, base**k)`` seconds, keyed to the new iteration number.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from task_loop.orchestrator.cancellation import CancelToken
from task_loop.orchestrator.executor import IterationExecutor
from task_loop.orchestrator.models import LoopResult, LoopStatus, TaskDefinition
from task_loop.orchestrator.state import RunStateStore
from task_loop.orchestrator.verifier import CompletionVerifier

logger = logging.getLogger(__name__)


def compute_backoff_delay(iteration: int, *, base: float = 2.0, cap: float = 60.0) -> float:
    """Delay in seconds before ``iteration``; zero for the first one."""

    if iteration <= 1:
        return 0.0
    return float(min(cap, base**iteration))


class BackoffRetryController:
    """Drives attempt/verify cycles for one task until success or exhaustion."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        executor: IterationExecutor,
        verifier: CompletionVerifier,
        state_store: RunStateStore | None = None,
        cancel_token: CancelToken | None = None,
        backoff_base: float = 2.0,
        backoff_cap_seconds: float = 60.0,
        sleep: Callable[[float], bool] | None = None,
    ) -> None:
        self.executor = executor
        self.verifier = verifier
        self.state_store = state_store
        self.cancel_token = cancel_token or CancelToken()
        self.backoff_base = backoff_base
        self.backoff_cap_seconds = backoff_cap_seconds
        self._sleep = sleep or self.cancel_token.wait

    def run(self, task: TaskDefinition, *, cwd: Path) -> LoopResult:
        result = LoopResult(task_id=task.task_id, status=LoopStatus.EXHAUSTED)
        logger.info(
            "Starting retry loop for %s (%s), max iterations: %d",
            task.task_id,
            task.name,
            task.max_iterations,
        )

        for iteration in range(1, task.max_iterations + 1):
            if self.cancel_token.cancelled:
                result.status = LoopStatus.CANCELLED
                return result

            if iteration > 1:
                delay = compute_backoff_delay(
                    iteration,
                    base=self.backoff_base,
                    cap=self.backoff_cap_seconds,
                )
                logger.info(
                    "Waiting %.0fs before retry (iteration %d/%d) for %s",
                    delay,
                    iteration,
                    task.max_iterations,
                    task.task_id,
                )
                if self._sleep(delay) or self.cancel_token.cancelled:
                    result.status = LoopStatus.CANCELLED
                    return result

            attempt = self.executor.execute(task, iteration, cwd=cwd)
            result.attempts.append(attempt)
            if self.state_store is not None:
                self.state_store.record_attempt(task.task_id, iteration)
            if attempt.cancelled or self.cancel_token.cancelled:
                result.status = LoopStatus.CANCELLED
                return result

            verification = self.verifier.verify(task, cwd=cwd)
            result.last_verification = verification
            if verification.met:
                logger.info(
                    "Task %s completed successfully at iteration %d",
                    task.task_id,
                    iteration,
                )
                result.status = LoopStatus.SUCCESS
                return result

            if iteration < task.max_iterations:
                logger.warning("Promise not met for %s - will retry", task.task_id)

        logger.error(
            "Max iterations (%d) reached for %s (%s)",
            task.max_iterations,
            task.task_id,
            task.name,
        )
        return result
