from __future__ import annotations

from pathlib import Path

import allure
import pytest

from task_loop.orchestrator.cancellation import CancelToken
from task_loop.orchestrator.models import (
    IterationAttempt,
    LoopStatus,
    TaskDefinition,
    VerificationResult,
)
from task_loop.orchestrator.retry import BackoffRetryController, compute_backoff_delay
from task_loop.orchestrator.state import RunStateStore

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("Backoff Retry Controller"),
]


class _FakeExecutor:
    def __init__(self, on_execute=None) -> None:
        self.iterations: list[int] = []
        self.on_execute = on_execute

    def execute(self, task: TaskDefinition, iteration: int, *, cwd: Path) -> IterationAttempt:
        self.iterations.append(iteration)
        if self.on_execute is not None:
            self.on_execute(iteration)
        return IterationAttempt(
            task_id=task.task_id,
            iteration=iteration,
            exit_code=0,
            transcript_path=cwd / f"iteration-{iteration}.log",
        )


class _ScriptedVerifier:
    """Returns verdicts in order, repeating the last one."""

    def __init__(self, *verdicts: bool) -> None:
        self.verdicts = list(verdicts)
        self.calls = 0

    def verify(self, task: TaskDefinition, *, cwd: Path) -> VerificationResult:
        verdict = self.verdicts[min(self.calls, len(self.verdicts) - 1)]
        self.calls += 1
        return VerificationResult(met=verdict, reason="scripted")


def _task(max_iterations: int) -> TaskDefinition:
    return TaskDefinition(task_id="task_0", name="t", max_iterations=max_iterations)


@pytest.mark.parametrize(
    ("iteration", "expected"),
    [(1, 0.0), (2, 4.0), (3, 8.0), (4, 16.0), (5, 32.0), (6, 60.0), (10, 60.0)],
)
def test_backoff_delay_schedule(iteration: int, expected: float) -> None:
    assert compute_backoff_delay(iteration) == expected


def test_first_attempt_success_runs_once_without_delay(tmp_path: Path, no_sleep) -> None:
    delays: list[float] = []
    executor = _FakeExecutor()
    controller = BackoffRetryController(
        executor=executor,
        verifier=_ScriptedVerifier(True),
        sleep=no_sleep(delays),
    )

    result = controller.run(_task(1), cwd=tmp_path)

    assert result.status == LoopStatus.SUCCESS
    assert executor.iterations == [1]
    assert delays == []


def test_success_on_third_attempt_waits_four_then_eight_seconds(
    tmp_path: Path,
    no_sleep,
) -> None:
    delays: list[float] = []
    executor = _FakeExecutor()
    controller = BackoffRetryController(
        executor=executor,
        verifier=_ScriptedVerifier(False, False, True),
        sleep=no_sleep(delays),
    )

    result = controller.run(_task(3), cwd=tmp_path)

    assert result.status == LoopStatus.SUCCESS
    assert executor.iterations == [1, 2, 3]
    assert delays == [4.0, 8.0]


def test_exhaustion_never_exceeds_max_iterations(tmp_path: Path, no_sleep) -> None:
    delays: list[float] = []
    executor = _FakeExecutor()
    verifier = _ScriptedVerifier(False)
    controller = BackoffRetryController(
        executor=executor,
        verifier=verifier,
        sleep=no_sleep(delays),
    )

    result = controller.run(_task(2), cwd=tmp_path)

    assert result.status == LoopStatus.EXHAUSTED
    assert len(result.attempts) == 2
    assert verifier.calls == 2
    assert delays == [4.0]


def test_custom_backoff_base_and_cap(tmp_path: Path, no_sleep) -> None:
    delays: list[float] = []
    controller = BackoffRetryController(
        executor=_FakeExecutor(),
        verifier=_ScriptedVerifier(False),
        backoff_base=3.0,
        backoff_cap_seconds=20.0,
        sleep=no_sleep(delays),
    )

    controller.run(_task(4), cwd=tmp_path)

    assert delays == [9.0, 20.0, 20.0]


def test_state_is_written_after_every_attempt(tmp_path: Path, no_sleep) -> None:
    store = RunStateStore(tmp_path / "state.json", run_id="run-1")
    seen: list[int] = []

    def _check_previous_snapshot(iteration: int) -> None:
        if iteration > 1:
            seen.append(RunStateStore.load(store.path).iteration)

    controller = BackoffRetryController(
        executor=_FakeExecutor(on_execute=_check_previous_snapshot),
        verifier=_ScriptedVerifier(False),
        state_store=store,
        sleep=no_sleep([]),
    )

    controller.run(_task(3), cwd=tmp_path)

    assert seen == [1, 2]
    snapshot = RunStateStore.load(store.path)
    assert snapshot.current_task == "task_0"
    assert snapshot.iteration == 3


def test_cancellation_during_backoff_stops_the_loop(tmp_path: Path) -> None:
    token = CancelToken()
    executor = _FakeExecutor()

    def _cancelling_sleep(seconds: float) -> bool:
        token.cancel("test")
        return True

    controller = BackoffRetryController(
        executor=executor,
        verifier=_ScriptedVerifier(False),
        cancel_token=token,
        sleep=_cancelling_sleep,
    )

    result = controller.run(_task(5), cwd=tmp_path)

    assert result.status == LoopStatus.CANCELLED
    assert executor.iterations == [1]


def test_default_sleep_wakes_on_cancel(tmp_path: Path) -> None:
    token = CancelToken()
    executor = _FakeExecutor(on_execute=lambda iteration: token.cancel("stop"))
    controller = BackoffRetryController(
        executor=executor,
        verifier=_ScriptedVerifier(False),
        cancel_token=token,
    )

    result = controller.run(_task(3), cwd=tmp_path)

    assert result.status == LoopStatus.CANCELLED
    assert executor.iterations == [1]
