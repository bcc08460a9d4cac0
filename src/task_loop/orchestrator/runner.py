"""Orchestrator: sequential and parallel run modes over a task document."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path

from task_loop.config import Settings
from task_loop.orchestrator.backend import AgentBackend, CliAgentBackend
from task_loop.orchestrator.cancellation import CancelToken, cancel_on_signals
from task_loop.orchestrator.committer import CommitOutcome, TaskCommitter
from task_loop.orchestrator.conflicts import AgentConflictResolver, ConflictResolutionAssistant
from task_loop.orchestrator.errors import GitCommitError
from task_loop.orchestrator.executor import IterationExecutor
from task_loop.orchestrator.git import GitRepository
from task_loop.orchestrator.merge import BranchMerger
from task_loop.orchestrator.models import (
    LoopResult,
    LoopStatus,
    RunReport,
    TaskDefinition,
    TaskEndState,
    TaskOutcome,
    Worktree,
)
from task_loop.orchestrator.retry import BackoffRetryController
from task_loop.orchestrator.scheduler import ParallelScheduler
from task_loop.orchestrator.state import RunStateStore, new_run_id
from task_loop.orchestrator.task_file import TaskDocument, load_task_file
from task_loop.orchestrator.verifier import CompletionVerifier
from task_loop.orchestrator.worktree import WorktreeManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Run:
    report: RunReport
    run_dir: Path
    logs_dir: Path
    state_store: RunStateStore
    controller: BackoffRetryController


class LoopOrchestrator:
    """Composes loader, retry loop, worktrees, scheduler and merges into runs.

    Only ``TaskFileError`` escapes ``run_sequential`` / ``run_parallel``;
    every other failure is recorded on the owning task's outcome.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        backend: AgentBackend | None = None,
        cancel_token: CancelToken | None = None,
        state_path: Path | None = None,
        sleep: Callable[[float], bool] | None = None,
    ) -> None:
        self.settings = settings
        self.backend = backend or CliAgentBackend()
        self.cancel_token = cancel_token or CancelToken()
        self.state_path = state_path
        self.sleep = sleep
        self.repository = GitRepository(settings.repo_root)
        self.verifier = CompletionVerifier(
            timeout_seconds=settings.retry.validation_timeout_seconds,
        )
        self.committer = TaskCommitter(
            repository=self.repository,
            remote=settings.git.remote,
            default_message=settings.git.default_commit_message,
        )

    def run_sequential(self, task_file: Path) -> RunReport:
        document = self._load(task_file)
        run = self._start_run("sequential")
        with cancel_on_signals(self.cancel_token):
            run.report.outcomes.extend(self._run_in_place(list(document.registry), run))
        return self._finish(run)

    def run_parallel(self, task_file: Path, *, max_parallel: int | None = None) -> RunReport:
        limit = max_parallel if max_parallel is not None else self.settings.max_parallel
        if limit < 1:
            raise ValueError("max_parallel must be >= 1")
        document = self._load(task_file)
        run = self._start_run("parallel")

        with cancel_on_signals(self.cancel_token):
            if not self.repository.is_repository():
                logger.warning(
                    "Not a git repository: %s - parallel groups fall back to sequential execution",
                    self.settings.repo_root,
                )
                run.report.mode = "parallel (sequential fallback)"
                for _, tasks in document.registry.groups():
                    run.report.outcomes.extend(self._run_in_place(tasks, run))
                return self._finish(run)

            scheduler = self._scheduler(run, limit)
            for group, tasks in document.registry.groups():
                if group == 0:
                    logger.info("Running group 0 sequentially: %d task(s)", len(tasks))
                    run.report.outcomes.extend(self._run_in_place(tasks, run))
                    continue
                outcomes = scheduler.run_group(group, tasks)
                for outcome in outcomes:
                    if outcome.completed:
                        run.state_store.mark_completed(outcome.task_id)
                run.report.outcomes.extend(outcomes)
        return self._finish(run)

    # -- run setup ----------------------------------------------------------

    def _load(self, task_file: Path) -> TaskDocument:
        return load_task_file(
            task_file,
            strict=self.settings.strict,
            default_max_iterations=self.settings.retry.default_max_iterations,
        )

    def _start_run(self, mode: str) -> _Run:
        run_id = new_run_id()
        run_dir = self.settings.runs_root / run_id
        logs_dir = run_dir / "logs"
        state_path = self.state_path or run_dir / "state.json"
        state_store = RunStateStore(state_path, run_id=run_id)
        executor = IterationExecutor(
            backend=self.backend,
            command_template=self.settings.agent.command_template,
            logs_dir=logs_dir,
            timeout_seconds=self.settings.agent.timeout_seconds,
            graceful_shutdown_seconds=self.settings.agent.graceful_shutdown_seconds,
            cancel_token=self.cancel_token,
        )
        controller = BackoffRetryController(
            executor=executor,
            verifier=self.verifier,
            state_store=state_store,
            cancel_token=self.cancel_token,
            backoff_base=self.settings.retry.backoff_base,
            backoff_cap_seconds=self.settings.retry.backoff_cap_seconds,
            sleep=self.sleep,
        )
        logger.info("Run %s started in %s mode, artifacts: %s", run_id, mode, run_dir)
        return _Run(
            report=RunReport(
                run_id=run_id,
                mode=mode,
                state_path=state_path,
                logs_dir=logs_dir,
            ),
            run_dir=run_dir,
            logs_dir=logs_dir,
            state_store=state_store,
            controller=controller,
        )

    def _scheduler(self, run: _Run, max_parallel: int) -> ParallelScheduler:
        resolver = AgentConflictResolver(
            backend=self.backend,
            command_template=self.settings.agent.command_template,
            cwd=self.settings.repo_root,
            logs_dir=run.logs_dir,
            timeout_seconds=self.settings.agent.timeout_seconds,
            graceful_shutdown_seconds=self.settings.agent.graceful_shutdown_seconds,
            cancel_token=self.cancel_token,
        )
        merger = BranchMerger(
            repository=self.repository,
            assistant=ConflictResolutionAssistant(repository=self.repository, resolver=resolver),
            strategy_option=self.settings.git.merge_strategy_option or None,
        )

        def run_unit(task: TaskDefinition, worktree: Worktree) -> TaskOutcome:
            outcome = _loop_outcome(task, run.controller.run(task, cwd=worktree.path))
            if outcome.completed:
                self._commit(outcome, partial(self.committer.commit_worktree, task, worktree))
            return outcome

        return ParallelScheduler(
            worktrees=WorktreeManager(
                repository=self.repository,
                root_dir=run.run_dir / "worktrees",
            ),
            merger=merger,
            run_unit=run_unit,
            max_parallel=max_parallel,
            cancel_token=self.cancel_token,
            logs_dir=run.logs_dir,
        )

    # -- execution ----------------------------------------------------------

    def _run_in_place(self, tasks: list[TaskDefinition], run: _Run) -> list[TaskOutcome]:
        outcomes: list[TaskOutcome] = []
        for task in tasks:
            if self.cancel_token.cancelled:
                outcomes.append(
                    TaskOutcome(
                        task_id=task.task_id,
                        name=task.name,
                        state=TaskEndState.CANCELLED,
                        reason="cancelled before start",
                    ),
                )
                continue

            outcome = _loop_outcome(task, run.controller.run(task, cwd=self.settings.repo_root))
            if outcome.completed:
                self._commit(outcome, partial(self.committer.commit_task, task))
                if outcome.completed:
                    run.state_store.mark_completed(task.task_id)
            outcomes.append(outcome)
        return outcomes

    def _commit(self, outcome: TaskOutcome, commit: Callable[[], CommitOutcome]) -> None:
        try:
            result = commit()
        except GitCommitError as error:
            if error.degraded:
                logger.warning("Task %s completed but push failed: %s", outcome.task_id, error)
                outcome.degraded = True
                outcome.error = error
                outcome.notes.append(str(error))
                return
            logger.error("Task %s completed but commit failed: %s", outcome.task_id, error)
            outcome.state = TaskEndState.FAILED
            outcome.reason = str(error)
            outcome.error = error
            return

        if result.note:
            outcome.notes.append(result.note)
        if result.committed:
            outcome.notes.append("pushed" if result.pushed else "committed")

    def _finish(self, run: _Run) -> RunReport:
        report = run.report
        if self.cancel_token.cancelled:
            logger.warning("Run %s cancelled: %s", report.run_id, self.cancel_token.reason)
        logger.info(
            "Run %s finished: %d completed, %d not completed (exit code %d)",
            report.run_id,
            report.completed,
            report.failed,
            report.exit_code,
        )
        return report


def _loop_outcome(task: TaskDefinition, result: LoopResult) -> TaskOutcome:
    attempts = len(result.attempts)
    verification = result.last_verification
    if result.status == LoopStatus.SUCCESS:
        return TaskOutcome(
            task_id=task.task_id,
            name=task.name,
            state=TaskEndState.COMPLETED,
            attempts=attempts,
            reason=verification.reason if verification is not None else "promise met",
        )
    if result.status == LoopStatus.CANCELLED:
        return TaskOutcome(
            task_id=task.task_id,
            name=task.name,
            state=TaskEndState.CANCELLED,
            attempts=attempts,
            reason="cancelled",
        )
    reason = f"max iterations ({task.max_iterations}) reached"
    if verification is not None:
        reason = f"{reason}: {verification.reason}"
    return TaskOutcome(
        task_id=task.task_id,
        name=task.name,
        state=TaskEndState.EXHAUSTED,
        attempts=attempts,
        reason=reason,
    )
