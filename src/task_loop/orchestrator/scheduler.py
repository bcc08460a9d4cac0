"""Parallel scheduler: bounded concurrent units, serial merges, guaranteed cleanup."""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from task_loop.orchestrator.cancellation import CancelToken
from task_loop.orchestrator.errors import MergeConflictError, TaskLoopError, WorktreeError
from task_loop.orchestrator.merge import BranchMerger, manual_merge_steps
from task_loop.orchestrator.models import TaskDefinition, TaskEndState, TaskOutcome, Worktree
from task_loop.orchestrator.worktree import WorktreeManager

logger = logging.getLogger(__name__)

UnitRunner = Callable[[TaskDefinition, Worktree], TaskOutcome]


@dataclass(slots=True)
class _Unit:
    task: TaskDefinition
    worktree: Worktree | None = None
    outcome: TaskOutcome | None = None


class ParallelScheduler:
    """Runs the tasks of one parallel group, each in its own worktree.

    At most ``max_parallel`` units run at a time. Merges start only after
    every unit of the group has finished and are applied one by one in task
    order. Each created worktree is cleaned up exactly once, whatever the
    unit or merge outcome.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        worktrees: WorktreeManager,
        merger: BranchMerger,
        run_unit: UnitRunner,
        max_parallel: int = 5,
        cancel_token: CancelToken | None = None,
        logs_dir: Path | None = None,
    ) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        self.worktrees = worktrees
        self.merger = merger
        self.run_unit = run_unit
        self.max_parallel = max_parallel
        self.cancel_token = cancel_token or CancelToken()
        self.logs_dir = logs_dir

    def run_group(self, group: int, tasks: list[TaskDefinition]) -> list[TaskOutcome]:
        logger.info(
            "Running parallel group %d: %d task(s), max parallel %d",
            group,
            len(tasks),
            self.max_parallel,
        )
        units = [_Unit(task=task) for task in tasks]
        cleaned: set[str] = set()
        try:
            self._create_worktrees(units)
            self._run_units([unit for unit in units if unit.worktree is not None])
            for unit in units:
                if unit.worktree is None:
                    continue
                merged = False
                try:
                    merged = self._merge(unit)
                finally:
                    self._cleanup(unit.worktree, cleaned, delete_branch=merged)
        finally:
            for unit in units:
                if unit.worktree is not None:
                    self._cleanup(unit.worktree, cleaned, delete_branch=False)

        outcomes = [unit.outcome for unit in units if unit.outcome is not None]
        completed = sum(1 for outcome in outcomes if outcome.completed)
        logger.info("Group %d finished: %d/%d completed", group, completed, len(units))
        return outcomes

    def _create_worktrees(self, units: list[_Unit]) -> None:
        for unit in units:
            task = unit.task
            if self.cancel_token.cancelled:
                unit.outcome = _cancelled(task, "cancelled before start")
                continue
            try:
                unit.worktree = self.worktrees.create(task)
            except WorktreeError as error:
                logger.error("Worktree creation failed for %s: %s", task.task_id, error)
                unit.outcome = TaskOutcome(
                    task_id=task.task_id,
                    name=task.name,
                    state=TaskEndState.FAILED,
                    reason=f"worktree creation failed: {error}",
                    error=error,
                )

    def _run_units(self, units: list[_Unit]) -> None:
        if not units:
            return
        with ThreadPoolExecutor(
            max_workers=self.max_parallel,
            thread_name_prefix="task-loop-unit",
        ) as pool:
            futures: dict[Future[TaskOutcome], _Unit] = {
                pool.submit(self._run_one, unit.task, unit.worktree): unit
                for unit in units
                if unit.worktree is not None
            }
            for future in as_completed(futures):
                unit = futures[future]
                unit.outcome = future.result()
                logger.info(
                    "Unit finished: %s -> %s",
                    unit.task.task_id,
                    unit.outcome.state.value,
                )

    def _run_one(self, task: TaskDefinition, worktree: Worktree) -> TaskOutcome:
        if self.cancel_token.cancelled:
            return _cancelled(task, "cancelled before start")

        self._write_banner(task, f"START {task.task_id} ({task.name}) in {worktree.path}")
        try:
            outcome = self.run_unit(task, worktree)
        except TaskLoopError as error:
            logger.error("Unit %s failed: %s", task.task_id, error)
            outcome = TaskOutcome(
                task_id=task.task_id,
                name=task.name,
                state=TaskEndState.FAILED,
                reason=str(error),
                error=error,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Unit %s crashed", task.task_id)
            outcome = TaskOutcome(
                task_id=task.task_id,
                name=task.name,
                state=TaskEndState.FAILED,
                reason=f"unexpected error: {error}",
            )
        self._write_banner(task, f"FINISH {task.task_id}: {outcome.state.value} {outcome.reason}")
        return outcome

    def _merge(self, unit: _Unit) -> bool:
        outcome = unit.outcome
        worktree = unit.worktree
        if outcome is None or worktree is None:
            return False
        if not outcome.completed:
            logger.info(
                "Skipping merge of %s: task ended %s",
                worktree.branch,
                outcome.state.value,
            )
            return False
        if self.cancel_token.cancelled:
            outcome.state = TaskEndState.CANCELLED
            outcome.reason = "cancelled before merge"
            outcome.notes.append(f"branch kept: {worktree.branch}")
            return False

        try:
            merge = self.merger.merge(worktree)
        except MergeConflictError as error:
            logger.error("Merge failed for %s: %s", unit.task.task_id, error)
            outcome.state = TaskEndState.FAILED
            outcome.reason = str(error)
            outcome.error = error
            outcome.manual_steps = error.manual_steps
            outcome.notes.append(f"branch kept: {worktree.branch}")
            return False
        except (TaskLoopError, OSError) as error:
            logger.exception("Merge crashed for %s", unit.task.task_id)
            self.merger.abort()
            outcome.state = TaskEndState.FAILED
            outcome.reason = f"merge failed: {error}"
            outcome.error = error if isinstance(error, TaskLoopError) else None
            outcome.manual_steps = manual_merge_steps(worktree.branch)
            outcome.notes.append(f"branch kept: {worktree.branch}")
            return False

        if merge.detail:
            outcome.notes.append(merge.detail)
        elif merge.resolved_by_agent:
            outcome.notes.append(
                f"merged {merge.branch} after resolving {len(merge.conflicted_files)} conflict(s)",
            )
        else:
            outcome.notes.append(f"merged {merge.branch} ({merge.commits} commit(s))")
        return merge.merged

    def _cleanup(self, worktree: Worktree, cleaned: set[str], *, delete_branch: bool) -> None:
        if worktree.task_id in cleaned:
            return
        cleaned.add(worktree.task_id)
        try:
            self.worktrees.cleanup(worktree.task_id, delete_branch=delete_branch)
        except OSError:
            logger.exception("Cleanup of worktree %s failed", worktree.path)

    def _write_banner(self, task: TaskDefinition, message: str) -> None:
        if self.logs_dir is None:
            return
        log_path = self.logs_dir / f"{task.task_id}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(tz=UTC).isoformat(timespec="seconds")
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{stamp}] === {message} ===\n")


def _cancelled(task: TaskDefinition, reason: str) -> TaskOutcome:
    return TaskOutcome(
        task_id=task.task_id,
        name=task.name,
        state=TaskEndState.CANCELLED,
        reason=reason,
    )
