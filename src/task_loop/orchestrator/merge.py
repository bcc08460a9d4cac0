"""Merge of worktree branches back into the repository's current branch."""

from __future__ import annotations

import logging

from task_loop.orchestrator.conflicts import ConflictResolutionAssistant
from task_loop.orchestrator.errors import MergeConflictError, TaskLoopError
from task_loop.orchestrator.git import GitRepository
from task_loop.orchestrator.models import MergeOutcome, Worktree

logger = logging.getLogger(__name__)


def manual_merge_steps(branch: str, files: tuple[str, ...] = ()) -> tuple[str, ...]:
    return (
        f"git merge {branch}",
        "git status",
        "edit the conflicted files and remove conflict markers",
        f"git add {' '.join(files) if files else '<files>'}",
        "git commit",
    )


class BranchMerger:
    """Merges one worktree branch at a time.

    When the merge conflicts, the assistant gets one chance to resolve every
    conflicted file. If it cannot, the merge is aborted so the repository is
    left as it was, and ``MergeConflictError`` carries the manual steps.
    """

    def __init__(
        self,
        *,
        repository: GitRepository,
        assistant: ConflictResolutionAssistant | None = None,
        strategy_option: str | None = "patience",
    ) -> None:
        self.repository = repository
        self.assistant = assistant
        self.strategy_option = strategy_option

    def merge(self, worktree: Worktree) -> MergeOutcome:
        branch = worktree.branch
        commits = self.repository.commits_ahead(branch)
        if commits == 0:
            logger.info("No new commits in %s - nothing to merge", branch)
            return MergeOutcome(branch=branch, merged=True, detail="nothing to merge")

        logger.info("Merging %s (%d commit(s))", branch, commits)
        if self.repository.merge(branch, strategy_option=self.strategy_option):
            logger.info("Merged %s without conflicts", branch)
            return MergeOutcome(branch=branch, merged=True, commits=commits)

        conflicted = tuple(dict.fromkeys(self.repository.conflicted_files()))
        if not conflicted:
            self.abort()
            raise MergeConflictError(
                f"Merge of {branch} failed for an unknown reason",
                manual_steps=manual_merge_steps(branch),
            )

        logger.warning("Merge conflict in %s: %s", branch, ", ".join(conflicted))
        if self.assistant is None:
            self.abort()
            raise MergeConflictError(
                f"Merge of {branch} conflicts in {len(conflicted)} file(s)",
                manual_steps=manual_merge_steps(branch, conflicted),
            )

        try:
            self.assistant.resolve(list(conflicted))
        except (TaskLoopError, OSError) as error:
            logger.error("Automatic resolution failed for %s: %s", branch, error)
            self.abort()
            raise MergeConflictError(
                f"Merge of {branch} aborted: {error}",
                manual_steps=manual_merge_steps(branch, conflicted),
            ) from error

        return MergeOutcome(
            branch=branch,
            merged=True,
            commits=commits,
            conflicted_files=conflicted,
            resolved_by_agent=True,
        )

    def abort(self) -> None:
        """Abandon an in-progress merge; harmless when none is in progress."""

        self.repository.merge_abort()
