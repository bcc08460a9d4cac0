"""Commit and push of task changes once a task's promise is met."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from task_loop.orchestrator.errors import GitCommandError, GitCommitError
from task_loop.orchestrator.git import GitRepository
from task_loop.orchestrator.models import TaskDefinition, Worktree

logger = logging.getLogger(__name__)

DEFAULT_COMMIT_MESSAGE = "feat: {task_name}"


@dataclass(slots=True)
class CommitOutcome:
    """What happened to the task's changes."""

    committed: bool
    pushed: bool = False
    note: str = ""


def render_commit_message(template: str | None, task: TaskDefinition, *, default: str) -> str:
    message = template or default
    return message.replace("{task_name}", task.name).replace("{task_id}", task.task_id)


class TaskCommitter:
    """Records completed task work in version control.

    ``GitCommitError`` with ``degraded=True`` means the commit exists but the
    push failed.
    """

    def __init__(
        self,
        *,
        repository: GitRepository,
        remote: str = "origin",
        default_message: str = DEFAULT_COMMIT_MESSAGE,
    ) -> None:
        self.repository = repository
        self.remote = remote
        self.default_message = default_message

    def commit_task(self, task: TaskDefinition) -> CommitOutcome:
        """Commit in the repository working directory, honouring the task's Git Config."""

        if not task.git.is_configured:
            logger.info("No git configuration for %s - skipping commit", task.task_id)
            return CommitOutcome(committed=False, note="no git configuration")
        if not self.repository.is_repository():
            logger.warning("Not in a git repository - skipping commit for %s", task.task_id)
            return CommitOutcome(committed=False, note="not a git repository")

        branch = task.git.branch
        try:
            if branch:
                self.repository.checkout(branch, create=not self.repository.branch_exists(branch))
            self.repository.add_all()
            if not self.repository.has_staged_changes():
                logger.warning("No changes to commit for %s", task.task_id)
                return CommitOutcome(committed=False, note="no changes to commit")
            message = render_commit_message(
                task.git.commit_message,
                task,
                default=self.default_message,
            )
            self.repository.commit(message)
        except GitCommandError as error:
            raise GitCommitError(f"Commit failed for {task.task_id}: {error}") from error
        logger.info("Changes committed for %s: %s", task.task_id, message)

        pushed = False
        if task.git.auto_push:
            target = branch or self.repository.current_branch()
            self._push(task, refspec=target)
            pushed = True
        return CommitOutcome(committed=True, pushed=pushed)

    def commit_worktree(self, task: TaskDefinition, worktree: Worktree) -> CommitOutcome:
        """Commit everything in the worktree onto its own branch so it can be merged."""

        try:
            self.repository.add_all(cwd=worktree.path)
            if not self.repository.has_staged_changes(cwd=worktree.path):
                logger.info("No changes to commit in worktree for %s", task.task_id)
                return CommitOutcome(committed=False, note="no changes to commit")
            message = render_commit_message(
                task.git.commit_message,
                task,
                default=self.default_message,
            )
            self.repository.commit(message, cwd=worktree.path)
        except GitCommandError as error:
            raise GitCommitError(
                f"Commit failed in worktree for {task.task_id}: {error}",
            ) from error
        logger.info("Worktree changes committed for %s on %s", task.task_id, worktree.branch)

        pushed = False
        if task.git.auto_push:
            target = task.git.branch or worktree.branch
            self._push(task, refspec=f"HEAD:{target}", worktree=worktree)
            pushed = True
        return CommitOutcome(committed=True, pushed=pushed)

    def _push(
        self,
        task: TaskDefinition,
        *,
        refspec: str,
        worktree: Worktree | None = None,
    ) -> None:
        logger.info("Auto-pushing %s to %s", refspec, self.remote)
        try:
            self.repository.push(
                self.remote,
                refspec,
                cwd=worktree.path if worktree is not None else None,
            )
        except GitCommandError as error:
            raise GitCommitError(
                f"Push failed for {task.task_id} - you may need to push manually: {error}",
                degraded=True,
            ) from error
        logger.info("Pushed %s to %s", refspec, self.remote)
