"""Worktree isolation manager: one working copy and branch per parallel task."""

from __future__ import annotations

import logging
import re
import shutil
import threading
import time
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from task_loop.orchestrator.errors import GitCommandError, WorktreeError
from task_loop.orchestrator.git import GitRepository
from task_loop.orchestrator.models import TaskDefinition, Worktree

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "loop/"
_UNSAFE_CHARS = re.compile(r"[^a-z0-9-]")


def sanitize_name(name: str) -> str:
    """Lowercase, dash-separated, ``[a-z0-9-]`` only; never empty."""

    slug = _UNSAFE_CHARS.sub("", name.strip().lower().replace(" ", "-"))
    slug = re.sub(r"-{2,}", "-", slug).strip("-")
    return slug or "task"


class WorktreeManager:
    """Creates and removes isolated working copies under ``root_dir``."""

    def __init__(self, *, repository: GitRepository, root_dir: Path) -> None:
        self.repository = repository
        self.root_dir = root_dir
        self._active: dict[str, Worktree] = {}
        self._lock = threading.Lock()

    def active(self) -> list[Worktree]:
        with self._lock:
            return list(self._active.values())

    def get(self, task_id: str) -> Worktree | None:
        with self._lock:
            return self._active.get(task_id)

    def create(self, task: TaskDefinition) -> Worktree:
        """Create a worktree on a new branch rooted at the current HEAD."""

        if not self.repository.is_repository():
            raise WorktreeError(
                f"Not a git repository: {self.repository.root} - cannot create worktree",
            )
        with self._lock:
            if task.task_id in self._active:
                raise WorktreeError(f"Worktree already exists for {task.task_id}")

        slug = f"{sanitize_name(task.name)}-{int(time.time())}"
        path = self.root_dir / slug
        branch = f"{BRANCH_PREFIX}{slug}"
        while path.exists() or self.repository.branch_exists(branch):
            suffix = uuid4().hex[:4]
            path = self.root_dir / f"{slug}-{suffix}"
            branch = f"{BRANCH_PREFIX}{slug}-{suffix}"

        logger.info("Creating worktree for %s: path=%s branch=%s", task.task_id, path, branch)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.repository.worktree_add(path, branch)
        except GitCommandError as error:
            raise WorktreeError(f"Failed to create worktree for {task.task_id}: {error}") from error

        worktree = Worktree(
            task_id=task.task_id,
            path=path,
            branch=branch,
            created_at=datetime.now(tz=UTC),
        )
        with self._lock:
            self._active[task.task_id] = worktree
        return worktree

    def cleanup(self, task_id: str, *, delete_branch: bool = False) -> bool:
        """Remove the task's worktree; a no-op when none is registered.

        Tries ``git worktree remove``, then ``--force``, then deletes the
        directory tree and prunes the worktree metadata.
        """

        with self._lock:
            worktree = self._active.pop(task_id, None)
        if worktree is None:
            return False

        logger.info("Cleaning up worktree: %s", worktree.path)
        if self.repository.worktree_remove(worktree.path):
            logger.info("Worktree removed cleanly: %s", worktree.path)
        elif self.repository.worktree_remove(worktree.path, force=True):
            logger.info("Worktree force-removed: %s", worktree.path)
        else:
            logger.warning("Manual cleanup required for worktree: %s", worktree.path)
            git_link = worktree.path / ".git"
            if git_link.is_file():
                git_link.unlink()
            shutil.rmtree(worktree.path, ignore_errors=True)
            self.repository.worktree_prune()

        if delete_branch and not self.repository.delete_branch(worktree.branch):
            logger.warning("Branch %s kept: not fully merged", worktree.branch)
        return True
