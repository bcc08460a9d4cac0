"""Thin wrapper around the ``git`` CLI for the primitives the orchestrator needs."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from task_loop.orchestrator.errors import GitCommandError

logger = logging.getLogger(__name__)


class GitRepository:
    """Version-control capability bound to one repository working directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def run(self, *args: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
        """Run git and return the completed process without raising."""

        logger.debug("git %s (cwd=%s)", " ".join(args), cwd or self.root)
        return subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            cwd=cwd or self.root,
            text=True,
            capture_output=True,
            check=False,
        )

    def check(self, *args: str, cwd: Path | None = None) -> str:
        """Run git and return stdout, raising ``GitCommandError`` on non-zero exit."""

        proc = self.run(*args, cwd=cwd)
        if proc.returncode != 0:
            raise GitCommandError(args, proc.returncode, proc.stderr or proc.stdout)
        return proc.stdout

    def is_repository(self) -> bool:
        try:
            proc = self.run("rev-parse", "--git-dir")
        except FileNotFoundError:
            return False
        return proc.returncode == 0

    def current_branch(self, cwd: Path | None = None) -> str:
        return self.check("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd).strip()

    def branch_exists(self, branch: str) -> bool:
        return self.run("show-ref", "--verify", "--quiet", f"refs/heads/{branch}").returncode == 0

    def checkout(self, branch: str, *, create: bool = False) -> None:
        if create:
            self.check("checkout", "-b", branch)
        else:
            self.check("checkout", branch)

    def delete_branch(self, branch: str) -> bool:
        """Delete a fully merged branch; unmerged branches are kept."""

        return self.run("branch", "-d", branch).returncode == 0

    # -- worktrees ----------------------------------------------------------

    def worktree_add(self, path: Path, branch: str, *, base: str = "HEAD") -> None:
        self.check("worktree", "add", "-B", branch, str(path), base)

    def worktree_remove(self, path: Path, *, force: bool = False) -> bool:
        args = ["worktree", "remove", str(path)]
        if force:
            args.append("--force")
        return self.run(*args).returncode == 0

    def worktree_prune(self) -> None:
        self.run("worktree", "prune")

    def worktree_paths(self) -> list[Path]:
        proc = self.run("worktree", "list", "--porcelain")
        if proc.returncode != 0:
            return []
        return [
            Path(line[len("worktree ") :]).resolve()
            for line in proc.stdout.splitlines()
            if line.startswith("worktree ")
        ]

    # -- commits ------------------------------------------------------------

    def add_all(self, *, cwd: Path | None = None) -> None:
        self.check("add", "-A", cwd=cwd)

    def add(self, *paths: str, cwd: Path | None = None) -> None:
        self.check("add", "--", *paths, cwd=cwd)

    def has_staged_changes(self, *, cwd: Path | None = None) -> bool:
        return self.run("diff", "--cached", "--quiet", cwd=cwd).returncode != 0

    def commit(self, message: str, *, cwd: Path | None = None) -> None:
        self.check("commit", "-m", message, cwd=cwd)

    def commit_no_edit(self, *, cwd: Path | None = None) -> None:
        self.check("commit", "--no-edit", cwd=cwd)

    def push(self, remote: str, refspec: str, *, cwd: Path | None = None) -> None:
        self.check("push", "-u", remote, refspec, cwd=cwd)

    # -- merges -------------------------------------------------------------

    def commits_ahead(self, branch: str) -> int:
        proc = self.run("rev-list", "--count", f"HEAD..{branch}")
        if proc.returncode != 0:
            return 0
        try:
            return int(proc.stdout.strip() or "0")
        except ValueError:
            return 0

    def merge(self, branch: str, *, strategy_option: str | None = None) -> bool:
        args = ["merge", branch, "--no-edit"]
        if strategy_option:
            args.append(f"--strategy-option={strategy_option}")
        proc = self.run(*args)
        if proc.returncode != 0:
            logger.debug("git merge %s failed: %s", branch, (proc.stdout + proc.stderr).strip())
        return proc.returncode == 0

    def conflicted_files(self) -> list[str]:
        proc = self.run("diff", "--name-only", "--diff-filter=U")
        if proc.returncode != 0:
            return []
        return [line for line in proc.stdout.splitlines() if line.strip()]

    def merge_abort(self) -> None:
        self.run("merge", "--abort")
