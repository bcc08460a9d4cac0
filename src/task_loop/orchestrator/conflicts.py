"""Automated merge-conflict resolution."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from task_loop.orchestrator.backend import AgentBackend, AgentRunRequest
from task_loop.orchestrator.cancellation import CancelToken
from task_loop.orchestrator.errors import AgentInvocationError, GitCommandError, MergeConflictError
from task_loop.orchestrator.git import GitRepository
from task_loop.orchestrator.worktree import sanitize_name

logger = logging.getLogger(__name__)

CONFLICT_MARKER_PREFIXES: tuple[str, ...] = ("<<<<<<<", "=======", ">>>>>>>")


def contains_conflict_markers(content: str) -> bool:
    return any(line.startswith(CONFLICT_MARKER_PREFIXES) for line in content.splitlines())


def build_conflict_prompt(path: str, content: str) -> str:
    return (
        f"Resolve git merge conflict in file: {path}\n"
        f"\n"
        f"File content with conflict markers:\n"
        f"```\n"
        f"{content}"
        f"{'' if content.endswith(chr(10)) else chr(10)}"
        f"```\n"
        f"\n"
        f"Your task:\n"
        f"1. Understand both versions (HEAD vs incoming branch)\n"
        f"2. Combine changes intelligently (preserve functionality from both sides if possible)\n"
        f"3. Remove ALL conflict markers (<<<<<<<, =======, >>>>>>>)\n"
        f"4. Ensure syntactically valid code\n"
        f"5. Output ONLY the resolved file content without markers\n"
        f"\n"
        f"Output the complete resolved file content:\n"
    )


class ConflictResolver(Protocol):
    """Strategy that turns a conflicted file body into a resolved one."""

    def resolve(self, *, path: str, content: str) -> str | None:
        """Return the fully resolved content, or None when resolution failed."""


class AgentConflictResolver:
    """Asks the agent to rewrite a conflicted file; its stdout is the new content."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: AgentBackend,
        command_template: str,
        cwd: Path,
        logs_dir: Path,
        timeout_seconds: int,
        graceful_shutdown_seconds: int = 10,
        cancel_token: CancelToken | None = None,
    ) -> None:
        self.backend = backend
        self.command_template = command_template
        self.cwd = cwd
        self.logs_dir = logs_dir
        self.timeout_seconds = timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.cancel_token = cancel_token or CancelToken()
        self._counter = 0

    def resolve(self, *, path: str, content: str) -> str | None:
        self._counter += 1
        stem = f"{self._counter:03d}-{sanitize_name(path.replace('/', '-').replace('.', '-'))}"
        output_path = self.logs_dir / "conflicts" / f"{stem}.out"
        try:
            result = self.backend.run(
                AgentRunRequest(
                    prompt=build_conflict_prompt(path, content),
                    cwd=self.cwd,
                    output_path=output_path,
                    stderr_path=output_path.with_suffix(".err"),
                    command_template=self.command_template,
                    timeout_seconds=self.timeout_seconds,
                    cancel_requested=lambda: self.cancel_token.cancelled,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                ),
            )
        except AgentInvocationError as error:
            logger.error("Agent unavailable for conflict resolution of %s: %s", path, error)
            return None
        if result.exit_code != 0:
            logger.error(
                "Agent failed to resolve %s (exit %d, timed_out=%s)",
                path,
                result.exit_code,
                result.timed_out,
            )
            return None

        try:
            raw = result.output_path.read_text("utf-8", errors="replace")
        except OSError as error:
            logger.error("Cannot read agent output for %s: %s", path, error)
            return None
        resolved = _strip_code_fence(raw)
        if not resolved.strip():
            logger.error("Agent returned empty content for %s", path)
            return None
        return resolved


class ConflictResolutionAssistant:
    """Resolves every conflicted file of an in-progress merge, or none of them.

    The merge is committed only when every file came back without a single
    conflict marker; otherwise ``MergeConflictError`` is raised and nothing
    is committed.
    """

    def __init__(self, *, repository: GitRepository, resolver: ConflictResolver) -> None:
        self.repository = repository
        self.resolver = resolver

    def resolve(self, conflicted_files: list[str]) -> tuple[str, ...]:
        ordered = tuple(dict.fromkeys(conflicted_files))
        if not ordered:
            logger.info("No conflicts to resolve")
            return ()

        logger.info("Resolving %d conflicted file(s): %s", len(ordered), ", ".join(ordered))
        for relative in ordered:
            file_path = self.repository.root / relative
            try:
                content = file_path.read_text("utf-8")
            except (OSError, UnicodeDecodeError) as error:
                raise MergeConflictError(
                    f"Cannot read conflicted file {relative}: {error}",
                ) from error

            resolved = self.resolver.resolve(path=relative, content=content)
            if resolved is None:
                raise MergeConflictError(f"Failed to resolve conflicts in {relative}")
            if contains_conflict_markers(resolved):
                raise MergeConflictError(
                    f"Conflict markers still present after resolution: {relative}",
                )

            try:
                file_path.write_text(
                    resolved if resolved.endswith("\n") else resolved + "\n",
                    "utf-8",
                )
            except OSError as error:
                raise MergeConflictError(
                    f"Cannot write resolved file {relative}: {error}",
                ) from error
            try:
                self.repository.add(relative)
            except GitCommandError as error:
                raise MergeConflictError(f"Failed to stage {relative}: {error}") from error
            logger.info("Resolved: %s", relative)

        try:
            self.repository.commit_no_edit()
        except GitCommandError as error:
            raise MergeConflictError(f"Failed to commit merge: {error}") from error
        logger.info("All conflicts resolved and committed")
        return ordered


def _strip_code_fence(text: str) -> str:
    lines = text.splitlines(keepends=True)
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    if len(lines) >= 2 and lines[0].startswith("```") and lines[-1].strip() == "```":
        return "".join(lines[1:-1])
    return "".join(lines)
