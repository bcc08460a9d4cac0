"""Error taxonomy for task loop runs.

Only ``TaskFileError`` aborts a whole run.  Every other error is scoped to the
task that raised it and ends up on that task's outcome.
"""

from __future__ import annotations


class TaskLoopError(RuntimeError):
    """Base class for all orchestrator errors."""


class TaskFileError(TaskLoopError):
    """Task document is missing, unreadable, or declares no usable task."""


class SectionParseError(TaskLoopError):
    """One task section of the document is malformed."""

    def __init__(self, message: str, *, section_index: int) -> None:
        super().__init__(message)
        self.section_index = section_index


class AgentInvocationError(TaskLoopError):
    """Agent binary could not be started or failed to run."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class ValidationError(TaskLoopError):
    """Validation command failed or its output did not satisfy the promise."""


class WorktreeError(TaskLoopError):
    """Isolated working copy could not be created or removed."""


class MergeConflictError(TaskLoopError):
    """Merge left conflicts that automated resolution could not clear."""

    def __init__(self, message: str, *, manual_steps: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.manual_steps = manual_steps


class GitCommitError(TaskLoopError):
    """Commit or push of task changes failed."""

    def __init__(self, message: str, *, degraded: bool = False) -> None:
        super().__init__(message)
        self.degraded = degraded


class GitCommandError(TaskLoopError):
    """A git invocation exited with a non-zero status."""

    def __init__(self, args: tuple[str, ...], returncode: int, stderr: str) -> None:
        command = " ".join(("git", *args))
        detail = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"{command}: {detail}")
        self.git_args = args
        self.returncode = returncode
        self.stderr = stderr
