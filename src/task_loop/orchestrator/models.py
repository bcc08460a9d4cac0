"""Domain models for task loop runs."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from task_loop.orchestrator.errors import TaskLoopError

DEFAULT_MAX_ITERATIONS = 5


class TaskEndState(str, Enum):
    """Terminal state of one task within a run."""

    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LoopStatus(str, Enum):
    """Terminal state of the backoff retry loop."""

    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class GitConfig:
    """Optional per-task git policy from the ``Git Config`` block."""

    branch: str | None = None
    commit_message: str | None = None
    auto_push: bool = False

    @property
    def is_configured(self) -> bool:
        return bool(self.branch or self.commit_message)


@dataclass(frozen=True, slots=True)
class TaskDefinition:
    """One declared unit of work, immutable for the duration of a run."""

    task_id: str
    name: str
    description: str = ""
    completion_promise: str = ""
    validation_command: str = ""
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    git: GitConfig = field(default_factory=GitConfig)
    parallel_group: int = 0


class TaskRegistry:
    """Run-scoped mapping of task id to definition, in document order."""

    def __init__(self, tasks: list[TaskDefinition] | None = None) -> None:
        self._tasks: dict[str, TaskDefinition] = {}
        for task in tasks or []:
            self.add(task)

    def add(self, task: TaskDefinition) -> None:
        if task.task_id in self._tasks:
            raise ValueError(f"Duplicate task id: {task.task_id}")
        self._tasks[task.task_id] = task

    def get(self, task_id: str) -> TaskDefinition:
        return self._tasks[task_id]

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[TaskDefinition]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    def groups(self) -> list[tuple[int, list[TaskDefinition]]]:
        """Tasks partitioned by parallel group, ascending group id, document order inside."""

        grouped: dict[int, list[TaskDefinition]] = {}
        for task in self._tasks.values():
            grouped.setdefault(task.parallel_group, []).append(task)
        return sorted(grouped.items())


@dataclass(frozen=True, slots=True)
class IterationAttempt:
    """One agent invocation for one task."""

    task_id: str
    iteration: int
    exit_code: int
    transcript_path: Path
    timed_out: bool = False
    cancelled: bool = False
    error: str | None = None


@dataclass(frozen=True, slots=True)
class VerificationResult:
    """Verdict of the completion verifier for one attempt."""

    met: bool
    reason: str
    exit_code: int | None = None
    output: str = ""


@dataclass(slots=True)
class LoopResult:
    """Outcome of driving one task through the backoff retry loop."""

    task_id: str
    status: LoopStatus
    attempts: list[IterationAttempt] = field(default_factory=list)
    last_verification: VerificationResult | None = None


@dataclass(slots=True)
class LoopState:
    """Run-state snapshot written after every attempt for crash inspection."""

    run_id: str
    current_task: str | None = None
    iteration: int = 0
    completed_tasks: list[str] = field(default_factory=list)
    timestamp: datetime | None = None

    def to_payload(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "current_task": self.current_task,
            "iteration": self.iteration,
            "completed_tasks": list(self.completed_tasks),
            "timestamp": self.timestamp.isoformat() if self.timestamp is not None else None,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> LoopState:
        completed = payload.get("completed_tasks") or []
        if not isinstance(completed, list):
            raise TypeError("completed_tasks must be a list")
        timestamp_raw = payload.get("timestamp")
        iteration_raw = payload.get("iteration") or 0
        current = payload.get("current_task")
        return cls(
            run_id=str(payload.get("run_id") or ""),
            current_task=str(current) if current else None,
            iteration=int(iteration_raw) if isinstance(iteration_raw, (int, str)) else 0,
            completed_tasks=[str(item) for item in completed],
            timestamp=(
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str) and timestamp_raw
                else None
            ),
        )


@dataclass(frozen=True, slots=True)
class Worktree:
    """Isolated working copy owned by exactly one task."""

    task_id: str
    path: Path
    branch: str
    created_at: datetime


@dataclass(slots=True)
class MergeOutcome:
    """Result of merging one worktree branch back into the current branch."""

    branch: str
    merged: bool
    commits: int = 0
    conflicted_files: tuple[str, ...] = ()
    resolved_by_agent: bool = False
    detail: str = ""


@dataclass(slots=True)
class TaskOutcome:
    """Per-task report line: how the task ended and why."""

    task_id: str
    name: str
    state: TaskEndState
    attempts: int = 0
    reason: str = ""
    error: TaskLoopError | None = None
    degraded: bool = False
    notes: list[str] = field(default_factory=list)
    manual_steps: tuple[str, ...] = ()

    @property
    def completed(self) -> bool:
        return self.state == TaskEndState.COMPLETED


@dataclass(slots=True)
class RunReport:
    """Aggregated outcomes of one run."""

    run_id: str
    mode: str
    outcomes: list[TaskOutcome] = field(default_factory=list)
    state_path: Path | None = None
    logs_dir: Path | None = None

    @property
    def completed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.completed)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.completed

    @property
    def exit_code(self) -> int:
        """0 when every task completed, 1 when none did, 2 for partial success."""

        if self.outcomes and self.failed == 0:
            return 0
        if self.completed == 0:
            return 1
        return 2
