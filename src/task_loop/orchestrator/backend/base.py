"""Backend interface for agent invocation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to run the agent once."""

    prompt: str
    cwd: Path
    output_path: Path
    command_template: str
    timeout_seconds: int
    stderr_path: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    cancel_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome of one agent run."""

    exit_code: int
    timed_out: bool
    cancelled: bool
    output_path: Path
    prompt_path: Path


class AgentBackend(Protocol):
    """Protocol implemented by agent runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run the agent with the request prompt on stdin and return execution metadata."""
