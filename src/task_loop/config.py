"""Runtime configuration for task loop runs."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_COMMAND = "claude -p"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class AgentSettings:
    """External agent invocation settings."""

    command_template: str = DEFAULT_AGENT_COMMAND
    timeout_seconds: int = 3_600
    graceful_shutdown_seconds: int = 10


@dataclass(slots=True)
class RetrySettings:
    """Iteration ceiling and backoff schedule."""

    default_max_iterations: int = 5
    backoff_base: float = 2.0
    backoff_cap_seconds: float = 60.0
    validation_timeout_seconds: int = 600


@dataclass(slots=True)
class GitSettings:
    """Version-control settings used for commits, merges and pushes."""

    remote: str = "origin"
    merge_strategy_option: str = "patience"
    default_commit_message: str = "feat: {task_name}"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    repo_root: Path = field(default_factory=Path.cwd)
    runs_root: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "task-loop")
    max_parallel: int = 5
    strict: bool = False
    log_level: str = "INFO"
    agent: AgentSettings = field(default_factory=AgentSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    git: GitSettings = field(default_factory=GitSettings)

    @classmethod
    def from_env(cls, repo_root: Path | None = None) -> Settings:
        """Load settings from environment with defaults suitable for local runs."""

        runs_root_raw = os.getenv("TASK_LOOP_RUNS_ROOT", "").strip()
        return cls(
            repo_root=repo_root or Path.cwd(),
            runs_root=(
                Path(runs_root_raw)
                if runs_root_raw
                else Path(tempfile.gettempdir()) / "task-loop"
            ),
            max_parallel=int(os.getenv("TASK_LOOP_MAX_PARALLEL", "5")),
            strict=_env_bool("TASK_LOOP_STRICT", default=False),
            log_level=os.getenv("TASK_LOOP_LOG_LEVEL", "INFO").strip().upper(),
            agent=AgentSettings(
                command_template=os.getenv("TASK_LOOP_AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
                timeout_seconds=int(os.getenv("TASK_LOOP_AGENT_TIMEOUT_SECONDS", "3600")),
                graceful_shutdown_seconds=int(
                    os.getenv("TASK_LOOP_GRACEFUL_SHUTDOWN_SECONDS", "10"),
                ),
            ),
            retry=RetrySettings(
                default_max_iterations=int(
                    os.getenv("TASK_LOOP_DEFAULT_MAX_ITERATIONS", "5"),
                ),
                backoff_base=float(os.getenv("TASK_LOOP_BACKOFF_BASE", "2")),
                backoff_cap_seconds=float(os.getenv("TASK_LOOP_BACKOFF_CAP_SECONDS", "60")),
                validation_timeout_seconds=int(
                    os.getenv("TASK_LOOP_VALIDATION_TIMEOUT_SECONDS", "600"),
                ),
            ),
            git=GitSettings(
                remote=os.getenv("TASK_LOOP_GIT_REMOTE", "origin"),
                merge_strategy_option=os.getenv("TASK_LOOP_MERGE_STRATEGY_OPTION", "patience"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the orchestrator cannot run with."""

        if not self.agent.command_template.strip():
            raise ValueError("TASK_LOOP_AGENT_COMMAND must not be empty.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError("TASK_LOOP_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.agent.graceful_shutdown_seconds < 0:
            raise ValueError("TASK_LOOP_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.max_parallel < 1:
            raise ValueError("TASK_LOOP_MAX_PARALLEL must be >= 1.")
        if self.retry.default_max_iterations < 1:
            raise ValueError("TASK_LOOP_DEFAULT_MAX_ITERATIONS must be >= 1.")
        if self.retry.backoff_base < 1:
            raise ValueError("TASK_LOOP_BACKOFF_BASE must be >= 1.")
        if self.retry.backoff_cap_seconds < 0:
            raise ValueError("TASK_LOOP_BACKOFF_CAP_SECONDS must be >= 0.")
        if self.retry.validation_timeout_seconds <= 0:
            raise ValueError("TASK_LOOP_VALIDATION_TIMEOUT_SECONDS must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid TASK_LOOP_LOG_LEVEL: {self.log_level!r}. "
                f"Expected one of: {', '.join(_LOG_LEVELS)}.",
            )

    def configure_logging(self) -> None:
        """Install the root log handler once per process."""

        logging.basicConfig(
            level=getattr(logging, self.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
