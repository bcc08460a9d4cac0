"""Agent invocation backends."""

from task_loop.orchestrator.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from task_loop.orchestrator.backend.cli_backend import CliAgentBackend, build_run_args

__all__ = [
    "AgentBackend",
    "AgentRunRequest",
    "AgentRunResult",
    "CliAgentBackend",
    "build_run_args",
]
