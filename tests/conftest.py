"""Shared test fixtures."""

from __future__ import annotations

import shlex
import subprocess
import sys
from pathlib import Path

import pytest

from task_loop.config import Settings

_ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m task_loop.orchestrator.backend.echo_agent"
)


def _run_git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        text=True,
        capture_output=True,
        check=True,
    )
    return completed.stdout


def _write_task_file(path: Path, text: str) -> Path:
    path.write_text(text.lstrip("\n"), "utf-8")
    return path


@pytest.fixture()
def echo_agent_command() -> str:
    """Agent command template running the bundled echo agent."""

    return _ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def git():
    """``git(cwd, *args)`` returning stdout; fails the test on a non-zero exit."""

    return _run_git


@pytest.fixture()
def write_task_file():
    return _write_task_file


@pytest.fixture()
def no_sleep():
    """Factory of backoff sleeps that record the requested delays instead of waiting."""

    def _factory(delays: list[float]):
        def _sleep(seconds: float) -> bool:
            delays.append(seconds)
            return False

        return _sleep

    return _factory


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Fresh repository on ``main`` with one commit and a local identity."""

    repo = tmp_path / "repo"
    repo.mkdir()
    _run_git(repo, "init", "-b", "main")
    _run_git(repo, "config", "user.name", "Task Loop Tests")
    _run_git(repo, "config", "user.email", "tests@example.com")
    _run_git(repo, "config", "commit.gpgsign", "false")
    _run_git(repo, "config", "merge.conflictStyle", "merge")
    (repo / "README.md").write_text("base\n", "utf-8")
    _run_git(repo, "add", "README.md")
    _run_git(repo, "commit", "-m", "initial")
    return repo


@pytest.fixture()
def echo_settings(tmp_path: Path):
    """Settings factory pointing the agent at the bundled echo agent."""

    def _factory(repo_root: Path, **overrides) -> Settings:
        settings = Settings(repo_root=repo_root, runs_root=tmp_path / "runs")
        settings.agent.command_template = _ECHO_AGENT_COMMAND_TEMPLATE
        settings.agent.timeout_seconds = 60
        settings.agent.graceful_shutdown_seconds = 0
        for key, value in overrides.items():
            setattr(settings, key, value)
        return settings

    return _factory
