from __future__ import annotations

from pathlib import Path

import allure
import pytest

from task_loop.orchestrator.backend import CliAgentBackend
from task_loop.orchestrator.conflicts import (
    AgentConflictResolver,
    ConflictResolutionAssistant,
    build_conflict_prompt,
    contains_conflict_markers,
)
from task_loop.orchestrator.errors import MergeConflictError
from task_loop.orchestrator.git import GitRepository

pytestmark = [
    allure.epic("Parallel Execution"),
    allure.feature("Conflict Resolution"),
]


class _StaticResolver:
    def __init__(self, answer: str | None) -> None:
        self.answer = answer
        self.paths: list[str] = []

    def resolve(self, *, path: str, content: str) -> str | None:
        self.paths.append(path)
        assert contains_conflict_markers(content)
        return self.answer


@pytest.fixture()
def conflicted_repository(git_repo: Path, git) -> GitRepository:
    """Repository stopped mid-merge with README.md conflicted between main and feature."""

    git(git_repo, "checkout", "-b", "feature")
    (git_repo / "README.md").write_text("feature\n", "utf-8")
    git(git_repo, "commit", "-am", "feature change")
    git(git_repo, "checkout", "main")
    (git_repo / "README.md").write_text("main\n", "utf-8")
    git(git_repo, "commit", "-am", "main change")
    repository = GitRepository(git_repo)
    assert repository.merge("feature") is False
    assert repository.conflicted_files() == ["README.md"]
    return repository


def test_marker_detection_requires_line_start() -> None:
    assert contains_conflict_markers("a\n<<<<<<< HEAD\nb\n")
    assert contains_conflict_markers("=======\n")
    assert contains_conflict_markers("x\n>>>>>>> feature")
    assert not contains_conflict_markers("text with ======= inside\n")


def test_prompt_embeds_file_in_fence() -> None:
    prompt = build_conflict_prompt("src/app.py", "<<<<<<< HEAD\na\n=======\nb\n>>>>>>> x\n")

    assert prompt.startswith("Resolve git merge conflict in file: src/app.py\n")
    assert "```\n<<<<<<< HEAD\na\n=======\nb\n>>>>>>> x\n```\n" in prompt


def test_assistant_resolves_stages_and_commits(
    git_repo: Path,
    git,
    conflicted_repository: GitRepository,
) -> None:
    repository = conflicted_repository
    resolver = _StaticResolver("main\nfeature")

    resolved = ConflictResolutionAssistant(repository=repository, resolver=resolver).resolve(
        ["README.md", "README.md"],
    )

    assert resolved == ("README.md",)
    assert resolver.paths == ["README.md"]
    assert (git_repo / "README.md").read_text("utf-8") == "main\nfeature\n"
    assert repository.conflicted_files() == []
    parents = git(git_repo, "rev-list", "--parents", "-n", "1", "HEAD").split()
    assert len(parents) == 3


@pytest.mark.parametrize(
    ("answer", "message"),
    [
        (None, "Failed to resolve conflicts in README.md"),
        ("<<<<<<< HEAD\nmain\n=======\nfeature\n>>>>>>> feature\n", "still present"),
    ],
)
def test_assistant_fails_closed(
    git_repo: Path,
    git,
    conflicted_repository: GitRepository,
    answer: str | None,
    message: str,
) -> None:
    repository = conflicted_repository
    head = git(git_repo, "rev-parse", "HEAD")

    with pytest.raises(MergeConflictError, match=message):
        ConflictResolutionAssistant(
            repository=repository,
            resolver=_StaticResolver(answer),
        ).resolve(["README.md"])

    assert git(git_repo, "rev-parse", "HEAD") == head
    assert repository.conflicted_files() == ["README.md"]


def test_agent_resolver_uses_agent_output(tmp_path: Path, echo_agent_command: str) -> None:
    resolver = AgentConflictResolver(
        backend=CliAgentBackend(poll_interval_seconds=0.01),
        command_template=echo_agent_command,
        cwd=tmp_path,
        logs_dir=tmp_path / "logs",
        timeout_seconds=60,
    )

    resolved = resolver.resolve(
        path="notes/a.txt",
        content="<<<<<<< HEAD\nleft\n=======\nright\n>>>>>>> branch\n",
    )

    assert resolved == "left\nright\n"


def test_agent_resolver_output_with_markers_is_rejected_by_assistant(
    git_repo: Path,
    echo_agent_command: str,
    conflicted_repository: GitRepository,
) -> None:
    repository = conflicted_repository
    resolver = AgentConflictResolver(
        backend=CliAgentBackend(poll_interval_seconds=0.01),
        command_template=f"{echo_agent_command} --keep-markers",
        cwd=git_repo,
        logs_dir=git_repo.parent / "logs",
        timeout_seconds=60,
    )

    with pytest.raises(MergeConflictError, match="still present"):
        ConflictResolutionAssistant(repository=repository, resolver=resolver).resolve(
            ["README.md"],
        )


def test_agent_resolver_strips_code_fence(tmp_path: Path) -> None:
    script = tmp_path / "fenced_agent.sh"
    script.write_text("#!/bin/sh\ncat > /dev/null\nprintf '```python\\nx = 1\\n```\\n'\n", "utf-8")
    script.chmod(0o755)
    resolver = AgentConflictResolver(
        backend=CliAgentBackend(poll_interval_seconds=0.01),
        command_template=str(script),
        cwd=tmp_path,
        logs_dir=tmp_path / "logs",
        timeout_seconds=60,
    )

    assert resolver.resolve(path="a.py", content="<<<<<<< a\n=======\n>>>>>>> b\n") == "x = 1\n"


def test_agent_resolver_returns_none_when_agent_fails(tmp_path: Path) -> None:
    resolver = AgentConflictResolver(
        backend=CliAgentBackend(poll_interval_seconds=0.01),
        command_template="definitely-not-an-agent-binary-xyz",
        cwd=tmp_path,
        logs_dir=tmp_path / "logs",
        timeout_seconds=60,
    )

    assert resolver.resolve(path="a.txt", content="<<<<<<< a\n") is None
