from __future__ import annotations

import logging
from pathlib import Path

import allure
import pytest

from task_loop.orchestrator.errors import SectionParseError, TaskFileError
from task_loop.orchestrator.task_file import (
    load_task_file,
    parse_task_document,
    parse_task_section,
)

pytestmark = [
    allure.epic("Task Definitions"),
    allure.feature("Task Document Loader"),
]

_TWO_TASKS = """
# Task: Add login endpoint
## Description
Implement POST /login.

Return a session token.
## Completion Promise
passed
## Validation Command
```
pytest -q tests/test_login.py
```
## Max Iterations
3
## Git Config
Branch: feature/login
Commit message: feat: {task_name}
Auto-push: yes
Group: 1

# Task: Write docs
## Description
Document the endpoint.
## Completion Promise
DOCS OK
## Validation Command
test -f docs/login.md && echo "DOCS OK"
"""


def test_parse_document_extracts_all_fields() -> None:
    document = parse_task_document(_TWO_TASKS.lstrip())

    assert len(document.registry) == 2
    login = document.registry.get("task_0")
    assert login.name == "Add login endpoint"
    assert login.description == "Implement POST /login.\nReturn a session token."
    assert login.completion_promise == "passed"
    assert login.validation_command == "pytest -q tests/test_login.py"
    assert login.max_iterations == 3
    assert login.git.branch == "feature/login"
    assert login.git.commit_message == "feat: {task_name}"
    assert login.git.auto_push is True
    assert login.parallel_group == 1

    docs = document.registry.get("task_1")
    assert docs.max_iterations == 5
    assert docs.parallel_group == 0
    assert docs.git.is_configured is False
    assert docs.validation_command == 'test -f docs/login.md && echo "DOCS OK"'
    assert document.skipped == []
    assert document.missing_sections == ()


def test_registry_groups_in_ascending_order_keep_document_order() -> None:
    text = """
# Task: third
## Git Config
Group: 2
# Task: first
# Task: second
## Git Config
Group: 1
# Task: fourth
"""
    document = parse_task_document(text.lstrip())

    groups = [(group, [task.name for task in tasks]) for group, tasks in document.registry.groups()]
    assert groups == [(0, ["first", "fourth"]), (1, ["second"]), (2, ["third"])]


def test_document_without_task_marker_is_fatal() -> None:
    with pytest.raises(TaskFileError, match="no '# Task: <name>' header"):
        parse_task_document("## Description\nnothing here\n")


def test_missing_file_is_fatal(tmp_path: Path) -> None:
    with pytest.raises(TaskFileError, match="Task file not found"):
        load_task_file(tmp_path / "absent.md")


def test_non_numeric_max_iterations_falls_back_to_default(caplog) -> None:
    text = "# Task: t\n## Max Iterations\nmany\n"

    with caplog.at_level(logging.WARNING):
        document = parse_task_document(text, default_max_iterations=4)

    assert document.registry.get("task_0").max_iterations == 4
    assert "non-numeric Max Iterations" in caplog.text


def test_lenient_mode_skips_malformed_section_and_warns(caplog) -> None:
    text = """
# Task: good
## Completion Promise
OK
# Task:
## Description
no name
# Task: bad group
## Git Config
Group: later
"""
    with caplog.at_level(logging.WARNING):
        document = parse_task_document(text.lstrip())

    assert [task.name for task in document.registry] == ["good"]
    assert [error.section_index for error in document.skipped] == [1, 2]
    assert "Skipping task section 1" in caplog.text
    assert "Missing sections" in caplog.text


def test_strict_mode_rejects_missing_sections() -> None:
    with pytest.raises(TaskFileError, match="Missing sections"):
        parse_task_document("# Task: t\n## Description\nd\n", strict=True)


def test_strict_mode_rejects_malformed_section() -> None:
    text = (
        "# Task: t\n## Description\nd\n## Completion Promise\nOK\n"
        "## Validation Command\necho OK\n## Git Config\nGroup: -1\n"
    )

    with pytest.raises(TaskFileError, match="Group must be a non-negative integer"):
        parse_task_document(text, strict=True)


def test_strict_mode_requires_validation_command_per_task() -> None:
    text = (
        "# Task: a\n## Description\nd\n## Completion Promise\nOK\n"
        "## Validation Command\necho OK\n"
        "# Task: b\n## Description\nd\n"
    )

    with pytest.raises(TaskFileError, match="has no validation command"):
        parse_task_document(text, strict=True)


def test_all_sections_malformed_is_fatal() -> None:
    with pytest.raises(TaskFileError, match="No tasks successfully loaded"):
        parse_task_document("# Task:\n## Description\nx\n")


def test_parse_section_requires_name() -> None:
    with pytest.raises(SectionParseError) as excinfo:
        parse_task_section(["# Task:   "], index=7)

    assert excinfo.value.section_index == 7


def test_auto_push_defaults_to_false_for_unknown_values() -> None:
    task = parse_task_section(
        ["# Task: t", "## Git Config", "Branch: b", "Auto-push: maybe"],
        index=0,
    )

    assert task.git.branch == "b"
    assert task.git.auto_push is False
