"""Task document loader.

A document holds one or more sections, each opened by a ``# Task: <name>``
line and running up to the next task marker or the end of the document::

    # Task: Add login endpoint
    ## Description
    Implement POST /login.
    ## Completion Promise
    passed
    ## Validation Command
    pytest -q tests/test_login.py
    ## Max Iterations
    3
    ## Git Config
    Branch: feature/login
    Commit message: feat: {task_name}
    Auto-push: false
    Group: 1
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from task_loop.orchestrator.errors import SectionParseError, TaskFileError
from task_loop.orchestrator.models import (
    DEFAULT_MAX_ITERATIONS,
    GitConfig,
    TaskDefinition,
    TaskRegistry,
)

logger = logging.getLogger(__name__)

TASK_MARKER = "# Task:"
SUBSECTION_PREFIX = "##"
REQUIRED_SECTIONS: tuple[str, ...] = ("Description", "Completion Promise", "Validation Command")

_FENCE = "```"
_TRUE_VALUES = frozenset({"true", "yes", "y", "1", "on"})


@dataclass(slots=True)
class TaskDocument:
    """Parsed task document."""

    source: str
    registry: TaskRegistry
    skipped: list[SectionParseError] = field(default_factory=list)
    missing_sections: tuple[str, ...] = ()


def load_task_file(
    path: Path,
    *,
    strict: bool = False,
    default_max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> TaskDocument:
    """Read and parse a task document from disk."""

    if not path.is_file():
        raise TaskFileError(f"Task file not found: {path}")
    try:
        text = path.read_text("utf-8")
    except (OSError, UnicodeDecodeError) as error:
        raise TaskFileError(f"Task file not readable: {path}: {error}") from error

    logger.info("Loading tasks from %s", path)
    return parse_task_document(
        text,
        source=str(path),
        strict=strict,
        default_max_iterations=default_max_iterations,
    )


def parse_task_document(
    text: str,
    *,
    source: str = "<string>",
    strict: bool = False,
    default_max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> TaskDocument:
    """Split a document into task sections and parse each one independently.

    In lenient mode a malformed section is skipped with a warning.  In strict
    mode missing document sections, malformed task sections and tasks
    without a validation command all raise ``TaskFileError``.
    """

    lines = text.splitlines()
    missing = validate_document_shape(lines, source=source)
    if missing:
        if strict:
            raise TaskFileError(f"Missing sections in {source}: {', '.join(missing)}")
        logger.warning("Missing sections in %s: %s", source, ", ".join(missing))

    bounds = _section_bounds(lines)
    logger.info("Found %d task(s) in %s", len(bounds), source)

    registry = TaskRegistry()
    skipped: list[SectionParseError] = []
    for index, (start, end) in enumerate(bounds):
        try:
            task = parse_task_section(
                lines[start:end],
                index=index,
                default_max_iterations=default_max_iterations,
                require_validation_command=strict,
            )
        except SectionParseError as error:
            if strict:
                raise TaskFileError(f"{source}: {error}") from error
            logger.warning("Skipping task section %d: %s", index, error)
            skipped.append(error)
            continue
        registry.add(task)
        _log_loaded_task(task)

    if len(registry) == 0:
        raise TaskFileError(f"No tasks successfully loaded from {source}")
    return TaskDocument(
        source=source,
        registry=registry,
        skipped=skipped,
        missing_sections=missing,
    )


def validate_document_shape(lines: list[str], *, source: str = "<string>") -> tuple[str, ...]:
    """Return required sections absent from the whole document.

    A document without any task marker is rejected outright.
    """

    if not any(line.startswith(TASK_MARKER) for line in lines):
        raise TaskFileError(
            f"Invalid task file format in {source}: no '{TASK_MARKER} <name>' header found",
        )
    headings = {_heading_title(line) for line in lines if line.startswith(SUBSECTION_PREFIX)}
    return tuple(
        section for section in REQUIRED_SECTIONS if section.lower() not in headings
    )


def parse_task_section(
    lines: list[str],
    *,
    index: int,
    default_max_iterations: int = DEFAULT_MAX_ITERATIONS,
    require_validation_command: bool = False,
) -> TaskDefinition:
    """Parse one ``# Task:`` section into a ``TaskDefinition``."""

    if not lines or not lines[0].startswith(TASK_MARKER):
        raise SectionParseError("Section does not start with a task marker", section_index=index)
    name = lines[0][len(TASK_MARKER) :].strip()
    if not name:
        raise SectionParseError(
            f"Task name not found. Expected '{TASK_MARKER} <name>'",
            section_index=index,
        )

    subsections = _collect_subsections(lines[1:])
    description = "\n".join(
        line.rstrip() for line in subsections.get("description", []) if line.strip()
    )
    promise = _first_value(subsections.get("completion promise", []))
    validation_command = _first_value(subsections.get("validation command", []))
    if require_validation_command and not validation_command:
        raise SectionParseError(
            f"Task {name!r} has no validation command",
            section_index=index,
        )

    max_iterations = _parse_max_iterations(
        _first_value(subsections.get("max iterations", [])),
        default=default_max_iterations,
        task_name=name,
    )
    fields = _collect_labeled_lines(lines[1:])
    group = _parse_group(fields.get("group"), task_name=name, index=index)

    return TaskDefinition(
        task_id=f"task_{index}",
        name=name,
        description=description,
        completion_promise=promise,
        validation_command=validation_command,
        max_iterations=max_iterations,
        git=GitConfig(
            branch=fields.get("branch") or None,
            commit_message=fields.get("commit message") or None,
            auto_push=(fields.get("auto-push") or "").lower() in _TRUE_VALUES,
        ),
        parallel_group=group,
    )


def _section_bounds(lines: list[str]) -> list[tuple[int, int]]:
    starts = [number for number, line in enumerate(lines) if line.startswith(TASK_MARKER)]
    ends = [*starts[1:], len(lines)]
    return list(zip(starts, ends, strict=True))


def _heading_title(line: str) -> str:
    return line.lstrip("#").strip().lower()


def _collect_subsections(lines: list[str]) -> dict[str, list[str]]:
    subsections: dict[str, list[str]] = {}
    current: list[str] | None = None
    for line in lines:
        if line.startswith(SUBSECTION_PREFIX):
            title = _heading_title(line)
            # First occurrence wins for repeated headings.
            current = [] if title not in subsections else None
            if current is not None:
                subsections[title] = current
            continue
        if current is not None:
            current.append(line)
    return subsections


def _first_value(lines: list[str]) -> str:
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith(_FENCE):
            continue
        return stripped
    return ""


def _collect_labeled_lines(lines: list[str]) -> dict[str, str]:
    labels = ("Branch:", "Commit message:", "Auto-push:", "Group:")
    fields: dict[str, str] = {}
    for line in lines:
        for label in labels:
            key = label[:-1].lower()
            if line.startswith(label) and key not in fields:
                fields[key] = line[len(label) :].strip()
    return fields


def _parse_max_iterations(raw: str, *, default: int, task_name: str) -> int:
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(
            "Task %r: non-numeric Max Iterations %r, using %d",
            task_name,
            raw,
            default,
        )
        return default
    if value < 1:
        logger.warning("Task %r: Max Iterations must be >= 1, using %d", task_name, default)
        return default
    return value


def _parse_group(raw: str | None, *, task_name: str, index: int) -> int:
    if not raw:
        return 0
    try:
        group = int(raw)
    except ValueError as error:
        raise SectionParseError(
            f"Task {task_name!r}: Group must be a non-negative integer, got {raw!r}",
            section_index=index,
        ) from error
    if group < 0:
        raise SectionParseError(
            f"Task {task_name!r}: Group must be a non-negative integer, got {raw!r}",
            section_index=index,
        )
    return group


def _log_loaded_task(task: TaskDefinition) -> None:
    preview = task.description.replace("\n", " ")[:60]
    logger.info(
        "Loaded task %s: %s (description=%r max_iterations=%d validation=%r group=%d)",
        task.task_id,
        task.name,
        preview,
        task.max_iterations,
        task.validation_command or "-",
        task.parallel_group,
    )
